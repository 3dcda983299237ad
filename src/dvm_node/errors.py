from __future__ import annotations


class DVMError(RuntimeError):
    """Base class for every error a job can end with."""

    kind = "internal"
    retryable = False

    def summary(self) -> str:
        message = str(self) or self.__class__.__name__
        return f"{self.kind}: {message}"


class JobValidationError(DVMError):
    kind = "validation"


class AdmissionDeniedError(DVMError):
    kind = "admission-denied"


class PaymentError(DVMError):
    kind = "payment"
    retryable = True


class PaymentCheckError(PaymentError):
    kind = "payment-check"


class PaymentTimeoutError(PaymentError):
    kind = "payment-timeout"
    retryable = False


class InferenceError(DVMError):
    kind = "inference"


class ProviderUnavailableError(InferenceError):
    kind = "provider-unavailable"


class ContentPolicyError(InferenceError):
    kind = "content-policy"


class ContextTooLargeError(InferenceError):
    kind = "context-too-large"


class InferenceTimeoutError(InferenceError):
    kind = "timeout"


class UnknownInferenceError(InferenceError):
    kind = "unknown"


class PublishError(DVMError):
    kind = "publish"


class TransientPublishError(PublishError):
    retryable = True


class PermanentPublishError(PublishError):
    kind = "publish-rejected"


class InternalError(DVMError):
    kind = "internal"


class JobAlreadyExistsError(DVMError):
    kind = "already-exists"


class JobNotFoundError(DVMError):
    kind = "not-found"


class InvalidTransitionError(DVMError):
    kind = "invalid-transition"
