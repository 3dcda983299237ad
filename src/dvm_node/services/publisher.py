from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Callable

from dvm_node.errors import (
    DVMError,
    JobNotFoundError,
    PermanentPublishError,
    TransientPublishError,
)
from dvm_node.hooks import SafeTelemetry, Telemetry, mask_sensitive_text
from dvm_node.models import FeedbackStatus, JobRequest, ResultPayload
from dvm_node.protocol import MessageBuilder, SignedMessage
from dvm_node.runtime import BackoffPolicy, JsonlAuditLogger
from dvm_node.storage import JobRegistry
from dvm_node.transport.base import MessagingClient, TransportDisconnectedError

logger = logging.getLogger(__name__)

# (recipient public key, plaintext) -> ciphertext
Encryptor = Callable[[str, str], str]


def is_transient_publish_failure(exc: BaseException) -> bool:
    if isinstance(exc, PermanentPublishError):
        return False
    if isinstance(exc, DVMError):
        return exc.retryable or isinstance(exc, TransportDisconnectedError)
    return isinstance(exc, OSError)


class ResultPublisher:
    def __init__(
        self,
        messaging: MessagingClient,
        registry: JobRegistry,
        builder: MessageBuilder,
        *,
        backoff: BackoffPolicy | None = None,
        max_publish_attempts: int = 4,
        telemetry: Telemetry | None = None,
        audit_logger: JsonlAuditLogger | None = None,
        encryptor: Encryptor | None = None,
    ) -> None:
        self.messaging = messaging
        self.registry = registry
        self.builder = builder
        self.backoff = backoff or BackoffPolicy()
        self.max_publish_attempts = max(1, max_publish_attempts)
        self.telemetry = telemetry if isinstance(telemetry, SafeTelemetry) else SafeTelemetry(telemetry)
        self.audit_logger = audit_logger
        self.encryptor = encryptor
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        self._closed = False

    def close(self) -> None:
        """Refuse every publication from now on."""
        self._closed = True

    def forget(self, job_id: str) -> None:
        self._locks.pop(job_id, None)

    async def publish_result(self, job_id: str, payload: ResultPayload) -> bool:
        """Publish the final result once; return False when it was already published."""
        async with self._locks[job_id]:
            if self._closed:
                raise PermanentPublishError("publisher is closed")
            job = self.registry.get(job_id)
            if job is None:
                raise JobNotFoundError(f"job not found: {job_id}")
            if job.result_published:
                self.telemetry.record("publish", "result_duplicate_suppressed", job_id)
                return False

            request = job.request
            encrypted = request.encrypted and self.encryptor is not None
            content = payload.content
            if encrypted:
                content = self.encryptor(request.requester_key, content)
            message = self.builder.result(
                request,
                content,
                amount_millisats=payload.amount_millisats,
                encoded_invoice=payload.encoded_invoice,
                encrypted=encrypted,
            )
            attempts = await self._publish_with_retry(job_id, message)
            await self.registry.mark_result_published(job_id)

        self.telemetry.record("publish", "result_published", job_id, attempts)
        self._audit(
            job_id,
            "result_published",
            {
                "message_id": message.id,
                "kind": message.kind,
                "attempts": attempts,
                "encrypted": encrypted,
                "total_tokens": payload.usage.total_tokens,
            },
        )
        return True

    async def publish_feedback(
        self,
        job: str | JobRequest,
        status: FeedbackStatus,
        detail: str | None = None,
        *,
        amount_millisats: int | None = None,
        encoded_invoice: str | None = None,
        partial_content: str | None = None,
    ) -> bool:
        """Best-effort feedback: failures are logged and reported as False."""
        request = self._resolve_request(job)
        if request is None:
            logger.warning("feedback %s dropped: unknown job %s", status.value, job)
            return False
        if self._closed:
            logger.debug("feedback %s for job %s dropped: publisher closed", status.value, request.id)
            return False

        if partial_content is not None and request.encrypted and self.encryptor is not None:
            partial_content = self.encryptor(request.requester_key, partial_content)
        message = self.builder.feedback(
            request,
            status,
            detail,
            amount_millisats=amount_millisats,
            encoded_invoice=encoded_invoice,
            partial_content=partial_content,
        )
        try:
            await self.messaging.publish(message)
        except Exception as exc:
            logger.warning(
                "feedback %s for job %s not published: %s",
                status.value,
                request.id,
                mask_sensitive_text(str(exc)),
            )
            self.telemetry.record("publish", "feedback_failed", request.id, status.value)
            return False

        self.telemetry.record("publish", "feedback_published", request.id, status.value)
        self._audit(request.id, "feedback_published", {"status": status.value, "message_id": message.id})
        return True

    async def _publish_with_retry(self, job_id: str, message: SignedMessage) -> int:
        attempt = 0
        while True:
            attempt += 1
            await self.registry.increment_attempt(job_id, "publish")
            try:
                await self.messaging.publish(message)
                return attempt
            except Exception as exc:
                if not is_transient_publish_failure(exc):
                    self.telemetry.record("publish", "result_rejected", job_id, attempt)
                    if isinstance(exc, PermanentPublishError):
                        raise
                    raise PermanentPublishError(f"result rejected: {exc}") from exc
                if attempt >= self.max_publish_attempts:
                    self.telemetry.record("publish", "result_attempts_exhausted", job_id, attempt)
                    raise TransientPublishError(
                        f"result not published after {attempt} attempts: {exc}"
                    ) from exc
                delay = self.backoff.delay_seconds(attempt)
                logger.info(
                    "publishing result for job %s failed (attempt %d/%d); retrying in %.2fs",
                    job_id,
                    attempt,
                    self.max_publish_attempts,
                    delay,
                )
                await asyncio.sleep(delay)

    def _resolve_request(self, job: str | JobRequest) -> JobRequest | None:
        if isinstance(job, JobRequest):
            return job
        state = self.registry.get(job)
        return state.request if state else None

    def _audit(self, job_id: str, action: str, metadata: dict) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.log(job_id=job_id, category="publish", action=action, metadata=metadata)
