from __future__ import annotations

import asyncio
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import httpx

from dvm_node.errors import (
    ContentPolicyError,
    ContextTooLargeError,
    InferenceError,
    InferenceTimeoutError,
    JobValidationError,
    ProviderUnavailableError,
    UnknownInferenceError,
)
from dvm_node.hooks import PolicyViolationError, SafeTelemetry, Telemetry, enforce_prompt_policy
from dvm_node.llm import (
    InferenceProvider,
    LLMUsageTracker,
    ProviderResponse,
    TextChunk,
    estimate_tokens,
)
from dvm_node.models import JobRequest, UsageInfo

from .job_kinds import JobKindSpec, JobKindTable, PromptPlan, default_job_kinds

PartialCallback = Callable[[str], Awaitable[Any]]

UNAVAILABLE_STATUS_CODES = {429, 502, 503, 504}
CONTEXT_ERROR_CODES = {"context_length_exceeded", "string_above_max_length"}
POLICY_ERROR_CODES = {"content_filter", "content_policy_violation"}


@dataclass
class InferenceResult:
    content: str
    usage: UsageInfo
    provider: str = ""
    model: str = ""
    structured: dict[str, Any] | None = None


def normalize_provider_error(exc: BaseException) -> InferenceError:
    if isinstance(exc, InferenceError):
        return exc
    if isinstance(exc, PolicyViolationError):
        return ContentPolicyError(str(exc))
    if isinstance(exc, TimeoutError):
        return InferenceTimeoutError("provider call exceeded the maximum duration")

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    status_code = getattr(exc, "status_code", None)
    code = getattr(exc, "code", None)

    if (
        getattr(exc, "unreachable", False)
        or status_code in UNAVAILABLE_STATUS_CODES
        or isinstance(exc, (httpx.TransportError, ConnectionError))
    ):
        return ProviderUnavailableError(f"provider unavailable: {message}")
    if code in CONTEXT_ERROR_CODES or "context length" in lowered or "too long" in lowered:
        return ContextTooLargeError(message)
    if code in POLICY_ERROR_CODES or "content policy" in lowered or "safety" in lowered:
        return ContentPolicyError(message)
    return UnknownInferenceError(message)


class InferenceExecutor:
    """Turns an admitted job request into one provider call.

    Every failure leaves this class as an ``InferenceError`` subtype. The total call
    duration is bounded by ``max_duration_seconds``; on expiry the provider call is
    cancelled, which closes the underlying HTTP request.
    """

    def __init__(
        self,
        provider: InferenceProvider,
        *,
        kinds: JobKindTable | None = None,
        default_model: str = "gemma2:1b",
        max_duration_seconds: float = 120.0,
        stream_feedback_every: int = 10,
        telemetry: Telemetry | None = None,
        usage_tracker: LLMUsageTracker | None = None,
        blocked_prompt_patterns: Iterable[re.Pattern[str]] | None = None,
    ) -> None:
        self.provider = provider
        self.kinds = kinds or default_job_kinds()
        self.default_model = default_model
        self.max_duration_seconds = max_duration_seconds
        self.stream_feedback_every = max(1, stream_feedback_every)
        self.telemetry = telemetry if isinstance(telemetry, SafeTelemetry) else SafeTelemetry(telemetry)
        self.usage_tracker = usage_tracker
        self.blocked_prompt_patterns = blocked_prompt_patterns

    @property
    def provider_name(self) -> str:
        return str(getattr(self.provider, "name", self.provider.__class__.__name__))

    async def execute(
        self,
        request: JobRequest,
        on_partial: PartialCallback | None = None,
    ) -> InferenceResult:
        spec, plan = self._prepare(request)
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._call(spec, plan, on_partial),
                timeout=self.max_duration_seconds,
            )
        except Exception as exc:
            error = normalize_provider_error(exc)
            self._record_failure(request, plan, error, _elapsed_ms(started))
            raise error from exc

        content = spec.encode_result(response)
        self._record_success(request, response, _elapsed_ms(started))
        return InferenceResult(
            content=content,
            usage=response.usage,
            provider=response.provider,
            model=response.model,
            structured=response.structured,
        )

    async def execute_streaming(self, request: JobRequest) -> AsyncIterator[TextChunk]:
        """Yield provider chunks lazily; the sequence cannot be restarted."""
        spec, plan = self._prepare(request)
        if plan.structured or not spec.supports_streaming:
            raise UnknownInferenceError(f"job kind {request.job_kind} does not support streaming")

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        deadline = loop.time() + self.max_duration_seconds
        emitted = 0
        try:
            async with aclosing(self.provider.stream_text(plan.prompt, plan.options)) as stream:
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise TimeoutError
                    try:
                        chunk = await asyncio.wait_for(anext(stream), timeout=remaining)
                    except StopAsyncIteration:
                        break
                    emitted += 1
                    yield chunk
        except Exception as exc:
            error = normalize_provider_error(exc)
            self._record_failure(request, plan, error, _elapsed_ms(started))
            raise error from exc
        self.telemetry.record("inference", "stream_completed", request.id, emitted)

    def _prepare(self, request: JobRequest) -> tuple[JobKindSpec, PromptPlan]:
        spec = self.kinds.lookup(request.job_kind)
        if spec is None:
            raise UnknownInferenceError(f"no prompt strategy for job kind {request.job_kind}")
        try:
            plan = spec.build_prompt(request, self.default_model)
            enforce_prompt_policy(plan.prompt, self.blocked_prompt_patterns)
        except PolicyViolationError as exc:
            raise ContentPolicyError(str(exc)) from exc
        except JobValidationError as exc:
            raise UnknownInferenceError(str(exc)) from exc
        return spec, plan

    async def _call(
        self,
        spec: JobKindSpec,
        plan: PromptPlan,
        on_partial: PartialCallback | None,
    ) -> ProviderResponse:
        if plan.schema is not None:
            return await self.provider.generate_structured(plan.prompt, plan.schema, plan.options)
        if on_partial is not None and spec.supports_streaming:
            return await self._collect_stream(plan, on_partial)
        return await self.provider.generate_text(plan.prompt, plan.options)

    async def _collect_stream(self, plan: PromptPlan, on_partial: PartialCallback) -> ProviderResponse:
        pieces: list[str] = []
        count = 0
        async with aclosing(self.provider.stream_text(plan.prompt, plan.options)) as stream:
            async for chunk in stream:
                pieces.append(chunk.text)
                count += 1
                if count % self.stream_feedback_every == 0:
                    await on_partial("".join(pieces))
        output = "".join(pieces)
        if not output.strip():
            raise UnknownInferenceError("provider stream produced no output")
        return ProviderResponse(
            provider=self.provider_name,
            model=plan.options.model,
            output=output,
            usage=UsageInfo(
                prompt_tokens=estimate_tokens(plan.prompt),
                completion_tokens=estimate_tokens(output),
            ),
            metadata={"chunks": count},
        )

    def _record_success(self, request: JobRequest, response: ProviderResponse, duration_ms: float) -> None:
        self.telemetry.record("inference", "completed", request.id, response.usage.total_tokens)
        if self.usage_tracker is not None:
            self.usage_tracker.record_call(
                provider=response.provider,
                model=response.model,
                success=True,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                job_kind=request.job_kind,
                duration_ms=duration_ms,
            )

    def _record_failure(
        self,
        request: JobRequest,
        plan: PromptPlan,
        error: InferenceError,
        duration_ms: float,
    ) -> None:
        self.telemetry.record("inference", "failed", request.id, error.kind)
        if self.usage_tracker is not None:
            self.usage_tracker.record_call(
                provider=self.provider_name,
                model=plan.options.model,
                success=False,
                job_kind=request.job_kind,
                duration_ms=duration_ms,
                error_kind=error.kind,
            )


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0
