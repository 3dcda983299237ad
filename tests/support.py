from __future__ import annotations

import asyncio
import itertools
import json
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

from dvm_node.errors import PaymentCheckError, PaymentError
from dvm_node.llm import InferenceOptions, ProviderResponse, TextChunk
from dvm_node.models import InputType, Invoice, InvoiceStatus, JobInput, JobRequest, UsageInfo
from dvm_node.payments import InMemoryPaymentBackend
from dvm_node.protocol import SignedMessage, compute_message_id
from dvm_node.runtime import BackoffPolicy
from dvm_node.settings import DVMConfig
from dvm_node.transport import InMemoryRelay

REQUESTER_KEY = "a" * 64
NODE_KEY = "b" * 64
FAST_BACKOFF = BackoffPolicy(initial_delay_ms=1, multiplier=2.0, max_delay_ms=5)

_counter = itertools.count(1)


def fast_config(**overrides: Any) -> DVMConfig:
    values: dict[str, Any] = {
        "supported_job_kinds": [5000, 5001, 5002, 5050, 5100],
        "relays": ["wss://relay.test"],
        "public_key": NODE_KEY,
        "poll_interval_ms": 10,
        "payment_timeout_ms": 2_000,
        "poll_backoff": FAST_BACKOFF,
        "invoice_backoff": FAST_BACKOFF,
        "publish_backoff": FAST_BACKOFF,
        "reconnect_backoff": FAST_BACKOFF,
        "max_inference_seconds": 2.0,
        "stop_grace_seconds": 0.5,
    }
    values.update(overrides)
    return DVMConfig(**values)


def make_message(
    *,
    kind: int = 5100,
    text: str | None = "Hi",
    sender_key: str = REQUESTER_KEY,
    extra_tags: list[list[str]] | None = None,
    content: str = "",
    created_at: int | None = None,
) -> SignedMessage:
    tags: list[list[str]] = []
    if text is not None:
        tags.append(["i", text, "text"])
    tags.extend(extra_tags or [])
    created = created_at if created_at is not None else int(time.time()) + next(_counter)
    message_id = compute_message_id(
        sender_key=sender_key,
        created_at=created,
        kind=kind,
        tags=tags,
        content=content,
    )
    return SignedMessage(
        id=message_id,
        sender_key=sender_key,
        kind=kind,
        tags=tags,
        content=content,
        created_at=created,
        signature="00" * 64,
    )


def make_request(
    *,
    kind: int = 5100,
    text: str = "Hi",
    params: dict[str, str] | None = None,
    job_id: str | None = None,
    encrypted: bool = False,
) -> JobRequest:
    return JobRequest(
        id=job_id or f"{next(_counter):064x}",
        requester_key=REQUESTER_KEY,
        job_kind=kind,
        inputs=(JobInput(value=text, input_type=InputType.TEXT),),
        params=params or {},
        encrypted=encrypted,
    )


class ScriptedProvider:
    """Inference fake: answers from a script of strings or exceptions."""

    name = "scripted"

    def __init__(
        self,
        outputs: list[str | BaseException] | None = None,
        *,
        chunks: list[str] | None = None,
        stream_error_after: int | None = None,
        stream_error: BaseException | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.outputs = list(outputs or ["Hello"])
        self.chunks = chunks or ["Hel", "lo"]
        self.stream_error_after = stream_error_after
        self.stream_error = stream_error
        self.delay_seconds = delay_seconds
        self.prompts: list[str] = []
        self.options: list[InferenceOptions] = []
        self.cancelled = 0
        self.stream_closed = False

    async def generate_text(self, prompt: str, options: InferenceOptions) -> ProviderResponse:
        self.prompts.append(prompt)
        self.options.append(options)
        if self.delay_seconds:
            try:
                await asyncio.sleep(self.delay_seconds)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(output, BaseException):
            raise output
        return ProviderResponse(
            provider=self.name,
            model=options.model,
            output=output,
            usage=UsageInfo(prompt_tokens=3, completion_tokens=2),
        )

    async def stream_text(self, prompt: str, options: InferenceOptions) -> AsyncIterator[TextChunk]:
        self.prompts.append(prompt)
        self.options.append(options)
        try:
            for index, text in enumerate(self.chunks):
                if self.stream_error_after is not None and index >= self.stream_error_after:
                    raise self.stream_error or RuntimeError("stream broke")
                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)
                yield TextChunk(index=index, text=text)
        finally:
            self.stream_closed = True

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        options: InferenceOptions,
    ) -> ProviderResponse:
        self.prompts.append(prompt)
        self.options.append(options)
        output = self.outputs[0]
        if isinstance(output, BaseException):
            raise output
        return ProviderResponse(
            provider=self.name,
            model=options.model,
            output=output,
            structured=json.loads(output),
            usage=UsageInfo(prompt_tokens=3, completion_tokens=2),
        )


class ScriptedPayments(InMemoryPaymentBackend):
    """Wallet fake whose ``check_status`` answers follow a script."""

    def __init__(
        self,
        statuses: list[InvoiceStatus | BaseException] | None = None,
        *,
        create_failures: int = 0,
        check_delay_seconds: float = 0.0,
    ) -> None:
        super().__init__()
        self.statuses = list(statuses or [InvoiceStatus.PENDING])
        self.create_failures = create_failures
        self.check_delay_seconds = check_delay_seconds
        self.create_calls = 0

    async def create_invoice(self, amount_millisats: int, memo: str) -> Invoice:
        self.create_calls += 1
        if self.create_calls <= self.create_failures:
            raise PaymentError("wallet offline")
        return await super().create_invoice(amount_millisats, memo)

    async def check_status(self, payment_hash: str) -> InvoiceStatus:
        self.status_checks += 1
        if self.check_delay_seconds:
            await asyncio.sleep(self.check_delay_seconds)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, BaseException):
            raise status
        return status


class FlakyRelay(InMemoryRelay):
    """Relay whose first publishes fail with the given errors."""

    def __init__(self, failures: list[BaseException] | None = None) -> None:
        super().__init__()
        self.failures = list(failures or [])
        self.publish_attempts = 0

    async def publish(self, message: SignedMessage) -> None:
        self.publish_attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        await super().publish(message)


def poll_check_error() -> PaymentCheckError:
    return PaymentCheckError("wallet unreachable")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def status_tag(message: SignedMessage) -> list[str] | None:
    return message.first_tag("status")
