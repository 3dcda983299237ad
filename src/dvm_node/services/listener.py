from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from typing import Any

from dvm_node.errors import AdmissionDeniedError, DVMError, JobValidationError
from dvm_node.hooks import SafeTelemetry, Telemetry
from dvm_node.models import (
    JOB_FEEDBACK_KIND,
    JOB_REQUEST_KIND_MAX,
    JOB_REQUEST_KIND_MIN,
    JOB_RESULT_KIND_MAX,
    JOB_RESULT_KIND_MIN,
    JobRequest,
)
from dvm_node.protocol import coerce_message, parse_job_request
from dvm_node.protocol.parsing import Decryptor
from dvm_node.runtime import CancellationToken, ScheduledTask, TaskSupervisor
from dvm_node.settings import DVMConfig
from dvm_node.transport.base import MessagingClient

from .job_kinds import JobKindTable, default_job_kinds

logger = logging.getLogger(__name__)

RequestHandler = Callable[[JobRequest], Awaitable[Any]]


class RecentIds:
    """Bounded window of recently seen message ids."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max(1, max_size)
        self._ids: OrderedDict[str, None] = OrderedDict()

    def check_and_add(self, message_id: str) -> bool:
        """Return True if ``message_id`` was already in the window."""
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            return True
        self._ids[message_id] = None
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)
        return False

    def __len__(self) -> int:
        return len(self._ids)


class JobListener:
    def __init__(
        self,
        messaging: MessagingClient,
        config: DVMConfig,
        on_request: RequestHandler,
        *,
        kinds: JobKindTable | None = None,
        decryptor: Decryptor | None = None,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.messaging = messaging
        self.config = config
        self.on_request = on_request
        self.kinds = kinds or default_job_kinds().restricted_to(config.supported_job_kinds)
        self.decryptor = decryptor
        self.telemetry = telemetry if isinstance(telemetry, SafeTelemetry) else SafeTelemetry(telemetry)
        self.clock = clock
        self._recent = RecentIds(config.dedup_window_size)
        self._tasks = TaskSupervisor("listener")

    @property
    def is_running(self) -> bool:
        return self._tasks.get("subscription") is not None

    @property
    def live_count(self) -> int:
        return self._tasks.live_count

    def subscription_filters(self) -> list[dict[str, Any]]:
        return [
            {
                "kinds": self.kinds.kinds,
                "since": int(self.clock()) - self.config.request_lookback_seconds,
            }
        ]

    def start(self) -> ScheduledTask:
        existing = self._tasks.get("subscription")
        if existing is not None:
            return existing
        return self._tasks.spawn("subscription", self._run)

    async def stop(self) -> None:
        await self._tasks.cancel_all()

    async def _run(self, token: CancellationToken) -> None:
        reconnects = 0
        while not token.cancelled:
            reason = "subscription ended"
            try:
                stream = self.messaging.subscribe(self.config.relays, self.subscription_filters())
                async with aclosing(stream):
                    async for raw in stream:
                        reconnects = 0
                        if token.cancelled:
                            return
                        await self.handle_message(raw)
            except Exception as exc:
                reason = str(exc) or exc.__class__.__name__
            if token.cancelled:
                return
            reconnects += 1
            delay = self.config.reconnect_backoff.delay_seconds(reconnects)
            logger.warning("relay subscription lost (%s); resubscribing in %.2fs", reason, delay)
            self.telemetry.record("listener", "reconnect", None, reconnects)
            if not await token.sleep(delay):
                return

    async def handle_message(self, raw: Any) -> JobRequest | None:
        """Filter one inbound message and hand it over if it is an admissible request."""
        message_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
        if message_id and self._recent.check_and_add(str(message_id)):
            return None

        try:
            message = coerce_message(raw)
        except JobValidationError as exc:
            self.telemetry.record("validation", "rejected", message_id, exc.summary())
            return None

        if message.sender_key == self.config.node_key and _is_own_output_kind(message.kind):
            return None

        try:
            self._admit(message.kind, message.sender_key)
        except AdmissionDeniedError as exc:
            self.telemetry.record("admission", "denied", message.id, exc.summary())
            return None

        try:
            request = parse_job_request(message, decryptor=self.decryptor)
            spec = self.kinds.lookup(request.job_kind)
            if spec is not None:
                spec.validate(request, self.config.default_model)
        except JobValidationError as exc:
            self.telemetry.record("validation", "rejected", message.id, exc.summary())
            return None

        try:
            await self.on_request(request)
        except DVMError as exc:
            logger.warning("request %s not accepted: %s", request.id, exc.summary())
            self.telemetry.record("admission", "handler_failed", request.id, exc.summary())
            return None
        self.telemetry.record("listener", "admitted", request.id, request.job_kind)
        return request

    def _admit(self, kind: int, sender_key: str) -> None:
        if not JOB_REQUEST_KIND_MIN <= kind <= JOB_REQUEST_KIND_MAX:
            raise AdmissionDeniedError(f"kind {kind} is not a job request")
        if not self.kinds.supports(kind):
            raise AdmissionDeniedError(f"unsupported job kind {kind}")
        if sender_key in self.config.blocked_requesters:
            raise AdmissionDeniedError("requester is blocked")


def _is_own_output_kind(kind: int) -> bool:
    return kind == JOB_FEEDBACK_KIND or JOB_RESULT_KIND_MIN <= kind <= JOB_RESULT_KIND_MAX
