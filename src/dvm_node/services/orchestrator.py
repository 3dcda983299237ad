"""Per-job state machine driver.

``JobOrchestrator`` receives admitted requests from the listener and walks each
job through the registry's lifecycle:

    received -> processing -> completed | failed                      (free)
    received -> awaiting_payment -> paid -> processing -> ...         (paid)
    awaiting_payment -> expired | failed | cancelled

Each job runs in its own supervised task; the engine's ``stop()`` tears down the
listener, invoice monitors, job tasks and eviction timers, in that order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any

from dvm_node.errors import (
    AdmissionDeniedError,
    DVMError,
    InferenceError,
    InternalError,
    InvalidTransitionError,
    JobNotFoundError,
    PaymentError,
    PublishError,
)
from dvm_node.hooks import SafeTelemetry, Telemetry
from dvm_node.models import (
    ALLOWED_STATUS_TRANSITIONS,
    FeedbackStatus,
    Invoice,
    JobRequest,
    JobState,
    JobStatus,
    ResultPayload,
)
from dvm_node.payments.base import PaymentClient
from dvm_node.runtime import CancellationToken, JsonlAuditLogger, TaskSupervisor
from dvm_node.settings import DVMConfig
from dvm_node.storage import JobRegistry

from .executor import InferenceExecutor
from .invoice_monitor import InvoiceMonitor, MonitorOutcome
from .listener import JobListener
from .publisher import ResultPublisher

logger = logging.getLogger(__name__)

STOPPED_BEFORE_PAYMENT = "cancelled: engine stopped before payment"


class JobOrchestrator:
    def __init__(
        self,
        config: DVMConfig,
        *,
        registry: JobRegistry,
        payments: PaymentClient,
        monitor: InvoiceMonitor,
        executor: InferenceExecutor,
        publisher: ResultPublisher,
        listener: JobListener | None = None,
        telemetry: Telemetry | None = None,
        audit_logger: JsonlAuditLogger | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.payments = payments
        self.monitor = monitor
        self.executor = executor
        self.publisher = publisher
        self.listener = listener
        self.telemetry = telemetry if isinstance(telemetry, SafeTelemetry) else SafeTelemetry(telemetry)
        self.audit_logger = audit_logger
        self._job_tasks = TaskSupervisor("job")
        self._housekeeping = TaskSupervisor("housekeeping")
        self._running = False
        self._stop_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def live_task_count(self) -> int:
        count = self.monitor.live_count + self._job_tasks.live_count + self._housekeeping.live_count
        if self.listener is not None:
            count += self.listener.live_count
        return count

    async def start(self) -> None:
        if self._running:
            return
        self.publisher.open()
        self._running = True
        if self.listener is not None:
            self.listener.start()
        self.telemetry.record("engine", "started", None, len(self.config.supported_job_kinds))
        logger.info("DVM engine started for kinds %s", self.config.supported_job_kinds)

    async def stop(self) -> None:
        # Concurrent callers wait for the shutdown already in progress.
        async with self._stop_lock:
            if not self._running:
                return
            self._running = False
            in_flight = self._job_tasks.live_count

            if self.listener is not None:
                await self.listener.stop()
            await self._cancel_payments()
            await self._job_tasks.shutdown(self.config.stop_grace_seconds)
            # Jobs finishing their invoice request during the grace period may have started a monitor.
            await self._cancel_payments()
            await self._housekeeping.cancel_all()
            self.publisher.close()

            for job in self.registry.list():
                await self._evict(job.job_id)
            self.telemetry.record("engine", "stopped", None, in_flight)
            logger.info("DVM engine stopped; %d job(s) were in flight", in_flight)

    async def _cancel_payments(self) -> None:
        await self.monitor.cancel_all()
        for job in self.registry.list(lambda state: state.status == JobStatus.AWAITING_PAYMENT):
            try:
                await self._transition(
                    job.job_id,
                    JobStatus.AWAITING_PAYMENT,
                    JobStatus.CANCELLED,
                    {"last_error": STOPPED_BEFORE_PAYMENT},
                    message="Engine stopped before payment",
                )
            except (InvalidTransitionError, JobNotFoundError):
                continue
            await self.publisher.publish_feedback(job.request, FeedbackStatus.ERROR, STOPPED_BEFORE_PAYMENT)

    async def on_job_request(self, request: JobRequest) -> JobState:
        if not self._running:
            raise AdmissionDeniedError("engine is not running")
        state = await self.registry.create(request.id, request)
        self._audit(request.id, "created", {"job_kind": request.job_kind, "requester": request.requester_key})
        self.telemetry.record("job", "received", request.id, request.job_kind)

        async def _runner(token: CancellationToken) -> None:
            await self._run_job(request)

        self._job_tasks.spawn(request.id, _runner)
        return state

    def list_active_jobs(self) -> list[JobState]:
        return self.registry.list(lambda state: not state.is_terminal)

    def get_job(self, job_id: str) -> JobState:
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return job

    def job_statistics(self) -> dict[str, Any]:
        jobs = self.registry.list()
        by_status = Counter(job.status.value for job in jobs)
        revenue = sum(
            job.invoice.amount_millisats
            for job in jobs
            if job.status == JobStatus.COMPLETED and job.invoice is not None
        )
        return {
            "total_jobs": len(jobs),
            "active_jobs": sum(1 for job in jobs if not job.is_terminal),
            "by_status": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "revenue_millisats": revenue,
            "live_tasks": self.live_task_count,
        }

    async def _run_job(self, request: JobRequest) -> None:
        try:
            await self._drive(request)
        except DVMError as exc:
            await self._fail_from_current(request, exc)
        except Exception as exc:
            logger.exception("unexpected error while processing job %s", request.id)
            await self._fail_from_current(request, InternalError(str(exc) or exc.__class__.__name__))

    async def _drive(self, request: JobRequest) -> None:
        job_id = request.id
        price = self.config.price_for(request.job_kind)
        if request.requester_key in self.config.exempt_requesters:
            price = 0
        if price <= 0:
            await self._transition(job_id, JobStatus.RECEIVED, JobStatus.PROCESSING, message="Free job")
            await self._process(request)
            return

        try:
            invoice = await self._create_invoice(request, price)
        except PaymentError as exc:
            await self._fail(request, JobStatus.RECEIVED, exc)
            return

        await self._transition(
            job_id,
            JobStatus.RECEIVED,
            JobStatus.AWAITING_PAYMENT,
            {"invoice": invoice},
            message="Invoice issued",
        )
        handle = self.monitor.start(
            job_id,
            invoice,
            self.config.poll_interval_ms,
            self.config.payment_timeout_ms,
        )
        await self.publisher.publish_feedback(
            request,
            FeedbackStatus.PAYMENT_REQUIRED,
            f"Please pay {invoice.amount_millisats} millisats",
            amount_millisats=invoice.amount_millisats,
            encoded_invoice=invoice.encoded_invoice,
        )

        outcome = await handle.wait()
        if outcome == MonitorOutcome.PAID:
            await self._transition(job_id, JobStatus.PAID, JobStatus.PROCESSING, message="Payment received")
            await self._process(request, invoice=invoice)
        elif outcome in (MonitorOutcome.EXPIRED, MonitorOutcome.FAILED):
            self._audit(job_id, outcome.value, {"payment_hash": invoice.payment_hash})
            state = self.registry.get(job_id)
            reason = state.last_error if state and state.last_error else f"payment {outcome.value}"
            await self.publisher.publish_feedback(request, FeedbackStatus.ERROR, reason)
            self._schedule_eviction(job_id)

    async def _create_invoice(self, request: JobRequest, price: int) -> Invoice:
        memo = f"{self.config.invoice_memo_prefix} {request.id[:8]}"
        attempts = self.config.invoice_creation_attempts
        for attempt in range(1, attempts + 1):
            await self.registry.increment_attempt(request.id, "invoice")
            try:
                return await self.payments.create_invoice(price, memo)
            except PaymentError as exc:
                self.telemetry.record("payment", "invoice_failed", request.id, attempt)
                if attempt >= attempts:
                    raise PaymentError(f"invoice creation failed after {attempt} attempts: {exc}") from exc
                await asyncio.sleep(self.config.invoice_backoff.delay_seconds(attempt))
        raise PaymentError("invoice creation was not attempted")

    async def _process(self, request: JobRequest, *, invoice: Invoice | None = None) -> None:
        if self.config.send_processing_feedback:
            await self.publisher.publish_feedback(request, FeedbackStatus.PROCESSING, "Processing job")

        on_partial = None
        if request.wants_streaming:

            async def on_partial(text: str) -> None:
                await self.publisher.publish_feedback(
                    request, FeedbackStatus.PROCESSING, partial_content=text
                )

        try:
            result = await self.executor.execute(request, on_partial=on_partial)
        except InferenceError as exc:
            await self._fail(request, JobStatus.PROCESSING, exc)
            return

        payload = ResultPayload(
            content=result.content,
            usage=result.usage,
            amount_millisats=invoice.amount_millisats if invoice else None,
            encoded_invoice=invoice.encoded_invoice if invoice else None,
        )
        try:
            await self.publisher.publish_result(request.id, payload)
        except PublishError as exc:
            await self._fail(request, JobStatus.PROCESSING, exc)
            return

        await self._transition(
            request.id,
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            message="Result published",
        )
        self._schedule_eviction(request.id)

    async def _fail(self, request: JobRequest, from_status: JobStatus, error: DVMError) -> None:
        summary = error.summary()
        try:
            await self._transition(
                request.id,
                from_status,
                JobStatus.FAILED,
                {"last_error": summary},
                message=summary,
            )
        except (InvalidTransitionError, JobNotFoundError):
            return
        await self.publisher.publish_feedback(request, FeedbackStatus.ERROR, summary)
        self._schedule_eviction(request.id)

    async def _fail_from_current(self, request: JobRequest, error: DVMError) -> None:
        state = self.registry.get(request.id)
        if state is None or JobStatus.FAILED not in ALLOWED_STATUS_TRANSITIONS[state.status]:
            logger.warning(
                "job %s ended with %s after reaching a final status",
                request.id,
                error.summary(),
            )
            return
        if state.status == JobStatus.AWAITING_PAYMENT:
            self.monitor.cancel(request.id)
        await self._fail(request, state.status, error)

    async def _transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        patch: dict[str, Any] | None = None,
        *,
        message: str = "",
    ) -> JobState:
        state = await self.registry.transition(job_id, from_status, to_status, patch, message=message)
        self.telemetry.record("job", to_status.value, job_id)
        self._audit(job_id, to_status.value, {"from": from_status.value, "message": message})
        return state

    def _schedule_eviction(self, job_id: str) -> None:
        if not self._running:
            # stop() evicts every remaining job itself.
            return
        grace = self.config.eviction_grace_seconds

        async def _evict_later(token: CancellationToken) -> None:
            if await token.sleep(grace):
                await self._evict(job_id)

        self._housekeeping.spawn(f"evict:{job_id}", _evict_later)

    async def _evict(self, job_id: str) -> None:
        if await self.registry.evict(job_id):
            self.publisher.forget(job_id)
            self.telemetry.record("job", "evicted", job_id)

    def _audit(self, job_id: str, action: str, metadata: dict[str, Any]) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.log(job_id=job_id, category="job", action=action, metadata=metadata)
