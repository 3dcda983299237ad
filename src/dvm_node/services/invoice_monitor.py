from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from dvm_node.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    PaymentCheckError,
    PaymentTimeoutError,
)
from dvm_node.hooks import SafeTelemetry, Telemetry
from dvm_node.models import Invoice, InvoiceStatus, JobStatus
from dvm_node.payments.base import PaymentClient
from dvm_node.runtime import BackoffPolicy, CancellationToken, ScheduledTask, TaskSupervisor
from dvm_node.storage import JobRegistry

logger = logging.getLogger(__name__)


class MonitorOutcome(str, Enum):
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InvoiceMonitor:
    """Polls the payment collaborator for one job until its invoice settles.

    The monitor owns the ``awaiting_payment`` exits of the state machine: it moves
    the job to ``paid``, ``expired`` or ``failed`` itself and reports the outcome
    as the result of the task handle returned by :meth:`start`.
    """

    def __init__(
        self,
        registry: JobRegistry,
        payments: PaymentClient,
        *,
        telemetry: Telemetry | None = None,
        backoff: BackoffPolicy | None = None,
        max_poll_failures: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.payments = payments
        self.telemetry = telemetry if isinstance(telemetry, SafeTelemetry) else SafeTelemetry(telemetry)
        self.backoff = backoff or BackoffPolicy()
        self.max_poll_failures = max_poll_failures
        self.clock = clock
        self._tasks = TaskSupervisor("invoice-monitor")

    def start(
        self,
        job_id: str,
        invoice: Invoice,
        poll_interval_ms: int,
        timeout_ms: int,
    ) -> ScheduledTask:
        if self._tasks.get(job_id) is not None:
            raise RuntimeError(f"invoice monitor already running for job {job_id}")

        async def _runner(token: CancellationToken) -> MonitorOutcome:
            return await self._poll(job_id, invoice, poll_interval_ms, timeout_ms, token)

        self.telemetry.record("payment", "monitor_started", job_id, invoice.amount_millisats)
        return self._tasks.spawn(job_id, _runner)

    def cancel(self, job_id: str) -> bool:
        return self._tasks.cancel(job_id)

    async def cancel_all(self, grace_seconds: float = 1.0) -> None:
        """Signal every poller, then force-cancel those still busy after ``grace_seconds``."""
        for job_id in self._tasks.live_names():
            self._tasks.cancel(job_id)
        await self._tasks.shutdown(grace_seconds)

    def is_monitoring(self, job_id: str) -> bool:
        return self._tasks.get(job_id) is not None

    def active_job_ids(self) -> list[str]:
        return self._tasks.live_names()

    @property
    def live_count(self) -> int:
        return self._tasks.live_count

    async def _poll(
        self,
        job_id: str,
        invoice: Invoice,
        poll_interval_ms: int,
        timeout_ms: int,
        token: CancellationToken,
    ) -> MonitorOutcome:
        started = self.clock()
        timeout_seconds = timeout_ms / 1000.0
        interval_seconds = poll_interval_ms / 1000.0
        failures = 0

        while True:
            if token.cancelled:
                return MonitorOutcome.CANCELLED
            remaining = started + timeout_seconds - self.clock()
            if remaining < 0:
                return await self._expire(job_id, invoice, timeout_ms)

            try:
                status = await asyncio.wait_for(
                    self.payments.check_status(invoice.payment_hash), timeout=remaining
                )
            except Exception as exc:
                if isinstance(exc, TimeoutError) and self.clock() - started >= timeout_seconds:
                    return await self._expire(job_id, invoice, timeout_ms)
                failures += 1
                self.telemetry.record("payment", "poll_failed", job_id, failures)
                if failures > self.max_poll_failures:
                    cause = exc if isinstance(exc, PaymentCheckError) else PaymentCheckError(str(exc))
                    error = PaymentCheckError(
                        f"payment status check failed {failures} times: {cause}"
                    )
                    return await self._settle(job_id, invoice, JobStatus.FAILED, error=error)
                delay = self.backoff.delay_seconds(failures)
                logger.debug("payment check for job %s failed (%s); retrying in %.2fs", job_id, exc, delay)
                if not await token.sleep(delay):
                    return MonitorOutcome.CANCELLED
                continue

            failures = 0
            if token.cancelled:
                return MonitorOutcome.CANCELLED
            if status == InvoiceStatus.PAID:
                return await self._settle(
                    job_id, invoice, JobStatus.PAID, invoice_status=InvoiceStatus.PAID
                )
            if status == InvoiceStatus.EXPIRED:
                return await self._settle(
                    job_id,
                    invoice,
                    JobStatus.EXPIRED,
                    invoice_status=InvoiceStatus.EXPIRED,
                    error=PaymentTimeoutError("invoice expired before payment"),
                )
            if not await token.sleep(interval_seconds):
                return MonitorOutcome.CANCELLED

    async def _expire(self, job_id: str, invoice: Invoice, timeout_ms: int) -> MonitorOutcome:
        return await self._settle(
            job_id,
            invoice,
            JobStatus.EXPIRED,
            invoice_status=InvoiceStatus.EXPIRED,
            error=PaymentTimeoutError(f"invoice not paid within {timeout_ms} ms"),
        )

    async def _settle(
        self,
        job_id: str,
        invoice: Invoice,
        target: JobStatus,
        *,
        invoice_status: InvoiceStatus | None = None,
        error: PaymentCheckError | PaymentTimeoutError | None = None,
    ) -> MonitorOutcome:
        patch: dict = {}
        if invoice_status is not None:
            patch["invoice"] = invoice.model_copy(update={"status": invoice_status})
        if error is not None:
            patch["last_error"] = error.summary()
        try:
            await self.registry.transition(
                job_id,
                JobStatus.AWAITING_PAYMENT,
                target,
                patch,
                message=error.summary() if error else "Invoice paid",
            )
        except (InvalidTransitionError, JobNotFoundError):
            # The job already left awaiting_payment by another path.
            return MonitorOutcome.CANCELLED
        outcome = MonitorOutcome(target.value)
        self.telemetry.record("payment", outcome.value, job_id, invoice.amount_millisats)
        return outcome
