import asyncio

import pytest

from dvm_node.hooks import EventLogger
from dvm_node.models import Invoice, InvoiceStatus, JobStatus
from dvm_node.services import InvoiceMonitor, MonitorOutcome
from dvm_node.storage import JobRegistry

from support import FAST_BACKOFF, ScriptedPayments, make_request, poll_check_error


async def _awaiting_job(registry: JobRegistry, payments: ScriptedPayments) -> tuple[str, Invoice]:
    request = make_request()
    await registry.create(request.id, request)
    invoice = await payments.create_invoice(1_000, "memo")
    await registry.transition(
        request.id,
        JobStatus.RECEIVED,
        JobStatus.AWAITING_PAYMENT,
        {"invoice": invoice},
    )
    return request.id, invoice


def _monitor(registry: JobRegistry, payments: ScriptedPayments, telemetry=None, max_poll_failures: int = 2):
    return InvoiceMonitor(
        registry,
        payments,
        telemetry=telemetry,
        backoff=FAST_BACKOFF,
        max_poll_failures=max_poll_failures,
    )


def test_monitor_marks_job_paid_on_second_poll() -> None:
    async def run() -> tuple:
        registry = JobRegistry()
        payments = ScriptedPayments([InvoiceStatus.PENDING, InvoiceStatus.PAID])
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments)
        handle = monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=2_000)
        assert monitor.is_monitoring(job_id)
        outcome = await handle.wait()
        await asyncio.sleep(0)
        return outcome, registry.get(job_id), payments.status_checks, monitor.live_count

    outcome, job, checks, live = asyncio.run(run())
    assert outcome == MonitorOutcome.PAID
    assert job.status == JobStatus.PAID
    assert job.invoice.status == InvoiceStatus.PAID
    assert checks == 2
    assert live == 0


def test_monitor_expires_job_after_timeout() -> None:
    async def run() -> tuple:
        registry = JobRegistry()
        payments = ScriptedPayments([InvoiceStatus.PENDING])
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments)
        outcome = await monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=50).wait()
        return outcome, registry.get(job_id)

    outcome, job = asyncio.run(run())
    assert outcome == MonitorOutcome.EXPIRED
    assert job.status == JobStatus.EXPIRED
    assert job.invoice.status == InvoiceStatus.EXPIRED
    assert job.last_error.startswith("payment-timeout")


def test_monitor_fails_job_after_too_many_poll_errors() -> None:
    async def run() -> tuple:
        telemetry = EventLogger()
        registry = JobRegistry()
        payments = ScriptedPayments([poll_check_error()])
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments, telemetry=telemetry, max_poll_failures=2)
        outcome = await monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=5_000).wait()
        return outcome, registry.get(job_id), payments.status_checks, telemetry

    outcome, job, checks, telemetry = asyncio.run(run())
    assert outcome == MonitorOutcome.FAILED
    assert job.status == JobStatus.FAILED
    assert job.last_error.startswith("payment-check")
    assert checks == 3
    assert len(telemetry.list_events(category="payment", label=job.job_id)) >= 3


def test_monitor_recovers_from_transient_poll_errors() -> None:
    async def run() -> MonitorOutcome:
        registry = JobRegistry()
        payments = ScriptedPayments([poll_check_error(), poll_check_error(), InvoiceStatus.PAID])
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments, max_poll_failures=2)
        return await monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=5_000).wait()

    assert asyncio.run(run()) == MonitorOutcome.PAID


def test_monitor_cancel_has_no_side_effects() -> None:
    async def run() -> tuple:
        registry = JobRegistry()
        payments = ScriptedPayments([InvoiceStatus.PENDING])
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments)
        handle = monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=5_000)
        await asyncio.sleep(0.03)
        assert monitor.cancel(job_id) is True
        outcome = await handle.wait()
        return outcome, registry.get(job_id)

    outcome, job = asyncio.run(run())
    assert outcome == MonitorOutcome.CANCELLED
    assert job.status == JobStatus.AWAITING_PAYMENT


def test_monitor_rejects_second_task_for_same_job() -> None:
    async def run() -> None:
        registry = JobRegistry()
        payments = ScriptedPayments([InvoiceStatus.PENDING])
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments)
        monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=5_000)
        with pytest.raises(RuntimeError):
            monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=5_000)
        assert monitor.active_job_ids() == [job_id]
        await monitor.cancel_all()
        assert monitor.live_count == 0

    asyncio.run(run())


def test_monitor_stops_when_job_left_awaiting_payment() -> None:
    async def run() -> tuple:
        registry = JobRegistry()
        payments = ScriptedPayments([InvoiceStatus.PENDING, InvoiceStatus.PAID])
        job_id, invoice = await _awaiting_job(registry, payments)
        await registry.transition(job_id, JobStatus.AWAITING_PAYMENT, JobStatus.CANCELLED)
        monitor = _monitor(registry, payments)
        outcome = await monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=5_000).wait()
        return outcome, registry.get(job_id)

    outcome, job = asyncio.run(run())
    assert outcome == MonitorOutcome.CANCELLED
    assert job.status == JobStatus.CANCELLED


def test_monitor_expires_job_while_wallet_check_hangs() -> None:
    async def run() -> tuple:
        registry = JobRegistry()
        payments = ScriptedPayments([InvoiceStatus.PAID], check_delay_seconds=10)
        job_id, invoice = await _awaiting_job(registry, payments)
        monitor = _monitor(registry, payments)
        handle = monitor.start(job_id, invoice, poll_interval_ms=10, timeout_ms=50)
        outcome = await asyncio.wait_for(handle.wait(), timeout=1.0)
        return outcome, registry.get(job_id), monitor.live_count

    outcome, job, live = asyncio.run(run())
    assert outcome == MonitorOutcome.EXPIRED
    assert job.status == JobStatus.EXPIRED
    assert job.invoice.status == InvoiceStatus.EXPIRED
    assert job.last_error.startswith("payment-timeout")
    assert live == 0
