import asyncio
from datetime import datetime, timezone

import pytest

from dvm_node.errors import InvalidTransitionError, JobAlreadyExistsError, JobNotFoundError
from dvm_node.models import (
    ALLOWED_STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    Invoice,
    JobStatus,
    is_transition_allowed,
)
from dvm_node.storage import JobRegistry

from support import make_request


def test_transition_table_has_no_exit_from_terminal_statuses() -> None:
    for status in TERMINAL_STATUSES:
        assert ALLOWED_STATUS_TRANSITIONS[status] == set()
    assert is_transition_allowed(JobStatus.RECEIVED, JobStatus.PROCESSING)
    assert is_transition_allowed(JobStatus.AWAITING_PAYMENT, JobStatus.EXPIRED)
    assert not is_transition_allowed(JobStatus.PAID, JobStatus.COMPLETED)
    assert not is_transition_allowed(JobStatus.RECEIVED, JobStatus.COMPLETED)


def test_registry_create_and_duplicate() -> None:
    async def run() -> None:
        registry = JobRegistry()
        request = make_request()
        job = await registry.create(request.id, request)
        assert job.status == JobStatus.RECEIVED
        assert request.id in registry
        with pytest.raises(JobAlreadyExistsError):
            await registry.create(request.id, request)
        assert len(registry) == 1

    asyncio.run(run())


def test_registry_transition_checks_current_status_and_table() -> None:
    async def run() -> None:
        registry = JobRegistry()
        request = make_request()
        await registry.create(request.id, request)

        with pytest.raises(InvalidTransitionError):
            await registry.transition(request.id, JobStatus.PAID, JobStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            await registry.transition(request.id, JobStatus.RECEIVED, JobStatus.COMPLETED)

        await registry.transition(request.id, JobStatus.RECEIVED, JobStatus.PROCESSING, message="free")
        done = await registry.transition(
            request.id,
            JobStatus.PROCESSING,
            JobStatus.FAILED,
            {"last_error": "inference: boom"},
        )
        assert done.is_terminal
        assert done.last_error == "inference: boom"
        assert [event.status for event in done.history] == [
            JobStatus.RECEIVED,
            JobStatus.PROCESSING,
            JobStatus.FAILED,
        ]
        with pytest.raises(InvalidTransitionError):
            await registry.transition(request.id, JobStatus.FAILED, JobStatus.PROCESSING)

    asyncio.run(run())


def test_registry_serializes_concurrent_transitions_per_job() -> None:
    async def run() -> list:
        registry = JobRegistry()
        request = make_request()
        await registry.create(request.id, request)
        await registry.transition(request.id, JobStatus.RECEIVED, JobStatus.AWAITING_PAYMENT)
        return await asyncio.gather(
            registry.transition(request.id, JobStatus.AWAITING_PAYMENT, JobStatus.PAID),
            registry.transition(request.id, JobStatus.AWAITING_PAYMENT, JobStatus.EXPIRED),
            return_exceptions=True,
        )

    results = asyncio.run(run())
    failures = [item for item in results if isinstance(item, InvalidTransitionError)]
    assert len(failures) == 1


def test_registry_returns_copies_and_patches_known_fields_only() -> None:
    async def run() -> None:
        registry = JobRegistry()
        request = make_request()
        await registry.create(request.id, request)
        invoice = Invoice(
            payment_hash="ff" * 32,
            encoded_invoice="lnbc1",
            amount_millisats=1000,
            expires_at=datetime.now(timezone.utc),
        )
        await registry.transition(
            request.id,
            JobStatus.RECEIVED,
            JobStatus.AWAITING_PAYMENT,
            {"invoice": invoice},
        )
        invoice.amount_millisats = 5
        snapshot = registry.get(request.id)
        assert snapshot is not None
        assert snapshot.invoice is not None
        assert snapshot.invoice.amount_millisats == 1000

        snapshot.status = JobStatus.COMPLETED
        assert registry.get(request.id).status == JobStatus.AWAITING_PAYMENT

        with pytest.raises(ValueError):
            await registry.update(request.id, {"status": JobStatus.COMPLETED})

        assert await registry.increment_attempt(request.id, "publish") == 1
        assert await registry.increment_attempt(request.id, "publish") == 2
        assert await registry.mark_result_published(request.id) is True
        assert await registry.mark_result_published(request.id) is False

    asyncio.run(run())


def test_registry_list_and_evict() -> None:
    async def run() -> None:
        registry = JobRegistry()
        first = make_request()
        second = make_request()
        await registry.create(first.id, first)
        await registry.create(second.id, second)
        await registry.transition(first.id, JobStatus.RECEIVED, JobStatus.PROCESSING)

        processing = registry.list(lambda job: job.status == JobStatus.PROCESSING)
        assert [job.job_id for job in processing] == [first.id]

        assert await registry.evict(first.id) is True
        assert await registry.evict(first.id) is False
        assert registry.get(first.id) is None
        with pytest.raises(JobNotFoundError):
            await registry.transition(first.id, JobStatus.PROCESSING, JobStatus.COMPLETED)
        assert len(registry) == 1

    asyncio.run(run())
