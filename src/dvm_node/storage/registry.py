"""In-memory job registry.

The registry is the only state shared between the listener, the orchestrator,
the invoice monitor and the publisher. Each job has its own asyncio lock, so
mutations of one job are serialized while different jobs progress independently.
Callers only ever receive deep copies of a ``JobState``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from dvm_node.errors import InvalidTransitionError, JobAlreadyExistsError, JobNotFoundError
from dvm_node.models import (
    ALLOWED_STATUS_TRANSITIONS,
    Invoice,
    JobEvent,
    JobRequest,
    JobState,
    JobStatus,
)

PATCHABLE_FIELDS = frozenset({"invoice", "last_error", "attempts"})


class JobRegistry:
    def __init__(self) -> None:
        self._jobs: dict[str, JobState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def create(self, job_id: str, request: JobRequest) -> JobState:
        if job_id in self._jobs:
            raise JobAlreadyExistsError(f"job already exists: {job_id}")
        job = JobState(
            job_id=job_id,
            request=request,
            history=[JobEvent(status=JobStatus.RECEIVED, message="Job admitted")],
        )
        self._jobs[job_id] = job
        self._locks[job_id] = asyncio.Lock()
        return job.model_copy(deep=True)

    async def transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        patch: dict[str, Any] | None = None,
        *,
        message: str = "",
    ) -> JobState:
        async with self._lock_for(job_id):
            job = self._require(job_id)
            if job.status != from_status:
                raise InvalidTransitionError(
                    f"job {job_id} is {job.status.value}, expected {from_status.value}"
                )
            allowed = ALLOWED_STATUS_TRANSITIONS[from_status]
            if to_status not in allowed:
                raise InvalidTransitionError(
                    f"Invalid transition: {from_status.value} -> {to_status.value}. "
                    f"Allowed: {sorted(status.value for status in allowed)}"
                )
            self._apply_patch(job, patch)
            job.status = to_status
            job.updated_at = datetime.now(timezone.utc)
            job.history.append(
                JobEvent(status=to_status, message=message, metadata=dict(patch or {}))
            )
            return job.model_copy(deep=True)

    async def update(self, job_id: str, patch: dict[str, Any]) -> JobState:
        async with self._lock_for(job_id):
            job = self._require(job_id)
            self._apply_patch(job, patch)
            job.updated_at = datetime.now(timezone.utc)
            return job.model_copy(deep=True)

    async def increment_attempt(self, job_id: str, phase: str) -> int:
        async with self._lock_for(job_id):
            job = self._require(job_id)
            job.attempts[phase] = job.attempts.get(phase, 0) + 1
            job.updated_at = datetime.now(timezone.utc)
            return job.attempts[phase]

    async def mark_result_published(self, job_id: str) -> bool:
        """Set ``result_published``; return False when it was already set."""
        async with self._lock_for(job_id):
            job = self._require(job_id)
            if job.result_published:
                return False
            job.result_published = True
            job.updated_at = datetime.now(timezone.utc)
            return True

    def get(self, job_id: str) -> JobState | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list(self, predicate: Callable[[JobState], bool] | None = None) -> list[JobState]:
        jobs = [job for job in self._jobs.values() if predicate is None or predicate(job)]
        jobs.sort(key=lambda job: job.created_at)
        return [job.model_copy(deep=True) for job in jobs]

    async def evict(self, job_id: str) -> bool:
        lock = self._locks.get(job_id)
        if lock is None:
            return False
        async with lock:
            removed = self._jobs.pop(job_id, None) is not None
            self._locks.pop(job_id, None)
            return removed

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return lock

    def _require(self, job_id: str) -> JobState:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job not found: {job_id}")
        return job

    @staticmethod
    def _apply_patch(job: JobState, patch: dict[str, Any] | None) -> None:
        if not patch:
            return
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"fields cannot be patched: {sorted(unknown)}")
        if "invoice" in patch:
            invoice = patch["invoice"]
            if isinstance(invoice, Invoice):
                invoice = invoice.model_copy()
            elif invoice is not None:
                invoice = Invoice.model_validate(invoice)
            job.invoice = invoice
        if "last_error" in patch:
            job.last_error = patch["last_error"]
        if "attempts" in patch:
            job.attempts.update(patch["attempts"])
