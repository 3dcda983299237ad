from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from dvm_node.models import Invoice, JobEvent, JobState


class EngineStatusResponse(BaseModel):
    running: bool
    supported_job_kinds: list[int]
    relays: list[str]
    public_key: str | None = None
    active_jobs: int = 0
    live_tasks: int = 0


class JobStatusResponse(BaseModel):
    job_id: str
    job_kind: int
    requester_key: str
    status: str
    invoice: Invoice | None = None
    attempts: dict[str, int] = Field(default_factory=dict)
    last_error: str | None = None
    result_published: bool = False
    created_at: datetime
    updated_at: datetime
    history_count: int = Field(default=0)
    last_event: JobEvent | None = None

    @classmethod
    def from_state(cls, job: JobState) -> "JobStatusResponse":
        return cls(
            job_id=job.job_id,
            job_kind=job.request.job_kind,
            requester_key=job.request.requester_key,
            status=job.status.value,
            invoice=job.invoice,
            attempts=job.attempts,
            last_error=job.last_error,
            result_published=job.result_published,
            created_at=job.created_at,
            updated_at=job.updated_at,
            history_count=len(job.history),
            last_event=job.history[-1] if job.history else None,
        )


class JobStatisticsResponse(BaseModel):
    total_jobs: int
    active_jobs: int
    by_status: dict[str, int]
    revenue_millisats: int
    live_tasks: int


class LLMTrackedModelUsageResponse(BaseModel):
    provider: str
    model: str
    total_calls: int
    success_calls: int
    error_calls: int
    total_tokens: int
    window_calls: int
    window_total_tokens: int
    average_duration_ms: float | None = None
    job_kinds: dict[str, int] = Field(default_factory=dict)
    error_kinds: dict[str, int] = Field(default_factory=dict)
    last_called_at: datetime | None = None


class LLMUsageSnapshotResponse(BaseModel):
    window_minutes: int
    generated_at: datetime
    model_count: int
    models: list[LLMTrackedModelUsageResponse]
