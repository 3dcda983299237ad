from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


JOB_REQUEST_KIND_MIN = 5000
JOB_REQUEST_KIND_MAX = 5999
JOB_RESULT_KIND_MIN = 6000
JOB_RESULT_KIND_MAX = 6999
JOB_FEEDBACK_KIND = 7000


class JobStatus(str, Enum):
    RECEIVED = "received"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.EXPIRED, JobStatus.CANCELLED}
)


ALLOWED_STATUS_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.RECEIVED: {
        JobStatus.AWAITING_PAYMENT,
        JobStatus.PROCESSING,
        JobStatus.FAILED,
    },
    JobStatus.AWAITING_PAYMENT: {
        JobStatus.PAID,
        JobStatus.EXPIRED,
        JobStatus.CANCELLED,
        JobStatus.FAILED,
    },
    JobStatus.PAID: {
        JobStatus.PROCESSING,
        JobStatus.FAILED,
    },
    JobStatus.PROCESSING: {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    },
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.EXPIRED: set(),
    JobStatus.CANCELLED: set(),
}


def is_transition_allowed(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_STATUS_TRANSITIONS[current]


class InputType(str, Enum):
    TEXT = "text"
    URL = "url"
    EVENT = "event"
    JOB = "job"


class FeedbackStatus(str, Enum):
    PAYMENT_REQUIRED = "payment-required"
    PROCESSING = "processing"
    ERROR = "error"
    SUCCESS = "success"
    PARTIAL = "partial"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    input_type: InputType
    relay: str | None = None
    marker: str | None = None

    def as_tag(self) -> list[str]:
        tag = ["i", self.value, self.input_type.value]
        if self.relay is not None or self.marker is not None:
            tag.append(self.relay or "")
        if self.marker is not None:
            tag.append(self.marker)
        return tag


class JobRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    requester_key: str
    job_kind: int
    inputs: tuple[JobInput, ...]
    params: dict[str, str] = Field(default_factory=dict)
    offered_price_millisats: int | None = None
    relay_hints: tuple[str, ...] = ()
    output_mime_type: str = "text/plain"
    encrypted: bool = False
    received_at: datetime = Field(default_factory=_utcnow)

    def text_inputs(self) -> list[str]:
        return [item.value for item in self.inputs if item.input_type == InputType.TEXT and item.value]

    def param(self, name: str, default: str | None = None) -> str | None:
        return self.params.get(name, default)

    @property
    def wants_streaming(self) -> bool:
        return self.params.get("stream", "").strip().lower() in {"1", "true", "yes"}


class Invoice(BaseModel):
    payment_hash: str
    encoded_invoice: str
    amount_millisats: int
    expires_at: datetime
    status: InvoiceStatus = InvoiceStatus.PENDING


class JobEvent(BaseModel):
    at: datetime = Field(default_factory=_utcnow)
    status: JobStatus
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobState(BaseModel):
    job_id: str
    request: JobRequest
    status: JobStatus = JobStatus.RECEIVED
    invoice: Invoice | None = None
    attempts: dict[str, int] = Field(default_factory=dict)
    last_error: str | None = None
    result_published: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    history: list[JobEvent] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class UsageInfo(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ResultPayload(BaseModel):
    content: str
    usage: UsageInfo = Field(default_factory=UsageInfo)
    amount_millisats: int | None = None
    encoded_invoice: str | None = None
