"""Job-fulfillment engine for a decentralized compute-job node."""

from .bootstrap import build_orchestrator
from .models import (
    FeedbackStatus,
    Invoice,
    InvoiceStatus,
    JobRequest,
    JobState,
    JobStatus,
)
from .services import JobOrchestrator
from .settings import DVMConfig, load_config_from_env

__all__ = [
    "DVMConfig",
    "FeedbackStatus",
    "Invoice",
    "InvoiceStatus",
    "JobOrchestrator",
    "JobRequest",
    "JobState",
    "JobStatus",
    "build_orchestrator",
    "load_config_from_env",
]
