"""Runtime building blocks: backoff, cancellable tasks, audit log."""

from .audit import AuditEntry, JsonlAuditLogger
from .backoff import BackoffPolicy
from .tasks import CancellationToken, ScheduledTask, TaskSupervisor

__all__ = [
    "AuditEntry",
    "BackoffPolicy",
    "CancellationToken",
    "JsonlAuditLogger",
    "ScheduledTask",
    "TaskSupervisor",
]
