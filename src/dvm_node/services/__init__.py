from .executor import InferenceExecutor, InferenceResult, normalize_provider_error
from .invoice_monitor import InvoiceMonitor, MonitorOutcome
from .job_kinds import JobKindFamily, JobKindSpec, JobKindTable, PromptPlan, default_job_kinds
from .listener import JobListener, RecentIds
from .orchestrator import JobOrchestrator
from .publisher import ResultPublisher, is_transient_publish_failure

__all__ = [
    "InferenceExecutor",
    "InferenceResult",
    "InvoiceMonitor",
    "JobKindFamily",
    "JobKindSpec",
    "JobKindTable",
    "JobListener",
    "JobOrchestrator",
    "MonitorOutcome",
    "PromptPlan",
    "RecentIds",
    "ResultPublisher",
    "default_job_kinds",
    "is_transient_publish_failure",
    "normalize_provider_error",
]
