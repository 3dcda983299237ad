"""Telemetry and prompt-policy hooks."""

from .observability import EventLogger, SafeTelemetry, Telemetry, TelemetryEvent
from .security import PolicyViolationError, enforce_prompt_policy, mask_sensitive_text

__all__ = [
    "EventLogger",
    "PolicyViolationError",
    "SafeTelemetry",
    "Telemetry",
    "TelemetryEvent",
    "enforce_prompt_policy",
    "mask_sensitive_text",
]
