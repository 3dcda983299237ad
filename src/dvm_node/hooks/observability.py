from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
    at: datetime
    category: str
    action: str
    label: str | None = None
    value: Any = None


class Telemetry(Protocol):
    def record(
        self,
        category: str,
        action: str,
        label: str | None = None,
        value: Any = None,
    ) -> None: ...


class EventLogger:
    """In-memory telemetry sink, optionally forwarding every event to ``sink``."""

    def __init__(self, sink: Callable[[TelemetryEvent], None] | None = None) -> None:
        self._events: list[TelemetryEvent] = []
        self._sink = sink

    def record(
        self,
        category: str,
        action: str,
        label: str | None = None,
        value: Any = None,
    ) -> None:
        event = TelemetryEvent(
            at=datetime.now(timezone.utc),
            category=category,
            action=action,
            label=label,
            value=value,
        )
        self._events.append(event)
        if self._sink:
            self._sink(event)

    def list_events(
        self,
        *,
        category: str | None = None,
        label: str | None = None,
    ) -> list[TelemetryEvent]:
        return [
            event
            for event in self._events
            if (category is None or event.category == category)
            and (label is None or event.label == label)
        ]

    def clear(self) -> None:
        self._events.clear()


class SafeTelemetry:
    """Fire-and-forget wrapper: errors raised by the wrapped collaborator are swallowed."""

    def __init__(self, inner: Telemetry | None = None) -> None:
        self.inner = inner if inner is not None else EventLogger()

    def record(
        self,
        category: str,
        action: str,
        label: str | None = None,
        value: Any = None,
    ) -> None:
        try:
            self.inner.record(category, action, label, value)
        except Exception:
            logger.debug("telemetry record dropped: %s/%s", category, action, exc_info=True)
