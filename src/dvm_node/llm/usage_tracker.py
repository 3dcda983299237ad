from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock


@dataclass
class _UsageEvent:
    provider: str
    model: str
    timestamp: datetime
    tokens: int


@dataclass
class _UsageTotals:
    total_calls: int = 0
    success_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    timed_calls: int = 0
    total_duration_ms: float = 0.0
    job_kinds: Counter[int] = field(default_factory=Counter)
    error_kinds: Counter[str] = field(default_factory=Counter)
    last_called_at: datetime | None = None

    @property
    def error_calls(self) -> int:
        return self.total_calls - self.success_calls

    def average_duration_ms(self) -> float | None:
        if not self.timed_calls:
            return None
        return round(self.total_duration_ms / self.timed_calls, 1)


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LLMUsageTracker:
    """Per provider/model inference totals plus a sliding window of recent calls."""

    def __init__(self, *, window_minutes: int = 60) -> None:
        self.window_minutes = max(1, window_minutes)
        self._window = timedelta(minutes=self.window_minutes)
        self._events: deque[_UsageEvent] = deque()
        self._totals: dict[tuple[str, str], _UsageTotals] = {}
        self._lock = Lock()

    def record_call(
        self,
        *,
        provider: str,
        model: str,
        success: bool,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        job_kind: int | None = None,
        duration_ms: float | None = None,
        error_kind: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        model_id = model.strip()
        if not model_id:
            return
        event_time = _as_utc(timestamp)
        prompt_tokens = max(0, prompt_tokens)
        completion_tokens = max(0, completion_tokens)

        with self._lock:
            self._prune_locked(now=event_time)
            totals = self._totals.setdefault((provider, model_id), _UsageTotals())
            totals.total_calls += 1
            if success:
                totals.success_calls += 1
            else:
                totals.error_kinds[error_kind or "unknown"] += 1
            totals.prompt_tokens += prompt_tokens
            totals.completion_tokens += completion_tokens
            if duration_ms is not None:
                totals.timed_calls += 1
                totals.total_duration_ms += max(0.0, duration_ms)
            if job_kind is not None:
                totals.job_kinds[job_kind] += 1
            totals.last_called_at = event_time
            self._events.append(
                _UsageEvent(
                    provider=provider,
                    model=model_id,
                    timestamp=event_time,
                    tokens=prompt_tokens + completion_tokens,
                )
            )

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._totals.clear()

    def snapshot(self, *, provider: str | None = None, model: str | None = None) -> dict:
        now = datetime.now(timezone.utc)
        model_filter = model.strip() if isinstance(model, str) and model.strip() else None

        with self._lock:
            self._prune_locked(now=now)
            window_calls: Counter[tuple[str, str]] = Counter()
            window_tokens: Counter[tuple[str, str]] = Counter()
            for event in self._events:
                key = (event.provider, event.model)
                window_calls[key] += 1
                window_tokens[key] += event.tokens

            models = []
            for key, totals in self._totals.items():
                row_provider, row_model = key
                if provider and row_provider != provider:
                    continue
                if model_filter and row_model != model_filter:
                    continue
                models.append(
                    {
                        "provider": row_provider,
                        "model": row_model,
                        "total_calls": totals.total_calls,
                        "success_calls": totals.success_calls,
                        "error_calls": totals.error_calls,
                        "total_tokens": totals.prompt_tokens + totals.completion_tokens,
                        "window_calls": window_calls[key],
                        "window_total_tokens": window_tokens[key],
                        "average_duration_ms": totals.average_duration_ms(),
                        "job_kinds": {str(kind): count for kind, count in sorted(totals.job_kinds.items())},
                        "error_kinds": dict(sorted(totals.error_kinds.items())),
                        "last_called_at": totals.last_called_at.isoformat() if totals.last_called_at else None,
                    }
                )

        models.sort(key=lambda row: (row["provider"], row["model"]))
        return {
            "window_minutes": self.window_minutes,
            "generated_at": now.isoformat(),
            "model_count": len(models),
            "models": models,
        }

    def _prune_locked(self, *, now: datetime) -> None:
        cutoff = now - self._window
        while self._events and self._events[0].timestamp < cutoff:
            self._events.popleft()
