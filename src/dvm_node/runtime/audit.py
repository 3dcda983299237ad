from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AuditEntry:
    job_id: str
    category: str
    action: str
    metadata: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=_now_iso)

    def to_line(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=True, default=str, sort_keys=True) + "\n"


class JsonlAuditLogger:
    """Append-only JSON-lines trail of job transitions and publications.

    A failed write is logged and counted in ``dropped``; it never reaches the caller.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser().resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.dropped = 0
        self._lock = Lock()

    def log(
        self,
        *,
        job_id: str,
        category: str,
        action: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        entry = AuditEntry(job_id=job_id, category=category, action=action, metadata=dict(metadata or {}))
        try:
            with self._lock, self.path.open("a", encoding="utf-8") as file:
                file.write(entry.to_line())
        except OSError as exc:
            self.dropped += 1
            logger.warning("audit entry %s/%s for job %s dropped: %s", category, action, job_id, exc)

    def read_entries(self, job_id: str | None = None, *, category: str | None = None) -> list[AuditEntry]:
        if not self.path.exists():
            return []
        entries: list[AuditEntry] = []
        with self.path.open(encoding="utf-8") as file:
            for line in file:
                raw = line.strip()
                if not raw:
                    continue
                try:
                    entry = AuditEntry(**json.loads(raw))
                except (json.JSONDecodeError, TypeError):
                    # torn trailing line from an interrupted write
                    continue
                if job_id is not None and entry.job_id != job_id:
                    continue
                if category is not None and entry.category != category:
                    continue
                entries.append(entry)
        return entries
