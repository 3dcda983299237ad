"""Prompt screening for inbound jobs and redaction of secrets in log lines."""

from __future__ import annotations

import re
from collections.abc import Iterable

NSEC_PATTERN = re.compile(r"\bnsec1[02-9ac-hj-np-z]{58}\b")
LIGHTNING_INVOICE_PATTERN = re.compile(r"\bln(?:bcrt|bc|tb)[0-9a-z]{20,}\b", re.IGNORECASE)
CREDENTIAL_PATTERNS = (
    re.compile(r"\bsk-[A-Za-z0-9_-]{20,}\b"),
    re.compile(r"\bBearer\s+[A-Za-z0-9._\-]{20,}\b", re.IGNORECASE),
    re.compile(r"\bx-api-key[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9]{16,}", re.IGNORECASE),
)

REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (NSEC_PATTERN, "[NSEC]"),
    (LIGHTNING_INVOICE_PATTERN, "[INVOICE]"),
    *((pattern, "[REDACTED]") for pattern in CREDENTIAL_PATTERNS),
)

DEFAULT_BLOCKED_PROMPT_PATTERNS = (
    re.compile(r"\bignore\s+(all\s+)?previous\s+instructions\b.*\b(private|secret)\s+key\b", re.IGNORECASE),
    re.compile(r"\breveal\s+(your|the)\s+(nsec|seed\s+phrase|mnemonic)\b", re.IGNORECASE),
)


class PolicyViolationError(RuntimeError):
    def __init__(self, pattern: re.Pattern[str]) -> None:
        super().__init__(f"prompt matches a blocked pattern: {pattern.pattern}")
        self.pattern = pattern


def mask_sensitive_text(text: str) -> str:
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def enforce_prompt_policy(
    prompt: str,
    blocked_patterns: Iterable[re.Pattern[str]] | None = None,
) -> None:
    """Raise PolicyViolationError on the first blocked pattern found in ``prompt``."""
    patterns = DEFAULT_BLOCKED_PROMPT_PATTERNS if blocked_patterns is None else blocked_patterns
    for pattern in patterns:
        if pattern.search(prompt):
            raise PolicyViolationError(pattern)
