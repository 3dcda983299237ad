from __future__ import annotations

from pydantic import BaseModel, model_validator


class BackoffPolicy(BaseModel):
    initial_delay_ms: int = 250
    multiplier: float = 2.0
    max_delay_ms: int = 10_000

    @model_validator(mode="after")
    def validate_policy(self) -> "BackoffPolicy":
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self

    def delay_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        exponent = max(0, attempt - 1)
        delay_ms = min(self.max_delay_ms, self.initial_delay_ms * (self.multiplier**exponent))
        return delay_ms / 1000.0
