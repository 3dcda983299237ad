from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, model_validator

from dvm_node.protocol.nip04 import EncryptionError, derive_public_key
from dvm_node.runtime.backoff import BackoffPolicy

DEFAULT_RELAYS = ["wss://relay.damus.io", "wss://relay.nostr.band"]
DEFAULT_JOB_KINDS = [5050, 5100]


class DVMConfig(BaseModel):
    supported_job_kinds: list[int] = Field(default_factory=lambda: list(DEFAULT_JOB_KINDS))
    price_per_kind: dict[int, int] = Field(default_factory=dict)
    relays: list[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    signing_key: str | None = None
    public_key: str | None = None

    poll_interval_ms: int = 2_000
    payment_timeout_ms: int = 600_000
    max_poll_failures: int = 5
    poll_backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    invoice_creation_attempts: int = 3
    invoice_backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    max_publish_attempts: int = 4
    publish_backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    reconnect_backoff: BackoffPolicy = Field(
        default_factory=lambda: BackoffPolicy(initial_delay_ms=500, multiplier=2.0, max_delay_ms=30_000)
    )

    max_inference_seconds: float = 120.0
    stream_feedback_every: int = 10
    send_processing_feedback: bool = True
    default_model: str = "gemma2:1b"

    eviction_grace_seconds: float = 300.0
    stop_grace_seconds: float = 5.0
    dedup_window_size: int = 2_048
    request_lookback_seconds: int = 300
    exempt_requesters: set[str] = Field(default_factory=set)
    blocked_requesters: set[str] = Field(default_factory=set)
    invoice_memo_prefix: str = "NIP-90 Job:"

    @model_validator(mode="after")
    def validate_config(self) -> "DVMConfig":
        if not self.supported_job_kinds:
            raise ValueError("supported_job_kinds must not be empty")
        if any(price < 0 for price in self.price_per_kind.values()):
            raise ValueError("price_per_kind values must be >= 0")
        if self.poll_interval_ms <= 0 or self.payment_timeout_ms <= 0:
            raise ValueError("poll_interval_ms and payment_timeout_ms must be positive")
        if self.max_poll_failures < 0:
            raise ValueError("max_poll_failures must be >= 0")
        if self.max_publish_attempts < 1 or self.invoice_creation_attempts < 1:
            raise ValueError("attempt limits must be >= 1")
        if self.max_inference_seconds <= 0:
            raise ValueError("max_inference_seconds must be positive")
        if self.stream_feedback_every < 1:
            raise ValueError("stream_feedback_every must be >= 1")
        if self.eviction_grace_seconds < 0 or self.stop_grace_seconds < 0:
            raise ValueError("grace periods must be >= 0")
        if self.dedup_window_size < 1:
            raise ValueError("dedup_window_size must be >= 1")
        if self.signing_key and not self.public_key:
            try:
                self.public_key = derive_public_key(self.signing_key)
            except EncryptionError as exc:
                raise ValueError(f"signing_key is invalid: {exc}") from exc
        return self

    def price_for(self, job_kind: int) -> int:
        return self.price_per_kind.get(job_kind, 0)

    @property
    def node_key(self) -> str:
        return self.public_key or ""


def _env_text(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _env_flag(environ: Mapping[str, str], name: str, default: str = "0") -> bool:
    return environ.get(name, default).strip() == "1"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.replace("\n", ",").split(",") if item.strip()]


def _parse_kinds(raw: str) -> list[int]:
    kinds: list[int] = []
    for item in _split_csv(raw):
        try:
            kinds.append(int(item))
        except ValueError:
            continue
    return kinds


def _parse_prices(raw: str) -> dict[int, int]:
    prices: dict[int, int] = {}
    for item in _split_csv(raw):
        kind, separator, amount = item.partition(":")
        if not separator:
            raise ValueError(f"price entry must look like <kind>:<millisats>, got {item!r}")
        prices[int(kind.strip())] = int(amount.strip())
    return prices


def load_config_from_env(environ: Mapping[str, str] | None = None) -> DVMConfig:
    env = os.environ if environ is None else environ
    values: dict = {}

    kinds = _env_text(env, "DVM_SUPPORTED_JOB_KINDS")
    if kinds:
        parsed_kinds = _parse_kinds(kinds)
        if parsed_kinds:
            values["supported_job_kinds"] = parsed_kinds
    prices = _env_text(env, "DVM_PRICE_PER_KIND")
    if prices:
        values["price_per_kind"] = _parse_prices(prices)
    relays = _env_text(env, "DVM_RELAYS")
    if relays:
        parsed_relays = _split_csv(relays)
        if parsed_relays:
            values["relays"] = parsed_relays
    for name, field_name in (
        ("DVM_SIGNING_KEY", "signing_key"),
        ("DVM_PUBLIC_KEY", "public_key"),
        ("DVM_DEFAULT_MODEL", "default_model"),
        ("DVM_INVOICE_MEMO_PREFIX", "invoice_memo_prefix"),
    ):
        text = _env_text(env, name)
        if text:
            values[field_name] = text
    for name, field_name in (
        ("DVM_POLL_INTERVAL_MS", "poll_interval_ms"),
        ("DVM_PAYMENT_TIMEOUT_MS", "payment_timeout_ms"),
        ("DVM_MAX_POLL_FAILURES", "max_poll_failures"),
        ("DVM_MAX_PUBLISH_ATTEMPTS", "max_publish_attempts"),
        ("DVM_INVOICE_CREATION_ATTEMPTS", "invoice_creation_attempts"),
        ("DVM_STREAM_FEEDBACK_EVERY", "stream_feedback_every"),
        ("DVM_DEDUP_WINDOW_SIZE", "dedup_window_size"),
        ("DVM_REQUEST_LOOKBACK_SECONDS", "request_lookback_seconds"),
    ):
        text = _env_text(env, name)
        if text:
            values[field_name] = int(text)
    for name, field_name in (
        ("DVM_MAX_INFERENCE_SECONDS", "max_inference_seconds"),
        ("DVM_EVICTION_GRACE_SECONDS", "eviction_grace_seconds"),
        ("DVM_STOP_GRACE_SECONDS", "stop_grace_seconds"),
    ):
        text = _env_text(env, name)
        if text:
            values[field_name] = float(text)
    for name, field_name in (
        ("DVM_EXEMPT_REQUESTERS", "exempt_requesters"),
        ("DVM_BLOCKED_REQUESTERS", "blocked_requesters"),
    ):
        text = _env_text(env, name)
        if text:
            values[field_name] = set(_split_csv(text))
    if "DVM_SEND_PROCESSING_FEEDBACK" in env:
        values["send_processing_feedback"] = _env_flag(env, "DVM_SEND_PROCESSING_FEEDBACK", "1")

    return DVMConfig(**values)
