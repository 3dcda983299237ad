from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable

from dvm_node.errors import JobValidationError
from dvm_node.models import InputType, JobInput, JobRequest

from .messages import SignedMessage

# (sender public key, ciphertext) -> plaintext
Decryptor = Callable[[str, str], str]

_INPUT_TYPES = {item.value: item for item in InputType}


def coerce_message(raw: Any) -> SignedMessage:
    """Turn a transport payload into a SignedMessage, rejecting missing fields."""
    if isinstance(raw, SignedMessage):
        return raw
    if not isinstance(raw, dict):
        raise JobValidationError("message must be an object")
    payload = dict(raw)
    if "pubkey" in payload and "sender_key" not in payload:
        payload["sender_key"] = payload.pop("pubkey")
    if "sig" in payload and "signature" not in payload:
        payload["signature"] = payload.pop("sig")
    for field_name in ("id", "sender_key", "kind", "created_at"):
        if payload.get(field_name) in (None, ""):
            raise JobValidationError(f"message is missing required field: {field_name}")
    try:
        return SignedMessage.model_validate(payload)
    except ValueError as exc:
        raise JobValidationError(f"malformed message: {exc}") from exc


def parse_job_request(
    message: SignedMessage,
    *,
    decryptor: Decryptor | None = None,
    received_at: datetime | None = None,
) -> JobRequest:
    tags: list[list[str]] = message.tags
    encrypted = any(tag and tag[0] == "encrypted" for tag in message.tags)
    if encrypted:
        tags = _decrypt_tags(message, decryptor)

    inputs: list[JobInput] = []
    params: dict[str, str] = {}
    output_mime_type = "text/plain"
    bid: int | None = None
    relay_hints: list[str] = []

    for tag in tags:
        if not tag:
            continue
        name = tag[0]
        if name == "i":
            inputs.append(_parse_input(tag))
        elif name == "param":
            if len(tag) < 3:
                raise JobValidationError("param tag requires a name and a value")
            params[tag[1]] = tag[2]
        elif name == "output" and len(tag) >= 2 and tag[1]:
            output_mime_type = tag[1]
        elif name == "bid" and len(tag) >= 2:
            bid = _parse_bid(tag[1])
        elif name == "relays":
            relay_hints.extend(relay for relay in tag[1:] if relay)

    if not inputs:
        raise JobValidationError("No inputs provided.")

    return JobRequest(
        id=message.id,
        requester_key=message.sender_key,
        job_kind=message.kind,
        inputs=tuple(inputs),
        params=params,
        offered_price_millisats=bid,
        relay_hints=tuple(relay_hints),
        output_mime_type=output_mime_type,
        encrypted=encrypted,
        received_at=received_at or datetime.now(timezone.utc),
    )


def _parse_input(tag: list[str]) -> JobInput:
    if len(tag) < 3:
        raise JobValidationError("input tag requires a value and a type")
    input_type = _INPUT_TYPES.get(tag[2])
    if input_type is None:
        raise JobValidationError(f"unsupported input type: {tag[2]}")
    return JobInput(
        value=tag[1],
        input_type=input_type,
        relay=tag[3] if len(tag) > 3 and tag[3] else None,
        marker=tag[4] if len(tag) > 4 and tag[4] else None,
    )


def _parse_bid(raw: str) -> int | None:
    try:
        value = int(raw, 10)
    except ValueError as exc:
        raise JobValidationError(f"bid must be an integer amount of millisats: {raw!r}") from exc
    return value if value > 0 else None


def _decrypt_tags(message: SignedMessage, decryptor: Decryptor | None) -> list[list[str]]:
    if decryptor is None:
        raise JobValidationError("encrypted request received but no decryption key is configured")
    try:
        plaintext = decryptor(message.sender_key, message.content)
    except Exception as exc:
        raise JobValidationError("Failed to decrypt request content") from exc
    try:
        decoded = json.loads(plaintext)
    except json.JSONDecodeError as exc:
        raise JobValidationError("Failed to parse decrypted JSON tags") from exc
    if not isinstance(decoded, list) or not all(
        isinstance(tag, list) and all(isinstance(part, str) for part in tag) for tag in decoded
    ):
        raise JobValidationError("decrypted content must be a list of string tags")
    return decoded
