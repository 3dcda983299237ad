from __future__ import annotations

import hashlib
import json
import time
from typing import Callable

from pydantic import BaseModel, Field

from dvm_node.models import (
    JOB_FEEDBACK_KIND,
    JOB_RESULT_KIND_MAX,
    JOB_RESULT_KIND_MIN,
    FeedbackStatus,
    JobRequest,
)

STATUS_EXTRA_MAX_CHARS = 256

Signer = Callable[[str], str]


class SignedMessage(BaseModel):
    id: str
    sender_key: str
    kind: int
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""
    created_at: int
    signature: str = ""

    def first_tag(self, name: str) -> list[str] | None:
        for tag in self.tags:
            if tag and tag[0] == name:
                return tag
        return None

    def tag_value(self, name: str) -> str | None:
        tag = self.first_tag(name)
        if tag is None or len(tag) < 2:
            return None
        return tag[1]


def compute_message_id(
    *,
    sender_key: str,
    created_at: int,
    kind: int,
    tags: list[list[str]],
    content: str,
) -> str:
    serialized = json.dumps(
        [0, sender_key, created_at, kind, tags, content],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def result_kind_for(request_kind: int) -> int:
    return max(JOB_RESULT_KIND_MIN, min(JOB_RESULT_KIND_MAX, request_kind + 1000))


class MessageBuilder:
    """Builds outbound result and feedback messages on behalf of one node key."""

    def __init__(
        self,
        public_key: str,
        *,
        signer: Signer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.public_key = public_key
        self.signer = signer
        self.clock = clock

    def feedback(
        self,
        request: JobRequest,
        status: FeedbackStatus,
        detail: str | None = None,
        *,
        amount_millisats: int | None = None,
        encoded_invoice: str | None = None,
        partial_content: str | None = None,
    ) -> SignedMessage:
        status_tag = ["status", status.value]
        if detail and status in {
            FeedbackStatus.ERROR,
            FeedbackStatus.PROCESSING,
            FeedbackStatus.PAYMENT_REQUIRED,
        }:
            status_tag.append(detail[:STATUS_EXTRA_MAX_CHARS])
        tags = [["e", request.id], ["p", request.requester_key], status_tag]
        if amount_millisats is not None:
            amount_tag = ["amount", str(amount_millisats)]
            if encoded_invoice:
                amount_tag.append(encoded_invoice)
            tags.append(amount_tag)

        content = ""
        if partial_content is not None:
            content = partial_content
        elif status == FeedbackStatus.PARTIAL:
            content = detail or ""
        elif status == FeedbackStatus.ERROR and detail and len(detail) > STATUS_EXTRA_MAX_CHARS:
            content = detail
        return self._finalize(kind=JOB_FEEDBACK_KIND, tags=tags, content=content)

    def result(
        self,
        request: JobRequest,
        content: str,
        *,
        amount_millisats: int | None = None,
        encoded_invoice: str | None = None,
        encrypted: bool = False,
    ) -> SignedMessage:
        tags = [["e", request.id], ["p", request.requester_key]]
        if amount_millisats is not None:
            amount_tag = ["amount", str(amount_millisats)]
            if encoded_invoice:
                amount_tag.append(encoded_invoice)
            tags.append(amount_tag)
        if encrypted:
            tags.append(["encrypted"])
        else:
            tags.extend(item.as_tag() for item in request.inputs)
        return self._finalize(kind=result_kind_for(request.job_kind), tags=tags, content=content)

    def _finalize(self, *, kind: int, tags: list[list[str]], content: str) -> SignedMessage:
        created_at = int(self.clock())
        message_id = compute_message_id(
            sender_key=self.public_key,
            created_at=created_at,
            kind=kind,
            tags=tags,
            content=content,
        )
        return SignedMessage(
            id=message_id,
            sender_key=self.public_key,
            kind=kind,
            tags=tags,
            content=content,
            created_at=created_at,
            signature=self.signer(message_id) if self.signer else "",
        )
