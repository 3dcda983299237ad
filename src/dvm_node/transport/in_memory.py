from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

from dvm_node.protocol.messages import SignedMessage

from .base import TransportDisconnectedError

_Item = SignedMessage | BaseException | None


def message_matches(message: SignedMessage, filters: list[dict[str, Any]]) -> bool:
    if not filters:
        return True
    return any(_matches_one(message, item) for item in filters)


def _matches_one(message: SignedMessage, item: dict[str, Any]) -> bool:
    kinds = item.get("kinds")
    if kinds is not None and message.kind not in kinds:
        return False
    ids = item.get("ids")
    if ids is not None and message.id not in ids:
        return False
    authors = item.get("authors")
    if authors is not None and message.sender_key not in authors:
        return False
    since = item.get("since")
    if since is not None and message.created_at < since:
        return False
    until = item.get("until")
    if until is not None and message.created_at > until:
        return False
    return True


@dataclass
class _Subscription:
    relays: list[str]
    filters: list[dict[str, Any]]
    queue: asyncio.Queue[_Item] = field(default_factory=asyncio.Queue)


class InMemoryRelay:
    """Loopback messaging client: everything published is fanned out in-process."""

    def __init__(self) -> None:
        self.published: list[SignedMessage] = []
        self.subscribe_calls = 0
        self._subscriptions: list[_Subscription] = []

    async def subscribe(
        self,
        relays: list[str],
        filters: list[dict[str, Any]],
    ) -> AsyncGenerator[SignedMessage, None]:
        subscription = _Subscription(relays=list(relays), filters=list(filters))
        self._subscriptions.append(subscription)
        self.subscribe_calls += 1
        try:
            while True:
                item = await subscription.queue.get()
                if item is None:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    async def publish(self, message: SignedMessage) -> None:
        self.published.append(message)
        self._deliver(message)

    async def inject(self, message: SignedMessage) -> None:
        """Deliver a message authored elsewhere to matching subscribers."""
        self._deliver(message)
        await asyncio.sleep(0)

    def disconnect(self, error: BaseException | None = None) -> None:
        failure = error or TransportDisconnectedError("relay connection lost")
        for subscription in list(self._subscriptions):
            subscription.queue.put_nowait(failure)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.queue.put_nowait(None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def published_kinds(self, kind: int) -> list[SignedMessage]:
        return [message for message in self.published if message.kind == kind]

    def _deliver(self, message: SignedMessage) -> None:
        for subscription in list(self._subscriptions):
            if message_matches(message, subscription.filters):
                subscription.queue.put_nowait(message)
