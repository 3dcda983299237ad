from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any, Protocol

from dvm_node.errors import DVMError
from dvm_node.protocol.messages import SignedMessage


class TransportDisconnectedError(DVMError):
    kind = "transport-disconnected"


class MessagingClient(Protocol):
    """Pub/sub transport consumed by the engine.

    ``subscribe`` yields inbound messages until the connection drops, in which case
    it raises (or simply ends); the listener resubscribes and closes the generator
    when it stops. ``publish`` raises ``TransientPublishError`` for network-level
    failures and ``PermanentPublishError`` when the relays reject the message.
    """

    def subscribe(
        self,
        relays: list[str],
        filters: list[dict[str, Any]],
    ) -> AsyncGenerator[SignedMessage, None]: ...

    async def publish(self, message: SignedMessage) -> None: ...
