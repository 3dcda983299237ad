"""Messaging collaborator contract and the loopback relay."""

from .base import MessagingClient, TransportDisconnectedError
from .in_memory import InMemoryRelay, message_matches

__all__ = [
    "InMemoryRelay",
    "MessagingClient",
    "TransportDisconnectedError",
    "message_matches",
]
