"""Payment collaborator contract and wallet adapters."""

from .base import PaymentClient, millisats_to_sats
from .in_memory import InMemoryPaymentBackend
from .lnbits import LNbitsPaymentClient

__all__ = [
    "InMemoryPaymentBackend",
    "LNbitsPaymentClient",
    "PaymentClient",
    "millisats_to_sats",
]
