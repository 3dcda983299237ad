from __future__ import annotations

from typing import Protocol

from dvm_node.models import Invoice, InvoiceStatus


class PaymentClient(Protocol):
    """Invoice issuing collaborator.

    ``create_invoice`` raises ``PaymentError``; ``check_status`` raises
    ``PaymentCheckError`` when the wallet cannot be queried.
    """

    async def create_invoice(self, amount_millisats: int, memo: str) -> Invoice: ...

    async def check_status(self, payment_hash: str) -> InvoiceStatus: ...


def millisats_to_sats(amount_millisats: int) -> int:
    return max(1, -(-amount_millisats // 1000))
