from __future__ import annotations

import hashlib
import secrets
import time
from datetime import datetime, timezone
from typing import Callable

from dvm_node.errors import PaymentCheckError
from dvm_node.models import Invoice, InvoiceStatus

from .base import millisats_to_sats


class InMemoryPaymentBackend:
    """Loopback wallet: invoices settle only when ``mark_paid`` is called."""

    def __init__(
        self,
        *,
        expiry_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.expiry_seconds = expiry_seconds
        self.clock = clock
        self.invoices: dict[str, Invoice] = {}
        self.memos: dict[str, str] = {}
        self.status_checks = 0

    async def create_invoice(self, amount_millisats: int, memo: str) -> Invoice:
        preimage = secrets.token_bytes(32)
        payment_hash = hashlib.sha256(preimage).hexdigest()
        expires_at = datetime.fromtimestamp(self.clock() + self.expiry_seconds, tz=timezone.utc)
        invoice = Invoice(
            payment_hash=payment_hash,
            encoded_invoice=f"lnbcrt{millisats_to_sats(amount_millisats)}n1p{payment_hash[:52]}",
            amount_millisats=amount_millisats,
            expires_at=expires_at,
        )
        self.invoices[payment_hash] = invoice
        self.memos[payment_hash] = memo
        return invoice.model_copy()

    async def check_status(self, payment_hash: str) -> InvoiceStatus:
        self.status_checks += 1
        invoice = self.invoices.get(payment_hash)
        if invoice is None:
            raise PaymentCheckError(f"unknown payment hash: {payment_hash}")
        if invoice.status == InvoiceStatus.PENDING and invoice.expires_at.timestamp() <= self.clock():
            invoice.status = InvoiceStatus.EXPIRED
        return invoice.status

    def mark_paid(self, payment_hash: str) -> None:
        invoice = self.invoices.get(payment_hash)
        if invoice is None:
            raise KeyError(payment_hash)
        invoice.status = InvoiceStatus.PAID
