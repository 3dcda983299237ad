from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from dvm_node.errors import PaymentCheckError, PaymentError
from dvm_node.models import Invoice, InvoiceStatus

from .base import millisats_to_sats

DEFAULT_LNBITS_URL = "http://127.0.0.1:5000"


class LNbitsPaymentClient:
    """Payment client for an LNbits-compatible wallet REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        invoice_expiry_seconds: int = 600,
        request_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or os.getenv("DVM_LNBITS_URL") or DEFAULT_LNBITS_URL).rstrip("/")
        self.invoice_expiry_seconds = invoice_expiry_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.request_timeout_seconds),
            transport=self.transport,
            headers={"X-Api-Key": self.api_key},
        )

    async def create_invoice(self, amount_millisats: int, memo: str) -> Invoice:
        body = {
            "out": False,
            "amount": millisats_to_sats(amount_millisats),
            "unit": "sat",
            "memo": memo,
            "expiry": self.invoice_expiry_seconds,
        }
        try:
            async with self._client() as client:
                response = await client.post("/api/v1/payments", json=body)
        except httpx.HTTPError as exc:
            raise PaymentError(f"invoice creation failed: {exc}") from exc
        if response.status_code >= 400:
            detail = response.text[:300]
            raise PaymentError(f"invoice creation failed: HTTP {response.status_code} ({detail})")

        payload = _json_object(response, PaymentError)
        payment_hash = payload.get("payment_hash")
        encoded = payload.get("payment_request") or payload.get("bolt11")
        if not isinstance(payment_hash, str) or not isinstance(encoded, str):
            raise PaymentError("invoice creation failed: response is missing payment_hash/payment_request")
        return Invoice(
            payment_hash=payment_hash,
            encoded_invoice=encoded,
            amount_millisats=amount_millisats,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.invoice_expiry_seconds),
        )

    async def check_status(self, payment_hash: str) -> InvoiceStatus:
        try:
            async with self._client() as client:
                response = await client.get(f"/api/v1/payments/{payment_hash}")
        except httpx.HTTPError as exc:
            raise PaymentCheckError(f"payment status check failed: {exc}") from exc
        if response.status_code >= 400:
            raise PaymentCheckError(f"payment status check failed: HTTP {response.status_code}")

        payload = _json_object(response, PaymentCheckError)
        if payload.get("paid") is True:
            return InvoiceStatus.PAID
        details = payload.get("details")
        status = details.get("status") if isinstance(details, dict) else None
        if isinstance(status, str) and status.lower() in {"expired", "failed"}:
            return InvoiceStatus.EXPIRED
        return InvoiceStatus.PENDING


def _json_object(response: httpx.Response, error_cls: type[PaymentError]) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise error_cls("wallet returned a non-JSON response") from exc
    if not isinstance(payload, dict):
        raise error_cls("wallet returned an unexpected payload")
    return payload
