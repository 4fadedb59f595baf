"""Beep payment provider client.

Invoices are created and read through the Beep REST API
(``POST /invoices``, ``GET /invoices/{id}``) with a Bearer API key. The
provider is the source of truth for whether the buyer has paid; lancer only
polls it.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from lancer.protocols import (
    Invoice,
    InvoiceNotFoundError,
    InvoiceStatus,
    PaymentProviderError,
)
from lancer.types import to_decimal

logger = logging.getLogger(__name__)

DEFAULT_BEEP_API_BASE = "https://api.justbeep.it"
DEFAULT_CURRENCY = "USDC"

# Provider spellings that map onto the four statuses lancer understands
_STATUS_ALIASES = {
    "canceled": InvoiceStatus.CANCELLED,
    "completed": InvoiceStatus.PAID,
    "confirmed": InvoiceStatus.PAID,
}


def parse_invoice_status(data: Dict[str, Any]) -> InvoiceStatus:
    """Read the invoice status out of a provider payload.

    Falls back to the boolean ``paid`` flag some endpoints return instead.
    """
    raw = data.get("status")
    if raw is None:
        if "paid" in data:
            return InvoiceStatus.PAID if data["paid"] else InvoiceStatus.PENDING
        raise PaymentProviderError(f"Invoice payload has no status: {sorted(data)}")
    value = str(raw).strip().lower()
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return InvoiceStatus(value)
    except ValueError as e:
        raise PaymentProviderError(f"Unknown invoice status: {raw!r}") from e


class BeepPaymentProvider:
    """PaymentProvider backed by the Beep REST API."""

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_BEEP_API_BASE,
        currency: str = DEFAULT_CURRENCY,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            logger.warning("No Beep API key configured; provider calls will be rejected")
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise PaymentProviderError(f"Beep API {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"Beep API {method} {path} failed: {e}") from e

        if response.status_code == 404:
            raise InvoiceNotFoundError(f"Beep API {path}: not found")
        if response.status_code >= 400:
            raise PaymentProviderError(
                f"Beep API error {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise PaymentProviderError(f"Beep API {path} returned invalid JSON") from e

    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        data = await self._request("GET", f"/invoices/{invoice_id}")
        status = parse_invoice_status(data)
        logger.debug(f"Invoice {invoice_id} status: {status.value}")
        return status

    async def create_invoice(
        self, amount: Decimal, reference_key: str, description: Optional[str] = None
    ) -> Invoice:
        logger.info(f"Creating Beep invoice for {reference_key}: {amount} {self.currency}")
        data = await self._request(
            "POST",
            "/invoices",
            json={
                "amount": str(amount),
                "currency": self.currency,
                "referenceKey": reference_key,
                "description": description,
                "generateQrCode": True,
            },
        )
        invoice_id = data.get("id") or data.get("invoiceId")
        if not invoice_id:
            raise PaymentProviderError("Beep API created an invoice without an id")
        status = parse_invoice_status(data) if "status" in data else InvoiceStatus.PENDING
        return Invoice(
            invoice_id=str(invoice_id),
            reference_key=data.get("referenceKey") or data.get("referenceId") or reference_key,
            amount=to_decimal(data.get("amount", amount)),
            status=status,
            payment_url=data.get("paymentUrl"),
            qr_code=data.get("qrCode"),
        )
