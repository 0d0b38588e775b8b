"""Cashfree payment gateway integration service."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Protocol

import httpx

from app.config import settings
from app.models.billing import PaymentOrderStatus
from app.services.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)

CASHFREE_API_BASE = {
    "sandbox": "https://sandbox.cashfree.com",
    "production": "https://api.cashfree.com",
}

_ORDER_STATUS_MAP = {
    "PAID": PaymentOrderStatus.paid,
    "EXPIRED": PaymentOrderStatus.cancelled,
    "TERMINATED": PaymentOrderStatus.cancelled,
    "TERMINATION_REQUESTED": PaymentOrderStatus.cancelled,
    "CANCELLED": PaymentOrderStatus.cancelled,
    "FAILED": PaymentOrderStatus.failed,
}
_PAYMENT_STATUS_MAP = {
    "SUCCESS": PaymentOrderStatus.paid,
    "FAILED": PaymentOrderStatus.failed,
    "USER_DROPPED": PaymentOrderStatus.failed,
    "CANCELLED": PaymentOrderStatus.cancelled,
}


@dataclass(frozen=True)
class Customer:
    customer_id: str
    email: str | None = None
    name: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class ProviderOrder:
    order_id: str
    provider_order_id: str | None
    payment_session_id: str | None
    payment_link: str | None
    status: PaymentOrderStatus


class PaymentProvider(Protocol):
    def create_order(
        self, order_id: str, amount: Decimal, currency: str, customer: Customer
    ) -> ProviderOrder: ...
    def fetch_order(self, order_id: str) -> ProviderOrder: ...
    def verify_webhook_signature(self, signature: str, body: bytes, timestamp: str) -> bool: ...


def generate_order_id(now: datetime | None = None) -> str:
    """Generate a unique merchant order id.

    Format: CIDV-{yyyymmddHHMMSS}-{short_uuid}
    """
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")
    return f"CIDV-{stamp}-{uuid.uuid4().hex[:8]}"


def map_order_status(order_status: str | None, payment_status: str | None = None) -> PaymentOrderStatus:
    """Translate provider order/payment status strings to a local status."""
    if payment_status:
        mapped = _PAYMENT_STATUS_MAP.get(payment_status.upper())
        if mapped is not None:
            return mapped
    if order_status:
        mapped = _ORDER_STATUS_MAP.get(order_status.upper())
        if mapped is not None:
            return mapped
    return PaymentOrderStatus.pending


def _customer_phone(customer: Customer) -> str:
    # Cashfree requires a phone number; a placeholder is accepted in sandbox.
    return customer.phone or "9999999999"


class CashfreeClient:
    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        environment: str | None = None,
        api_version: str | None = None,
        timeout: float = 30,
    ) -> None:
        self.client_id = client_id if client_id is not None else settings.cashfree_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.cashfree_client_secret
        )
        self.environment = environment or settings.cashfree_env
        self.api_version = api_version or settings.cashfree_api_version
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return CASHFREE_API_BASE.get(self.environment, CASHFREE_API_BASE["sandbox"])

    def _headers(self) -> dict[str, str]:
        if not self.client_id or not self.client_secret:
            raise PaymentProviderError("Cashfree credentials are not configured")
        return {
            "x-client-id": self.client_id,
            "x-client-secret": self.client_secret,
            "x-api-version": self.api_version,
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        headers = self._headers()
        try:
            resp = httpx.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = exc.response.text
            logger.warning(
                "cashfree_http_error method=%s path=%s status=%s body=%s",
                method,
                path,
                exc.response.status_code,
                message,
            )
            raise PaymentProviderError(
                "Payment provider rejected the request",
                details={"status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("cashfree_transport_error method=%s path=%s error=%s", method, path, exc)
            raise PaymentProviderError("Payment provider unreachable") from exc
        return resp.json()

    @staticmethod
    def _to_order(data: dict[str, Any], fallback_order_id: str) -> ProviderOrder:
        provider_order_id = data.get("cf_order_id")
        return ProviderOrder(
            order_id=str(data.get("order_id") or fallback_order_id),
            provider_order_id=str(provider_order_id) if provider_order_id is not None else None,
            payment_session_id=data.get("payment_session_id"),
            payment_link=data.get("payment_link"),
            status=map_order_status(data.get("order_status")),
        )

    def create_order(
        self, order_id: str, amount: Decimal, currency: str, customer: Customer
    ) -> ProviderOrder:
        """Create a Cashfree order.

        Args:
            order_id: Merchant order id (see ``generate_order_id``).
            amount: Amount in major currency units.
            currency: ISO currency code.
            customer: Customer details sent to the checkout.

        Raises:
            PaymentProviderError: On missing credentials, transport failure or non-2xx.
        """
        payload: dict[str, Any] = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id,
                "customer_email": customer.email or "customer@example.com",
                "customer_phone": _customer_phone(customer),
                "customer_name": customer.name or "Customer",
            },
            "order_meta": {
                "return_url": f"{settings.frontend_url}/billing?order_id={order_id}",
                "notify_url": f"{settings.backend_url}/api/v1/payments/webhook",
            },
        }
        data = self._request("POST", "/pg/orders", json=payload)
        logger.info("cashfree_order_created order_id=%s", order_id)
        return self._to_order(data, order_id)

    def fetch_order(self, order_id: str) -> ProviderOrder:
        data = self._request("GET", f"/pg/orders/{order_id}")
        return self._to_order(data, order_id)

    def verify_webhook_signature(self, signature: str, body: bytes, timestamp: str) -> bool:
        """Verify a Cashfree webhook: base64(HMAC-SHA256(timestamp + body))."""
        if not self.client_secret or not signature or not timestamp:
            return False
        expected = base64.b64encode(
            hmac.new(
                self.client_secret.encode(),
                timestamp.encode() + body,
                hashlib.sha256,
            ).digest()
        ).decode()
        return hmac.compare_digest(expected, signature)


@lru_cache
def get_payment_provider() -> PaymentProvider:
    return CashfreeClient()
