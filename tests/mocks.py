"""Mock utilities for testing external dependencies."""

import hashlib
from collections import Counter
from decimal import Decimal

import httpx

from app.models.billing import PaymentOrderStatus
from app.services.content_store import AddResult
from app.services.exceptions import PaymentProviderError, StoreUnavailableError
from app.services.payment_provider import Customer, ProviderOrder


class FakeContentStore:
    """In-memory content store that counts physical pin traffic."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.pinned: set[str] = set()
        self.pin_calls: Counter = Counter()
        self.unpin_calls: Counter = Counter()
        self.fail_add = False
        self.fail_pin = False
        self.fail_unpin = False
        self.fail_fetch = False

    @staticmethod
    def address_for(data: bytes) -> str:
        return "bafk" + hashlib.sha256(data).hexdigest()[:40]

    def add(self, data: bytes, filename: str | None = None) -> AddResult:
        if self.fail_add:
            raise StoreUnavailableError("Content store add failed")
        address = self.address_for(data)
        self.blobs[address] = data
        return AddResult(content_address=address, size=len(data))

    def pin(self, content_address: str) -> None:
        if self.fail_pin:
            raise StoreUnavailableError("Content store pin failed")
        self.pin_calls[content_address] += 1
        self.pinned.add(content_address)

    def unpin(self, content_address: str) -> None:
        if self.fail_unpin:
            raise StoreUnavailableError("Content store unpin failed")
        self.unpin_calls[content_address] += 1
        self.pinned.discard(content_address)

    def fetch(self, content_address: str) -> bytes:
        if self.fail_fetch or content_address not in self.blobs:
            raise StoreUnavailableError("Content store fetch failed")
        return self.blobs[content_address]

    def is_pinned(self, content_address: str) -> bool:
        return content_address in self.pinned


class FakePaymentProvider:
    """Payment provider double with scripted order statuses."""

    def __init__(self, valid_signature: str = "good-signature"):
        self.valid_signature = valid_signature
        self.created: list[tuple[str, Decimal, str, Customer]] = []
        self.statuses: dict[str, PaymentOrderStatus] = {}
        self.fetch_calls: list[str] = []
        self.fail_create = False

    def create_order(
        self, order_id: str, amount: Decimal, currency: str, customer: Customer
    ) -> ProviderOrder:
        if self.fail_create:
            raise PaymentProviderError("Payment provider unreachable")
        self.created.append((order_id, amount, currency, customer))
        self.statuses.setdefault(order_id, PaymentOrderStatus.pending)
        return ProviderOrder(
            order_id=order_id,
            provider_order_id=f"cf_{len(self.created)}",
            payment_session_id=f"session_{order_id}",
            payment_link=f"https://payments.example.com/{order_id}",
            status=PaymentOrderStatus.pending,
        )

    def fetch_order(self, order_id: str) -> ProviderOrder:
        self.fetch_calls.append(order_id)
        return ProviderOrder(
            order_id=order_id,
            provider_order_id=None,
            payment_session_id=None,
            payment_link=None,
            status=self.statuses.get(order_id, PaymentOrderStatus.pending),
        )

    def verify_webhook_signature(self, signature: str, body: bytes, timestamp: str) -> bool:
        return bool(timestamp) and signature == self.valid_signature


class FakeHTTPXResponse:
    """Mock httpx response for API tests."""

    def __init__(self, json_data: dict | None = None, status_code: int = 200, text: str = ""):
        self._json_data = json_data or {}
        self.status_code = status_code
        self.text = text

    def json(self) -> dict:
        return self._json_data

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://sandbox.cashfree.com")
            response = httpx.Response(self.status_code, request=request, text=self.text)
            raise httpx.HTTPStatusError(
                f"HTTP Error: {self.status_code}", request=request, response=response
            )
