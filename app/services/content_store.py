"""Content-addressed store client (IPFS Kubo RPC API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import httpx

from app.config import settings
from app.services.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

_NOT_PINNED_MARKERS = ("not pinned", "is not pinned")


@dataclass(frozen=True)
class AddResult:
    content_address: str
    size: int


class ContentStore(Protocol):
    """Store interface. Only the pin ledger may call pin/unpin."""

    def add(self, data: bytes, filename: str | None = None) -> AddResult: ...
    def pin(self, content_address: str) -> None: ...
    def unpin(self, content_address: str) -> None: ...
    def fetch(self, content_address: str) -> bytes: ...
    def is_pinned(self, content_address: str) -> bool: ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        return str(payload.get("Message") or payload)
    return str(payload)


class IpfsContentStore:
    def __init__(
        self,
        api_url: str,
        timeout: float = 30,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.client = client or httpx.Client(base_url=self.api_url, timeout=timeout)

    def _post(self, operation: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self.client.post(f"/api/v0/{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("content_store_transport_error op=%s error=%s", operation, exc)
            raise StoreUnavailableError(
                f"Content store {operation} failed", details={"error": str(exc)}
            ) from exc

    def _raise_for(self, operation: str, response: httpx.Response, address: str | None = None):
        message = _error_message(response)
        logger.warning(
            "content_store_error op=%s address=%s status=%s message=%s",
            operation,
            address,
            response.status_code,
            message,
        )
        raise StoreUnavailableError(
            f"Content store {operation} failed",
            details={"status": response.status_code, "message": message, "address": address},
        )

    def add(self, data: bytes, filename: str | None = None) -> AddResult:
        # pin=false: physical pins are requested by the ledger only.
        response = self._post(
            "add",
            "add",
            params={"pin": "false", "cid-version": "1"},
            files={"file": (filename or "blob", data)},
        )
        if response.status_code != 200:
            self._raise_for("add", response)
        payload = response.json()
        address = payload.get("Hash")
        if not address:
            self._raise_for("add", response)
        return AddResult(content_address=address, size=len(data))

    def pin(self, content_address: str) -> None:
        response = self._post("pin", "pin/add", params={"arg": content_address})
        if response.status_code != 200:
            self._raise_for("pin", response, content_address)

    def unpin(self, content_address: str) -> None:
        response = self._post("unpin", "pin/rm", params={"arg": content_address})
        if response.status_code == 200:
            return
        message = _error_message(response).lower()
        if any(marker in message for marker in _NOT_PINNED_MARKERS):
            logger.info("content_store_unpin_absent address=%s", content_address)
            return
        self._raise_for("unpin", response, content_address)

    def fetch(self, content_address: str) -> bytes:
        response = self._post("fetch", "cat", params={"arg": content_address})
        if response.status_code != 200:
            self._raise_for("fetch", response, content_address)
        return response.content

    def is_pinned(self, content_address: str) -> bool:
        response = self._post(
            "pin_ls", "pin/ls", params={"arg": content_address, "type": "recursive"}
        )
        if response.status_code == 200:
            keys = response.json().get("Keys") or {}
            return content_address in keys
        message = _error_message(response).lower()
        if any(marker in message for marker in _NOT_PINNED_MARKERS):
            return False
        self._raise_for("pin_ls", response, content_address)
        return False


@lru_cache
def get_content_store() -> ContentStore:
    return IpfsContentStore(settings.ipfs_api_url, timeout=settings.ipfs_timeout_seconds)
