import httpx
import pytest

from app.services.content_store import IpfsContentStore
from app.services.exceptions import StoreUnavailableError


def _store(handler) -> IpfsContentStore:
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://ipfs.test")
    return IpfsContentStore("http://ipfs.test", client=client)


def test_add_does_not_pin():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"Name": "a.txt", "Hash": "bafyadded", "Size": "5"})

    result = _store(handler).add(b"hello", "a.txt")

    assert result.content_address == "bafyadded"
    assert result.size == 5
    assert seen[0].url.path == "/api/v0/add"
    assert seen[0].url.params["pin"] == "false"


def test_pin_error_raises_store_unavailable():
    def handler(request):
        return httpx.Response(500, json={"Message": "datastore closed", "Code": 0})

    with pytest.raises(StoreUnavailableError) as excinfo:
        _store(handler).pin("bafyx")

    assert excinfo.value.details["message"] == "datastore closed"
    assert excinfo.value.details["address"] == "bafyx"


def test_unpin_of_absent_pin_counts_as_success():
    def handler(request):
        return httpx.Response(500, json={"Message": "not pinned or pinned indirectly"})

    _store(handler).unpin("bafyx")


def test_unpin_other_error_raises():
    def handler(request):
        return httpx.Response(500, json={"Message": "context deadline exceeded"})

    with pytest.raises(StoreUnavailableError):
        _store(handler).unpin("bafyx")


def test_transport_error_raises_store_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StoreUnavailableError):
        _store(handler).fetch("bafyx")


def test_fetch_returns_bytes():
    def handler(request):
        assert request.url.params["arg"] == "bafyx"
        return httpx.Response(200, content=b"payload")

    assert _store(handler).fetch("bafyx") == b"payload"


def test_is_pinned():
    def handler(request):
        address = request.url.params["arg"]
        if address == "bafyyes":
            return httpx.Response(200, json={"Keys": {"bafyyes": {"Type": "recursive"}}})
        return httpx.Response(500, json={"Message": f"path '{address}' is not pinned"})

    store = _store(handler)

    assert store.is_pinned("bafyyes") is True
    assert store.is_pinned("bafyno") is False
