from __future__ import annotations

import base64
import json
from typing import Any

import pytest
import requests

from backend.apps.receivables.errors import ConfigurationError
from backend.clients.bhb.auth import AuthCache
from backend.clients.bhb.client import (
    DEBTORS_ENDPOINT,
    RECEIPTS_ENDPOINT,
    BhbClient,
    BhbClientError,
    BhbResponseError,
)
from backend.clients.bhb.dto import BhbCredentials

BASE_URL = "https://bhb.test/api/v1"
CREDENTIALS = BhbCredentials(api_key="key-123", api_client="client", api_secret="secret")


class FakeResponse:
    def __init__(self, status_code: int, payload: Any):
        self.status_code = status_code
        self._payload = payload
        self.reason = "reason"

    @property
    def content(self) -> bytes:
        if isinstance(self._payload, bytes):
            return self._payload
        return json.dumps(self._payload).encode("utf-8")

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.content)


class FakeSession:
    def __init__(self, responses: list[Any]):
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.requests.append(kwargs)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        return None


def _ok(data: list[dict]) -> FakeResponse:
    return FakeResponse(200, {"success": True, "data": data, "message": ""})


def _client(responses: list[Any], provider=lambda: CREDENTIALS) -> tuple[BhbClient, FakeSession]:
    session = FakeSession(responses)
    client = BhbClient(credentials_provider=provider, base_url=BASE_URL, timeout=7, session=session)
    return client, session


def test_receipts_request_body_and_headers():
    client, session = _client([_ok([{"id_by_customer": "R-1"}])])

    page = client.list_receipts(limit=50, offset=100)

    (sent,) = session.requests
    assert sent["method"] == "POST"
    assert sent["url"] == BASE_URL + RECEIPTS_ENDPOINT
    assert sent["timeout"] == 7
    assert sent["json"] == {"api_key": "key-123", "list_direction": "outbound", "limit": 50, "offset": 100}
    expected = "Basic " + base64.b64encode(b"client:secret").decode("ascii")
    assert sent["headers"]["Authorization"] == expected
    assert page.items == [{"id_by_customer": "R-1"}]
    assert page.is_last


def test_debtor_pages_until_short_page():
    client, session = _client(
        [
            _ok([{"postingaccount_number": 1}, {"postingaccount_number": 2}]),
            _ok([{"postingaccount_number": 3}, {"postingaccount_number": 4}]),
            _ok([{"postingaccount_number": 5}]),
        ]
    )

    pages = list(client.iter_debtors(page_size=2))

    assert [len(p.items) for p in pages] == [2, 2, 1]
    assert [r["json"]["offset"] for r in session.requests] == [0, 2, 4]
    assert all(r["url"] == BASE_URL + DEBTORS_ENDPOINT for r in session.requests)


def test_success_false_is_an_error():
    client, _ = _client([FakeResponse(200, {"success": False, "message": "Ungültiger API-Key"})])

    with pytest.raises(BhbResponseError) as excinfo:
        client.list_debtors()

    assert excinfo.value.status_code == 200
    assert "Ungültiger API-Key" in str(excinfo.value)


def test_http_error_status():
    client, _ = _client([FakeResponse(503, {"message": "maintenance"})])

    with pytest.raises(BhbResponseError) as excinfo:
        client.list_receipts()

    assert excinfo.value.status_code == 503
    assert excinfo.value.message == "maintenance"


def test_invalid_json_body():
    client, _ = _client([FakeResponse(200, b"<html>oops</html>")])

    with pytest.raises(BhbResponseError, match="invalid JSON"):
        client.list_receipts()


def test_transport_error_is_wrapped():
    client, _ = _client([requests.ConnectionError("connection refused")])

    with pytest.raises(BhbClientError, match="connection refused"):
        client.list_receipts()


def test_missing_credentials_fail_before_request():
    client, session = _client([], provider=lambda: BhbCredentials(api_key="", api_client="c", api_secret="s"))

    with pytest.raises(ConfigurationError):
        client.ensure_configured()
    with pytest.raises(ConfigurationError):
        client.list_receipts()

    assert session.requests == []


def test_unauthorized_response_invalidates_cached_credentials():
    calls = []

    def provider():
        calls.append(1)
        return CREDENTIALS

    client, _ = _client([FakeResponse(401, {"message": "unauthorized"}), _ok([])], provider=provider)

    with pytest.raises(BhbResponseError):
        client.list_receipts()
    client.list_receipts()

    assert len(calls) == 2


def test_pagination_validation():
    client, session = _client([])

    with pytest.raises(ValueError):
        client.list_receipts(limit=0)
    with pytest.raises(ValueError):
        client.list_receipts(limit=5000)
    with pytest.raises(ValueError):
        client.list_debtors(offset=-1)

    assert session.requests == []


def test_auth_cache_expiry_and_invalidate():
    now = [100.0]
    calls = []

    def provider():
        calls.append(1)
        return CREDENTIALS

    cache = AuthCache(provider, ttl_seconds=60, clock=lambda: now[0])

    cache.get()
    cache.get()
    assert len(calls) == 1 and cache.is_valid

    now[0] += 61
    assert not cache.is_valid
    _, header = cache.get()
    assert len(calls) == 2
    assert header.startswith("Basic ")

    cache.invalidate()
    cache.get()
    assert len(calls) == 3


def test_auth_cache_without_credentials():
    cache = AuthCache(lambda: None)

    with pytest.raises(ConfigurationError):
        cache.get()
    assert not cache.is_valid


def test_credentials_repr_hides_secrets():
    text = repr(CREDENTIALS)

    assert "key-123" not in text
    assert "secret" not in text.replace("api_secret", "")


def test_malformed_page_keeps_paging_by_offset():
    client, session = _client(
        [
            FakeResponse(200, {"success": True, "data": {"unexpected": "shape"}}),
            _ok([{"id_by_customer": "R-3"}, "junk"]),
            _ok([{"id_by_customer": "R-5"}]),
        ]
    )

    pages = list(client.iter_receipts(page_size=2))

    assert [r["json"]["offset"] for r in session.requests] == [0, 2, 4]
    assert pages[0].items == []
    assert pages[0].problems == ["data is dict, expected list"]
    assert pages[1].items == [{"id_by_customer": "R-3"}]
    assert pages[1].problems == ["record 3 is str, expected object"]
    assert not pages[2].is_malformed


def test_repeated_malformed_pages_abort_listing():
    broken = FakeResponse(200, {"success": True, "data": "nonsense"})
    client, session = _client([broken, broken, broken, _ok([])])

    with pytest.raises(BhbResponseError, match="3 malformed pages in a row"):
        list(client.iter_debtors(page_size=2))

    assert len(session.requests) == 3


def test_auth_cache_refresh_that_leaves_nothing_cached():
    cache = AuthCache(lambda: CREDENTIALS)
    cache._refresh = lambda: None

    with pytest.raises(ConfigurationError):
        cache.get()
