"""HTTP client for the BuchhaltungsButler (BHB) accounting API.

Every BHB call is a ``POST`` with a JSON body carrying ``api_key`` and an
HTTP Basic header built from ``api_client:api_secret``. Responses have the
shape ``{"success": bool, "data": [...], "message": str}``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from backend.apps.receivables.errors import UpstreamError

from .auth import AuthCache, CredentialsProvider, settings_credentials
from .dto import BhbPage

DEFAULT_BASE_URL = "https://webapp.buchhaltungsbutler.de/api/v1"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_PAGE_LIMIT = 500
MAX_PAGE_LIMIT = 1000
MAX_CONSECUTIVE_MALFORMED_PAGES = 3

DEBTORS_ENDPOINT = "/settings/get/debtors"
RECEIPTS_ENDPOINT = "/receipts/get"


class BhbClientError(UpstreamError):
    """Raised when the BHB client cannot complete a request."""


class BhbResponseError(BhbClientError):
    """Raised when BHB answers with an error status or ``success=false``."""

    def __init__(self, status_code: int, message: str, response_body: Optional[bytes] = None):
        super().__init__(f"http_{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.response_body = response_body or b""


class BhbClient:
    """Synchronous BHB client with retry on rate limiting and server errors."""

    def __init__(
        self,
        *,
        credentials_provider: Optional[CredentialsProvider] = None,
        auth_cache: Optional[AuthCache] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = 0.5,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.auth_cache = auth_cache or AuthCache(credentials_provider or settings_credentials)
        self.logger = logging.getLogger(__name__)

        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=max(0, int(max_retries)),
                backoff_factor=backoff_factor,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["POST"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    @classmethod
    def from_settings(cls, settings, **kwargs: Any) -> "BhbClient":
        auth_cache = kwargs.pop("auth_cache", None) or AuthCache(
            settings_credentials, ttl_seconds=settings.BHB_AUTH_CACHE_TTL_SECONDS
        )
        return cls(
            auth_cache=auth_cache,
            base_url=settings.BHB_BASE_URL,
            timeout=settings.BHB_TIMEOUT_SECONDS,
            max_retries=settings.BHB_MAX_RETRIES,
            backoff_factor=settings.BHB_BACKOFF_FACTOR,
            **kwargs,
        )

    def ensure_configured(self) -> None:
        """Fail fast with ``ConfigurationError`` when credentials are missing."""
        self.auth_cache.get()

    def list_debtors(self, *, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> BhbPage:
        self._validate_pagination(limit, offset)
        payload = self._post(DEBTORS_ENDPOINT, {"limit": limit, "offset": offset})
        return BhbPage.from_json(payload, limit=limit, offset=offset)

    def list_receipts(
        self,
        *,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        list_direction: str = "outbound",
    ) -> BhbPage:
        # No payment_status filter: paid and unpaid receipts are both needed
        # so that status transitions become visible.
        self._validate_pagination(limit, offset)
        payload = self._post(
            RECEIPTS_ENDPOINT,
            {"list_direction": list_direction, "limit": limit, "offset": offset},
        )
        return BhbPage.from_json(payload, limit=limit, offset=offset)

    def iter_debtors(self, page_size: int = DEFAULT_PAGE_LIMIT) -> Iterator[BhbPage]:
        return self._iter_pages(self.list_debtors, page_size)

    def iter_receipts(self, page_size: int = DEFAULT_PAGE_LIMIT) -> Iterator[BhbPage]:
        return self._iter_pages(self.list_receipts, page_size)

    def close(self) -> None:
        self.session.close()

    def _iter_pages(self, fetch, page_size: int) -> Iterator[BhbPage]:
        offset = 0
        malformed_in_row = 0
        while True:
            page = fetch(limit=page_size, offset=offset)
            if page.is_malformed:
                self.logger.warning(
                    "bhb_page_malformed",
                    extra={"offset": offset, "limit": page_size, "problems": page.problems},
                )
                malformed_in_row = malformed_in_row + 1 if not page.items else 0
                if malformed_in_row >= MAX_CONSECUTIVE_MALFORMED_PAGES:
                    raise BhbResponseError(200, f"{malformed_in_row} malformed pages in a row at offset {offset}")
            else:
                malformed_in_row = 0
            yield page
            if page.is_last:
                return
            offset += page_size

    def _validate_pagination(self, limit: int, offset: int) -> None:
        if not isinstance(limit, int) or not isinstance(offset, int):
            raise ValueError("limit and offset must be integers")
        if limit <= 0 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        if limit > MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be <= {MAX_PAGE_LIMIT}")

    def _post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        credentials, auth_header = self.auth_cache.get()
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": auth_header,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        request_body = {"api_key": credentials.api_key, **body}

        start_time = time.monotonic()
        try:
            response = self.session.request(
                method="POST",
                url=url,
                headers=headers,
                json=request_body,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error(
                "bhb_request_failed",
                extra={"endpoint": endpoint, "error": str(exc)},
            )
            raise BhbClientError(str(exc)) from exc

        request_time = time.monotonic() - start_time
        self.logger.debug(
            "bhb_response",
            extra={
                "endpoint": endpoint,
                "status_code": response.status_code,
                "request_time": request_time,
            },
        )

        if response.status_code in (401, 403):
            # Rotated credentials: force a re-read on the next call.
            self.auth_cache.invalidate()

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            message = self._derive_error_message(data, response)
            raise BhbResponseError(response.status_code, message, response.content)

        if not isinstance(data, dict):
            raise BhbResponseError(response.status_code, "invalid JSON response", response.content)

        if not data.get("success"):
            message = data.get("message") or "BHB API Fehler"
            raise BhbResponseError(response.status_code, str(message), response.content)

        return data

    def _derive_error_message(self, data: Any, response: requests.Response) -> str:
        if isinstance(data, dict):
            for key in ("message", "error"):
                if data.get(key):
                    return str(data[key])
        text = (response.text or "").strip()
        if text:
            return text[:500]
        return response.reason or "http_error"
