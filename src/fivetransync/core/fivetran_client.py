"""
Fivetran REST API client.

- requests Session with HTTP basic auth (api key / api secret).
- Methods: get, post, patch, delete -> (status, envelope) ; list -> lazy items.
- Transport retries (urllib3 Retry) on network errors and 5xx, idempotent
  methods only. 429 is never retried here: callers decide.
- Non-2xx answers raise ApiError subclasses carrying the envelope code and the
  remote message verbatim.

Usage:
    client = FivetranClient(api_key, api_secret)
    status, body = client.get("/groups/grp_1")
    for connector in client.list("/groups/grp_1/connectors"):
        ...
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Iterator, Optional, Tuple

import requests
import urllib3
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from urllib3.util.retry import Retry

from .errors import ApiError, NotFoundError, RateLimitError
from .logging_setup import get_logger

__all__ = ["FivetranClient", "DEFAULT_BASE_URL", "PAGE_LIMIT", "VERSION"]

VERSION = "0.1.0"
DEFAULT_BASE_URL = "https://api.fivetran.com/v1"
PAGE_LIMIT = 1000  # API maximum objects per page

Envelope = Dict[str, Any]

_STATUS_ERRORS = {404: NotFoundError, 429: RateLimitError}


class FivetranClient:
    """Thin JSON client for the Fivetran REST API."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        verify_tls: bool = True,
        timeout_sec: float = 30,
        retries: int = 3,
        backoff_base_sec: float = 0.5,
        page_limit: int = PAGE_LIMIT,
        user_agent: str = f"fivetransync/{VERSION}",
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.verify_tls = verify_tls
        self.timeout = float(timeout_sec)
        self.page_limit = max(1, min(int(page_limit), PAGE_LIMIT))
        self.log = logger or get_logger("ftsync.http")

        self.session = requests.Session()
        self.session.auth = HTTPBasicAuth(api_key, api_secret)
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        })
        retry = Retry(
            total=max(0, int(retries)),
            backoff_factor=float(backoff_base_sec),
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=Retry.DEFAULT_ALLOWED_METHODS,
            raise_on_status=False,
            respect_retry_after_header=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        if not verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ------------- Public API -------------

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[int, Envelope]:
        return self._request("GET", path, params=params)

    def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Tuple[int, Envelope]:
        return self._request("POST", path, body=body if body is not None else {})

    def patch(self, path: str, body: Dict[str, Any]) -> Tuple[int, Envelope]:
        return self._request("PATCH", path, body=body)

    def delete(self, path: str, body: Optional[Dict[str, Any]] = None) -> Tuple[int, Envelope]:
        return self._request("DELETE", path, body=body)

    def list(
        self,
        path: str,
        *,
        cursor: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Yield every item of a paginated list endpoint.

        Pages are fetched lazily, `data.next_cursor` drives the next request.
        Passing `cursor` restarts the listing from that page.
        """
        query = dict(params or {})
        query["limit"] = self.page_limit
        while True:
            if cursor:
                query["cursor"] = cursor
            _, body = self.get(path, params=query)
            data = body.get("data") or {}
            for item in data.get("items") or []:
                yield item
            cursor = data.get("next_cursor")
            if not cursor:
                return

    # ------------- Internal -------------

    def _full_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Envelope]:
        url = self._full_url(path)
        start = time.time()
        try:
            resp = self.session.request(
                method,
                url,
                json=body,
                params=params,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.RequestException as exc:
            err = ApiError(status=0, url=url, message=str(exc))
            self.log.warning("%s %s failed: %s", method, path, err)
            raise err from exc

        elapsed = (time.time() - start) * 1000
        envelope = self._decode(resp)
        if resp.status_code >= 300:
            cls = _STATUS_ERRORS.get(resp.status_code, ApiError)
            err = cls(
                status=resp.status_code,
                url=url,
                code=str(envelope.get("code") or ""),
                message=str(envelope.get("message") or ""),
                body=resp.text[:2000],
            )
            self.log.warning("%s %s -> %s in %.1fms: %s", method, path, resp.status_code, elapsed, err)
            raise err

        self.log.debug("%s %s -> %s in %.1fms", method, path, resp.status_code, elapsed)
        return resp.status_code, envelope

    def _decode(self, resp: requests.Response) -> Envelope:
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            data = resp.json()
        except (ValueError, json.JSONDecodeError):
            self.log.warning("Non-JSON response from %s (status=%s)", resp.url, resp.status_code)
            return {}
        return data if isinstance(data, dict) else {"data": data}
