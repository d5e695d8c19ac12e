from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from .audit import JsonAuditLogger
from .errors import ReconcileError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 503, 504)
MAX_BACKOFF_SECONDS = 30.0


class GraphRequestError(ReconcileError):
    """Raised when Graph returns an error status or the request cannot be sent."""

    def __init__(self, status_code: Optional[int], url: str, message: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph request to {url} failed ({status_code or 'no response'}): {message}")


class GraphClient:
    """Tenant-scoped Microsoft Graph client with logging and opt-in retry.

    Retry on throttling and transport errors only happens when ``max_retries``
    is above zero; the default sends each request once.
    """

    def __init__(
        self,
        tenant: str,
        token_provider: Callable[[], str],
        audit_logger: JsonAuditLogger,
        base_url: str = "https://graph.microsoft.com",
        timeout: float = 30.0,
        max_retries: int = 0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tenant = tenant
        self.token_provider = token_provider
        self.audit = audit_logger
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.sleep = sleep
        self.session = httpx.Client(timeout=self.timeout, transport=transport)

    def _auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_provider()}"}

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        backoff = 1.0

        for attempt in range(1, self.max_retries + 2):
            headers.update(self._auth_header())
            last_attempt = attempt > self.max_retries
            try:
                response = self.session.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                self.audit.warning(
                    "graph_transport_error",
                    tenant=self.tenant,
                    url=url,
                    error=str(exc),
                    attempt=attempt,
                )
                if last_attempt:
                    raise GraphRequestError(None, url, str(exc)) from exc
                self.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
                continue

            if response.status_code in RETRYABLE_STATUSES and not last_attempt:
                retry_after = self._get_retry_after_seconds(response) or backoff
                self.audit.warning(
                    "graph_throttled",
                    tenant=self.tenant,
                    status=response.status_code,
                    retry_after=retry_after,
                    attempt=attempt,
                )
                self.sleep(retry_after)
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
                continue

            if response.status_code >= 400:
                self.audit.error(
                    "graph_request_failed",
                    tenant=self.tenant,
                    status=response.status_code,
                    method=method,
                    url=url,
                    body=response.text,
                )
                raise GraphRequestError(response.status_code, url, _error_message(response))

            self.audit.info(
                "graph_request_succeeded",
                tenant=self.tenant,
                status=response.status_code,
                method=method,
                url=url,
            )
            return response

        raise GraphRequestError(None, url, "maximum retry attempts exceeded")

    def _get_retry_after_seconds(self, response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    def url_for(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", self.url_for(path), **kwargs)

    def patch(self, path: str, json: Any, **kwargs: Any) -> httpx.Response:
        return self.request("PATCH", self.url_for(path), json=json, **kwargs)

    def close(self) -> None:
        self.session.close()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text[:200]
