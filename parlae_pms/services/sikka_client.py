"""HTTP client for the Sikka API v4 with retry logic and timeout handling.

Sikka API docs: https://apidocs.sikkasoft.com/
Authenticated calls carry a ``Request-Key`` header, injected by
``SikkaRequestKeyAuth``.  A handful of endpoints (``/writebacks``) are
authenticated with the app's ``App-Id`` / ``App-Key`` pair instead.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from parlae_pms.config import SIKKA_BASE_URL
from parlae_pms.services.errors import SikkaAPIError
from parlae_pms.services.metrics import metrics
from parlae_pms.services.sikka_auth import SikkaRequestKeyAuth, TokenManager

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 20.0

# Only reads are retried; mutations go out exactly once
_RETRYABLE_METHODS = frozenset({"GET"})


def _operation_label(method: str, path: str) -> str:
    """``GET /patients/123/notes`` → ``GET /patients`` (keeps metric cardinality low)."""
    resource = path.strip("/").split("/")[0].split("?")[0]
    return f"{method} /{resource}"


def _json(response: httpx.Response) -> dict[str, Any]:
    """Decode a response body; bare arrays become ``{"items": [...]}``."""
    try:
        data = response.json()
    except ValueError:
        return {}
    if isinstance(data, list):
        return {"items": data}
    return data if isinstance(data, dict) else {}


class SikkaClient:
    """Thin wrapper around the Sikka REST API with automatic retries.

    Reads that hit a timeout, connection error or 5xx are retried with
    exponential back-off; 4xx responses raise immediately.  Mutations are
    never retried.
    """

    def __init__(self, token_manager: TokenManager, base_url: str | None = None):
        self._token_manager = token_manager
        self._base_url = base_url or SIKKA_BASE_URL
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            auth=SikkaRequestKeyAuth(token_manager),
        )

    def close(self) -> None:
        self._client.close()
        self._token_manager.close()

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        authenticated: bool = True,
        max_retries: int = MAX_RETRIES,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries.

        Only GETs are retried; any other method is attempted exactly once.
        """
        operation = _operation_label(method, path)
        if method.upper() not in _RETRYABLE_METHODS:
            max_retries = 1
        extra: dict[str, Any] = {}
        if not authenticated:
            extra = {"auth": None, "headers": self._token_manager.app_headers}

        last_error: Exception | None = None
        for attempt in range(1, max_retries + 1):
            started = time.monotonic()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    **extra,
                )
                latency_ms = (time.monotonic() - started) * 1000
                if response.status_code >= 500:
                    metrics.record_failure("sikka", operation, "5xx", latency_ms)
                    raise SikkaAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        body=_json(response),
                    )
                if response.status_code >= 400:
                    metrics.record_failure("sikka", operation, "4xx", latency_ms)
                    raise SikkaAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        body=_json(response),
                    )
                metrics.record_success("sikka", operation, latency_ms)
                return _json(response)

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("sikka", operation, type(exc).__name__)
                logger.warning(
                    "Sikka API %s attempt %d/%d failed (%s).",
                    operation,
                    attempt,
                    max_retries,
                    type(exc).__name__,
                )
            except SikkaAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Sikka API %s server error on attempt %d/%d.",
                        operation,
                        attempt,
                        max_retries,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < max_retries:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        status_code = last_error.status_code if isinstance(last_error, SikkaAPIError) else None
        raise SikkaAPIError(
            f"Sikka API request failed after {max_retries} attempt(s): {last_error}",
            status_code=status_code,
        ) from last_error

    def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", path, params=params)

    def get_writeback(self, writeback_id: str) -> dict[str, Any]:
        """Fetch writeback status once; the caller's poll loop owns retries."""
        return self.request(
            "GET",
            "/writebacks",
            params={"id": writeback_id},
            authenticated=False,
            max_retries=1,
        )
