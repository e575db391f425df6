"""Sikka Request-Key lifecycle.

Authorization flow
------------------
1. ``GET  /authorized_practices``                 → office_id + secret_key
2. ``POST /request_key`` (grant_type=request_key) → request_key + refresh_key
3. ``POST /request_key`` (grant_type=refresh_key) → renew before expiry

State transitions::

    {no token} → {office/secret known} → {request/refresh key, valid until expiry}
               → {expired: refresh} → {refresh rejected (401): re-acquire}

Every transition is written to the injected ``CredentialStore`` so a
refresh survives process restarts.  A re-entrant lock makes
``ensure_valid_token`` single-flight: threads that queued behind a refresh
re-check validity and reuse the new key instead of refreshing again.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from parlae_pms.config import SIKKA_BASE_URL
from parlae_pms.models import ConnectionStatus, CredentialState, SikkaCredentials
from parlae_pms.services.errors import SikkaAuthError, SikkaConfigError
from parlae_pms.services.metrics import metrics
from parlae_pms.services.store import CredentialStore

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_SECONDS = 15.0
TOKEN_VALIDITY_BUFFER = timedelta(hours=1)
DEFAULT_TOKEN_LIFETIME_SECONDS = 86_400

_LEADING_INT = re.compile(r"^\s*(\d+)")


def parse_expires_in(value: Any) -> int:
    """Parse Sikka's ``expires_in`` ("85603 second(s)", "86400" or 86400)."""
    if isinstance(value, int) and value > 0:
        return value
    match = _LEADING_INT.match(str(value or ""))
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    return DEFAULT_TOKEN_LIFETIME_SECONDS


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    if isinstance(data, list):
        return {"items": data}
    return data if isinstance(data, dict) else {}


class TokenManager:
    """Acquires, refreshes and persists the Sikka Request-Key for one integration."""

    def __init__(
        self,
        credentials: SikkaCredentials,
        *,
        integration_id: str = "default",
        account_id: str | None = None,
        store: CredentialStore | None = None,
        base_url: str | None = None,
    ):
        if not credentials.app_id or not credentials.app_key:
            raise SikkaConfigError("Sikka app_id and app_key are required")

        self._app_id = credentials.app_id
        self._app_key = credentials.app_key
        self._store = store
        self._lock = threading.RLock()
        self._client = httpx.Client(
            base_url=base_url or SIKKA_BASE_URL,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=AUTH_TIMEOUT_SECONDS,
        )

        self._state = CredentialState(
            integration_id=integration_id,
            account_id=account_id,
            office_id=credentials.office_id,
            secret_key=credentials.secret_key,
            request_key=credentials.request_key,
            refresh_key=credentials.refresh_key,
            token_expiry=credentials.token_expiry,
        )
        stored = store.load(integration_id) if store else None
        if stored is not None:
            # Persisted token state is newer than whatever the caller was configured with
            merged = stored.model_dump(exclude_none=True)
            self._state = self._state.model_copy(update=merged)
            logger.debug("Loaded persisted Sikka token state for %s", integration_id)
        else:
            self._save()

    # ── Public API ───────────────────────────────────────────────────

    @property
    def request_key(self) -> str | None:
        return self._state.request_key

    @property
    def state(self) -> CredentialState:
        return self._state.model_copy()

    @property
    def app_headers(self) -> dict[str, str]:
        """Headers for endpoints authenticated by the app itself."""
        return {"App-Id": self._app_id, "App-Key": self._app_key}

    def is_token_valid(self) -> bool:
        """True when a request key exists and expires more than an hour from now."""
        expiry = self._state.token_expiry
        if not self._state.request_key or expiry is None:
            return False
        return datetime.now(UTC) < expiry - TOKEN_VALIDITY_BUFFER

    def ensure_valid_token(self) -> None:
        """Make sure ``request_key`` is usable, refreshing or acquiring as needed."""
        if self.is_token_valid():
            return
        with self._lock:
            # Another thread or another manager on the same store may have refreshed
            self._reload()
            if self.is_token_valid():
                return
            if self._state.refresh_key:
                self.refresh_token()
            elif self._state.office_id and self._state.secret_key:
                self.acquire_token()
            else:
                self.fetch_authorized_practices()
                self.acquire_token()

    def close(self) -> None:
        self._client.close()

    def invalidate(self, rejected_key: str | None = None) -> None:
        """Drop the current request key; the next call refreshes it.

        When ``rejected_key`` is given and the stored key has already moved
        on, the newer key is kept.
        """
        with self._lock:
            self._reload()
            if rejected_key is not None and self._state.request_key != rejected_key:
                return
            self._state.request_key = None
            self._state.token_expiry = None
            self._save()

    def fetch_authorized_practices(self) -> None:
        """Discover office_id / secret_key for the first authorized practice."""
        logger.info("Sikka: fetching authorized practices")
        try:
            response = self._client.request(
                "GET", "/authorized_practices", headers=self.app_headers,
            )
        except httpx.HTTPError as exc:
            self._mark_error(f"Practice discovery failed: {exc}")
            raise SikkaAuthError(
                "Failed to fetch Sikka authorized practices. "
                "Please check your App-Id and App-Key."
            ) from exc

        body = _json(response)
        if response.status_code >= 400:
            self._mark_error(f"Practice discovery failed ({response.status_code})")
            raise SikkaAuthError(
                f"Failed to fetch Sikka authorized practices ({response.status_code}): {response.text}",
                status_code=response.status_code,
                body=body,
            )

        practices = [p for p in body.get("items") or [] if isinstance(p, dict)]
        if not practices:
            self._mark_error("No authorized practices found")
            raise SikkaAuthError("No authorized practices found")

        practice = practices[0]
        office_id = practice.get("office_id")
        with self._lock:
            self._state.office_id = str(office_id) if office_id is not None else None
            self._state.secret_key = practice.get("secret_key")
            self._save()
        logger.info("Sikka: found office_id %s", self._state.office_id)

    def acquire_token(self) -> None:
        """Obtain a fresh request/refresh key pair from office_id + secret_key."""
        with self._lock:
            if not (self._state.office_id and self._state.secret_key):
                raise SikkaAuthError("office_id and secret_key are required to request a token")
            logger.info("Sikka: requesting initial token (office %s)", self._state.office_id)
            data = self._post_token(
                {
                    "grant_type": "request_key",
                    "office_id": self._state.office_id,
                    "secret_key": self._state.secret_key,
                    "app_id": self._app_id,
                    "app_key": self._app_key,
                }
            )
            self._apply_token(data)
            metrics.record_token_event("acquired")

    def refresh_token(self) -> None:
        """Renew the request key; a rejected (401) refresh key triggers re-acquisition."""
        with self._lock:
            if not self._state.refresh_key:
                raise SikkaAuthError("No refresh_key available")
            logger.info("Sikka: refreshing token")
            try:
                data = self._post_token(
                    {
                        "grant_type": "refresh_key",
                        "refresh_key": self._state.refresh_key,
                        "app_id": self._app_id,
                        "app_key": self._app_key,
                    }
                )
            except SikkaAuthError as exc:
                if exc.status_code != 401:
                    raise
                logger.warning("Sikka: refresh key rejected, requesting a new token")
                metrics.record_token_event("refresh_fallback")
                self._state.refresh_key = None
                if not (self._state.office_id and self._state.secret_key):
                    self.fetch_authorized_practices()
                self.acquire_token()
                return
            self._apply_token(data)
            metrics.record_token_event("refreshed")

    # ── Internal helpers ─────────────────────────────────────────────

    def _post_token(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.request("POST", "/request_key", json=payload)
        except httpx.HTTPError as exc:
            self._mark_error(f"Token request failed: {type(exc).__name__}")
            raise SikkaAuthError(
                "Failed to authenticate with Sikka API. Please check your credentials."
            ) from exc

        data = _json(response)
        if response.status_code >= 400:
            self._mark_error(f"Token request failed ({response.status_code})")
            raise SikkaAuthError(
                f"Sikka authentication failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
                body=data,
            )
        if not data.get("request_key") or not data.get("refresh_key"):
            self._mark_error("Invalid token response")
            raise SikkaAuthError("Invalid token response from Sikka API", body=data)
        return data

    def _apply_token(self, data: dict[str, Any]) -> None:
        expires_in = parse_expires_in(data.get("expires_in"))
        self._state.request_key = data["request_key"]
        self._state.refresh_key = data["refresh_key"]
        self._state.token_expiry = datetime.now(UTC) + timedelta(seconds=expires_in)
        self._state.status = ConnectionStatus.ACTIVE
        self._state.last_error = None
        self._save()
        logger.info("Sikka: token obtained, expires in %ds", expires_in)

    def _mark_error(self, message: str) -> None:
        metrics.record_token_event("failed")
        self._state.status = ConnectionStatus.ERROR
        self._state.last_error = message
        self._save()

    def _reload(self) -> None:
        if self._store is None:
            return
        stored = self._store.load(self._state.integration_id)
        if stored is not None:
            self._state = self._state.model_copy(update=stored.model_dump(exclude_none=True))

    def _save(self) -> None:
        if self._store is not None:
            self._store.save(self._state.model_copy())


class SikkaRequestKeyAuth(httpx.Auth):
    """httpx auth flow that stamps every request with a valid ``Request-Key``.

    A 401 from an authenticated endpoint means the key was revoked early;
    the key is invalidated and the request replayed once with a fresh one.
    """

    def __init__(self, token_manager: TokenManager):
        self._token_manager = token_manager

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        self._token_manager.ensure_valid_token()
        request.headers["Request-Key"] = self._token_manager.request_key or ""
        response = yield request

        if response.status_code == 401:
            logger.warning("Sikka: request key rejected on %s, retrying once", request.url.path)
            self._token_manager.invalidate(request.headers["Request-Key"])
            self._token_manager.ensure_valid_token()
            request.headers["Request-Key"] = self._token_manager.request_key or ""
            yield request
