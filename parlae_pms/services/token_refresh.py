"""Scheduled Sikka token maintenance.

Request keys live 24 h.  Live traffic refreshes them lazily, but a practice
that receives no calls overnight would start the morning with an expired
key (and possibly an expired refresh key).  This job walks the stored
integrations and renews them ahead of time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from parlae_pms.models import ConnectionStatus, CredentialState, SikkaCredentials, utcnow
from parlae_pms.services.errors import SikkaError
from parlae_pms.services.sikka_auth import TokenManager
from parlae_pms.services.store import CredentialStore

logger = logging.getLogger(__name__)

REFRESH_WINDOW = timedelta(hours=2)

_REFRESHABLE = (ConnectionStatus.ACTIVE, ConnectionStatus.SETUP_REQUIRED)


class TokenRefreshJob:
    def __init__(
        self,
        store: CredentialStore,
        *,
        app_id: str,
        app_key: str,
        base_url: str | None = None,
    ):
        self._store = store
        self._app_id = app_id
        self._app_key = app_key
        self._base_url = base_url

    def _manager(self, state: CredentialState) -> TokenManager:
        return TokenManager(
            SikkaCredentials(app_id=self._app_id, app_key=self._app_key),
            integration_id=state.integration_id,
            account_id=state.account_id,
            store=self._store,
            base_url=self._base_url,
        )

    def refresh_integration(self, integration_id: str) -> bool:
        """Renew one integration's keys.  Returns ``False`` (and records why) on failure."""
        state = self._store.load(integration_id)
        if state is None:
            logger.warning("Token refresh: no stored credentials for integration %s", integration_id)
            return False

        manager = self._manager(state)
        try:
            if state.refresh_key:
                # A rejected refresh key falls back to a new token inside the manager
                manager.refresh_token()
            else:
                if not (state.office_id and state.secret_key):
                    manager.fetch_authorized_practices()
                manager.acquire_token()
        except SikkaError as exc:
            logger.error("Token refresh failed for integration %s: %s", integration_id, exc)
            failed = self._store.load(integration_id) or state
            self._store.save(
                failed.model_copy(
                    update={"status": ConnectionStatus.ERROR, "last_error": str(exc)},
                ),
            )
            return False
        finally:
            manager.close()

        logger.info("Token refresh: integration %s renewed", integration_id)
        return True

    def _run(self, states: list[CredentialState]) -> dict[str, int]:
        results = {"success": 0, "failed": 0}
        for state in states:
            if self.refresh_integration(state.integration_id):
                results["success"] += 1
            else:
                results["failed"] += 1
        logger.info("Token refresh complete: %s", results)
        return results

    def refresh_all(self, force: bool = False) -> dict[str, int]:
        """Refresh every active integration; ``force`` also retries those in ``ERROR``."""
        statuses = list(_REFRESHABLE)
        if force:
            statuses.append(ConnectionStatus.ERROR)
        states = self._store.list_states(statuses)
        logger.info("Token refresh: %d integration(s) to refresh", len(states))
        return self._run(states)

    def refresh_expiring(
        self,
        within: timedelta = REFRESH_WINDOW,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Refresh integrations whose key expires within *within* (or has no known expiry)."""
        deadline = (now or utcnow()) + within
        states = [
            state
            for state in self._store.list_states(_REFRESHABLE)
            if state.token_expiry is None or state.token_expiry <= deadline
        ]
        logger.info("Token refresh: %d integration(s) expiring soon", len(states))
        return self._run(states)
