"""Persistence seams for token state and writeback tracking.

Two protocols, each with a thread-safe in-memory implementation used in
tests and local dev.  ``sql_store`` provides SQLAlchemy-backed versions
that survive process restarts; ``build_stores`` picks one based on
``DATABASE_URL``.

The in-memory stores hand out copies so callers can never mutate stored
state without going through ``save`` / ``update``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from parlae_pms.models import (
    ConnectionStatus,
    CredentialState,
    WritebackRecord,
    WritebackResult,
    utcnow,
)

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def load(self, integration_id: str) -> CredentialState | None: ...

    def save(self, state: CredentialState) -> None: ...

    def list_states(
        self, statuses: Iterable[ConnectionStatus] | None = None,
    ) -> list[CredentialState]: ...


class WritebackStore(Protocol):
    def add(self, record: WritebackRecord) -> None: ...

    def get(self, writeback_id: str) -> WritebackRecord | None: ...

    def update(self, writeback_id: str, **changes: Any) -> WritebackRecord | None: ...

    def list_pending(self, max_checks: int) -> list[WritebackRecord]: ...

    def list_for_integration(self, integration_id: str) -> list[WritebackRecord]: ...

    def mark_stuck(self, cutoff: datetime, error_message: str) -> int: ...


class InMemoryCredentialStore:
    """Credential states keyed by integration id."""

    def __init__(self) -> None:
        self._states: dict[str, CredentialState] = {}
        self._lock = threading.Lock()

    def load(self, integration_id: str) -> CredentialState | None:
        with self._lock:
            state = self._states.get(integration_id)
            return state.model_copy() if state else None

    def save(self, state: CredentialState) -> None:
        with self._lock:
            self._states[state.integration_id] = state.model_copy(
                update={"updated_at": utcnow()},
            )

    def list_states(
        self, statuses: Iterable[ConnectionStatus] | None = None,
    ) -> list[CredentialState]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                s.model_copy()
                for s in self._states.values()
                if wanted is None or s.status in wanted
            ]


class InMemoryWritebackStore:
    """Writeback tracking rows keyed by writeback id."""

    def __init__(self) -> None:
        self._records: dict[str, WritebackRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: WritebackRecord) -> None:
        with self._lock:
            self._records[record.id] = record.model_copy()

    def get(self, writeback_id: str) -> WritebackRecord | None:
        with self._lock:
            record = self._records.get(writeback_id)
            return record.model_copy() if record else None

    def update(self, writeback_id: str, **changes: Any) -> WritebackRecord | None:
        with self._lock:
            record = self._records.get(writeback_id)
            if record is None:
                return None
            updated = record.model_copy(update=changes)
            self._records[writeback_id] = updated
            return updated.model_copy()

    def list_pending(self, max_checks: int) -> list[WritebackRecord]:
        with self._lock:
            pending = [
                r.model_copy()
                for r in self._records.values()
                if r.result == WritebackResult.PENDING and r.check_count < max_checks
            ]
        return sorted(pending, key=lambda r: r.submitted_at)

    def list_for_integration(self, integration_id: str) -> list[WritebackRecord]:
        with self._lock:
            return [
                r.model_copy()
                for r in self._records.values()
                if r.integration_id == integration_id
            ]

    def mark_stuck(self, cutoff: datetime, error_message: str) -> int:
        now = utcnow()
        count = 0
        with self._lock:
            for wb_id, record in self._records.items():
                if record.result == WritebackResult.PENDING and record.submitted_at < cutoff:
                    self._records[wb_id] = record.model_copy(
                        update={
                            "result": WritebackResult.FAILED,
                            "error_message": error_message,
                            "completed_at": now,
                        },
                    )
                    count += 1
        return count


def build_stores(database_url: str | None) -> tuple[CredentialStore, WritebackStore]:
    """Return SQL-backed stores when *database_url* is set, else in-memory."""
    if not database_url:
        logger.info("No DATABASE_URL configured; token and writeback state is in-memory")
        return InMemoryCredentialStore(), InMemoryWritebackStore()

    from parlae_pms.services.sql_store import (  # noqa: PLC0415
        SqlCredentialStore,
        SqlWritebackStore,
        create_session_factory,
    )

    session_factory = create_session_factory(database_url)
    return SqlCredentialStore(session_factory), SqlWritebackStore(session_factory)
