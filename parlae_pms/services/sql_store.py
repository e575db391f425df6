"""SQLAlchemy-backed credential and writeback stores.

Tables
------
``pms_integrations``  one row per integration, holds the token state so a
                      refresh survives process restarts.
``pms_writebacks``    one row per submitted writeback; the sweeper resumes
                      polling from here after a crash.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from parlae_pms.models import (
    ConnectionStatus,
    CredentialState,
    WritebackRecord,
    WritebackResult,
    utcnow,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class PmsIntegrationRow(Base):
    __tablename__ = "pms_integrations"

    integration_id = sa.Column(String(64), primary_key=True)
    account_id = sa.Column(String(64))
    office_id = sa.Column(String(128))
    secret_key = sa.Column(Text)
    request_key = sa.Column(Text)
    refresh_key = sa.Column(Text)
    token_expiry = sa.Column(DateTime(timezone=True))
    status = sa.Column(String(32), nullable=False, default=ConnectionStatus.SETUP_REQUIRED.value)
    last_error = sa.Column(Text)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PmsWritebackRow(Base):
    __tablename__ = "pms_writebacks"

    id = sa.Column(String(64), primary_key=True)
    integration_id = sa.Column(String(64), nullable=False, index=True)
    operation = sa.Column(String(64), nullable=False)
    result = sa.Column(String(16), nullable=False, default=WritebackResult.PENDING.value, index=True)
    error_message = sa.Column(Text)
    submitted_at = sa.Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = sa.Column(DateTime(timezone=True))
    last_checked_at = sa.Column(DateTime(timezone=True))
    check_count = sa.Column(Integer, nullable=False, default=0)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def create_session_factory(database_url: str) -> Callable[[], Session]:
    """Create the engine, ensure tables exist and return a sessionmaker."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection so the schema is visible to every session
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)
    Base.metadata.create_all(bind=engine)
    logger.info("PMS stores using %s database", engine.dialect.name)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# ── Credential store ─────────────────────────────────────────────────


def _state_from_row(row: PmsIntegrationRow) -> CredentialState:
    return CredentialState(
        integration_id=row.integration_id,
        account_id=row.account_id,
        office_id=row.office_id,
        secret_key=row.secret_key,
        request_key=row.request_key,
        refresh_key=row.refresh_key,
        token_expiry=_aware(row.token_expiry),
        status=ConnectionStatus(row.status),
        last_error=row.last_error,
        updated_at=_aware(row.updated_at),
    )


class SqlCredentialStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def load(self, integration_id: str) -> CredentialState | None:
        with self._session_factory() as session:
            row = session.get(PmsIntegrationRow, integration_id)
            return _state_from_row(row) if row else None

    def save(self, state: CredentialState) -> None:
        with self._session_factory() as session, session.begin():
            row = session.get(PmsIntegrationRow, state.integration_id)
            if row is None:
                row = PmsIntegrationRow(integration_id=state.integration_id)
                session.add(row)
            row.account_id = state.account_id
            row.office_id = state.office_id
            row.secret_key = state.secret_key
            row.request_key = state.request_key
            row.refresh_key = state.refresh_key
            row.token_expiry = state.token_expiry
            row.status = state.status.value
            row.last_error = state.last_error
            row.updated_at = utcnow()

    def list_states(
        self, statuses: Iterable[ConnectionStatus] | None = None,
    ) -> list[CredentialState]:
        with self._session_factory() as session:
            query = sa.select(PmsIntegrationRow)
            if statuses is not None:
                query = query.where(
                    PmsIntegrationRow.status.in_([s.value for s in statuses]),
                )
            return [_state_from_row(row) for row in session.scalars(query)]


# ── Writeback store ──────────────────────────────────────────────────


def _record_from_row(row: PmsWritebackRow) -> WritebackRecord:
    return WritebackRecord(
        id=row.id,
        integration_id=row.integration_id,
        operation=row.operation,
        result=WritebackResult(row.result),
        error_message=row.error_message,
        submitted_at=_aware(row.submitted_at),
        completed_at=_aware(row.completed_at),
        last_checked_at=_aware(row.last_checked_at),
        check_count=row.check_count,
    )


class SqlWritebackStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def add(self, record: WritebackRecord) -> None:
        with self._session_factory() as session, session.begin():
            session.merge(
                PmsWritebackRow(
                    id=record.id,
                    integration_id=record.integration_id,
                    operation=record.operation,
                    result=record.result.value,
                    error_message=record.error_message,
                    submitted_at=record.submitted_at,
                    completed_at=record.completed_at,
                    last_checked_at=record.last_checked_at,
                    check_count=record.check_count,
                ),
            )

    def get(self, writeback_id: str) -> WritebackRecord | None:
        with self._session_factory() as session:
            row = session.get(PmsWritebackRow, writeback_id)
            return _record_from_row(row) if row else None

    def update(self, writeback_id: str, **changes: Any) -> WritebackRecord | None:
        with self._session_factory() as session, session.begin():
            row = session.get(PmsWritebackRow, writeback_id)
            if row is None:
                return None
            for key, value in changes.items():
                if isinstance(value, WritebackResult):
                    value = value.value
                setattr(row, key, value)
            session.flush()
            return _record_from_row(row)

    def list_pending(self, max_checks: int) -> list[WritebackRecord]:
        with self._session_factory() as session:
            query = (
                sa.select(PmsWritebackRow)
                .where(
                    PmsWritebackRow.result == WritebackResult.PENDING.value,
                    PmsWritebackRow.check_count < max_checks,
                )
                .order_by(PmsWritebackRow.submitted_at)
            )
            return [_record_from_row(row) for row in session.scalars(query)]

    def list_for_integration(self, integration_id: str) -> list[WritebackRecord]:
        with self._session_factory() as session:
            query = sa.select(PmsWritebackRow).where(
                PmsWritebackRow.integration_id == integration_id,
            )
            return [_record_from_row(row) for row in session.scalars(query)]

    def mark_stuck(self, cutoff: datetime, error_message: str) -> int:
        with self._session_factory() as session, session.begin():
            result = session.execute(
                sa.update(PmsWritebackRow)
                .where(
                    PmsWritebackRow.result == WritebackResult.PENDING.value,
                    PmsWritebackRow.submitted_at < cutoff,
                )
                .values(
                    result=WritebackResult.FAILED.value,
                    error_message=error_message,
                    completed_at=utcnow(),
                ),
            )
            return result.rowcount or 0
