"""Sikka writeback protocol: submit → poll → resolve.

Mutating Sikka calls (POST/PATCH/DELETE) do not return the final resource.
They return a writeback ``id`` that the practice's on-site agent (SPU)
processes asynchronously; ``GET /writebacks?id=<id>`` reports
``pending``, ``completed`` or ``failed``.

``WritebackPoller`` makes a writeback look synchronous to the caller by
polling inside the request.  Every submission is also recorded in a
``WritebackStore`` so ``WritebackSweeper`` can finish the job out of band
when the in-request poll times out or the process dies mid-poll.

Sikka allows 200 requests per practice per minute; the sweeper keeps
background checks under 150 so live calls always have headroom.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Any

import httpx

from parlae_pms.config import WRITEBACK_MAX_ATTEMPTS, WRITEBACK_POLL_INTERVAL_SECONDS
from parlae_pms.models import WritebackRecord, WritebackResult, WritebackStatus, utcnow
from parlae_pms.services.errors import SikkaAPIError, WritebackTimeoutError
from parlae_pms.services.metrics import metrics
from parlae_pms.services.sikka_client import SikkaClient
from parlae_pms.services.sikka_mappers import parse_datetime
from parlae_pms.services.store import WritebackStore

logger = logging.getLogger(__name__)


def parse_writeback_status(item: dict[str, Any]) -> WritebackStatus:
    """Build a ``WritebackStatus`` from one ``/writebacks`` item.

    Any result other than ``completed`` / ``failed`` is still in flight.
    """
    raw_result = str(item.get("result") or "").lower()
    try:
        result = WritebackResult(raw_result)
    except ValueError:
        result = WritebackResult.PENDING

    duration = item.get("duration_in_second") or item.get("duration_in_seconds")
    return WritebackStatus(
        id=str(item.get("id", "")),
        result=result,
        error_message=str(item.get("error_message") or "") or None,
        completed_time=parse_datetime(item.get("completed_time")),
        duration_in_seconds=str(duration) if duration is not None else None,
    )


def _status_from_response(writeback_id: str, data: dict[str, Any]) -> WritebackStatus:
    items = [item for item in data.get("items") or [] if isinstance(item, dict)]
    if not items:
        raise SikkaAPIError(f"Writeback {writeback_id} not found")
    return parse_writeback_status(items[0])


def _terminal_changes(status: WritebackStatus, now: datetime) -> dict[str, Any]:
    return {
        "result": status.result,
        "error_message": status.error_message,
        "completed_at": status.completed_time or now,
    }


class WritebackPoller:
    """Submits writebacks and polls them to a terminal state."""

    def __init__(
        self,
        client: SikkaClient,
        *,
        integration_id: str = "default",
        store: WritebackStore | None = None,
        poll_interval: float = WRITEBACK_POLL_INTERVAL_SECONDS,
        max_attempts: int = WRITEBACK_MAX_ATTEMPTS,
    ):
        self._client = client
        self._integration_id = integration_id
        self._store = store
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    def submit(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        operation: str,
    ) -> str:
        """Send a mutating request and return the writeback id Sikka assigned."""
        data = self._client.request(method, path, json_body=payload)
        writeback_id = data.get("id") or data.get("writeback_id")
        if not writeback_id:
            raise SikkaAPIError(f"Sikka did not return a writeback id for {operation}", body=data)

        writeback_id = str(writeback_id)
        if self._store is not None:
            self._store.add(
                WritebackRecord(
                    id=writeback_id,
                    integration_id=self._integration_id,
                    operation=operation,
                ),
            )
        logger.info("Sikka: %s submitted, writeback ID %s", operation, writeback_id)
        return writeback_id

    def poll(self, writeback_id: str, operation: str = "writeback") -> WritebackStatus:
        """Poll until ``completed`` / ``failed`` or the attempt budget runs out.

        A status call that errors, or a writeback Sikka has not indexed yet,
        uses up an attempt but does not end the loop.

        Raises:
            WritebackTimeoutError: no terminal state after ``max_attempts`` polls.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                status = _status_from_response(
                    writeback_id, self._client.get_writeback(writeback_id),
                )
            except (SikkaAPIError, httpx.HTTPError) as exc:
                logger.warning(
                    "Sikka: error polling writeback %s (attempt %d/%d): %s",
                    writeback_id, attempt, self.max_attempts, exc,
                )
                self._record_check(writeback_id, None)
            else:
                logger.info(
                    "Sikka: writeback %s status %s (attempt %d/%d)",
                    writeback_id, status.result.value, attempt, self.max_attempts,
                )
                self._record_check(writeback_id, status)
                if status.result != WritebackResult.PENDING:
                    metrics.record_writeback(operation, status.result.value, attempt)
                    return status

            if attempt < self.max_attempts:
                time.sleep(self.poll_interval)

        metrics.record_writeback(operation, "timeout", self.max_attempts)
        raise WritebackTimeoutError(
            f"Writeback {writeback_id} still pending after {self.max_attempts} status checks",
            writeback_id=writeback_id,
            attempts=self.max_attempts,
        )

    def submit_and_wait(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        operation: str,
    ) -> WritebackStatus:
        writeback_id = self.submit(method, path, payload, operation)
        return self.poll(writeback_id, operation)

    def _record_check(self, writeback_id: str, status: WritebackStatus | None) -> None:
        if self._store is None:
            return
        record = self._store.get(writeback_id)
        if record is None:
            return
        now = utcnow()
        changes: dict[str, Any] = {
            "check_count": record.check_count + 1,
            "last_checked_at": now,
        }
        if status is not None and status.result != WritebackResult.PENDING:
            changes.update(_terminal_changes(status, now))
        self._store.update(writeback_id, **changes)


# ── Background reconciliation ────────────────────────────────────────


@dataclass
class _RateWindow:
    request_count: int
    window_start: datetime


class WritebackSweeper:
    """Resumes polling of writebacks left ``pending`` in the store.

    Meant to run on a schedule (cron endpoint / CLI).  Checks are spaced out
    with a back-off schedule and capped per practice per minute.
    """

    MAX_REQUESTS_PER_MINUTE = 200
    SAFE_REQUESTS_PER_MINUTE = 150
    INITIAL_CHECK_DELAY = timedelta(seconds=10)
    BACKOFF_DELAYS_SECONDS = (10, 10, 20, 30, 60, 120, 300, 600, 1800)
    MAX_CHECK_ATTEMPTS = 30
    LOW_TRAFFIC_HOURS = frozenset(range(0, 6))
    HIGH_TRAFFIC_BATCH_SIZE = 15
    STUCK_AFTER = timedelta(hours=6)
    BURST_DELAY_SECONDS = 0.05

    def __init__(
        self,
        client: SikkaClient,
        store: WritebackStore,
        *,
        practice_timezone: tzinfo | None = None,
    ):
        self._client = client
        self._store = store
        self._tz = practice_timezone
        self._windows: dict[str, _RateWindow] = {}

    # ── Rate limiting ────────────────────────────────────────────────

    def can_make_request(
        self, integration_id: str, now: datetime, *, high_priority: bool = False,
    ) -> bool:
        window = self._windows.get(integration_id)
        if window is None or (now - window.window_start) >= timedelta(minutes=1):
            self._windows[integration_id] = _RateWindow(0, now)
            return True
        limit = self.MAX_REQUESTS_PER_MINUTE if high_priority else self.SAFE_REQUESTS_PER_MINUTE
        return window.request_count < limit

    def _count_request(self, integration_id: str) -> None:
        window = self._windows.get(integration_id)
        if window is not None:
            window.request_count += 1

    # ── Scheduling ───────────────────────────────────────────────────

    def is_low_traffic(self, now: datetime) -> bool:
        return now.astimezone(self._tz).hour in self.LOW_TRAFFIC_HOURS

    def next_check_time(self, record: WritebackRecord) -> datetime:
        """First check 10 s after submission, then back off by ``check_count``."""
        if record.check_count == 0 or record.last_checked_at is None:
            return record.submitted_at + self.INITIAL_CHECK_DELAY
        index = min(record.check_count, len(self.BACKOFF_DELAYS_SECONDS) - 1)
        return record.last_checked_at + timedelta(seconds=self.BACKOFF_DELAYS_SECONDS[index])

    def ready_for_check(self, now: datetime | None = None) -> list[WritebackRecord]:
        now = now or utcnow()
        ready = [
            record
            for record in self._store.list_pending(self.MAX_CHECK_ATTEMPTS)
            if now >= self.next_check_time(record)
            and self.can_make_request(record.integration_id, now)
        ]
        if self.is_low_traffic(now):
            return ready
        return ready[: self.HIGH_TRAFFIC_BATCH_SIZE]

    # ── Jobs ─────────────────────────────────────────────────────────

    def poll_pending(self, now: datetime | None = None) -> dict[str, int]:
        """Check every writeback that is due.  Returns a summary of the sweep."""
        now = now or utcnow()
        total_pending = len(self._store.list_pending(self.MAX_CHECK_ATTEMPTS))
        ready = self.ready_for_check(now)
        logger.info(
            "Writeback sweep (%s traffic): %d of %d pending ready for check",
            "low" if self.is_low_traffic(now) else "high", len(ready), total_pending,
        )

        checked = updated = rate_limited = 0
        for record in ready:
            if not self.can_make_request(record.integration_id, now):
                rate_limited += 1
                continue

            status: WritebackStatus | None = None
            try:
                status = _status_from_response(record.id, self._client.get_writeback(record.id))
            except (SikkaAPIError, httpx.HTTPError) as exc:
                logger.warning("Writeback sweep: status check for %s failed: %s", record.id, exc)
            self._count_request(record.integration_id)
            checked += 1

            changes: dict[str, Any] = {
                "check_count": record.check_count + 1,
                "last_checked_at": now,
            }
            if status is not None and status.result != WritebackResult.PENDING:
                changes.update(_terminal_changes(status, now))
                updated += 1
                logger.info(
                    "Writeback sweep: %s %s after %d check(s)",
                    record.id, status.result.value, record.check_count + 1,
                )
            self._store.update(record.id, **changes)
            time.sleep(self.BURST_DELAY_SECONDS)

        summary = {
            "checked": checked,
            "updated": updated,
            "skipped": total_pending - checked,
            "rate_limited": rate_limited,
        }
        logger.info("Writeback sweep complete: %s", summary)
        return summary

    def mark_stuck_as_failed(self, now: datetime | None = None) -> int:
        """Fail writebacks still pending after ``STUCK_AFTER``."""
        cutoff = (now or utcnow()) - self.STUCK_AFTER
        count = self._store.mark_stuck(
            cutoff,
            "Writeback timeout - operation stuck in pending state for >6 hours",
        )
        if count:
            logger.warning("Marked %d stuck writeback(s) as failed", count)
        return count

    def stats(self, integration_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Per-integration outcome counts plus current rate-limit usage."""
        records = self._store.list_for_integration(integration_id)
        counts = Counter(r.result for r in records)
        durations = [
            (r.completed_at - r.submitted_at).total_seconds()
            for r in records
            if r.result == WritebackResult.COMPLETED and r.completed_at is not None
        ]
        total = len(records)
        completed = counts[WritebackResult.COMPLETED]

        window = self._windows.get(integration_id)
        now = now or utcnow()
        if window is not None and (now - window.window_start) >= timedelta(minutes=1):
            window = None
        used = window.request_count if window else 0

        return {
            "total": total,
            "pending": counts[WritebackResult.PENDING],
            "completed": completed,
            "failed": counts[WritebackResult.FAILED],
            "success_rate": round(completed / total * 100, 1) if total else 0.0,
            "avg_duration_seconds": sum(durations) / len(durations) if durations else 0.0,
            "rate_limit": {
                "requests_used": used,
                "requests_remaining": self.SAFE_REQUESTS_PER_MINUTE - used,
                "window_start": window.window_start if window else None,
            },
        }
