"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics for the Sikka integration: request count,
latency and errors per endpoint, writeback outcomes and token lifecycle
events.

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from parlae_pms.services.metrics import metrics
>>> metrics.record_success("sikka", "GET /appointments", latency_ms=123.4)
>>> metrics.record_writeback("book_appointment", "completed", attempts=3)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "Parlae/PMS"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**values: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in values.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful upstream API call."""
        now = datetime.now(UTC)
        self._append("PmsAPI/RequestCount", _dims(Service=service, Status="success"), 1, "Count", now)
        self._append(
            "PmsAPI/Latency", _dims(Service=service, Operation=operation),
            latency_ms, "Milliseconds", now,
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed upstream API call."""
        now = datetime.now(UTC)
        self._append("PmsAPI/RequestCount", _dims(Service=service, Status="failure"), 1, "Count", now)
        self._append("PmsAPI/ErrorCount", _dims(Service=service, ErrorType=error_type), 1, "Count", now)
        if latency_ms > 0:
            self._append(
                "PmsAPI/Latency", _dims(Service=service, Operation=operation),
                latency_ms, "Milliseconds", now,
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_writeback(self, operation: str, result: str, attempts: int) -> None:
        """Record the outcome of a writeback poll (completed / failed / timeout)."""
        now = datetime.now(UTC)
        self._append("Writeback/Outcome", _dims(Operation=operation, Result=result), 1, "Count", now)
        self._append("Writeback/PollAttempts", _dims(Operation=operation), attempts, "Count", now)
        logger.debug("Metric: writeback %s %s after %d poll(s)", operation, result, attempts)

    def record_token_event(self, event: str) -> None:
        """Record a token lifecycle event (acquired / refreshed / refresh_fallback / failed)."""
        self._append("Token/Events", _dims(Event=event), 1, "Count", datetime.now(UTC))
        logger.debug("Metric: token %s", event)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(
        self,
        name: str,
        dimensions: list[dict[str, str]],
        value: float,
        unit: str,
        timestamp: datetime,
    ) -> None:
        with self._lock:
            self._buffer.append(
                {
                    "MetricName": name,
                    "Dimensions": dimensions,
                    "Timestamp": timestamp,
                    "Value": value,
                    "Unit": unit,
                }
            )

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
