"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from parlae_pms.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        return MetricsClient()


def _dim_map(metric: dict) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in metric["Dimensions"]}


class TestMetricsRecording:
    """Verify that each record_* call buffers the right data points."""

    def test_record_success_appends_two_data_points(self):
        client = _make_client()
        client.record_success("sikka", "GET /appointments", latency_ms=123.4)
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"PmsAPI/RequestCount", "PmsAPI/Latency"}

    def test_record_failure_without_latency(self):
        client = _make_client()
        client.record_failure("sikka", "GET /providers", error_type="ConnectError")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"PmsAPI/RequestCount", "PmsAPI/ErrorCount"}

    def test_record_failure_with_latency_appends_three_data_points(self):
        client = _make_client()
        client.record_failure("sikka", "POST /appointment", error_type="4xx", latency_ms=500.0)
        assert len(client._buffer) == 3

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("sikka", "GET /patients", error_type="5xx")
        error_metric = next(m for m in client._buffer if m["MetricName"] == "PmsAPI/ErrorCount")
        assert _dim_map(error_metric) == {"Service": "sikka", "ErrorType": "5xx"}

    def test_record_writeback(self):
        client = _make_client()
        client.record_writeback("book_appointment", "completed", attempts=4)
        outcome = next(m for m in client._buffer if m["MetricName"] == "Writeback/Outcome")
        attempts = next(m for m in client._buffer if m["MetricName"] == "Writeback/PollAttempts")
        assert _dim_map(outcome) == {"Operation": "book_appointment", "Result": "completed"}
        assert attempts["Value"] == 4

    def test_record_token_event(self):
        client = _make_client()
        client.record_token_event("refreshed")
        (metric,) = client._buffer
        assert metric["MetricName"] == "Token/Events"
        assert _dim_map(metric) == {"Event": "refreshed"}


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = _make_client()
        client.record_success("sikka", "GET /providers", latency_ms=100.0)
        with patch("boto3.client") as mock_boto:
            assert client.flush() == 0
        mock_boto.assert_not_called()
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("sikka", "GET /providers", latency_ms=100.0)
        assert client.flush() == 2

        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE == "Parlae/PMS"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        mock_cw.put_metric_data.side_effect = RuntimeError("throttled")
        client._cw_client = mock_cw

        client.record_token_event("acquired")
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert _make_client(enabled=True).flush() == 0
