"""Tests for structured logging and metrics."""

import json
import logging

import pytest

from feedbackshield.utils.logging_config import (
    JSONFormatter,
    MetricsCollector,
    identity_var,
    log_execution_time,
    request_id_var,
)


class TestJSONFormatter:
    def test_identity_is_truncated(self):
        record = logging.LogRecord("feedbackshield.test", logging.INFO, "", 0, "Scored", (), None)
        record.extra_data = {"composite": 42.0}
        token = identity_var.set("a1b2c3d4e5f6a7b8c9d0")
        try:
            payload = json.loads(JSONFormatter().format(record))
        finally:
            identity_var.reset(token)

        assert payload["message"] == "Scored"
        assert payload["identity"] == "a1b2c3d4e5f6"
        assert payload["data"] == {"composite": 42.0}

    def test_request_id_included(self):
        record = logging.LogRecord("feedbackshield.test", logging.INFO, "", 0, "Served", (), None)
        token = request_id_var.set("req-123")
        try:
            payload = json.loads(JSONFormatter().format(record))
        finally:
            request_id_var.reset(token)
        assert payload["request_id"] == "req-123"


class TestMetricsCollector:
    def test_counters_and_timings(self):
        collector = MetricsCollector()
        collector.increment("scoring.total")
        collector.increment("scoring.total", 2)
        collector.gauge("bulk.active_workers", 4)
        collector.timing("scoring.latency", 0.2)
        collector.timing("scoring.latency", 0.4)

        stats = collector.get_stats()
        assert stats["counters"]["scoring.total"] == 3
        assert stats["gauges"]["bulk.active_workers"] == 4
        assert stats["timings"]["scoring.latency"]["count"] == 2
        assert stats["timings"]["scoring.latency"]["avg"] == pytest.approx(0.3)

        collector.reset()
        assert collector.get_stats()["counters"] == {}


class TestLogExecutionTime:
    def test_wraps_sync_functions(self):
        @log_execution_time("feedbackshield.test")
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
        assert add.__name__ == "add"

    def test_reraises(self):
        @log_execution_time("feedbackshield.test")
        def boom():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            boom()
