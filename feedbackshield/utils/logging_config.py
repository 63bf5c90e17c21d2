"""
Structured logging configuration for FeedbackShield.

JSON logs in production (one object per line, ready for log aggregation),
human-readable lines in development. Also hosts the in-process metrics
collector used by the scoring engine and the admin API.
"""

import asyncio
import json
import logging
import sys
import threading
import time
import traceback
from contextvars import ContextVar
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional

from feedbackshield.config import settings


# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
identity_var: ContextVar[Optional[str]] = ContextVar("identity_hash", default=None)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if request_id_var.get():
            log_data["request_id"] = request_id_var.get()
        if identity_var.get():
            # Truncated: the hash is a join key, logs don't need all of it
            log_data["identity"] = identity_var.get()[:12]

        if hasattr(record, "extra_data"):
            log_data["data"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        log_data["environment"] = settings.environment

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """
    Wrapper for structured logging with keyword context.

    Usage:
        logger = StructuredLogger("feedbackshield.scoring")
        logger.info("Score computed", composite=72.5, risk_level="high")
        logger.error("Persist failed", error=str(e), exc_info=True)
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **kwargs):
        if not self._logger.isEnabledFor(level):
            return
        extra_data = kwargs.pop("extra_data", None) or kwargs
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )
        if extra_data:
            record.extra_data = extra_data
        self._logger.handle(record)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs):
        if exc_info:
            self._logger.error(message, exc_info=True, extra={"extra_data": kwargs})
        else:
            self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
):
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (True for prod, False for dev)
        log_file: Optional file path for file logging
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        console_handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
        )
        console_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper()))
        file_handler.setFormatter(JSONFormatter())  # Always JSON for files
        root_logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)


# ============== METRICS ==============


class MetricsCollector:
    """
    Collects and aggregates metrics for monitoring.

    Thread-safe: bulk rescoring workers and the context pool report
    concurrently.

    Usage:
        metrics.increment("scoring.total")
        metrics.timing("scoring.latency", 0.125)
        metrics.gauge("bulk.active_workers", 4)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._timings: Dict[str, List[float]] = {}
        self._start_time = time.time()

    def increment(self, name: str, value: int = 1):
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def timing(self, name: str, value: float):
        with self._lock:
            values = self._timings.setdefault(name, [])
            values.append(value)
            # Keep only last 1000 values
            if len(values) > 1000:
                self._timings[name] = values[-1000:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counters = self._counters.copy()
            gauges = self._gauges.copy()
            timings = {name: list(values) for name, values in self._timings.items()}

        timing_stats = {}
        for name, values in timings.items():
            if values:
                sorted_vals = sorted(values)
                timing_stats[name] = {
                    "count": len(values),
                    "min": sorted_vals[0],
                    "max": sorted_vals[-1],
                    "avg": sum(values) / len(values),
                    "p50": sorted_vals[len(sorted_vals) // 2],
                    "p95": sorted_vals[int(len(sorted_vals) * 0.95)] if len(sorted_vals) >= 20 else None,
                }

        return {
            "uptime_seconds": time.time() - self._start_time,
            "counters": counters,
            "gauges": gauges,
            "timings": timing_stats,
        }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


# Global metrics instance
metrics = MetricsCollector()


# ============== DECORATORS ==============


def log_execution_time(logger_name: str = "feedbackshield"):
    """Decorator to log function execution time."""
    def decorator(func):
        logger = StructuredLogger(logger_name)

        def _done(start: float):
            duration = time.time() - start
            logger.debug(
                f"{func.__name__} completed",
                function=func.__name__,
                duration_ms=round(duration * 1000, 2),
            )
            metrics.timing(f"function.{func.__name__}", duration)

        def _failed(start: float, e: Exception):
            logger.error(
                f"{func.__name__} failed",
                function=func.__name__,
                duration_ms=round((time.time() - start) * 1000, 2),
                error=str(e),
                exc_info=True,
            )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _failed(start, e)
                raise
            _done(start)
            return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _failed(start, e)
                raise
            _done(start)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def track_scoring(func):
    """Decorator counting scoring runs by resulting risk level."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        metrics.increment("scoring.total")
        start = time.time()
        try:
            result = func(*args, **kwargs)
        except Exception:
            metrics.increment("scoring.errors")
            raise
        metrics.timing("scoring.latency", time.time() - start)
        score = getattr(result, "fraud_score", result)
        risk_level = getattr(score, "risk_level", None) or "unknown"
        metrics.increment(f"scoring.risk.{risk_level}")
        return result

    return wrapper


def init_logging():
    """Initialize logging based on environment settings."""
    is_prod = settings.is_production
    setup_logging(
        level="INFO" if is_prod else "DEBUG",
        json_format=is_prod,
        log_file="logs/feedbackshield.log" if is_prod else None,
    )
