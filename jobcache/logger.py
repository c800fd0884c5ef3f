"""
Structured logging system for the job cache layer.

Provides centralized logging with console and optional file output, plus
counters for cache hits, misses, and backend failures so operators can see
how often the layer is running degraded.
"""

import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks cache metrics for monitoring backend health.
    """

    def __init__(
        self,
        name: str = "jobcache",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()
        self.logger.propagate = False

        self.metrics = {
            "cache_hits": 0,
            "cache_misses": 0,
            "degraded_calls": 0,
            "snapshots_written": 0,
            "errors_by_type": {},
            "operations": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"{name}_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_hit(self, operation: str):
        """Record a cache read that found a value."""
        self.metrics["cache_hits"] += 1
        self._count_operation(operation)

    def record_miss(self, operation: str):
        """Record a cache read that found nothing."""
        self.metrics["cache_misses"] += 1
        self._count_operation(operation)

    def record_degraded(self, operation: str):
        """Record an operation answered with its unavailable result."""
        self.metrics["degraded_calls"] += 1
        self._count_operation(operation)

    def record_error(self, operation: str, error_type: str):
        """Record a backend failure by exception type."""
        errors = self.metrics["errors_by_type"]
        errors[error_type] = errors.get(error_type, 0) + 1
        self._count_operation(operation)

    def record_snapshot(self):
        """Record a local snapshot written to disk."""
        self.metrics["snapshots_written"] += 1

    def _count_operation(self, operation: str):
        ops = self.metrics["operations"]
        ops[operation] = ops.get(operation, 0) + 1

    def get_metrics(self) -> dict:
        """Return current metrics with the derived hit rate."""
        metrics_copy = dict(self.metrics)
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])
        metrics_copy["operations"] = dict(self.metrics["operations"])

        lookups = metrics_copy["cache_hits"] + metrics_copy["cache_misses"]
        metrics_copy["hit_rate"] = (
            round(metrics_copy["cache_hits"] / lookups, 3) if lookups else 0.0
        )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Cache Metrics ===")
        self.info(
            f"Lookups: {metrics['cache_hits']} hits / {metrics['cache_misses']} misses "
            f"({metrics['hit_rate'] * 100:.1f}% hit rate)"
        )
        self.info(f"Degraded calls: {metrics['degraded_calls']}")
        self.info(f"Snapshots written: {metrics['snapshots_written']}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "jobcache",
    level: Optional[str] = None,
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    File output is only enabled when a log directory is given, either as
    ``log_dir`` or through the ``LOG_DIR`` environment variable.

    Args:
        name: Logger name
        level: Log level (default: LOG_LEVEL env var or INFO)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        if level is None:
            level = os.getenv("LOG_LEVEL", "INFO")
        if "log_dir" not in kwargs and os.getenv("LOG_DIR"):
            kwargs["log_dir"] = Path(os.environ["LOG_DIR"])
        kwargs.setdefault("enable_file", kwargs.get("log_dir") is not None)
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
