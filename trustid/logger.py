"""
Structured logging system for the identity engine.

Provides centralized logging with console and file outputs, keyword
context rendered as JSON, and counters for monitoring resolution and
gate health.
"""

import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for monitoring resolver and policy gate behaviour.
    """

    def __init__(
        self,
        name: str = "trustid",
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

        self._metrics_lock = threading.Lock()
        self.metrics = {
            "resolutions": 0,
            "identities_created": 0,
            "identities_matched": 0,
            "conflicts_retried": 0,
            "risk_assessments": 0,
            "gate_decisions": {"allowed": 0, "denied": 0, "fail_open": 0},
            "errors_by_type": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stderr)
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

            log_file = log_dir / f"trustid_{datetime.now().strftime('%Y%m%d')}.log"
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

    def record_resolution(self, created: bool):
        """Record a completed resolve call."""
        with self._metrics_lock:
            self.metrics["resolutions"] += 1
            if created:
                self.metrics["identities_created"] += 1
            else:
                self.metrics["identities_matched"] += 1

    def record_conflict_retry(self):
        with self._metrics_lock:
            self.metrics["conflicts_retried"] += 1

    def record_risk_assessment(self):
        with self._metrics_lock:
            self.metrics["risk_assessments"] += 1

    def record_gate_decision(self, allowed: bool, fail_open: bool = False):
        """Record a policy gate outcome."""
        with self._metrics_lock:
            gate = self.metrics["gate_decisions"]
            if fail_open:
                gate["fail_open"] += 1
            if allowed:
                gate["allowed"] += 1
            else:
                gate["denied"] += 1

    def record_error(self, error_type: str):
        with self._metrics_lock:
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics."""
        with self._metrics_lock:
            metrics_copy = self.metrics.copy()
            metrics_copy["gate_decisions"] = dict(self.metrics["gate_decisions"])
            metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])
        resolutions = metrics_copy["resolutions"]
        if resolutions > 0:
            metrics_copy["match_rate"] = round(
                metrics_copy["identities_matched"] / resolutions, 3
            )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()
        gate = metrics["gate_decisions"]

        self.info("=== Identity Engine Metrics ===")
        self.info(
            f"Resolutions: {metrics['resolutions']} "
            f"(created={metrics['identities_created']}, matched={metrics['identities_matched']})"
        )
        self.info(f"Conflict retries: {metrics['conflicts_retried']}")
        self.info(f"Risk assessments: {metrics['risk_assessments']}")
        self.info(
            f"Gate: allowed={gate['allowed']} denied={gate['denied']} fail_open={gate['fail_open']}"
        )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "trustid",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        kwargs.setdefault("enable_file", kwargs.get("log_dir") is not None)
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
