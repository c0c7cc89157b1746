"""
Structured logging for the tree inventory import.

One process-wide logger writes human-readable lines to stdout and a full
DEBUG trail to logs/treeinventory_YYYYMMDD.log. Keyword context passed to any
log call is appended as JSON. The logger also counts what happened during a
run (mirror requests, batches, rows) so the CLI can print a closing summary.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"


def _level(name: str) -> int:
    return getattr(logging, name.upper())


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"treeinventory_{datetime.now():%Y%m%d}.log"
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _empty_metrics() -> dict:
    return {
        "endpoint_attempts": 0,
        "endpoint_failures": 0,
        "batches_attempted": 0,
        "batches_succeeded": 0,
        "batches_failed": 0,
        "rows_updated": 0,
        "errors_by_type": {},
        "endpoint_success_rate": {},
    }


class StructuredLogger:
    """
    Logger with JSON context and run metrics.

    Console output follows the configured level; the log file always gets
    DEBUG and above.
    """

    def __init__(
        self,
        name: str = "treeinventory",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Args:
            name: Logger name
            level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for the daily log file (default: logs/)
            enable_file: Write the log file
            enable_console: Write to stdout
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(_level(level))
        self.logger.handlers.clear()
        self.metrics = _empty_metrics()

        if enable_console:
            self.logger.addHandler(_console_handler(_level(level)))
        if enable_file:
            self.logger.addHandler(_file_handler(log_dir or Path("logs")))

    def set_level(self, level: str):
        """Change the logger and console level; the file handler keeps DEBUG."""
        numeric = _level(level)
        self.logger.setLevel(numeric)
        for handler in self.logger.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(numeric)

    def debug(self, message: str, **context):
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, **context):
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context):
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context):
        self._log(logging.ERROR, message, context)

    def critical(self, message: str, **context):
        self._log(logging.CRITICAL, message, context)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        # stacklevel points %(lineno)d at the caller, not at this wrapper
        self.logger.log(level, message, stacklevel=3)

    # Overpass mirrors

    def _host_stats(self, host: str) -> dict:
        return self.metrics["endpoint_success_rate"].setdefault(host, {"attempts": 0, "successes": 0})

    def record_endpoint_attempt(self, host: str):
        self.metrics["endpoint_attempts"] += 1
        self._host_stats(host)["attempts"] += 1

    def record_endpoint_success(self, host: str):
        self._host_stats(host)["successes"] += 1

    def record_endpoint_failure(self, host: str, error_type: str):
        self.metrics["endpoint_failures"] += 1
        self._count_error(error_type)

    # Backfill batches

    def record_batch_attempt(self):
        self.metrics["batches_attempted"] += 1

    def record_batch_success(self, rows: int):
        """A committed batch; rows may be 0 for an empty selection."""
        self.metrics["batches_succeeded"] += 1
        self.metrics["rows_updated"] += rows

    def record_batch_failure(self, error_type: str):
        self.metrics["batches_failed"] += 1
        self._count_error(error_type)

    def _count_error(self, error_type: str):
        errors = self.metrics["errors_by_type"]
        errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Snapshot of the counters, with a success_rate per mirror host."""
        snapshot = dict(self.metrics)
        snapshot["errors_by_type"] = dict(self.metrics["errors_by_type"])
        rates = {}
        for host, stats in self.metrics["endpoint_success_rate"].items():
            entry = dict(stats)
            if stats["attempts"]:
                entry["success_rate"] = round(stats["successes"] / stats["attempts"], 3)
            rates[host] = entry
        snapshot["endpoint_success_rate"] = rates
        return snapshot

    def log_metrics_summary(self):
        m = self.get_metrics()

        self.info("=== Import Session Metrics ===")
        self.info(f"Overpass requests: {m['endpoint_attempts']} ({m['endpoint_failures']} failed)")
        self.info(
            f"Batches: {m['batches_succeeded']}/{m['batches_attempted']} committed, "
            f"{m['batches_failed']} rolled back"
        )
        self.info(f"Rows updated: {m['rows_updated']}")

        for host, stats in m["endpoint_success_rate"].items():
            rate = stats.get("success_rate", 0) * 100
            self.info(f"  mirror {host}: {stats['successes']}/{stats['attempts']} ({rate:.1f}%)")
        for error_type, count in m["errors_by_type"].items():
            self.info(f"  error {error_type}: {count}")


_global_logger: Optional[StructuredLogger] = None


def get_logger(name: str = "treeinventory", level: str = "INFO", **kwargs) -> StructuredLogger:
    """
    Return the process-wide logger, creating it on first use.

    Arguments only take effect on the first call.
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)
    return _global_logger


def reset_logger():
    """Drop the process-wide logger so the next get_logger() builds a fresh one."""
    global _global_logger
    _global_logger = None
