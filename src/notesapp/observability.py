"""Observability utilities for NotesApp.

Persistent disk logging with rotation, per-operation timing and retry
counts, and error-message sanitization for production logs.

Store operations report failure through ``OperationResult`` rather than by
raising, so ``timed_operation`` also counts a run as failed when the caller
puts an ``error`` into the yielded dict.
"""
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

from notesapp.config import config

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "notesapp.log"
METRICS_FILE_NAME = "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_logging_configured = False


def _has_handler(target: logging.Logger, log_file: Optional[Path]) -> bool:
    for handler in target.handlers:
        if isinstance(handler, RotatingFileHandler):
            if log_file is not None and Path(handler.baseFilename) == log_file.resolve():
                return True
        elif isinstance(handler, logging.StreamHandler) and log_file is None:
            return True
    return False


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Attach a rotating log file (and optionally stderr) to the package logger.

    Every ``notesapp.*`` module logger inherits the handlers. Calling this
    again with the same directory does not add duplicates.

    Args:
        log_dir: Directory for log files. Defaults to ``<documents_dir>/logs``
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation
        backup_count: Number of rotated files to keep
        console: Also log to the console (default: True)

    Returns:
        Path to the log directory
    """
    global _logging_configured

    log_path = Path(log_dir) if log_dir else config.documents_dir / "logs"
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger("notesapp")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = []
    if not _has_handler(package_logger, log_file):
        handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not _has_handler(package_logger, None):
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    _logging_configured = True
    package_logger.info(f"Logging to {log_file} ({backup_count} rotated files kept)")
    return log_path


def is_logging_configured() -> bool:
    return _logging_configured


def sanitize_error_message(
    message: Optional[str], max_length: int = 200
) -> Optional[str]:
    """Reduce an error message to loggable text.

    The home directory becomes ``~``, line breaks become spaces and the
    result is cut to ``max_length`` characters, so production logs carry
    neither note content nor full private paths.
    """
    if message is None:
        return None
    home = str(Path.home())
    if home and home != "/":
        message = message.replace(home, "~")
    message = " ".join(message.splitlines())
    if len(message) > max_length:
        message = message[: max_length - 3] + "..."
    return message


def log_error(
    log: logging.Logger, operation: str, error: BaseException, dev_mode: bool
) -> None:
    """Log a failed operation: full detail in dev mode, message text otherwise."""
    if dev_mode:
        log.error(f"[{operation}] Error: {error!r}", exc_info=error)
    else:
        log.error(f"[{operation}] Error: {sanitize_error_message(str(error))}")


@dataclass
class OperationStats:
    """Running totals for one operation name."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        average = self.total_duration_ms / self.count if self.count else 0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "avg_duration_ms": round(average, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
        }


class MetricsCollector:
    """Thread-safe timing, failure and retry counts per storage operation."""

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else None

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._stats[operation]
            stats.count += 1
            stats.total_duration_ms += duration_ms
            stats.max_duration_ms = max(stats.max_duration_ms, duration_ms)
            if success:
                stats.success_count += 1
            else:
                stats.error_count += 1
                stats.last_error = sanitize_error_message(error)

    def record_retry(self, operation: str) -> None:
        with self._lock:
            self._stats[operation].retry_count += 1

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's totals, keyed by operation name."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            stats = list(self._stats.values())
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": sum(s.count for s in stats),
                "total_errors": sum(s.error_count for s in stats),
                "total_retries": sum(s.retry_count for s in stats),
                "operations_tracked": sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now(timezone.utc)

    def get_metrics_file(self) -> Path:
        """The explicit metrics file, else ``<documents_dir>/metrics.json``."""
        return self._metrics_file or config.documents_dir / METRICS_FILE_NAME

    def save_metrics(self) -> bool:
        """Write the snapshot to disk through a temp file and rename.

        Returns:
            True if saved, False if the write failed.
        """
        target = self.get_metrics_file()
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": self.get_metrics(),
        }
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            temp_file = target.with_suffix(".tmp")
            temp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_file.replace(target)
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {target}: {e}")
            return False


# Global metrics collector instance
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time an operation, log its start and end, and record the outcome.

    Yields:
        A dict for result details. Setting ``op["error"]`` marks the run as
        failed without raising.

    Example:
        with timed_operation("create_note", chapter_id=chapter_id) as op:
            result = store.create_note(...)
            if not result.success:
                op["error"] = result.error
    """
    correlation_id = uuid.uuid4().hex[:8]
    started = time.perf_counter()
    op: Dict[str, Any] = {"correlation_id": correlation_id}

    logger.debug(
        f"[{correlation_id}] START {operation} "
        f"({', '.join(f'{k}={v}' for k, v in context.items())})"
    )

    raised: Optional[str] = None
    try:
        yield op
    except Exception as e:
        raised = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        error = raised if raised is not None else op.get("error")
        metrics.record_operation(operation, duration_ms, error is None, error)

        details = ", ".join(
            f"{k}={v}" for k, v in op.items() if k not in ("correlation_id", "error")
        )
        status = "OK" if error is None else f"ERROR: {sanitize_error_message(error)}"
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{status}] {details}"
        )
