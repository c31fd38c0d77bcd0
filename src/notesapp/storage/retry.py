"""Error classification and retry policy for storage operations.

Low-level I/O failures are mapped to a ``StorageError`` carrying a
user-facing message and a recoverability flag. ``with_retry`` re-runs an
operation with linear backoff unless the failure is marked non-recoverable.
"""
import errno
import logging
import time
from typing import Callable, List, Optional, Tuple, TypeVar

from notesapp.config import config
from notesapp.exceptions import ErrorCode, NotesAppError, StorageError
from notesapp.observability import log_error, metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (substring in the raw error text, code, user message, recoverable)
_CLASSIFICATION: List[Tuple[Tuple[str, ...], ErrorCode, str, bool]] = [
    (
        ("network request failed", "network is unreachable", "connection reset"),
        ErrorCode.NETWORK_LOSS,
        "Network connection lost. Please check your internet connection.",
        True,
    ),
    (
        ("permission denied", "operation not permitted"),
        ErrorCode.PERMISSION_DENIED,
        "Permission denied. Please check file permissions.",
        False,
    ),
    (
        ("no such file or directory",),
        ErrorCode.FILE_NOT_FOUND,
        "File not found. The requested file may have been moved or deleted.",
        True,
    ),
    (
        ("not enough storage", "no space left on device", "disk quota exceeded"),
        ErrorCode.STORAGE_FULL,
        "Not enough storage space available on your device.",
        False,
    ),
    (
        ("invalid argument",),
        ErrorCode.INVALID_ARGUMENT,
        "Invalid file operation parameters.",
        False,
    ),
    (
        ("directory not empty",),
        ErrorCode.DIRECTORY_NOT_EMPTY,
        "Cannot delete folder as it contains files.",
        True,
    ),
]

_ERRNO_CODES = {
    errno.EACCES: ErrorCode.PERMISSION_DENIED,
    errno.EPERM: ErrorCode.PERMISSION_DENIED,
    errno.ENOENT: ErrorCode.FILE_NOT_FOUND,
    errno.ENOSPC: ErrorCode.STORAGE_FULL,
    errno.EINVAL: ErrorCode.INVALID_ARGUMENT,
    errno.ENOTEMPTY: ErrorCode.DIRECTORY_NOT_EMPTY,
    errno.ENETUNREACH: ErrorCode.NETWORK_LOSS,
    errno.ECONNRESET: ErrorCode.NETWORK_LOSS,
}

DEFAULT_MESSAGE = "An error occurred while performing the operation."


def classify_error(error: BaseException, operation: str = "file operation") -> NotesAppError:
    """Wrap a raw failure in a typed error with a recoverability flag.

    Errors that are already typed pass through unchanged. Everything else is
    matched by ``errno`` first, then by message substring; unknown failures
    are treated as recoverable.
    """
    if isinstance(error, NotesAppError):
        return error

    log_error(logger, operation, error, config.dev_mode)

    code = ErrorCode.UNKNOWN
    if isinstance(error, OSError) and error.errno in _ERRNO_CODES:
        code = _ERRNO_CODES[error.errno]
    else:
        text = str(error).lower()
        for needles, candidate, _, _ in _CLASSIFICATION:
            if any(needle in text for needle in needles):
                code = candidate
                break

    message, recoverable = DEFAULT_MESSAGE, True
    for _, candidate, user_message, candidate_recoverable in _CLASSIFICATION:
        if candidate == code:
            message, recoverable = user_message, candidate_recoverable
            break

    path = getattr(error, "filename", None)
    return StorageError(
        message,
        code=code,
        is_recoverable=recoverable,
        operation=operation,
        path=str(path) if path else None,
        original_error=error,
    )


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Optional[Callable[[float], None]] = None,
    label: str = "storage operation",
) -> T:
    """Run ``operation`` with bounded retries and linear backoff.

    The delay before attempt ``n + 1`` is ``base_delay * n`` seconds, scaled by
    ``config.retry_delay_scale``. A ``NotesAppError`` with
    ``is_recoverable=False`` is re-raised immediately; otherwise the last
    error is re-raised once the attempts are exhausted. Each retry is
    counted in the metrics under ``label``.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    sleep = sleep or time.sleep
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            last_error = e
            if isinstance(e, NotesAppError) and not e.is_recoverable:
                raise
            if attempt == max_attempts:
                break
            delay = base_delay * attempt * config.retry_delay_scale
            metrics.record_retry(label)
            logger.debug(
                f"Attempt {attempt}/{max_attempts} failed ({e}), retrying in {delay:.2f}s"
            )
            if delay > 0:
                sleep(delay)

    assert last_error is not None
    raise last_error
