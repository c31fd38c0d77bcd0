"""Custom exceptions for NotesApp.

Provides a structured exception hierarchy with error codes, a recoverability
flag used by the retry policy, and machine-readable error information.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Path errors (1xxx)
    INVALID_PATH = 1001
    EMPTY_PATH = 1002
    PATH_TRAVERSAL_DETECTED = 1003

    # I/O classification (2xxx)
    NETWORK_LOSS = 2001
    PERMISSION_DENIED = 2002
    FILE_NOT_FOUND = 2003
    STORAGE_FULL = 2004
    INVALID_ARGUMENT = 2005
    DIRECTORY_NOT_EMPTY = 2006
    UNKNOWN = 2099

    # Hierarchy document errors (3xxx)
    HIERARCHY_ACCESS_ERROR = 3001
    HIERARCHY_CORRUPTED = 3002
    HIERARCHY_INVALID_STRUCTURE = 3003
    HIERARCHY_WRITE_FAILED = 3004

    # Entity errors (4xxx)
    NOTE_NOT_FOUND = 4001
    NOTEBOOK_NOT_FOUND = 4002
    CHAPTER_NOT_FOUND = 4003
    COLLECTION_NOT_FOUND = 4004
    ENTITY_ALREADY_EXISTS = 4005

    # Validation errors (5xxx)
    INVALID_PARAMS = 5001
    VALIDATION_FAILED = 5002

    # Backup / restore errors (6xxx)
    BACKUP_FAILED = 6001
    BACKUP_SHARE_UNAVAILABLE = 6002
    RESTORE_CANCELLED = 6003
    RESTORE_INVALID_FILE = 6004
    RESTORE_FAILED = 6005

    # Configuration errors (7xxx)
    CONFIG_INVALID = 7001


class NotesAppError(Exception):
    """Base exception for all NotesApp errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        is_recoverable: False when retrying cannot help
        details: Additional context about the error
        timestamp: When the error was raised (UTC, ISO 8601)
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        is_recoverable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.is_recoverable = is_recoverable
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "is_recoverable": self.is_recoverable,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class PathError(NotesAppError):
    """Raised when a filesystem path cannot be built or is unsafe."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INVALID_PATH,
        path: Optional[str] = None,
    ):
        details = {}
        if path:
            details["path"] = str(path)[:100]
        super().__init__(message, code=code, is_recoverable=False, details=details)
        self.path = path


class StorageError(NotesAppError):
    """Raised for classified low-level I/O failures."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        is_recoverable: bool = True,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(
            message, code=code, is_recoverable=is_recoverable, details=details
        )
        self.operation = operation
        self.path = path
        self.original_error = original_error


class HierarchyError(NotesAppError):
    """Raised when the hierarchy document cannot be trusted.

    All hierarchy errors are non-recoverable: retrying the read will not fix
    a missing, corrupted or malformed document.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.HIERARCHY_ACCESS_ERROR,
        original_error: Optional[BaseException] = None,
    ):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, is_recoverable=False, details=details)
        self.original_error = original_error


class EntityNotFoundError(NotesAppError):
    """Raised when a notebook, chapter or collection cannot be found."""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        code: ErrorCode = ErrorCode.NOTEBOOK_NOT_FOUND,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"{entity.capitalize()} not found",
            code=code,
            is_recoverable=False,
            details={f"{entity}_id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class NoteNotFoundError(EntityNotFoundError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            "note",
            note_id,
            code=ErrorCode.NOTE_NOT_FOUND,
            message=message or "Note not found in the system",
        )
        self.note_id = note_id


class ValidationError(NotesAppError):
    """Raised for invalid caller input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.INVALID_PARAMS,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, is_recoverable=False, details=details)
        self.field = field
        self.value = value


class BackupError(NotesAppError):
    """Raised for export, share and restore failures."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.BACKUP_FAILED,
        backup_path: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details = {}
        if backup_path:
            details["backup_path"] = backup_path
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, is_recoverable=False, details=details)
        self.backup_path = backup_path
        self.original_error = original_error


class ConfigurationError(NotesAppError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, is_recoverable=False, details=details)
        self.config_key = config_key
