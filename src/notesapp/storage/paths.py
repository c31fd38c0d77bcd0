"""Path helpers for the mirrored entity tree.

Every path that touches the filesystem is built and normalized here.
"""
import re
from pathlib import Path
from typing import Optional, Union

from notesapp.config import MOBILE_PLATFORMS, config
from notesapp.exceptions import ErrorCode, PathError

# Only the characters that break common filesystems; colons stay legal
_DANGEROUS_CHARS = re.compile(r'[<>"|?*\x00-\x1f]')
_RESERVED_NAMES = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])$", re.IGNORECASE)

MAX_FILE_NAME_LENGTH = 100


def normalize_path(path: str) -> str:
    """Collapse repeated separators and convert backslashes to forward slashes.

    Raises:
        PathError: If the path is empty or not a string.
    """
    if not path or not isinstance(path, str):
        raise PathError("Invalid path provided", code=ErrorCode.INVALID_PATH)
    return re.sub(r"/+", "/", path.replace("\\", "/"))


def validate_path(path: str, platform: Optional[str] = None) -> bool:
    """Check a path for control and dangerous characters.

    Mobile targets are permissive; desktop-style targets additionally reject
    Windows reserved device names in any segment.
    """
    if not path or not isinstance(path, str):
        return False
    if _DANGEROUS_CHARS.search(path):
        return False

    target = (platform or config.platform).lower()
    if target in MOBILE_PLATFORMS:
        return True

    return not any(_RESERVED_NAMES.match(part) for part in path.split("/"))


def sanitize_file_name(name: str) -> str:
    """Make a single path segment safe to write.

    Examples:
        "My: Notes" -> "My: Notes"
        "a/b" -> "a_b"
        "<>" -> "untitled"
    """
    if not name or not isinstance(name, str):
        return "untitled"
    cleaned = _DANGEROUS_CHARS.sub("", name)
    cleaned = cleaned.replace("/", "_").replace("\\", "_")
    return cleaned[:MAX_FILE_NAME_LENGTH].strip() or "untitled"


def generate_safe_path(base: str, *segments: object) -> str:
    """Join sanitized segments onto an untouched base and normalize.

    Raises:
        PathError: If the resulting path is empty.
    """
    safe_segments = [sanitize_file_name(str(segment)) for segment in segments]
    joined = "/".join([base, *safe_segments]) if base else "/".join(safe_segments)
    if not joined:
        raise PathError("Generated path is empty", code=ErrorCode.EMPTY_PATH)
    full_path = normalize_path(joined)
    if not full_path:
        raise PathError("Generated path is empty", code=ErrorCode.EMPTY_PATH)
    return full_path


def resolve_under(root: Union[str, Path], relative: str) -> Path:
    """Resolve a stored entity path (e.g. ``/notebooks/123``) under ``root``.

    Raises:
        PathError: If the path is invalid or escapes the storage root.
    """
    normalized = normalize_path(relative)
    if not validate_path(normalized):
        raise PathError(
            "Path contains invalid characters",
            code=ErrorCode.INVALID_PATH,
            path=normalized,
        )
    parts = [p for p in normalized.split("/") if p and p != "."]
    if ".." in parts:
        raise PathError(
            "Path cannot contain '..' (path traversal)",
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            path=normalized,
        )
    root_path = Path(root)
    return root_path.joinpath(*parts) if parts else root_path
