"""Data models for NotesApp.

The hierarchy document is stored as camelCase JSON (``lastModified``,
``notebookId``, ...). Models use snake_case attributes with camelCase aliases
and keep unknown fields, so documents written by other app versions survive
a load/save cycle untouched.
"""

import copy
import datetime
import logging
import re
import threading
import time
from datetime import timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# Ids end up as directory names in the mirrored tree
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")

PRIORITY_TAG_PREFIX = "priority:"
DEFAULT_COLOR = "#6366f1"
DEFAULT_NOTEBOOK_ICON = "book-outline"
DEFAULT_COLLECTION_ICON = "library-outline"


def validate_safe_path_component(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a filesystem path component.

    Raises:
        ValueError: If the value is empty, contains separators or '..', or
            uses characters outside alphanumerics, underscore and hyphen.
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if ".." in value:
        raise ValueError(f"{field_name} cannot contain '..' (path traversal)")
    if "/" in value or "\\" in value:
        raise ValueError(f"{field_name} cannot contain path separators")
    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores and hyphens are allowed."
        )
    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Treat naive datetimes as UTC; ``None`` becomes the epoch minimum."""
    if dt_value is None:
        return datetime.datetime.min.replace(tzinfo=timezone.utc)
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


_id_lock = threading.Lock()
_last_id = 0


def generate_id() -> str:
    """Generate a millisecond timestamp id, strictly increasing in-process.

    Two calls within the same millisecond get consecutive values, so ids
    never collide for a single local user even under rapid creation.
    """
    global _last_id

    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


class Priority(str, Enum):
    """Note priority, encoded in the tag list as ``priority:<value>``."""

    LOW = "Low"
    MID = "Mid"
    HIGH = "High"
    VERY_HIGH = "Very High"


def extract_priority(tags: Optional[List[str]]) -> Priority:
    """Return the priority encoded in ``tags``; Low when absent or malformed."""
    if not tags:
        return Priority.LOW
    for tag in tags:
        if isinstance(tag, str) and tag.startswith(PRIORITY_TAG_PREFIX):
            value = tag[len(PRIORITY_TAG_PREFIX):]
            try:
                return Priority(value)
            except ValueError:
                return Priority.LOW
    return Priority.LOW


def non_priority_tags(tags: Optional[List[str]]) -> List[str]:
    """Return the tags without the reserved priority tag, order preserved."""
    if not tags:
        return []
    return [
        tag
        for tag in tags
        if isinstance(tag, str) and not tag.startswith(PRIORITY_TAG_PREFIX)
    ]


def with_priority(tags: Optional[List[str]], priority: Priority) -> List[str]:
    """Replace any priority tag in ``tags`` with ``priority``."""
    return [*non_priority_tags(tags), f"{PRIORITY_TAG_PREFIX}{Priority(priority).value}"]


class SortOrder(str, Enum):
    """List orderings selectable in the settings."""

    LAST_MODIFIED = "lastModified"
    NAME = "name"
    NAME_DESC = "nameDesc"
    CREATED = "created"
    CREATED_DESC = "createdDesc"


class CamelModel(BaseModel):
    """Base model reading and writing camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        validate_assignment=True,
    )

    @field_validator("*", mode="before")
    @classmethod
    def null_to_default(cls, v: Any, info: ValidationInfo) -> Any:
        """A null scalar falls back to the field default instead of failing."""
        if v is not None or info.field_name is None:
            return v
        field = cls.model_fields[info.field_name]
        if field.is_required():
            return v
        return field.get_default(call_default_factory=True)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump to the on-disk JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Paragraph(CamelModel):
    """One line of note content, as shown by the chat-style editor."""

    id: str
    text: str
    timestamp: datetime.datetime = Field(default_factory=utc_now)


def parse_paragraphs(content: Optional[str]) -> List[Paragraph]:
    """Derive paragraphs from content: one per non-blank line, trimmed."""
    if not content or not content.strip():
        return []
    now = utc_now()
    lines = [line.strip() for line in content.split("\n") if line.strip()]
    return [
        Paragraph(id=f"paragraph-{index}", text=text, timestamp=now)
        for index, text in enumerate(lines)
    ]


def _fill_child_ids(children: Any, **parent_ids: Optional[str]) -> Any:
    """Give each child entry its map key as ``id`` and its parents' ids when absent."""
    if not isinstance(children, dict):
        return children
    filled = {}
    for key, child in children.items():
        if isinstance(child, dict):
            child = dict(child)
            if child.get("id") is None:
                child["id"] = str(key)
            for alias, value in parent_ids.items():
                snake = re.sub(r"(?<!^)(?=[A-Z])", "_", alias).lower()
                if value is not None and child.get(alias) is None and child.get(snake) is None:
                    child[alias] = value
        filled[key] = child
    return filled


class Note(CamelModel):
    """A note inside a chapter."""

    id: str = Field(default_factory=generate_id)
    notebook_id: str
    chapter_id: str
    title: str = "Untitled Note"
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    paragraphs: List[Paragraph] = Field(default_factory=list)
    created: datetime.datetime = Field(default_factory=utc_now)
    last_modified: datetime.datetime = Field(default_factory=utc_now)
    path: str = ""
    deleted: bool = False
    deleted_at: Optional[datetime.datetime] = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_path_component(v, "Note ID")

    @property
    def priority(self) -> Priority:
        return extract_priority(self.tags)

    @property
    def display_tags(self) -> List[str]:
        return non_priority_tags(self.tags)

    def metadata(self) -> Dict[str, Any]:
        """Scalar fields mirrored to ``metadata.json``."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"path", "deleted", "deleted_at"},
        )


class Chapter(CamelModel):
    """A chapter inside a notebook."""

    id: str = Field(default_factory=generate_id)
    notebook_id: str
    title: str = "Untitled Chapter"
    description: str = ""
    color: str = DEFAULT_COLOR
    chapter_number: int = 1
    created: datetime.datetime = Field(default_factory=utc_now)
    last_modified: datetime.datetime = Field(default_factory=utc_now)
    path: str = ""
    notes_count: int = 0
    deleted: bool = False
    deleted_at: Optional[datetime.datetime] = None
    notes: Dict[str, Note] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_path_component(v, "Chapter ID")

    @field_validator("notes", mode="before")
    @classmethod
    def fill_note_ids(cls, v: Any, info: ValidationInfo) -> Any:
        return _fill_child_ids(
            v,
            chapterId=info.data.get("id"),
            notebookId=info.data.get("notebook_id"),
        )

    def active_notes(self) -> List[Note]:
        return [note for note in self.notes.values() if not note.deleted]

    def metadata(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"notes", "path", "deleted", "deleted_at"},
        )


class Notebook(CamelModel):
    """A top-level notebook."""

    id: str = Field(default_factory=generate_id)
    title: str = "Untitled Notebook"
    description: str = ""
    color: str = DEFAULT_COLOR
    icon: str = DEFAULT_NOTEBOOK_ICON
    tags: List[str] = Field(default_factory=list)
    created: datetime.datetime = Field(default_factory=utc_now)
    last_modified: datetime.datetime = Field(default_factory=utc_now)
    path: str = ""
    chapters_count: int = 0
    notes_count: int = 0
    deleted: bool = False
    deleted_at: Optional[datetime.datetime] = None
    chapters: Dict[str, Chapter] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_path_component(v, "Notebook ID")

    @field_validator("chapters", mode="before")
    @classmethod
    def fill_chapter_ids(cls, v: Any, info: ValidationInfo) -> Any:
        return _fill_child_ids(v, notebookId=info.data.get("id"))

    def active_chapters(self) -> List[Chapter]:
        return [chapter for chapter in self.chapters.values() if not chapter.deleted]

    def refresh_counts(self) -> None:
        """Recompute the informational counters from the child maps."""
        active = self.active_chapters()
        for chapter in self.chapters.values():
            chapter.notes_count = len(chapter.active_notes())
        self.chapters_count = len(active)
        self.notes_count = sum(chapter.notes_count for chapter in active)

    def metadata(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"chapters", "path", "deleted", "deleted_at"},
        )


class CollectionEntry(CamelModel):
    """Membership of a notebook in a collection.

    ``notebook_data`` is a snapshot taken when the notebook was added. It is
    never updated; always re-resolve the notebook id for current data.
    """

    added_at: datetime.datetime = Field(default_factory=utc_now)
    notebook_data: Dict[str, Any] = Field(default_factory=dict)


class NotebookCollection(CamelModel):
    """A named group of notebooks."""

    id: str = Field(default_factory=generate_id)
    name: str = "Untitled Collection"
    description: str = ""
    color: str = DEFAULT_COLOR
    icon: str = DEFAULT_COLLECTION_ICON
    created: datetime.datetime = Field(default_factory=utc_now)
    last_modified: datetime.datetime = Field(default_factory=utc_now)
    path: str = ""
    notebooks_count: int = 0
    notebooks: Dict[str, CollectionEntry] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_path_component(v, "Collection ID")

    @field_validator("notebooks", mode="before")
    @classmethod
    def coerce_notebook_list(cls, v: Any) -> Any:
        """Older documents stored members as a plain list of notebook ids."""
        if isinstance(v, list):
            return {str(item): {} for item in v if isinstance(item, (str, int))}
        return v

    def metadata(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"path"},
        )


class HierarchyStructure(CamelModel):
    """The entity maps of the hierarchy document."""

    notebooks: Dict[str, Notebook] = Field(default_factory=dict)
    notebook_collections: Dict[str, NotebookCollection] = Field(default_factory=dict)
    revisions: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("notebooks", "notebook_collections", mode="before")
    @classmethod
    def fill_entity_ids(cls, v: Any) -> Any:
        return _fill_child_ids(v)

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy_collections(cls, data: Any) -> Any:
        """Fold the legacy ``collections`` map into ``notebookCollections``.

        Runs once at load time; entries under the canonical name win when an
        id appears under both.
        """
        if not isinstance(data, dict) or "collections" not in data:
            return data
        data = dict(data)
        legacy = data.pop("collections") or {}
        canonical_key = (
            "notebook_collections"
            if "notebook_collections" in data
            else "notebookCollections"
        )
        current = data.get(canonical_key) or {}
        if isinstance(legacy, dict):
            data[canonical_key] = {**legacy, **current}
        return data


class HierarchyMetadata(CamelModel):
    """Aggregate counters; display hints only, recomputed on every write."""

    total_notes: int = 0
    total_notebook_collections: int = 0


def _discard_at(data: Any, loc: Tuple[Any, ...]) -> bool:
    """Remove the value at ``loc``, or its enclosing entry when it is absent."""

    def lookup(container: Any, key: Any) -> Any:
        if isinstance(container, dict) and key in container:
            return container[key]
        if isinstance(container, list) and isinstance(key, int) and 0 <= key < len(container):
            return container[key]
        raise LookupError(key)

    def remove(container: Any, key: Any) -> bool:
        try:
            lookup(container, key)
        except LookupError:
            return False
        if isinstance(container, dict):
            del container[key]
        else:
            container.pop(key)
        return True

    if not loc:
        return False
    parents = [data]
    try:
        for key in loc[:-1]:
            parents.append(lookup(parents[-1], key))
    except LookupError:
        return False
    if remove(parents[-1], loc[-1]):
        return True
    return len(loc) >= 2 and remove(parents[-2], loc[-2])


class HierarchyDocument(CamelModel):
    """The single JSON index of all notebooks, chapters, notes and collections."""

    version: str = "1.0"
    created: datetime.datetime = Field(default_factory=utc_now)
    last_modified: datetime.datetime = Field(default_factory=utc_now)
    structure: HierarchyStructure = Field(default_factory=HierarchyStructure)
    metadata: HierarchyMetadata = Field(default_factory=HierarchyMetadata)
    restored: Optional[bool] = None
    restored_at: Optional[datetime.datetime] = None
    original_export_date: Optional[str] = None
    original_platform: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], max_repairs: int = 100) -> "HierarchyDocument":
        """Validate a loaded document, repairing malformed entries one at a time.

        A field that fails validation is removed so its default applies; an
        entry missing a required field is dropped from its parent. The input
        is not modified.

        Raises:
            pydantic.ValidationError: If the document is still invalid after
                ``max_repairs`` repairs or an error cannot be located.
        """
        data = copy.deepcopy(raw)
        for _ in range(max_repairs):
            try:
                return cls.model_validate(data)
            except PydanticValidationError as e:
                loc = e.errors()[0]["loc"]
                if not _discard_at(data, loc):
                    raise
                logger.warning(
                    "Discarded malformed hierarchy entry at "
                    + ".".join(str(part) for part in loc)
                )
        return cls.model_validate(data)

    @property
    def notebooks(self) -> Dict[str, Notebook]:
        return self.structure.notebooks

    @property
    def collections(self) -> Dict[str, NotebookCollection]:
        return self.structure.notebook_collections

    def iter_chapters(
        self, include_deleted: bool = False
    ) -> Iterator[Tuple[Notebook, Chapter]]:
        for notebook in self.notebooks.values():
            if notebook.deleted and not include_deleted:
                continue
            for chapter in notebook.chapters.values():
                if chapter.deleted and not include_deleted:
                    continue
                yield notebook, chapter

    def iter_notes(
        self, include_deleted: bool = False
    ) -> Iterator[Tuple[Notebook, Chapter, Note]]:
        """Walk notes; by default only those whose whole ancestry is active."""
        for notebook, chapter in self.iter_chapters(include_deleted):
            for note in chapter.notes.values():
                if note.deleted and not include_deleted:
                    continue
                yield notebook, chapter, note

    def recompute_metadata(self) -> None:
        for notebook in self.notebooks.values():
            notebook.refresh_counts()
        for collection in self.collections.values():
            collection.notebooks_count = len(collection.notebooks)
        self.metadata.total_notes = sum(1 for _ in self.iter_notes())
        self.metadata.total_notebook_collections = len(self.collections)


class AppSettings(CamelModel):
    """User preferences stored in ``app_settings.json``."""

    default_sorting: SortOrder = SortOrder.LAST_MODIFIED
    revision_pages: int = Field(default=2, ge=1)
    story_interval: float = Field(default=24.0, gt=0)
    custom_storage_path: Optional[str] = None


class Story(CamelModel):
    """A sampled note enriched with its notebook and chapter for display."""

    id: str
    notebook_id: str
    chapter_id: str
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    priority: Priority = Priority.LOW
    notebook_title: str = ""
    chapter_title: str = ""
    notebook_color: str = DEFAULT_COLOR
    created: Optional[datetime.datetime] = None
    last_modified: Optional[datetime.datetime] = None


class BackupEnvelope(CamelModel):
    """Export/share wrapper around a full hierarchy document."""

    export_date: datetime.datetime = Field(default_factory=utc_now)
    app_version: str
    platform: str
    storage_location: str
    hierarchy: HierarchyDocument


class FullExport(BackupEnvelope):
    """Superset export that also embeds every mirrored file by relative path."""

    files: Dict[str, str] = Field(default_factory=dict)


class OperationResult(CamelModel):
    """Uniform result of every mutating operation.

    ``to_dict()`` gives ``{"success": True, "notebookId": ...}`` or
    ``{"success": False, "error": ...}``.
    """

    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    notebook_id: Optional[str] = None
    chapter_id: Optional[str] = None
    note_id: Optional[str] = None
    collection_id: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def ok(cls, **fields: Any) -> "OperationResult":
        return cls(success=True, **fields)

    @classmethod
    def fail(cls, error: str, **fields: Any) -> "OperationResult":
        return cls(success=False, error=error, **fields)

    def to_dict(self) -> Dict[str, Any]:
        return self.to_json_dict()


class ShareResult(OperationResult):
    filename: Optional[str] = None
    size: Optional[int] = None


class ReconstructionResult(OperationResult):
    files_created: int = 0


class RestoreResult(OperationResult):
    restored_notebooks: Optional[int] = None
    restored_collections: Optional[int] = None
    export_date: Optional[str] = None
    original_platform: Optional[str] = None
    reconstructed_files: Optional[int] = None
    safety_backup_path: Optional[str] = None
    help_text: Optional[str] = None


class CollectionMember(CamelModel):
    """A live notebook resolved from a collection entry."""

    notebook: Notebook
    added_to_collection_at: datetime.datetime


class SearchResult(CamelModel):
    """One hit of a linear-scan search."""

    id: str
    type: str
    title: str = ""
    description: str = ""
    color: Optional[str] = None
    created: Optional[datetime.datetime] = None
    notebook_id: Optional[str] = None
    chapter_id: Optional[str] = None
    breadcrumb: Optional[str] = None
    count: Optional[int] = None
    locations: List[Dict[str, str]] = Field(default_factory=list)
