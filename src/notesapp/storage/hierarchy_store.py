"""Hierarchy store: the authoritative JSON index of all entities.

Every mutation is a read-modify-write of the whole document under a single
re-entrant lock. Mirrored entity files are written first, then the document.
Public operations never raise: mutations return an ``OperationResult`` and
queries degrade to empty results.
"""
import json
import logging
from collections import Counter, defaultdict
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from notesapp.config import config
from notesapp.exceptions import (
    EntityNotFoundError,
    ErrorCode,
    HierarchyError,
    NotesAppError,
    NoteNotFoundError,
    StorageError,
    ValidationError,
)
from notesapp.models.schema import (
    Chapter,
    CollectionEntry,
    CollectionMember,
    HierarchyDocument,
    Note,
    Notebook,
    NotebookCollection,
    OperationResult,
    Paragraph,
    Priority,
    SearchResult,
    ensure_timezone_aware,
    generate_id,
    parse_paragraphs,
    utc_now,
    with_priority,
)
from notesapp.observability import log_error, timed_operation
from notesapp.settings import SettingsStore
from notesapp.storage.entity_files import EntityFileManager
from notesapp.storage.paths import generate_safe_path
from notesapp.storage.retry import classify_error, with_retry

logger = logging.getLogger(__name__)

AlertCallback = Callable[[str, str], None]

CHANGES_LOST_MESSAGE = "Failed to save changes. Your latest changes may be lost."
MIN_CHAPTER_NUMBER = 1
MAX_CHAPTER_NUMBER = 999


def _log_alert(title: str, message: str) -> None:
    logger.warning(f"{title}: {message}")


def _by_last_modified(items: Iterable[Any]) -> List[Any]:
    return sorted(
        items, key=lambda item: ensure_timezone_aware(item.last_modified), reverse=True
    )


def _by_deleted_at(items: Iterable[Any]) -> List[Any]:
    return sorted(
        items, key=lambda item: ensure_timezone_aware(item.deleted_at), reverse=True
    )


def _search_terms(query: str) -> List[str]:
    return (query or "").lower().split()


def _matches(terms: List[str], *fields: Any) -> bool:
    haystack = " ".join(str(field) for field in fields if field).lower()
    return all(term in haystack for term in terms)


def _validate_chapter_number(value: Any) -> int:
    if (
        isinstance(value, bool)
        or not isinstance(value, int)
        or not MIN_CHAPTER_NUMBER <= value <= MAX_CHAPTER_NUMBER
    ):
        raise ValidationError(
            f"Chapter number must be between {MIN_CHAPTER_NUMBER} and {MAX_CHAPTER_NUMBER}",
            field="chapter_number",
            value=value,
        )
    return value


def _parse_priority(value: Union[str, Priority]) -> Priority:
    try:
        return Priority(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid priority: {value}", field="priority", value=value
        ) from e


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field.capitalize()} cannot be empty", field=field)
    return str(value).strip()


class HierarchyStore:
    """Owns the hierarchy document and the mirrored entity tree.

    Args:
        settings: Settings store consulted for a custom storage location.
        default_root: Storage root used when no custom location applies.
            Defaults to ``config.get_default_root()``.
        on_alert: Called with ``(title, message)`` for failures the user
            should see. Defaults to logging a warning.
    """

    def __init__(
        self,
        settings: Optional[SettingsStore] = None,
        default_root: Optional[Union[str, Path]] = None,
        on_alert: Optional[AlertCallback] = None,
    ):
        self.settings = settings or SettingsStore()
        self.default_root = Path(default_root) if default_root else config.get_default_root()
        self.on_alert = on_alert or _log_alert
        self.root: Optional[Path] = None
        self.custom_storage_path: Optional[str] = None
        self.files = EntityFileManager(self.default_root)
        self._initialized = False
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Initialization

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def hierarchy_path(self) -> Path:
        return (self.root or self.default_root) / config.hierarchy_file_name

    def _alert(self, title: str, message: str) -> None:
        try:
            self.on_alert(title, message)
        except Exception as e:
            logger.error(f"Alert callback failed: {e}")

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        temp_file = path.with_name(path.name + ".tmp")
        temp_file.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        temp_file.replace(path)

    def _ensure_hierarchy_file(self, root: Path) -> None:
        root.mkdir(parents=True, exist_ok=True)
        path = root / config.hierarchy_file_name
        if not path.exists():
            logger.info(f"Creating empty hierarchy document at {path}")
            self._write_json(path, HierarchyDocument().to_json_dict())

    def _resolve_custom_root(self) -> Optional[Path]:
        if not config.supports_custom_storage():
            return None
        custom = self.settings.get_custom_storage_path()
        if not custom:
            return None
        self.custom_storage_path = custom
        return Path(custom) / config.app_folder_name

    def _initialize_once(self) -> bool:
        custom_root = self._resolve_custom_root()
        root = custom_root or self.default_root
        try:
            self._ensure_hierarchy_file(root)
        except OSError as e:
            error = classify_error(e, "initialize file system")
            if custom_root is None:
                raise error from e
            self._alert(
                "File System Error",
                f"Failed to initialize NotesApp storage: {error.message}. "
                "The app will use default storage.",
            )
            self.custom_storage_path = None
            root = self.default_root
            try:
                self._ensure_hierarchy_file(root)
            except OSError as fallback_error:
                raise classify_error(
                    fallback_error, "initialize fallback storage"
                ) from fallback_error

        self.root = root
        self.files.root = root
        self._initialized = True
        logger.info(f"Storage initialized at {root}")
        return True

    def initialize(self) -> bool:
        """Resolve the storage root and make sure the document exists.

        Idempotent: returns immediately once initialized.

        Raises:
            NotesAppError: If neither the custom nor the default root works.
        """
        with self._lock:
            if self._initialized:
                return True
            return with_retry(
                self._initialize_once, max_attempts=2, base_delay=1.5, label="initialize"
            )

    def force_refresh(self) -> bool:
        """Drop cached paths and settings, then initialize from scratch."""
        with self._lock:
            self._initialized = False
            self.root = None
            self.custom_storage_path = None
            self.settings.clear_cache()
            try:
                return self.initialize()
            except NotesAppError as e:
                logger.error(f"Failed to force refresh storage: {e.message}")
                return False
            except Exception as e:
                log_error(logger, "force refresh", e, config.dev_mode)
                return False

    # ------------------------------------------------------------------
    # Document read / write

    def _load_document(self) -> HierarchyDocument:
        self.initialize()
        path = self.hierarchy_path
        if not path.exists():
            try:
                self._ensure_hierarchy_file(path.parent)
            except OSError as e:
                logger.warning(f"Failed to recreate hierarchy document: {e}")
            if not path.exists():
                raise HierarchyError(
                    "Unable to create or access hierarchy file",
                    code=ErrorCode.HIERARCHY_ACCESS_ERROR,
                )

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise classify_error(e, "read hierarchy") from e

        try:
            raw = json.loads(text)
        except ValueError as e:
            raise HierarchyError(
                "Hierarchy file is corrupted. Please restore from backup.",
                code=ErrorCode.HIERARCHY_CORRUPTED,
                original_error=e,
            ) from e

        structure = raw.get("structure") if isinstance(raw, dict) else None
        if not isinstance(structure, dict) or not isinstance(
            structure.get("notebooks"), dict
        ):
            raise HierarchyError(
                "Hierarchy file has invalid structure",
                code=ErrorCode.HIERARCHY_INVALID_STRUCTURE,
            )

        try:
            return HierarchyDocument.from_raw(raw)
        except PydanticValidationError as e:
            raise HierarchyError(
                "Hierarchy file is corrupted. Please restore from backup.",
                code=ErrorCode.HIERARCHY_CORRUPTED,
                original_error=e,
            ) from e

    def _read_document(self) -> HierarchyDocument:
        return with_retry(
            self._load_document, max_attempts=3, base_delay=1.0, label="read_hierarchy"
        )

    def read(self) -> Optional[HierarchyDocument]:
        """Load the hierarchy document, or ``None`` if it cannot be trusted.

        Non-recoverable failures are reported through the alert callback.
        """
        with self._lock:
            try:
                return self._read_document()
            except NotesAppError as e:
                logger.error(f"Failed to read hierarchy: {e}")
                if not e.is_recoverable:
                    self._alert(
                        "Data Access Error",
                        f"Cannot access your notes data: {e.message}. Please check "
                        "your storage permissions or restore from backup.",
                    )
                return None
            except Exception as e:
                log_error(logger, "read hierarchy", e, config.dev_mode)
                return None

    def get_hierarchy(self) -> Optional[HierarchyDocument]:
        return self.read()

    def write(self, doc: HierarchyDocument) -> bool:
        """Persist the document; False means the changes were lost."""
        with self._lock:
            try:
                self.initialize()
                doc.last_modified = utc_now()
                doc.recompute_metadata()
                self._write_json(self.hierarchy_path, doc.to_json_dict())
                return True
            except Exception as e:
                log_error(logger, "write hierarchy", e, config.dev_mode)
                return False

    def _mutate(
        self,
        operation: str,
        mutation: Callable[[HierarchyDocument], OperationResult],
        **context: Any,
    ) -> OperationResult:
        """Run ``mutation`` against the latest document and persist it."""
        with self._lock:
            try:
                with timed_operation(operation, **context) as op:
                    doc = self._read_document()
                    result = mutation(doc)
                    if not result.success:
                        op["error"] = result.error
                    if not self.write(doc):
                        raise StorageError(
                            CHANGES_LOST_MESSAGE,
                            code=ErrorCode.HIERARCHY_WRITE_FAILED,
                            operation=operation,
                        )
                    return result
            except NotesAppError as e:
                logger.warning(f"{operation} failed: {e}")
                return OperationResult.fail(e.message)
            except Exception as e:
                return OperationResult.fail(classify_error(e, operation).message)

    # ------------------------------------------------------------------
    # Lookups (raise inside mutations)

    @staticmethod
    def _notebook(doc: HierarchyDocument, notebook_id: str, active: bool = False) -> Notebook:
        notebook = doc.notebooks.get(notebook_id)
        if notebook is None or (active and notebook.deleted):
            raise EntityNotFoundError(
                "notebook", notebook_id, code=ErrorCode.NOTEBOOK_NOT_FOUND
            )
        return notebook

    @classmethod
    def _chapter(
        cls, doc: HierarchyDocument, notebook_id: str, chapter_id: str, active: bool = False
    ) -> Tuple[Notebook, Chapter]:
        notebook = doc.notebooks.get(notebook_id)
        chapter = notebook.chapters.get(chapter_id) if notebook else None
        if chapter is None or (active and (chapter.deleted or notebook.deleted)):
            raise EntityNotFoundError(
                "chapter", chapter_id, code=ErrorCode.CHAPTER_NOT_FOUND
            )
        return notebook, chapter

    @classmethod
    def _note(
        cls,
        doc: HierarchyDocument,
        notebook_id: str,
        chapter_id: str,
        note_id: str,
        message: str = "Note not found",
    ) -> Tuple[Notebook, Chapter, Note]:
        notebook = doc.notebooks.get(notebook_id)
        chapter = notebook.chapters.get(chapter_id) if notebook else None
        note = chapter.notes.get(note_id) if chapter else None
        if note is None:
            raise NoteNotFoundError(note_id, message=message)
        return notebook, chapter, note

    @staticmethod
    def _collection(doc: HierarchyDocument, collection_id: str) -> NotebookCollection:
        collection = doc.collections.get(collection_id)
        if collection is None:
            raise EntityNotFoundError(
                "collection", collection_id, code=ErrorCode.COLLECTION_NOT_FOUND
            )
        return collection

    # ------------------------------------------------------------------
    # Notebooks

    def create_notebook(
        self,
        title: Optional[str] = None,
        description: str = "",
        color: Optional[str] = None,
        icon: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> OperationResult:
        """Create a notebook and its ``chapters/`` directory."""

        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook_id = generate_id()
            fields: Dict[str, Any] = {
                "id": notebook_id,
                "title": (title or "").strip() or "Untitled Notebook",
                "description": description or "",
                "tags": list(tags or []),
                "path": generate_safe_path("/notebooks", notebook_id),
            }
            if color:
                fields["color"] = color
            if icon:
                fields["icon"] = icon
            notebook = Notebook(**fields)
            self.files.write_notebook(notebook)
            doc.notebooks[notebook_id] = notebook
            logger.info(f"Created notebook {notebook_id}")
            return OperationResult.ok(notebook_id=notebook_id, path=notebook.path)

        return self._mutate("create_notebook", mutation)

    def update_notebook(
        self,
        notebook_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook = self._notebook(doc, notebook_id)
            if title is not None:
                notebook.title = _require_text(title, "title")
            if description is not None:
                notebook.description = description
            if color:
                notebook.color = color
            if icon:
                notebook.icon = icon
            if tags is not None:
                notebook.tags = list(tags)
            notebook.last_modified = utc_now()
            notebook.refresh_counts()
            self.files.write_notebook(notebook)
            return OperationResult.ok(notebook_id=notebook_id)

        return self._mutate("update_notebook", mutation, notebook_id=notebook_id)

    def soft_delete_notebook(self, notebook_id: str) -> OperationResult:
        """Move a notebook to the recycle bin; its files stay on disk."""

        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook = self._notebook(doc, notebook_id)
            now = utc_now()
            notebook.deleted = True
            notebook.deleted_at = now
            notebook.last_modified = now
            return OperationResult.ok(notebook_id=notebook_id)

        return self._mutate("soft_delete_notebook", mutation, notebook_id=notebook_id)

    def restore_notebook(self, notebook_id: str) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook = self._notebook(doc, notebook_id)
            notebook.deleted = False
            notebook.deleted_at = None
            notebook.last_modified = utc_now()
            return OperationResult.ok(notebook_id=notebook_id)

        return self._mutate("restore_notebook", mutation, notebook_id=notebook_id)

    def permanently_delete_notebook(self, notebook_id: str) -> OperationResult:
        """Purge a notebook, its whole subtree and its collection memberships."""

        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook = self._notebook(doc, notebook_id)
            self.files.purge(notebook.path)
            del doc.notebooks[notebook_id]
            for collection in doc.collections.values():
                collection.notebooks.pop(notebook_id, None)
            logger.info(f"Permanently deleted notebook {notebook_id}")
            return OperationResult.ok(notebook_id=notebook_id)

        return self._mutate(
            "permanently_delete_notebook", mutation, notebook_id=notebook_id
        )

    # ------------------------------------------------------------------
    # Chapters

    def create_chapter(
        self,
        notebook_id: str,
        title: str,
        description: str = "",
        color: Optional[str] = None,
        chapter_number: int = 1,
    ) -> OperationResult:
        """Create a chapter under an active notebook."""

        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook = self._notebook(doc, notebook_id, active=True)
            chapter_id = generate_id()
            fields: Dict[str, Any] = {
                "id": chapter_id,
                "notebook_id": notebook_id,
                "title": _require_text(title, "title"),
                "description": description or "",
                "chapter_number": _validate_chapter_number(chapter_number),
                "path": generate_safe_path(notebook.path, "chapters", chapter_id),
            }
            if color:
                fields["color"] = color
            chapter = Chapter(**fields)
            self.files.write_chapter(chapter)
            notebook.chapters[chapter_id] = chapter
            notebook.last_modified = utc_now()
            return OperationResult.ok(
                notebook_id=notebook_id, chapter_id=chapter_id, path=chapter.path
            )

        return self._mutate("create_chapter", mutation, notebook_id=notebook_id)

    def update_chapter(
        self,
        notebook_id: str,
        chapter_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        chapter_number: Optional[int] = None,
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter = self._chapter(doc, notebook_id, chapter_id)
            if title is not None:
                chapter.title = _require_text(title, "title")
            if description is not None:
                chapter.description = description
            if color:
                chapter.color = color
            if chapter_number is not None:
                chapter.chapter_number = _validate_chapter_number(chapter_number)
            now = utc_now()
            chapter.last_modified = now
            notebook.last_modified = now
            notebook.refresh_counts()
            self.files.write_chapter(chapter)
            return OperationResult.ok(notebook_id=notebook_id, chapter_id=chapter_id)

        return self._mutate("update_chapter", mutation, chapter_id=chapter_id)

    def soft_delete_chapter(self, notebook_id: str, chapter_id: str) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter = self._chapter(doc, notebook_id, chapter_id)
            now = utc_now()
            chapter.deleted = True
            chapter.deleted_at = now
            chapter.last_modified = now
            notebook.last_modified = now
            return OperationResult.ok(notebook_id=notebook_id, chapter_id=chapter_id)

        return self._mutate("soft_delete_chapter", mutation, chapter_id=chapter_id)

    def restore_chapter(self, notebook_id: str, chapter_id: str) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter = self._chapter(doc, notebook_id, chapter_id)
            now = utc_now()
            chapter.deleted = False
            chapter.deleted_at = None
            chapter.last_modified = now
            notebook.last_modified = now
            return OperationResult.ok(notebook_id=notebook_id, chapter_id=chapter_id)

        return self._mutate("restore_chapter", mutation, chapter_id=chapter_id)

    def permanently_delete_chapter(
        self, notebook_id: str, chapter_id: str
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter = self._chapter(doc, notebook_id, chapter_id)
            self.files.purge(chapter.path)
            del notebook.chapters[chapter_id]
            notebook.last_modified = utc_now()
            return OperationResult.ok(notebook_id=notebook_id, chapter_id=chapter_id)

        return self._mutate(
            "permanently_delete_chapter", mutation, chapter_id=chapter_id
        )

    # ------------------------------------------------------------------
    # Notes

    def create_note(
        self,
        notebook_id: str,
        chapter_id: str,
        title: str,
        content: str = "",
        tags: Optional[List[str]] = None,
        priority: Optional[Union[str, Priority]] = None,
        paragraphs: Optional[List[Paragraph]] = None,
    ) -> OperationResult:
        """Create a note under an active chapter.

        Paragraphs are derived from ``content`` unless given explicitly.
        """

        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter = self._chapter(doc, notebook_id, chapter_id, active=True)
            note_tags = list(tags or [])
            if priority is not None:
                note_tags = with_priority(note_tags, _parse_priority(priority))
            note_id = generate_id()
            note = Note(
                id=note_id,
                notebook_id=notebook_id,
                chapter_id=chapter_id,
                title=_require_text(title, "title"),
                content=content or "",
                tags=note_tags,
                paragraphs=paragraphs if paragraphs is not None else parse_paragraphs(content),
                path=generate_safe_path(chapter.path, "notes", note_id),
            )
            self.files.write_note(note)
            chapter.notes[note_id] = note
            now = utc_now()
            chapter.last_modified = now
            notebook.last_modified = now
            return OperationResult.ok(
                notebook_id=notebook_id,
                chapter_id=chapter_id,
                note_id=note_id,
                path=note.path,
            )

        return self._mutate("create_note", mutation, chapter_id=chapter_id)

    def update_note(
        self,
        notebook_id: str,
        chapter_id: str,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        priority: Optional[Union[str, Priority]] = None,
        paragraphs: Optional[List[Paragraph]] = None,
    ) -> OperationResult:
        """Update a note, rewriting its files atomically.

        The whole read-modify-write is retried (2 attempts) on recoverable
        failures; a failed file move leaves no temp files behind.
        """
        changes = (title, content, tags, priority, paragraphs)

        def attempt() -> OperationResult:
            with self._lock, timed_operation("update_note", note_id=note_id):
                if not (notebook_id and chapter_id and note_id) or all(
                    change is None for change in changes
                ):
                    raise ValidationError(
                        "Invalid parameters provided for note update",
                        code=ErrorCode.INVALID_PARAMS,
                    )
                new_priority = _parse_priority(priority) if priority is not None else None

                doc = self._read_document()
                notebook, chapter, note = self._note(
                    doc,
                    notebook_id,
                    chapter_id,
                    note_id,
                    message="Note not found in the system",
                )
                if title is not None:
                    note.title = _require_text(title, "title")
                if content is not None:
                    note.content = content
                    if paragraphs is None:
                        note.paragraphs = parse_paragraphs(content)
                if paragraphs is not None:
                    note.paragraphs = paragraphs
                if tags is not None:
                    note.tags = list(tags)
                if new_priority is not None:
                    note.tags = with_priority(note.tags, new_priority)
                now = utc_now()
                note.last_modified = now
                chapter.last_modified = now
                notebook.last_modified = now

                self.files.update_note(note)
                if not self.write(doc):
                    raise StorageError(
                        CHANGES_LOST_MESSAGE,
                        code=ErrorCode.HIERARCHY_WRITE_FAILED,
                        operation="update note",
                    )
                return OperationResult.ok(
                    notebook_id=notebook_id, chapter_id=chapter_id, note_id=note_id
                )

        try:
            return with_retry(attempt, max_attempts=2, base_delay=1.0, label="update_note")
        except NotesAppError as e:
            if not e.is_recoverable:
                self._alert(
                    "Unable to Save Note",
                    f"Failed to save your note: {e.message}. Please try again "
                    "or check your storage permissions.",
                )
            return OperationResult.fail(e.message)
        except Exception as e:
            return OperationResult.fail(classify_error(e, "update note").message)

    def soft_delete_note(
        self, notebook_id: str, chapter_id: str, note_id: str
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter, note = self._note(doc, notebook_id, chapter_id, note_id)
            now = utc_now()
            note.deleted = True
            note.deleted_at = now
            chapter.last_modified = now
            notebook.last_modified = now
            return OperationResult.ok(note_id=note_id)

        return self._mutate("soft_delete_note", mutation, note_id=note_id)

    def restore_note(
        self, notebook_id: str, chapter_id: str, note_id: str
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter, note = self._note(doc, notebook_id, chapter_id, note_id)
            now = utc_now()
            note.deleted = False
            note.deleted_at = None
            note.last_modified = now
            chapter.last_modified = now
            notebook.last_modified = now
            return OperationResult.ok(note_id=note_id)

        return self._mutate("restore_note", mutation, note_id=note_id)

    def permanently_delete_note(
        self, notebook_id: str, chapter_id: str, note_id: str
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            notebook, chapter, note = self._note(doc, notebook_id, chapter_id, note_id)
            self.files.purge(note.path)
            del chapter.notes[note_id]
            now = utc_now()
            chapter.last_modified = now
            notebook.last_modified = now
            return OperationResult.ok(note_id=note_id)

        return self._mutate("permanently_delete_note", mutation, note_id=note_id)

    # ------------------------------------------------------------------
    # Collections

    def create_notebook_collection(
        self,
        name: str,
        description: str = "",
        color: Optional[str] = None,
        icon: Optional[str] = None,
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            collection_id = generate_id()
            fields: Dict[str, Any] = {
                "id": collection_id,
                "name": _require_text(name, "name"),
                "description": description or "",
                "path": generate_safe_path("/notebook-collections", collection_id),
            }
            if color:
                fields["color"] = color
            if icon:
                fields["icon"] = icon
            collection = NotebookCollection(**fields)
            self.files.write_collection(collection)
            doc.collections[collection_id] = collection
            return OperationResult.ok(collection_id=collection_id, path=collection.path)

        return self._mutate("create_notebook_collection", mutation)

    def update_notebook_collection(
        self,
        collection_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        icon: Optional[str] = None,
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            collection = self._collection(doc, collection_id)
            if name is not None:
                collection.name = _require_text(name, "name")
            if description is not None:
                collection.description = description
            if color:
                collection.color = color
            if icon:
                collection.icon = icon
            collection.last_modified = utc_now()
            self.files.write_collection(collection)
            return OperationResult.ok(collection_id=collection_id)

        return self._mutate(
            "update_notebook_collection", mutation, collection_id=collection_id
        )

    def delete_notebook_collection(self, collection_id: str) -> OperationResult:
        """Hard-delete a collection; collections have no recycle bin."""

        def mutation(doc: HierarchyDocument) -> OperationResult:
            collection = self._collection(doc, collection_id)
            self.files.purge(collection.path)
            del doc.collections[collection_id]
            return OperationResult.ok(collection_id=collection_id)

        return self._mutate(
            "delete_notebook_collection", mutation, collection_id=collection_id
        )

    def add_notebook_to_collection(
        self, collection_id: str, notebook_id: str
    ) -> OperationResult:
        """Add a notebook, storing a display snapshot taken right now."""

        def mutation(doc: HierarchyDocument) -> OperationResult:
            collection = self._collection(doc, collection_id)
            notebook = self._notebook(doc, notebook_id, active=True)
            if notebook_id in collection.notebooks:
                raise ValidationError(
                    "Notebook already in this collection",
                    field="notebook_id",
                    value=notebook_id,
                    code=ErrorCode.ENTITY_ALREADY_EXISTS,
                )
            collection.notebooks[notebook_id] = CollectionEntry(
                notebook_data=notebook.metadata()
            )
            collection.last_modified = utc_now()
            collection.notebooks_count = len(collection.notebooks)
            self.files.write_collection(collection)
            return OperationResult.ok(collection_id=collection_id, notebook_id=notebook_id)

        return self._mutate(
            "add_notebook_to_collection", mutation, collection_id=collection_id
        )

    def remove_notebook_from_collection(
        self, collection_id: str, notebook_id: str
    ) -> OperationResult:
        def mutation(doc: HierarchyDocument) -> OperationResult:
            collection = self._collection(doc, collection_id)
            if notebook_id not in collection.notebooks:
                raise EntityNotFoundError(
                    "notebook",
                    notebook_id,
                    code=ErrorCode.NOTEBOOK_NOT_FOUND,
                    message="Notebook not in this collection",
                )
            del collection.notebooks[notebook_id]
            collection.last_modified = utc_now()
            collection.notebooks_count = len(collection.notebooks)
            self.files.write_collection(collection)
            return OperationResult.ok(collection_id=collection_id, notebook_id=notebook_id)

        return self._mutate(
            "remove_notebook_from_collection", mutation, collection_id=collection_id
        )

    def delete_item(self, kind: str, item_id: str) -> bool:
        """Immediately purge a notebook or collection, skipping the recycle bin."""
        if kind == "notebook":
            return self.permanently_delete_notebook(item_id).success
        if kind == "collection":
            return self.delete_notebook_collection(item_id).success
        logger.warning(f"delete_item: unsupported kind {kind!r}")
        return False

    # ------------------------------------------------------------------
    # Queries

    def get_notebooks(self) -> List[Notebook]:
        doc = self.read()
        if doc is None:
            return []
        return _by_last_modified(nb for nb in doc.notebooks.values() if not nb.deleted)

    def get_notebook(self, notebook_id: str) -> Optional[Notebook]:
        doc = self.read()
        return doc.notebooks.get(notebook_id) if doc else None

    def get_chapters(self, notebook_id: str) -> List[Chapter]:
        notebook = self.get_notebook(notebook_id)
        if notebook is None:
            return []
        return _by_last_modified(notebook.active_chapters())

    def get_chapter(self, notebook_id: str, chapter_id: str) -> Optional[Chapter]:
        notebook = self.get_notebook(notebook_id)
        return notebook.chapters.get(chapter_id) if notebook else None

    def get_notes(self, notebook_id: str, chapter_id: str) -> List[Note]:
        chapter = self.get_chapter(notebook_id, chapter_id)
        if chapter is None:
            return []
        return _by_last_modified(chapter.active_notes())

    def get_note(
        self, notebook_id: str, chapter_id: str, note_id: str
    ) -> Optional[Note]:
        chapter = self.get_chapter(notebook_id, chapter_id)
        return chapter.notes.get(note_id) if chapter else None

    def get_notebook_collections(self) -> List[NotebookCollection]:
        doc = self.read()
        if doc is None:
            return []
        return _by_last_modified(doc.collections.values())

    def get_notebooks_in_collection(self, collection_id: str) -> List[CollectionMember]:
        """Live, non-deleted notebooks of a collection, most recently modified first.

        The stored snapshots are ignored.
        """
        doc = self.read()
        if doc is None or collection_id not in doc.collections:
            return []
        members = []
        for notebook_id, entry in doc.collections[collection_id].notebooks.items():
            notebook = doc.notebooks.get(notebook_id)
            if notebook is not None and not notebook.deleted:
                members.append(
                    CollectionMember(
                        notebook=notebook, added_to_collection_at=entry.added_at
                    )
                )
        return sorted(
            members,
            key=lambda m: ensure_timezone_aware(m.notebook.last_modified),
            reverse=True,
        )

    def get_available_notebooks(
        self, exclude_collection_id: Optional[str] = None
    ) -> List[Notebook]:
        """Active notebooks, optionally minus those already in a collection."""
        doc = self.read()
        if doc is None:
            return []
        excluded = set()
        if exclude_collection_id and exclude_collection_id in doc.collections:
            excluded = set(doc.collections[exclude_collection_id].notebooks)
        return _by_last_modified(
            nb
            for nb in doc.notebooks.values()
            if not nb.deleted and nb.id not in excluded
        )

    def get_collections_for_notebook(self, notebook_id: str) -> List[NotebookCollection]:
        doc = self.read()
        if doc is None:
            return []
        return _by_last_modified(
            c for c in doc.collections.values() if notebook_id in c.notebooks
        )

    def get_deleted_notebooks(self) -> List[Notebook]:
        doc = self.read()
        if doc is None:
            return []
        return _by_deleted_at(nb for nb in doc.notebooks.values() if nb.deleted)

    def get_deleted_chapters(self) -> List[Chapter]:
        doc = self.read()
        if doc is None:
            return []
        return _by_deleted_at(
            ch for _, ch in doc.iter_chapters(include_deleted=True) if ch.deleted
        )

    def get_deleted_notes(self) -> List[Note]:
        doc = self.read()
        if doc is None:
            return []
        return _by_deleted_at(
            note for _, _, note in doc.iter_notes(include_deleted=True) if note.deleted
        )

    # ------------------------------------------------------------------
    # Search

    @staticmethod
    def _newest_first(results: List[SearchResult]) -> List[SearchResult]:
        return sorted(
            results, key=lambda r: ensure_timezone_aware(r.created), reverse=True
        )

    def search_notebooks(
        self, query: str, exclude_ids: Optional[Iterable[str]] = None
    ) -> List[SearchResult]:
        doc = self.read()
        if doc is None:
            return []
        terms, excluded = _search_terms(query), set(exclude_ids or ())
        results = [
            SearchResult(
                id=nb.id,
                type="notebook",
                title=nb.title,
                description=nb.description,
                color=nb.color,
                created=nb.created,
                count=len(nb.active_chapters()),
            )
            for nb in doc.notebooks.values()
            if not nb.deleted
            and nb.id not in excluded
            and _matches(terms, nb.title, nb.description, *nb.tags)
        ]
        return self._newest_first(results)

    def search_collections(
        self, query: str, exclude_ids: Optional[Iterable[str]] = None
    ) -> List[SearchResult]:
        doc = self.read()
        if doc is None:
            return []
        terms, excluded = _search_terms(query), set(exclude_ids or ())
        results = [
            SearchResult(
                id=c.id,
                type="collection",
                title=c.name,
                description=c.description,
                color=c.color,
                created=c.created,
                count=len(c.notebooks),
            )
            for c in doc.collections.values()
            if c.id not in excluded and _matches(terms, c.name, c.description)
        ]
        return self._newest_first(results)

    def search_chapters(
        self,
        query: str,
        notebook_id: Optional[str] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SearchResult]:
        doc = self.read()
        if doc is None:
            return []
        terms, excluded = _search_terms(query), set(exclude_ids or ())
        results = []
        for notebook, chapter in doc.iter_chapters():
            if notebook_id and notebook.id != notebook_id:
                continue
            if chapter.id in excluded:
                continue
            if _matches(terms, chapter.title, chapter.description):
                results.append(
                    SearchResult(
                        id=chapter.id,
                        type="chapter",
                        title=chapter.title,
                        description=chapter.description,
                        color=chapter.color,
                        created=chapter.created,
                        notebook_id=notebook.id,
                        breadcrumb=notebook.title,
                        count=len(chapter.active_notes()),
                    )
                )
        return self._newest_first(results)

    def search_notes(
        self,
        query: str,
        notebook_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SearchResult]:
        """Match every term against title, content and tags of active notes."""
        doc = self.read()
        if doc is None:
            return []
        terms, excluded = _search_terms(query), set(exclude_ids or ())
        results = []
        for notebook, chapter, note in doc.iter_notes():
            if notebook_id and notebook.id != notebook_id:
                continue
            if chapter_id and chapter.id != chapter_id:
                continue
            if note.id in excluded:
                continue
            if _matches(terms, note.title, note.content, *note.tags):
                preview = note.content[:100] + ("..." if len(note.content) > 100 else "")
                results.append(
                    SearchResult(
                        id=note.id,
                        type="note",
                        title=note.title,
                        description=preview,
                        created=note.created,
                        notebook_id=notebook.id,
                        chapter_id=chapter.id,
                        breadcrumb=f"{notebook.title} > {chapter.title}",
                    )
                )
        return self._newest_first(results)

    def search_tags(self, query: str) -> List[SearchResult]:
        """Tags containing ``query``, most used first, with their locations."""
        doc = self.read()
        if doc is None:
            return []
        needle = (query or "").lower()
        counts: Counter = Counter()
        locations: Dict[str, List[Dict[str, str]]] = defaultdict(list)

        def collect(tags: List[str], kind: str, entity_id: str, name: str) -> None:
            for tag in tags:
                if needle in tag.lower():
                    counts[tag] += 1
                    locations[tag].append({"type": kind, "id": entity_id, "name": name})

        for notebook in doc.notebooks.values():
            if not notebook.deleted:
                collect(notebook.tags, "notebook", notebook.id, notebook.title)
        for _, _, note in doc.iter_notes():
            collect(note.tags, "note", note.id, note.title)

        return [
            SearchResult(
                id=tag,
                type="tag",
                title=tag,
                description=f"Used {count} time{'' if count == 1 else 's'}",
                count=count,
                locations=locations[tag],
            )
            for tag, count in counts.most_common()
        ]

    # ------------------------------------------------------------------
    # Stats and storage location

    def get_stats(self) -> Optional[Dict[str, Any]]:
        """Totals recomputed from the maps, plus the storage root."""
        doc = self.read()
        if doc is None:
            return None
        active = [nb for nb in doc.notebooks.values() if not nb.deleted]
        return {
            "totalNotebooks": len(active),
            "totalChapters": sum(1 for _ in doc.iter_chapters()),
            "totalNotes": sum(1 for _ in doc.iter_notes()),
            "totalNotebookCollections": len(doc.collections),
            "deletedNotebooks": len(doc.notebooks) - len(active),
            "folderPath": str(self.root),
            "lastModified": doc.last_modified.isoformat(),
        }

    def set_storage_location(self, directory: Union[str, Path]) -> OperationResult:
        """Move future storage to ``directory``/NotesApp and re-initialize.

        Existing data is not copied; use export/restore to migrate it.
        """
        if not config.supports_custom_storage():
            return OperationResult.fail(
                "Custom storage location is not available on this platform. "
                "Files are stored in the app's document directory."
            )
        if not directory or not str(directory).strip():
            return OperationResult.fail("Storage location cannot be empty")

        target = Path(directory).expanduser()
        try:
            (target / config.app_folder_name).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return OperationResult.fail(classify_error(e, "set storage location").message)

        if not self.settings.update_setting("customStoragePath", str(target)):
            return OperationResult.fail("Failed to save storage location setting")
        if not self.force_refresh():
            return OperationResult.fail("Failed to initialize the new storage location")
        return OperationResult.ok(
            path=str(target), message="Default file location updated successfully"
        )
