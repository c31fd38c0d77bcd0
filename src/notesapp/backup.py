"""Backup, export and restore for NotesApp.

Provides:
- Shareable backup envelopes of the hierarchy document
- Full exports that also embed every mirrored file
- Restore from a backup envelope, with a safety backup of the current data
  and reconstruction of the mirrored file tree
"""
import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from notesapp.config import config
from notesapp.exceptions import NotesAppError
from notesapp.models.schema import (
    BackupEnvelope,
    FullExport,
    HierarchyDocument,
    OperationResult,
    ReconstructionResult,
    RestoreResult,
    ShareResult,
    utc_now,
)
from notesapp.observability import log_error, timed_operation
from notesapp.storage.hierarchy_store import HierarchyStore
from notesapp.storage.paths import generate_safe_path
from notesapp.storage.retry import classify_error

logger = logging.getLogger(__name__)

ShareCallback = Callable[[Path], None]

SAFETY_BACKUP_PREFIX = "current_backup_"
SHARE_FILE_PREFIX = "NotesApp_Backup_"
EXPORT_FILE_PREFIX = "export_"
RESTORE_HELP_TEXT = (
    "To restore your data:\n"
    "1. Make sure you have the backup JSON file\n"
    "2. Save it somewhere this device can read\n"
    "3. Try again and pick the file with the .json extension"
)


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class BackupManager:
    """Exports, shares and restores the hierarchy with safety-backup rotation.

    Features:
    - Backup envelopes (``exportDate``, ``appVersion``, ``platform``,
      ``storageLocation``, ``hierarchy``) accepted back by restore
    - Safety backup of the live document before every restore
    - Rotation of safety backups by count and age
    - Full reconstruction of the mirrored file tree after restore
    """

    def __init__(
        self,
        store: HierarchyStore,
        backup_dir: Optional[Union[str, Path]] = None,
        share_dir: Optional[Union[str, Path]] = None,
        max_backups: Optional[int] = None,
        max_age_days: Optional[int] = None,
        cleanup_delay: Optional[float] = None,
    ):
        """Initialize the backup manager.

        Args:
            store: The hierarchy store to back up and restore into.
            backup_dir: Directory for safety backups. Defaults to
                ``<documents_dir>/backups``.
            share_dir: Directory for temporary share files. Defaults to the
                documents directory.
            max_backups: Maximum number of safety backups to keep.
            max_age_days: Delete safety backups older than this many days.
            cleanup_delay: Seconds before a shared temp file is removed.
        """
        self.store = store
        self.backup_dir = (
            Path(backup_dir) if backup_dir else config.documents_dir / "backups"
        )
        self.share_dir = Path(share_dir) if share_dir else config.documents_dir
        self.max_backups = (
            max_backups if max_backups is not None else config.max_safety_backups
        )
        self.max_age_days = (
            max_age_days if max_age_days is not None else config.max_backup_age_days
        )
        self.cleanup_delay = (
            cleanup_delay if cleanup_delay is not None else config.share_cleanup_delay
        )
        self._lock = Lock()
        self._pending_cleanups: List[threading.Timer] = []

    # ------------------------------------------------------------------
    # Envelopes

    def create_backup_envelope(self) -> Optional[BackupEnvelope]:
        """Wrap the current hierarchy document, or None if it cannot be read."""
        doc = self.store.read()
        if doc is None:
            return None
        return BackupEnvelope(
            app_version=config.app_version,
            platform=config.platform,
            storage_location=str(self.store.root),
            hierarchy=doc,
        )

    @staticmethod
    def _serialize(envelope: BackupEnvelope) -> str:
        return json.dumps(envelope.to_json_dict(), indent=2, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Share

    def share_hierarchy_file(self, share: Optional[ShareCallback] = None) -> ShareResult:
        """Write a backup envelope to a temp file and hand it to ``share``.

        The temp file is removed after ``cleanup_delay`` seconds whether or
        not sharing succeeded; cleanup failures are only logged.
        """
        if share is None:
            return ShareResult.fail("Sharing is not available on this device")

        with timed_operation("share_hierarchy_file") as op:
            result = self._write_and_share(share)
            if not result.success:
                op["error"] = result.error
            return result

    def _write_and_share(self, share: ShareCallback) -> ShareResult:
        envelope = self.create_backup_envelope()
        if envelope is None:
            return ShareResult.fail("No hierarchy data found")

        content = self._serialize(envelope)
        if len(content) < 10:
            return ShareResult.fail("Backup content is empty or invalid")

        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        filename = f"{SHARE_FILE_PREFIX}{stamp}.json"
        temp_path = self.share_dir / filename

        try:
            self.share_dir.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(content, encoding="utf-8")
            size = temp_path.stat().st_size
        except OSError as e:
            return ShareResult.fail(classify_error(e, "write share file").message)

        if size == 0:
            self._schedule_cleanup(temp_path)
            return ShareResult.fail("Failed to create backup file with content")

        logger.info(f"Backup file created: {filename}, Size: {size} bytes")

        try:
            share(temp_path)
        except Exception as e:
            log_error(logger, "share backup", e, config.dev_mode)
            return ShareResult.fail(classify_error(e, "share backup").message)
        finally:
            self._schedule_cleanup(temp_path)

        return ShareResult.ok(
            message="Hierarchy file shared successfully",
            filename=filename,
            size=size,
        )

    def _schedule_cleanup(self, path: Path) -> None:
        timer = threading.Timer(self.cleanup_delay, self._cleanup_file, args=(path,))
        timer.daemon = True
        with self._lock:
            self._pending_cleanups = [t for t in self._pending_cleanups if t.is_alive()]
            self._pending_cleanups.append(timer)
        timer.start()

    def _cleanup_file(self, path: Path) -> None:
        try:
            path.unlink()
            logger.debug(f"Removed temporary share file {path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clean up temporary file {path.name}: {e}")

    def wait_for_cleanup(self, timeout: Optional[float] = None) -> None:
        """Block until every scheduled temp-file cleanup has run."""
        with self._lock:
            pending, self._pending_cleanups = self._pending_cleanups, []
        for timer in pending:
            timer.join(timeout)

    # ------------------------------------------------------------------
    # Full export

    def export_data(self) -> OperationResult:
        """Write a full export (hierarchy plus every mirrored file) to the root."""
        try:
            with timed_operation("export_data") as op:
                envelope = self.create_backup_envelope()
                if envelope is None:
                    op["error"] = "No hierarchy data found"
                    return OperationResult.fail(op["error"])

                files = {
                    name: content
                    for name, content in self.store.files.read_tree().items()
                    if not name.startswith(EXPORT_FILE_PREFIX)
                }
                export = FullExport(**dict(envelope), files=files)
                export_path = self.store.root / f"{EXPORT_FILE_PREFIX}{_timestamp_ms()}.json"
                export_path.write_text(self._serialize(export), encoding="utf-8")
                op["files"] = len(files)
                logger.info(f"Exported {len(files)} files to {export_path}")
                return OperationResult.ok(path=str(export_path))
        except NotesAppError as e:
            return OperationResult.fail(e.message)
        except Exception as e:
            return OperationResult.fail(classify_error(e, "export data").message)

    # ------------------------------------------------------------------
    # Safety backups

    def create_safety_backup(self) -> Optional[Path]:
        """Snapshot the live document as a restorable envelope.

        Returns:
            Path to the backup file, or None if it could not be written.
        """
        with self._lock:
            try:
                envelope = self.create_backup_envelope()
                if envelope is None:
                    logger.warning("No current hierarchy to back up before restore")
                    return None
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                backup_path = self.backup_dir / f"{SAFETY_BACKUP_PREFIX}{_timestamp_ms()}.json"
                backup_path.write_text(self._serialize(envelope), encoding="utf-8")
                logger.info(f"Current data backed up to: {backup_path}")
                self._rotate_backups()
                return backup_path
            except Exception as e:
                logger.error(f"Safety backup failed: {e}", exc_info=config.dev_mode)
                return None

    def _rotate_backups(self) -> int:
        """Remove safety backups beyond the count limit or older than max age.

        Returns:
            Number of backups deleted.
        """
        backups = sorted(
            self.backup_dir.glob(f"{SAFETY_BACKUP_PREFIX}*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.max_age_days)
        deleted = 0
        for index, backup in enumerate(backups):
            modified = datetime.fromtimestamp(backup.stat().st_mtime, tz=timezone.utc)
            if index >= self.max_backups or modified < cutoff:
                try:
                    backup.unlink()
                    deleted += 1
                    logger.debug(f"Rotated old backup: {backup.name}")
                except OSError as e:
                    logger.warning(f"Failed to delete old backup {backup}: {e}")
        if deleted:
            logger.info(f"Rotated {deleted} old safety backups")
        return deleted

    def list_backups(self) -> List[Dict[str, Any]]:
        """List safety backups, newest first."""
        if not self.backup_dir.exists():
            return []
        backups = []
        for path in self.backup_dir.glob(f"{SAFETY_BACKUP_PREFIX}*.json"):
            stat = path.stat()
            backups.append(
                {
                    "name": path.name,
                    "path": str(path),
                    "size_bytes": stat.st_size,
                    "created": datetime.fromtimestamp(
                        stat.st_mtime, tz=timezone.utc
                    ).isoformat(),
                }
            )
        return sorted(backups, key=lambda b: b["created"], reverse=True)

    # ------------------------------------------------------------------
    # Restore

    @staticmethod
    def _assign_missing_paths(doc: HierarchyDocument) -> None:
        """Give entities from older documents their canonical tree paths."""
        for notebook_id, notebook in doc.notebooks.items():
            if not notebook.path:
                notebook.path = generate_safe_path("/notebooks", notebook_id)
            for chapter_id, chapter in notebook.chapters.items():
                if not chapter.path:
                    chapter.path = generate_safe_path(notebook.path, "chapters", chapter_id)
                for note_id, note in chapter.notes.items():
                    if not note.path:
                        note.path = generate_safe_path(chapter.path, "notes", note_id)
        for collection_id, collection in doc.collections.items():
            if not collection.path:
                collection.path = generate_safe_path("/notebook-collections", collection_id)

    def restore_from_backup(
        self, backup_path: Optional[Union[str, Path]]
    ) -> RestoreResult:
        """Replace the live hierarchy with a backup envelope and rebuild the tree.

        ``backup_path=None`` means the user cancelled file selection. A safety
        backup of the current data is taken first; if a later stage fails
        there is no automatic rollback and the result carries the safety
        backup path for manual recovery.
        """
        if backup_path is None:
            return RestoreResult.fail("File selection cancelled", help_text=RESTORE_HELP_TEXT)

        path = Path(backup_path)
        if path.suffix.lower() != ".json":
            return RestoreResult.fail("Please select a JSON file (.json extension)")

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            return RestoreResult.fail(classify_error(e, "read backup file").message)
        if not content.strip():
            return RestoreResult.fail("Backup file is empty")

        try:
            data = json.loads(content)
        except ValueError:
            return RestoreResult.fail("Invalid backup file format")

        hierarchy = data.get("hierarchy") if isinstance(data, dict) else None
        if not isinstance(hierarchy, dict) or not isinstance(
            hierarchy.get("structure"), dict
        ):
            return RestoreResult.fail("Invalid backup file structure")

        try:
            restored = HierarchyDocument.from_raw(hierarchy)
        except PydanticValidationError as e:
            logger.warning(f"Backup hierarchy failed validation: {e.error_count()} errors")
            return RestoreResult.fail("Invalid backup file structure")

        export_date = data.get("exportDate")
        original_platform = data.get("platform")

        with timed_operation("restore_from_backup", source=path.name) as op:
            result = self._replace_hierarchy(restored, export_date, original_platform)
            if result.success:
                op["notebooks"] = result.restored_notebooks
            else:
                op["error"] = result.error
            return result

    def _replace_hierarchy(
        self,
        restored: HierarchyDocument,
        export_date: Any,
        original_platform: Optional[str],
    ) -> RestoreResult:
        safety_path = self.create_safety_backup()
        safety = str(safety_path) if safety_path else None
        try:
            restored.restored = True
            restored.restored_at = utc_now()
            restored.original_export_date = str(export_date) if export_date else None
            restored.original_platform = original_platform
            self._assign_missing_paths(restored)

            if not self.store.write(restored):
                return RestoreResult.fail(
                    "Failed to save restored data", safety_backup_path=safety
                )
            self.store.force_refresh()

            reconstruction = self.reconstruct_file_system_structure(restored)
            if not reconstruction.success:
                return RestoreResult.fail(
                    "Failed to reconstruct file system structure: "
                    f"{reconstruction.error}",
                    safety_backup_path=safety,
                )
        except Exception as e:
            log_error(logger, "restore from backup", e, config.dev_mode)
            return RestoreResult.fail(
                classify_error(e, "restore from backup").message,
                safety_backup_path=safety,
            )

        return RestoreResult.ok(
            message="Data restored successfully",
            restored_notebooks=sum(
                1 for nb in restored.notebooks.values() if not nb.deleted
            ),
            restored_collections=len(restored.collections),
            export_date=str(export_date) if export_date else None,
            original_platform=original_platform,
            reconstructed_files=reconstruction.files_created,
            safety_backup_path=safety,
        )

    def reconstruct_file_system_structure(
        self, doc: HierarchyDocument
    ) -> ReconstructionResult:
        """Rewrite the mirrored tree for every non-deleted entity in ``doc``.

        Safe to run over an existing tree: directories are reused and
        metadata files overwritten.
        """
        files = self.store.files
        files_created = 0
        try:
            logger.info(f"Starting file system reconstruction under {files.root}")
            for notebook in doc.notebooks.values():
                if notebook.deleted:
                    continue
                files_created += files.write_notebook(notebook)
                for chapter in notebook.chapters.values():
                    if chapter.deleted:
                        continue
                    files_created += files.write_chapter(chapter)
                    for note in chapter.notes.values():
                        if note.deleted:
                            continue
                        files_created += files.write_note(note)
            for collection in doc.collections.values():
                files_created += files.write_collection(collection)
        except NotesAppError as e:
            logger.error(f"Reconstruction failed after {files_created} files: {e}")
            return ReconstructionResult.fail(e.message, files_created=files_created)
        except Exception as e:
            return ReconstructionResult.fail(
                classify_error(e, "reconstruct file system").message,
                files_created=files_created,
            )

        logger.info(f"Reconstruction complete: {files_created} files written")
        return ReconstructionResult.ok(files_created=files_created)
