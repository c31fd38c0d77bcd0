"""Mirrored file tree for hierarchy entities.

Every entity gets a directory holding a ``metadata.json`` snapshot of its
scalar fields; notes also get a ``content.txt``. The tree is a projection of
the hierarchy document and can be regenerated from it at any time.
"""
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

from notesapp.models.schema import Chapter, Note, Notebook, NotebookCollection
from notesapp.storage.paths import resolve_under
from notesapp.storage.retry import classify_error

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
CONTENT_FILE = "content.txt"
TEMP_SUFFIX = ".tmp"


def _dump_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


class EntityFileManager:
    """Creates, updates and purges the per-entity directories under a root.

    All write methods return the number of files written. Low-level
    ``OSError`` failures are classified into ``StorageError`` before they
    leave this class.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def entity_dir(self, relative_path: str) -> Path:
        """Absolute directory for a stored entity path like ``/notebooks/1``."""
        return resolve_under(self.root, relative_path)

    def _write_entity(
        self,
        relative_path: str,
        metadata: Dict[str, Any],
        content: Optional[str] = None,
        subdirs: Sequence[str] = (),
    ) -> int:
        directory = self.entity_dir(relative_path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            for subdir in subdirs:
                (directory / subdir).mkdir(exist_ok=True)
            (directory / METADATA_FILE).write_text(
                _dump_json(metadata), encoding="utf-8"
            )
            written = 1
            if content is not None:
                (directory / CONTENT_FILE).write_text(content, encoding="utf-8")
                written += 1
        except OSError as e:
            raise classify_error(e, f"write {relative_path}") from e
        return written

    def write_notebook(self, notebook: Notebook) -> int:
        return self._write_entity(
            notebook.path, notebook.metadata(), subdirs=["chapters"]
        )

    def write_chapter(self, chapter: Chapter) -> int:
        return self._write_entity(chapter.path, chapter.metadata(), subdirs=["notes"])

    def write_note(self, note: Note) -> int:
        return self._write_entity(note.path, note.metadata(), content=note.content)

    def write_collection(self, collection: NotebookCollection) -> int:
        return self._write_entity(collection.path, collection.metadata())

    def update_note(self, note: Note) -> int:
        """Rewrite a note's metadata and content through temp files.

        Both files are written to ``*.tmp`` siblings first and then moved into
        place. On failure the temp files are removed and the error re-raised,
        so a retry starts from a clean directory.
        """
        directory = self.entity_dir(note.path)
        targets = [
            (directory / METADATA_FILE, _dump_json(note.metadata())),
            (directory / CONTENT_FILE, note.content),
        ]
        temps = [
            target.with_name(target.name + TEMP_SUFFIX) for target, _ in targets
        ]

        try:
            if not directory.exists():
                logger.warning(f"Note directory missing, recreating: {note.path}")
                directory.mkdir(parents=True, exist_ok=True)

            for (_, text), temp in zip(targets, temps):
                temp.write_text(text, encoding="utf-8")
            for (target, _), temp in zip(targets, temps):
                os.replace(temp, target)
        except OSError as e:
            for temp in temps:
                try:
                    temp.unlink()
                except FileNotFoundError:
                    pass
                except OSError as cleanup_error:
                    logger.warning(
                        f"Failed to remove temp file {temp.name}: {cleanup_error}"
                    )
            raise classify_error(e, f"update note {note.id}") from e
        return len(targets)

    def purge(self, relative_path: str) -> bool:
        """Recursively delete an entity directory.

        Returns:
            True if something was removed, False if it was already gone.
        """
        directory = self.entity_dir(relative_path)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            logger.debug(f"Nothing to purge at {relative_path}")
            return False
        except OSError as e:
            raise classify_error(e, f"purge {relative_path}") from e
        return True

    def read_tree(self) -> Dict[str, str]:
        """Read every file under the root, keyed by root-relative path."""
        files: Dict[str, str] = {}
        if not self.root.exists():
            return files
        try:
            for path in sorted(self.root.rglob("*")):
                if not path.is_file() or path.name.endswith(TEMP_SUFFIX):
                    continue
                relative = path.relative_to(self.root).as_posix()
                files[relative] = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise classify_error(e, "read file tree") from e
        return files

    def count_metadata_files(self) -> int:
        if not self.root.exists():
            return 0
        return sum(1 for _ in self.root.rglob(METADATA_FILE))
