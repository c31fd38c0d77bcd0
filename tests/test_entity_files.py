"""Tests for the mirrored entity file tree."""
import errno
import json
import os

import pytest

from notesapp.exceptions import ErrorCode, PathError, StorageError
from notesapp.models.schema import Chapter, Note, Notebook, NotebookCollection
from notesapp.storage.entity_files import (
    CONTENT_FILE,
    METADATA_FILE,
    EntityFileManager,
)


@pytest.fixture
def files(tmp_path):
    return EntityFileManager(tmp_path)


@pytest.fixture
def note():
    return Note(
        id="3",
        notebook_id="1",
        chapter_id="2",
        title="Mitosis",
        content="Prophase",
        path="/notebooks/1/chapters/2/notes/3",
    )


class TestWrite:
    def test_notebook_creates_chapters_dir(self, files, tmp_path):
        notebook = Notebook(id="1", title="Biology", path="/notebooks/1")
        assert files.write_notebook(notebook) == 1
        directory = tmp_path / "notebooks" / "1"
        assert (directory / "chapters").is_dir()
        metadata = json.loads((directory / METADATA_FILE).read_text(encoding="utf-8"))
        assert metadata["title"] == "Biology"
        assert "chapters" not in metadata
        assert "path" not in metadata

    def test_chapter_creates_notes_dir(self, files, tmp_path):
        chapter = Chapter(id="2", notebook_id="1", path="/notebooks/1/chapters/2")
        assert files.write_chapter(chapter) == 1
        assert (tmp_path / "notebooks/1/chapters/2/notes").is_dir()

    def test_note_writes_metadata_and_content(self, files, tmp_path, note):
        assert files.write_note(note) == 2
        directory = tmp_path / "notebooks/1/chapters/2/notes/3"
        assert (directory / CONTENT_FILE).read_text(encoding="utf-8") == "Prophase"
        metadata = json.loads((directory / METADATA_FILE).read_text(encoding="utf-8"))
        assert metadata["notebookId"] == "1"
        assert metadata["chapterId"] == "2"

    def test_collection(self, files, tmp_path):
        collection = NotebookCollection(
            id="9", name="Science", path="/notebook-collections/9"
        )
        assert files.write_collection(collection) == 1
        assert (tmp_path / "notebook-collections/9" / METADATA_FILE).exists()

    def test_traversal_rejected(self, files):
        notebook = Notebook(id="1", path="/notebooks/../../outside")
        with pytest.raises(PathError):
            files.write_notebook(notebook)

    def test_os_error_is_classified(self, files, note, monkeypatch):
        def fail(*args, **kwargs):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr("pathlib.Path.write_text", fail)
        with pytest.raises(StorageError) as exc_info:
            files.write_note(note)
        assert exc_info.value.code == ErrorCode.STORAGE_FULL


class TestUpdateNote:
    def test_replaces_both_files(self, files, tmp_path, note):
        files.write_note(note)
        note.content = "Metaphase"
        note.title = "Mitosis 2"
        assert files.update_note(note) == 2
        directory = tmp_path / "notebooks/1/chapters/2/notes/3"
        assert (directory / CONTENT_FILE).read_text(encoding="utf-8") == "Metaphase"
        metadata = json.loads((directory / METADATA_FILE).read_text(encoding="utf-8"))
        assert metadata["title"] == "Mitosis 2"
        assert not list(directory.glob("*.tmp"))

    def test_recreates_missing_directory(self, files, tmp_path, note):
        assert files.update_note(note) == 2
        assert (tmp_path / "notebooks/1/chapters/2/notes/3" / CONTENT_FILE).exists()

    def test_failed_move_leaves_no_temp_files(self, files, tmp_path, note, monkeypatch):
        files.write_note(note)
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(src).endswith(CONTENT_FILE + ".tmp"):
                raise OSError(errno.EACCES, "Permission denied")
            return real_replace(src, dst)

        monkeypatch.setattr("notesapp.storage.entity_files.os.replace", failing_replace)
        note.content = "changed"
        with pytest.raises(StorageError) as exc_info:
            files.update_note(note)
        assert exc_info.value.code == ErrorCode.PERMISSION_DENIED
        directory = tmp_path / "notebooks/1/chapters/2/notes/3"
        assert not list(directory.glob("*.tmp"))
        assert (directory / CONTENT_FILE).read_text(encoding="utf-8") == "Prophase"


class TestPurgeAndRead:
    def test_purge_removes_subtree(self, files, tmp_path, note):
        files.write_note(note)
        assert files.purge("/notebooks/1") is True
        assert not (tmp_path / "notebooks" / "1").exists()

    def test_purge_missing_is_false(self, files):
        assert files.purge("/notebooks/404") is False

    def test_read_tree_skips_temp_files(self, files, tmp_path, note):
        files.write_note(note)
        (tmp_path / "notebooks/1/chapters/2/notes/3/content.txt.tmp").write_text("x")
        tree = files.read_tree()
        assert tree["notebooks/1/chapters/2/notes/3/content.txt"] == "Prophase"
        assert not any(name.endswith(".tmp") for name in tree)

    def test_count_metadata_files(self, files, note):
        assert files.count_metadata_files() == 0
        files.write_note(note)
        assert files.count_metadata_files() == 1
