"""Tests for backup, export, share and restore."""
import json
import os
import shutil
import time
from pathlib import Path

import pytest

from notesapp.backup import SAFETY_BACKUP_PREFIX, SHARE_FILE_PREFIX, BackupManager
from notesapp.storage.entity_files import CONTENT_FILE


def _write_envelope(backup_manager, path):
    envelope = backup_manager.create_backup_envelope()
    path.write_text(json.dumps(envelope.to_json_dict()), encoding="utf-8")
    return path


@pytest.fixture
def library(store):
    """Two notebooks, three chapters, four notes and one collection."""
    bio = store.create_notebook("Biology").notebook_id
    phys = store.create_notebook("Physics").notebook_id
    cells = store.create_chapter(bio, "Cells").chapter_id
    genes = store.create_chapter(bio, "Genes").chapter_id
    motion = store.create_chapter(phys, "Motion").chapter_id
    store.create_note(bio, cells, "Mitosis", "Prophase")
    store.create_note(bio, cells, "Meiosis", "Crossing over")
    store.create_note(bio, genes, "DNA", "Double helix")
    store.create_note(phys, motion, "Newton", "F = ma", priority="Very High")
    collection_id = store.create_notebook_collection("Science").collection_id
    store.add_notebook_to_collection(collection_id, bio)
    return store


class TestEnvelope:
    def test_envelope_fields(self, backup_manager, library, test_config):
        data = backup_manager.create_backup_envelope().to_json_dict()
        assert set(data) >= {
            "exportDate",
            "appVersion",
            "platform",
            "storageLocation",
            "hierarchy",
        }
        assert data["platform"] == "desktop"
        assert len(data["hierarchy"]["structure"]["notebooks"]) == 2

    def test_unreadable_hierarchy(self, backup_manager, store):
        store.hierarchy_path.write_text("{broken", encoding="utf-8")
        assert backup_manager.create_backup_envelope() is None


class TestRestore:
    def test_round_trip_reconstructs_tree(self, backup_manager, library, tmp_path):
        backup_file = _write_envelope(backup_manager, tmp_path / "backup.json")
        root = library.root
        shutil.rmtree(root / "notebooks")
        shutil.rmtree(root / "notebook-collections")

        result = backup_manager.restore_from_backup(backup_file)
        assert result.success, result.error
        assert result.restored_notebooks == 2
        assert result.restored_collections == 1
        # 2 notebooks + 3 chapters + 4 notes + 1 collection metadata, 4 contents
        assert result.reconstructed_files == 14
        assert library.files.count_metadata_files() == 10
        assert len(list(root.rglob(CONTENT_FILE))) == 4

        doc = library.read()
        assert doc.restored is True
        assert doc.restored_at is not None
        assert doc.original_platform == "desktop"
        assert doc.original_export_date
        titles = sorted(n.title for _, _, n in doc.iter_notes())
        assert titles == ["DNA", "Meiosis", "Mitosis", "Newton"]

    def test_safety_backup_taken_first(self, backup_manager, library, tmp_path):
        backup_file = _write_envelope(backup_manager, tmp_path / "backup.json")
        library.create_notebook("Chemistry")

        result = backup_manager.restore_from_backup(backup_file)
        assert result.success
        safety = json.loads(
            Path(result.safety_backup_path).read_text(encoding="utf-8")
        )
        titles = {
            nb["title"] for nb in safety["hierarchy"]["structure"]["notebooks"].values()
        }
        assert "Chemistry" in titles
        assert "Chemistry" not in {nb.title for nb in library.get_notebooks()}

    def test_deleted_entities_are_not_reconstructed(self, backup_manager, library, tmp_path):
        physics = [nb for nb in library.get_notebooks() if nb.title == "Physics"][0]
        library.soft_delete_notebook(physics.id)
        backup_file = _write_envelope(backup_manager, tmp_path / "backup.json")
        shutil.rmtree(library.root / "notebooks")

        result = backup_manager.restore_from_backup(backup_file)
        assert result.success
        assert result.restored_notebooks == 1
        assert not (library.root / "notebooks" / physics.id).exists()
        assert [nb.id for nb in library.get_deleted_notebooks()] == [physics.id]

    def test_legacy_collections_key_restored(self, backup_manager, store, tmp_path):
        backup_file = tmp_path / "legacy.json"
        backup_file.write_text(
            json.dumps(
                {
                    "exportDate": "2023-05-01T00:00:00Z",
                    "platform": "android",
                    "hierarchy": {
                        "structure": {
                            "notebooks": {"1": {"id": "1", "title": "Old"}},
                            "collections": {"c1": {"id": "c1", "name": "Legacy"}},
                        }
                    },
                }
            ),
            encoding="utf-8",
        )
        result = backup_manager.restore_from_backup(backup_file)
        assert result.success
        assert result.original_platform == "android"
        raw = json.loads(store.hierarchy_path.read_text(encoding="utf-8"))
        assert "collections" not in raw["structure"]
        assert "c1" in raw["structure"]["notebookCollections"]
        assert store.get_notebook("1").path == "/notebooks/1"
        assert (store.root / "notebooks" / "1" / "chapters").is_dir()

    def test_null_scalars_in_backup_are_restored(self, backup_manager, library, tmp_path):
        envelope = backup_manager.create_backup_envelope().to_json_dict()
        for notebook in envelope["hierarchy"]["structure"]["notebooks"].values():
            notebook["notesCount"] = None
            notebook["description"] = None
        backup_file = tmp_path / "backup.json"
        backup_file.write_text(json.dumps(envelope), encoding="utf-8")

        result = backup_manager.restore_from_backup(backup_file)
        assert result.success, result.error
        assert result.restored_notebooks == 2
        counts = {nb.title: nb.notes_count for nb in library.get_notebooks()}
        assert counts == {"Biology": 3, "Physics": 1}

    def test_cancelled(self, backup_manager):
        result = backup_manager.restore_from_backup(None)
        assert not result.success
        assert result.error == "File selection cancelled"
        assert result.help_text

    def test_wrong_extension(self, backup_manager, tmp_path):
        path = tmp_path / "backup.txt"
        path.write_text("{}")
        result = backup_manager.restore_from_backup(path)
        assert result.error == "Please select a JSON file (.json extension)"

    def test_empty_file(self, backup_manager, tmp_path):
        path = tmp_path / "backup.json"
        path.write_text("   ")
        assert backup_manager.restore_from_backup(path).error == "Backup file is empty"

    def test_invalid_json(self, backup_manager, tmp_path):
        path = tmp_path / "backup.json"
        path.write_text("{nope")
        assert backup_manager.restore_from_backup(path).error == "Invalid backup file format"

    @pytest.mark.parametrize(
        "payload",
        [{}, {"hierarchy": {}}, {"hierarchy": {"structure": []}}, []],
    )
    def test_invalid_structure(self, backup_manager, tmp_path, payload):
        path = tmp_path / "backup.json"
        path.write_text(json.dumps(payload))
        result = backup_manager.restore_from_backup(path)
        assert result.error == "Invalid backup file structure"

    def test_invalid_file_leaves_data_untouched(self, backup_manager, library, tmp_path):
        before = library.hierarchy_path.read_text(encoding="utf-8")
        path = tmp_path / "backup.json"
        path.write_text("{nope")
        backup_manager.restore_from_backup(path)
        assert library.hierarchy_path.read_text(encoding="utf-8") == before
        assert backup_manager.list_backups() == []

    def test_missing_file(self, backup_manager, tmp_path):
        result = backup_manager.restore_from_backup(tmp_path / "missing.json")
        assert not result.success
        assert result.error.startswith("File not found")


class TestSafetyBackupRotation:
    def test_keeps_newest_backups(self, store, tmp_path):
        manager = BackupManager(store, backup_dir=tmp_path / "backups", max_backups=2)
        for _ in range(4):
            assert manager.create_safety_backup() is not None
            time.sleep(0.01)
        assert len(manager.list_backups()) == 2

    def test_old_backups_removed(self, backup_manager, store):
        old = backup_manager.create_safety_backup()
        stale = time.time() - 60 * 60 * 24 * 400
        os.utime(old, (stale, stale))
        time.sleep(0.01)
        backup_manager.create_safety_backup()
        names = [b["name"] for b in backup_manager.list_backups()]
        assert old.name not in names
        assert len(names) == 1
        assert names[0].startswith(SAFETY_BACKUP_PREFIX)


class TestShare:
    def test_share_unavailable(self, backup_manager):
        result = backup_manager.share_hierarchy_file(None)
        assert not result.success
        assert result.error == "Sharing is not available on this device"

    def test_share_then_cleanup(self, backup_manager, library, tmp_path):
        shared = []
        result = backup_manager.share_hierarchy_file(lambda path: shared.append(
            json.loads(path.read_text(encoding="utf-8"))
        ))
        assert result.success
        assert result.filename.startswith(SHARE_FILE_PREFIX)
        assert result.size > 0
        assert len(shared[0]["hierarchy"]["structure"]["notebooks"]) == 2
        backup_manager.wait_for_cleanup(timeout=5)
        assert not (tmp_path / "share" / result.filename).exists()

    def test_finished_cleanups_are_not_retained(self, backup_manager, library):
        for _ in range(3):
            assert backup_manager.share_hierarchy_file(lambda path: None).success
            for timer in list(backup_manager._pending_cleanups):
                timer.join(5)
        backup_manager.share_hierarchy_file(lambda path: None)
        assert len(backup_manager._pending_cleanups) == 1
        backup_manager.wait_for_cleanup(timeout=5)
        assert backup_manager._pending_cleanups == []

    def test_failed_share_still_cleans_up(self, backup_manager, library, tmp_path):
        def broken(path):
            raise RuntimeError("share sheet dismissed")

        result = backup_manager.share_hierarchy_file(broken)
        assert not result.success
        backup_manager.wait_for_cleanup(timeout=5)
        assert not list((tmp_path / "share").glob(f"{SHARE_FILE_PREFIX}*"))


class TestExport:
    def test_export_embeds_files(self, backup_manager, library):
        result = backup_manager.export_data()
        assert result.success
        data = json.loads(Path(result.path).read_text(encoding="utf-8"))
        assert "hierarchy.json" in data["files"]
        contents = [name for name in data["files"] if name.endswith(CONTENT_FILE)]
        assert len(contents) == 4

    def test_second_export_skips_first(self, backup_manager, library):
        backup_manager.export_data()
        time.sleep(0.01)
        data = json.loads(
            Path(backup_manager.export_data().path).read_text(encoding="utf-8")
        )
        assert not any(name.startswith("export_") for name in data["files"])
