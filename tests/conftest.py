"""Common test fixtures for NotesApp."""

import random

import pytest

from notesapp.backup import BackupManager
from notesapp.config import config
from notesapp.services.story_service import StoryRefreshService
from notesapp.settings import SettingsStore
from notesapp.storage.hierarchy_store import HierarchyStore


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "documents_dir", tmp_path)
    monkeypatch.setattr(config, "platform", "desktop")
    # Retries must not sleep in tests
    monkeypatch.setattr(config, "retry_delay_scale", 0.0)
    yield config


@pytest.fixture
def settings(test_config, tmp_path):
    """Settings store backed by a temp file."""
    return SettingsStore(tmp_path / "app_settings.json")


@pytest.fixture
def alerts():
    """Collected (title, message) alerts raised by the store."""
    return []


@pytest.fixture
def store(settings, tmp_path, alerts):
    """An initialized hierarchy store rooted in a temp dir."""
    hierarchy_store = HierarchyStore(
        settings=settings,
        default_root=tmp_path / "NotesApp",
        on_alert=lambda title, message: alerts.append((title, message)),
    )
    hierarchy_store.initialize()
    return hierarchy_store


@pytest.fixture
def backup_manager(store, tmp_path):
    """Backup manager with temp backup and share directories."""
    return BackupManager(
        store,
        backup_dir=tmp_path / "backups",
        share_dir=tmp_path / "share",
        cleanup_delay=0,
    )


@pytest.fixture
def story_service(store, settings):
    """Story service with a seeded RNG, stopped on teardown."""
    service = StoryRefreshService(store, settings=settings, rng=random.Random(42))
    yield service
    service.stop_auto_refresh()


@pytest.fixture
def populated_store(store):
    """Store holding one notebook, one chapter and one note.

    Returns:
        Tuple of (store, notebook_id, chapter_id, note_id)
    """
    notebook = store.create_notebook("Biology", description="Life sciences")
    chapter = store.create_chapter(notebook.notebook_id, "Cells")
    note = store.create_note(
        notebook.notebook_id,
        chapter.chapter_id,
        "Mitosis",
        "Prophase\nMetaphase\n\nAnaphase",
        tags=["cells"],
    )
    assert notebook.success and chapter.success and note.success
    return store, notebook.notebook_id, chapter.chapter_id, note.note_id
