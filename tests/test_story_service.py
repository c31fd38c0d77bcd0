"""Tests for the story refresh service."""
import threading
from unittest.mock import MagicMock

import pytest

from notesapp.models.schema import Priority
from notesapp.services import story_service as story_module
from notesapp.services.story_service import (
    StoryRefreshService,
    get_story_service,
    interval_seconds,
    reset_story_service,
)


def _add_notes(store, count, priority=None):
    notebook_id = store.create_notebook("Biology", color="#ff0000").notebook_id
    chapter_id = store.create_chapter(notebook_id, "Cells").chapter_id
    note_ids = [
        store.create_note(notebook_id, chapter_id, f"Note {i}", f"Body {i}", priority=priority).note_id
        for i in range(count)
    ]
    return notebook_id, chapter_id, note_ids


class TestSampling:
    def test_fewer_notes_than_pages(self, story_service, store, settings):
        settings.update_setting("revisionPages", 5)
        _, _, note_ids = _add_notes(store, 3)
        stories = story_service.generate_sample()
        assert sorted(s.id for s in stories) == sorted(note_ids)

    def test_sample_is_capped_by_pages(self, story_service, store, settings):
        settings.update_setting("revisionPages", 5)
        _, _, note_ids = _add_notes(store, 10)
        stories = story_service.generate_sample()
        assert len(stories) == 5
        assert len({s.id for s in stories}) == 5
        assert {s.id for s in stories} <= set(note_ids)

    def test_default_page_count(self, story_service, store):
        _add_notes(store, 10)
        assert len(story_service.generate_sample()) == 2

    def test_story_enrichment(self, story_service, store):
        notebook_id, chapter_id, _ = _add_notes(store, 1, priority="High")
        story = story_service.generate_sample()[0]
        assert story.notebook_id == notebook_id
        assert story.chapter_id == chapter_id
        assert story.notebook_title == "Biology"
        assert story.chapter_title == "Cells"
        assert story.notebook_color == "#ff0000"
        assert story.priority == Priority.HIGH
        assert story.tags == []

    def test_deleted_notes_excluded(self, story_service, store):
        notebook_id, chapter_id, note_ids = _add_notes(store, 2)
        store.soft_delete_note(notebook_id, chapter_id, note_ids[0])
        assert [s.id for s in story_service.generate_sample()] == [note_ids[1]]

    def test_empty_hierarchy(self, story_service):
        assert story_service.generate_sample() == []

    def test_unreadable_hierarchy(self, story_service, store):
        store.hierarchy_path.write_text("{broken", encoding="utf-8")
        assert story_service.refresh() == []


class TestListeners:
    def test_refresh_notifies_listeners(self, story_service, store):
        _add_notes(store, 3)
        listener = MagicMock()
        story_service.add_listener(listener)
        stories = story_service.refresh()
        listener.assert_called_once_with(stories)
        assert story_service.get_last_refresh_time() is not None

    def test_failing_listener_does_not_block_others(self, story_service, store):
        _add_notes(store, 1)
        broken = MagicMock(side_effect=RuntimeError("listener crashed"))
        healthy = MagicMock()
        story_service.add_listener(broken)
        story_service.add_listener(healthy)
        story_service.manual_refresh()
        broken.assert_called_once()
        healthy.assert_called_once()

    def test_remove_listener(self, story_service):
        listener = MagicMock()
        story_service.add_listener(listener)
        story_service.add_listener(listener)
        story_service.remove_listener(listener)
        story_service.refresh()
        listener.assert_not_called()
        assert story_service.get_debug_info()["listenerCount"] == 0


class TestInterval:
    def test_hours_to_seconds(self, test_config):
        assert interval_seconds(1) == 3600

    def test_clamped_to_minimum(self, test_config):
        assert interval_seconds(0.0001) == test_config.story_min_interval_seconds

    def test_clamped_to_maximum(self, test_config):
        assert interval_seconds(1000) == test_config.story_max_interval_seconds


class TestTimer:
    def test_start_and_stop(self, story_service):
        assert story_service.start_auto_refresh() is True
        assert story_service.is_auto_refresh_active()
        assert story_service.get_interval_seconds() == 24 * 3600
        remaining = story_service.get_time_until_next_refresh()
        assert 0 < remaining <= 24 * 3600
        info = story_service.get_debug_info()
        assert info["isActive"] is True
        assert info["hasTimer"] is True

        story_service.stop_auto_refresh()
        story_service.stop_auto_refresh()
        assert not story_service.is_auto_refresh_active()
        assert story_service.get_interval_seconds() is None
        assert story_service.get_time_until_next_refresh() is None

    def test_timer_fires_and_reschedules(self, story_service, store, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "story_min_interval_seconds", 0.05)
        _add_notes(store, 2)
        fired = threading.Event()
        calls = []

        def listener(stories):
            calls.append(stories)
            if len(calls) >= 2:
                fired.set()

        story_service.add_listener(listener)
        story_service.settings.update_setting("storyInterval", 0.00001)
        story_service.start_auto_refresh()
        assert fired.wait(timeout=5)
        story_service.stop_auto_refresh()
        assert len(calls[0]) == 2

    def test_update_interval_only_when_running(self, story_service, settings):
        assert story_service.update_refresh_interval() is False
        story_service.start_auto_refresh()
        settings.update_setting("storyInterval", 2)
        assert story_service.update_refresh_interval() is True
        assert story_service.get_interval_seconds() == 2 * 3600

    def test_stale_tick_is_ignored(self, story_service):
        listener = MagicMock()
        story_service.add_listener(listener)
        story_service.start_auto_refresh()
        story_service._tick(story_service._generation - 1)
        listener.assert_not_called()


class TestSingleton:
    @pytest.fixture(autouse=True)
    def _reset(self):
        reset_story_service()
        yield
        reset_story_service()

    def test_same_instance(self, store):
        first = get_story_service(store)
        assert get_story_service() is first
        assert isinstance(first, StoryRefreshService)

    def test_reset_stops_timer(self, store):
        service = get_story_service(store)
        service.start_auto_refresh()
        reset_story_service()
        assert not service.is_auto_refresh_active()
        assert story_module._service is None
