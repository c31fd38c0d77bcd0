"""Periodic sampling of notes for review ("stories").

The service walks the hierarchy, samples up to ``revision_pages`` active
notes with a uniform shuffle and publishes the sample to listeners, either
on demand or from a recurring timer.
"""
import logging
import random
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from notesapp.config import config
from notesapp.models.schema import Story, utc_now
from notesapp.settings import SettingsStore
from notesapp.storage.hierarchy_store import HierarchyStore

logger = logging.getLogger(__name__)

StoryListener = Callable[[List[Story]], None]


def interval_seconds(hours: float) -> float:
    """Convert the configured interval (hours) to clamped seconds."""
    seconds = float(hours) * 60 * 60
    return max(
        config.story_min_interval_seconds,
        min(seconds, config.story_max_interval_seconds),
    )


class StoryRefreshService:
    """Samples notes and notifies listeners, optionally on a timer.

    Lifecycle is ``stopped -> running -> stopped``; the timer must be
    stopped explicitly on teardown.
    """

    def __init__(
        self,
        store: HierarchyStore,
        settings: Optional[SettingsStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.settings = settings or store.settings
        self._rng = rng or random.Random()
        self._listeners: List[StoryListener] = []
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._is_active = False
        self._interval: Optional[float] = None
        self._next_refresh_at: Optional[float] = None
        self.last_refresh_time: Optional[datetime] = None

    # Listeners

    def add_listener(self, callback: StoryListener) -> None:
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

    def remove_listener(self, callback: StoryListener) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _notify_listeners(self, stories: List[Story]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(stories)
            except Exception as e:
                logger.error(f"Error notifying story refresh listener: {e}")

    # Sampling

    def generate_sample(self) -> List[Story]:
        """Return ``min(revision_pages, available)`` randomly chosen notes."""
        doc = self.store.read()
        if doc is None:
            return []
        pages = self.settings.get_revision_pages()

        candidates = [
            Story(
                id=note.id,
                notebook_id=notebook.id,
                chapter_id=chapter.id,
                title=note.title,
                content=note.content,
                tags=note.display_tags,
                priority=note.priority,
                notebook_title=notebook.title,
                chapter_title=chapter.title,
                notebook_color=notebook.color or "#6366f1",
                created=note.created,
                last_modified=note.last_modified,
            )
            for notebook, chapter, note in doc.iter_notes()
        ]
        # Fisher-Yates
        self._rng.shuffle(candidates)
        return candidates[: min(pages, len(candidates))]

    def refresh(self) -> List[Story]:
        """Generate a new sample, record the time and notify every listener."""
        try:
            stories = self.generate_sample()
        except Exception as e:
            logger.error(f"Failed to refresh stories: {e}", exc_info=config.dev_mode)
            return []
        self.last_refresh_time = utc_now()
        logger.info(f"Stories refreshed: {len(stories)} selected")
        self._notify_listeners(stories)
        return stories

    def manual_refresh(self) -> List[Story]:
        """User-triggered refresh; returns the sample as well as publishing it."""
        logger.debug(f"Manual story refresh ({len(self._listeners)} listeners)")
        return self.refresh()

    # Timer

    def start_auto_refresh(self) -> bool:
        """(Re)start the recurring timer using the current interval setting."""
        with self._lock:
            self.stop_auto_refresh()
            try:
                hours = self.settings.get_story_interval()
                self._interval = interval_seconds(hours)
            except Exception as e:
                logger.error(f"Failed to start auto refresh: {e}")
                return False
            self._is_active = True
            self._generation += 1
            self._schedule(self._generation)
            logger.info(
                f"Auto refresh started: every {self._interval:.0f}s ({hours} hours)"
            )
            return True

    def _schedule(self, generation: int) -> None:
        timer = threading.Timer(self._interval, self._tick, args=(generation,))
        timer.daemon = True
        self._timer = timer
        self._next_refresh_at = time.time() + self._interval
        timer.start()

    def _tick(self, generation: int) -> None:
        with self._lock:
            if not self._is_active or generation != self._generation:
                return
        self.refresh()
        with self._lock:
            if self._is_active and generation == self._generation:
                self._schedule(generation)

    def stop_auto_refresh(self) -> None:
        """Cancel the timer. Idempotent."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._is_active:
                logger.info("Auto refresh stopped")
            self._is_active = False
            self._next_refresh_at = None

    def update_refresh_interval(self) -> bool:
        """Restart the timer with a freshly read interval, if it is running."""
        with self._lock:
            if not self._is_active:
                return False
            return self.start_auto_refresh()

    # Introspection

    def is_auto_refresh_active(self) -> bool:
        return self._is_active

    def get_last_refresh_time(self) -> Optional[datetime]:
        return self.last_refresh_time

    def get_interval_seconds(self) -> Optional[float]:
        return self._interval if self._is_active else None

    def get_time_until_next_refresh(self) -> Optional[float]:
        """Seconds until the next scheduled tick, or None when stopped."""
        with self._lock:
            if not self._is_active or self._next_refresh_at is None:
                return None
            return max(0.0, self._next_refresh_at - time.time())

    def get_debug_info(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "isActive": self._is_active,
                "hasTimer": self._timer is not None,
                "listenerCount": len(self._listeners),
                "intervalSeconds": self._interval,
                "lastRefreshTime": (
                    self.last_refresh_time.isoformat() if self.last_refresh_time else None
                ),
            }


_service: Optional[StoryRefreshService] = None
_service_lock = threading.Lock()


def get_story_service(
    store: Optional[HierarchyStore] = None,
    settings: Optional[SettingsStore] = None,
) -> StoryRefreshService:
    """Process-wide story service, created on first use."""
    global _service

    with _service_lock:
        if _service is None:
            if store is None:
                store = HierarchyStore(settings=settings)
            _service = StoryRefreshService(store, settings=settings)
        return _service


def reset_story_service() -> None:
    """Stop and drop the process-wide service."""
    global _service

    with _service_lock:
        if _service is not None:
            _service.stop_auto_refresh()
        _service = None
