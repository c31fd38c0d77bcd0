"""User settings persisted in ``app_settings.json``.

Settings live next to (not inside) the storage root, so they survive a
change of storage location.
"""
import datetime
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from notesapp.config import config
from notesapp.models.schema import AppSettings, SortOrder, ensure_timezone_aware

logger = logging.getLogger(__name__)

SORTING_OPTIONS = [
    {"key": SortOrder.LAST_MODIFIED.value, "label": "Last Modified Date", "icon": "time-outline"},
    {"key": SortOrder.NAME.value, "label": "Name (A-Z)", "icon": "text-outline"},
    {"key": SortOrder.NAME_DESC.value, "label": "Name (Z-A)", "icon": "text-outline"},
    {"key": SortOrder.CREATED.value, "label": "Creation Date", "icon": "calendar-outline"},
    {"key": SortOrder.CREATED_DESC.value, "label": "Creation Date (Newest)", "icon": "calendar-outline"},
]


def _field(item: Any, *names: str) -> Any:
    """First non-empty attribute or key among ``names`` (snake or camel)."""
    for name in names:
        if isinstance(item, dict):
            value = item.get(name)
            if value is None:
                value = item.get(to_camel(name))
        else:
            value = getattr(item, name, None)
        if value:
            return value
    return None


def _as_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, str) and value:
        try:
            return ensure_timezone_aware(
                datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
            )
        except ValueError:
            logger.debug(f"Unparseable timestamp in sort key: {value!r}")
    return ensure_timezone_aware(None)


class SettingsStore:
    """Cached access to the settings document."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else config.get_settings_path()
        self._cache: Optional[Dict[str, Any]] = None
        self._lock = Lock()

    def _load_raw(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache
        raw: Dict[str, Any] = {}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    raw = loaded
                else:
                    logger.warning(f"Ignoring malformed settings file {self.path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to read settings, using defaults: {e}")
        self._cache = raw
        return raw

    def get_settings(self) -> AppSettings:
        """Current settings; invalid or unreadable values fall back to defaults."""
        with self._lock:
            raw = self._load_raw()
        try:
            return AppSettings.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning(f"Invalid settings file, using defaults: {e.error_count()} errors")
            return AppSettings()

    def get_sorting_preference(self) -> SortOrder:
        return self.get_settings().default_sorting

    def get_revision_pages(self) -> int:
        return self.get_settings().revision_pages

    def get_story_interval(self) -> float:
        """Story refresh interval in hours."""
        return self.get_settings().story_interval

    def get_custom_storage_path(self) -> Optional[str]:
        return self.get_settings().custom_storage_path

    def update_setting(self, key: str, value: Any) -> bool:
        """Validate and persist a single setting, keeping every other key.

        Returns:
            True if saved, False if the value was rejected or the write failed.
        """
        camel_key = to_camel(key) if "_" in key else key
        with self._lock:
            merged = {**self._load_raw(), camel_key: value}
            try:
                validated = AppSettings.model_validate(merged)
            except PydanticValidationError as e:
                logger.warning(f"Rejected setting {camel_key}={value!r}: {e.error_count()} errors")
                return False

            # Store the normalized value (e.g. enum string) under the camel key
            normalized = validated.to_json_dict()
            if camel_key in normalized:
                merged[camel_key] = normalized[camel_key]

            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                temp_file = self.path.with_suffix(".tmp")
                temp_file.write_text(json.dumps(merged, indent=2), encoding="utf-8")
                temp_file.replace(self.path)
            except OSError as e:
                logger.error(f"Failed to update setting {camel_key}: {e}")
                return False

            self._cache = merged
            logger.info(f"Setting updated: {camel_key}")
            return True

    def clear_cache(self) -> None:
        with self._lock:
            self._cache = None

    def sort_items(
        self,
        items: Optional[Sequence[Any]],
        sort_type: Optional[Union[str, SortOrder]] = None,
    ) -> List[Any]:
        """Return a sorted copy of ``items`` (models or dicts).

        Name sorts are case-insensitive on ``name`` or ``title``. Unknown sort
        types fall back to last-modified, newest first.
        """
        if not items:
            return []
        if sort_type is None:
            sort_type = self.get_sorting_preference()
        try:
            order = SortOrder(sort_type)
        except ValueError:
            order = SortOrder.LAST_MODIFIED

        def name_key(item: Any) -> str:
            return str(_field(item, "name", "title") or "").casefold()

        def created_key(item: Any) -> datetime.datetime:
            return _as_datetime(_field(item, "created_at", "created"))

        def modified_key(item: Any) -> datetime.datetime:
            return _as_datetime(
                _field(item, "updated_at", "last_modified", "created_at", "created")
            )

        if order == SortOrder.NAME:
            return sorted(items, key=name_key)
        if order == SortOrder.NAME_DESC:
            return sorted(items, key=name_key, reverse=True)
        if order == SortOrder.CREATED:
            return sorted(items, key=created_key)
        if order == SortOrder.CREATED_DESC:
            return sorted(items, key=created_key, reverse=True)
        return sorted(items, key=modified_key, reverse=True)

    @staticmethod
    def get_sorting_options() -> List[Dict[str, str]]:
        return [dict(option) for option in SORTING_OPTIONS]

    @staticmethod
    def get_sorting_label(sort_key: str) -> str:
        for option in SORTING_OPTIONS:
            if option["key"] == sort_key:
                return option["label"]
        return "Last Modified Date"
