"""Configuration module for NotesApp."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notesapp import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the notes
_USER_ENV = Path.home() / ".notesapp" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Platforms where the user may move storage out of the app-private directory
_CUSTOM_STORAGE_PLATFORMS = ("android", "desktop")
MOBILE_PLATFORMS = ("android", "ios")


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NotesAppConfig(BaseModel):
    """Configuration for the NotesApp store and server."""

    # App-private document directory (the default storage root lives here)
    documents_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESAPP_DOCUMENTS_DIR", str(Path.home() / ".notesapp"))
        )
    )
    app_folder_name: str = Field(default="NotesApp")
    hierarchy_file_name: str = Field(default="hierarchy.json")
    settings_file_name: str = Field(default="app_settings.json")
    # Target platform: "android", "ios" or "desktop". Controls path
    # validation strictness and whether a custom storage root is allowed.
    platform: str = Field(
        default_factory=lambda: os.getenv("NOTESAPP_PLATFORM", "desktop").lower()
    )
    app_version: str = Field(default=__version__)
    server_name: str = Field(
        default_factory=lambda: os.getenv("NOTESAPP_SERVER_NAME", "notesapp-mcp")
    )
    # Development mode logs full error detail; production logs message text only
    dev_mode: bool = Field(default_factory=lambda: _env_flag("NOTESAPP_DEV_MODE"))
    # Multiplier applied to every retry delay (0 disables sleeping)
    retry_delay_scale: float = Field(
        default_factory=lambda: float(os.getenv("NOTESAPP_RETRY_DELAY_SCALE", "1.0"))
    )
    # Seconds before a shared backup file is removed again
    share_cleanup_delay: float = Field(default=5.0)
    # Safety backup rotation
    max_safety_backups: int = Field(
        default_factory=lambda: int(os.getenv("NOTESAPP_MAX_SAFETY_BACKUPS", "10"))
    )
    max_backup_age_days: int = Field(
        default_factory=lambda: int(os.getenv("NOTESAPP_MAX_BACKUP_AGE_DAYS", "30"))
    )
    # Story refresh interval bounds (seconds)
    story_min_interval_seconds: float = Field(default=10.0)
    story_max_interval_seconds: float = Field(default=24 * 60 * 60.0)

    @model_validator(mode="after")
    def _validate_config(self) -> "NotesAppConfig":
        """Reject settings that would break retry timing or the story timer."""
        if self.retry_delay_scale < 0:
            raise ValueError("retry_delay_scale must be >= 0")
        if self.story_min_interval_seconds <= 0:
            raise ValueError("story_min_interval_seconds must be > 0")
        if self.story_max_interval_seconds < self.story_min_interval_seconds:
            raise ValueError(
                "story_max_interval_seconds must be >= story_min_interval_seconds"
            )
        if self.platform not in ("android", "ios", "desktop"):
            logger.warning(
                "Unknown platform %r, treating it as a desktop-style target",
                self.platform,
            )
        return self

    def supports_custom_storage(self) -> bool:
        """Whether the user may choose an external storage directory."""
        return self.platform in _CUSTOM_STORAGE_PLATFORMS

    def get_default_root(self) -> Path:
        """Get the default storage root inside the documents directory."""
        return self.documents_dir / self.app_folder_name

    def get_settings_path(self) -> Path:
        """Get the path of the settings document (outside the storage root)."""
        return self.documents_dir / self.settings_file_name


# Create a global config instance
config = NotesAppConfig()
