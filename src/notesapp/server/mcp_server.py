"""MCP server implementation for NotesApp."""

import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Any, Iterable, List, Optional

from mcp.server.fastmcp import FastMCP

from notesapp.backup import BackupManager
from notesapp.config import config
from notesapp.exceptions import BackupError, ErrorCode, NotesAppError
from notesapp.models.schema import CamelModel, OperationResult
from notesapp.observability import metrics, timed_operation
from notesapp.services.story_service import StoryRefreshService, get_story_service
from notesapp.settings import SettingsStore
from notesapp.storage.hierarchy_store import HierarchyStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _split_tags(tags: Optional[str]) -> Optional[List[str]]:
    """Comma-separated tag string to a list; None leaves tags untouched."""
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def _render(result: OperationResult) -> str:
    return json.dumps(result.to_dict(), indent=2, ensure_ascii=False)


def _render_items(items: Iterable[Any]) -> str:
    data = [
        item.to_json_dict() if isinstance(item, CamelModel) else item
        for item in items
    ]
    return json.dumps(data, indent=2, ensure_ascii=False)


class NotesAppMcpServer:
    """MCP server for NotesApp."""

    def __init__(
        self,
        store: Optional[HierarchyStore] = None,
        settings: Optional[SettingsStore] = None,
        backup_manager: Optional[BackupManager] = None,
        story_service: Optional[StoryRefreshService] = None,
    ):
        """Initialize the MCP server.

        Args:
            store: Pre-configured hierarchy store. Created from the global
                config when None.
            settings: Settings store shared with the hierarchy store.
            backup_manager: Backup manager bound to ``store``.
            story_service: Story sampler. Defaults to the process-wide service.
        """
        self.mcp = FastMCP(config.server_name)
        self.settings = settings or (store.settings if store else SettingsStore())
        self.store = store or HierarchyStore(settings=self.settings)
        self.backup_manager = backup_manager or BackupManager(self.store)
        self.story_service = story_service or get_story_service(
            self.store, settings=self.settings
        )
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize storage."""
        try:
            self.store.initialize()
        except NotesAppError as e:
            logger.error(f"Storage initialization failed: {e.message}")
        logger.info(f"NotesApp MCP server initialized (root: {self.store.root})")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NotesAppError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""
        self._register_notebook_tools()
        self._register_chapter_tools()
        self._register_note_tools()
        self._register_collection_tools()
        self._register_search_tools()
        self._register_story_tools()
        self._register_settings_tools()
        self._register_backup_tools()

    # ========== Notebooks ==========

    def _register_notebook_tools(self) -> None:
        @self.mcp.tool(name="na_create_notebook")
        def na_create_notebook(
            title: str,
            description: str = "",
            color: Optional[str] = None,
            icon: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Create a new notebook.

            Args:
                title: Notebook title
                description: Optional description
                color: Display color (hex, e.g. "#6366f1")
                icon: Icon name
                tags: Comma-separated tags
            """
            try:
                _validate_input_lengths(title=title)
                return _render(
                    self.store.create_notebook(
                        title, description, color, icon, _split_tags(tags)
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_update_notebook")
        def na_update_notebook(
            notebook_id: str,
            title: Optional[str] = None,
            description: Optional[str] = None,
            color: Optional[str] = None,
            icon: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Update a notebook. Only the given fields change."""
            try:
                _validate_input_lengths(title=title)
                return _render(
                    self.store.update_notebook(
                        notebook_id, title, description, color, icon, _split_tags(tags)
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_list_notebooks")
        def na_list_notebooks(sort: Optional[str] = None) -> str:
            """List active notebooks.

            Args:
                sort: lastModified, name, nameDesc, created or createdDesc.
                    Defaults to the saved sorting preference.
            """
            try:
                notebooks = self.settings.sort_items(self.store.get_notebooks(), sort)
                return _render_items(nb.metadata() for nb in notebooks)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_get_notebook")
        def na_get_notebook(notebook_id: str) -> str:
            """Get a notebook with its chapter list."""
            try:
                notebook = self.store.get_notebook(notebook_id)
                if notebook is None:
                    return f"Notebook not found: {notebook_id}"
                data = notebook.metadata()
                data["chapters"] = [
                    ch.metadata() for ch in self.store.get_chapters(notebook_id)
                ]
                return json.dumps(data, indent=2, ensure_ascii=False)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_delete_notebook")
        def na_delete_notebook(notebook_id: str, permanent: bool = False) -> str:
            """Move a notebook to the recycle bin, or purge it with permanent=True."""
            try:
                if permanent:
                    return _render(self.store.permanently_delete_notebook(notebook_id))
                return _render(self.store.soft_delete_notebook(notebook_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_restore_notebook")
        def na_restore_notebook(notebook_id: str) -> str:
            """Restore a notebook from the recycle bin."""
            try:
                return _render(self.store.restore_notebook(notebook_id))
            except Exception as e:
                return self.format_error_response(e)

    # ========== Chapters ==========

    def _register_chapter_tools(self) -> None:
        @self.mcp.tool(name="na_create_chapter")
        def na_create_chapter(
            notebook_id: str,
            title: str,
            description: str = "",
            color: Optional[str] = None,
            chapter_number: int = 1,
        ) -> str:
            """Create a chapter in an active notebook.

            Args:
                notebook_id: Parent notebook
                title: Chapter title
                description: Optional description
                color: Display color (hex)
                chapter_number: Position label, 1-999
            """
            try:
                _validate_input_lengths(title=title)
                return _render(
                    self.store.create_chapter(
                        notebook_id, title, description, color, chapter_number
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_update_chapter")
        def na_update_chapter(
            notebook_id: str,
            chapter_id: str,
            title: Optional[str] = None,
            description: Optional[str] = None,
            color: Optional[str] = None,
            chapter_number: Optional[int] = None,
        ) -> str:
            """Update a chapter. Only the given fields change."""
            try:
                _validate_input_lengths(title=title)
                return _render(
                    self.store.update_chapter(
                        notebook_id, chapter_id, title, description, color, chapter_number
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_list_chapters")
        def na_list_chapters(notebook_id: str, sort: Optional[str] = None) -> str:
            """List active chapters of a notebook."""
            try:
                chapters = self.settings.sort_items(
                    self.store.get_chapters(notebook_id), sort
                )
                return _render_items(ch.metadata() for ch in chapters)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_delete_chapter")
        def na_delete_chapter(
            notebook_id: str, chapter_id: str, permanent: bool = False
        ) -> str:
            """Move a chapter to the recycle bin, or purge it with permanent=True."""
            try:
                if permanent:
                    result = self.store.permanently_delete_chapter(notebook_id, chapter_id)
                else:
                    result = self.store.soft_delete_chapter(notebook_id, chapter_id)
                return _render(result)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_restore_chapter")
        def na_restore_chapter(notebook_id: str, chapter_id: str) -> str:
            """Restore a chapter from the recycle bin."""
            try:
                return _render(self.store.restore_chapter(notebook_id, chapter_id))
            except Exception as e:
                return self.format_error_response(e)

    # ========== Notes ==========

    def _register_note_tools(self) -> None:
        @self.mcp.tool(name="na_create_note")
        def na_create_note(
            notebook_id: str,
            chapter_id: str,
            title: str,
            content: str = "",
            tags: Optional[str] = None,
            priority: Optional[str] = None,
        ) -> str:
            """Create a note in an active chapter.

            Args:
                notebook_id: Parent notebook
                chapter_id: Parent chapter
                title: Note title
                content: Note body; paragraphs are split on newlines
                tags: Comma-separated tags
                priority: Low, Mid, High or Very High
            """
            try:
                _validate_input_lengths(title=title, content=content)
                return _render(
                    self.store.create_note(
                        notebook_id,
                        chapter_id,
                        title,
                        content,
                        _split_tags(tags),
                        priority,
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_update_note")
        def na_update_note(
            notebook_id: str,
            chapter_id: str,
            note_id: str,
            title: Optional[str] = None,
            content: Optional[str] = None,
            tags: Optional[str] = None,
            priority: Optional[str] = None,
        ) -> str:
            """Update a note. Its files are rewritten atomically."""
            with timed_operation("na_update_note", note_id=note_id) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    result = self.store.update_note(
                        notebook_id,
                        chapter_id,
                        note_id,
                        title=title,
                        content=content,
                        tags=_split_tags(tags),
                        priority=priority,
                    )
                    if not result.success:
                        op["error"] = result.error
                    return _render(result)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="na_get_note")
        def na_get_note(notebook_id: str, chapter_id: str, note_id: str) -> str:
            """Retrieve a note with its content."""
            try:
                note = self.store.get_note(notebook_id, chapter_id, note_id)
                if note is None:
                    return f"Note not found: {note_id}"
                result = f"# {note.title}\n"
                result += f"ID: {note.id}\n"
                if note.priority:
                    result += f"Priority: {note.priority.value}\n"
                if note.display_tags:
                    result += f"Tags: {', '.join(note.display_tags)}\n"
                result += f"Created: {note.created.isoformat()}\n"
                result += f"Updated: {note.last_modified.isoformat()}\n"
                if note.deleted:
                    result += "Status: in recycle bin\n"
                result += f"\n{note.content}\n"
                return result
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_list_notes")
        def na_list_notes(
            notebook_id: str, chapter_id: str, sort: Optional[str] = None
        ) -> str:
            """List active notes of a chapter."""
            try:
                notes = self.settings.sort_items(
                    self.store.get_notes(notebook_id, chapter_id), sort
                )
                return _render_items(note.metadata() for note in notes)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_delete_note")
        def na_delete_note(
            notebook_id: str, chapter_id: str, note_id: str, permanent: bool = False
        ) -> str:
            """Move a note to the recycle bin, or purge it with permanent=True."""
            try:
                if permanent:
                    result = self.store.permanently_delete_note(
                        notebook_id, chapter_id, note_id
                    )
                else:
                    result = self.store.soft_delete_note(notebook_id, chapter_id, note_id)
                return _render(result)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_restore_note")
        def na_restore_note(notebook_id: str, chapter_id: str, note_id: str) -> str:
            """Restore a note from the recycle bin."""
            try:
                return _render(self.store.restore_note(notebook_id, chapter_id, note_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_recycle_bin")
        def na_recycle_bin() -> str:
            """List everything currently in the recycle bin."""
            try:
                data = {
                    "notebooks": [nb.metadata() for nb in self.store.get_deleted_notebooks()],
                    "chapters": [ch.metadata() for ch in self.store.get_deleted_chapters()],
                    "notes": [n.metadata() for n in self.store.get_deleted_notes()],
                }
                return json.dumps(data, indent=2, ensure_ascii=False)
            except Exception as e:
                return self.format_error_response(e)

    # ========== Collections ==========

    def _register_collection_tools(self) -> None:
        @self.mcp.tool(name="na_create_collection")
        def na_create_collection(
            name: str,
            description: str = "",
            color: Optional[str] = None,
            icon: Optional[str] = None,
        ) -> str:
            """Create a notebook collection."""
            try:
                _validate_input_lengths(title=name)
                return _render(
                    self.store.create_notebook_collection(name, description, color, icon)
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_update_collection")
        def na_update_collection(
            collection_id: str,
            name: Optional[str] = None,
            description: Optional[str] = None,
            color: Optional[str] = None,
            icon: Optional[str] = None,
        ) -> str:
            """Update a notebook collection."""
            try:
                _validate_input_lengths(title=name)
                return _render(
                    self.store.update_notebook_collection(
                        collection_id, name, description, color, icon
                    )
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_delete_collection")
        def na_delete_collection(collection_id: str) -> str:
            """Delete a collection. The notebooks in it are not affected."""
            try:
                return _render(self.store.delete_notebook_collection(collection_id))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_list_collections")
        def na_list_collections() -> str:
            """List notebook collections."""
            try:
                return _render_items(
                    c.metadata() for c in self.store.get_notebook_collections()
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_collection_notebooks")
        def na_collection_notebooks(collection_id: str) -> str:
            """List the live notebooks of a collection."""
            try:
                members = self.store.get_notebooks_in_collection(collection_id)
                return _render_items(
                    {
                        **m.notebook.metadata(),
                        "addedToCollectionAt": m.added_to_collection_at.isoformat(),
                    }
                    for m in members
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_add_to_collection")
        def na_add_to_collection(collection_id: str, notebook_id: str) -> str:
            """Add a notebook to a collection."""
            try:
                return _render(
                    self.store.add_notebook_to_collection(collection_id, notebook_id)
                )
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_remove_from_collection")
        def na_remove_from_collection(collection_id: str, notebook_id: str) -> str:
            """Remove a notebook from a collection."""
            try:
                return _render(
                    self.store.remove_notebook_from_collection(collection_id, notebook_id)
                )
            except Exception as e:
                return self.format_error_response(e)

    # ========== Search ==========

    def _register_search_tools(self) -> None:
        @self.mcp.tool(name="na_search")
        def na_search(
            query: str,
            scope: str = "notes",
            notebook_id: Optional[str] = None,
            chapter_id: Optional[str] = None,
        ) -> str:
            """Search the hierarchy.

            Args:
                query: Whitespace-separated terms; every term must match
                scope: notebooks, collections, chapters, notes or tags
                notebook_id: Restrict chapter/note search to a notebook
                chapter_id: Restrict note search to a chapter
            """
            with timed_operation("na_search", scope=scope) as op:
                try:
                    if scope == "notebooks":
                        results = self.store.search_notebooks(query)
                    elif scope == "collections":
                        results = self.store.search_collections(query)
                    elif scope == "chapters":
                        results = self.store.search_chapters(query, notebook_id)
                    elif scope == "notes":
                        results = self.store.search_notes(query, notebook_id, chapter_id)
                    elif scope == "tags":
                        results = self.store.search_tags(query)
                    else:
                        return f"Error: Unknown search scope '{scope}'"
                    op["result_count"] = len(results)
                    if not results:
                        return f"No {scope} found matching '{query}'."
                    return _render_items(results)
                except Exception as e:
                    return self.format_error_response(e)

    # ========== Stories ==========

    def _register_story_tools(self) -> None:
        @self.mcp.tool(name="na_stories")
        def na_stories() -> str:
            """Draw a fresh random sample of notes for review."""
            try:
                stories = self.story_service.manual_refresh()
                if not stories:
                    return "No notes available for review."
                return _render_items(stories)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_story_status")
        def na_story_status() -> str:
            """Show the state of the automatic story refresh."""
            try:
                info = self.story_service.get_debug_info()
                info["secondsUntilNextRefresh"] = (
                    self.story_service.get_time_until_next_refresh()
                )
                return json.dumps(info, indent=2)
            except Exception as e:
                return self.format_error_response(e)

    # ========== Settings & Stats ==========

    def _register_settings_tools(self) -> None:
        @self.mcp.tool(name="na_get_settings")
        def na_get_settings() -> str:
            """Show current settings and the available sort orders."""
            try:
                data = self.settings.get_settings().to_json_dict()
                data["sortingOptions"] = self.settings.get_sorting_options()
                return json.dumps(data, indent=2, ensure_ascii=False)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_update_setting")
        def na_update_setting(key: str, value: str) -> str:
            """Update one setting.

            Args:
                key: defaultSorting, revisionPages or storyInterval
                value: New value; numbers are parsed from the string
            """
            try:
                if key in ("customStoragePath", "custom_storage_path"):
                    return "Error: Use na_set_storage_location to change storage"
                parsed: Any = value
                try:
                    parsed = json.loads(value)
                except ValueError:
                    pass
                if not self.settings.update_setting(key, parsed):
                    return f"Error: Invalid value for setting '{key}'"
                if key in ("storyInterval", "story_interval"):
                    self.story_service.update_refresh_interval()
                return f"Setting '{key}' updated."
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_set_storage_location")
        def na_set_storage_location(directory: str) -> str:
            """Store future data under <directory>/NotesApp. Existing data is not moved."""
            try:
                return _render(self.store.set_storage_location(directory))
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_status")
        def na_status() -> str:
            """Show hierarchy totals and operation metrics."""
            try:
                stats = self.store.get_stats()
                if stats is None:
                    return "Error: Hierarchy could not be read"
                output = "# NotesApp Status\n\n"
                output += f"Storage: {stats['folderPath']}\n"
                output += f"Notebooks: {stats['totalNotebooks']}"
                output += f" ({stats['deletedNotebooks']} in recycle bin)\n"
                output += f"Chapters: {stats['totalChapters']}\n"
                output += f"Notes: {stats['totalNotes']}\n"
                output += f"Collections: {stats['totalNotebookCollections']}\n"
                output += f"Last modified: {stats['lastModified']}\n"

                summary = metrics.get_summary()
                output += "\n## Operations\n"
                output += f"Total: {summary['total_operations']}"
                output += f" (errors: {summary['total_errors']},"
                output += f" retries: {summary['total_retries']})\n"
                return output
            except Exception as e:
                return self.format_error_response(e)

    # ========== Backup ==========

    def _register_backup_tools(self) -> None:
        @self.mcp.tool(name="na_export")
        def na_export() -> str:
            """Write a full export (hierarchy plus every file) to the storage root."""
            try:
                return _render(self.backup_manager.export_data())
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_share_backup")
        def na_share_backup(destination_dir: str) -> str:
            """Copy a backup of the hierarchy into a directory.

            Args:
                destination_dir: Existing directory to receive the backup file
            """
            try:
                destination = Path(destination_dir).expanduser()
                if not destination.is_dir():
                    raise BackupError(
                        f"Directory not found: {destination_dir}",
                        code=ErrorCode.BACKUP_SHARE_UNAVAILABLE,
                    )
                result = self.backup_manager.share_hierarchy_file(
                    lambda path: shutil.copy2(path, destination / path.name)
                )
                return _render(result)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_list_backups")
        def na_list_backups() -> str:
            """List safety backups taken before restores."""
            try:
                backups = self.backup_manager.list_backups()
                if not backups:
                    return "No safety backups found."
                output = "Available safety backups:\n\n"
                for b in backups:
                    output += f"  {b['path']} ({b['size_bytes']} bytes, {b['created']})\n"
                return output
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="na_restore")
        def na_restore(backup_path: str, confirm: bool = False) -> str:
            """Restore the hierarchy from a backup file.

            WARNING: This replaces all current data. A safety backup is
            created automatically before restoration.

            Args:
                backup_path: Full path to the backup JSON file
                confirm: Must be True to proceed (safety check)
            """
            with timed_operation("na_restore") as op:
                try:
                    if not confirm:
                        return (
                            "DESTRUCTIVE OPERATION\n\n"
                            "This will replace your current notebooks with the backup.\n"
                            "A safety backup will be created first.\n\n"
                            "To proceed, call again with confirm=True"
                        )
                    result = self.backup_manager.restore_from_backup(backup_path or None)
                    if not result.success:
                        op["error"] = result.error
                    return _render(result)
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
