"""Storage layer for NotesApp."""

from notesapp.storage.entity_files import EntityFileManager
from notesapp.storage.hierarchy_store import HierarchyStore

__all__ = [
    "EntityFileManager",
    "HierarchyStore",
]
