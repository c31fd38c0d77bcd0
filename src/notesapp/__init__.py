"""
NotesApp - a local-first hierarchical note store.

Notebooks contain chapters, chapters contain notes, and collections group
notebooks. Everything is indexed in a single JSON hierarchy document that is
mirrored to a directory tree of per-entity metadata files, and exposed to
clients through a Model Context Protocol (MCP) server.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notesapp-mcp")
except PackageNotFoundError:
    __version__ = "1.0.0"
