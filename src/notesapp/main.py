#!/usr/bin/env python
"""Main entry point for the NotesApp MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from notesapp.config import config
from notesapp.exceptions import ConfigurationError
from notesapp.observability import configure_logging, metrics
from notesapp.server.mcp_server import NotesAppMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="NotesApp MCP Server")
    parser.add_argument(
        "--documents-dir",
        help="App document directory (the default storage root lives here)",
        type=str,
        default=os.environ.get("NOTESAPP_DOCUMENTS_DIR")
    )
    parser.add_argument(
        "--platform",
        help="Target platform",
        choices=["android", "ios", "desktop"],
        default=os.environ.get("NOTESAPP_PLATFORM")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTESAPP_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.documents_dir:
        documents_dir = Path(args.documents_dir).expanduser()
        if documents_dir.exists() and not documents_dir.is_dir():
            raise ConfigurationError(
                f"Documents path is not a directory: {documents_dir}",
                config_key="documents_dir",
            )
        config.documents_dir = documents_dir
    if args.platform:
        config.platform = args.platform.lower()


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main():
    """Run the NotesApp MCP server."""
    args = parse_args()
    try:
        update_config(args)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(2)

    # Console + persistent file logging with rotation
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except Exception as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    try:
        config.documents_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create documents directory: {e}")
        sys.exit(1)

    try:
        logger.info(f"Starting NotesApp MCP server ({config.platform})")
        server = NotesAppMcpServer()
        server.story_service.start_auto_refresh()
        atexit.register(server.story_service.stop_auto_refresh)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
