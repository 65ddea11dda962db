#!/usr/bin/env python
"""Main entry point for the gitnotes MCP server."""
import argparse
import logging
import os
import sys
from pathlib import Path

from gitnotes import __version__
from gitnotes.config import config
from gitnotes.exceptions import GitNotesError
from gitnotes.observability import configure_logging
from gitnotes.server.mcp_server import GitNotesMcpServer
from gitnotes.services.notes_service import NotesService


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="gitnotes MCP Server")
    parser.add_argument(
        "--base-dir",
        help="Directory holding notebooks and logs",
        type=str,
        default=os.environ.get("GITNOTES_BASE_DIR")
    )
    parser.add_argument(
        "--repository",
        help="Notebook repository (a name below the base directory or a path)",
        type=str,
        default=os.environ.get("GITNOTES_REPOSITORY")
    )
    parser.add_argument(
        "--no-create",
        help="Fail instead of creating a missing notebook",
        action="store_true",
    )
    parser.add_argument(
        "--rebuild",
        help="Rebuild the catalog from history before serving",
        action="store_true",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("GITNOTES_LOG_LEVEL", "INFO")
    )
    parser.add_argument("--version", action="version", version=f"gitnotes {__version__}")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.base_dir:
        config.base_dir = Path(args.base_dir)
    if args.repository:
        config.repository = Path(args.repository)
    config.log_level = args.log_level


def main(argv=None):
    """Run the gitnotes MCP server."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.get_log_dir(), level=log_level, console=True)
    except OSError as e:
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    try:
        service = NotesService.open(create=not args.no_create, config=config)
        if args.rebuild:
            service.rebuild()
    except GitNotesError as e:
        logger.error(f"Failed to open notebook {config.get_repository_path()}: {e}")
        sys.exit(1)

    try:
        logger.info("Starting gitnotes MCP server")
        server = GitNotesMcpServer(service=service)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
