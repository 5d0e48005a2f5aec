"""Logging helpers for Turnpoint.

Library modules log through ``logging.getLogger(__name__)``, which places
them under the ``turnpoint`` logger, and never configure handlers themselves.
``get_logger`` prefixes names from outside the package namespace. The CLI
calls ``setup_logging`` once at startup to route records through rich.

The ``log_*`` helpers keep the wording of lifecycle events consistent so the
log is greppable by event name.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "turnpoint"


def get_logger(name: str) -> logging.Logger:
    """Get a module logger under the turnpoint namespace."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Install a rich handler on the turnpoint root logger.

    Calling this twice replaces the previous handler rather than stacking.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False


_events = get_logger("turnpoint.events")


def log_capture_completed(
    session_id: str,
    node_id: str,
    tree_hash: str | None,
    files_changed: int,
    insertions: int,
    deletions: int,
) -> None:
    _events.info(
        f"capture_completed session={session_id} node={node_id} tree={(tree_hash or '-')[:12]} "
        f"files={files_changed} +{insertions}/-{deletions}"
    )


def log_restore_completed(session_id: str, node_id: str, file_count: int) -> None:
    _events.info(f"restore_completed session={session_id} node={node_id} files={file_count}")


def log_operation_failed(operation: str, session_id: str, error: Exception) -> None:
    _events.error(f"{operation}_failed session={session_id} error={error}")


def log_gc_completed(blobs_removed: int, trees_removed: int, dry_run: bool) -> None:
    mode = "dry_run" if dry_run else "sweep"
    _events.info(f"gc_completed mode={mode} blobs_removed={blobs_removed} trees_removed={trees_removed}")
