"""Garbage collection for the snapshot store.

Mark and sweep:
1. Mark every tree referenced by a node in any session graph
2. Mark every blob referenced by a marked tree
3. Sweep unmarked trees, then unmarked blobs

Content younger than ``min_age_seconds`` is never swept. A capture writes
blobs and its tree before the graph references them, so fresh content may be
legitimately unreferenced for a moment.

A corrupt tree aborts the collection: its blobs cannot be marked, and
sweeping without them could delete content a checkpoint still needs.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from turnpoint.errors import NotFoundError
from turnpoint.logging import log_gc_completed
from turnpoint.service import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_MIN_AGE_SECONDS = 3600


@dataclass(frozen=True)
class MaintenanceResult:
    """Result of a garbage collection run."""

    trees_removed: int = 0
    blobs_removed: int = 0
    trees_kept: int = 0
    blobs_kept: int = 0
    missing_trees: tuple[str, ...] = ()


def _older_than(path, cutoff: float) -> bool:
    try:
        return path.stat().st_mtime <= cutoff
    except OSError:
        return False


def collect_garbage(
    store: SnapshotStore,
    dry_run: bool = False,
    min_age_seconds: float = DEFAULT_MIN_AGE_SECONDS,
) -> MaintenanceResult:
    """Delete trees and blobs no checkpoint references.

    Args:
        store: An open snapshot store
        dry_run: Count what would be removed without deleting
        min_age_seconds: Skip content modified more recently than this

    Raises:
        CorruptTreeError: a referenced tree cannot be read
    """
    live_trees: set[str] = set()
    for session_id in store.graphs.list_sessions():
        graph = store.graphs.load(session_id)
        live_trees.update(node.tree_hash for node in graph if node.tree_hash)

    cutoff = time.time() - min_age_seconds

    # Young unreferenced trees belong to in-flight captures; keep them and their blobs
    dead_trees: list[str] = []
    kept_trees = set(live_trees)
    for tree_hash in store.trees.iter_hashes():
        if tree_hash in live_trees:
            continue
        if _older_than(store.trees.path_for(tree_hash), cutoff):
            dead_trees.append(tree_hash)
        else:
            kept_trees.add(tree_hash)

    live_blobs: set[str] = set()
    missing: list[str] = []
    for tree_hash in sorted(kept_trees):
        try:
            live_blobs.update(store.trees.read(tree_hash).values())
        except NotFoundError:
            logger.warning(f"Referenced tree is missing: {tree_hash}")
            missing.append(tree_hash)

    trees_kept = len(kept_trees) - len(missing)
    trees_removed = 0
    for tree_hash in dead_trees:
        if not dry_run:
            store.trees.delete(tree_hash)
        trees_removed += 1

    blobs_removed = blobs_kept = 0
    for blob_hash in list(store.blobs.iter_hashes()):
        if blob_hash in live_blobs or not _older_than(store.blobs.path_for(blob_hash), cutoff):
            blobs_kept += 1
            continue
        if not dry_run:
            store.blobs.delete(blob_hash)
        blobs_removed += 1

    log_gc_completed(blobs_removed, trees_removed, dry_run)
    return MaintenanceResult(
        trees_removed=trees_removed,
        blobs_removed=blobs_removed,
        trees_kept=trees_kept,
        blobs_kept=blobs_kept,
        missing_trees=tuple(missing),
    )
