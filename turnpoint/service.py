"""Snapshot service: capture, restore and branch checkpoint history.

The service is the only writer of session graphs. It owns an explicit
``SnapshotStore`` handle (blob, tree and graph storage under one root) that
is opened and closed by the caller; there is no process-wide singleton.

Ordering guarantees:

- Capture writes every blob and the tree before the graph document that
  references them (content before reference). A crash in between leaves
  only unreferenced content, which garbage collection reclaims.
- Restore resolves the complete file set before HEAD moves or any project
  file is touched. A missing blob or tree is fatal and surfaced; it is never
  skipped.

Capture, restore and continue are serialized per session with a lock.
Across processes, the graph revision check turns a lost race into
``ConcurrentMutationConflict``; the operation is retried once against the
fresh graph, then surfaced.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from turnpoint.blobs import BlobStore, hash_bytes
from turnpoint.config import SnapshotConfig, get_config
from turnpoint.diff import ChangeStats, FileDiff, diff_snapshots, diff_snapshots_detailed
from turnpoint.errors import (
    ConcurrentMutationConflict,
    CorruptTreeError,
    NotFoundError,
    SnapshotError,
)
from turnpoint.graph import (
    BlobSnapshot,
    CheckpointGraph,
    CheckpointNode,
    GraphStore,
    InlineSnapshot,
    validate_session_id,
)
from turnpoint.logging import log_capture_completed, log_operation_failed, log_restore_completed
from turnpoint.trees import TreeStore, normalize_path
from turnpoint.types import BlobHash, SessionId, TreeHash
from turnpoint.workdir import (
    FileHashCache,
    MaterializeResult,
    hash_working_tree,
    materialize,
    read_working_tree,
    scan_files,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# One retry after a revision conflict, then surface it
CONFLICT_ATTEMPTS = 2


# ============================================================================
# Store handle
# ============================================================================


class SnapshotStore:
    """Blob, tree and graph storage rooted at one directory.

    Usage:
        with SnapshotStore(root).open() as store:
            service = SnapshotService(store)
    """

    def __init__(self, root: Path, config: SnapshotConfig | None = None):
        self.root = Path(root)
        self.config = config or SnapshotConfig()
        self._blobs: BlobStore | None = None
        self._trees: TreeStore | None = None
        self._graphs: GraphStore | None = None

    @classmethod
    def from_config(cls, config: SnapshotConfig) -> SnapshotStore:
        return cls(config.store_path, config)

    @property
    def is_open(self) -> bool:
        return self._blobs is not None

    def open(self) -> SnapshotStore:
        if self.is_open:
            return self
        self.root.mkdir(parents=True, exist_ok=True, mode=0o700)
        retries = self.config.io_retries
        backoff = self.config.io_backoff_seconds
        self._blobs = BlobStore(self.root, self.config.compression_level, retries, backoff)
        self._trees = TreeStore(self.root, retries, backoff)
        self._graphs = GraphStore(self.root, retries, backoff)
        self._blobs.root.mkdir(exist_ok=True)
        self._trees.root.mkdir(exist_ok=True)
        self._graphs.root.mkdir(exist_ok=True)
        logger.debug(f"Opened snapshot store at {self.root}")
        return self

    def close(self) -> None:
        if self.is_open:
            logger.debug(f"Closed snapshot store at {self.root}")
        self._blobs = self._trees = self._graphs = None

    def __enter__(self) -> SnapshotStore:
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _require(self, component: T | None) -> T:
        if component is None:
            raise RuntimeError("Snapshot store is not open")
        return component

    @property
    def blobs(self) -> BlobStore:
        return self._require(self._blobs)

    @property
    def trees(self) -> TreeStore:
        return self._require(self._trees)

    @property
    def graphs(self) -> GraphStore:
        return self._require(self._graphs)


# ============================================================================
# Results
# ============================================================================


@dataclass(frozen=True)
class Timeline:
    """Everything a timeline renderer needs for one session."""

    session_id: str
    nodes: tuple[dict[str, Any], ...]
    current_head_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "nodes": [dict(n) for n in self.nodes],
            "current_head_id": self.current_head_id,
        }


def _snapshot_node(node: CheckpointNode) -> CheckpointNode:
    """Detached copy, so callers cannot mutate graph state."""
    return dataclasses.replace(node)


# ============================================================================
# Service
# ============================================================================


class SnapshotService:
    """Orchestrates blob, tree and graph storage for checkpoint sessions."""

    def __init__(self, store: SnapshotStore, config: SnapshotConfig | None = None):
        self.store = store
        self.config = config or store.config
        self._session_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.hash_cache = FileHashCache()

    @classmethod
    def open(cls, project_path: Path | None = None) -> SnapshotService:
        """Build a service from the configuration cascade for project_path."""
        config = get_config(project_path)
        return cls(SnapshotStore.from_config(config).open(), config)

    def close(self) -> None:
        self.store.close()

    # ------------------------------------------------------------------
    # Locking and graph mutation
    # ------------------------------------------------------------------

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._session_locks.setdefault(session_id, threading.Lock())
        with lock:
            yield

    def _mutate(self, session_id: SessionId, operation: Callable[[CheckpointGraph], T]) -> tuple[CheckpointGraph, T]:
        """Load, apply operation, save. Caller must hold the session lock.

        ``operation`` may run twice (after a revision conflict), so it must
        only perform idempotent writes besides mutating the graph.
        """
        for attempt in range(1, CONFLICT_ATTEMPTS + 1):
            graph = self.store.graphs.load(session_id)
            expected_revision = graph.revision
            result = operation(graph)
            try:
                self.store.graphs.save(graph, expected_revision)
                return graph, result
            except ConcurrentMutationConflict:
                if attempt == CONFLICT_ATTEMPTS:
                    raise
                logger.warning(f"Session {session_id} changed concurrently, retrying against fresh graph")
        raise AssertionError("unreachable")

    def _load(self, session_id: str) -> CheckpointGraph:
        return self.store.graphs.load(validate_session_id(session_id))

    # ------------------------------------------------------------------
    # Resolving checkpoint contents
    # ------------------------------------------------------------------

    def _tree_for(self, graph: CheckpointGraph, node: CheckpointNode) -> dict[str, BlobHash]:
        """Path -> blob hash for a node. Inline content is hashed, not stored."""
        snapshot = node.snapshot
        if isinstance(snapshot, BlobSnapshot):
            try:
                return self.store.trees.read(snapshot.tree_hash)
            except SnapshotError as e:
                e.context.setdefault("session_id", graph.session_id)
                e.context.setdefault("node_id", node.id)
                raise
        if isinstance(snapshot, InlineSnapshot):
            return {path: BlobHash(hash_bytes(content.encode("utf-8"))) for path, content in snapshot.files.items()}
        raise NotFoundError("Checkpoint has no snapshot", session_id=graph.session_id, node_id=node.id)

    def _resolve_files(self, graph: CheckpointGraph, node: CheckpointNode) -> dict[str, bytes]:
        """Full file set of a node. Any missing content is fatal."""
        snapshot = node.snapshot
        if isinstance(snapshot, InlineSnapshot):
            return {path: content.encode("utf-8") for path, content in snapshot.files.items()}

        tree = self._tree_for(graph, node)
        files: dict[str, bytes] = {}
        for path, blob_hash in tree.items():
            try:
                files[path] = self.store.blobs.get(blob_hash)
            except NotFoundError as e:
                raise CorruptTreeError(
                    "Tree references a missing blob",
                    session_id=graph.session_id,
                    node_id=node.id,
                    tree_hash=node.tree_hash,
                    path=path,
                    hash=blob_hash,
                ) from e
            except SnapshotError as e:
                e.context.setdefault("session_id", graph.session_id)
                e.context.setdefault("node_id", node.id)
                e.context.setdefault("path", path)
                raise
        return files

    def _read_blobs(self, tree: Mapping[str, BlobHash], paths: list[str], graph: CheckpointGraph, node: CheckpointNode) -> dict[str, bytes]:
        contents: dict[str, bytes] = {}
        for path in paths:
            try:
                contents[path] = self.store.blobs.get(tree[path])
            except NotFoundError as e:
                raise CorruptTreeError(
                    "Tree references a missing blob",
                    session_id=graph.session_id,
                    node_id=node.id,
                    path=path,
                    hash=tree[path],
                ) from e
        return contents

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_working_tree(working_tree: Mapping[str, bytes]) -> dict[str, bytes]:
        normalized: dict[str, bytes] = {}
        for raw_path, content in working_tree.items():
            if not isinstance(content, (bytes, bytearray, memoryview)):
                raise TypeError(f"File content for {raw_path!r} must be bytes, got {type(content).__name__}")
            path = normalize_path(raw_path)
            if path in normalized:
                raise ValueError(f"Duplicate path after normalization: {raw_path!r}")
            normalized[path] = bytes(content)
        return normalized

    def _capture_into(
        self,
        graph: CheckpointGraph,
        parent: CheckpointNode | None,
        hashes: Mapping[str, str],
        load: Callable[[str], bytes],
    ) -> tuple[BlobSnapshot, ChangeStats]:
        """Write content for a file set relative to parent; return the snapshot ref and stats.

        ``hashes`` maps every path to its content hash. ``load`` is only
        called for paths whose hash differs from the parent's.
        """
        parent_tree: dict[str, BlobHash] = {}
        parent_inline: dict[str, bytes] | None = None
        if parent is not None and parent.has_snapshot:
            parent_tree = self._tree_for(graph, parent)
            if isinstance(parent.snapshot, InlineSnapshot):
                parent_inline = {p: c.encode("utf-8") for p, c in parent.snapshot.files.items()}

        new_hashes = dict(hashes)
        changed = [p for p, h in new_hashes.items() if parent_tree.get(p) != h]
        deleted = [p for p in parent_tree if p not in new_hashes]

        # Old content only for paths that differ
        old_paths = [p for p in changed if p in parent_tree] + deleted
        if parent_inline is not None:
            old_contents = {p: parent_inline[p] for p in old_paths}
        elif parent is not None and old_paths:
            old_contents = self._read_blobs(parent_tree, old_paths, graph, parent)
        else:
            old_contents = {}
        new_contents = {p: load(p) for p in changed}

        stats = diff_snapshots(old_contents, new_contents, self.config.diff_max_cells)

        for path in changed:
            # The stored hash wins if a file changed after it was hashed
            new_hashes[path] = self.store.blobs.put(new_contents[path])

        parent_tree_hash = parent.tree_hash if parent is not None else None
        if not changed and not deleted and parent_tree_hash is not None:
            # Nothing changed: reuse the parent's tree instead of writing it again
            tree_hash = parent_tree_hash
        else:
            tree_hash = self.store.trees.write(new_hashes)

        return BlobSnapshot(TreeHash(tree_hash)), stats

    def _capture(
        self,
        session_id: SessionId,
        message_id: str,
        hashes: Mapping[str, str],
        load: Callable[[str], bytes],
        target_id: str | None = None,
    ) -> CheckpointNode:
        """Append after HEAD, or branch from target_id when given."""
        operation_name = "capture" if target_id is None else "continue"

        def operation(graph: CheckpointGraph) -> CheckpointNode:
            parent = graph.head_node() if target_id is None else graph.get(target_id)
            snapshot, stats = self._capture_into(graph, parent, hashes, load)
            if target_id is None:
                node_id = graph.append_checkpoint(parent.id if parent else None, message_id, snapshot, stats)
            else:
                node_id = graph.continue_from(parent.id, message_id, snapshot, stats)
            return graph.get(node_id)

        with self._session_lock(session_id):
            try:
                _, node = self._mutate(session_id, operation)
            except SnapshotError as e:
                log_operation_failed(operation_name, session_id, e)
                raise

        log_capture_completed(session_id, node.id, node.tree_hash, node.files_changed, node.insertions, node.deletions)
        return _snapshot_node(node)

    def capture_checkpoint(
        self,
        session_id: str,
        message_id: str,
        working_tree: Mapping[str, bytes],
    ) -> CheckpointNode:
        """Record working_tree as a new checkpoint after HEAD.

        Returns:
            The new node (detached copy)
        """
        session_id = validate_session_id(session_id)
        working_tree = self._normalize_working_tree(working_tree)
        hashes = {path: hash_bytes(content) for path, content in working_tree.items()}
        return self._capture(session_id, message_id, hashes, working_tree.__getitem__)

    def continue_from(
        self,
        session_id: str,
        target_id: str,
        message_id: str,
        working_tree: Mapping[str, bytes],
    ) -> CheckpointNode:
        """Branch from target_id: restore HEAD there, then capture a new child.

        If target_id already had an active child, that subtree is orphaned.
        """
        session_id = validate_session_id(session_id)
        working_tree = self._normalize_working_tree(working_tree)
        hashes = {path: hash_bytes(content) for path, content in working_tree.items()}
        return self._capture(session_id, message_id, hashes, working_tree.__getitem__, target_id)

    def capture_directory(
        self,
        session_id: str,
        message_id: str,
        project_path: Path,
        target_id: str | None = None,
    ) -> CheckpointNode:
        """Scan project_path and capture it, after HEAD or branching from target_id.

        Files whose mtime and size match an earlier scan by this service are
        not read again unless their content is needed for the diff.
        """
        session_id = validate_session_id(session_id)
        scan = hash_working_tree(
            Path(project_path),
            self.hash_cache,
            max_file_size=self.config.max_file_size,
            always_exclude=self.config.always_exclude,
        )
        return self._capture(session_id, message_id, scan.hashes, scan.load, target_id)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _move_head(self, session_id: SessionId, node_id: str) -> None:
        self._mutate(session_id, lambda graph: graph.restore(node_id))

    def restore_checkpoint(self, session_id: str, node_id: str) -> dict[str, bytes]:
        """Resolve a checkpoint's full file set and move HEAD to it.

        HEAD only moves once every file has been read.

        Raises:
            NotFoundError: unknown node, or the node has no snapshot
            CorruptTreeError: the tree is malformed or references a missing blob
        """
        session_id = validate_session_id(session_id)

        with self._session_lock(session_id):
            try:
                graph = self.store.graphs.load(session_id)
                files = self._resolve_files(graph, graph.get(node_id))
                self._move_head(session_id, node_id)
            except SnapshotError as e:
                log_operation_failed("restore", session_id, e)
                raise

        log_restore_completed(session_id, node_id, len(files))
        return files

    def restore_to_directory(self, session_id: str, node_id: str, project_path: Path) -> MaterializeResult:
        """Restore a checkpoint into project_path, then move HEAD.

        Files not in the checkpoint are deleted; identical files are left
        alone. On any failure before writing, the directory is untouched and
        HEAD does not move.
        """
        session_id = validate_session_id(session_id)
        project_path = Path(project_path)

        with self._session_lock(session_id):
            try:
                graph = self.store.graphs.load(session_id)
                files = self._resolve_files(graph, graph.get(node_id))
                current = scan_files(project_path, self.config.always_exclude)
                result = materialize(project_path, files, current)
                self._move_head(session_id, node_id)
            except (SnapshotError, OSError, ValueError) as e:
                log_operation_failed("restore", session_id, e)
                raise

        log_restore_completed(session_id, node_id, len(files))
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_checkpoint(self, session_id: str, node_id: str) -> CheckpointNode:
        return _snapshot_node(self._load(session_id).get(node_id))

    def get_checkpoint_files(self, session_id: str, node_id: str) -> dict[str, bytes]:
        """Full file set of a checkpoint, without moving HEAD."""
        graph = self._load(session_id)
        return self._resolve_files(graph, graph.get(node_id))

    def get_active_path(self, session_id: str) -> list[CheckpointNode]:
        return [_snapshot_node(n) for n in self._load(session_id).get_active_path()]

    def get_head(self, session_id: str) -> CheckpointNode | None:
        head = self._load(session_id).head_node()
        return _snapshot_node(head) if head else None

    def get_timeline(self, session_id: str) -> Timeline:
        """Node list with flags and the current HEAD, in creation order."""
        session_id = validate_session_id(session_id)
        with self._session_lock(session_id):
            graph = self.store.graphs.load(session_id)
        return Timeline(
            session_id=session_id,
            nodes=tuple(n.to_timeline_dict(graph.head) for n in graph.nodes()),
            current_head_id=graph.head,
        )

    def diff_checkpoints(self, session_id: str, from_id: str | None, to_id: str) -> list[FileDiff]:
        """Per-file changes going from from_id (None: empty tree) to to_id."""
        graph = self._load(session_id)
        old = self._resolve_files(graph, graph.get(from_id)) if from_id else {}
        new = self._resolve_files(graph, graph.get(to_id))
        return diff_snapshots_detailed(old, new, self.config.diff_max_cells)

    def diff_against_directory(self, session_id: str, node_id: str, project_path: Path) -> list[FileDiff]:
        """Per-file changes from a checkpoint to the current directory state."""
        graph = self._load(session_id)
        old = self._resolve_files(graph, graph.get(node_id))
        new = read_working_tree(
            Path(project_path),
            max_file_size=self.config.max_file_size,
            always_exclude=self.config.always_exclude,
        )
        return diff_snapshots_detailed(old, new, self.config.diff_max_cells)

    def sessions(self) -> list[SessionId]:
        return self.store.graphs.list_sessions()

    # ------------------------------------------------------------------
    # Legacy data
    # ------------------------------------------------------------------

    def migrate_inline_checkpoints(self, session_id: str) -> int:
        """Move legacy inline checkpoint content into the blob store.

        Stats, edges and HEAD are preserved. Returns the number of nodes
        converted.
        """
        session_id = validate_session_id(session_id)

        def operation(graph: CheckpointGraph) -> int:
            converted = 0
            for node in graph.nodes():
                if not isinstance(node.snapshot, InlineSnapshot):
                    continue
                tree = {
                    path: self.store.blobs.put(content.encode("utf-8"))
                    for path, content in node.snapshot.files.items()
                }
                graph.replace_snapshot(node.id, BlobSnapshot(self.store.trees.write(tree)))
                converted += 1
            return converted

        with self._session_lock(session_id):
            _, converted = self._mutate(session_id, operation)

        if converted:
            logger.info(f"Migrated {converted} inline checkpoints in session {session_id}")
        return converted
