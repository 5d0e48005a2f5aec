"""Checkpoint graph: the branchable history of one session.

Nodes form a forest. Each node has at most one parent, and among a node's
children exactly one may be marked as its ``active_child_id``, the child that
continues the straight line. Restoring to an older node and continuing from
there adds a sibling branch instead of rewriting history.

HEAD is the node considered current. The *active path* is every ancestor of
HEAD, HEAD itself, and the chain reached by following ``active_child_id``
forward from HEAD. Nodes off the active path are *orphaned*: kept for
history and branch switching, never deleted.

The ``is_on_active_path`` / ``is_orphaned`` flags are a cache. They are never
read from disk; they are derived from the parent/child edges and HEAD, and
updated incrementally whenever HEAD moves (only nodes that enter or leave
the active path are touched).

Persistence lives in ``GraphStore``: one JSON document per session carrying a
monotonic revision used for optimistic concurrency.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Union

from turnpoint.atomic import atomic_write_json
from turnpoint.blobs import HASH_RE
from turnpoint.diff import ChangeStats
from turnpoint.errors import (
    ConcurrentMutationConflict,
    CorruptGraphError,
    NotFoundError,
    from_info,
    retry_io,
)
from turnpoint.types import MessageId, NodeId, SessionId, TreeHash

logger = logging.getLogger(__name__)

GRAPH_FORMAT_VERSION = 1
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


# ============================================================================
# Snapshot references
# ============================================================================


@dataclass(frozen=True)
class BlobSnapshot:
    """Checkpoint whose files live in the blob store, referenced by tree hash."""

    tree_hash: TreeHash


@dataclass(frozen=True)
class InlineSnapshot:
    """Legacy checkpoint that carries its full file contents inline as text."""

    files: Mapping[str, str] = field(default_factory=dict)


Snapshot = Union[BlobSnapshot, InlineSnapshot]


# ============================================================================
# Nodes
# ============================================================================


@dataclass
class CheckpointNode:
    """One point in a session's history."""

    id: NodeId
    message_id: MessageId
    parent_id: NodeId | None = None
    active_child_id: NodeId | None = None
    snapshot: Snapshot | None = None
    timestamp: str = ""
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    # Derived from edges + HEAD, never persisted
    is_on_active_path: bool = False
    is_orphaned: bool = True

    @property
    def has_snapshot(self) -> bool:
        return self.snapshot is not None

    @property
    def tree_hash(self) -> TreeHash | None:
        if isinstance(self.snapshot, BlobSnapshot):
            return self.snapshot.tree_hash
        return None

    @property
    def stats(self) -> ChangeStats:
        return ChangeStats(self.files_changed, self.insertions, self.deletions)

    def to_dict(self) -> dict[str, Any]:
        """Durable fields only."""
        data: dict[str, Any] = {
            "id": self.id,
            "message_id": self.message_id,
            "parent_id": self.parent_id,
            "active_child_id": self.active_child_id,
            "timestamp": self.timestamp,
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "tree_hash": self.tree_hash,
        }
        if isinstance(self.snapshot, InlineSnapshot):
            data["inline_files"] = dict(self.snapshot.files)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CheckpointNode:
        snapshot: Snapshot | None = None
        tree_hash = data.get("tree_hash")
        if tree_hash:
            if not isinstance(tree_hash, str) or not HASH_RE.match(tree_hash):
                raise CorruptGraphError("Node has an invalid tree hash", node_id=data.get("id"))
            snapshot = BlobSnapshot(TreeHash(tree_hash))
        elif data.get("inline_files") is not None:
            files = data["inline_files"]
            if not isinstance(files, dict):
                raise CorruptGraphError("Node inline files are not a mapping", node_id=data.get("id"))
            snapshot = InlineSnapshot(dict(files))

        return cls(
            id=NodeId(data["id"]),
            message_id=MessageId(data["message_id"]),
            parent_id=data.get("parent_id"),
            active_child_id=data.get("active_child_id"),
            snapshot=snapshot,
            timestamp=data.get("timestamp", ""),
            files_changed=int(data.get("files_changed", 0)),
            insertions=int(data.get("insertions", 0)),
            deletions=int(data.get("deletions", 0)),
        )

    def to_timeline_dict(self, head_id: NodeId | None) -> dict[str, Any]:
        """Everything a renderer needs, flags included."""
        return {
            "id": self.id,
            "message_id": self.message_id,
            "parent_id": self.parent_id,
            "active_child_id": self.active_child_id,
            "timestamp": self.timestamp,
            "tree_hash": self.tree_hash,
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "is_on_active_path": self.is_on_active_path,
            "is_orphaned": self.is_orphaned,
            "is_current": self.id == head_id,
            "has_snapshot": self.has_snapshot,
        }


def generate_node_id() -> NodeId:
    return NodeId(f"cp_{uuid.uuid4().hex[:16]}")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ============================================================================
# Graph
# ============================================================================


class CheckpointGraph:
    """In-memory checkpoint forest for one session."""

    def __init__(self, session_id: SessionId, revision: int = 0):
        self.session_id = session_id
        self.revision = revision
        self.head: NodeId | None = None
        self._nodes: dict[NodeId, CheckpointNode] = {}
        self._children: dict[NodeId, list[NodeId]] = {}
        self._active: set[NodeId] = set()

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[CheckpointNode]:
        return iter(self._nodes.values())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> CheckpointNode:
        try:
            return self._nodes[NodeId(node_id)]
        except KeyError:
            raise NotFoundError(
                "Checkpoint not found", session_id=self.session_id, node_id=node_id
            ) from None

    def nodes(self) -> list[CheckpointNode]:
        """All nodes in creation order."""
        return list(self._nodes.values())

    def children(self, node_id: str) -> list[CheckpointNode]:
        self.get(node_id)
        return [self._nodes[c] for c in self._children.get(NodeId(node_id), [])]

    def roots(self) -> list[CheckpointNode]:
        return [n for n in self._nodes.values() if n.parent_id is None]

    def head_node(self) -> CheckpointNode | None:
        return self._nodes[self.head] if self.head is not None else None

    def find_by_message(self, message_id: str) -> CheckpointNode | None:
        """Most recent node created for a message."""
        for node in reversed(self._nodes.values()):
            if node.message_id == message_id:
                return node
        return None

    def ancestors(self, node_id: str) -> list[CheckpointNode]:
        """Path from the root down to node_id, inclusive."""
        path: list[CheckpointNode] = []
        current: CheckpointNode | None = self.get(node_id)
        while current is not None:
            path.append(current)
            current = self._nodes.get(current.parent_id) if current.parent_id else None
        path.reverse()
        return path

    def forward_chain(self, node_id: str) -> list[CheckpointNode]:
        """Nodes reached by following active_child_id below node_id, exclusive."""
        chain: list[CheckpointNode] = []
        current = self.get(node_id)
        while current.active_child_id is not None:
            current = self._nodes[current.active_child_id]
            chain.append(current)
        return chain

    def get_active_path(self) -> list[CheckpointNode]:
        """Nodes from the root to HEAD, in order."""
        if self.head is None:
            return []
        return self.ancestors(self.head)

    def is_descendant(self, node_id: str, ancestor_id: str) -> bool:
        return any(n.id == ancestor_id for n in self.ancestors(node_id)[:-1])

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_checkpoint(
        self,
        parent_id: str | None,
        message_id: str,
        snapshot: Snapshot | None,
        stats: ChangeStats | None = None,
        node_id: str | None = None,
        timestamp: str | None = None,
    ) -> NodeId:
        """Add a child of parent_id (or a new root) and make it HEAD.

        The new node becomes its parent's active child.
        """
        if parent_id is not None:
            parent = self.get(parent_id)
        else:
            parent = None

        new_id = NodeId(node_id) if node_id else generate_node_id()
        if new_id in self._nodes:
            raise ValueError(f"Duplicate checkpoint id: {new_id}")

        stats = stats or ChangeStats()
        node = CheckpointNode(
            id=new_id,
            message_id=MessageId(message_id),
            parent_id=parent.id if parent else None,
            snapshot=snapshot,
            timestamp=timestamp or _now_iso(),
            files_changed=stats.files_changed,
            insertions=stats.insertions,
            deletions=stats.deletions,
        )

        self._nodes[new_id] = node
        self._children[new_id] = []
        if parent is not None:
            self._children[parent.id].append(new_id)
            parent.active_child_id = new_id

        self.head = new_id
        self._refresh_flags()
        return new_id

    def restore(self, target_id: str) -> None:
        """Move HEAD to target_id without touching any node's edges."""
        target = self.get(target_id)
        self.head = target.id
        self._refresh_flags()

    def continue_from(
        self,
        target_id: str,
        message_id: str,
        snapshot: Snapshot | None,
        stats: ChangeStats | None = None,
        node_id: str | None = None,
        timestamp: str | None = None,
    ) -> NodeId:
        """Restore to target_id, then append a child of it.

        If target_id already had an active child, the new node replaces it as
        the straight line and the previous subtree becomes orphaned.
        """
        self.restore(target_id)
        return self.append_checkpoint(target_id, message_id, snapshot, stats, node_id, timestamp)

    def replace_snapshot(self, node_id: str, snapshot: Snapshot | None) -> None:
        """Swap a node's snapshot reference (legacy inline -> blob-backed)."""
        self.get(node_id).snapshot = snapshot

    # ------------------------------------------------------------------
    # Derived flags
    # ------------------------------------------------------------------

    def active_path_ids(self) -> set[NodeId]:
        if self.head is None:
            return set()
        ids = {n.id for n in self.ancestors(self.head)}
        ids.update(n.id for n in self.forward_chain(self.head))
        return ids

    def _refresh_flags(self) -> None:
        new_active = self.active_path_ids()
        for node_id in self._active ^ new_active:
            node = self._nodes.get(node_id)
            if node is None:
                continue
            on_path = node_id in new_active
            node.is_on_active_path = on_path
            node.is_orphaned = not on_path
        self._active = new_active

    # ------------------------------------------------------------------
    # Validation and serialization
    # ------------------------------------------------------------------

    def check_invariants(self) -> None:
        """Raise CorruptGraphError if any structural invariant is violated."""
        for node in self._nodes.values():
            if node.parent_id is not None and node.parent_id not in self._nodes:
                raise CorruptGraphError(
                    "Node references a missing parent",
                    session_id=self.session_id,
                    node_id=node.id,
                    parent_id=node.parent_id,
                )
            if node.active_child_id is not None:
                child = self._nodes.get(node.active_child_id)
                if child is None or child.parent_id != node.id:
                    raise CorruptGraphError(
                        "Active child is not a child of its node",
                        session_id=self.session_id,
                        node_id=node.id,
                        active_child_id=node.active_child_id,
                    )

        # Every parent chain must end at a root
        for node in self._nodes.values():
            seen: set[NodeId] = set()
            current: CheckpointNode | None = node
            while current is not None:
                if current.id in seen:
                    raise CorruptGraphError(
                        "Cycle in checkpoint parents", session_id=self.session_id, node_id=node.id
                    )
                seen.add(current.id)
                current = self._nodes.get(current.parent_id) if current.parent_id else None

        if self._nodes and self.head not in self._nodes:
            raise CorruptGraphError(
                "HEAD does not reference a checkpoint", session_id=self.session_id, head=self.head
            )
        if not self._nodes and self.head is not None:
            raise CorruptGraphError(
                "HEAD set on an empty graph", session_id=self.session_id, head=self.head
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": GRAPH_FORMAT_VERSION,
            "session_id": self.session_id,
            "revision": self.revision,
            "head": self.head,
            "nodes": [n.to_dict() for n in self._nodes.values()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CheckpointGraph:
        try:
            graph = cls(SessionId(data["session_id"]), revision=int(data.get("revision", 0)))
            for raw in data.get("nodes", []):
                node = CheckpointNode.from_dict(raw)
                if node.id in graph._nodes:
                    raise CorruptGraphError(
                        "Duplicate checkpoint id", session_id=graph.session_id, node_id=node.id
                    )
                graph._nodes[node.id] = node
                graph._children[node.id] = []
            graph.head = data.get("head")
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptGraphError(
                f"Session graph does not parse: {e}", session_id=data.get("session_id")
            ) from e

        for node in graph._nodes.values():
            if node.parent_id is not None and node.parent_id in graph._children:
                graph._children[node.parent_id].append(node.id)

        graph.check_invariants()
        graph._refresh_flags()
        return graph


# ============================================================================
# Persistence
# ============================================================================


def validate_session_id(session_id: str) -> SessionId:
    """Session ids become file names; reject anything path-like."""
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return SessionId(session_id)


class GraphStore:
    """One JSON document per session, with optimistic revision checks.

        <root>/sessions/<session_id>.json
    """

    def __init__(self, root: Path, io_retries: int = 3, io_backoff_seconds: float = 0.05):
        self.root = Path(root) / "sessions"
        self.io_retries = io_retries
        self.io_backoff_seconds = io_backoff_seconds
        self._write_lock = threading.Lock()

    def path_for(self, session_id: str) -> Path:
        return self.root / f"{validate_session_id(session_id)}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).is_file()

    def _read_document(self, session_id: str) -> dict[str, Any] | None:
        path = self.path_for(session_id)
        try:
            content = retry_io(
                path.read_text,
                attempts=self.io_retries,
                backoff_seconds=self.io_backoff_seconds,
                description=f"read session {session_id}",
                session_id=session_id,
            )
        except FileNotFoundError:
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise CorruptGraphError(f"Session graph does not parse: {e}", session_id=session_id) from e
        if not isinstance(data, dict):
            raise CorruptGraphError("Session graph is not a mapping", session_id=session_id)
        return data

    def load(self, session_id: str) -> CheckpointGraph:
        """Load a session graph, or an empty one if the session is new."""
        data = self._read_document(session_id)
        if data is None:
            return CheckpointGraph(validate_session_id(session_id))
        graph = CheckpointGraph.from_dict(data)
        if graph.session_id != session_id:
            raise CorruptGraphError(
                "Session graph belongs to another session",
                session_id=session_id,
                found=graph.session_id,
            )
        return graph

    def current_revision(self, session_id: str) -> int:
        data = self._read_document(session_id)
        return int(data.get("revision", 0)) if data else 0

    def save(self, graph: CheckpointGraph, expected_revision: int) -> int:
        """Persist graph if nobody else wrote since expected_revision.

        Returns:
            The new revision

        Raises:
            ConcurrentMutationConflict: the stored revision moved
        """
        with self._write_lock:
            on_disk = self.current_revision(graph.session_id)
            if on_disk != expected_revision:
                raise ConcurrentMutationConflict(
                    "Session graph changed since it was read",
                    session_id=graph.session_id,
                    expected_revision=expected_revision,
                    found_revision=on_disk,
                )

            graph.check_invariants()
            new_revision = expected_revision + 1
            document = graph.to_dict()
            document["revision"] = new_revision
            path = self.path_for(graph.session_id)

            def write() -> None:
                result = atomic_write_json(path, document, indent=2)
                if result.is_err():
                    info = result.unwrap_err()
                    if info.code == "JSON_SERIALIZATION_FAILED":
                        raise from_info(info)
                    raise OSError(info.message)

            retry_io(
                write,
                attempts=self.io_retries,
                backoff_seconds=self.io_backoff_seconds,
                description=f"write session {graph.session_id}",
                session_id=graph.session_id,
            )

        graph.revision = new_revision
        return new_revision

    def list_sessions(self) -> list[SessionId]:
        if not self.root.exists():
            return []
        return sorted(
            SessionId(p.stem) for p in self.root.glob("*.json") if SESSION_ID_RE.match(p.stem)
        )
