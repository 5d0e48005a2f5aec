"""Tree store: per-checkpoint manifests mapping file path to blob hash.

A tree is serialized canonically (keys sorted, no whitespace, UTF-8) and
identified by the SHA-256 of that serialization. Two trees holding the same
(path, blob hash) pairs therefore always share one hash, whatever order the
mapping was built in.

    <root>/trees/<tree_hash>.json
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
import threading
from collections.abc import Iterator, Mapping
from pathlib import Path

from turnpoint.atomic import atomic_write_bytes
from turnpoint.blobs import HASH_RE, freshen, hash_bytes, validate_hash
from turnpoint.errors import CorruptTreeError, NotFoundError, retry_io
from turnpoint.types import BlobHash, TreeHash

logger = logging.getLogger(__name__)

TREE_SUFFIX = ".json"
DRIVE_RE = re.compile(r"^[A-Za-z]:(/|$)")


def normalize_path(path: str) -> str:
    """Normalize a relative file path to forward-slash form.

    Raises:
        ValueError: for empty, absolute, or parent-escaping paths
    """
    if not isinstance(path, str) or not path:
        raise ValueError(f"Invalid path: {path!r}")

    normalized = path.replace("\\", "/")
    if normalized.startswith("/") or DRIVE_RE.match(normalized):
        raise ValueError(f"Path must be relative: {path!r}")

    normalized = posixpath.normpath(normalized)
    if normalized in ("", ".") or normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"Path escapes the project root: {path!r}")
    return normalized


def canonical_tree_bytes(mapping: Mapping[str, str]) -> bytes:
    """Deterministic serialization used for both hashing and storage."""
    return json.dumps(
        {k: mapping[k] for k in sorted(mapping)},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_tree_hash(mapping: Mapping[str, str]) -> TreeHash:
    return TreeHash(hash_bytes(canonical_tree_bytes(mapping)))


def normalize_tree(mapping: Mapping[str, str]) -> dict[str, BlobHash]:
    """Normalize keys and validate values of a path → blob hash mapping."""
    tree: dict[str, BlobHash] = {}
    for raw_path, blob_hash in mapping.items():
        path = normalize_path(raw_path)
        if path in tree:
            raise ValueError(f"Duplicate path after normalization: {raw_path!r}")
        tree[path] = BlobHash(validate_hash(blob_hash))
    return tree


class TreeStore:
    """Write-once storage for tree manifests."""

    def __init__(self, root: Path, io_retries: int = 3, io_backoff_seconds: float = 0.05):
        self.root = Path(root) / "trees"
        self.io_retries = io_retries
        self.io_backoff_seconds = io_backoff_seconds

        # Physical writes only; put-if-absent hits are not counted
        self.writes = 0
        self._writes_lock = threading.Lock()

    def path_for(self, tree_hash: str) -> Path:
        validate_hash(tree_hash, kind="tree")
        return self.root / f"{tree_hash}{TREE_SUFFIX}"

    def exists(self, tree_hash: str) -> bool:
        return self.path_for(tree_hash).is_file()

    def write(self, mapping: Mapping[str, str]) -> TreeHash:
        """Persist a mapping and return its tree hash.

        Idempotent: an existing tree is not rewritten, only its mtime is
        refreshed.
        """
        tree = normalize_tree(mapping)
        content = canonical_tree_bytes(tree)
        tree_hash = TreeHash(hash_bytes(content))
        path = self.path_for(tree_hash)
        if freshen(path):
            return tree_hash

        def write() -> None:
            result = atomic_write_bytes(path, content, mode=0o644)
            if result.is_err():
                raise OSError(result.unwrap_err().message)

        retry_io(
            write,
            attempts=self.io_retries,
            backoff_seconds=self.io_backoff_seconds,
            description=f"write tree {tree_hash[:12]}",
            tree_hash=tree_hash,
        )

        with self._writes_lock:
            self.writes += 1
        logger.debug(f"Stored tree {tree_hash[:12]} ({len(tree)} files)")
        return tree_hash

    def read(self, tree_hash: str) -> dict[str, BlobHash]:
        """Load a tree mapping.

        Raises:
            NotFoundError: no tree with this hash
            CorruptTreeError: document is malformed or does not match its hash
        """
        path = self.path_for(tree_hash)
        try:
            content = retry_io(
                path.read_bytes,
                attempts=self.io_retries,
                backoff_seconds=self.io_backoff_seconds,
                description=f"read tree {tree_hash[:12]}",
                tree_hash=tree_hash,
            )
        except FileNotFoundError as e:
            raise NotFoundError("Tree not found", tree_hash=tree_hash) from e

        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptTreeError(f"Tree document does not parse: {e}", tree_hash=tree_hash) from e

        if not isinstance(data, dict):
            raise CorruptTreeError("Tree document is not a mapping", tree_hash=tree_hash)
        for path_key, blob_hash in data.items():
            if not isinstance(blob_hash, str) or not HASH_RE.match(blob_hash):
                raise CorruptTreeError(
                    "Tree entry has an invalid blob hash", tree_hash=tree_hash, path=path_key
                )

        if hash_bytes(canonical_tree_bytes(data)) != tree_hash:
            raise CorruptTreeError("Tree content does not match its hash", tree_hash=tree_hash)
        return {k: BlobHash(v) for k, v in data.items()}

    def delete(self, tree_hash: str) -> bool:
        """Remove a tree. Only garbage collection should call this."""
        try:
            self.path_for(tree_hash).unlink()
        except FileNotFoundError:
            return False
        return True

    def iter_hashes(self) -> Iterator[TreeHash]:
        if not self.root.exists():
            return
        for path in sorted(self.root.glob(f"*{TREE_SUFFIX}")):
            name = path.name[: -len(TREE_SUFFIX)]
            if HASH_RE.match(name):
                yield TreeHash(name)
