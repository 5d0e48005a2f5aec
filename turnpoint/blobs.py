"""Content-addressed blob store.

Each distinct file content is stored once, gzip-compressed, under the SHA-256
of its *uncompressed* bytes:

    <root>/blobs/<hash[0:2]>/<hash>.gz

The hash is computed before compression, so the key never depends on the
compression level. gzip headers are written with a zero mtime, making the
stored bytes a pure function of content and level.

Blobs are never modified once written. Removal happens only through garbage
collection (see turnpoint.maintenance), never as part of capture or restore.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import re
import threading
import zlib
from collections.abc import Iterator
from pathlib import Path

from turnpoint.atomic import atomic_write_bytes
from turnpoint.errors import CorruptBlobError, NotFoundError, retry_io
from turnpoint.types import BlobHash

logger = logging.getLogger(__name__)

HASH_RE = re.compile(r"^[0-9a-f]{64}$")
BLOB_SUFFIX = ".gz"


def hash_bytes(content: bytes) -> str:
    """SHA-256 hex digest of content."""
    return hashlib.sha256(content).hexdigest()


def freshen(path: Path) -> bool:
    """Bump the mtime of a stored object, returning False if it is gone.

    A dedup hit counts as a fresh write for the garbage collector's age check.
    """
    try:
        os.utime(path)
    except FileNotFoundError:
        return False
    return True


def validate_hash(value: str, kind: str = "blob") -> str:
    """Reject anything that is not a 64-char lowercase hex digest.

    Hashes become path components, so this also guards against traversal.
    """
    if not isinstance(value, str) or not HASH_RE.match(value):
        raise ValueError(f"Invalid {kind} hash: {value!r}")
    return value


class BlobStore:
    """Compressed, sharded, write-once storage keyed by content hash."""

    def __init__(
        self,
        root: Path,
        compression_level: int = 6,
        io_retries: int = 3,
        io_backoff_seconds: float = 0.05,
    ):
        self.root = Path(root) / "blobs"
        self.compression_level = compression_level
        self.io_retries = io_retries
        self.io_backoff_seconds = io_backoff_seconds

        # Physical writes only; dedup hits are not counted
        self.writes = 0
        self._writes_lock = threading.Lock()

    def path_for(self, blob_hash: str) -> Path:
        validate_hash(blob_hash)
        return self.root / blob_hash[:2] / f"{blob_hash}{BLOB_SUFFIX}"

    def exists(self, blob_hash: str) -> bool:
        """Check for a blob without reading it."""
        return self.path_for(blob_hash).is_file()

    def put(self, content: bytes) -> BlobHash:
        """Store content and return its hash.

        Idempotent: if a blob with this hash exists, nothing is written and
        only its mtime is refreshed.
        """
        blob_hash = hash_bytes(content)
        path = self.path_for(blob_hash)
        if freshen(path):
            return BlobHash(blob_hash)

        compressed = gzip.compress(content, compresslevel=self.compression_level, mtime=0)

        def write() -> None:
            result = atomic_write_bytes(path, compressed, mode=0o644)
            if result.is_err():
                raise OSError(result.unwrap_err().message)

        retry_io(
            write,
            attempts=self.io_retries,
            backoff_seconds=self.io_backoff_seconds,
            description=f"write blob {blob_hash[:12]}",
            hash=blob_hash,
        )

        with self._writes_lock:
            self.writes += 1
        logger.debug(f"Stored blob {blob_hash[:12]} ({len(content)} -> {len(compressed)} bytes)")
        return BlobHash(blob_hash)

    def get(self, blob_hash: str) -> bytes:
        """Return the original bytes for a hash.

        Raises:
            NotFoundError: no blob with this hash
            CorruptBlobError: stored data does not decompress to matching content
        """
        path = self.path_for(blob_hash)

        try:
            compressed = retry_io(
                path.read_bytes,
                attempts=self.io_retries,
                backoff_seconds=self.io_backoff_seconds,
                description=f"read blob {blob_hash[:12]}",
                hash=blob_hash,
            )
        except FileNotFoundError as e:
            raise NotFoundError("Blob not found", hash=blob_hash) from e

        try:
            content = gzip.decompress(compressed)
        except (OSError, EOFError, zlib.error) as e:
            raise CorruptBlobError(f"Blob does not decompress: {e}", hash=blob_hash) from e

        if hash_bytes(content) != blob_hash:
            raise CorruptBlobError("Blob content does not match its hash", hash=blob_hash)
        return content

    def delete(self, blob_hash: str) -> bool:
        """Remove a blob. Only garbage collection should call this."""
        path = self.path_for(blob_hash)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        try:
            path.parent.rmdir()
        except OSError:
            # Shard directory still holds other blobs
            pass
        return True

    def iter_hashes(self) -> Iterator[BlobHash]:
        """Yield every stored blob hash."""
        if not self.root.exists():
            return
        for shard in sorted(self.root.iterdir()):
            if not shard.is_dir():
                continue
            for path in sorted(shard.glob(f"*{BLOB_SUFFIX}")):
                name = path.name[: -len(BLOB_SUFFIX)]
                if HASH_RE.match(name):
                    yield BlobHash(name)
