"""Reading and writing a project's working directory.

Scanning respects ignore rules in two ways:

1. Git repository: ``git ls-files`` (exact gitignore semantics)
2. Otherwise: walk the tree and filter with every ``.gitignore`` found on
   the way via pathspec (gitwildmatch). Each file's rules apply to its own
   directory and below, and deeper files override shallower ones.

Either way, ``always_exclude`` directories (``.git``, ``node_modules``,
``.turnpoint`` by default) are never captured.

``hash_working_tree`` consults a ``FileHashCache`` so unchanged files (same
mtime and size) are not read again on every capture.

``materialize`` writes a restored file set in two phases. Every file is first
staged into one temp directory inside the project; a staging failure leaves
the project untouched. Only then are stale paths removed and staged files
renamed into place, replacing any file that sits where a directory must go
and any directory that sits where a file must go.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
import threading
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pathspec

from turnpoint.blobs import hash_bytes
from turnpoint.config import DEFAULT_EXCLUDES
from turnpoint.errors import IOFailure
from turnpoint.git import list_project_files
from turnpoint.trees import normalize_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
STAGING_PREFIX = ".turnpoint-restore-"

# Files modified this recently may change again within one timestamp tick
RACY_WINDOW_NS = 2_000_000_000


@dataclass(frozen=True)
class MaterializeResult:
    """Outcome of writing a file set to disk."""

    written: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()


# ============================================================================
# Scanning
# ============================================================================


def _is_excluded(relative_path: str, always_exclude: Iterable[str]) -> bool:
    excluded = set(always_exclude)
    return any(part in excluded for part in relative_path.split("/")[:-1])


def _build_ignore_spec(directory: Path) -> pathspec.PathSpec | None:
    """Load one directory's .gitignore as a PathSpec, if it has rules."""
    gitignore = directory / ".gitignore"
    if not gitignore.is_file():
        return None

    patterns: list[str] = []
    for line in gitignore.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.rstrip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    if not patterns:
        return None
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


class IgnoreRules:
    """Per-directory .gitignore rules collected during a walk.

    Each spec is scoped to the directory holding its .gitignore. Rules are
    evaluated root first, and the last matching pattern decides, so a
    nested ``!pattern`` can re-include what a parent ignored.
    """

    def __init__(self):
        self._specs: dict[str, pathspec.PathSpec] = {}

    def load(self, project_path: Path, scope: str) -> None:
        spec = _build_ignore_spec(project_path / scope if scope else project_path)
        if spec is not None:
            self._specs[scope] = spec

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        candidate = f"{relative_path}/" if is_dir else relative_path
        ignored = False
        for scope, spec in self._specs.items():
            if scope:
                if not relative_path.startswith(f"{scope}/"):
                    continue
                local = candidate[len(scope) + 1 :]
            else:
                local = candidate
            for pattern in spec.patterns:
                if pattern.include is not None and pattern.match_file(local) is not None:
                    ignored = pattern.include
        return ignored


def _walk_files(project_path: Path, always_exclude: Iterable[str]) -> list[str]:
    rules = IgnoreRules()
    excluded = set(always_exclude)
    files: list[str] = []

    # Top-down walk: a directory's rules load before any of its children
    for dirpath, dirnames, filenames in os.walk(project_path):
        rel_dir = Path(dirpath).relative_to(project_path).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir
        rules.load(project_path, rel_dir)

        # Prune excluded and ignored directories in place
        kept = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if name in excluded or rules.is_ignored(rel, is_dir=True):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if not rules.is_ignored(rel):
                files.append(rel)

    return sorted(files)


def scan_files(project_path: Path, always_exclude: Iterable[str] = DEFAULT_EXCLUDES) -> list[str]:
    """List snapshot-eligible files as normalized relative paths."""
    project_path = Path(project_path)
    always_exclude = tuple(always_exclude)

    files = list_project_files(project_path)
    if files is None:
        files = _walk_files(project_path, always_exclude)

    return [f for f in files if not _is_excluded(f, always_exclude)]


def _eligible_files(
    project_path: Path,
    max_file_size: int,
    always_exclude: Iterable[str],
) -> Iterator[tuple[str, Path, os.stat_result]]:
    """Yield (normalized path, full path, stat) for regular files within the size limit."""
    for relative in scan_files(project_path, always_exclude):
        full_path = project_path / relative
        try:
            st = full_path.lstat()
        except OSError as e:
            logger.warning(f"Could not stat {relative}: {e}")
            continue
        if not stat.S_ISREG(st.st_mode):
            continue
        if st.st_size > max_file_size:
            logger.warning(f"Skipping large file: {relative} ({st.st_size} bytes)")
            continue
        yield normalize_path(relative), full_path, st


def read_working_tree(
    project_path: Path,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    always_exclude: Iterable[str] = DEFAULT_EXCLUDES,
) -> dict[str, bytes]:
    """Read every eligible file into a path -> bytes mapping.

    Files above max_file_size, symlinks and unreadable files are skipped
    with a warning.
    """
    project_path = Path(project_path)
    tree: dict[str, bytes] = {}

    for path, full_path, _ in _eligible_files(project_path, max_file_size, always_exclude):
        try:
            tree[path] = full_path.read_bytes()
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")

    return tree


# ============================================================================
# Hash cache
# ============================================================================


class FileHashCache:
    """Content hashes keyed by absolute file path.

    An entry is only trusted while the file's mtime_ns and size match what
    was recorded. Files modified within RACY_WINDOW_NS of being hashed are
    not cached, since a second write in the same tick would go unnoticed.
    """

    def __init__(self):
        self._entries: dict[str, tuple[int, int, str]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, path: Path, st: os.stat_result) -> str | None:
        with self._lock:
            entry = self._entries.get(str(path))
        if entry is None:
            return None
        mtime_ns, size, digest = entry
        if mtime_ns != st.st_mtime_ns or size != st.st_size:
            return None
        return digest

    def store(self, path: Path, st: os.stat_result, digest: str) -> None:
        key = str(path)
        with self._lock:
            if time.time_ns() - st.st_mtime_ns < RACY_WINDOW_NS:
                self._entries.pop(key, None)
                return
            self._entries[key] = (st.st_mtime_ns, st.st_size, digest)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass
class WorkingTreeScan:
    """Content hashes of a project's files.

    ``contents`` holds the bytes of every file read during the scan. Files
    answered from the cache are only read if ``load`` asks for them.
    """

    project_path: Path
    hashes: dict[str, str] = field(default_factory=dict)
    contents: dict[str, bytes] = field(default_factory=dict)

    @property
    def read_paths(self) -> list[str]:
        return sorted(self.contents)

    def load(self, path: str) -> bytes:
        content = self.contents.get(path)
        if content is None:
            try:
                content = (self.project_path / path).read_bytes()
            except OSError as e:
                raise IOFailure(f"Could not read {path}: {e}", path=path) from e
            self.contents[path] = content
        return content


def hash_working_tree(
    project_path: Path,
    hash_cache: FileHashCache | None = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    always_exclude: Iterable[str] = DEFAULT_EXCLUDES,
) -> WorkingTreeScan:
    """Hash every eligible file, reading only those the cache cannot answer."""
    project_path = Path(project_path)
    scan = WorkingTreeScan(project_path)

    for path, full_path, st in _eligible_files(project_path, max_file_size, always_exclude):
        digest = hash_cache.lookup(full_path, st) if hash_cache is not None else None
        if digest is None:
            try:
                content = full_path.read_bytes()
            except OSError as e:
                logger.warning(f"Could not read {path}: {e}")
                continue
            digest = hash_bytes(content)
            scan.contents[path] = content
            if hash_cache is not None:
                hash_cache.store(full_path, st, digest)
        scan.hashes[path] = digest

    if hash_cache is not None:
        logger.debug(f"Hashed {project_path}: {len(scan.hashes)} files, {len(scan.contents)} read")
    return scan


# ============================================================================
# Materialize
# ============================================================================


def _resolve_inside(project_path: Path, relative: str) -> Path:
    root = project_path.resolve()
    target = (root / normalize_path(relative)).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Path escapes the project root: {relative!r}")
    return target


def _default_file_mode() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return 0o666 & ~mask


def _file_mode(target: Path, default: int) -> int:
    """Mode for a restored file: keep an existing file's mode, else the umask default."""
    try:
        st = target.lstat()
    except (FileNotFoundError, NotADirectoryError):
        return default
    if stat.S_ISREG(st.st_mode):
        return stat.S_IMODE(st.st_mode)
    return default


def _clear_blockers(root: Path, target: Path) -> list[str]:
    """Remove non-directories on target's parent chain, and a directory at target."""
    removed: list[str] = []
    current = root
    for part in target.relative_to(root).parts[:-1]:
        current = current / part
        if os.path.lexists(current) and (current.is_symlink() or not current.is_dir()):
            current.unlink()
            removed.append(current.relative_to(root).as_posix())
            break

    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
        removed.append(target.relative_to(root).as_posix())
    return removed


def materialize(
    project_path: Path,
    files: Mapping[str, bytes],
    current_paths: Iterable[str] = (),
) -> MaterializeResult:
    """Make the project directory match ``files``.

    Paths in ``current_paths`` that are absent from ``files`` are deleted.
    Files whose content already matches are left untouched. Rewritten files
    keep their current permission bits; new files get ``0o666 & ~umask``.

    Raises:
        IOFailure: staging failed and the working directory was not modified,
            or the commit phase failed part way
        ValueError: a path escapes the project root
    """
    project_path = Path(project_path)
    targets = {path: _resolve_inside(project_path, path) for path in files}
    root = project_path.resolve()

    to_write: dict[str, bytes] = {}
    unchanged: list[str] = []
    for path, content in files.items():
        target = targets[path]
        try:
            if target.is_file() and not target.is_symlink() and target.read_bytes() == content:
                unchanged.append(path)
                continue
        except OSError:
            # Unreadable target: rewrite it
            pass
        to_write[path] = content

    stale = []
    for path in current_paths:
        path = normalize_path(path)
        if path not in files:
            stale.append((path, _resolve_inside(project_path, path)))

    if not to_write and not stale:
        return MaterializeResult(unchanged=tuple(sorted(unchanged)))

    default_mode = _default_file_mode()
    staged: dict[str, str] = {}
    staging_dir: str | None = None
    try:
        # Phase 1: stage everything; any failure leaves the project untouched
        try:
            root.mkdir(parents=True, exist_ok=True)
            staging_dir = tempfile.mkdtemp(dir=root, prefix=STAGING_PREFIX)
            for path, content in to_write.items():
                fd, temp_path = tempfile.mkstemp(dir=staging_dir, suffix=".restore")
                staged[path] = temp_path
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                os.chmod(temp_path, _file_mode(targets[path], default_mode))
        except OSError as e:
            raise IOFailure(f"Could not stage restored files: {e}", project=str(project_path)) from e

        # Phase 2: commit
        deleted: list[str] = []
        for path, target in stale:
            try:
                target.unlink()
                deleted.append(path)
            except (FileNotFoundError, NotADirectoryError):
                continue
            except OSError as e:
                logger.warning(f"Could not delete {path}: {e}")

        written: list[str] = []
        try:
            for path, temp_path in staged.items():
                target = targets[path]
                deleted.extend(_clear_blockers(root, target))
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(temp_path, target)
                written.append(path)
        except OSError as e:
            raise IOFailure(
                f"Restore stopped after {len(written)} of {len(staged)} files: {e}",
                project=str(project_path),
                path=path,
            ) from e
    finally:
        if staging_dir is not None:
            shutil.rmtree(staging_dir, ignore_errors=True)

    logger.debug(
        f"Materialized {project_path}: {len(written)} written, "
        f"{len(unchanged)} unchanged, {len(deleted)} deleted"
    )
    return MaterializeResult(tuple(sorted(written)), tuple(sorted(unchanged)), tuple(sorted(set(deleted))))
