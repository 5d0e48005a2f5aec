"""Line-level diff statistics between two file snapshots.

A snapshot is a mapping of relative path to file bytes. For each path the
engine decides a status and counts changed lines the way ``git diff --stat``
reports them:

- added: every line of the new content is an insertion
- deleted: every line of the old content is a deletion
- modified: insertions = len(new) - LCS, deletions = len(old) - LCS,
  where LCS is the longest common subsequence of the two line arrays

Byte-identical files are not reported at all.

Known scaling limit: LCS is O(n*m) per file. Shared leading and trailing
lines are trimmed first, which covers the common case of a localized edit.
When the remaining table would exceed ``max_cells`` the count falls back to
a multiset approximation, which never underestimates the common lines.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

DEFAULT_MAX_CELLS = 4_000_000

FileStatus = Literal["added", "modified", "deleted"]


@dataclass(frozen=True)
class ChangeStats:
    """Aggregate change counts between two snapshots."""

    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def summary(self) -> str:
        """Human-readable summary like '+142 -67 across 5 files'."""
        if not self.files_changed:
            return "no changes"
        noun = "file" if self.files_changed == 1 else "files"
        return f"+{self.insertions} -{self.deletions} across {self.files_changed} {noun}"

    def to_dict(self) -> dict:
        return {
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
        }


@dataclass(frozen=True)
class FileDiff:
    """Change record for a single path."""

    path: str
    status: FileStatus
    insertions: int
    deletions: int

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "status": self.status,
            "insertions": self.insertions,
            "deletions": self.deletions,
        }


def split_lines(content: bytes) -> list[bytes]:
    """Split content into lines of raw bytes.

    CRLF is normalized to LF. A terminal newline does not produce an extra
    empty line, so "a\\nb\\n" and "a\\nb" both have two lines. Lines are
    never decoded, so invalid UTF-8 and binary content compare exactly.
    """
    if not content:
        return []
    lines = content.replace(b"\r\n", b"\n").split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    return lines


def count_lines(content: bytes) -> int:
    return len(split_lines(content))


def lcs_length(a: Sequence[Hashable], b: Sequence[Hashable], max_cells: int = DEFAULT_MAX_CELLS) -> int:
    """Length of the longest common subsequence of two line arrays."""
    # Shared prefix and suffix are always part of an LCS
    prefix = 0
    limit = min(len(a), len(b))
    while prefix < limit and a[prefix] == b[prefix]:
        prefix += 1

    suffix = 0
    while suffix < limit - prefix and a[len(a) - 1 - suffix] == b[len(b) - 1 - suffix]:
        suffix += 1

    a_mid = a[prefix : len(a) - suffix]
    b_mid = b[prefix : len(b) - suffix]
    common = prefix + suffix

    if not a_mid or not b_mid:
        return common

    if len(a_mid) * len(b_mid) > max_cells:
        logger.debug(
            f"LCS table {len(a_mid)}x{len(b_mid)} exceeds {max_cells} cells, approximating"
        )
        counts_a = Counter(a_mid)
        counts_b = Counter(b_mid)
        return common + sum(min(n, counts_b[line]) for line, n in counts_a.items())

    # Iterate over the shorter side in the inner loop to keep rows small
    if len(b_mid) > len(a_mid):
        a_mid, b_mid = b_mid, a_mid

    previous = [0] * (len(b_mid) + 1)
    for line_a in a_mid:
        current = [0] * (len(b_mid) + 1)
        for j, line_b in enumerate(b_mid, start=1):
            if line_a == line_b:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous = current

    return common + previous[-1]


def line_diff(old: bytes, new: bytes, max_cells: int = DEFAULT_MAX_CELLS) -> tuple[int, int]:
    """Return (insertions, deletions) between two versions of one file."""
    old_lines = split_lines(old)
    new_lines = split_lines(new)
    common = lcs_length(old_lines, new_lines, max_cells)
    return len(new_lines) - common, len(old_lines) - common


def diff_snapshots_detailed(
    old: Mapping[str, bytes],
    new: Mapping[str, bytes],
    max_cells: int = DEFAULT_MAX_CELLS,
) -> list[FileDiff]:
    """Per-file changes between two snapshots, sorted by path."""
    diffs: list[FileDiff] = []

    for path, new_content in new.items():
        old_content = old.get(path)
        if old_content is None:
            diffs.append(FileDiff(path, "added", count_lines(new_content), 0))
        elif old_content != new_content:
            insertions, deletions = line_diff(old_content, new_content, max_cells)
            diffs.append(FileDiff(path, "modified", insertions, deletions))

    for path, old_content in old.items():
        if path not in new:
            diffs.append(FileDiff(path, "deleted", 0, count_lines(old_content)))

    diffs.sort(key=lambda d: d.path)
    return diffs


def summarize(diffs: Sequence[FileDiff]) -> ChangeStats:
    return ChangeStats(
        files_changed=len(diffs),
        insertions=sum(d.insertions for d in diffs),
        deletions=sum(d.deletions for d in diffs),
    )


def diff_snapshots(
    old: Mapping[str, bytes],
    new: Mapping[str, bytes],
    max_cells: int = DEFAULT_MAX_CELLS,
) -> ChangeStats:
    """Aggregate files changed, insertions and deletions between two snapshots."""
    return summarize(diff_snapshots_detailed(old, new, max_cells))
