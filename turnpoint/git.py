"""Git CLI helpers for working tree scanning.

Used to list the files a project considers part of its source:
tracked files plus untracked files that are not ignored.

All functions gracefully handle non-git directories by returning None.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


def _run_git(args: list[str], cwd: Path | None = None, strip: bool = True, timeout: int = 30) -> str | None:
    """Run a git command and return stdout, or None on failure.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (defaults to current)
        strip: Strip surrounding whitespace from stdout
        timeout: Seconds before the command is abandoned

    Returns:
        Stdout string on success, None on failure
    """
    try:
        # Security: shell=False (default), args are internal constants
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
        if result.returncode == 0:
            return result.stdout.strip() if strip else result.stdout
        return None
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"Git command failed: {e}")
        return None


def is_git_repo(path: Path | None = None) -> bool:
    """Check if path is inside a git repository."""
    return _run_git(["rev-parse", "--git-dir"], cwd=path) is not None


def list_project_files(path: Path) -> list[str] | None:
    """List tracked and untracked-but-not-ignored files, relative to path.

    Only used when path itself is a repository root, so paths from
    ``git ls-files`` are already relative to the project.

    Returns:
        Sorted relative paths, or None if git is unavailable or path is
        not a repository root
    """
    if not (path / ".git").exists():
        return None

    output = _run_git(
        ["ls-files", "-z", "--cached", "--others", "--exclude-standard"],
        cwd=path,
        strip=False,
    )
    if output is None:
        return None

    files = sorted({entry for entry in output.split("\0") if entry})
    logger.debug(f"Git scan found {len(files)} files in {path}")
    return files
