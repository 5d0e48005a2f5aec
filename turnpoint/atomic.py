"""Atomic file write utilities for Turnpoint.

Provides atomic write operations that prevent data corruption on crash.
Uses the temp file + rename pattern which is atomic on POSIX systems, so a
reader sees either the old file or the complete new one, never a prefix.
Two writers racing on the same path both succeed; the last rename wins.

All functions return Result types for explicit error handling.

Security:
- Files are created with 0o600 permissions by default
- Parent directories are created with 0o700 permissions
- Temp files are cleaned up on failure
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from turnpoint.errors import Err, ErrorInfo, Ok, Result

logger = logging.getLogger(__name__)


def atomic_write_bytes(
    path: Path,
    content: bytes,
    mode: int = 0o600,
    fsync: bool = False,
) -> Result[Path, ErrorInfo]:
    """Atomically write binary content to a file.

    Creates parent directories if they don't exist.

    Args:
        path: Target file path
        content: Bytes to write
        mode: File permissions (default 0o600 - owner read/write only)
        fsync: Flush to stable storage before the rename

    Returns:
        Ok(path) on success, Err(ErrorInfo) on failure
    """
    path = Path(path)
    temp_path: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # Temp file must live in the same directory for rename to be atomic
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=f"{path.suffix}.tmp",
        )

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                if fsync:
                    f.flush()
                    os.fsync(f.fileno())

            os.chmod(temp_path, mode)
            os.replace(temp_path, path)

            logger.debug(f"Atomic write complete: {path}")
            return Ok(path)

        except Exception:
            _cleanup_temp(temp_path)
            raise

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            ErrorInfo(
                code="ATOMIC_PERMISSION_DENIED",
                message=f"Permission denied writing to {path}",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            ErrorInfo(
                code="ATOMIC_WRITE_FAILED",
                message=f"Failed to write {path}: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
) -> Result[Path, ErrorInfo]:
    """Atomically write UTF-8 text content to a file."""
    return atomic_write_bytes(path, content.encode("utf-8"), mode)


def atomic_write_json(
    path: Path,
    data: Any,
    mode: int = 0o600,
    indent: int | None = 2,
    sort_keys: bool = False,
) -> Result[Path, ErrorInfo]:
    """Atomically write JSON data to a file.

    Args:
        path: Target file path
        data: Data to serialize as JSON
        mode: File permissions (default 0o600)
        indent: JSON indentation (default 2, None for compact)
        sort_keys: Sort object keys

    Returns:
        Ok(path) on success, Err(ErrorInfo) on failure
    """
    try:
        content = json.dumps(data, indent=indent, sort_keys=sort_keys, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization failed: {e}")
        return Err(
            ErrorInfo(
                code="JSON_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to JSON: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o600,
) -> Result[Path, ErrorInfo]:
    """Atomically write YAML data to a file.

    Uses yaml.safe_dump for security (no arbitrary Python objects).
    """
    try:
        content = yaml.safe_dump(
            data,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed: {e}")
        return Err(
            ErrorInfo(
                code="YAML_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to YAML: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def _cleanup_temp(temp_path: str | None) -> None:
    """Clean up temporary file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Best effort - temp file may already be gone
        pass
