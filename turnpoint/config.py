"""Configuration management for Turnpoint.

Storage Structure
-----------------
~/.turnpoint/                 # User-level (override with TURNPOINT_HOME)
├── config.yaml               # User defaults
└── store/                    # Default snapshot store
    ├── blobs/ab/<hash>.gz    # Compressed file contents, sharded by prefix
    ├── trees/<hash>.json     # Tree manifests (path -> blob hash)
    └── sessions/<id>.json    # Checkpoint graph per session

<project>/.turnpoint/         # Project-level
└── config.yaml               # Overrides user config for this project

Cascade: project .turnpoint/config.yaml → user ~/.turnpoint/config.yaml → defaults
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

TURNPOINT_DIR = Path(os.environ.get("TURNPOINT_HOME", Path.home() / ".turnpoint"))
CONFIG_FILENAME = "config.yaml"
PROJECT_DIRNAME = ".turnpoint"

# Directories never captured, whatever .gitignore says
DEFAULT_EXCLUDES = (".git", "node_modules", PROJECT_DIRNAME)


@dataclass
class SnapshotConfig:
    """Tunable parameters for capture, diffing and storage I/O."""

    # Store root; None means TURNPOINT_DIR / "store"
    storage_dir: str | None = None

    # Capture
    max_file_size: int = 5 * 1024 * 1024
    always_exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))

    # Storage
    compression_level: int = 6

    # Diff: above this many LCS cells the engine approximates
    diff_max_cells: int = 4_000_000

    # Transient I/O failures
    io_retries: int = 3
    io_backoff_seconds: float = 0.05

    @property
    def store_path(self) -> Path:
        if self.storage_dir:
            return Path(self.storage_dir).expanduser()
        return TURNPOINT_DIR / "store"

    @classmethod
    def load(cls, config_dir: Path) -> "SnapshotConfig":
        """Load config from a directory containing config.yaml.

        Returns:
            SnapshotConfig with values from file, or defaults if not found
        """
        config_path = config_dir / CONFIG_FILENAME
        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            return cls()

        # Only apply known fields
        valid_fields = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in overrides.items() if k in valid_fields})

    def save(self, config_dir: Path) -> Path:
        """Save non-default values to config_dir/config.yaml.

        Returns:
            Path to saved config file
        """
        from turnpoint.atomic import atomic_write_yaml
        from turnpoint.errors import from_info

        config_path = config_dir / CONFIG_FILENAME

        defaults = SnapshotConfig()
        data = {k: v for k, v in self.to_dict().items() if getattr(defaults, k) != v}
        if not data:
            data = {"_version": 1}

        result = atomic_write_yaml(config_path, data)
        if result.is_err():
            raise from_info(result.unwrap_err())
        return config_path

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def get_config(project_path: Path | None = None) -> SnapshotConfig:
    """Load SnapshotConfig with project → user → default cascade.

    Args:
        project_path: Explicit project path. If None, auto-detects.
    """
    if project_path is None:
        project_path = detect_project_root()

    if project_path is not None:
        project_dir = project_path / PROJECT_DIRNAME
        if (project_dir / CONFIG_FILENAME).exists():
            return SnapshotConfig.load(project_dir)

    return SnapshotConfig.load(TURNPOINT_DIR)


def detect_project_root(start_path: Path | None = None) -> Path | None:
    """Walk up from start_path looking for a .turnpoint or .git marker.

    Stops at the home directory. Returns None when no marker is found.
    """
    current = (start_path or Path.cwd()).resolve()
    home = Path.home()

    while True:
        if (current / PROJECT_DIRNAME).is_dir() or (current / ".git").exists():
            return current
        if current == home or current == current.parent:
            return None
        current = current.parent
