"""Tests for turnpoint.atomic module."""

import json
import os
import stat
import threading
from pathlib import Path

import pytest
import yaml

from turnpoint.atomic import (
    atomic_write_bytes,
    atomic_write_json,
    atomic_write_text,
    atomic_write_yaml,
)


class TestAtomicWriteBytes:
    """Tests for atomic_write_bytes()."""

    def test_creates_file(self, tmp_path: Path):
        """atomic_write_bytes creates a new file with exact bytes."""
        file_path = tmp_path / "blob.bin"

        result = atomic_write_bytes(file_path, b"\x00\x01binary\xff")

        assert result.is_ok()
        assert result.unwrap() == file_path
        assert file_path.read_bytes() == b"\x00\x01binary\xff"

    def test_overwrites_existing_file(self, tmp_path: Path):
        file_path = tmp_path / "blob.bin"
        file_path.write_bytes(b"old")

        result = atomic_write_bytes(file_path, b"new")

        assert result.is_ok()
        assert file_path.read_bytes() == b"new"

    def test_creates_parent_directories(self, tmp_path: Path):
        file_path = tmp_path / "ab" / "cd" / "blob.bin"

        result = atomic_write_bytes(file_path, b"content")

        assert result.is_ok()
        assert file_path.read_bytes() == b"content"

    def test_sets_default_permissions(self, tmp_path: Path):
        """atomic_write_bytes sets 0o600 permissions by default."""
        file_path = tmp_path / "blob.bin"

        atomic_write_bytes(file_path, b"content")

        mode = file_path.stat().st_mode
        assert mode & stat.S_IRWXU == stat.S_IRUSR | stat.S_IWUSR
        assert mode & stat.S_IRWXG == 0
        assert mode & stat.S_IRWXO == 0

    def test_sets_custom_permissions(self, tmp_path: Path):
        file_path = tmp_path / "blob.bin"

        atomic_write_bytes(file_path, b"content", mode=0o644)

        mode = file_path.stat().st_mode
        assert mode & stat.S_IRGRP == stat.S_IRGRP
        assert mode & stat.S_IROTH == stat.S_IROTH

    def test_fsync_option(self, tmp_path: Path):
        file_path = tmp_path / "blob.bin"

        result = atomic_write_bytes(file_path, b"durable", fsync=True)

        assert result.is_ok()
        assert file_path.read_bytes() == b"durable"

    def test_returns_error_on_permission_denied(self, tmp_path: Path):
        """atomic_write_bytes returns Err instead of raising."""
        if os.name == "nt" or os.geteuid() == 0:
            pytest.skip("Permission test needs a non-root POSIX user")

        read_only_dir = tmp_path / "readonly"
        read_only_dir.mkdir(mode=0o555)
        try:
            result = atomic_write_bytes(read_only_dir / "blob.bin", b"content")

            assert result.is_err()
            error = result.unwrap_err()
            assert "PERMISSION" in error.code or "WRITE_FAILED" in error.code
            assert error.context["path"].endswith("blob.bin")
        finally:
            read_only_dir.chmod(0o755)

    def test_no_temp_files_left(self, tmp_path: Path):
        atomic_write_bytes(tmp_path / "blob.bin", b"content")

        assert list(tmp_path.glob(".*tmp")) == []


class TestAtomicWriteText:
    """Tests for atomic_write_text()."""

    def test_writes_utf8(self, tmp_path: Path):
        file_path = tmp_path / "test.txt"
        content = "Hello 世界"

        result = atomic_write_text(file_path, content)

        assert result.is_ok()
        assert file_path.read_bytes() == content.encode("utf-8")

    def test_handles_empty_content(self, tmp_path: Path):
        file_path = tmp_path / "test.txt"

        result = atomic_write_text(file_path, "")

        assert result.is_ok()
        assert file_path.read_text() == ""


class TestAtomicWriteJson:
    """Tests for atomic_write_json()."""

    def test_creates_json_file(self, tmp_path: Path):
        file_path = tmp_path / "test.json"
        data = {"key": "value", "number": 42}

        result = atomic_write_json(file_path, data)

        assert result.is_ok()
        assert json.loads(file_path.read_text()) == data

    def test_compact_json_with_no_indent(self, tmp_path: Path):
        file_path = tmp_path / "test.json"

        atomic_write_json(file_path, {"a": 1, "b": 2}, indent=None)

        assert "\n" not in file_path.read_text().strip()

    def test_sort_keys(self, tmp_path: Path):
        file_path = tmp_path / "test.json"

        atomic_write_json(file_path, {"z": 1, "a": 2}, indent=None, sort_keys=True)

        assert file_path.read_text() == '{"a": 2, "z": 1}'

    def test_handles_non_serializable_data(self, tmp_path: Path):
        """atomic_write_json returns error for non-serializable data."""
        file_path = tmp_path / "test.json"

        result = atomic_write_json(file_path, {"func": lambda x: x})

        assert result.is_err()
        assert result.unwrap_err().code == "JSON_SERIALIZATION_FAILED"
        assert not file_path.exists()

    def test_preserves_unicode(self, tmp_path: Path):
        file_path = tmp_path / "test.json"

        atomic_write_json(file_path, {"message": "Hello 世界"})

        assert json.loads(file_path.read_text())["message"] == "Hello 世界"


class TestAtomicWriteYaml:
    """Tests for atomic_write_yaml()."""

    def test_creates_yaml_file(self, tmp_path: Path):
        file_path = tmp_path / "config.yaml"
        data = {"max_file_size": 1024, "always_exclude": [".git", "dist"]}

        result = atomic_write_yaml(file_path, data)

        assert result.is_ok()
        assert yaml.safe_load(file_path.read_text()) == data

    def test_handles_non_serializable_data(self, tmp_path: Path):
        class CustomObject:
            pass

        result = atomic_write_yaml(tmp_path / "config.yaml", {"obj": CustomObject()})

        assert result.is_err()
        assert result.unwrap_err().code == "YAML_SERIALIZATION_FAILED"

    def test_keeps_insertion_order(self, tmp_path: Path):
        file_path = tmp_path / "config.yaml"

        atomic_write_yaml(file_path, {"z": 1, "a": 2})

        lines = file_path.read_text().strip().split("\n")
        assert lines[0].startswith("z:")
        assert lines[1].startswith("a:")


class TestAtomicWriteConcurrency:
    """Tests for concurrent atomic write operations."""

    def test_survives_concurrent_writes(self, tmp_path: Path):
        """Concurrent writers of one path all succeed; one value remains."""
        file_path = tmp_path / "concurrent.bin"
        results: list[bool] = []
        errors: list[str] = []

        def write_content(index: int):
            try:
                results.append(atomic_write_bytes(file_path, f"content-{index}".encode()).is_ok())
            except Exception as e:
                errors.append(f"Thread {index}: {e}")

        threads = [threading.Thread(target=write_content, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(results), f"Some writes failed: {errors}"
        content = file_path.read_bytes().decode()
        assert content.startswith("content-")
        assert int(content.split("-")[1]) in range(10)
        assert list(tmp_path.glob(".*tmp")) == []
