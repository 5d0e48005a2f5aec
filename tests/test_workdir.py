"""Tests for turnpoint.workdir module."""

import hashlib
import os
import stat
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from turnpoint.errors import IOFailure
from turnpoint.workdir import (
    FileHashCache,
    hash_working_tree,
    materialize,
    read_working_tree,
    scan_files,
)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small non-git project."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('hi')\n")
    (root / "README.md").write_text("# Project\n")
    return root


class TestScanFiles:
    """Tests for scan_files() without git."""

    def test_lists_relative_posix_paths(self, project: Path):
        assert scan_files(project) == ["README.md", "src/app.py"]

    def test_always_exclude_directories(self, project: Path):
        (project / "node_modules" / "lib").mkdir(parents=True)
        (project / "node_modules" / "lib" / "index.js").write_text("x")
        (project / ".turnpoint").mkdir()
        (project / ".turnpoint" / "config.yaml").write_text("_version: 1\n")

        assert scan_files(project) == ["README.md", "src/app.py"]

    def test_custom_excludes(self, project: Path):
        (project / "dist").mkdir()
        (project / "dist" / "bundle.js").write_text("x")

        assert "dist/bundle.js" not in scan_files(project, always_exclude=["dist"])
        assert "dist/bundle.js" in scan_files(project, always_exclude=[])

    def test_gitignore_patterns(self, project: Path):
        (project / ".gitignore").write_text("# comment\n*.log\nbuild/\n")
        (project / "debug.log").write_text("noise")
        (project / "build").mkdir()
        (project / "build" / "out.txt").write_text("x")

        files = scan_files(project)

        assert "debug.log" not in files
        assert "build/out.txt" not in files
        assert ".gitignore" in files

    def test_nested_gitignore_is_scoped_to_its_directory(self, project: Path):
        (project / "src" / ".gitignore").write_text("*.tmp\ngenerated/\n")
        (project / "src" / "cache.tmp").write_text("x")
        (project / "src" / "generated").mkdir()
        (project / "src" / "generated" / "out.py").write_text("x")
        (project / "top.tmp").write_text("kept, rule lives in src/")

        files = scan_files(project)

        assert "src/cache.tmp" not in files
        assert "src/generated/out.py" not in files
        assert "top.tmp" in files
        assert "src/.gitignore" in files

    def test_nested_negation_overrides_parent(self, project: Path):
        (project / ".gitignore").write_text("*.log\n")
        (project / "src" / ".gitignore").write_text("!keep.log\n")
        (project / "src" / "keep.log").write_text("x")
        (project / "src" / "drop.log").write_text("x")

        files = scan_files(project)

        assert "src/keep.log" in files
        assert "src/drop.log" not in files

    def test_uses_git_listing_when_available(self, project: Path):
        with patch("turnpoint.workdir.list_project_files", return_value=["a.py", "node_modules/x.js"]):
            assert scan_files(project) == ["a.py"]


class TestReadWorkingTree:
    """Tests for read_working_tree()."""

    def test_reads_bytes(self, project: Path):
        tree = read_working_tree(project)

        assert tree == {"README.md": b"# Project\n", "src/app.py": b"print('hi')\n"}

    def test_skips_large_files(self, project: Path):
        (project / "big.bin").write_bytes(b"x" * 100)

        assert "big.bin" not in read_working_tree(project, max_file_size=50)

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_skips_symlinks(self, project: Path):
        (project / "link.py").symlink_to(project / "src" / "app.py")

        assert "link.py" not in read_working_tree(project)


class TestMaterialize:
    """Tests for materialize()."""

    def test_writes_new_files(self, tmp_path: Path):
        result = materialize(tmp_path, {"a.txt": b"A", "deep/b.txt": b"B"})

        assert (tmp_path / "a.txt").read_bytes() == b"A"
        assert (tmp_path / "deep" / "b.txt").read_bytes() == b"B"
        assert result.written == ("a.txt", "deep/b.txt")

    def test_skips_unchanged(self, tmp_path: Path):
        (tmp_path / "a.txt").write_bytes(b"same")
        mtime = (tmp_path / "a.txt").stat().st_mtime_ns

        result = materialize(tmp_path, {"a.txt": b"same"})

        assert result.unchanged == ("a.txt",)
        assert result.written == ()
        assert (tmp_path / "a.txt").stat().st_mtime_ns == mtime

    def test_deletes_stale_files(self, tmp_path: Path):
        (tmp_path / "keep.txt").write_bytes(b"old")
        (tmp_path / "stale.txt").write_bytes(b"bye")

        result = materialize(tmp_path, {"keep.txt": b"new"}, current_paths=["keep.txt", "stale.txt", "gone.txt"])

        assert not (tmp_path / "stale.txt").exists()
        assert (tmp_path / "keep.txt").read_bytes() == b"new"
        assert result.deleted == ("stale.txt",)

    def test_rejects_escaping_paths(self, tmp_path: Path):
        with pytest.raises(ValueError):
            materialize(tmp_path, {"../outside.txt": b"x"})

    def test_no_temp_files_left(self, tmp_path: Path):
        materialize(tmp_path, {"a.txt": b"A"})

        assert [p.name for p in tmp_path.iterdir()] == ["a.txt"]

    def test_staging_failure_leaves_directory_untouched(self, tmp_path: Path):
        (tmp_path / "a.txt").write_bytes(b"original")
        real_mkstemp = tempfile.mkstemp
        calls = {"n": 0}

        def flaky_mkstemp(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OSError("disk full")
            return real_mkstemp(*args, **kwargs)

        with patch("turnpoint.workdir.tempfile.mkstemp", side_effect=flaky_mkstemp):
            with pytest.raises(IOFailure):
                materialize(tmp_path, {"a.txt": b"changed", "b.txt": b"new"})

        assert (tmp_path / "a.txt").read_bytes() == b"original"
        assert not (tmp_path / "b.txt").exists()
        assert [p.name for p in tmp_path.iterdir()] == ["a.txt"]

    def test_file_replaced_by_directory(self, tmp_path: Path):
        (tmp_path / "a").write_bytes(b"now a file")

        result = materialize(tmp_path, {"a/b.txt": b"B"}, current_paths=["a"])

        assert (tmp_path / "a" / "b.txt").read_bytes() == b"B"
        assert result.written == ("a/b.txt",)
        assert result.deleted == ("a",)

    def test_untracked_file_blocking_a_directory(self, tmp_path: Path):
        (tmp_path / "a").write_bytes(b"ignored leftover")

        materialize(tmp_path, {"a/b/c.txt": b"C"})

        assert (tmp_path / "a" / "b" / "c.txt").read_bytes() == b"C"

    def test_directory_replaced_by_file(self, tmp_path: Path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "x.txt").write_bytes(b"x")

        result = materialize(tmp_path, {"a": b"A", "z.txt": b"Z"}, current_paths=["a/x.txt"])

        assert (tmp_path / "a").read_bytes() == b"A"
        assert (tmp_path / "z.txt").read_bytes() == b"Z"
        assert "a" in result.deleted
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a", "z.txt"]

    def test_commit_failure_raises_and_cleans_up(self, tmp_path: Path):
        real_replace = os.replace
        calls = {"n": 0}

        def flaky_replace(src, dst):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OSError("device gone")
            return real_replace(src, dst)

        with patch("turnpoint.workdir.os.replace", side_effect=flaky_replace):
            with pytest.raises(IOFailure, match="after 1 of 2"):
                materialize(tmp_path, {"a.txt": b"A", "b.txt": b"B"})

        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.txt"]

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_keeps_existing_mode(self, tmp_path: Path):
        script = tmp_path / "run.sh"
        script.write_bytes(b"#!/bin/sh\n")
        script.chmod(0o755)

        materialize(tmp_path, {"run.sh": b"#!/bin/sh\necho hi\n"})

        assert stat.S_IMODE(script.stat().st_mode) == 0o755

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_new_files_follow_umask(self, tmp_path: Path):
        old_mask = os.umask(0o022)
        try:
            materialize(tmp_path, {"new.txt": b"x"})
        finally:
            os.umask(old_mask)

        assert stat.S_IMODE((tmp_path / "new.txt").stat().st_mode) == 0o644


def _age_tree(root: Path, seconds: float = 3600) -> None:
    old = time.time() - seconds
    for path in root.rglob("*"):
        if path.is_file():
            os.utime(path, (old, old))


class TestHashWorkingTree:
    """Tests for hash_working_tree() and FileHashCache."""

    def test_hashes_match_content(self, project: Path):
        scan = hash_working_tree(project)

        assert scan.hashes == {
            "README.md": hashlib.sha256(b"# Project\n").hexdigest(),
            "src/app.py": hashlib.sha256(b"print('hi')\n").hexdigest(),
        }
        assert scan.read_paths == ["README.md", "src/app.py"]

    def test_unchanged_files_are_not_read_again(self, project: Path):
        _age_tree(project)
        cache = FileHashCache()
        hash_working_tree(project, cache)

        scan = hash_working_tree(project, cache)

        assert len(cache) == 2
        assert scan.read_paths == []
        assert scan.load("README.md") == b"# Project\n"

    def test_changed_file_is_read(self, project: Path):
        _age_tree(project)
        cache = FileHashCache()
        hash_working_tree(project, cache)
        (project / "src" / "app.py").write_text("print('changed')\n")

        scan = hash_working_tree(project, cache)

        assert scan.read_paths == ["src/app.py"]
        assert scan.hashes["src/app.py"] == hashlib.sha256(b"print('changed')\n").hexdigest()

    def test_recently_modified_files_are_not_cached(self, project: Path):
        cache = FileHashCache()
        hash_working_tree(project, cache)

        scan = hash_working_tree(project, cache)

        assert len(cache) == 0
        assert scan.read_paths == ["README.md", "src/app.py"]

    def test_load_of_vanished_file(self, project: Path):
        _age_tree(project)
        cache = FileHashCache()
        hash_working_tree(project, cache)
        scan = hash_working_tree(project, cache)
        (project / "README.md").unlink()

        with pytest.raises(IOFailure):
            scan.load("README.md")
