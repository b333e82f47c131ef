"""
Tests for directory relocation and file copy operations.

Tests cover:
- PathMover same-volume renames
- PathMover cross-device copy + delete fallback
- PathMover error classification
- FileCopier
- Workspace helpers
"""

from __future__ import annotations

import errno
import io
import os
import tempfile
from pathlib import Path
from typing import IO

import pytest
from conftest import snapshot_tree

from pma_up.errors import FailedPreconditionError
from pma_up.filesystem import FakeFilesystem
from pma_up.updates.operations import (
    CrossDeviceCopyError,
    FileCopier,
    FilesystemError,
    NotRegularFileError,
    PathMover,
    SourceCleanupError,
    SourceMissingError,
    create_scratch_workspace,
    ensure_directory,
    safe_remove_directory,
)


def _exdev() -> OSError:
    return OSError(errno.EXDEV, "Invalid cross-device link")


def _build_tree(root: Path) -> Path:
    """Create a small installation-like tree under *root*."""
    root.mkdir()
    (root / "index.php").write_text("<?php echo 'hi';")
    (root / "index.php").chmod(0o644)
    (root / "config.inc.php").write_text("secret")
    (root / "config.inc.php").chmod(0o640)
    (root / "bin").mkdir(mode=0o755)
    (root / "bin" / "tool.sh").write_text("#!/bin/sh\necho tool\n")
    (root / "bin" / "tool.sh").chmod(0o755)
    (root / "libraries" / "classes" / "Deep").mkdir(parents=True)
    (root / "libraries" / "classes" / "Deep" / "Thing.php").write_bytes(b"\x00\x01binary")
    (root / "libraries" / "private").mkdir(mode=0o700)
    (root / "libraries" / "private" / "key").write_text("k")
    (root / "empty").mkdir()
    (root / "link-to-index").symlink_to("index.php")
    return root


# =============================================================================
# PathMover: same volume
# =============================================================================


class TestPathMoverRename:
    """Tests for PathMover when a plain rename works."""

    def test_move_reproduces_tree(self, tmp_path: Path) -> None:
        """Test that the moved tree is identical and the source is gone."""
        source = _build_tree(tmp_path / "pma")
        before = snapshot_tree(source)
        destination = tmp_path / "pma_backup_1"

        PathMover().move(source, destination)

        assert not source.exists()
        assert snapshot_tree(destination) == before

    def test_same_volume_never_copies(self, tmp_path: Path) -> None:
        """Test that a successful rename does not touch the copy primitives."""
        source = _build_tree(tmp_path / "pma")
        fs = FakeFilesystem()

        PathMover(fs).move(source, tmp_path / "moved")

        assert fs.count("rename") == 1
        assert fs.count("walk") == 0
        assert fs.count("copy_stream") == 0
        assert fs.count("remove_tree") == 0

    def test_injected_rename_short_circuits(self, tmp_path: Path) -> None:
        """Test that an injected always-succeeding rename is the only call made."""
        source = _build_tree(tmp_path / "pma")
        renamed: list[tuple[Path, Path]] = []
        fs = FakeFilesystem()
        fs.override("rename", lambda src, dst: renamed.append((src, dst)))

        PathMover(fs).move(source, tmp_path / "moved")

        assert renamed == [(source, tmp_path / "moved")]
        assert [name for name, _ in fs.calls] == ["exists", "rename"]

    def test_accepts_string_paths(self, tmp_path: Path) -> None:
        """Test that str paths are accepted."""
        source = _build_tree(tmp_path / "pma")

        PathMover().move(str(source), str(tmp_path / "moved"))

        assert (tmp_path / "moved" / "index.php").exists()

    def test_move_single_file(self, tmp_path: Path) -> None:
        """Test that a regular file can be moved as well."""
        source = tmp_path / "file.txt"
        source.write_text("data")

        PathMover().move(source, tmp_path / "renamed.txt")

        assert (tmp_path / "renamed.txt").read_text() == "data"
        assert not source.exists()


# =============================================================================
# PathMover: cross-device fallback
# =============================================================================


class TestPathMoverCrossDevice:
    """Tests for the copy + delete fallback."""

    def test_fallback_matches_rename_result(self, tmp_path: Path) -> None:
        """Test that the fallback produces the same tree as a rename."""
        source = _build_tree(tmp_path / "pma")
        before = snapshot_tree(source)
        destination = tmp_path / "other-device" / "pma"
        destination.parent.mkdir()
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())

        PathMover(fs).move(source, destination)

        assert not source.exists()
        assert snapshot_tree(destination) == before
        assert fs.count("walk") >= 1
        assert fs.count("remove_tree") == 1

    def test_fallback_preserves_permission_bits(self, tmp_path: Path) -> None:
        """Test that file and directory modes survive the copy."""
        source = _build_tree(tmp_path / "pma")
        destination = tmp_path / "copied"
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())

        PathMover(fs).move(source, destination)

        assert (destination / "config.inc.php").stat().st_mode & 0o777 == 0o640
        assert (destination / "bin" / "tool.sh").stat().st_mode & 0o777 == 0o755
        assert (destination / "libraries" / "private").stat().st_mode & 0o777 == 0o700

    def test_fallback_recreates_symlinks(self, tmp_path: Path) -> None:
        """Test that symlinks are recreated rather than dereferenced."""
        source = _build_tree(tmp_path / "pma")
        destination = tmp_path / "copied"
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())

        PathMover(fs).move(source, destination)

        link = destination / "link-to-index"
        assert link.is_symlink()
        assert os.readlink(link) == "index.php"

    def test_fallback_copies_empty_directories(self, tmp_path: Path) -> None:
        """Test that the walk visits directories without files."""
        source = _build_tree(tmp_path / "pma")
        destination = tmp_path / "copied"
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())

        PathMover(fs).move(source, destination)

        assert (destination / "empty").is_dir()
        assert list((destination / "empty").iterdir()) == []

    def test_copy_failure_keeps_source(self, tmp_path: Path) -> None:
        """Test that a failed copy raises and leaves the source intact."""
        source = _build_tree(tmp_path / "pma")
        before = snapshot_tree(source)
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())
        fs.fail_on("copy_stream", OSError(errno.EIO, "Input/output error"), skip=1)

        with pytest.raises(CrossDeviceCopyError) as exc_info:
            PathMover(fs).move(source, tmp_path / "copied")

        assert exc_info.value.error_code == "cross_device_copy_failed"
        assert isinstance(exc_info.value.__cause__, OSError)
        assert snapshot_tree(source) == before
        assert fs.count("remove_tree") == 0

    def test_walk_failure_aborts_copy(self, tmp_path: Path) -> None:
        """Test that an error listing a subdirectory aborts the whole copy."""
        source = _build_tree(tmp_path / "pma")
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())
        fs.fail_on(
            "list_dir",
            PermissionError(errno.EACCES, "Permission denied"),
            path="libraries",
        )

        with pytest.raises(CrossDeviceCopyError):
            PathMover(fs).move(source, tmp_path / "copied")

        assert source.exists()

    def test_destination_create_failure(self, tmp_path: Path) -> None:
        """Test that failing to create a mirrored file aborts the copy."""
        source = _build_tree(tmp_path / "pma")
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())
        fs.fail_on("open_write", OSError(errno.ENOSPC, "No space left on device"))

        with pytest.raises(CrossDeviceCopyError, match="No space left"):
            PathMover(fs).move(source, tmp_path / "copied")

    def test_cleanup_failure_is_distinct(self, tmp_path: Path) -> None:
        """Test that a failed source removal reports duplication."""
        source = _build_tree(tmp_path / "pma")
        before = snapshot_tree(source)
        destination = tmp_path / "copied"
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())
        fs.fail_on("remove_tree", PermissionError(errno.EACCES, "Permission denied"))

        with pytest.raises(SourceCleanupError) as exc_info:
            PathMover(fs).move(source, destination)

        assert exc_info.value.error_code == "source_cleanup_failed"
        assert snapshot_tree(source) == before
        assert snapshot_tree(destination) == before


# =============================================================================
# PathMover: errors
# =============================================================================


class TestPathMoverErrors:
    """Tests for PathMover error reporting."""

    def test_missing_source(self, tmp_path: Path) -> None:
        """Test that a missing source is rejected before any rename."""
        fs = FakeFilesystem()

        with pytest.raises(SourceMissingError) as exc_info:
            PathMover(fs).move(tmp_path / "nope", tmp_path / "dest")

        assert exc_info.value.error_code == "source_missing"
        assert exc_info.value.details["source"] == str(tmp_path / "nope")
        assert fs.count("rename") == 0

    def test_permission_error_does_not_fall_back(self, tmp_path: Path) -> None:
        """Test that non cross-device rename errors surface immediately."""
        source = _build_tree(tmp_path / "pma")
        fs = FakeFilesystem()
        fs.fail_on("rename", PermissionError(errno.EACCES, "Permission denied"))

        with pytest.raises(FilesystemError) as exc_info:
            PathMover(fs).move(source, tmp_path / "dest")

        assert exc_info.value.error_code == "destination_unwritable"
        assert exc_info.value.details["errno"] == errno.EACCES
        assert fs.count("walk") == 0
        assert source.exists()

    def test_disk_full_is_classified(self, tmp_path: Path) -> None:
        """Test that ENOSPC maps to filesystem_full."""
        source = _build_tree(tmp_path / "pma")
        fs = FakeFilesystem()
        fs.fail_on("rename", OSError(errno.ENOSPC, "No space left on device"))

        with pytest.raises(FilesystemError) as exc_info:
            PathMover(fs).move(source, tmp_path / "dest")

        assert exc_info.value.error_code == "filesystem_full"

    def test_missing_destination_parent(self, tmp_path: Path) -> None:
        """Test a real rename into a directory that does not exist."""
        source = _build_tree(tmp_path / "pma")

        with pytest.raises(FilesystemError) as exc_info:
            PathMover().move(source, tmp_path / "missing" / "dest")

        assert exc_info.value.error_code == "move_failed"
        assert source.exists()

    def test_non_empty_destination(self, tmp_path: Path) -> None:
        """Test that a rename onto a populated directory fails without copying."""
        source = _build_tree(tmp_path / "pma")
        destination = tmp_path / "dest"
        destination.mkdir()
        (destination / "keep.txt").write_text("keep")

        with pytest.raises(FilesystemError):
            PathMover().move(source, destination)

        assert (destination / "keep.txt").read_text() == "keep"
        assert (source / "index.php").exists()

    def test_cross_device_onto_existing_destination(self, tmp_path: Path) -> None:
        """Test that the copy fallback never merges into an existing destination."""
        source = _build_tree(tmp_path / "pma")
        before = snapshot_tree(source)
        destination = tmp_path / "dest"
        destination.mkdir()
        (destination / "index.php").write_text("precious")
        fs = FakeFilesystem()
        fs.fail_on("rename", _exdev())

        with pytest.raises(FilesystemError) as exc_info:
            PathMover(fs).move(source, destination)

        assert exc_info.value.error_code == "destination_exists"
        assert (destination / "index.php").read_text() == "precious"
        assert sorted(p.name for p in destination.iterdir()) == ["index.php"]
        assert snapshot_tree(source) == before
        assert fs.count("walk") == 0
        assert fs.count("remove_tree") == 0


# =============================================================================
# FileCopier
# =============================================================================


class TestFileCopier:
    """Tests for FileCopier."""

    def test_copy_content_and_mode(self, tmp_path: Path) -> None:
        """Test that bytes and permission bits are copied."""
        source = tmp_path / "config.inc.php"
        source.write_bytes(b"<?php $cfg['blowfish_secret'] = 'x';\n")
        source.chmod(0o600)
        destination = tmp_path / "copy.php"

        FileCopier().copy_file(source, destination)

        assert destination.read_bytes() == source.read_bytes()
        assert destination.stat().st_mode & 0o777 == 0o600

    def test_copy_truncates_existing_destination(self, tmp_path: Path) -> None:
        """Test that a longer existing destination is fully replaced."""
        source = tmp_path / "src"
        source.write_text("short")
        destination = tmp_path / "dst"
        destination.write_text("a much longer placeholder value")

        FileCopier().copy_file(source, destination)

        assert destination.read_text() == "short"

    def test_copy_large_file(self, tmp_path: Path) -> None:
        """Test that files larger than one copy chunk are complete."""
        data = os.urandom(3 * 1024 * 1024 + 17)
        source = tmp_path / "big.bin"
        source.write_bytes(data)

        FileCopier().copy_file(source, tmp_path / "big.copy")

        assert (tmp_path / "big.copy").read_bytes() == data

    def test_missing_source(self, tmp_path: Path) -> None:
        """Test that a missing source raises SourceMissingError."""
        with pytest.raises(SourceMissingError):
            FileCopier().copy_file(tmp_path / "nope", tmp_path / "dst")

        assert not (tmp_path / "dst").exists()

    def test_directory_source_rejected(self, tmp_path: Path) -> None:
        """Test that a directory source is rejected without writing."""
        source = tmp_path / "dir"
        source.mkdir()
        fs = FakeFilesystem()

        with pytest.raises(NotRegularFileError) as exc_info:
            FileCopier(fs).copy_file(source, tmp_path / "dst")

        assert exc_info.value.error_code == "source_not_regular_file"
        assert fs.count("open_write") == 0
        assert not (tmp_path / "dst").exists()

    def test_symlink_to_directory_rejected(self, tmp_path: Path) -> None:
        """Test that a symlink pointing at a directory is not a regular file."""
        target = tmp_path / "dir"
        target.mkdir()
        link = tmp_path / "link"
        link.symlink_to(target)

        with pytest.raises(NotRegularFileError):
            FileCopier().copy_file(link, tmp_path / "dst")

    def test_destination_create_failure(self, tmp_path: Path) -> None:
        """Test that an uncreatable destination is reported."""
        source = tmp_path / "src"
        source.write_text("data")

        with pytest.raises(FilesystemError) as exc_info:
            FileCopier().copy_file(source, tmp_path / "missing-dir" / "dst")

        assert exc_info.value.error_code == "destination_create_failed"

    def test_interrupted_copy_leaves_partial_file(self, tmp_path: Path) -> None:
        """Test that an I/O error mid-copy is reported and the file is kept."""
        source = tmp_path / "src"
        source.write_text("data")
        destination = tmp_path / "dst"
        fs = FakeFilesystem()
        fs.fail_on("copy_stream", OSError(errno.EIO, "Input/output error"))

        with pytest.raises(FilesystemError) as exc_info:
            FileCopier(fs).copy_file(source, destination)

        assert exc_info.value.error_code == "copy_interrupted"

    def test_failed_close_is_interrupted_copy(self, tmp_path: Path) -> None:
        """Test that a flush failure on close is reported as copy_interrupted."""

        class FullDiskFile(io.BytesIO):
            def close(self) -> None:
                if not self.closed:
                    super().close()
                    raise OSError(errno.ENOSPC, "No space left on device")

        source = tmp_path / "src"
        source.write_text("data")
        destination = tmp_path / "dst"
        fs = FakeFilesystem()
        fs.override("open_write", lambda path, mode: FullDiskFile())

        with pytest.raises(FilesystemError) as exc_info:
            FileCopier(fs).copy_file(source, destination)

        assert exc_info.value.error_code == "copy_interrupted"
        assert "No space left" in exc_info.value.message
        assert destination.exists()

    def test_handles_closed_on_error(self, tmp_path: Path) -> None:
        """Test that both files are closed when the copy fails."""
        source = tmp_path / "src"
        source.write_text("data")
        opened: list[IO[bytes]] = []
        fs = FakeFilesystem()

        def tracking_open_read(path: Path) -> IO[bytes]:
            f = open(path, "rb")
            opened.append(f)
            return f

        def tracking_open_write(path: Path, mode: int) -> IO[bytes]:
            f = open(path, "wb")
            opened.append(f)
            return f

        fs.override("open_read", tracking_open_read)
        fs.override("open_write", tracking_open_write)
        fs.fail_on("copy_stream", OSError(errno.EIO, "Input/output error"))

        with pytest.raises(FilesystemError):
            FileCopier(fs).copy_file(source, tmp_path / "dst")

        assert len(opened) == 2
        assert all(f.closed for f in opened)


# =============================================================================
# Workspace helpers
# =============================================================================


class TestEnsureDirectory:
    """Tests for ensure_directory function."""

    def test_create_nested_directories(self) -> None:
        """Test creating nested directories."""
        with tempfile.TemporaryDirectory() as tmpdir:
            nested_dir = Path(tmpdir) / "level1" / "level2"
            result = ensure_directory(nested_dir)

            assert result == nested_dir
            assert nested_dir.is_dir()

    def test_existing_directory_unchanged(self) -> None:
        """Test that existing directory is not modified."""
        with tempfile.TemporaryDirectory() as tmpdir:
            existing_dir = Path(tmpdir) / "existing"
            existing_dir.mkdir()
            (existing_dir / "test.txt").touch()

            ensure_directory(existing_dir)

            assert (existing_dir / "test.txt").exists()

    def test_file_in_the_way_raises(self, tmp_path: Path) -> None:
        """Test that a file at the path raises FailedPreconditionError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("x")

        with pytest.raises(FailedPreconditionError):
            ensure_directory(blocker / "child")


class TestScratchWorkspace:
    """Tests for create_scratch_workspace and safe_remove_directory."""

    def test_workspaces_are_unique(self, tmp_path: Path) -> None:
        """Test that each call creates a new, empty directory."""
        first = create_scratch_workspace(tmp_path, "pma-up-")
        second = create_scratch_workspace(tmp_path, "pma-up-")

        assert first != second
        assert first.name.startswith("pma-up-")
        assert list(first.iterdir()) == []

    def test_missing_parent_raises(self, tmp_path: Path) -> None:
        """Test that an unusable parent raises FailedPreconditionError."""
        with pytest.raises(FailedPreconditionError):
            create_scratch_workspace(tmp_path / "missing")

    def test_remove_existing_directory(self, tmp_path: Path) -> None:
        """Test removing a populated directory."""
        target = tmp_path / "to_remove"
        (target / "nested").mkdir(parents=True)
        (target / "nested" / "file.txt").touch()

        assert safe_remove_directory(target) is True
        assert not target.exists()

    def test_remove_nonexistent_directory(self, tmp_path: Path) -> None:
        """Test removing a nonexistent directory returns False."""
        assert safe_remove_directory(tmp_path / "does_not_exist") is False
