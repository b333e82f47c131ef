"""
Pytest configuration for the pma-up tests.
"""

from __future__ import annotations

import logging
import shutil
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from pma_up.updates.backends import ArchiveDownloader, ReleaseDescriptor, ReleaseFetcher

ZipEntries = dict[str, bytes | str | None]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


def write_zip(path: Path, entries: ZipEntries, modes: dict[str, int] | None = None) -> Path:
    """
    Write a zip archive.

    Args:
        path: Archive path.
        entries: Entry name -> content; None (or a trailing "/") makes a
            directory entry.
        modes: Optional Unix permission bits per entry name.
    """
    modes = modes or {}
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            if content is None or name.endswith("/"):
                info = zipfile.ZipInfo(name if name.endswith("/") else f"{name}/")
                info.external_attr = (0o40000 | modes.get(name, 0o755)) << 16
                archive.writestr(info, b"")
                continue

            info = zipfile.ZipInfo(name)
            info.compress_type = zipfile.ZIP_DEFLATED
            if name in modes:
                info.external_attr = (0o100000 | modes[name]) << 16
            data = content.encode() if isinstance(content, str) else content
            archive.writestr(info, data)
    return path


@pytest.fixture
def make_zip(tmp_path: Path) -> Callable[..., Path]:
    """Build zip archives under a private directory of tmp_path."""
    archives_dir = tmp_path / "_archives"
    archives_dir.mkdir()

    def _make(
        entries: ZipEntries,
        name: str = "release.zip",
        modes: dict[str, int] | None = None,
    ) -> Path:
        return write_zip(archives_dir / name, entries, modes)

    return _make


class StubReleaseFetcher(ReleaseFetcher):
    """Returns a fixed release, or raises a fixed error."""

    def __init__(
        self,
        release: ReleaseDescriptor | None = None,
        error: Exception | None = None,
    ) -> None:
        self.release = release or ReleaseDescriptor(
            version="5.2.2",
            release_date="2025-01-21",
            archive_url="https://files.example.test/phpMyAdmin-5.2.2-all-languages.zip",
        )
        self.error = error
        self.calls = 0

    def fetch_latest_release(self) -> ReleaseDescriptor:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.release


class StubArchiveDownloader(ArchiveDownloader):
    """Copies a local archive into the destination directory in place of a download."""

    def __init__(self, archive: Path | None = None, error: Exception | None = None) -> None:
        self.archive = archive
        self.error = error
        self.downloads: list[tuple[str, Path, str]] = []

    def download(self, url: str, destination_dir: Path, version: str) -> Path:
        self.downloads.append((url, Path(destination_dir), version))
        if self.error is not None:
            raise self.error
        assert self.archive is not None
        target = Path(destination_dir) / f"phpMyAdmin-{version}-all-languages.zip"
        shutil.copyfile(self.archive, target)
        return target


def snapshot_tree(root: Path) -> dict[str, tuple[str, bytes | None, int]]:
    """Map each relative path under *root* to (kind, content, mode bits)."""
    result: dict[str, tuple[str, bytes | None, int]] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        mode = path.lstat().st_mode & 0o7777
        if path.is_symlink():
            result[relative] = ("link", str(path.readlink()).encode(), 0)
        elif path.is_dir():
            result[relative] = ("dir", None, mode)
        else:
            result[relative] = ("file", path.read_bytes(), mode)
    return result


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Remove handlers installed on the pma_up logger by a test."""
    yield
    logger = logging.getLogger("pma_up")
    logger.handlers.clear()
    logger.propagate = True
