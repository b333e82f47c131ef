"""
Zip archive extraction for pma-up.

ArchiveExtractor unpacks a release archive into a directory, entry by entry,
and refuses any entry whose normalized output path would land outside that
directory ("zip-slip": names such as ``../../etc/cron.d/x`` or absolute
paths). A traversal attempt aborts the whole extraction; it is never skipped.

Entries already written when a later entry fails are left in place; the
caller owns the destination directory and discards it on failure.
"""

from __future__ import annotations

import os
import stat
import zipfile
import zlib
from pathlib import Path
from typing import Any

from pma_up.errors import InvalidArgumentError, UpdateError
from pma_up.filesystem import Filesystem, RealFilesystem
from pma_up.logging import get_logger

logger = get_logger(__name__)

# Mode for file entries that carry no Unix permission bits (e.g. zipped on Windows)
DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755


class ExtractionError(UpdateError):
    """
    Error raised when an archive cannot be unpacked.

    ``error_code`` is one of: archive_open_failed, path_traversal,
    directory_create_failed, entry_open_failed, output_create_failed,
    decompress_copy_failed.
    """


class PathTraversalError(ExtractionError):
    """An archive entry would be written outside the destination directory."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("path_traversal", message, details)


def resolve_entry_path(destination_dir: Path, entry_name: str) -> Path:
    """
    Return the output path for *entry_name* under *destination_dir*.

    The path is normalized lexically (``..`` and ``.`` collapsed, absolute
    names honored as absolute) and must stay strictly inside the destination.

    Raises:
        PathTraversalError: If the normalized path escapes the destination.
    """
    base = os.path.normpath(os.path.abspath(destination_dir))
    candidate = os.path.normpath(os.path.join(base, entry_name))

    if candidate == base or not candidate.startswith(base + os.sep):
        raise PathTraversalError(
            f"Archive entry escapes destination directory: {candidate}",
            details={
                "entry": entry_name,
                "resolved_path": candidate,
                "destination": base,
            },
        )

    return Path(candidate)


def _entry_mode(info: zipfile.ZipInfo) -> int:
    """Return the permission bits stored for a file entry."""
    mode = stat.S_IMODE(info.external_attr >> 16)
    return mode or DEFAULT_FILE_MODE


class ArchiveExtractor:
    """
    Unpacks zip archives into a destination directory.

    Example:
        >>> extractor = ArchiveExtractor()
        >>> extractor.extract(Path("/tmp/pma-up-x/phpMyAdmin-5.2.2.zip"),
        ...                   Path("/tmp/pma-up-x/extracted"))
    """

    def __init__(self, filesystem: Filesystem | None = None) -> None:
        self._fs = filesystem or RealFilesystem()

    def extract(self, archive_path: Path | str, destination_dir: Path | str) -> int:
        """
        Extract every entry of *archive_path* into *destination_dir*.

        Args:
            archive_path: Path to a zip archive.
            destination_dir: Directory to unpack into.

        Returns:
            Number of entries extracted.

        Raises:
            InvalidArgumentError: If either argument is empty.
            PathTraversalError: If any entry would escape destination_dir.
            ExtractionError: For every other extraction failure.
        """
        if not archive_path:
            raise InvalidArgumentError("Archive path must not be empty")
        if not destination_dir:
            raise InvalidArgumentError("Destination directory must not be empty")

        archive_path = Path(archive_path)
        destination_dir = Path(destination_dir)

        try:
            archive_file = self._fs.open_read(archive_path)
        except OSError as e:
            raise ExtractionError(
                "archive_open_failed",
                f"Failed to open archive {archive_path}: {e}",
                details={"archive": str(archive_path), "error": str(e)},
            ) from e

        with archive_file:
            try:
                archive = zipfile.ZipFile(archive_file)
            except (zipfile.BadZipFile, OSError) as e:
                raise ExtractionError(
                    "archive_open_failed",
                    f"Failed to read zip archive {archive_path}: {e}",
                    details={"archive": str(archive_path), "error": str(e)},
                ) from e

            with archive:
                count = 0
                for info in archive.infolist():
                    self._extract_entry(archive, info, destination_dir)
                    count += 1

        logger.info(
            "Extracted archive",
            extra={
                "archive": str(archive_path),
                "destination": str(destination_dir),
                "entries": count,
            },
        )
        return count

    def _extract_entry(
        self,
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        destination_dir: Path,
    ) -> None:
        target = resolve_entry_path(destination_dir, info.filename)
        details = {"entry": info.filename, "path": str(target)}

        if info.is_dir():
            try:
                self._fs.make_dirs(target, DEFAULT_DIR_MODE)
            except OSError as e:
                raise ExtractionError(
                    "directory_create_failed",
                    f"Failed to create directory {target}: {e}",
                    details={**details, "error": str(e)},
                ) from e
            return

        try:
            self._fs.make_dirs(target.parent, DEFAULT_DIR_MODE)
        except OSError as e:
            raise ExtractionError(
                "directory_create_failed",
                f"Failed to create parent directories for {target}: {e}",
                details={**details, "error": str(e)},
            ) from e

        try:
            entry_file = archive.open(info)
        except (zipfile.BadZipFile, NotImplementedError, RuntimeError, OSError) as e:
            raise ExtractionError(
                "entry_open_failed",
                f"Failed to open archive entry {info.filename}: {e}",
                details={**details, "error": str(e)},
            ) from e

        with entry_file:
            try:
                output_file = self._fs.open_write(target, _entry_mode(info))
            except OSError as e:
                raise ExtractionError(
                    "output_create_failed",
                    f"Failed to create output file {target}: {e}",
                    details={**details, "error": str(e)},
                ) from e

            with output_file:
                try:
                    self._fs.copy_stream(entry_file, output_file)
                except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
                    raise ExtractionError(
                        "decompress_copy_failed",
                        f"Failed to decompress archive entry {info.filename}: {e}",
                        details={**details, "error": str(e)},
                    ) from e
