"""
Directory relocation and file copy operations for pma-up.

This module implements the filesystem mutations of an upgrade:
- PathMover: rename a directory tree, falling back to copy + delete when the
  rename would cross devices
- FileCopier: copy one regular file's bytes and permission bits
- Scratch workspace creation and removal

CRITICAL: PathMover.move() is the only operation that changes which
directory holds the installed tree. A plain rename either fully succeeds or
leaves the source untouched. The cross-device fallback is NOT atomic: if it
fails between the copy and the delete, both paths hold the old tree, and this
is reported as SourceCleanupError so the caller knows duplication happened.
"""

from __future__ import annotations

import errno
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Any

from pma_up.errors import FailedPreconditionError, UpdateError
from pma_up.filesystem import Filesystem, RealFilesystem
from pma_up.logging import get_logger

logger = get_logger(__name__)

_UNWRITABLE_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.EROFS})
_FULL_ERRNOS = frozenset({errno.ENOSPC, errno.EDQUOT})

# =============================================================================
# Errors
# =============================================================================


class FilesystemError(UpdateError):
    """
    Error raised when a filesystem mutation fails.

    ``error_code`` is one of: source_missing, destination_unwritable,
    destination_exists, filesystem_full, move_failed, cross_device_copy_failed,
    source_cleanup_failed, unsupported_file_type, source_unreadable,
    source_not_regular_file, destination_create_failed, copy_interrupted.
    """


class SourceMissingError(FilesystemError):
    """The path to move or copy does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("source_missing", message, details)


class NotRegularFileError(FilesystemError):
    """FileCopier was asked to copy a directory, device or other special file."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("source_not_regular_file", message, details)


class CrossDeviceCopyError(FilesystemError):
    """The copy half of a cross-device move failed; the source is intact."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("cross_device_copy_failed", message, details)


class SourceCleanupError(FilesystemError):
    """
    The tree was copied across devices but the source could not be removed.

    Both the source and the destination now hold the tree.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("source_cleanup_failed", message, details)


def _classify_os_error(error: OSError) -> str:
    """Map an OSError from a rename to an error code."""
    if error.errno in _UNWRITABLE_ERRNOS:
        return "destination_unwritable"
    if error.errno in _FULL_ERRNOS:
        return "filesystem_full"
    return "move_failed"


# =============================================================================
# PathMover
# =============================================================================


class PathMover:
    """
    Relocates a directory tree, transparently handling cross-device moves.

    The primary path is a single rename. Only when the rename fails because
    source and destination live on different devices does the mover copy the
    tree (preserving file/directory/symlink type and permission bits) and
    then delete the source. Any other rename failure is raised immediately.

    Example:
        >>> PathMover().move(Path("/srv/pma"), Path("/srv/pma_backup_1700000000"))
    """

    def __init__(self, filesystem: Filesystem | None = None) -> None:
        self._fs = filesystem or RealFilesystem()

    @property
    def filesystem(self) -> Filesystem:
        """Return the filesystem primitives used by this mover."""
        return self._fs

    def move(self, source: Path | str, destination: Path | str) -> None:
        """
        Move *source* to *destination*.

        Args:
            source: Existing directory (or file) to move.
            destination: New path; its parent must exist and be writable.

        Raises:
            SourceMissingError: If source does not exist.
            FilesystemError: If the rename fails for a reason other than
                crossing devices (destination_unwritable, filesystem_full,
                move_failed), or if it crosses devices onto an existing
                destination (destination_exists).
            CrossDeviceCopyError: If the fallback copy fails.
            SourceCleanupError: If the fallback copy succeeded but the
                source could not be removed.
        """
        source = Path(source)
        destination = Path(destination)
        details = {"source": str(source), "destination": str(destination)}

        if not self._fs.exists(source):
            raise SourceMissingError(
                f"Cannot move missing path: {source}", details=details
            )

        try:
            self._fs.rename(source, destination)
        except OSError as e:
            if not self._fs.is_cross_device_error(e):
                code = _classify_os_error(e)
                raise FilesystemError(
                    code,
                    f"Failed to move {source} to {destination}: {e}",
                    details={**details, "errno": e.errno, "error": str(e)},
                ) from e
        else:
            logger.debug("Renamed directory", extra=details)
            return

        if self._fs.exists(destination):
            raise FilesystemError(
                "destination_exists",
                f"Cannot move {source} across devices: {destination} already exists",
                details=details,
            )

        logger.warning(
            "Rename crosses devices, falling back to copy and delete",
            extra=details,
        )

        try:
            self._copy_tree(source, destination)
        except (OSError, FilesystemError) as e:
            raise CrossDeviceCopyError(
                f"Failed to copy {source} to {destination} across devices: {e}",
                details={**details, "error": str(e)},
            ) from e

        try:
            self._fs.remove_tree(source)
        except OSError as e:
            raise SourceCleanupError(
                f"Copied {source} to {destination} but failed to remove the source: {e}",
                details={**details, "error": str(e)},
            ) from e

        logger.info("Moved directory across devices", extra=details)

    def _copy_tree(self, source: Path, destination: Path) -> None:
        """Copy every entry under *source* to the mirrored path under *destination*."""
        # Final directory modes are applied bottom-up once all children exist,
        # so read-only directories can still be populated.
        directory_modes: list[tuple[Path, int]] = []

        for path, info in self._fs.walk(source):
            target = destination / path.relative_to(source)
            mode = stat.S_IMODE(info.st_mode)

            if stat.S_ISDIR(info.st_mode):
                self._fs.make_dirs(target, mode | stat.S_IRWXU)
                directory_modes.append((target, mode))
            elif stat.S_ISLNK(info.st_mode):
                self._fs.make_symlink(self._fs.read_link(path), target)
            elif stat.S_ISREG(info.st_mode):
                with self._fs.open_read(path) as src_file:
                    with self._fs.open_write(target, mode) as dst_file:
                        self._fs.copy_stream(src_file, dst_file)
                self._fs.chmod(target, mode)
            else:
                raise FilesystemError(
                    "unsupported_file_type",
                    f"Cannot copy special file: {path}",
                    details={"path": str(path), "mode": oct(info.st_mode)},
                )

        for target, mode in reversed(directory_modes):
            self._fs.chmod(target, mode)


# =============================================================================
# FileCopier
# =============================================================================


class FileCopier:
    """Copies a single regular file's bytes, creating it with the source's mode."""

    def __init__(self, filesystem: Filesystem | None = None) -> None:
        self._fs = filesystem or RealFilesystem()

    def copy_file(self, source: Path | str, destination: Path | str) -> None:
        """
        Copy *source* to *destination*.

        The destination is created (or truncated) with the source's permission
        bits. Both files are closed on every exit path. A copy interrupted by
        an I/O error leaves the partially written destination in place.

        Raises:
            SourceMissingError: If source does not exist.
            NotRegularFileError: If source is not a regular file.
            FilesystemError: source_unreadable, destination_create_failed
                or copy_interrupted.
        """
        source = Path(source)
        destination = Path(destination)
        details = {"source": str(source), "destination": str(destination)}

        try:
            info = self._fs.stat(source)
        except FileNotFoundError as e:
            raise SourceMissingError(
                f"Source file does not exist: {source}", details=details
            ) from e
        except OSError as e:
            raise FilesystemError(
                "source_unreadable",
                f"Failed to stat source file {source}: {e}",
                details={**details, "error": str(e)},
            ) from e

        if not stat.S_ISREG(info.st_mode):
            raise NotRegularFileError(
                f"Source is not a regular file: {source}",
                details={**details, "mode": oct(info.st_mode)},
            )

        try:
            src_file = self._fs.open_read(source)
        except OSError as e:
            raise FilesystemError(
                "source_unreadable",
                f"Failed to open source file {source}: {e}",
                details={**details, "error": str(e)},
            ) from e

        with src_file:
            try:
                dst_file = self._fs.open_write(destination, stat.S_IMODE(info.st_mode))
            except OSError as e:
                raise FilesystemError(
                    "destination_create_failed",
                    f"Failed to create destination file {destination}: {e}",
                    details={**details, "error": str(e)},
                ) from e

            # Closing flushes buffered writes, so it can fail too
            try:
                with dst_file:
                    copied = self._fs.copy_stream(src_file, dst_file)
            except OSError as e:
                raise FilesystemError(
                    "copy_interrupted",
                    f"Copy of {source} to {destination} was interrupted: {e}",
                    details={**details, "error": str(e)},
                ) from e

        logger.debug("Copied file", extra={**details, "bytes": copied})


# =============================================================================
# Workspace helpers
# =============================================================================


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def create_scratch_workspace(
    parent: Path | str | None = None,
    prefix: str = "pma-up-",
) -> Path:
    """
    Create a fresh, uniquely named scratch directory.

    Args:
        parent: Directory to create the workspace in (default: system temp).
        prefix: Name prefix for the workspace.

    Returns:
        Path to the new, empty workspace.

    Raises:
        FailedPreconditionError: If the workspace cannot be created.
    """
    try:
        return Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create scratch workspace: {e}",
            details={"parent": str(parent) if parent else None, "error": str(e)},
        ) from e


def safe_remove_directory(path: Path, *, ignore_errors: bool = True) -> bool:
    """
    Safely remove a directory and its contents.

    Args:
        path: Path to the directory to remove.
        ignore_errors: If True, ignore errors during removal.

    Returns:
        True if directory was removed, False if it didn't exist.

    Raises:
        FailedPreconditionError: If removal fails and ignore_errors is False.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path, ignore_errors=ignore_errors)
        logger.debug("Removed directory", extra={"path": str(path)})
        return True
    except OSError as e:
        if not ignore_errors:
            raise FailedPreconditionError(
                f"Failed to remove directory: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e
        return False
