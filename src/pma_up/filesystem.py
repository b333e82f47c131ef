"""
Filesystem capability set for pma-up.

PathMover, FileCopier and ArchiveExtractor never touch ``os``/``shutil``
directly; they receive a Filesystem and call its primitives. Two
implementations are provided:

- RealFilesystem: thin wrappers around os, shutil and io.
- FakeFilesystem: a RealFilesystem whose primitives can be replaced or made
  to fail per operation name, and which records every call. Used to drive
  cross-device fallbacks and mid-copy I/O failures deterministically.

The only platform-specific decision, whether a rename failed because the two
paths live on different devices, is isolated in
Filesystem.is_cross_device_error().
"""

from __future__ import annotations

import errno
import os
import shutil
import stat
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

# Chunk size used when streaming bytes between file objects
COPY_BUFFER_SIZE = 1024 * 1024


def is_cross_device_error(error: BaseException) -> bool:
    """Return True if *error* is a rename failure caused by crossing devices."""
    return isinstance(error, OSError) and error.errno == errno.EXDEV


class Filesystem(ABC):
    """
    Primitive filesystem operations used by the replacement pipeline.

    All paths are pathlib.Path objects. Every primitive raises OSError (or a
    subclass) on failure and never swallows errors.
    """

    @abstractmethod
    def exists(self, path: Path) -> bool:
        """Return True if *path* exists (without following a final symlink)."""

    @abstractmethod
    def stat(self, path: Path) -> os.stat_result:
        """Return stat information for *path*, following symlinks."""

    @abstractmethod
    def rename(self, source: Path, destination: Path) -> None:
        """Atomically rename *source* to *destination*."""

    @abstractmethod
    def remove_tree(self, path: Path) -> None:
        """Recursively delete *path*."""

    @abstractmethod
    def make_dirs(self, path: Path, mode: int = 0o755) -> None:
        """Create *path* and any missing ancestors; existing dirs are fine."""

    @abstractmethod
    def chmod(self, path: Path, mode: int) -> None:
        """Set permission bits of *path*."""

    @abstractmethod
    def open_read(self, path: Path) -> IO[bytes]:
        """Open *path* for binary reading."""

    @abstractmethod
    def open_write(self, path: Path, mode: int) -> IO[bytes]:
        """Create or truncate *path* for binary writing with permission *mode*."""

    @abstractmethod
    def copy_stream(self, source: IO[bytes], destination: IO[bytes]) -> int:
        """Copy all bytes from *source* to *destination*; return the count."""

    @abstractmethod
    def list_dir(self, path: Path) -> list[str]:
        """Return the names of the immediate children of *path*, sorted."""

    @abstractmethod
    def walk(self, root: Path) -> Iterator[tuple[Path, os.stat_result]]:
        """
        Walk *root* depth-first, yielding ``(path, lstat)`` pairs.

        The root itself is yielded first, and each directory is yielded
        before its children. Errors abort the walk.
        """

    @abstractmethod
    def read_link(self, path: Path) -> str:
        """Return the target of the symlink at *path*."""

    @abstractmethod
    def make_symlink(self, target: str, path: Path) -> None:
        """Create a symlink at *path* pointing to *target*."""

    def is_cross_device_error(self, error: BaseException) -> bool:
        """Return True if *error* means source and destination are on different devices."""
        return is_cross_device_error(error)


class RealFilesystem(Filesystem):
    """Filesystem backed by the operating system."""

    def exists(self, path: Path) -> bool:
        return os.path.lexists(path)

    def stat(self, path: Path) -> os.stat_result:
        return os.stat(path)

    def rename(self, source: Path, destination: Path) -> None:
        os.rename(source, destination)

    def remove_tree(self, path: Path) -> None:
        shutil.rmtree(path)

    def make_dirs(self, path: Path, mode: int = 0o755) -> None:
        os.makedirs(path, mode=mode, exist_ok=True)

    def chmod(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)

    def open_read(self, path: Path) -> IO[bytes]:
        return open(path, "rb")

    def open_write(self, path: Path, mode: int) -> IO[bytes]:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        try:
            return os.fdopen(fd, "wb")
        except BaseException:
            os.close(fd)
            raise

    def copy_stream(self, source: IO[bytes], destination: IO[bytes]) -> int:
        copied = 0
        while True:
            chunk = source.read(COPY_BUFFER_SIZE)
            if not chunk:
                break
            destination.write(chunk)
            copied += len(chunk)
        return copied

    def list_dir(self, path: Path) -> list[str]:
        return sorted(os.listdir(path))

    def walk(self, root: Path) -> Iterator[tuple[Path, os.stat_result]]:
        root_stat = os.lstat(root)
        yield root, root_stat
        if stat.S_ISDIR(root_stat.st_mode):
            for name in self.list_dir(root):
                yield from self.walk(root / name)

    def read_link(self, path: Path) -> str:
        return os.readlink(path)

    def make_symlink(self, target: str, path: Path) -> None:
        os.symlink(target, path)


@dataclass
class _Fault:
    """A failure armed on one primitive."""

    error: BaseException
    path: str | None = None
    skip: int = 0
    times: int | None = None


class FakeFilesystem(RealFilesystem):
    """
    RealFilesystem with injectable primitives and faults.

    Every primitive call is recorded in ``calls`` as ``(operation, args)``.
    ``override()`` swaps in a replacement callable for one operation and
    ``fail_on()`` arms an exception, optionally limited to calls whose first
    argument contains *path*, skipping the first *skip* matching calls.

    Example:
        >>> fs = FakeFilesystem()
        >>> fs.fail_on("rename", OSError(errno.EXDEV, "Invalid cross-device link"))
        >>> PathMover(fs).move(src, dst)  # takes the copy + delete fallback
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._overrides: dict[str, Callable[..., Any]] = {}
        self._faults: dict[str, list[_Fault]] = {}

    def override(self, operation: str, func: Callable[..., Any]) -> None:
        """Replace *operation* with *func* (called with the same arguments)."""
        self._overrides[operation] = func

    def fail_on(
        self,
        operation: str,
        error: BaseException,
        *,
        path: str | Path | None = None,
        skip: int = 0,
        times: int | None = None,
    ) -> None:
        """Raise *error* from *operation* for matching calls."""
        self._faults.setdefault(operation, []).append(
            _Fault(
                error=error,
                path=str(path) if path is not None else None,
                skip=skip,
                times=times,
            )
        )

    def count(self, operation: str) -> int:
        """Return how many times *operation* was called."""
        return sum(1 for name, _ in self.calls if name == operation)

    def _intercept(self, operation: str, default: Callable[..., Any], *args: Any) -> Any:
        self.calls.append((operation, args))

        for fault in self._faults.get(operation, []):
            if fault.path is not None and (not args or fault.path not in str(args[0])):
                continue
            if fault.skip > 0:
                fault.skip -= 1
                continue
            if fault.times is not None:
                if fault.times <= 0:
                    continue
                fault.times -= 1
            raise fault.error

        func = self._overrides.get(operation, default)
        return func(*args)

    def exists(self, path: Path) -> bool:
        return self._intercept("exists", super().exists, path)

    def stat(self, path: Path) -> os.stat_result:
        return self._intercept("stat", super().stat, path)

    def rename(self, source: Path, destination: Path) -> None:
        self._intercept("rename", super().rename, source, destination)

    def remove_tree(self, path: Path) -> None:
        self._intercept("remove_tree", super().remove_tree, path)

    def make_dirs(self, path: Path, mode: int = 0o755) -> None:
        self._intercept("make_dirs", super().make_dirs, path, mode)

    def chmod(self, path: Path, mode: int) -> None:
        self._intercept("chmod", super().chmod, path, mode)

    def open_read(self, path: Path) -> IO[bytes]:
        return self._intercept("open_read", super().open_read, path)

    def open_write(self, path: Path, mode: int) -> IO[bytes]:
        return self._intercept("open_write", super().open_write, path, mode)

    def copy_stream(self, source: IO[bytes], destination: IO[bytes]) -> int:
        return self._intercept(
            "copy_stream", super().copy_stream, source, destination
        )

    def list_dir(self, path: Path) -> list[str]:
        return self._intercept("list_dir", super().list_dir, path)

    def walk(self, root: Path) -> Iterator[tuple[Path, os.stat_result]]:
        return self._intercept("walk", super().walk, root)

    def read_link(self, path: Path) -> str:
        return self._intercept("read_link", super().read_link, path)

    def make_symlink(self, target: str, path: Path) -> None:
        self._intercept("make_symlink", super().make_symlink, target, path)
