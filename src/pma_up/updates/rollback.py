"""
Backup naming and restore for pma-up.

Every upgrade moves the live installation to a backup directory named
``<installation_root>_backup_<unix_seconds>`` before the new tree is swapped
in. Backups are never deleted by pma-up; operators recover from them by hand
or through restore_from_backup().

Restore types:
- Automatic restore: attempted once by the orchestrator when the swap stage
  fails and ``restore_on_swap_failure`` is enabled
- Manual restore: restore_from_backup() called by an operator script
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import TYPE_CHECKING

from pma_up.errors import FailedPreconditionError, InternalError, InvalidArgumentError
from pma_up.logging import get_logger

if TYPE_CHECKING:
    from pma_up.updates.operations import PathMover

logger = get_logger(__name__)

BACKUP_MARKER = "_backup_"


def backup_path_for(installation_root: Path, timestamp: int | None = None) -> Path:
    """
    Return the backup directory path for *installation_root*.

    Args:
        installation_root: The live installation directory.
        timestamp: Unix time in seconds (default: now).

    Returns:
        ``<installation_root>_backup_<timestamp>``, a sibling of the root.

    Raises:
        InvalidArgumentError: If the root has no final name component.
    """
    if timestamp is None:
        timestamp = int(time.time())
    root = Path(installation_root)
    if not root.name:
        raise InvalidArgumentError(
            f"Installation root has no name to derive a backup path from: {root}",
            details={"installation_root": str(root)},
        )
    return root.with_name(f"{root.name}{BACKUP_MARKER}{timestamp}")


def find_backups(installation_root: Path) -> list[Path]:
    """
    List existing backups of *installation_root*, newest first.

    Only directories matching ``<name>_backup_<digits>`` next to the root
    are returned.
    """
    root = Path(installation_root)
    parent = root.parent
    if not parent.is_dir():
        return []

    pattern = re.compile(rf"^{re.escape(root.name)}{BACKUP_MARKER}(\d+)$")
    backups: list[tuple[int, Path]] = []
    for entry in parent.iterdir():
        match = pattern.match(entry.name)
        if match and entry.is_dir():
            backups.append((int(match.group(1)), entry))

    backups.sort(key=lambda item: item[0], reverse=True)
    return [path for _, path in backups]


def restore_from_backup(
    backup_root: Path,
    installation_root: Path,
    mover: PathMover | None = None,
) -> None:
    """
    Move *backup_root* back to *installation_root*.

    The installation root must be absent: a restore never overwrites a tree.

    Args:
        backup_root: Backup directory to restore.
        installation_root: Path the backup is moved back to.
        mover: PathMover to use (default: one over the real filesystem).

    Raises:
        FailedPreconditionError: If the backup is missing or the installation
            root already exists.
        InternalError: If the move fails.
    """
    from pma_up.updates.operations import PathMover

    backup_root = Path(backup_root)
    installation_root = Path(installation_root)
    mover = mover or PathMover()
    details = {
        "backup_root": str(backup_root),
        "installation_root": str(installation_root),
    }

    if not mover.filesystem.exists(backup_root):
        raise FailedPreconditionError(
            f"Backup directory not found: {backup_root}", details=details
        )

    if mover.filesystem.exists(installation_root):
        raise FailedPreconditionError(
            f"Refusing to restore over existing installation: {installation_root}",
            details=details,
        )

    logger.info(f"Restoring {installation_root} from {backup_root}", extra=details)

    try:
        mover.move(backup_root, installation_root)
    except Exception as e:
        logger.error(f"Restore from backup failed: {e}", extra=details)
        raise InternalError(
            f"Restore of {installation_root} from {backup_root} failed: {e}",
            details={**details, "error": str(e)},
        ) from e

    logger.info("Restore from backup completed", extra=details)
