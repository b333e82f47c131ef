"""
Update orchestrator for pma-up.

This module implements the UpdateOrchestrator class that sequences one
in-place upgrade of an installation directory.

Stages (linear, no branching back):
- fetch_version: ask the release fetcher for the latest release
- prepare_workspace: create a fresh scratch directory
- download: save the release archive into the workspace
- extract: unpack the archive into <workspace>/extracted
- validate_layout: require exactly one top-level folder in the archive
- backup: move the installation to <root>_backup_<unix_seconds>
- swap: move the unpacked folder to the installation path
- restore_config: copy the configuration file from the backup
- cleanup: remove the scratch workspace
- done: success
- failed: reachable from every working stage

Nothing is rolled back automatically once the backup stage has run; the
backup directory is kept as the recovery mechanism. A swap failure leaves
the installation path empty and is raised as SwapFailedError so it can be
reported distinctly.
"""

from __future__ import annotations

import os
import stat
import time
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from pma_up.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    UpdateError,
)
from pma_up.logging import get_logger
from pma_up.updates.extractor import ArchiveExtractor
from pma_up.updates.operations import (
    FileCopier,
    PathMover,
    SourceCleanupError,
    create_scratch_workspace,
    ensure_directory,
    safe_remove_directory,
)
from pma_up.updates.rollback import backup_path_for, restore_from_backup

if TYPE_CHECKING:
    from pma_up.config import UpdaterConfig
    from pma_up.filesystem import Filesystem
    from pma_up.updates.backends import ArchiveDownloader, ReleaseFetcher

logger = get_logger(__name__)

EXTRACT_DIR_NAME = "extracted"


class UpdateStage(str, Enum):
    """Stages of one upgrade run."""

    IDLE = "idle"
    FETCH_VERSION = "fetch_version"
    PREPARE_WORKSPACE = "prepare_workspace"
    DOWNLOAD = "download"
    EXTRACT = "extract"
    VALIDATE_LAYOUT = "validate_layout"
    BACKUP = "backup"
    SWAP = "swap"
    RESTORE_CONFIG = "restore_config"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class Severity(str, Enum):
    """
    How much operator attention a failure needs.

    - low: installation untouched or fully upgraded; retry or fix by hand
    - medium: backup failed; installation presumed intact
    - high: tree duplicated by an interrupted cross-device move
    - critical: installation path empty; only the backup holds the old tree
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_WORKING_STAGES = [
    UpdateStage.FETCH_VERSION,
    UpdateStage.PREPARE_WORKSPACE,
    UpdateStage.DOWNLOAD,
    UpdateStage.EXTRACT,
    UpdateStage.VALIDATE_LAYOUT,
    UpdateStage.BACKUP,
    UpdateStage.SWAP,
    UpdateStage.RESTORE_CONFIG,
    UpdateStage.CLEANUP,
]

# Valid stage transitions
_VALID_TRANSITIONS: dict[UpdateStage, set[UpdateStage]] = {
    UpdateStage.IDLE: {UpdateStage.FETCH_VERSION},
    **{
        stage: {following, UpdateStage.FAILED}
        for stage, following in zip(
            _WORKING_STAGES, [*_WORKING_STAGES[1:], UpdateStage.DONE], strict=True
        )
    },
    UpdateStage.DONE: set(),
    UpdateStage.FAILED: set(),
}

_PROGRESS: dict[UpdateStage, float] = {
    UpdateStage.FETCH_VERSION: 5,
    UpdateStage.PREPARE_WORKSPACE: 10,
    UpdateStage.DOWNLOAD: 20,
    UpdateStage.EXTRACT: 40,
    UpdateStage.VALIDATE_LAYOUT: 50,
    UpdateStage.BACKUP: 60,
    UpdateStage.SWAP: 75,
    UpdateStage.RESTORE_CONFIG: 90,
    UpdateStage.CLEANUP: 95,
    UpdateStage.DONE: 100,
}


# =============================================================================
# Errors
# =============================================================================


class UpdateFailedError(UpdateError):
    """
    An upgrade run stopped at a stage.

    The underlying error is chained as ``__cause__``.

    Attributes:
        stage: Stage at which the run stopped.
        severity: How much operator attention the failure needs.
    """

    def __init__(
        self,
        stage: UpdateStage,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        severity: Severity = Severity.LOW,
        error_code: str = "update_failed",
    ) -> None:
        super().__init__(
            error_code=error_code,
            message=message,
            details={
                **(details or {}),
                "stage": stage.value,
                "severity": severity.value,
            },
        )
        self.stage = stage
        self.severity = severity


class SwapFailedError(UpdateFailedError):
    """
    The new tree could not be moved into place after the old one was backed up.

    The installation path does not exist (unless the automatic restore
    succeeded, see ``details["restored"]``); the backup directory holds the
    only complete copy of the previous installation.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            UpdateStage.SWAP,
            message,
            details,
            severity=Severity.CRITICAL,
            error_code="swap_failed",
        )


# =============================================================================
# Run data
# =============================================================================


class UpdateRunData(BaseModel):
    """Progress snapshot of the current (or last) run."""

    stage: str = Field(
        default=UpdateStage.IDLE.value,
        description="Current stage",
    )
    installation_root: str | None = Field(
        default=None,
        description="Installation directory being upgraded",
    )
    config_file: str | None = Field(
        default=None,
        description="Configuration file preserved across the upgrade",
    )
    target_version: str | None = Field(
        default=None,
        description="Version being installed",
    )
    workspace: str | None = Field(
        default=None,
        description="Scratch workspace of this run",
    )
    backup_root: str | None = Field(
        default=None,
        description="Backup directory holding the previous installation",
    )
    started_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp when the run started",
    )
    last_transition_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp of the last stage transition",
    )
    progress_percent: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Progress percentage (0-100)",
    )
    error_message: str | None = Field(
        default=None,
        description="Error message if the run failed",
    )


class UpdateResult(BaseModel):
    """Outcome of a successful run."""

    version: str = Field(..., description="Installed version")
    release_date: str = Field(..., description="Release date of the installed version")
    installation_root: str = Field(..., description="Upgraded installation directory")
    backup_root: str = Field(..., description="Backup of the previous installation")
    config_file: str = Field(..., description="Restored configuration file")


# =============================================================================
# Orchestrator
# =============================================================================


class UpdateOrchestrator:
    """
    Runs the fetch -> download -> extract -> backup -> swap -> restore sequence.

    A single orchestrator may run several upgrades one after another, but
    never two at the same time, and no two runs may target the same
    installation concurrently (there is no locking).

    Attributes:
        fetcher: Release fetcher collaborator.
        downloader: Archive downloader collaborator.
        state_data: Snapshot of the current run.
    """

    def __init__(
        self,
        fetcher: ReleaseFetcher,
        downloader: ArchiveDownloader,
        *,
        mover: PathMover | None = None,
        copier: FileCopier | None = None,
        extractor: ArchiveExtractor | None = None,
        scratch_dir: Path | str | None = None,
        scratch_prefix: str = "pma-up-",
        restore_on_swap_failure: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the UpdateOrchestrator.

        Args:
            fetcher: Looks up the latest release.
            downloader: Saves the release archive.
            mover: PathMover for backup and swap.
            copier: FileCopier for restoring the configuration file.
            extractor: ArchiveExtractor for unpacking the release.
            scratch_dir: Parent directory of scratch workspaces.
            scratch_prefix: Name prefix of scratch workspaces.
            restore_on_swap_failure: Move the backup back once if swap fails.
            clock: Returns the current Unix time; names the backup directory.
        """
        self._fetcher = fetcher
        self._downloader = downloader
        self._mover = mover or PathMover()
        self._copier = copier or FileCopier()
        self._extractor = extractor or ArchiveExtractor()
        self._scratch_dir = Path(scratch_dir) if scratch_dir else None
        self._scratch_prefix = scratch_prefix
        self._restore_on_swap_failure = restore_on_swap_failure
        self._clock = clock
        self._state_data = UpdateRunData()
        self._progress_callbacks: list[Callable[[UpdateRunData], None]] = []

    @classmethod
    def from_config(
        cls,
        config: UpdaterConfig,
        filesystem: Filesystem | None = None,
    ) -> UpdateOrchestrator:
        """
        Build an orchestrator with HTTP collaborators from configuration.

        Args:
            config: Updater configuration.
            filesystem: Filesystem primitives shared by mover, copier and
                extractor (default: the real filesystem).
        """
        from pma_up.updates.http_backend import (
            HttpArchiveDownloader,
            HttpReleaseFetcher,
        )

        return cls(
            HttpReleaseFetcher.from_config(config),
            HttpArchiveDownloader.from_config(config),
            mover=PathMover(filesystem),
            copier=FileCopier(filesystem),
            extractor=ArchiveExtractor(filesystem),
            scratch_dir=config.scratch_dir,
            scratch_prefix=config.scratch_prefix,
            restore_on_swap_failure=config.restore_on_swap_failure,
        )

    @property
    def stage(self) -> UpdateStage:
        """Get the current stage."""
        return UpdateStage(self._state_data.stage)

    @property
    def state_data(self) -> UpdateRunData:
        """Get the run data."""
        return self._state_data

    def add_progress_callback(self, callback: Callable[[UpdateRunData], None]) -> None:
        """Add a callback to be notified of stage changes."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self) -> None:
        """Notify all registered callbacks of a stage change."""
        for callback in self._progress_callbacks:
            try:
                callback(self._state_data.model_copy())
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _transition_to(
        self,
        new_stage: UpdateStage,
        *,
        error_message: str | None = None,
    ) -> None:
        """
        Transition to a new stage.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self.stage

        if new_stage not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid stage transition from {current.value} to {new_stage.value}",
                details={
                    "current_stage": current.value,
                    "target_stage": new_stage.value,
                },
            )

        logger.info(
            f"Stage transition: {current.value} -> {new_stage.value}",
            extra={
                "old_stage": current.value,
                "new_stage": new_stage.value,
                "target_version": self._state_data.target_version,
            },
        )

        self._state_data.stage = new_stage.value
        self._state_data.last_transition_at = datetime.now(UTC).isoformat()

        if error_message is not None:
            self._state_data.error_message = error_message

        if new_stage in _PROGRESS:
            self._state_data.progress_percent = _PROGRESS[new_stage]

        self._notify_progress()

    def _fail(
        self,
        stage: UpdateStage,
        message: str,
        error: BaseException | None = None,
        *,
        severity: Severity = Severity.LOW,
        details: dict[str, Any] | None = None,
    ) -> UpdateFailedError:
        """Record the failure and build the stage error to raise."""
        if error is not None:
            message = f"{message}: {error}"
            details = {**(details or {}), "error": str(error)}

        self._transition_to(UpdateStage.FAILED, error_message=message)
        logger.error(message, extra={"stage": stage.value, "severity": severity.value})
        return UpdateFailedError(stage, message, details, severity=severity)

    def run_update(
        self,
        installation_root: Path | str,
        config_file_path: Path | str,
    ) -> UpdateResult:
        """
        Upgrade *installation_root* in place, preserving its configuration file.

        Args:
            installation_root: Live installation directory; must exist.
            config_file_path: Path of the configuration file; only its base
                name is used, relative to the installation root.

        Returns:
            UpdateResult describing the installed release and the backup.

        Raises:
            InvalidArgumentError: If an argument is empty.
            FailedPreconditionError: If the installation root does not exist.
            UpdateFailedError: If a stage fails (SwapFailedError for swap).
        """
        if not installation_root:
            raise InvalidArgumentError("Installation root must not be empty")
        if not config_file_path:
            raise InvalidArgumentError("Configuration file path must not be empty")

        # "." and "foo/.." have no name to derive a backup sibling from
        root = Path(os.path.abspath(installation_root))
        config_name = Path(config_file_path).name
        if not config_name:
            raise InvalidArgumentError(
                f"Configuration file path has no file name: {config_file_path}",
                details={"config_file_path": str(config_file_path)},
            )

        if not self._mover.filesystem.exists(root):
            raise FailedPreconditionError(
                f"Installation root does not exist: {root}",
                details={"installation_root": str(root)},
            )

        self._state_data = UpdateRunData(
            installation_root=str(root),
            config_file=config_name,
            started_at=datetime.now(UTC).isoformat(),
        )
        logger.info(
            "Starting update",
            extra={"installation_root": str(root), "config_file": config_name},
        )

        workspace: Path | None = None
        try:
            # Fetch version
            self._transition_to(UpdateStage.FETCH_VERSION)
            try:
                release = self._fetcher.fetch_latest_release()
            except Exception as e:
                raise self._fail(
                    UpdateStage.FETCH_VERSION, "Failed to fetch latest version", e
                ) from e
            self._state_data.target_version = release.version

            # Prepare workspace
            self._transition_to(UpdateStage.PREPARE_WORKSPACE)
            try:
                workspace = create_scratch_workspace(
                    self._scratch_dir, self._scratch_prefix
                )
            except Exception as e:
                raise self._fail(
                    UpdateStage.PREPARE_WORKSPACE,
                    "Failed to create scratch workspace",
                    e,
                ) from e
            self._state_data.workspace = str(workspace)

            # Download
            self._transition_to(UpdateStage.DOWNLOAD)
            try:
                archive_path = self._downloader.download(
                    release.archive_url, workspace, release.version
                )
            except Exception as e:
                raise self._fail(
                    UpdateStage.DOWNLOAD,
                    f"Failed to download release {release.version}",
                    e,
                    details={"url": release.archive_url},
                ) from e

            # Extract
            self._transition_to(UpdateStage.EXTRACT)
            extract_dir = workspace / EXTRACT_DIR_NAME
            try:
                ensure_directory(extract_dir)
                self._extractor.extract(archive_path, extract_dir)
            except Exception as e:
                raise self._fail(
                    UpdateStage.EXTRACT,
                    f"Failed to extract {archive_path}",
                    e,
                    details={"archive": str(archive_path)},
                ) from e

            # Validate layout
            self._transition_to(UpdateStage.VALIDATE_LAYOUT)
            new_tree = self._validate_layout(extract_dir)

            # Backup
            self._transition_to(UpdateStage.BACKUP)
            backup_root = self._backup(root)

            # Swap
            self._transition_to(UpdateStage.SWAP)
            self._swap(new_tree, root, backup_root)

            # Restore config
            self._transition_to(UpdateStage.RESTORE_CONFIG)
            config_source = backup_root / config_name
            config_target = root / config_name
            try:
                self._copier.copy_file(config_source, config_target)
            except Exception as e:
                raise self._fail(
                    UpdateStage.RESTORE_CONFIG,
                    f"Failed to restore config file from {config_source}",
                    e,
                    details={
                        "source": str(config_source),
                        "destination": str(config_target),
                        "backup_root": str(backup_root),
                    },
                ) from e

            self._transition_to(UpdateStage.CLEANUP)
        finally:
            if workspace is not None:
                self._cleanup_workspace(workspace)

        self._transition_to(UpdateStage.DONE)
        logger.info(
            f"Update to {release.version} completed successfully",
            extra={"installation_root": str(root), "backup_root": str(backup_root)},
        )

        return UpdateResult(
            version=release.version,
            release_date=release.release_date,
            installation_root=str(root),
            backup_root=str(backup_root),
            config_file=str(config_target),
        )

    def _validate_layout(self, extract_dir: Path) -> Path:
        """Return the archive's single top-level folder."""
        fs = self._mover.filesystem
        try:
            entries = fs.list_dir(extract_dir)
        except OSError as e:
            raise self._fail(
                UpdateStage.VALIDATE_LAYOUT,
                f"Failed to read extraction directory {extract_dir}",
                e,
            ) from e

        if len(entries) != 1:
            raise self._fail(
                UpdateStage.VALIDATE_LAYOUT,
                f"Unexpected extracted directory structure: expected 1 top-level "
                f"entry, found {len(entries)}",
                details={"entries": entries, "extract_dir": str(extract_dir)},
            )

        new_tree = extract_dir / entries[0]
        try:
            is_directory = stat.S_ISDIR(fs.stat(new_tree).st_mode)
        except OSError as e:
            raise self._fail(
                UpdateStage.VALIDATE_LAYOUT,
                f"Failed to inspect extracted entry {new_tree}",
                e,
            ) from e

        if not is_directory:
            raise self._fail(
                UpdateStage.VALIDATE_LAYOUT,
                f"Unexpected extracted directory structure: {entries[0]} is not a directory",
                details={"entries": entries, "extract_dir": str(extract_dir)},
            )

        return new_tree

    def _backup(self, root: Path) -> Path:
        """Move the installation to its timestamped backup path."""
        try:
            backup_root = backup_path_for(root, int(self._clock()))
        except Exception as e:
            raise self._fail(
                UpdateStage.BACKUP,
                f"Cannot derive a backup path for {root}",
                e,
                severity=Severity.MEDIUM,
                details={"installation_root": str(root)},
            ) from e
        self._state_data.backup_root = str(backup_root)
        details = {"installation_root": str(root), "backup_root": str(backup_root)}

        if self._mover.filesystem.exists(backup_root):
            raise self._fail(
                UpdateStage.BACKUP,
                f"Backup path already exists: {backup_root}",
                severity=Severity.MEDIUM,
                details=details,
            )

        try:
            self._mover.move(root, backup_root)
        except Exception as e:
            severity = (
                Severity.HIGH if isinstance(e, SourceCleanupError) else Severity.MEDIUM
            )
            raise self._fail(
                UpdateStage.BACKUP,
                "Failed to back up existing installation",
                e,
                severity=severity,
                details=details,
            ) from e

        logger.info(f"Backed up installation to {backup_root}", extra=details)
        return backup_root

    def _swap(self, new_tree: Path, root: Path, backup_root: Path) -> None:
        """Move the unpacked release into the installation path."""
        try:
            self._mover.move(new_tree, root)
        except Exception as e:
            restored = False
            if self._restore_on_swap_failure:
                try:
                    restore_from_backup(backup_root, root, self._mover)
                    restored = True
                except Exception as restore_error:
                    logger.error(
                        f"Automatic restore after failed swap did not succeed: {restore_error}",
                        extra={"backup_root": str(backup_root)},
                    )

            if restored:
                message = (
                    f"Failed to move new release to {root}: {e}; "
                    f"previous installation restored from {backup_root}"
                )
            else:
                message = (
                    f"Failed to move new release to {root}: {e}; "
                    f"installation is missing, restore it manually from {backup_root}"
                )

            self._transition_to(UpdateStage.FAILED, error_message=message)
            logger.critical(
                message,
                extra={"stage": UpdateStage.SWAP.value, "backup_root": str(backup_root)},
            )
            raise SwapFailedError(
                message,
                details={
                    "source": str(new_tree),
                    "installation_root": str(root),
                    "backup_root": str(backup_root),
                    "restored": restored,
                    "error": str(e),
                },
            ) from e

    def _cleanup_workspace(self, workspace: Path) -> None:
        """Remove the scratch workspace; failures are logged, never raised."""
        try:
            safe_remove_directory(workspace, ignore_errors=False)
        except Exception as e:
            logger.warning(
                f"Failed to remove scratch workspace: {e}",
                extra={"workspace": str(workspace)},
            )

    def get_status(self) -> dict[str, Any]:
        """
        Get the current status of the orchestrator.

        Returns:
            Dictionary with the current run data.
        """
        return self._state_data.model_dump()
