"""
In-place upgrade pipeline for pma-up.

This package implements the complete upgrade:
- Release lookup and archive download (HTTP backend)
- Zip-slip-resistant archive extraction
- Cross-device-safe directory relocation and file copy
- Orchestrator sequencing backup, swap and config restore
- Backup naming and restore
"""

from pma_up.updates.backends import ArchiveDownloader, ReleaseDescriptor, ReleaseFetcher
from pma_up.updates.extractor import ArchiveExtractor, ExtractionError, PathTraversalError
from pma_up.updates.http_backend import (
    HttpArchiveDownloader,
    HttpReleaseFetcher,
    parse_release_descriptor,
)
from pma_up.updates.operations import (
    CrossDeviceCopyError,
    FileCopier,
    FilesystemError,
    NotRegularFileError,
    PathMover,
    SourceCleanupError,
    SourceMissingError,
)
from pma_up.updates.rollback import backup_path_for, find_backups, restore_from_backup
from pma_up.updates.state_machine import (
    Severity,
    SwapFailedError,
    UpdateFailedError,
    UpdateOrchestrator,
    UpdateResult,
    UpdateRunData,
    UpdateStage,
)

__all__ = [
    # Release source
    "ReleaseDescriptor",
    "ReleaseFetcher",
    "ArchiveDownloader",
    "HttpReleaseFetcher",
    "HttpArchiveDownloader",
    "parse_release_descriptor",
    # Extraction
    "ArchiveExtractor",
    "ExtractionError",
    "PathTraversalError",
    # Operations
    "PathMover",
    "FileCopier",
    "FilesystemError",
    "SourceMissingError",
    "NotRegularFileError",
    "CrossDeviceCopyError",
    "SourceCleanupError",
    # Orchestrator
    "UpdateOrchestrator",
    "UpdateStage",
    "UpdateRunData",
    "UpdateResult",
    "UpdateFailedError",
    "SwapFailedError",
    "Severity",
    # Backups
    "backup_path_for",
    "find_backups",
    "restore_from_backup",
]
