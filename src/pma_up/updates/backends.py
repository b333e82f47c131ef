"""
Release source abstraction for pma-up.

This module defines the ReleaseDescriptor model and the two collaborator
interfaces the update orchestrator depends on:
- ReleaseFetcher: tells which release is current
- ArchiveDownloader: saves that release's archive to disk

The abstraction separates "how to obtain the update" from "how to apply it".
The HTTP implementations live in pma_up.updates.http_backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class ReleaseDescriptor(BaseModel):
    """
    Immutable description of the latest published release.

    Attributes:
        version: Release version (e.g. "5.2.2").
        release_date: Release date as published (e.g. "2025-01-21").
        archive_url: Absolute URL of the downloadable zip archive.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., min_length=1, description="Release version")
    release_date: str = Field(..., description="Release date as published")
    archive_url: str = Field(..., min_length=1, description="Archive download URL")


class ReleaseFetcher(ABC):
    """Looks up the latest release."""

    @abstractmethod
    def fetch_latest_release(self) -> ReleaseDescriptor:
        """
        Return the latest release descriptor.

        Raises:
            UnavailableError: If the release source is unreachable or its
                answer is malformed.
        """


class ArchiveDownloader(ABC):
    """Saves a release archive to a local directory."""

    @abstractmethod
    def download(self, url: str, destination_dir: Path, version: str) -> Path:
        """
        Download *url* into *destination_dir*.

        Args:
            url: Archive URL.
            destination_dir: Existing directory to save into.
            version: Release version, used to name the saved file.

        Returns:
            Path of the saved archive.

        Raises:
            InvalidArgumentError: If any argument is empty.
            UnavailableError: If the download fails.
        """
