"""
HTTP release source for pma-up.

HttpReleaseFetcher reads the three-line plaintext descriptor published at a
well-known URL::

    5.2.2
    2025-01-21
    https://files.phpmyadmin.net/phpMyAdmin/5.2.2/phpMyAdmin-5.2.2-all-languages.zip

HttpArchiveDownloader streams the archive to disk. Both use bounded timeouts
so an unresponsive server fails the run instead of hanging it.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from pma_up.config import DEFAULT_ARCHIVE_NAME_TEMPLATE, DEFAULT_VERSION_URL, UpdaterConfig
from pma_up.errors import InvalidArgumentError, UnavailableError
from pma_up.logging import get_logger
from pma_up.updates.backends import ArchiveDownloader, ReleaseDescriptor, ReleaseFetcher

logger = get_logger(__name__)

ClientFactory = Callable[[float], httpx.Client]


def _default_client_factory(timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout, follow_redirects=True)


class DescriptorFormatError(UnavailableError):
    """The release descriptor did not have the expected three lines."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details, error_code="invalid_descriptor")


class DownloadError(UnavailableError):
    """The archive could not be downloaded or saved."""


def parse_release_descriptor(text: str) -> ReleaseDescriptor:
    """
    Parse a release descriptor body.

    Lines are stripped; the first three are version, release date and
    archive URL, in that order. Anything after the third line is ignored.

    Raises:
        DescriptorFormatError: If fewer than three lines are present or a
            required line is empty.
    """
    lines = [line.strip() for line in text.splitlines()]

    if len(lines) < 3:
        raise DescriptorFormatError(
            f"Release descriptor has {len(lines)} lines, expected at least 3",
            details={"lines": len(lines)},
        )

    version, release_date, archive_url = lines[:3]
    if not version or not archive_url:
        raise DescriptorFormatError(
            "Release descriptor is missing the version or the archive URL",
            details={"version": version, "archive_url": archive_url},
        )

    return ReleaseDescriptor(
        version=version,
        release_date=release_date,
        archive_url=archive_url,
    )


class HttpReleaseFetcher(ReleaseFetcher):
    """
    Fetches the latest release descriptor over HTTP.

    Attributes:
        version_url: Descriptor endpoint.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        version_url: str = DEFAULT_VERSION_URL,
        timeout: float = 15.0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._version_url = version_url
        self._timeout = timeout
        self._client_factory = client_factory or _default_client_factory

    @classmethod
    def from_config(
        cls,
        config: UpdaterConfig,
        client_factory: ClientFactory | None = None,
    ) -> HttpReleaseFetcher:
        """Create a fetcher from the updater configuration."""
        return cls(
            version_url=config.version_url,
            timeout=config.fetch_timeout_seconds,
            client_factory=client_factory,
        )

    @property
    def version_url(self) -> str:
        """Return the descriptor URL."""
        return self._version_url

    def fetch_latest_release(self) -> ReleaseDescriptor:
        if not self._version_url:
            raise InvalidArgumentError("Release descriptor URL not configured")

        logger.debug("Fetching release descriptor", extra={"url": self._version_url})

        try:
            with self._client_factory(self._timeout) as client:
                response = client.get(self._version_url)
        except httpx.HTTPError as e:
            raise UnavailableError(
                f"Failed to fetch release descriptor: {e}",
                details={"url": self._version_url, "error": str(e)},
            ) from e

        if response.status_code != httpx.codes.OK:
            raise UnavailableError(
                f"Unexpected HTTP status {response.status_code} from {self._version_url}",
                details={"url": self._version_url, "status": response.status_code},
            )

        release = parse_release_descriptor(response.text)
        logger.info(
            f"Latest version: {release.version} ({release.release_date})",
            extra={"version": release.version, "archive_url": release.archive_url},
        )
        return release


class HttpArchiveDownloader(ArchiveDownloader):
    """
    Downloads release archives over HTTP.

    Attributes:
        timeout: Request timeout in seconds.
        archive_name_template: Saved file name; ``{version}`` is substituted.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        archive_name_template: str = DEFAULT_ARCHIVE_NAME_TEMPLATE,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._timeout = timeout
        self._archive_name_template = archive_name_template
        self._client_factory = client_factory or _default_client_factory

    @classmethod
    def from_config(
        cls,
        config: UpdaterConfig,
        client_factory: ClientFactory | None = None,
    ) -> HttpArchiveDownloader:
        """Create a downloader from the updater configuration."""
        return cls(
            timeout=config.download_timeout_seconds,
            archive_name_template=config.archive_name_template,
            client_factory=client_factory,
        )

    def archive_name(self, version: str) -> str:
        """Return the file name used to save *version*'s archive."""
        return self._archive_name_template.format(version=version)

    def download(self, url: str, destination_dir: Path, version: str) -> Path:
        if not url:
            raise InvalidArgumentError("Download URL must not be empty")
        if not destination_dir:
            raise InvalidArgumentError("Destination directory must not be empty")
        if not version:
            raise InvalidArgumentError("Version must not be empty")
        # The version comes from the server and is embedded in a file name
        if any(sep and sep in version for sep in (os.sep, os.altsep, "/")):
            raise InvalidArgumentError(
                f"Version contains a path separator: {version!r}",
                details={"version": version},
            )

        file_path = Path(destination_dir) / self.archive_name(version)
        details = {"url": url, "path": str(file_path)}

        logger.info("Downloading release archive", extra=details)

        try:
            with self._client_factory(self._timeout) as client:
                with client.stream("GET", url) as response:
                    if response.status_code != httpx.codes.OK:
                        raise DownloadError(
                            f"Unexpected HTTP status {response.status_code} from {url}",
                            details={**details, "status": response.status_code},
                        )
                    with open(file_path, "wb") as f:
                        for chunk in response.iter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise DownloadError(
                f"Failed to download {url}: {e}",
                details={**details, "error": str(e)},
            ) from e
        except OSError as e:
            raise DownloadError(
                f"Failed to save archive to {file_path}: {e}",
                details={**details, "error": str(e)},
            ) from e

        logger.debug("Downloaded release archive", extra=details)
        return file_path
