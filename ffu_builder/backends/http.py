"""Download backend for drivers, applications and updates.

This module handles:
- Resolving work item identifiers against a catalog of sources
- Streaming HTTP(S) downloads to a ``.part`` file, then renaming
- SHA-256 verification
- Retrying transient network failures with exponential backoff (tenacity)
- Copying local sources and reusing files already present
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import time
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ffu_builder.errors import CollaboratorError

if TYPE_CHECKING:
    from ffu_builder.buildconfig.schema import DownloadSource, UpdatePackage
    from ffu_builder.recovery.token import CancellationToken

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Suffix of in-progress downloads
PARTIAL_SUFFIX = ".part"

# Upper bound of one backoff wait (seconds)
MAX_RETRY_DELAY = 60.0

# Failure reasons worth retrying
_TRANSIENT_REASONS = frozenset({"timeout", "network_error", "server_error"})


class DownloadError(CollaboratorError):
    """Raised when a download fails."""

    def __init__(self, message: str, reason: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            reason: Failure reason for structured handling.
        """
        super().__init__(message)
        self.reason = reason

    @property
    def transient(self) -> bool:
        """Whether retrying might succeed."""
        return self.reason in _TRANSIENT_REASONS


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, DownloadError) and error.transient


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    token: CancellationToken | None = None,
) -> Path:
    """Download a file through a ``.part`` file.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Final path of the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.
        token: Optional cancellation token, checked between chunks.

    Returns:
        The final path.

    Raises:
        DownloadError: If the download fails or the checksum differs.
        BuildCancelledError: If the token fires mid-download.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    part_path = dest_path.with_name(dest_path.name + PARTIAL_SUFFIX)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            with part_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    if token is not None:
                        token.raise_if_cancelled()
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

        computed_checksum = sha256.hexdigest()
        if expected_checksum and computed_checksum != expected_checksum.lower():
            raise DownloadError(
                f"Checksum mismatch for {url}: "
                f"expected {expected_checksum}, got {computed_checksum}",
                reason="checksum_mismatch",
            )

        os.replace(part_path, dest_path)
        logger.info(
            "Downloaded %s (%d bytes, checksum: %s)",
            dest_path.name,
            total_bytes,
            computed_checksum[:16] + "...",
        )
        return dest_path

    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise DownloadError(
            f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
            reason="server_error" if status >= 500 else "http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout downloading {url}", reason="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}", reason="network_error"
        ) from e
    finally:
        part_path.unlink(missing_ok=True)


class HttpFetchBackend:
    """Fetch backend over a catalog of configured sources.

    Identifiers are DownloadSource names or UpdatePackage file names.
    """

    def __init__(
        self,
        catalog: Iterable[DownloadSource | UpdatePackage],
        client: httpx.Client | None = None,
        timeout: float = DOWNLOAD_TIMEOUT,
        retries: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self.catalog = {source.identifier: source for source in catalog}
        self.client = client
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay

    def _reusable(self, path: Path, sha256: str | None) -> bool:
        if not path.is_file():
            return False
        if sha256 is None:
            return True
        if compute_file_sha256(path) == sha256:
            return True
        logger.warning("Existing %s has a different checksum, fetching again", path)
        return False

    def _copy_local(self, source: Path, dest_path: Path, sha256: str | None) -> Path:
        if not source.is_file():
            raise DownloadError(f"Local source not found: {source}", reason="source_missing")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        part_path = dest_path.with_name(dest_path.name + PARTIAL_SUFFIX)
        try:
            shutil.copyfile(source, part_path)
            if sha256 and compute_file_sha256(part_path) != sha256:
                raise DownloadError(
                    f"Checksum mismatch for {source}", reason="checksum_mismatch"
                )
            os.replace(part_path, dest_path)
        finally:
            part_path.unlink(missing_ok=True)
        logger.info("Copied %s to %s", source, dest_path)
        return dest_path

    def _download_once(
        self,
        url: str,
        dest_path: Path,
        sha256: str | None,
        token: CancellationToken | None,
    ) -> Path:
        if self.client is not None:
            return download_file(self.client, url, dest_path, sha256, self.timeout, token=token)
        with httpx.Client(follow_redirects=True) as client:
            return download_file(client, url, dest_path, sha256, self.timeout, token=token)

    def _download(
        self,
        url: str,
        dest_path: Path,
        sha256: str | None,
        token: CancellationToken | None,
    ) -> Path:
        """Download with exponential backoff on transient failures.

        The backoff wait ends early when the token fires.
        """

        def sleep(seconds: float) -> None:
            if token is None:
                time.sleep(seconds)
            elif token.wait(seconds):
                token.raise_if_cancelled()

        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, max=MAX_RETRY_DELAY),
            retry=retry_if_exception(_is_transient),
            sleep=sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        return retrying(self._download_once, url, dest_path, sha256, token)

    def fetch(
        self,
        identifier: str,
        destination_dir: Path,
        token: CancellationToken | None = None,
    ) -> Path:
        """Fetch one catalog entry into a directory.

        Args:
            identifier: Catalog identifier.
            destination_dir: Directory to store the file in.
            token: Optional cancellation token.

        Returns:
            Local path of the fetched file.

        Raises:
            DownloadError: If the identifier is unknown or fetching fails.
        """
        source = self.catalog.get(identifier)
        if source is None:
            raise DownloadError(
                f"No download source configured for '{identifier}'",
                reason="unknown_identifier",
            )

        dest_path = destination_dir / source.target_name
        if self._reusable(dest_path, source.sha256):
            logger.info("Reusing %s", dest_path)
            return dest_path

        if source.path is not None:
            return self._copy_local(source.path, dest_path, source.sha256)
        if source.url is None:
            raise DownloadError(f"Source '{identifier}' has no origin", reason="source_missing")
        return self._download(source.url, dest_path, source.sha256, token)


__all__ = [
    "DOWNLOAD_TIMEOUT",
    "PARTIAL_SUFFIX",
    "DownloadError",
    "HttpFetchBackend",
    "compute_file_sha256",
    "download_file",
]
