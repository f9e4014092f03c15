"""Kernel package fetch module.

This module handles:
- Reading the kernel URL lists produced by the crawlers
- Resumable downloads with per-attempt timeout and bounded retries
- A bounded worker pool for parallel downloads
- The two-phase CoreOS fetch (version document, then image)
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import httpx

from probe_builder.kernels.filenames import coreos_image_filename
from probe_builder.types import Family, FetchOutcome

logger = logging.getLogger(__name__)

# Timeout for small metadata documents (seconds)
METADATA_TIMEOUT = 30

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Pause between attempts (seconds), multiplied by the attempt number
RETRY_BACKOFF = 2.0

COREOS_VERSION_DOCUMENT = "version.txt"
COREOS_IMAGE_NAME = "coreos_developer_container.bin.bz2"
COREOS_VERSION_RE = re.compile(r"^COREOS_VERSION=(?P<version>\S+)\s*$", re.MULTILINE)


class DownloadError(Exception):
    """Raised when a kernel package download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


@dataclass
class DownloadResult:
    """Result of a kernel package download."""

    path: Path
    size_bytes: int
    resumed: bool = False


def default_client() -> httpx.Client:
    """Return the HTTP client used for kernel downloads."""
    return httpx.Client(follow_redirects=True)


def read_url_list(path: Path) -> list[str]:
    """Read a crawler URL list.

    Args:
        path: File with one URL per line; blank lines and # comments ignored.

    Returns:
        URLs in file order, without duplicates.
    """
    urls: list[str] = []
    seen: set[str] = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line not in seen:
            seen.add(line)
            urls.append(line)
    return urls


def url_basename(url: str) -> str:
    """Return the filename part of a URL."""
    return httpx.URL(url).path.rstrip("/").rsplit("/", 1)[-1]


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file, continuing a partial download if one exists.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Timeout for this attempt in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path and final size.

    Raises:
        DownloadError: If the download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        offset = dest_path.stat().st_size if dest_path.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        with client.stream("GET", url, headers=headers, timeout=timeout) as response:
            if response.status_code == 416 and offset:
                # Range starts at EOF: the previous attempt already completed
                logger.debug("%s already complete (%d bytes)", dest_path.name, offset)
                return DownloadResult(path=dest_path, size_bytes=offset, resumed=True)

            response.raise_for_status()

            resumed = response.status_code == 206
            mode = "ab" if resumed else "wb"
            with dest_path.open(mode) as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)

        size = dest_path.stat().st_size
        logger.info(
            "Downloaded %s (%d bytes%s)",
            dest_path.name,
            size,
            ", resumed" if resumed else "",
        )
        return DownloadResult(path=dest_path, size_bytes=size, resumed=resumed)

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    except OSError as e:
        raise DownloadError(
            f"Cannot write {dest_path}: {e}",
            code="io_error",
        ) from e


def download_with_retries(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    retries: int,
    timeout: float,
    backoff: float = RETRY_BACKOFF,
) -> DownloadResult:
    """Download a file, retrying failed attempts.

    Each attempt resumes from whatever the previous one left on disk.

    Raises:
        DownloadError: With code retries_exhausted once every attempt failed.
    """
    last_error: DownloadError | None = None
    for attempt in range(1, retries + 1):
        try:
            return download_file(client, url, dest_path, timeout=timeout)
        except DownloadError as e:
            last_error = e
            logger.warning(
                "Attempt %d/%d for %s failed: %s", attempt, retries, url, e
            )
            if attempt < retries and backoff:
                time.sleep(backoff * attempt)

    raise DownloadError(
        f"Giving up on {url} after {retries} attempts: {last_error}",
        code="retries_exhausted",
    )


def fetch_coreos_version(client: httpx.Client, release_url: str) -> str:
    """Fetch and parse the version document of a CoreOS release directory.

    Raises:
        DownloadError: If the document cannot be fetched or parsed.
    """
    url = f"{release_url.rstrip('/')}/{COREOS_VERSION_DOCUMENT}"
    logger.debug("Fetching CoreOS version from %s", url)

    try:
        response = client.get(url, timeout=METADATA_TIMEOUT)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error fetching {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout fetching {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error fetching {url}: {e}",
            code="network_error",
        ) from e

    match = COREOS_VERSION_RE.search(response.text)
    if not match:
        raise DownloadError(
            f"No COREOS_VERSION in {url}",
            code="metadata_error",
        )
    return match["version"]


def _fetch_one(
    client: httpx.Client,
    family: Family,
    url: str,
    dest_dir: Path,
    retries: int,
    timeout: float,
    backoff: float,
) -> FetchOutcome:
    """Fetch one list entry, turning errors into an outcome."""
    dest: Path | None = None
    try:
        if family == Family.COREOS:
            version = fetch_coreos_version(client, url)
            image_url = f"{url.rstrip('/')}/{COREOS_IMAGE_NAME}"
            dest = dest_dir / coreos_image_filename(version)
            download_with_retries(client, image_url, dest, retries, timeout, backoff)
        else:
            filename = url_basename(url)
            if not filename:
                raise DownloadError(f"No filename in {url}", code="invalid_url")
            dest = dest_dir / filename
            download_with_retries(client, url, dest, retries, timeout, backoff)
    except DownloadError as e:
        logger.error("Fetch failed for %s: %s", url, e)
        return FetchOutcome(
            family=family, url=url, success=False, path=dest, error=str(e)
        )

    return FetchOutcome(family=family, url=url, success=True, path=dest)


def fetch_kernels(
    family: Family,
    urls: Iterable[str],
    dest_dir: Path,
    concurrency: int,
    retries: int,
    timeout: float,
    backoff: float = RETRY_BACKOFF,
    client_factory: Callable[[], httpx.Client] | None = None,
) -> list[FetchOutcome]:
    """Download a family's kernel packages with bounded concurrency.

    Args:
        family: Distribution family the URLs belong to.
        urls: Download locations (CoreOS: release directory URLs).
        dest_dir: Directory receiving the packages.
        concurrency: Worker count; 0 disables fetching entirely. Families
            that must be fetched serially are passed 1 by the caller.
        retries: Attempts per download.
        timeout: Timeout per attempt in seconds.
        backoff: Base pause between attempts in seconds.
        client_factory: Builds the HTTP client shared by the workers.

    Returns:
        One FetchOutcome per URL, in input order.
    """
    url_list = list(urls)
    if concurrency == 0:
        logger.info("Fetching disabled, using archives already in %s", dest_dir)
        return []
    if not url_list:
        return []

    workers = min(concurrency, len(url_list))
    dest_dir.mkdir(parents=True, exist_ok=True)
    logger.info(
        "Fetching %d %s package(s) with %d worker(s)",
        len(url_list),
        family.value,
        workers,
    )

    factory = client_factory or default_client
    with factory() as client, ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(
                _fetch_one, client, family, url, dest_dir, retries, timeout, backoff
            )
            for url in url_list
        ]
        return [future.result() for future in futures]


__all__ = [
    "COREOS_IMAGE_NAME",
    "DownloadError",
    "DownloadResult",
    "default_client",
    "download_file",
    "download_with_retries",
    "fetch_coreos_version",
    "fetch_kernels",
    "read_url_list",
    "url_basename",
]
