"""Host-side download cache for tools copied into the guest.

The guest has no internet access, so release archives are fetched on the
host once and the extracted binary is reused by every later run. The
cache is a plain directory and takes no locks; only one test run is
expected to use it at a time.
"""

from __future__ import annotations

import logging
import os
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable

import httpx

from vsharness.config import settings
from vsharness.errors import DownloadError

logger = logging.getLogger(__name__)

ALLOY_ENTRY_PATTERN = "alloy-linux-amd64"

Fetcher = Callable[[str, Path], Awaitable[None]]


class DownloadCache(ABC):
    """Maps a version key to a local file, fetching it on first use."""

    @abstractmethod
    async def get_or_fetch(self, key: str) -> Path:
        ...


class DirectoryCache(DownloadCache):
    """Cache entries stored as <directory>/<prefix>-<key>."""

    def __init__(self, directory: str | Path, fetcher: Fetcher, prefix: str = "alloy"):
        self.directory = Path(directory)
        self.fetcher = fetcher
        self.prefix = prefix

    def path_for(self, key: str) -> Path:
        return self.directory / f"{self.prefix}-{key}"

    async def get_or_fetch(self, key: str) -> Path:
        path = self.path_for(key)
        if path.exists():
            logger.debug(f"Using cached {self.prefix} from host: {path}")
            return path

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(f"creating cache directory {self.directory}: {e}") from e
        await self.fetcher(key, path)
        if not path.exists():
            raise DownloadError(f"fetching {self.prefix} {key} did not produce {path}")
        logger.info(f"{self.prefix} {key} downloaded and extracted to host cache: {path}")
        return path


def alloy_cache() -> DirectoryCache:
    """Cache for Grafana Alloy binaries in settings.alloy_cache_dir."""
    return DirectoryCache(settings.alloy_cache_dir, fetch_alloy)


async def fetch_alloy(version: str, dest: Path) -> None:
    """Download the Alloy release archive and extract the binary to dest.

    Raises:
        DownloadError: On HTTP failure or when the archive has no binary
    """
    url = settings.alloy_url_template.format(version=version)
    zip_path = dest.with_name(dest.name + ".zip")
    logger.info(f"Downloading Grafana Alloy {version} on host from {url}")

    try:
        try:
            async with httpx.AsyncClient(
                timeout=settings.download_timeout, follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise DownloadError(f"downloading alloy: HTTP {response.status_code}")
                    with open(zip_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise DownloadError(f"downloading alloy from {url}: {e}") from e
        except OSError as e:
            raise DownloadError(f"writing alloy archive {zip_path}: {e}") from e

        extract_entry(zip_path, ALLOY_ENTRY_PATTERN, dest, exact_name="alloy")
    finally:
        zip_path.unlink(missing_ok=True)


def extract_entry(
    zip_path: Path,
    pattern: str,
    dest: Path,
    exact_name: str | None = None,
) -> str:
    """Extract the first archive entry whose name contains pattern.

    Args:
        zip_path: Archive to read
        pattern: Substring the entry name must contain
        dest: Where to write the extracted file (made executable)
        exact_name: Entry name that also matches

    Returns:
        Name of the extracted entry

    Raises:
        DownloadError: If the archive is unreadable or has no matching entry
    """
    try:
        with zipfile.ZipFile(zip_path) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                if pattern not in info.filename and info.filename != exact_name:
                    continue
                logger.debug(f"Extracting {info.filename} from {zip_path.name}")
                partial = dest.with_name(dest.name + ".part")
                try:
                    with archive.open(info) as src, open(partial, "wb") as out:
                        while True:
                            chunk = src.read(1024 * 1024)
                            if not chunk:
                                break
                            out.write(chunk)
                    os.chmod(partial, 0o755)
                    os.replace(partial, dest)
                finally:
                    partial.unlink(missing_ok=True)
                return info.filename
    except (zipfile.BadZipFile, OSError) as e:
        raise DownloadError(f"extracting from archive {zip_path}: {e}") from e

    raise DownloadError(f"no entry matching {pattern!r} found in {zip_path.name}")
