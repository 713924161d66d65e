"""
Streaming package download with progress reporting.

Progress is reported through a callback receiving DownloadProgress
snapshots: one per received chunk, then a final one with complete=True
whose byte count equals the size of the file on disk.
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

import aiohttp

from ..utils.file_operations import safe_join
from .errors import DownloadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadProgress:
    downloaded_bytes: int
    total_bytes: Optional[int] = None
    complete: bool = False

    @property
    def percent(self) -> Optional[int]:
        """Integer percent 0-100, or None when the server sent no content-length."""
        if self.total_bytes is None:
            return None
        if self.total_bytes == 0:
            return 100
        return max(0, min(100, int(self.downloaded_bytes * 100 / self.total_bytes)))

    def to_dict(self):
        return {
            'downloaded_bytes': self.downloaded_bytes,
            'total_bytes': self.total_bytes,
            'percent': self.percent,
            'complete': self.complete,
        }


ProgressCallback = Callable[[DownloadProgress], None]


def package_url(base_url: str, filename: str) -> str:
    """Builds the package URL from the download base URL and a file name."""
    return base_url + quote(filename)


class Downloader:
    """Downloads packages into a single designated directory."""

    def __init__(self, download_dir: str, chunk_size: int = 65536, timeout: Optional[float] = 1200):
        self.download_dir = download_dir
        self.chunk_size = chunk_size
        self.timeout = timeout

    def destination_for(self, filename: str) -> Path:
        """Resolves the download path for filename, refusing anything outside download_dir."""
        try:
            return safe_join(self.download_dir, filename)
        except ValueError as e:
            raise DownloadError(str(e))

    async def download(self, url: str, filename: str,
                       on_progress: Optional[ProgressCallback] = None) -> Path:
        """
        Stream url into download_dir/filename.

        Args:
            url: Package URL
            filename: Untrusted file name from the manifest
            on_progress: Called with a DownloadProgress per chunk and once on completion

        Returns:
            Path: The downloaded file

        Raises:
            DownloadError: On transport failure, non-200 status or unsafe file name
            OSError: If the download directory cannot be created or written
        """
        destination = self.destination_for(filename)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + '.part')

        def report(progress):
            if on_progress is not None:
                on_progress(progress)

        logger.info(f"Downloading {url} to {destination}")
        try:
            # Bytes on disk must be the bytes the digest was computed over
            async with aiohttp.ClientSession(auto_decompress=False) as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    if resp.status != 200:
                        raise DownloadError(f"Failed to download package. Status: {resp.status}")

                    total_size = resp.content_length
                    downloaded = 0
                    report(DownloadProgress(0, total_size))

                    # Stream download to disk
                    with open(partial, 'wb') as f:
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            f.write(chunk)
                            downloaded += len(chunk)
                            report(DownloadProgress(downloaded, total_size))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._discard(partial)
            raise DownloadError(f"Download interrupted: {e or type(e).__name__}")
        except BaseException:
            self._discard(partial)
            raise

        if total_size is not None and downloaded != total_size:
            self._discard(partial)
            raise DownloadError(f"Download incomplete: received {downloaded} of {total_size} bytes")

        os.replace(partial, destination)
        size = destination.stat().st_size
        report(DownloadProgress(size, total_size, complete=True))
        logger.info(f"Download complete: {destination} ({size} bytes)")
        return destination

    @staticmethod
    def _discard(path: Path):
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning(f"Could not remove partial download {path}: {e}")
