"""HTTP download of the vendor base image into the local cache.

The cache is trusted once populated: an existing file is never re-fetched.
Downloads land in ``<name>.part`` and are renamed only after the full body
arrived, so a killed or failed download never leaves a truncated cache file.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import aiohttp

from preseed_iso.image.exceptions import FetchError
from preseed_iso.logging import get_logger

log = get_logger(source=__name__, tags=["fetch"])

CHUNK_SIZE = 1024 * 1024


def partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


class ImageFetcher:
    """Streaming HTTP client for installer images."""

    def __init__(self, timeout_seconds: int = 600, chunk_size: int = CHUNK_SIZE):
        """Initialize fetcher.

        Args:
            timeout_seconds: Total time allowed for one download
            chunk_size: Bytes read per iteration of the response stream
        """
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.chunk_size = chunk_size

    async def download(self, url: str, destination: Path) -> int:
        """Download ``url`` to ``destination`` atomically.

        Returns:
            Number of bytes written

        Raises:
            FetchError: transport error, non-2xx status or short body
        """
        partial = partial_path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers={"Accept-Encoding": "identity"}) as resp:
                    if not 200 <= resp.status < 300:
                        raise FetchError(url, f"HTTP status {resp.status}")
                    expected = resp.content_length
                    received = 0
                    with partial.open("wb") as handle:
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            handle.write(chunk)
                            received += len(chunk)
            if expected is not None and received != expected:
                raise FetchError(url, f"incomplete download ({received} of {expected} bytes)")
            os.replace(partial, destination)
            return received
        except aiohttp.ClientError as e:
            log.error(f"Network error while fetching {url}: {e}")
            raise FetchError(url, f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise FetchError(url, "timed out") from e
        finally:
            partial.unlink(missing_ok=True)


def fetch_base_image(url: str, destination: Path, *, timeout_seconds: int = 600) -> bool:
    """Ensure the base image is cached at ``destination``.

    Returns:
        True if a download happened, False if the cache was used
    """
    if destination.exists():
        log.info("ISO already exists, skipping download.")
        return False
    log.info(f"Downloading {url}")
    fetcher = ImageFetcher(timeout_seconds=timeout_seconds)
    received = asyncio.run(fetcher.download(url, destination))
    log.info(f"Download complete ({received} bytes).")
    return True
