"""
Artifact store client.

Downloads package artifacts over HTTP(S), streaming them to disk so large
packages never sit in memory. The client holds no state between downloads.
"""

from __future__ import annotations

from pathlib import Path

import httpx

from luffy_ota.errors import DownloadError
from luffy_ota.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "luffy-updater"
CHUNK_SIZE = 64 * 1024


class ArtifactFetcher:
    """
    Fetches package artifacts into local files.

    Attributes:
        timeout: Request timeout in seconds.

    Example:
        >>> fetcher = ArtifactFetcher(timeout=60.0)
        >>> await fetcher.fetch(url, Path("/home/luffy/.deb/pkg_1.0.0_arm64.deb"))
    """

    def __init__(
        self,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            timeout: Request timeout in seconds.
            client: Optional shared client. When omitted, a client is
                created per download.
        """
        self.timeout = timeout
        self._client = client

    async def fetch(self, url: str, destination: Path) -> Path:
        """
        Download a URL to a file, overwriting any existing file.

        Partially written files are left in place on failure; the caller
        decides whether to remove them.

        Args:
            url: Artifact URL.
            destination: Target file path.

        Returns:
            The destination path.

        Raises:
            DownloadError: If the request fails, returns an error status,
                or the file cannot be written.
        """
        logger.info(
            f"Downloading {destination.name}",
            extra={"url": url, "path": str(destination)},
        )

        try:
            if self._client is not None:
                size = await self._stream_to_file(self._client, url, destination)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    size = await self._stream_to_file(client, url, destination)
        except httpx.HTTPError as e:
            logger.error(
                f"Failed to download {destination.name}: {e}",
                extra={"url": url},
            )
            raise DownloadError(
                f"Failed to download {destination.name}: {e}",
                details={"url": url, "path": str(destination)},
            ) from e
        except OSError as e:
            raise DownloadError(
                f"Failed to write {destination}: {e}",
                details={"url": url, "path": str(destination)},
            ) from e

        logger.info(
            f"Downloaded {destination.name}",
            extra={"path": str(destination), "bytes": size},
        )
        return destination

    async def _stream_to_file(
        self, client: httpx.AsyncClient, url: str, destination: Path
    ) -> int:
        size = 0
        async with client.stream(
            "GET",
            url,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        ) as response:
            response.raise_for_status()
            with open(destination, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    f.write(chunk)
                    size += len(chunk)
        return size
