"""
Bulk Export Downloader

Streams an export's newline-delimited JSON payload in byte chunks.
"""

from typing import AsyncIterator

import structlog

from healthrelay.errors import DownloadError
from healthrelay.provider.client import ProviderClient

logger = structlog.get_logger(__name__)


class ExportDownloader:
    """
    Authenticated, chunked download of an export artifact.

    Usage:
        downloader = ExportDownloader(provider_client)
        async for chunk in downloader.stream(download_link):
            ...
    """

    def __init__(
        self,
        provider: ProviderClient,
        chunk_size: int = 64 * 1024,
        timeout_seconds: float | None = None,
    ):
        self.provider = provider
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds or provider.settings.download_timeout_seconds

    async def stream(self, reference: str) -> AsyncIterator[bytes]:
        """
        Yield the payload in chunks.

        Raises:
            ProviderNotConfiguredError: credentials are missing
            DownloadError: non-2xx response
            httpx.TransportError: network failure or timeout
        """
        auth = self.provider.auth()
        url = self.provider.resolve(reference)

        async with self.provider.session(timeout=self.timeout_seconds) as client:
            async with client.stream(
                "GET",
                url,
                auth=auth,
                headers={"Accept": "application/jsonl"},
                timeout=self.timeout_seconds,
            ) as response:
                if response.is_error:
                    await response.aread()
                    logger.error(
                        "Export download failed",
                        url=url,
                        status_code=response.status_code,
                        body=response.text[:500],
                    )
                    raise DownloadError(reference, status_code=response.status_code)

                async for chunk in response.aiter_bytes(self.chunk_size):
                    yield chunk
