"""Size-capped HTTP downloads of QQ media and avatars."""

from __future__ import annotations

import httpx
from loguru import logger

from qqbridge.core.errors import MediaDownloadError, MediaTooLargeError

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/87.0.4280.88 Safari/537.36"
)


class HttpFetcher:
    """Streams a URL into memory and aborts once ``max_bytes`` is exceeded."""

    def __init__(
        self,
        *,
        max_bytes: int,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch(self, url: str) -> bytes:
        if not url.startswith(("http://", "https://")):
            raise MediaDownloadError(f"unsupported media url: {url!r}")
        chunks: list[bytes] = []
        total = 0
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        raise MediaTooLargeError(f"{url} declares {declared} bytes")
                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        if total > self.max_bytes:
                            raise MediaTooLargeError(f"{url} exceeds {self.max_bytes} bytes")
                        chunks.append(chunk)
        except httpx.HTTPError as e:
            logger.debug("Download of {} failed: {}", url, e)
            raise MediaDownloadError(f"failed to download {url}: {e}") from e
        return b"".join(chunks)
