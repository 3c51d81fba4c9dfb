"""Download a post's image and decode it into a pixel grid."""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Dict

import aiohttp
from PIL import Image, UnidentifiedImageError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from imgmirror.connectors.base import BaseImageFetcher, FetchedImage
from imgmirror.errors import ImageFetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "imgmirror/0.1 (image mirroring bot)"
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_BYTES = 20 * 1024 * 1024
_CHUNK_SIZE = 64 * 1024

_IMGUR_PAGE_PREFIXES = ("http://imgur.com/", "https://imgur.com/")


def direct_image_url(url: str) -> str:
    """Rewrite imgur page links to the direct i.imgur.com JPEG."""
    for prefix in _IMGUR_PAGE_PREFIXES:
        if url.startswith(prefix):
            return "https://i.imgur.com/" + url[len(prefix):] + ".jpg"
    return url


def decode_image(data: bytes, url: str = "") -> FetchedImage:
    """Decode raw bytes with Pillow. Raises ImageFetchError for unreadable data."""
    if not data:
        raise ImageFetchError("Empty image body", url)
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise ImageFetchError(f"Unable to decode image: {e}", url) from e
    return FetchedImage(url=url, data=data, image=image, format=image.format or "jpeg")


class HTTPImageFetcher(BaseImageFetcher):
    """aiohttp downloader; decoding runs in the default executor."""

    def __init__(self, config: Dict[str, Any]) -> None:
        cfg = config.get("images", {}) or {}
        self.user_agent = cfg.get("user_agent") or DEFAULT_USER_AGENT
        self.timeout = cfg.get("timeout_seconds", DEFAULT_TIMEOUT)
        self.max_bytes = cfg.get("max_bytes", DEFAULT_MAX_BYTES)

    async def fetch(self, url: str) -> FetchedImage:
        target = direct_image_url(url)
        logger.debug("Downloading image from %s...", target)
        try:
            data = await self._download(target)
        except aiohttp.ClientResponseError as e:
            raise ImageFetchError(f"Image host returned {e.status}", target) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ImageFetchError(f"Unable to download image: {e}", target) from e

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, decode_image, data, target)

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _download(self, url: str) -> bytes:
        headers = {"User-Agent": self.user_agent}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers) as resp:
                resp.raise_for_status()
                return await self._read_limited(resp, url)

    async def _read_limited(self, resp: aiohttp.ClientResponse, url: str) -> bytes:
        """Read the body, refusing anything over ``max_bytes`` with or without Content-Length."""
        if resp.content_length and resp.content_length > self.max_bytes:
            raise ImageFetchError(f"Image too large ({resp.content_length} bytes)", url)
        chunks = []
        size = 0
        async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
            size += len(chunk)
            if size > self.max_bytes:
                raise ImageFetchError(f"Image larger than {self.max_bytes} bytes", url)
            chunks.append(chunk)
        return b"".join(chunks)
