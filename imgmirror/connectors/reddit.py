"""Reddit listing source: the public "hot" JSON listing for one or more subreddits."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Sequence

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from imgmirror.connectors.base import BaseListingSource
from imgmirror.errors import ListingError
from imgmirror.storage.models import Candidate

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.reddit.com"
DEFAULT_USER_AGENT = "imgmirror/0.1 (image mirroring bot)"
DEFAULT_TIMEOUT = 30


def join_subreddits(subreddits: Sequence[str]) -> str:
    """``["pics", "aww"]`` -> ``"pics+aww"`` (Reddit multi-subreddit syntax)."""
    return "+".join(s.strip().removeprefix("r/") for s in subreddits if s.strip())


def parse_listing(data: Any) -> List[Candidate]:
    """Convert a Reddit listing document into candidates, keeping rank order."""
    if not isinstance(data, dict):
        raise ValueError("listing response is not a JSON object")
    children = (data.get("data") or {}).get("children") or []
    out: List[Candidate] = []
    for child in children:
        if not isinstance(child, dict) or child.get("kind") != "t3":
            continue
        post = child.get("data") or {}
        if not post.get("id"):
            continue
        try:
            out.append(Candidate.from_listing_child(post))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed post %s: %s", post.get("id"), e)
    return out


class RedditListingSource(BaseListingSource):
    """Fetch ranked posts from ``/r/<subs>/hot.json``."""

    def __init__(self, config: Dict[str, Any]) -> None:
        cfg = config.get("listing", {}) or {}
        self.base_url = (cfg.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self.user_agent = cfg.get("user_agent") or DEFAULT_USER_AGENT
        self.timeout = cfg.get("timeout_seconds", DEFAULT_TIMEOUT)
        self.sort = cfg.get("sort", "hot")

    async def fetch(self, subreddits: Sequence[str], limit: int = 100) -> List[Candidate]:
        name = join_subreddits(subreddits)
        if not name:
            raise ListingError("No subreddits configured", subreddit="")
        logger.debug('Downloading list of "%s" posts on /r/%s...', self.sort, name)
        try:
            data = await self._fetch_json(name, limit)
            return parse_listing(data)[:limit]
        except aiohttp.ClientResponseError as e:
            raise ListingError(f"Reddit returned {e.status}", subreddit=name, status=e.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            raise ListingError(f"Unable to connect to Reddit: {e}", subreddit=name) from e

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _fetch_json(self, name: str, limit: int) -> Any:
        url = f"{self.base_url}/r/{name}/{self.sort}.json"
        headers = {"User-Agent": self.user_agent}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(
                url, params={"limit": str(limit), "raw_json": "1"}, headers=headers
            ) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)
