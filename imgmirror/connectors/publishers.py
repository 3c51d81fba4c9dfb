"""Publishing sinks: a console dry-run sink and a generic multipart webhook."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any, Dict, Optional

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from imgmirror.connectors.base import BasePublisher
from imgmirror.errors import ConfigError, PublishError
from imgmirror.storage.models import PublishRequest, PublishResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60
_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def resolve_headers(headers: Dict[str, Any]) -> Dict[str, str]:
    """Resolve ${ENV_VAR} in header values. Headers that resolve to nothing are dropped."""
    out: Dict[str, str] = {}
    for k, v in headers.items():
        s = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), str(v)).strip()
        if not s or (k.lower() == "authorization" and s.lower() == "bearer"):
            continue
        out[k] = s
    return out


class ConsolePublisher(BasePublisher):
    """Logs what would be posted. Useful for dry runs."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.name = config.get("name", "console")

    async def publish(self, request: PublishRequest) -> PublishResult:
        logger.info(
            "[%s] would post %s (%s, %d bytes, sensitive=%s)",
            self.name,
            request.status_text,
            request.mime_type,
            len(request.image_data),
            request.candidate.sensitive,
        )
        return PublishResult(success=True)


class WebhookPublisher(BasePublisher):
    """POST the image and its caption as multipart form data to a URL.

    Form fields: ``status`` (title + short link), ``title``, ``link``,
    ``sensitive`` ("true"/"false"), ``post_id`` and the ``media`` file part.
    A JSON response may carry the published ``url``.
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        self.url: str = config.get("url", "")
        if not self.url:
            raise ConfigError("Webhook publisher requires a url")
        self.headers = resolve_headers(config.get("headers") or {})
        self.timeout = config.get("timeout_seconds", DEFAULT_TIMEOUT)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self.headers,
            )
        return self._session

    async def publish(self, request: PublishRequest) -> PublishResult:
        try:
            payload = await self._post(request)
        except aiohttp.ClientResponseError as e:
            raise PublishError(f"Webhook returned {e.status}", {"url": self.url}) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise PublishError(f"Unable to reach webhook: {e}", {"url": self.url}) from e
        except ValueError as e:
            raise PublishError(f"Webhook sent an invalid response: {e}", {"url": self.url}) from e
        url = payload.get("url") if isinstance(payload, dict) else None
        return PublishResult(success=True, url=url)

    @retry(
        retry=retry_if_exception_type(aiohttp.ClientConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _post(self, request: PublishRequest) -> Any:
        candidate = request.candidate
        form = aiohttp.FormData()
        form.add_field("status", request.status_text)
        form.add_field("title", candidate.title)
        form.add_field("link", candidate.short_link)
        form.add_field("sensitive", "true" if candidate.sensitive else "false")
        form.add_field("post_id", candidate.id)
        form.add_field(
            "media",
            request.image_data,
            filename=f"{candidate.id}.{request.mime_type.split('/')[-1]}",
            content_type=request.mime_type,
        )
        session = await self._get_session()
        async with session.post(self.url, data=form) as resp:
            resp.raise_for_status()
            if resp.content_type == "application/json":
                return await resp.json()
            return None

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
