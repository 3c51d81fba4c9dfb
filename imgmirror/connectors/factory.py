"""Publisher factory: build the right sink from a bot's ``publisher`` config."""

from __future__ import annotations

from typing import Any, Dict

from imgmirror.connectors.base import BasePublisher
from imgmirror.connectors.publishers import ConsolePublisher, WebhookPublisher
from imgmirror.errors import ConfigError


def build_publisher(config: Dict[str, Any]) -> BasePublisher:
    """Return a publisher for the given config.

    config may have 'type' (console | webhook) and type-specific fields
    (url, headers, timeout_seconds).
    """
    publisher_type = (config.get("type") or "console").lower().strip()
    if publisher_type == "console":
        return ConsolePublisher(config)
    if publisher_type == "webhook":
        return WebhookPublisher(config)
    raise ConfigError(f"Unknown publisher type: {publisher_type}", {"type": publisher_type})
