"""YAML configuration loading and validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from imgmirror.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_LEDGER_PATH = "data/posts.csv"
DEFAULT_LISTING_LIMIT = 100

_PERCENTILE_KEYS = ("approval", "score", "rate", "min_age", "max_age")


@dataclass
class BotConfig:
    """One downstream target: the subreddits it mirrors and where it posts."""

    name: str
    subreddits: List[str]
    publisher: Dict[str, Any] = field(default_factory=dict)

    @property
    def multireddit(self) -> str:
        return "+".join(self.subreddits)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], index: int) -> BotConfig:
        subs = cfg.get("subreddits") or []
        if isinstance(subs, str):
            subs = [subs]
        name = cfg.get("name") or f"bot{index}"
        publisher = dict(cfg.get("publisher") or {"type": "console"})
        publisher.setdefault("name", name)
        return cls(name=str(name), subreddits=[str(s) for s in subs], publisher=publisher)


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load, validate and return the YAML configuration."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Unable to read config file: {e}", {"path": path}) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse config file: {e}", {"path": path}) from e

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigError("Config root must be a mapping", {"path": path})
    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Raise ConfigError for settings the pipeline cannot run with."""
    bots = config.get("bots")
    if not isinstance(bots, list) or not bots:
        raise ConfigError("Config must define at least one bot under 'bots'")

    percentiles = (config.get("filter") or {}).get("percentiles") or {}
    for key, value in percentiles.items():
        if key not in _PERCENTILE_KEYS:
            raise ConfigError(f"Unknown percentile: {key}", {"key": key})
        if not isinstance(value, (int, float)) or not 0 < value <= 1:
            raise ConfigError(f"Percentile {key} must be in (0, 1]", {"key": key, "value": value})

    algorithm = (config.get("fingerprint") or {}).get("algorithm", "gradient")
    if algorithm not in ("gradient", "perceptual"):
        raise ConfigError(f"Unknown fingerprint algorithm: {algorithm}", {"algorithm": algorithm})


def get_bots(config: Dict[str, Any], names: Optional[List[str]] = None) -> List[BotConfig]:
    """Build bot configs, skipping bots without subreddits."""
    bots = []
    for i, cfg in enumerate(config.get("bots") or []):
        bot = BotConfig.from_config(cfg or {}, i)
        if names and bot.name not in names:
            continue
        if not bot.subreddits:
            logger.warning("Bot %s has no subreddits configured; skipping", bot.name)
            continue
        bots.append(bot)
    return bots


def ledger_path(config: Dict[str, Any], override: Optional[str] = None) -> str:
    return override or config.get("ledger_path") or DEFAULT_LEDGER_PATH


def listing_limit(config: Dict[str, Any]) -> int:
    return int((config.get("listing") or {}).get("limit", DEFAULT_LISTING_LIMIT))

