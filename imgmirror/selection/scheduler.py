"""Rank-based pacing: posts found near the top of the list mean post again soon."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Scheduler:
    """Turn the rank of the accepted post into the wait before the next cycle."""

    def __init__(self, config: dict[str, Any]) -> None:
        cfg = config.get("scheduler", {}) or {}
        self.cycle = timedelta(minutes=cfg.get("cycle_minutes", 45))
        self.floor = timedelta(minutes=cfg.get("floor_minutes", 5))
        ceiling = cfg.get("ceiling_minutes", 45)
        self.ceiling: Optional[timedelta] = (
            timedelta(minutes=ceiling) if ceiling is not None else None
        )
        self.fallback = timedelta(minutes=cfg.get("fallback_minutes", 45))
        # Sleep after a failed listing fetch; not governed by rank
        self.retry_interval = timedelta(seconds=cfg.get("retry_seconds", 60))

        if self.ceiling is not None and self.ceiling < self.floor:
            raise ValueError("scheduler ceiling must not be below the floor")

    def next_wait(self, rank_index: Optional[int], total_eligible: int) -> timedelta:
        """Wait before the next cycle.

        ``rank_index`` is None when nothing was accepted, which yields the
        fallback wait regardless of ``total_eligible``.
        """
        if rank_index is None or total_eligible <= 0:
            return self.fallback

        fraction = rank_index / total_eligible
        wait = self.cycle * fraction
        if wait < self.floor:
            wait = self.floor
        if self.ceiling is not None and wait > self.ceiling:
            wait = self.ceiling
        return wait
