"""Post filter: hard eligibility rules plus percentile thresholds derived per batch."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from imgmirror.storage.models import Candidate

logger = logging.getLogger(__name__)

DEFAULT_MAX_TITLE_LENGTH = 257

DEFAULT_PERCENTILES: dict[str, float] = {
    "approval": 0.10,
    "score": 0.25,
    "rate": 0.25,
    "min_age": 0.10,
    "max_age": 0.90,
}

# A threshold is only derived when the eligible sample has at least this many posts
DEFAULT_MIN_SAMPLES: dict[str, int] = {
    "approval": 10,
    "age": 6,
    "score": 4,
    "rate": 4,
}

_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")
_IMGUR_PREFIXES = ("https://imgur.com/", "http://imgur.com/")


def is_image_url(url: str) -> bool:
    """Direct image links and imgur page links (rewritten at download time)."""
    return url.lower().endswith(_IMAGE_SUFFIXES) or url.startswith(_IMGUR_PREFIXES)


def percentile_value(sorted_values: Sequence[float], percentile: float) -> float:
    """Value at ``floor(n * p) - 1`` of an ascending list, index clamped to the list."""
    if not sorted_values:
        raise ValueError("percentile of an empty sample")
    index = math.floor(len(sorted_values) * percentile) - 1
    index = max(0, min(index, len(sorted_values) - 1))
    return sorted_values[index]


def approval_percent(ratio: float) -> int:
    """Approval ratio as a whole percentage, rounded half up."""
    return math.floor(ratio * 100 + 0.5)


@dataclass
class FilterCriteria:
    """Thresholds derived from one batch. ``None`` means the gate was not met."""

    min_approval_percent: int | None = None
    min_upvote_rate: float | None = None
    min_score: int | None = None
    min_age: timedelta | None = None
    max_age: timedelta | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_approval_ratio": (
                self.min_approval_percent / 100
                if self.min_approval_percent is not None
                else None
            ),
            "min_upvote_rate": self.min_upvote_rate,
            "min_score": self.min_score,
            "min_age_seconds": (
                self.min_age.total_seconds() if self.min_age is not None else None
            ),
            "max_age_seconds": (
                self.max_age.total_seconds() if self.max_age is not None else None
            ),
        }


@dataclass
class FilterResult:
    """Order-preserving output of the post filter for one batch."""

    posts: list[Candidate] = field(default_factory=list)
    criteria: FilterCriteria = field(default_factory=FilterCriteria)
    batch_size: int = 0
    eligible_count: int = 0
    insufficient_sample: bool = False


class PostFilter:
    """Select the posts worth mirroring from one ranked listing."""

    def __init__(self, config: dict[str, Any]) -> None:
        cfg = config.get("filter", {}) or {}
        self.max_title_length: int = cfg.get("max_title_length", DEFAULT_MAX_TITLE_LENGTH)
        self.min_eligible: int = max(1, int(cfg.get("min_eligible", 1)))
        self.percentiles = {**DEFAULT_PERCENTILES, **(cfg.get("percentiles") or {})}
        self.min_samples = {**DEFAULT_MIN_SAMPLES, **(cfg.get("min_samples") or {})}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_eligible(self, post: Candidate) -> bool:
        """Hard predicate, independent of the rest of the batch."""
        if post.is_self or post.stickied or post.locked:
            return False
        if not is_image_url(post.url):
            return False
        return len(post.title) <= self.max_title_length

    def compute_criteria(
        self, eligible: Sequence[Candidate], now: datetime
    ) -> FilterCriteria:
        """Derive percentile thresholds from the eligible sample."""
        count = len(eligible)
        criteria = FilterCriteria()
        if count == 0:
            return criteria

        approvals = sorted(approval_percent(p.upvote_ratio) for p in eligible)
        rates = sorted(_upvote_rate(p, now) for p in eligible)
        scores = sorted(p.score for p in eligible)
        ages = sorted(p.age_seconds(now) for p in eligible)

        pct = self.percentiles
        if count >= self.min_samples["approval"]:
            criteria.min_approval_percent = percentile_value(approvals, pct["approval"])
        if count >= self.min_samples["score"]:
            criteria.min_score = percentile_value(scores, pct["score"])
        if count >= self.min_samples["rate"]:
            criteria.min_upvote_rate = percentile_value(rates, pct["rate"])
        if count >= self.min_samples["age"]:
            criteria.min_age = timedelta(seconds=percentile_value(ages, pct["min_age"]))
            criteria.max_age = timedelta(seconds=percentile_value(ages, pct["max_age"]))
        return criteria

    def passes(self, post: Candidate, criteria: FilterCriteria, now: datetime) -> bool:
        """Hard predicate plus every active threshold."""
        if not self.is_eligible(post):
            return False
        if (
            criteria.min_approval_percent is not None
            and approval_percent(post.upvote_ratio) < criteria.min_approval_percent
        ):
            return False
        if criteria.min_score is not None and post.score < criteria.min_score:
            return False
        if (
            criteria.min_upvote_rate is not None
            and _upvote_rate(post, now) < criteria.min_upvote_rate
        ):
            return False
        age = post.age_seconds(now)
        if criteria.min_age is not None and age < criteria.min_age.total_seconds():
            return False
        if criteria.max_age is not None and age > criteria.max_age.total_seconds():
            return False
        return True

    def apply(
        self, posts: Sequence[Candidate], now: datetime | None = None
    ) -> FilterResult:
        """Filter a ranked batch, keeping the original order of survivors."""
        if now is None:
            now = datetime.now(timezone.utc)

        eligible = [p for p in posts if self.is_eligible(p)]
        result = FilterResult(batch_size=len(posts), eligible_count=len(eligible))

        if len(eligible) < self.min_eligible:
            result.insufficient_sample = True
            logger.info(
                "Analyzed %d posts, only %d usable for image mirroring",
                len(posts),
                len(eligible),
            )
            return result

        result.criteria = self.compute_criteria(eligible, now)
        result.posts = [p for p in posts if self.passes(p, result.criteria, now)]

        c = result.criteria
        logger.debug(
            "Posting criteria: min upvotes=%s, min upvote rate=%s/hour, "
            "min ratio=%s, age range=%s - %s",
            c.min_score,
            c.min_upvote_rate,
            c.min_approval_percent / 100 if c.min_approval_percent is not None else None,
            c.min_age,
            c.max_age,
        )
        logger.info(
            "PostFilter: %d posts, %d eligible, %d met the posting criteria",
            len(posts),
            len(eligible),
            len(result.posts),
        )
        return result


def _upvote_rate(post: Candidate, now: datetime) -> float:
    """Score per hour since creation (age floored at one second)."""
    hours = max(post.age_seconds(now), 1.0) / 3600.0
    return post.score / hours
