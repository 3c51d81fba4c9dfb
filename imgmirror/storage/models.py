"""Data models shared by the selection engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, Optional, Set

# Fingerprints only need equality and hashing; the concrete type depends on the engine.
Fingerprint = Hashable


@dataclass(frozen=True)
class Candidate:
    """One ranked post from a subreddit listing."""

    id: str
    title: str
    url: str
    score: int
    upvote_ratio: float
    created_at: datetime
    is_self: bool = False
    stickied: bool = False
    locked: bool = False
    over_18: bool = False
    spoiler: bool = False
    subreddit: str = ""
    permalink: str = ""

    @property
    def sensitive(self) -> bool:
        """Whether the post should be marked possibly sensitive downstream."""
        return self.over_18 or self.spoiler

    @property
    def short_link(self) -> str:
        return f"https://redd.it/{self.id}"

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    @classmethod
    def from_listing_child(cls, data: Dict[str, Any]) -> Candidate:
        """Create from the ``data`` object of a Reddit listing child (kind t3)."""
        created = data.get("created_utc") or 0
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            url=data.get("url") or "",
            score=int(data.get("score") or 0),
            upvote_ratio=float(data.get("upvote_ratio") or 0.0),
            created_at=datetime.fromtimestamp(float(created), tz=timezone.utc),
            is_self=bool(data.get("is_self", False)),
            stickied=bool(data.get("stickied", False)),
            locked=bool(data.get("locked", False)),
            over_18=bool(data.get("over_18", False)),
            spoiler=bool(data.get("spoiler", False)),
            subreddit=data.get("subreddit") or "",
            permalink=data.get("permalink") or "",
        )


@dataclass
class LedgerState:
    """In-memory projection of the ledger file."""

    seen_ids: Set[str] = field(default_factory=set)
    seen_fingerprints: Set[Fingerprint] = field(default_factory=set)

    def copy(self) -> LedgerState:
        return LedgerState(set(self.seen_ids), set(self.seen_fingerprints))


@dataclass
class PublishRequest:
    """What a publisher receives for an accepted candidate."""

    candidate: Candidate
    image_data: bytes
    mime_type: str

    @property
    def status_text(self) -> str:
        return f"{self.candidate.title} {self.candidate.short_link}"


@dataclass
class PublishResult:
    """Outcome reported by a publisher."""

    success: bool
    url: Optional[str] = None
    error_message: Optional[str] = None
