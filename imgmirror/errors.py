"""Exception hierarchy for imgmirror.

Startup errors (config, ledger) abort the process; everything else is handled
per cycle or per candidate by the pipeline.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class MirrorError(Exception):
    """Base class for all imgmirror errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(MirrorError):
    """Configuration file missing, unparsable or invalid."""


class LedgerError(MirrorError):
    """The ledger file cannot be opened, read or appended to."""

    def __init__(self, message: str, path: str):
        self.path = path
        super().__init__(message, {"path": path})


class ListingError(MirrorError):
    """The ranked listing could not be fetched from the source platform."""

    def __init__(self, message: str, subreddit: str, status: Optional[int] = None):
        self.subreddit = subreddit
        self.status = status
        super().__init__(message, {"subreddit": subreddit, "status": status})


class ImageFetchError(MirrorError):
    """Download or decode of a candidate's image failed."""

    def __init__(self, message: str, url: str):
        self.url = url
        super().__init__(message, {"url": url})


class FingerprintError(MirrorError):
    """The fingerprint engine could not hash a decoded image."""


class PublishError(MirrorError):
    """The publishing sink refused or failed to accept a post."""
