"""Collaborator interfaces used by the selection pipeline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Sequence

from PIL import Image

from imgmirror.storage.models import Candidate, PublishRequest, PublishResult


@dataclass
class FetchedImage:
    """Downloaded bytes plus the pixel grid decoded from them."""

    url: str
    data: bytes
    image: Image.Image
    format: str

    @property
    def mime_type(self) -> str:
        return Image.MIME.get(self.format.upper(), f"image/{self.format.lower()}")


class BaseListingSource(ABC):
    """Yields one ranked batch of candidates for a set of subreddits."""

    @abstractmethod
    async def fetch(self, subreddits: Sequence[str], limit: int = 100) -> List[Candidate]:
        """Return up to ``limit`` candidates in source rank order.

        Raises ListingError when the listing cannot be obtained.
        """
        ...


class BaseImageFetcher(ABC):
    """Downloads and decodes the image behind a candidate's URL."""

    @abstractmethod
    async def fetch(self, url: str) -> FetchedImage:
        """Raises ImageFetchError on download or decode failure."""
        ...


class BasePublisher(ABC):
    """Downstream sink for accepted posts."""

    @abstractmethod
    async def publish(self, request: PublishRequest) -> PublishResult:
        """Raises PublishError when the sink cannot be reached or refuses the post."""
        ...

    async def close(self) -> None:
        """Release any held resources."""
