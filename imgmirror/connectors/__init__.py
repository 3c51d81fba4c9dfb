"""Collaborators for the selection pipeline.

Listing: Reddit hot JSON. Images: aiohttp + Pillow. Publishers: console, webhook.
"""

from imgmirror.connectors.base import (
    BaseImageFetcher,
    BaseListingSource,
    BasePublisher,
    FetchedImage,
)
from imgmirror.connectors.factory import build_publisher
from imgmirror.connectors.images import HTTPImageFetcher
from imgmirror.connectors.publishers import ConsolePublisher, WebhookPublisher
from imgmirror.connectors.reddit import RedditListingSource

__all__ = [
    "BaseImageFetcher",
    "BaseListingSource",
    "BasePublisher",
    "FetchedImage",
    "build_publisher",
    "HTTPImageFetcher",
    "ConsolePublisher",
    "WebhookPublisher",
    "RedditListingSource",
]
