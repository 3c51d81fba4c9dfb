"""Selection loop and bot orchestration for imgmirror.

Each bot repeatedly fetches a ranked listing, filters it, picks the first post
whose ID and image fingerprint are both new, hands it to its publisher, and
sleeps for a rank-dependent interval. All bots share one DedupLedger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from imgmirror.connectors.base import (
    BaseImageFetcher,
    BaseListingSource,
    BasePublisher,
    FetchedImage,
)
from imgmirror.connectors.factory import build_publisher
from imgmirror.connectors.images import HTTPImageFetcher
from imgmirror.connectors.reddit import RedditListingSource
from imgmirror.errors import FingerprintError, ImageFetchError, ListingError, PublishError
from imgmirror.pipeline.config import BotConfig, get_bots, ledger_path, listing_limit
from imgmirror.selection.filters import PostFilter
from imgmirror.selection.fingerprint import FingerprintEngine, build_fingerprint_engine
from imgmirror.selection.scheduler import Scheduler
from imgmirror.storage.ledger import DedupLedger
from imgmirror.storage.models import (
    Candidate,
    Fingerprint,
    PublishRequest,
    PublishResult,
)

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    FILTERING = "filtering"
    SCANNING = "scanning"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


@dataclass
class SelectionOutcome:
    """Terminal state of one scan over a filtered listing."""

    state: CycleState
    candidate: Optional[Candidate] = None
    image: Optional[FetchedImage] = None
    fingerprint: Optional[Fingerprint] = None
    rank_index: Optional[int] = None
    total_eligible: int = 0
    skipped: int = 0
    rejected: int = 0
    insufficient_sample: bool = False

    @property
    def accepted(self) -> bool:
        return self.state is CycleState.ACCEPTED


@dataclass
class CycleReport:
    """Everything one bot cycle produced."""

    bot: str
    outcome: SelectionOutcome
    wait: timedelta
    fetched: int = 0
    publish_result: Optional[PublishResult] = None
    duration_seconds: float = 0.0


class SelectionLoop:
    """Filter a batch, then scan it in rank order until one post is accepted.

    Posts already in the ledger are skipped without downloading. Every other
    post ends in exactly one ledger write: ``reject`` on download, decode or
    hashing failure or a known fingerprint, ``accept`` otherwise.
    """

    def __init__(
        self,
        ledger: DedupLedger,
        image_fetcher: BaseImageFetcher,
        engine: FingerprintEngine,
        post_filter: PostFilter,
    ):
        self.ledger = ledger
        self.image_fetcher = image_fetcher
        self.engine = engine
        self.post_filter = post_filter
        self.state = CycleState.IDLE

    async def select(
        self, posts: Sequence[Candidate], now: Optional[datetime] = None
    ) -> SelectionOutcome:
        self.state = CycleState.FILTERING
        result = self.post_filter.apply(posts, now=now)
        outcome = SelectionOutcome(
            state=CycleState.EXHAUSTED,
            total_eligible=len(result.posts),
            insufficient_sample=result.insufficient_sample,
        )

        self.state = CycleState.SCANNING
        for rank, post in enumerate(result.posts):
            if self.ledger.contains_id(post.id):
                outcome.skipped += 1
                continue
            logger.debug(
                "Potentially unique post %s found at a post depth of %d / %d",
                post.id, rank, len(result.posts),
            )

            try:
                fetched = await self.image_fetcher.fetch(post.url)
                fp = await self._fingerprint(fetched)
            except (ImageFetchError, FingerprintError) as e:
                logger.warning("Skipping post %s: %s", post.id, e)
                self.ledger.reject(post.id)
                outcome.rejected += 1
                continue

            if not self.ledger.commit_fingerprint(post.id, fp):
                logger.debug("Duplicate image detected, skipping post %s", post.id)
                outcome.rejected += 1
                continue

            logger.debug("Image (type: %s) for %s is valid", fetched.format, post.id)
            outcome.state = CycleState.ACCEPTED
            outcome.candidate = post
            outcome.image = fetched
            outcome.fingerprint = fp
            outcome.rank_index = rank
            break

        self.state = outcome.state
        return outcome

    async def _fingerprint(self, fetched: FetchedImage) -> Fingerprint:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.engine.fingerprint, fetched.image)


class BotWorker:
    """Runs the fetch -> select -> publish -> wait cycle for one bot."""

    def __init__(
        self,
        bot: BotConfig,
        listing: BaseListingSource,
        selection: SelectionLoop,
        scheduler: Scheduler,
        publisher: BasePublisher,
        limit: int = 100,
    ):
        self.bot = bot
        self.listing = listing
        self.selection = selection
        self.scheduler = scheduler
        self.publisher = publisher
        self.limit = limit

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """One full cycle. Raises ListingError when the listing cannot be fetched."""
        t0 = time.monotonic()
        posts = await self.listing.fetch(self.bot.subreddits, limit=self.limit)
        outcome = await self.selection.select(posts, now=now)
        wait = self.scheduler.next_wait(outcome.rank_index, outcome.total_eligible)
        report = CycleReport(bot=self.bot.name, outcome=outcome, wait=wait, fetched=len(posts))

        if outcome.accepted:
            report.publish_result = await self._publish(outcome)
        else:
            logger.info("No usable posts from /r/%s", self.bot.multireddit)

        report.duration_seconds = time.monotonic() - t0
        logger.info("[%s] next cycle in %s", self.bot.name, _round(wait))
        return report

    async def _publish(self, outcome: SelectionOutcome) -> PublishResult:
        assert outcome.candidate is not None and outcome.image is not None
        request = PublishRequest(
            candidate=outcome.candidate,
            image_data=outcome.image.data,
            mime_type=outcome.image.mime_type,
        )
        logger.debug("Uploading %s via %s...", outcome.candidate.id, type(self.publisher).__name__)
        try:
            result = await self.publisher.publish(request)
        except PublishError as e:
            # The ledger entry stays: the post is consumed even if publishing failed
            logger.error("[%s] unable to publish %s: %s", self.bot.name, outcome.candidate.id, e)
            return PublishResult(success=False, error_message=e.message)
        if result.success:
            logger.info("[%s] %s %s", self.bot.name, request.status_text, result.url or "")
        else:
            logger.error("[%s] publish failed for %s: %s", self.bot.name, outcome.candidate.id, result.error_message)
        return result

    async def run(self, stop: asyncio.Event) -> None:
        """Cycle until ``stop`` is set; checked before every fetch and during waits."""
        while not stop.is_set():
            try:
                report = await self.run_cycle()
            except ListingError as e:
                logger.error("[%s] unable to fetch listing: %s", self.bot.name, e)
                await wait_or_stop(stop, self.scheduler.retry_interval)
                continue
            except Exception:
                logger.exception("[%s] cycle failed", self.bot.name)
                await wait_or_stop(stop, self.scheduler.retry_interval)
                continue
            await wait_or_stop(stop, report.wait)
        logger.info("[%s] stopped", self.bot.name)


async def wait_or_stop(stop: asyncio.Event, delay: timedelta) -> bool:
    """Sleep for ``delay`` unless ``stop`` is set first. Returns True if stopped."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(delay.total_seconds(), 0))
    except asyncio.TimeoutError:
        return False
    return True


def _round(delta: timedelta) -> timedelta:
    return timedelta(seconds=round(delta.total_seconds()))


class MirrorOrchestrator:
    """Builds the shared ledger and one worker per configured bot.

    Usage:
        orchestrator = MirrorOrchestrator(config)
        orchestrator.initialize()
        reports = await orchestrator.run_once()
        await orchestrator.close()
    """

    def __init__(
        self,
        config: Dict[str, Any],
        ledger_file: Optional[str] = None,
        listing: Optional[BaseListingSource] = None,
        image_fetcher: Optional[BaseImageFetcher] = None,
        publisher_factory: Callable[[Dict[str, Any]], BasePublisher] = build_publisher,
    ):
        self.config = config
        self.ledger_path = ledger_path(config, ledger_file)
        self.engine = build_fingerprint_engine(config)
        self.ledger = DedupLedger(self.ledger_path, engine=self.engine)
        self.listing = listing or RedditListingSource(config)
        self.image_fetcher = image_fetcher or HTTPImageFetcher(config)
        self.publisher_factory = publisher_factory
        self.post_filter = PostFilter(config)
        self.scheduler = Scheduler(config)
        self.limit = listing_limit(config)
        self._publishers: List[BasePublisher] = []

    def initialize(self, create: bool = True) -> None:
        """Load the ledger. Raises LedgerError if it cannot be opened."""
        self.ledger.load(create=create)

    async def close(self) -> None:
        for publisher in self._publishers:
            await publisher.close()
        self._publishers.clear()
        self.ledger.close()

    def build_workers(self, bot_names: Optional[List[str]] = None) -> List[BotWorker]:
        workers = []
        for bot in get_bots(self.config, bot_names):
            publisher = self.publisher_factory(bot.publisher)
            self._publishers.append(publisher)
            selection = SelectionLoop(self.ledger, self.image_fetcher, self.engine, self.post_filter)
            workers.append(
                BotWorker(bot, self.listing, selection, self.scheduler, publisher, self.limit)
            )
        if not workers:
            logger.warning("No bots to run (none configured or none match filter)")
        return workers

    async def run_once(self, bot_names: Optional[List[str]] = None) -> List[CycleReport]:
        """Run a single cycle per bot, sequentially. ListingError propagates."""
        reports = []
        for worker in self.build_workers(bot_names):
            reports.append(await worker.run_cycle())
        return reports

    async def run_forever(
        self, stop: asyncio.Event, bot_names: Optional[List[str]] = None
    ) -> None:
        """Run every bot concurrently until ``stop`` is set."""
        workers = self.build_workers(bot_names)
        if not workers:
            return
        results = await asyncio.gather(
            *(w.run(stop) for w in workers), return_exceptions=True
        )
        for worker, result in zip(workers, results):
            if isinstance(result, Exception):
                logger.error("Bot %s crashed: %s", worker.bot.name, result)
