"""CLI interface for the imgmirror pipeline.

Usage:
    python -m imgmirror.pipeline.cli run --once
    python -m imgmirror.pipeline.cli run --bot pics
    python -m imgmirror.pipeline.cli status
    python -m imgmirror.pipeline.cli criteria --subreddit pics
    python -m imgmirror.pipeline.cli fingerprint photo.jpg
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from imgmirror.connectors.images import decode_image
from imgmirror.connectors.reddit import RedditListingSource, join_subreddits
from imgmirror.errors import ConfigError, LedgerError, ListingError, MirrorError
from imgmirror.pipeline.config import DEFAULT_CONFIG_PATH, ledger_path, listing_limit, load_config
from imgmirror.pipeline.orchestrator import MirrorOrchestrator
from imgmirror.selection.filters import PostFilter
from imgmirror.selection.fingerprint import build_fingerprint_engine
from imgmirror.storage.ledger import DedupLedger

console = Console()
logger = logging.getLogger("imgmirror")

_STOP_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # Keep third-party chatter out of verbose output
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)


def _load(ctx) -> dict:
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e.message}")
        sys.exit(1)
    setup_logging(ctx.obj["verbose"] or bool(config.get("verbose")))
    return config


@click.group()
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--ledger", default=None, help="Ledger file path (overrides config)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config: str, ledger: Optional[str], verbose: bool):
    """Reddit image mirroring pipeline."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["ledger_path"] = ledger
    ctx.obj["verbose"] = verbose


@cli.command()
@click.option("--once", is_flag=True, help="Run one cycle per bot and exit")
@click.option("--bot", "bot_names", multiple=True, help="Only run the named bot(s)")
@click.pass_context
def run(ctx, once: bool, bot_names: Tuple[str, ...]):
    """Run the mirroring bots."""
    config = _load(ctx)
    names = list(bot_names) or None

    async def _run() -> int:
        orchestrator = MirrorOrchestrator(config, ledger_file=ctx.obj["ledger_path"])
        try:
            orchestrator.initialize()
        except LedgerError as e:
            console.print(f"[red]Unable to open database file:[/red] {e.message}")
            return 1
        try:
            if once:
                try:
                    reports = await orchestrator.run_once(names)
                except ListingError as e:
                    console.print(f"[red]Unable to connect to Reddit:[/red] {e.message}")
                    return 1
                _print_reports(reports)
            else:
                stop = asyncio.Event()
                _install_stop_handlers(stop)
                await orchestrator.run_forever(stop, names)
        finally:
            await orchestrator.close()
        return 0

    sys.exit(asyncio.run(_run()))


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for name in _STOP_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal %s not supported on this platform", name)


def _print_reports(reports) -> None:
    table = Table(title="Cycle Results")
    table.add_column("Bot", style="cyan")
    table.add_column("Fetched", justify="right")
    table.add_column("Eligible", justify="right")
    table.add_column("Outcome")
    table.add_column("Rank", justify="right")
    table.add_column("Published")
    table.add_column("Next wait", justify="right")

    for r in reports:
        o = r.outcome
        if o.accepted:
            outcome = f"[green]{o.candidate.id}"
            published = "[green]yes" if r.publish_result and r.publish_result.success else "[red]no"
        else:
            outcome = "[yellow]insufficient sample" if o.insufficient_sample else "[yellow]exhausted"
            published = "-"
        table.add_row(
            r.bot,
            str(r.fetched),
            str(o.total_eligible),
            outcome,
            str(o.rank_index) if o.rank_index is not None else "-",
            published,
            str(r.wait).split(".")[0],
        )
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show ledger status."""
    config = _load(ctx)
    path = ledger_path(config, ctx.obj["ledger_path"])
    ledger = DedupLedger(path, engine=build_fingerprint_engine(config))
    try:
        ledger.load()
    except LedgerError as e:
        console.print(f"[red]Unable to open database file:[/red] {e.message}")
        sys.exit(1)
    try:
        stats = ledger.stats()
    finally:
        ledger.close()

    console.print("\n[bold]Ledger Status[/bold]")
    console.print(f"  Path: {path}")
    console.print(f"  Fingerprint: {ledger.engine.name}")
    console.print(f"  Post IDs: {stats['post_ids']}")
    console.print(f"  Image hashes: {stats['fingerprints']}")


@cli.command()
@click.option("--subreddit", "-s", "subreddits", multiple=True, required=True, help="Subreddit(s) to analyze")
@click.pass_context
def criteria(ctx, subreddits: Tuple[str, ...]):
    """Fetch one listing and show the posting criteria it yields."""
    config = _load(ctx)
    source = RedditListingSource(config)
    post_filter = PostFilter(config)
    name = join_subreddits(subreddits)

    async def _run():
        return await source.fetch(list(subreddits), limit=listing_limit(config))

    try:
        with console.status(f"[bold green]Fetching /r/{name}..."):
            posts = asyncio.run(_run())
    except ListingError as e:
        console.print(f"[red]Unable to connect to Reddit:[/red] {e.message}")
        sys.exit(1)

    result = post_filter.apply(posts, now=datetime.now(timezone.utc))
    console.print(
        f"\nAnalyzed {result.batch_size} posts from /r/{name}. "
        f"{result.batch_size - result.eligible_count} were unusable for image mirroring."
    )
    if result.insufficient_sample:
        console.print("[yellow]Too few posts were usable for image mirroring.[/yellow]")
        return

    c = result.criteria
    table = Table(title="Current posting criteria")
    table.add_column("Criterion", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Minimum upvotes", _fmt(c.min_score))
    table.add_row("Minimum upvote rate", _fmt(f"{c.min_upvote_rate:.1f}/hour" if c.min_upvote_rate is not None else None))
    table.add_row("Minimum upvote ratio", _fmt(c.min_approval_percent / 100 if c.min_approval_percent is not None else None))
    table.add_row("Minimum age", _fmt(str(c.min_age).split(".")[0] if c.min_age is not None else None))
    table.add_row("Maximum age", _fmt(str(c.max_age).split(".")[0] if c.max_age is not None else None))
    console.print(table)
    console.print(f"{len(result.posts)} / {result.eligible_count} posts met the posting criteria.")


def _fmt(value) -> str:
    return "[dim]not enough posts" if value is None else str(value)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--algorithm",
    type=click.Choice(["gradient", "perceptual"]),
    default="gradient",
    help="Fingerprint engine",
)
@click.pass_context
def fingerprint(ctx, paths: Tuple[str, ...], algorithm: str):
    """Print the fingerprint of local image files (no config needed)."""
    setup_logging(ctx.obj["verbose"])
    engine = build_fingerprint_engine({"fingerprint": {"algorithm": algorithm}})
    failed = False
    for path in paths:
        with open(path, "rb") as f:
            data = f.read()
        try:
            fetched = decode_image(data, path)
            console.print(f"{engine.format(engine.fingerprint(fetched.image))}  {path}")
        except MirrorError as e:
            console.print(f"[red]{path}:[/red] {e.message}")
            failed = True
    if failed:
        sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
