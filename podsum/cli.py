"""Command line interface.

Commands:
- add URL                      subscribe to a feed and record its current episodes
- remove NAME [--yes] [--purge]
- list [NAME]                  feeds, or the episodes of one feed
- sync [NAME] [--episode ID] [--download-only] [--redo] [--force-summarize] [--skip-fetch]
- show ID [--transcript] [--history]
- config {show,path}

NAME is a feed id or a (case-insensitive) title fragment. Settings come from PODSUM_*
environment variables (and a `.env` file), see `podsum.config`.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from podsum.config import PipelineConfig, ensure_data_dirs, load_config
from podsum.database.item_store import ItemStore
from podsum.errors import FetchError, NotFoundError, RunFatalError, StoreError
from podsum.models import Feed, Item, ItemStatus
from podsum.pipeline.orchestrator import Orchestrator, RunOptions, RunReport, RunScope

logger = logging.getLogger(__name__)

STATUS_TAGS = {
    ItemStatus.NEW: "[new]",
    ItemStatus.ACQUIRED: "[dl]",
    ItemStatus.DERIVED: "[txt]",
    ItemStatus.SUMMARIZED: "[done]",
    ItemStatus.FAILED: "[err]",
}


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def _date(dt: datetime | None, default: str = "") -> str:
    return dt.strftime("%Y-%m-%d") if dt else default


def _duration(secs: int | None) -> str:
    if not secs:
        return ""
    h, m = secs // 3600, (secs % 3600) // 60
    return f"{h}h{m:02d}m" if h else f"{m}m"


def _indent(text: str, n: int = 2) -> str:
    pad = " " * n
    return "\n".join(pad + line if line else line for line in text.splitlines())


def build_orchestrator(
    cfg: PipelineConfig,
    store: ItemStore,
    cancel_event: asyncio.Event | None = None,
) -> Orchestrator:
    """Wire the HTTP / transcription / LLM collaborators for a real run."""
    from podsum.pipeline.audio.download import HttpAcquirer
    from podsum.pipeline.audio.feed import HttpFeedSource
    from podsum.pipeline.audio.llm_config import build_summary_backend
    from podsum.pipeline.audio.transcribe import build_deriver
    from podsum.pipeline.chunk_reduce import ChunkReduceSummarizer

    summarizer = ChunkReduceSummarizer(
        build_summary_backend(cfg.summarization),
        cfg.chunking,
        concurrency=cfg.limits.summarize,
        retry=cfg.retry,
    )
    return Orchestrator(
        store,
        cfg,
        feed_source=HttpFeedSource(),
        acquirer=HttpAcquirer(cfg.audio_dir),
        deriver=build_deriver(cfg.derivation, cfg.model_dir),
        summarizer=summarizer,
        cancel_event=cancel_event,
    )


def _find_feed(store: ItemStore, name: str) -> Feed:
    feed = store.find_feed(name)
    if feed is None:
        raise NotFoundError(f'No podcast matching "{name}" found')
    return feed


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_add(args: argparse.Namespace, cfg: PipelineConfig, store: ItemStore) -> int:
    from podsum.pipeline.audio.feed import HttpFeedSource

    existing = store.find_feed_by_url(args.url)
    if existing is not None and existing.active:
        print(f'Already subscribed to "{existing.title}"')
        return 0

    print("Fetching feed...")
    try:
        info = HttpFeedSource().fetch(args.url)
    except FetchError as e:
        print(f"Could not fetch feed: {e}")
        return 1

    feed, count = store.subscribe(args.url, info)
    print()
    print(f"  {'Re-added' if existing else 'Added'}: {feed.title}")
    if feed.website_url:
        print(f"  Website: {feed.website_url}")
    print(f"  Episodes: {count} new, {len(info.entries)} listed")
    if info.entries:
        latest = info.entries[0]
        print(f'  Latest: "{latest.title}" ({_date(latest.published_at, "unknown")})')
    print()
    return 0


def cmd_remove(args: argparse.Namespace, cfg: PipelineConfig, store: ItemStore) -> int:
    feed = _find_feed(store, args.name)
    if not args.yes:
        answer = input(f'Remove "{feed.title}"{" and delete its files" if args.purge else ""}? [y/N] ')
        if answer.strip().lower() != "y":
            print("Cancelled.")
            return 0

    paths = store.unsubscribe(feed.id, purge=args.purge, lock_ttl_seconds=cfg.lock_ttl_seconds)
    deleted = 0
    for path in paths:
        if path.exists():
            path.unlink()
            deleted += 1
    if args.purge:
        print(f'Removed "{feed.title}" (deleted {deleted} file(s))')
    else:
        print(f'Unsubscribed from "{feed.title}" (episodes and summaries kept)')
    return 0


def _print_items(feed: Feed, items: list[Item]) -> None:
    print()
    print(f"  {feed.title} ({len(items)} episodes)")
    print(f"  {'-' * 50}")
    for item in items:
        tag = STATUS_TAGS[item.status]
        flag = " (unpublished)" if item.unpublished_at else ""
        print(
            f"  #{item.id:<5} {_truncate(item.title, 40):<40} {_date(item.published_at, ' ' * 10)} "
            f"{_duration(item.duration_secs):>6} {tag}{flag}"
        )
    print()


def cmd_list(args: argparse.Namespace, cfg: PipelineConfig, store: ItemStore) -> int:
    if args.name:
        feed = _find_feed(store, args.name)
        _print_items(feed, store.list_items(feed_id=feed.id))
        return 0

    feeds = store.list_feeds()
    if not feeds:
        print("No subscriptions yet. Add one with: podsum add <RSS_URL>")
        return 0

    print()
    print(f"  {'ID':<4} {'PODCAST':<30} {'EPISODES':>8} {'NEW':>8} {'DONE':>8} {'FAILED':>8} {'LAST CHECKED':>12}")
    print(f"  {'-' * 84}")
    for feed in feeds:
        counts = store.count_items(feed.id)
        print(
            f"  {feed.id:<4} {_truncate(feed.title, 30):<30} {sum(counts.values()):>8} "
            f"{counts.get(ItemStatus.NEW, 0):>8} {counts.get(ItemStatus.SUMMARIZED, 0):>8} "
            f"{counts.get(ItemStatus.FAILED, 0):>8} {_date(feed.last_checked, 'never'):>12}"
        )
    print()
    return 0


def print_report(report: RunReport) -> None:
    print()
    print(f"=== SYNC ({report.scope.describe()}) ===")
    if report.idle and not report.feed_errors:
        print("Nothing new.")
    print(f"New episodes: {report.new_items}")
    if report.relocated:
        print(f"Updated enclosure URLs: {report.relocated}")
    if report.reset:
        print(f"Reset for reprocessing: {report.reset}")
    for stats in report.stages:
        print(
            f"{stats.stage.value}: candidates={stats.candidates} succeeded={stats.succeeded} "
            f"failed={stats.failed} cancelled={stats.cancelled}"
        )
    print(f"Summarized: {report.summarized}")
    print(f"Failed: {report.failed}")
    for f in report.failures:
        print(f"  #{f.item_id} {_truncate(f.title, 50)}: {f.failure.describe()} (attempts: {f.attempts})")
    print(f"Skipped (already done or failed): {report.skipped_unchanged}")
    for err in report.feed_errors:
        print(f"Feed error: {err.title}: {err.kind}: {err.message}")
    if report.cancelled:
        print("Run was cancelled; remaining work will continue on the next sync.")
    print()


async def _run_sync(orchestrator: Orchestrator, scope: RunScope, options: RunOptions) -> RunReport:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel_event.set)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform")
    try:
        return await orchestrator.run(scope, options)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def cmd_sync(args: argparse.Namespace, cfg: PipelineConfig, store: ItemStore) -> int:
    if args.episode is not None:
        scope = RunScope.for_item(args.episode)
    elif args.name:
        scope = RunScope.for_feed(_find_feed(store, args.name).id)
    else:
        scope = RunScope.all()
    options = RunOptions(
        redo=args.redo,
        force_summarize=args.force_summarize,
        acquire_only=args.download_only,
        skip_diff=args.skip_fetch,
    )

    try:
        orchestrator = build_orchestrator(cfg, store, asyncio.Event())
    except ValueError as e:
        # Missing API key or unknown model name.
        print(f"Error: {e}")
        return 2
    try:
        report = asyncio.run(_run_sync(orchestrator, scope, options))
    except RunFatalError as e:
        print(f"Error: {e}")
        return 1
    print_report(report)
    return 0


def cmd_show(args: argparse.Namespace, cfg: PipelineConfig, store: ItemStore) -> int:
    item = store.get_item_by_id(args.id)
    feed = store.get_feed(item.feed_id)

    print()
    print(f"  {'=' * 60}")
    print(f"  {item.title} - {feed.title}")
    if item.published_at:
        print(f"  Published: {_date(item.published_at)} | Duration: {_duration(item.duration_secs)}")
    print(f"  Status: {item.status.value}")
    if item.failure:
        print(f"  Failure: {item.failure.describe()}")
    print(f"  {'=' * 60}")

    if args.history:
        print()
        for ev in store.list_item_events(item.id):
            src = ev.from_status.value if ev.from_status else "-"
            note = f" ({ev.note})" if ev.note else ""
            print(f"  {ev.at:%Y-%m-%d %H:%M:%S}  {src} -> {ev.to_status.value}{note}")
    elif args.transcript:
        path = Path(item.derived_path) if item.derived_path else None
        if path is not None and path.exists():
            from podsum.pipeline.chunking import estimate_units

            content = path.read_text(encoding="utf-8")
            print()
            print(_indent(content))
            print()
            print(f"  {'-' * 60}")
            print(f"  Transcript: {estimate_units(content)} units")
        else:
            print()
            print(f"  No transcript yet. Run: podsum sync --episode {item.id}")
    else:
        summary = store.get_current_summary(item.id)
        if summary is None:
            print()
            print(f"  No summary yet. Run: podsum sync --episode {item.id}")
        else:
            print()
            print(_indent(summary.content))
            print()
            print(f"  {'-' * 60}")
            print(f"  Model: {summary.model} | Generated: {summary.created_at:%Y-%m-%d %H:%M}")
            if summary.windows > 1:
                print(f"  Windows: {summary.windows}")
            if summary.prompt_tokens is not None and summary.output_tokens is not None:
                print(f"  Tokens: {summary.prompt_tokens} in / {summary.output_tokens} out")
    print(f"  {'=' * 60}")
    print()
    return 0


def cmd_config(args: argparse.Namespace, cfg: PipelineConfig, store: ItemStore | None) -> int:
    if args.action == "path":
        print(f"Data dir: {cfg.data_dir}")
        print(f"Database: {cfg.db_path}")
        print(f"Audio: {cfg.audio_dir}")
        print(f"Transcripts: {cfg.transcript_dir}")
        return 0
    print(json.dumps(cfg.as_dict(), indent=2, default=str))
    return 0


# ----------------------------------------------------------------------
# Parser / entrypoint
# ----------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="podsum",
        description="Track podcast feeds, transcribe new episodes and summarize them.",
    )
    p.add_argument("-v", "--verbose", action="count", default=0, help="More log output (-v info, -vv debug).")
    sub = p.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Subscribe to a podcast feed.")
    add.add_argument("url", help="RSS/Atom feed URL.")
    add.set_defaults(func=cmd_add)

    remove = sub.add_parser("remove", help="Unsubscribe from a podcast.")
    remove.add_argument("name", help="Feed id or title fragment.")
    remove.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")
    remove.add_argument("--purge", action="store_true", help="Delete episodes, summaries and files too.")
    remove.set_defaults(func=cmd_remove)

    lst = sub.add_parser("list", help="List feeds, or the episodes of one feed.")
    lst.add_argument("name", nargs="?", help="Feed id or title fragment.")
    lst.set_defaults(func=cmd_list)

    sync = sub.add_parser("sync", help="Check feeds and process pending episodes.")
    sync.add_argument("name", nargs="?", help="Only this feed (id or title fragment).")
    sync.add_argument("-e", "--episode", type=int, default=None, help="Only this episode id.")
    sync.add_argument("--download-only", action="store_true", help="Stop after downloading audio.")
    sync.add_argument("--redo", action="store_true", help="Retry failed episodes (or redo --episode).")
    sync.add_argument("--force-summarize", action="store_true", help="Summarize finished episodes again.")
    sync.add_argument("--skip-fetch", action="store_true", help="Do not fetch feeds; process pending work only.")
    sync.set_defaults(func=cmd_sync)

    show = sub.add_parser("show", help="Show an episode summary.")
    show.add_argument("id", type=int, help="Episode id.")
    show.add_argument("-t", "--transcript", action="store_true", help="Show the transcript instead.")
    show.add_argument("--history", action="store_true", help="Show status history.")
    show.set_defaults(func=cmd_show)

    config = sub.add_parser("config", help="Show effective configuration.")
    config.add_argument("action", choices=["show", "path"], nargs="?", default="show")
    config.set_defaults(func=cmd_config)

    return p


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, (os.getenv("PODSUM_LOG_LEVEL") or "WARNING").upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    try:
        cfg = load_config()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 2

    if args.command == "config":
        return cmd_config(args, cfg, None)

    ensure_data_dirs(cfg)
    try:
        store = ItemStore(cfg.db_path)
        return args.func(args, cfg, store)
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1
    except (RunFatalError, StoreError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
