"""Pipeline orchestrator.

One run walks the phases `diffing -> acquiring -> deriving -> summarizing -> done`:
- diffing: per feed in scope, take the feed lock, fetch the listing, insert new items,
  apply locator rotations and unpublished annotations
- then three strict batches over the scope: `new` items are acquired, `acquired`
  items are derived, `derived` items are summarized

Each stage result is written to the store as soon as that item finishes, from a worker
thread so the event loop never waits on SQLite or the filesystem. Per-item
failures end up in the `RunReport`; run-fatal conditions raise `RunFatalError` and
produce no report.
"""

from __future__ import annotations

import asyncio
import errno
import inspect
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from podsum.config import PipelineConfig
from podsum.database.item_store import ItemStore
from podsum.errors import (
    DataIntegrityError,
    FeedBusyError,
    FetchError,
    NotFoundError,
    RunFatalError,
    StorageError,
    StoreError,
)
from podsum.models import Failure, Feed, Item, ItemStatus, Stage
from podsum.pipeline.chunk_reduce import ChunkReduceSummarizer
from podsum.pipeline.differ import diff_feed
from podsum.pipeline.runner import StageResult, StageRunner, StageStats

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    DIFFING = "diffing"
    ACQUIRING = "acquiring"
    DERIVING = "deriving"
    SUMMARIZING = "summarizing"
    DONE = "done"


@dataclass(frozen=True)
class RunScope:
    feed_id: Optional[int] = None
    item_id: Optional[int] = None

    @classmethod
    def all(cls) -> "RunScope":
        return cls()

    @classmethod
    def for_feed(cls, feed_id: int) -> "RunScope":
        return cls(feed_id=feed_id)

    @classmethod
    def for_item(cls, item_id: int) -> "RunScope":
        return cls(item_id=item_id)

    def describe(self) -> str:
        if self.item_id is not None:
            return f"item {self.item_id}"
        if self.feed_id is not None:
            return f"feed {self.feed_id}"
        return "all feeds"


@dataclass(frozen=True)
class RunOptions:
    redo: bool = False
    force_summarize: bool = False
    acquire_only: bool = False
    skip_diff: bool = False


@dataclass(frozen=True)
class ItemFailure:
    item_id: int
    title: str
    failure: Failure
    attempts: int


@dataclass(frozen=True)
class FeedError:
    feed_id: int
    title: str
    kind: str
    message: str


@dataclass
class RunReport:
    run_id: str
    scope: RunScope
    new_items: int = 0
    relocated: int = 0
    unpublished: int = 0
    reset: int = 0
    acquired: int = 0
    derived: int = 0
    summarized: int = 0
    skipped_unchanged: int = 0
    failures: list[ItemFailure] = field(default_factory=list)
    feed_errors: list[FeedError] = field(default_factory=list)
    stages: list[StageStats] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def idle(self) -> bool:
        """True when the run created nothing and moved no item."""
        return not (
            self.new_items
            or self.relocated
            or self.reset
            or self.acquired
            or self.derived
            or self.summarized
            or self.failures
        )


def _write_atomic(path: Path, text: str) -> None:
    """Write via a temp file + rename so readers never see a partial transcript."""
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            raise StorageError(f"{path.parent}: {e}") from e
        raise


def _in_thread(hook: Callable[[StageResult], None]) -> Callable[[StageResult], Awaitable[None]]:
    """Run a persistence hook in a worker thread so store waits never block the loop."""

    async def run(result: StageResult) -> None:
        await asyncio.to_thread(hook, result)

    return run


def _exists(raw: Optional[str]) -> bool:
    return bool(raw) and Path(raw).exists()  # type: ignore[arg-type]


def redo_target(item: Item) -> Optional[ItemStatus]:
    """Status an item is reset to by a redo, or None when there is nothing to redo.

    A failed item goes back to the input of the stage that failed; a completed item
    goes back to `acquired` (re-derive + re-summarize). When the artifact the target
    stage needs is gone, fall back to the earliest stage whose inputs still exist.
    """
    if item.status is ItemStatus.FAILED:
        target = item.failure.stage.input_status if item.failure else ItemStatus.NEW
    elif item.status in (ItemStatus.DERIVED, ItemStatus.SUMMARIZED):
        target = ItemStatus.ACQUIRED
    else:
        return None
    return _fallback(item, target)


def _fallback(item: Item, target: ItemStatus) -> ItemStatus:
    if target is ItemStatus.DERIVED and not _exists(item.derived_path):
        target = ItemStatus.ACQUIRED
    if target is ItemStatus.ACQUIRED and not _exists(item.acquired_path):
        target = ItemStatus.NEW
    return target


class Orchestrator:
    def __init__(
        self,
        store: ItemStore,
        config: PipelineConfig,
        *,
        feed_source: Any,
        acquirer: Any,
        deriver: Any,
        summarizer: ChunkReduceSummarizer,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.feed_source = feed_source
        self.acquirer = acquirer
        self.deriver = deriver
        self.summarizer = summarizer
        self.cancel_event = cancel_event or asyncio.Event()
        self.phase: Phase | None = None

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        logger.info(f"Phase: {phase.value}")

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, scope: RunScope, options: RunOptions | None = None) -> RunReport:
        options = options or RunOptions()
        run_id = uuid.uuid4().hex
        try:
            return await self._run(run_id, scope, options)
        except StoreError as e:
            raise RunFatalError(f"Item store unavailable: {e}", cause=e) from e

    def run_sync(self, scope: RunScope, options: RunOptions | None = None) -> RunReport:
        return asyncio.run(self.run(scope, options))

    async def _run(self, run_id: str, scope: RunScope, options: RunOptions) -> RunReport:
        feeds = self._resolve_scope(scope)
        report = RunReport(run_id=run_id, scope=scope)
        locked: list[int] = []
        try:
            for feed in feeds:
                acquired = await asyncio.to_thread(
                    self.store.acquire_lock, feed.id, run_id, ttl_seconds=self.config.lock_ttl_seconds
                )
                if not acquired:
                    raise FeedBusyError(f"Feed '{feed.title}' is being processed by another run")
                locked.append(feed.id)

            if options.redo or options.force_summarize:
                await asyncio.to_thread(self._apply_resets, scope, options, report)

            if scope.item_id is None and not options.skip_diff:
                self._enter(Phase.DIFFING)
                for feed in feeds:
                    if self._cancelled():
                        report.cancelled = True
                        break
                    await self._sync_feed(feed, report)

            report.skipped_unchanged = len(
                self._items_in_scope(scope, [ItemStatus.SUMMARIZED, ItemStatus.FAILED])
            )
            await self._run_stages(scope, options, report)
            self._enter(Phase.DONE)
        finally:
            # Synchronous so a cancelled run still releases its locks.
            for feed_id in locked:
                self.store.release_lock(feed_id, run_id)

        logger.info(
            f"Run {run_id} done: new={report.new_items} summarized={report.summarized} "
            f"failed={report.failed} skipped={report.skipped_unchanged} cancelled={report.cancelled}"
        )
        return report

    # ------------------------------------------------------------------
    # Scope
    # ------------------------------------------------------------------

    def _resolve_scope(self, scope: RunScope) -> list[Feed]:
        if scope.item_id is not None and scope.feed_id is not None:
            raise RunFatalError("Invalid scope: give a feed or an item, not both")
        try:
            if scope.item_id is not None:
                item = self.store.get_item_by_id(scope.item_id)
                return [self.store.get_feed(item.feed_id)]
            if scope.feed_id is not None:
                feed = self.store.get_feed(scope.feed_id)
                if not feed.active:
                    raise RunFatalError(f"Invalid scope: feed '{feed.title}' is unsubscribed")
                return [feed]
        except NotFoundError as e:
            raise RunFatalError(f"Invalid scope: {e}", cause=e) from e

        feeds = self.store.list_feeds()
        if not feeds:
            raise RunFatalError("No subscriptions. Add a feed first.")
        return feeds

    def _items_in_scope(self, scope: RunScope, statuses: list[ItemStatus]) -> list[Item]:
        return self.store.list_items(
            feed_id=scope.feed_id,
            item_id=scope.item_id,
            statuses=statuses,
            active_feeds_only=scope.item_id is None,
        )

    def _apply_resets(self, scope: RunScope, options: RunOptions, report: RunReport) -> None:
        candidates: list[Item] = []
        if options.redo:
            statuses = [ItemStatus.FAILED]
            if scope.item_id is not None:
                statuses += [ItemStatus.DERIVED, ItemStatus.SUMMARIZED]
            candidates.extend(self._items_in_scope(scope, statuses))
        if options.force_summarize:
            seen = {i.id for i in candidates}
            candidates.extend(i for i in self._items_in_scope(scope, [ItemStatus.SUMMARIZED]) if i.id not in seen)

        for item in candidates:
            if options.redo and (item.status is ItemStatus.FAILED or scope.item_id is not None):
                target = redo_target(item)
                note = "redo"
            else:
                target = _fallback(item, ItemStatus.DERIVED)
                note = "force summarize"
            if target is None:
                continue
            self.store.reset_item(item.id, target, note=note)
            report.reset += 1
            logger.info(f"Reset {item.label}: {item.status.value} -> {target.value} ({note})")

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    async def _fetch(self, url: str) -> Any:
        fetch = self.feed_source.fetch
        if inspect.iscoroutinefunction(fetch):
            return await fetch(url)
        return await asyncio.get_running_loop().run_in_executor(None, fetch, url)

    async def _sync_feed(self, feed: Feed, report: RunReport) -> None:
        try:
            info = await self._fetch(feed.url)
        except FetchError as e:
            logger.warning(f"Feed '{feed.title}' could not be fetched: {e}")
            report.feed_errors.append(FeedError(feed.id, feed.title, e.kind, e.message))
            return
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Feed '{feed.title}' failed unexpectedly")
            report.feed_errors.append(FeedError(feed.id, feed.title, "unexpected", f"{type(e).__name__}: {e}"))
            return
        await asyncio.to_thread(self._apply_diff, feed, info, report)

    def _apply_diff(self, feed: Feed, info: Any, report: RunReport) -> None:
        diff = diff_feed(info.entries, self.store.known_items(feed.id))
        for entry in diff.new_entries:
            _, created = self.store.upsert_item(feed.id, entry)
            report.new_items += int(created)
        for item, url in diff.relocated:
            self.store.update_locator(item.id, url)
            report.relocated += 1
            logger.info(f"Locator rotated for {item.label}")
        if self.config.mark_unpublished:
            for item in diff.vanished:
                self.store.set_unpublished(item.id, True)
                report.unpublished += 1
        for item in diff.reappeared:
            self.store.set_unpublished(item.id, False)
        self.store.touch_feed(feed.id, info)

        if diff.new_entries:
            logger.info(f"'{feed.title}': {len(diff.new_entries)} new item(s)")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _record_failure(self, item: Item, failure: Failure, attempts: int, report: RunReport) -> None:
        try:
            self.store.mark_failed(item.id, failure)
        except (DataIntegrityError, NotFoundError) as e:
            logger.error(f"Could not record failure for {item.label}: {e}")
            return
        report.failures.append(ItemFailure(item.id, item.title, failure, attempts))

    async def _run_stages(self, scope: RunScope, options: RunOptions, report: RunReport) -> None:
        limits = self.config.limits

        self._enter(Phase.ACQUIRING)
        acquire = StageRunner(
            Stage.ACQUIRE,
            concurrency=limits.acquire,
            retry=self.config.retry,
            cancel_event=self.cancel_event,
        )

        def on_acquired(result: StageResult) -> None:
            if result.failure is not None:
                self._record_failure(result.item, result.failure, result.attempts, report)
                return
            try:
                self.store.mark_acquired(result.item.id, result.output)
            except (DataIntegrityError, NotFoundError) as e:
                logger.error(f"Skipping {result.item.label}: {e}")
                return
            report.acquired += 1

        results = await acquire.run(
            self._items_in_scope(scope, [ItemStatus.NEW]),
            self.acquirer.acquire,
            on_result=_in_thread(on_acquired),
        )
        report.stages.append(StageStats.from_results(Stage.ACQUIRE, results))
        if self._stop_after(options.acquire_only, report):
            return

        self._enter(Phase.DERIVING)
        compute_bound = bool(getattr(self.deriver, "compute_bound", False))
        derive_limit = limits.derive_for(compute_bound)
        executor = None
        if compute_bound:
            executor = ThreadPoolExecutor(max_workers=derive_limit, thread_name_prefix="derive")
        derive = StageRunner(
            Stage.DERIVE,
            concurrency=derive_limit,
            executor=executor,
            cancel_event=self.cancel_event,
        )

        def on_derived(result: StageResult) -> None:
            if result.failure is not None:
                self._record_failure(result.item, result.failure, result.attempts, report)
                return
            try:
                self.store.mark_derived(result.item.id, result.output)
            except (DataIntegrityError, NotFoundError) as e:
                logger.error(f"Skipping {result.item.label}: {e}")
                return
            report.derived += 1

        try:
            results = await derive.run(
                self._items_in_scope(scope, [ItemStatus.ACQUIRED]),
                self._derive_item,
                on_result=_in_thread(on_derived),
            )
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
        report.stages.append(StageStats.from_results(Stage.DERIVE, results))
        if self._stop_after(False, report):
            return

        self._enter(Phase.SUMMARIZING)
        summarize = StageRunner(
            Stage.SUMMARIZE,
            concurrency=limits.summarize,
            cancel_event=self.cancel_event,
        )

        def on_summarized(result: StageResult) -> None:
            if result.failure is not None:
                self._record_failure(result.item, result.failure, result.attempts, report)
                return
            try:
                self.store.put_summary(result.item.id, result.output)
            except (DataIntegrityError, NotFoundError) as e:
                logger.error(f"Skipping {result.item.label}: {e}")
                return
            report.summarized += 1
            if self.config.cleanup_acquired and result.item.acquired_path:
                Path(result.item.acquired_path).unlink(missing_ok=True)

        results = await summarize.run(
            self._items_in_scope(scope, [ItemStatus.DERIVED]),
            self._summarize_item,
            on_result=_in_thread(on_summarized),
        )
        report.stages.append(StageStats.from_results(Stage.SUMMARIZE, results))
        if self._cancelled():
            report.cancelled = True

    def _stop_after(self, requested: bool, report: RunReport) -> bool:
        if self._cancelled():
            report.cancelled = True
            return True
        return requested

    def transcript_path(self, item: Item) -> Path:
        return self.config.transcript_dir / str(item.feed_id) / f"{item.id}.txt"

    def _derive_item(self, item: Item) -> str:
        text = self.deriver.derive(Path(item.acquired_path or ""))
        path = self.transcript_path(item)
        _write_atomic(path, text)
        return str(path)

    async def _summarize_item(self, item: Item) -> Any:
        path = Path(item.derived_path or "")
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return await self.summarizer.summarize(text, title=item.title)
