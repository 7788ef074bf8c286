"""End-to-end pipeline runs against in-memory collaborators and a temp SQLite store."""

from __future__ import annotations

import asyncio
import tempfile
import threading
import unittest
from pathlib import Path

from podsum.config import ChunkingConfig, PipelineConfig, StageLimits
from podsum.database import ItemStore
from podsum.errors import AcquireError, DeriveError, FeedBusyError, FetchError, RunFatalError, SummarizeError
from podsum.models import FeedInfo, ItemStatus, Stage
from podsum.pipeline.chunk_reduce import ChunkReduceSummarizer, PromptKind
from podsum.pipeline.orchestrator import Orchestrator, RunOptions, RunScope, redo_target
from podsum.pipeline.audio.transcribe import LocalWhisperDeriver, QualityCheckedDeriver
from podsum.pipeline.runner import RetryPolicy
from podsum.tests.fakes import (
    FakeAcquirer,
    FakeBackend,
    FakeDeriver,
    FakeFeedSource,
    FakeWhisperModel,
    FlakyAcquirer,
    entry,
    make_item,
)

FEED_URL = "https://example.com/show.xml"
NO_DELAY = RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_ratio=0.0)

FORWARD = [
    (None, ItemStatus.NEW),
    (ItemStatus.NEW, ItemStatus.ACQUIRED),
    (ItemStatus.ACQUIRED, ItemStatus.DERIVED),
    (ItemStatus.DERIVED, ItemStatus.SUMMARIZED),
]


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.config = PipelineConfig(data_dir=self.root, retry=NO_DELAY)
        self.store = ItemStore(self.config.db_path)
        self.source = FakeFeedSource()
        self.acquirer = FakeAcquirer(self.root / "audio")
        self.deriver = FakeDeriver()
        self.backend = FakeBackend()
        self.feed, _ = self.store.subscribe(FEED_URL, FeedInfo(title="Show", entries=[]))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def orchestrator(self, cancel_event: asyncio.Event | None = None) -> Orchestrator:
        return Orchestrator(
            self.store,
            self.config,
            feed_source=self.source,
            acquirer=self.acquirer,
            deriver=self.deriver,
            summarizer=ChunkReduceSummarizer(
                self.backend, self.config.chunking, concurrency=self.config.limits.summarize, retry=NO_DELAY
            ),
            cancel_event=cancel_event,
        )

    def run_pipeline(self, scope: RunScope | None = None, **options):
        return self.orchestrator().run_sync(scope or RunScope.all(), RunOptions(**options))

    def item(self, guid: str):
        item = self.store.get_item(self.feed.id, guid)
        assert item is not None
        return item

    def statuses(self) -> dict[str, ItemStatus]:
        return {i.guid: i.status for i in self.store.list_items(feed_id=self.feed.id)}


class TestPipelineRuns(OrchestratorTestCase):
    def test_new_items_only_are_processed(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        first = self.run_pipeline()
        self.assertEqual((first.new_items, first.summarized, first.failed), (2, 2, 0))

        self.source.listings[FEED_URL] = [entry("a"), entry("b"), entry("c")]
        second = self.run_pipeline()
        self.assertEqual(second.new_items, 1)
        self.assertEqual(second.summarized, 1)
        self.assertEqual(second.skipped_unchanged, 2)
        self.assertEqual(sorted(self.acquirer.calls), ["a", "b", "c"])
        self.assertEqual(len(self.backend.calls), 3)
        self.assertEqual(set(self.statuses().values()), {ItemStatus.SUMMARIZED})

    def test_second_run_without_changes_is_idle(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        self.run_pipeline()
        calls = len(self.backend.calls)

        report = self.run_pipeline()
        self.assertTrue(report.idle)
        self.assertEqual(report.skipped_unchanged, 2)
        self.assertEqual(len(self.backend.calls), calls)

    def test_items_pass_through_every_status(self):
        self.source.listings[FEED_URL] = [entry("a")]
        self.run_pipeline()
        events = self.store.list_item_events(self.item("a").id)
        self.assertEqual([(e.from_status, e.to_status) for e in events], FORWARD)

        item = self.item("a")
        self.assertTrue(Path(item.derived_path).exists())
        self.assertFalse(Path(item.acquired_path).exists())
        summary = self.store.get_current_summary(item.id)
        self.assertIsNotNone(summary)
        self.assertEqual(summary.model, "fake-model")

    def test_keep_audio_when_cleanup_disabled(self):
        self.config = PipelineConfig(data_dir=self.root, retry=NO_DELAY, cleanup_acquired=False)
        self.source.listings[FEED_URL] = [entry("a")]
        self.run_pipeline()
        self.assertTrue(Path(self.item("a").acquired_path).exists())

    def test_one_failure_does_not_stop_the_batch(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b"), entry("c")]
        self.acquirer.fail["b"] = AcquireError("unsupported_format", "text/html")
        report = self.run_pipeline()

        self.assertEqual(report.summarized, 2)
        self.assertEqual(report.failed, 1)
        failure = report.failures[0]
        self.assertEqual(failure.failure.stage, Stage.ACQUIRE)
        self.assertEqual(failure.failure.kind, "unsupported_format")
        self.assertEqual(failure.attempts, 1)
        self.assertEqual(self.statuses()["b"], ItemStatus.FAILED)

    def test_failed_items_stay_failed_until_redo(self):
        self.source.listings[FEED_URL] = [entry("a")]
        self.acquirer.fail["a"] = AcquireError("unsupported_format", "text/html")
        self.run_pipeline()

        again = self.run_pipeline()
        self.assertTrue(again.idle)
        self.assertEqual(self.acquirer.calls, ["a"])

        del self.acquirer.fail["a"]
        redo = self.run_pipeline(redo=True)
        self.assertEqual(redo.reset, 1)
        self.assertEqual(redo.summarized, 1)
        self.assertEqual(self.statuses()["a"], ItemStatus.SUMMARIZED)
        self.assertIsNone(self.item("a").failure)

    def test_transient_acquire_errors_are_retried(self):
        self.acquirer = FlakyAcquirer(self.root / "audio", failures=2)
        self.source.listings[FEED_URL] = [entry("a")]
        report = self.run_pipeline()
        self.assertEqual(report.summarized, 1)
        self.assertEqual(self.acquirer.attempts["a"], 3)

    def test_retry_bound_is_three_attempts(self):
        self.acquirer = FlakyAcquirer(self.root / "audio", failures=10)
        self.source.listings[FEED_URL] = [entry("a")]
        report = self.run_pipeline()
        self.assertEqual(self.acquirer.attempts["a"], 3)
        self.assertEqual(report.failures[0].attempts, 3)
        self.assertEqual(report.failures[0].failure.kind, "network")

    def test_derive_errors_are_not_retried(self):
        self.source.listings[FEED_URL] = [entry("a")]
        self.store.subscribe(FEED_URL, FeedInfo(title="Show", entries=[entry("a")]))
        item = self.item("a")
        self.deriver.fail[f"{item.id}.mp3"] = DeriveError("bad_input", "silence")
        report = self.run_pipeline()

        self.assertEqual(self.deriver.calls, [f"{item.id}.mp3"])
        self.assertEqual(report.failures[0].failure.stage, Stage.DERIVE)
        failed = self.item("a")
        self.assertEqual(failed.status, ItemStatus.FAILED)
        self.assertEqual(redo_target(failed), ItemStatus.ACQUIRED)

    def test_summarize_failure_is_recorded(self):
        def handler(text, prompt):
            raise SummarizeError("auth", "invalid api key")

        self.backend = FakeBackend(handler)
        self.source.listings[FEED_URL] = [entry("a")]
        report = self.run_pipeline()
        self.assertEqual(report.failures[0].failure.stage, Stage.SUMMARIZE)
        self.assertEqual(self.item("a").failure.kind, "auth")
        self.assertEqual(redo_target(self.item("a")), ItemStatus.DERIVED)

    def test_force_summarize_keeps_transcript_and_history(self):
        self.source.listings[FEED_URL] = [entry("a")]
        self.run_pipeline()
        item = self.item("a")

        report = self.run_pipeline(force_summarize=True)
        self.assertEqual(report.reset, 1)
        self.assertEqual(report.summarized, 1)
        self.assertEqual(self.acquirer.calls, ["a"])
        self.assertEqual(len(self.deriver.calls), 1)
        self.assertEqual(len(self.store.list_summaries(item.id)), 2)

    def test_redo_single_item_starts_over_when_audio_is_gone(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        self.run_pipeline()
        item = self.item("a")

        report = self.run_pipeline(RunScope.for_item(item.id), redo=True)
        self.assertEqual(report.reset, 1)
        self.assertEqual(report.new_items, 0)
        self.assertEqual(report.summarized, 1)
        self.assertEqual(sorted(self.acquirer.calls), ["a", "a", "b"])
        self.assertEqual(len(self.store.list_summaries(item.id)), 2)

    def test_acquire_only(self):
        self.source.listings[FEED_URL] = [entry("a")]
        report = self.run_pipeline(acquire_only=True)
        self.assertEqual(report.acquired, 1)
        self.assertEqual(self.deriver.calls, [])
        self.assertEqual(self.statuses()["a"], ItemStatus.ACQUIRED)

    def test_large_transcript_is_summarized_in_windows(self):
        self.config = PipelineConfig(
            data_dir=self.root,
            retry=NO_DELAY,
            chunking=ChunkingConfig(capacity_units=30, window_units=20, overlap_units=2),
        )
        self.source.listings[FEED_URL] = [entry("a")]
        self.run_pipeline()
        self.assertIn(PromptKind.REDUCE, self.backend.kinds())
        summary = self.store.get_current_summary(self.item("a").id)
        self.assertGreater(summary.windows, 1)


class TestFeedSync(OrchestratorTestCase):
    def test_rotated_locator_updates_item(self):
        self.source.listings[FEED_URL] = [entry("a")]
        self.run_pipeline(acquire_only=True)

        self.source.listings[FEED_URL] = [entry("a", url="https://mirror.example.com/a.mp3")]
        report = self.run_pipeline(acquire_only=True)
        self.assertEqual(report.relocated, 1)
        self.assertEqual(report.new_items, 0)
        self.assertEqual(self.item("a").source_url, "https://mirror.example.com/a.mp3")

    def test_vanished_items_are_annotated_not_deleted(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        self.run_pipeline()

        self.source.listings[FEED_URL] = [entry("a")]
        report = self.run_pipeline()
        self.assertEqual(report.unpublished, 1)
        self.assertIsNotNone(self.item("b").unpublished_at)
        self.assertEqual(self.item("b").status, ItemStatus.SUMMARIZED)

        self.assertEqual(self.run_pipeline().unpublished, 0)

    def test_fetch_error_is_reported_per_feed(self):
        other_url = "https://example.com/other.xml"
        self.store.subscribe(other_url, FeedInfo(title="Other", entries=[]))
        self.source.errors[FEED_URL] = FetchError("not_found", "HTTP 404")
        self.source.listings[other_url] = [entry("x")]

        report = self.run_pipeline()
        self.assertEqual(len(report.feed_errors), 1)
        self.assertEqual(report.feed_errors[0].kind, "not_found")
        self.assertEqual(report.summarized, 1)

    def test_feed_scope(self):
        other_url = "https://example.com/other.xml"
        other, _ = self.store.subscribe(other_url, FeedInfo(title="Other", entries=[]))
        self.source.listings[FEED_URL] = [entry("a")]
        self.source.listings[other_url] = [entry("x")]

        report = self.run_pipeline(RunScope.for_feed(other.id))
        self.assertEqual(report.new_items, 1)
        self.assertEqual(self.source.calls, [other_url])
        self.assertEqual(self.acquirer.calls, ["x"])


class TestConcurrency(OrchestratorTestCase):
    def test_summarize_ceiling_bounds_all_backend_calls(self):
        self.config = PipelineConfig(
            data_dir=self.root,
            retry=NO_DELAY,
            limits=StageLimits(summarize=2),
            chunking=ChunkingConfig(capacity_units=30, window_units=20, overlap_units=2),
        )
        self.backend = FakeBackend(delay=0.02)
        self.source.listings[FEED_URL] = [entry(g) for g in "abcd"]
        report = self.run_pipeline()

        self.assertEqual(report.summarized, 4)
        self.assertIn(PromptKind.WINDOW, self.backend.kinds())
        self.assertEqual(self.backend.max_in_flight, 2)

    def test_local_transcription_runs_one_at_a_time(self):
        model = FakeWhisperModel(delay=0.05)
        self.deriver = QualityCheckedDeriver(LocalWhisperDeriver(model_factory=lambda name, **kwargs: model))
        self.source.listings[FEED_URL] = [entry(g) for g in "abc"]
        report = self.run_pipeline()

        self.assertEqual(report.derived, 3)
        self.assertEqual(report.summarized, 3)
        self.assertEqual(model.max_in_flight, 1)
        self.assertTrue(all(name.startswith("derive") for name in model.threads))

    def test_store_writes_happen_off_the_event_loop(self):
        loop_thread = threading.get_ident()
        writers: list[int] = []
        for name in ("acquire_lock", "upsert_item", "touch_feed", "mark_acquired", "mark_derived", "put_summary"):
            original = getattr(self.store, name)

            def tracked(*args, _original=original, **kwargs):
                writers.append(threading.get_ident())
                return _original(*args, **kwargs)

            setattr(self.store, name, tracked)

        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        self.assertEqual(self.run_pipeline().summarized, 2)
        self.assertEqual(len(writers), 10)
        self.assertNotIn(loop_thread, writers)


class TestConcurrentChanges(OrchestratorTestCase):
    def test_purge_is_refused_while_the_run_holds_the_lock(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        refused = []
        acquire = self.acquirer.acquire

        def purge_then_acquire(item):
            try:
                self.store.unsubscribe(self.feed.id, purge=True, lock_ttl_seconds=3600)
            except FeedBusyError as e:
                refused.append(str(e))
            return acquire(item)

        self.acquirer.acquire = purge_then_acquire
        report = self.run_pipeline()

        self.assertEqual(len(refused), 2)
        self.assertEqual(report.summarized, 2)
        self.assertEqual(set(self.statuses().values()), {ItemStatus.SUMMARIZED})

    def test_item_deleted_mid_run_is_skipped(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        acquire = self.acquirer.acquire

        def acquire_then_delete(item):
            path = acquire(item)
            if item.guid == "a":
                with self.store.get_connection() as conn:
                    conn.execute("DELETE FROM items WHERE id = ?", (item.id,))
            return path

        self.acquirer.acquire = acquire_then_delete
        report = self.run_pipeline()

        self.assertEqual(report.acquired, 1)
        self.assertEqual(report.summarized, 1)
        self.assertEqual(report.failed, 0)
        self.assertEqual(self.statuses(), {"b": ItemStatus.SUMMARIZED})

    def test_failure_of_deleted_item_is_skipped(self):
        self.source.listings[FEED_URL] = [entry("a"), entry("b")]
        acquire = self.acquirer.acquire

        def delete_then_fail(item):
            if item.guid == "a":
                with self.store.get_connection() as conn:
                    conn.execute("DELETE FROM items WHERE id = ?", (item.id,))
                raise AcquireError("unsupported_format", "text/html")
            return acquire(item)

        self.acquirer.acquire = delete_then_fail
        report = self.run_pipeline()

        self.assertEqual(report.failed, 0)
        self.assertEqual(report.summarized, 1)


class TestRunFatal(OrchestratorTestCase):
    def test_no_subscriptions(self):
        self.store.unsubscribe(self.feed.id, purge=True)
        with self.assertRaises(RunFatalError):
            self.run_pipeline()

    def test_unknown_item_scope(self):
        with self.assertRaises(RunFatalError):
            self.run_pipeline(RunScope.for_item(4242))

    def test_unsubscribed_feed_scope(self):
        self.store.unsubscribe(self.feed.id)
        with self.assertRaises(RunFatalError):
            self.run_pipeline(RunScope.for_feed(self.feed.id))

    def test_busy_feed(self):
        self.assertTrue(self.store.acquire_lock(self.feed.id, "someone-else", ttl_seconds=3600))
        with self.assertRaises(FeedBusyError):
            self.run_pipeline()

    def test_storage_full_aborts_and_releases_locks(self):
        self.source.listings[FEED_URL] = [entry("a")]
        self.acquirer.fail["a"] = AcquireError("storage_full", "No space left on device")
        with self.assertRaises(RunFatalError):
            self.run_pipeline()
        self.assertEqual(self.statuses()["a"], ItemStatus.NEW)
        self.assertTrue(self.store.acquire_lock(self.feed.id, "next-run", ttl_seconds=3600))

    def test_cancel_before_start(self):
        self.store.subscribe(FEED_URL, FeedInfo(title="Show", entries=[entry("a"), entry("b")]))
        cancel = asyncio.Event()
        cancel.set()
        report = self.orchestrator(cancel).run_sync(RunScope.all())
        self.assertTrue(report.cancelled)
        self.assertEqual(self.acquirer.calls, [])
        self.assertEqual(set(self.statuses().values()), {ItemStatus.NEW})


class TestRedoTarget(unittest.TestCase):
    def test_non_terminal_items_have_nothing_to_redo(self):
        self.assertIsNone(redo_target(make_item(1, ItemStatus.NEW)))
        self.assertIsNone(redo_target(make_item(1, ItemStatus.ACQUIRED)))

    def test_missing_artifacts_fall_back(self):
        item = make_item(1, ItemStatus.SUMMARIZED, acquired_path="/nonexistent/a.mp3")
        self.assertEqual(redo_target(item), ItemStatus.NEW)


if __name__ == "__main__":
    unittest.main()
