"""CLI smoke tests against a temporary data directory (no network)."""

from __future__ import annotations

import contextlib
import io
import os
import tempfile
import unittest
from unittest import mock

from podsum.cli import build_parser, main
from podsum.config import load_config
from podsum.database import ItemStore
from podsum.models import FeedInfo
from podsum.tests.fakes import entry


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self._old_env = os.environ.copy()
        self._tmp = tempfile.TemporaryDirectory()
        os.environ["PODSUM_DATA_DIR"] = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()
        os.environ.clear()
        os.environ.update(self._old_env)

    def run_cli(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out), mock.patch("podsum.cli.load_dotenv"):
            code = main(list(argv))
        return code, out.getvalue()

    def seed(self) -> ItemStore:
        store = ItemStore(load_config().db_path)
        store.subscribe(
            "https://example.com/feed.xml",
            FeedInfo(title="Example Show", entries=[entry("a", title="First"), entry("b", title="Second")]),
        )
        return store

    def test_parser(self):
        args = build_parser().parse_args(["sync", "example", "--redo", "--download-only"])
        self.assertEqual(args.name, "example")
        self.assertTrue(args.redo)
        self.assertTrue(args.download_only)
        self.assertIsNone(args.episode)

    def test_list_empty(self):
        code, out = self.run_cli("list")
        self.assertEqual(code, 0)
        self.assertIn("No subscriptions yet", out)

    def test_list_feed_items(self):
        self.seed()
        code, out = self.run_cli("list", "example")
        self.assertEqual(code, 0)
        self.assertIn("Example Show (2 episodes)", out)
        self.assertIn("[new]", out)

    def test_show_without_summary(self):
        store = self.seed()
        item = store.get_item(1, "a")
        code, out = self.run_cli("show", str(item.id))
        self.assertEqual(code, 0)
        self.assertIn("No summary yet", out)

    def test_unknown_episode(self):
        code, out = self.run_cli("show", "999")
        self.assertEqual(code, 1)
        self.assertIn("Item 999 not found", out)

    def test_remove_keeps_history(self):
        store = self.seed()
        code, out = self.run_cli("remove", "Example", "--yes")
        self.assertEqual(code, 0)
        self.assertIn("Unsubscribed", out)
        self.assertEqual(store.list_feeds(), [])
        self.assertEqual(len(store.list_items()), 2)

    def test_remove_refused_during_run(self):
        store = self.seed()
        feed = store.list_feeds()[0]
        self.assertTrue(store.acquire_lock(feed.id, "running", ttl_seconds=3600))
        code, out = self.run_cli("remove", "Example", "--yes", "--purge")
        self.assertEqual(code, 1)
        self.assertIn("being processed", out)
        self.assertEqual(len(store.list_items()), 2)

    def test_sync_without_subscriptions_fails(self):
        with mock.patch("podsum.cli.build_orchestrator") as build:
            from podsum.pipeline.orchestrator import Orchestrator

            def real(cfg, store, cancel_event=None):
                return Orchestrator(
                    store,
                    cfg,
                    feed_source=None,
                    acquirer=None,
                    deriver=None,
                    summarizer=None,  # type: ignore[arg-type]
                    cancel_event=cancel_event,
                )

            build.side_effect = real
            code, out = self.run_cli("sync")
        self.assertEqual(code, 1)
        self.assertIn("No subscriptions", out)

    def test_invalid_config(self):
        os.environ["PODSUM_RETRY_MAX_ATTEMPTS"] = "0"
        code, out = self.run_cli("list")
        self.assertEqual(code, 2)
        self.assertIn("Invalid configuration", out)

    def test_config_path(self):
        code, out = self.run_cli("config", "path")
        self.assertEqual(code, 0)
        self.assertIn(self._tmp.name, out)


if __name__ == "__main__":
    unittest.main()
