"""Tests for feed listing diffs."""

from __future__ import annotations

import unittest
from datetime import datetime, timezone

from podsum.pipeline.differ import diff_feed
from podsum.tests.fakes import entry, make_item


class TestDiffFeed(unittest.TestCase):
    def setUp(self) -> None:
        self.known = {
            "a": make_item(1, guid="a", source_url="https://cdn.example.com/a.mp3"),
            "b": make_item(2, guid="b", source_url="https://cdn.example.com/b.mp3"),
        }

    def test_new_entries_keep_listing_order(self):
        diff = diff_feed([entry("d"), entry("a"), entry("c"), entry("b")], self.known)
        self.assertEqual([e.guid for e in diff.new_entries], ["d", "c"])
        self.assertEqual(diff.vanished, [])
        self.assertEqual(diff.relocated, [])

    def test_known_guid_with_new_url_is_relocated_not_new(self):
        diff = diff_feed([entry("a", url="https://mirror.example.com/a.mp3"), entry("b")], self.known)
        self.assertEqual(diff.new_entries, [])
        self.assertEqual(len(diff.relocated), 1)
        item, url = diff.relocated[0]
        self.assertEqual(item.guid, "a")
        self.assertEqual(url, "https://mirror.example.com/a.mp3")

    def test_known_guid_with_new_title_is_unchanged(self):
        diff = diff_feed([entry("a", title="Renamed"), entry("b")], self.known)
        self.assertTrue(diff.unchanged)

    def test_duplicate_guids_keep_first(self):
        first = entry("c", url="https://cdn.example.com/c1.mp3")
        second = entry("c", url="https://cdn.example.com/c2.mp3")
        diff = diff_feed([first, second, entry("a"), entry("b")], self.known)
        self.assertEqual(diff.new_entries, [first])
        self.assertEqual(diff.duplicates, [second])

    def test_vanished_items_are_reported_once(self):
        diff = diff_feed([entry("a")], self.known)
        self.assertEqual([i.guid for i in diff.vanished], ["b"])

        annotated = dict(self.known)
        annotated["b"] = make_item(2, guid="b", unpublished_at=datetime(2024, 2, 1, tzinfo=timezone.utc))
        again = diff_feed([entry("a")], annotated)
        self.assertEqual(again.vanished, [])
        self.assertTrue(again.unchanged)

    def test_reappeared(self):
        annotated = dict(self.known)
        annotated["b"] = make_item(
            2,
            guid="b",
            source_url="https://cdn.example.com/b.mp3",
            unpublished_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
        )
        diff = diff_feed([entry("a"), entry("b")], annotated)
        self.assertEqual([i.guid for i in diff.reappeared], ["b"])

    def test_empty_listing(self):
        diff = diff_feed([], {})
        self.assertTrue(diff.unchanged)


if __name__ == "__main__":
    unittest.main()
