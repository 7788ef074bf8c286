"""Tests for unit estimation and window splitting."""

from __future__ import annotations

import unittest

from podsum.pipeline.chunking import BoundarySplitter, estimate_units


class TestEstimateUnits(unittest.TestCase):
    def test_words(self):
        self.assertEqual(estimate_units("one two  three\nfour"), 4)
        self.assertEqual(estimate_units(""), 0)

    def test_cjk_characters_count_individually(self):
        self.assertEqual(estimate_units("今日はいい"), 5)
        self.assertEqual(estimate_units("hello 世界"), 3)


class TestBoundarySplitter(unittest.TestCase):
    def setUp(self) -> None:
        self.splitter = BoundarySplitter()

    def test_short_text_is_one_window(self):
        self.assertEqual(self.splitter.split("just a few words", 10, 2), ["just a few words"])
        self.assertEqual(self.splitter.split("   ", 10, 2), [])

    def test_windows_respect_size_and_cover_text(self):
        words = [f"w{i}" for i in range(100)]
        windows = self.splitter.split(" ".join(words), 20, 5)
        self.assertGreater(len(windows), 1)
        for w in windows:
            self.assertLessEqual(estimate_units(w), 20)
        covered = set()
        for w in windows:
            covered.update(w.split())
        self.assertEqual(covered, set(words))
        self.assertEqual(windows[0].split()[0], "w0")
        self.assertEqual(windows[-1].split()[-1], "w99")

    def test_consecutive_windows_overlap(self):
        text = " ".join(f"w{i}" for i in range(60))
        windows = self.splitter.split(text, 20, 5)
        for prev, nxt in zip(windows, windows[1:]):
            self.assertEqual(prev.split()[-5:], nxt.split()[:5])

    def test_cuts_at_sentence_end(self):
        sentence = "alpha beta gamma delta epsilon zeta eta theta."
        text = " ".join([sentence] * 6)
        windows = self.splitter.split(text, 20, 0)
        for w in windows[:-1]:
            self.assertTrue(w.endswith("."), w)

    def test_invalid_sizes(self):
        with self.assertRaises(ValueError):
            self.splitter.split("text", 0, 0)
        with self.assertRaises(ValueError):
            self.splitter.split("text", 5, 5)


if __name__ == "__main__":
    unittest.main()
