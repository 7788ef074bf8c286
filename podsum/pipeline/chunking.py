"""Text size estimation and window splitting for long transcripts.

Sizes are approximate "units": one per whitespace-delimited word, and one per CJK
character (CJK text has no spaces, so counting words would make a whole paragraph
one unit). This is a heuristic for deciding when to chunk, not a tokenizer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

_CJK_RANGES = (
    "\u3040-\u30ff"  # hiragana, katakana
    "\u3400-\u4dbf"  # CJK extension A
    "\u4e00-\u9fff"  # CJK unified ideographs
    "\uac00-\ud7af"  # hangul syllables
    "\uf900-\ufaff"  # CJK compatibility ideographs
)
_TOKEN_RE = re.compile(rf"[{_CJK_RANGES}]|[^\s{_CJK_RANGES}]+")

_SENTENCE_END = (".", "!", "?", "。", "！", "？", "…", '."', '?"', '!"')


@dataclass(frozen=True)
class Token:
    text: str
    start: int
    end: int


def tokenize(text: str) -> list[Token]:
    return [Token(m.group(0), m.start(), m.end()) for m in _TOKEN_RE.finditer(text or "")]


def estimate_units(text: str) -> int:
    """Approximate size of `text` in units (see module docstring)."""
    return sum(1 for _ in _TOKEN_RE.finditer(text or ""))


class Splitter(Protocol):
    def split(self, text: str, window_units: int, overlap_units: int) -> list[str]:
        ...


class BoundarySplitter:
    """Split into overlapping windows, cutting at sentence or paragraph ends.

    Each window holds at most `window_units` units. The cut is placed after the last
    sentence or paragraph end found in the back half of the window; when there is
    none the window is cut at a word boundary. Consecutive windows share
    `overlap_units` units.
    """

    def split(self, text: str, window_units: int, overlap_units: int) -> list[str]:
        if window_units < 1:
            raise ValueError("window_units must be >= 1")
        if not 0 <= overlap_units < window_units:
            raise ValueError("overlap_units must be >= 0 and smaller than window_units")

        tokens = tokenize(text)
        if not tokens:
            return []

        windows: list[str] = []
        n = len(tokens)
        start = 0
        while start < n:
            end = min(start + window_units, n)
            if end < n:
                end = self._find_cut(text, tokens, start, end)
            windows.append(text[tokens[start].start : tokens[end - 1].end])
            if end >= n:
                break
            start = max(end - overlap_units, start + 1)
        return windows

    @staticmethod
    def _find_cut(text: str, tokens: list[Token], start: int, end: int) -> int:
        """Exclusive token index to cut at; `end` itself when no boundary is found."""
        floor = start + max(1, (end - start) // 2)
        for k in range(end - 1, floor - 1, -1):
            tok = tokens[k]
            if tok.text.endswith(_SENTENCE_END):
                return k + 1
            if k + 1 < len(tokens) and "\n\n" in text[tok.end : tokens[k + 1].start]:
                return k + 1
        return end
