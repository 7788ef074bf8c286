"""Summarize transcripts of any length.

Short transcripts go to the backend in one call. Longer ones (or ones the backend
rejects as too large) are split into overlapping windows, each window is summarized
on its own, and a final reduce call merges the partial summaries into the same
structured shape a single call returns.

A window that still fails after retries is replaced by a gap placeholder and listed
in `coverage_gaps`; the item only fails when every window failed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

from podsum.config import ChunkingConfig
from podsum.errors import SummarizeError
from podsum.models import StructuredSummary, SummaryDraft
from podsum.pipeline.chunking import BoundarySplitter, Splitter, estimate_units
from podsum.pipeline.runner import RetryExhausted, RetryPolicy, retry_call

logger = logging.getLogger(__name__)


class PromptKind(str, Enum):
    FULL = "full"
    WINDOW = "window"
    REDUCE = "reduce"


@dataclass(frozen=True)
class SummaryPrompt:
    """Which instructions the backend should use for one call."""

    kind: PromptKind
    title: Optional[str] = None
    part: Optional[int] = None
    parts: Optional[int] = None


@dataclass(frozen=True)
class SummaryResponse:
    summary: StructuredSummary
    model: str
    prompt_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class SummaryBackend(Protocol):
    async def summarize(self, text: str, prompt: SummaryPrompt) -> SummaryResponse:
        ...


def gap_placeholder(part: int, parts: int, reason: str) -> str:
    return f"[gap: part {part} of {parts} could not be summarized: {reason}]"


def _sum_tokens(values: Sequence[Optional[int]]) -> Optional[int]:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def _is_context_too_large(exc: BaseException) -> bool:
    return isinstance(exc, SummarizeError) and exc.kind == "context_too_large"


class ChunkReduceSummarizer:
    def __init__(
        self,
        backend: SummaryBackend,
        chunking: ChunkingConfig | None = None,
        *,
        concurrency: int = 2,
        retry: RetryPolicy | None = None,
        splitter: Splitter | None = None,
    ) -> None:
        self.backend = backend
        self.chunking = chunking or ChunkingConfig()
        self.concurrency = max(1, concurrency)
        self.retry = retry
        self.splitter = splitter or BoundarySplitter()
        self._sem: asyncio.Semaphore | None = None
        self._sem_loop: asyncio.AbstractEventLoop | None = None

    def _semaphore(self) -> asyncio.Semaphore:
        """One ceiling for every backend call made through this summarizer.

        Shared by all items summarized concurrently, so the number of calls in flight
        never exceeds `concurrency` however many items the summarize stage runs.
        """
        loop = asyncio.get_running_loop()
        if self._sem is None or self._sem_loop is not loop:
            self._sem = asyncio.Semaphore(self.concurrency)
            self._sem_loop = loop
        return self._sem

    async def _backend_call(self, text: str, prompt: SummaryPrompt) -> SummaryResponse:
        async with self._semaphore():
            return await self.backend.summarize(text, prompt)

    async def _call(self, text: str, prompt: SummaryPrompt, label: str) -> SummaryResponse:
        # The slot is released during backoff sleeps.
        response, _ = await retry_call(lambda: self._backend_call(text, prompt), self.retry, label=label)
        return response

    async def summarize(self, text: str, title: str | None = None) -> SummaryDraft:
        if not text or not text.strip():
            raise ValueError("Transcript is empty")

        units = estimate_units(text)
        if units <= self.chunking.capacity_units:
            try:
                prompt = SummaryPrompt(PromptKind.FULL, title=title)
                response = await self._call(text, prompt, f"summarize {title or ''}")
            except RetryExhausted as e:
                if not _is_context_too_large(e.last):
                    raise e.last
                logger.info(f"Backend rejected {units} units as too large; falling back to chunked summary")
            else:
                return SummaryDraft(
                    summary=response.summary,
                    model=response.model,
                    prompt_tokens=response.prompt_tokens,
                    output_tokens=response.output_tokens,
                    windows=1,
                )

        return await self._summarize_chunked(text, title)

    async def _summarize_chunked(self, text: str, title: str | None) -> SummaryDraft:
        windows = self.splitter.split(text, self.chunking.window_units, self.chunking.overlap_units)
        n = len(windows)
        logger.info(f"Summarizing {title or 'transcript'} in {n} window(s)")

        async def run_window(i: int, window: str) -> SummaryResponse | BaseException:
            prompt = SummaryPrompt(PromptKind.WINDOW, title=title, part=i, parts=n)
            try:
                return await self._call(window, prompt, f"window {i}/{n}")
            except RetryExhausted as e:
                logger.warning(f"Window {i}/{n} of {title or 'transcript'} failed: {e.last}")
                return e.last

        outcomes = await asyncio.gather(*(run_window(i, w) for i, w in enumerate(windows, start=1)))

        responses = [o for o in outcomes if isinstance(o, SummaryResponse)]
        if not responses:
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            if not errors:
                raise ValueError("Transcript produced no windows")
            raise errors[-1]

        parts: list[str] = []
        gaps: list[str] = []
        for i, outcome in enumerate(outcomes, start=1):
            if isinstance(outcome, SummaryResponse):
                parts.append(f"### Part {i} of {n}\n{outcome.summary.render_markdown()}")
            else:
                gap = gap_placeholder(i, n, str(outcome))
                gaps.append(gap)
                parts.append(gap)

        reduce_prompt = SummaryPrompt(PromptKind.REDUCE, title=title, parts=n)
        try:
            reduced = await self._call("\n\n".join(parts), reduce_prompt, f"reduce {title or ''}")
        except RetryExhausted as e:
            raise e.last

        summary = reduced.summary.model_copy(update={"coverage_gaps": gaps})
        calls = [*responses, reduced]
        return SummaryDraft(
            summary=summary,
            model=reduced.model,
            prompt_tokens=_sum_tokens([r.prompt_tokens for r in calls]),
            output_tokens=_sum_tokens([r.output_tokens for r in calls]),
            windows=n,
        )
