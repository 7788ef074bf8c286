"""Bounded-concurrency stage runner.

Runs one unit of work for many items against one collaborator:
- at most `concurrency` calls in flight (asyncio.Semaphore)
- per-item failure isolation: every item gets a `StageResult`, the batch never aborts
  because one item failed
- retry/backoff for retryable errors (exponential, capped, +/- jitter)
- cooperative cancellation: once `cancel_event` is set no new work is dispatched,
  in-flight work finishes and is reported normally
- results are handed to `on_result` as they complete so the caller can persist them
  one at a time; the runner itself never persists anything

Errors of category LOCAL_RESOURCE (disk full, store unreachable) are run-fatal: the
runner stops dispatching, lets in-flight work finish and raises `RunFatalError`.
Any other error raised by `on_result` cancels the remaining tasks and propagates.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from podsum.errors import ErrorCategory, PipelineError, RunFatalError
from podsum.models import Failure, Item, Stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

WorkFn = Callable[[Item], Any]
ResultHook = Callable[["StageResult"], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for transient collaborator failures.

    `max_attempts` counts every call, the first one included.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.2


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay before attempt `attempt + 1` (attempt is 1-based)."""
    base = policy.base_delay_seconds * (2 ** max(0, attempt - 1))
    base = min(base, policy.max_delay_seconds)
    jitter = base * policy.jitter_ratio * (random.random() * 2 - 1)  # +/- jitter_ratio
    return max(0.0, base + jitter)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PipelineError) and exc.retryable


def is_fatal(exc: BaseException) -> bool:
    return isinstance(exc, PipelineError) and exc.fatal


def to_failure(stage: Stage, exc: BaseException) -> Failure:
    """Convert an exception raised by a work function into a tagged `Failure`."""
    if isinstance(exc, PipelineError):
        message = getattr(exc, "message", None) or str(exc)
        return Failure(stage=stage, category=exc.category, kind=exc.kind, message=message)
    return Failure(
        stage=stage,
        category=ErrorCategory.PERMANENT_REMOTE,
        kind="unexpected",
        message=f"{type(exc).__name__}: {exc}",
    )


class RetryExhausted(Exception):
    """Raised by `retry_call` with the last error and the number of attempts made."""

    def __init__(self, last: BaseException, attempts: int) -> None:
        super().__init__(str(last))
        self.last = last
        self.attempts = attempts


async def retry_call(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None,
    *,
    label: str = "",
    should_retry: Callable[[BaseException], bool] = is_retryable,
) -> tuple[T, int]:
    """Await `fn()` with retry/backoff; returns (value, attempts).

    Non-retryable errors and the error of the final attempt are wrapped in
    `RetryExhausted` so callers know how many attempts were made.
    """
    policy = policy or RetryPolicy(max_attempts=1)
    max_attempts = policy.max_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn(), attempt
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            if attempt >= max_attempts or not should_retry(e):
                raise RetryExhausted(e, attempt) from e
            delay = compute_backoff(attempt, policy)
            logger.warning(
                f"{label or 'call'} attempt {attempt}/{max_attempts} failed (will retry in {delay:.1f}s): {e}"
            )
            await asyncio.sleep(delay)
    raise RuntimeError("retry_call finished without a result (unexpected).")


async def _cancel_all(tasks: list[asyncio.Future]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@dataclass(frozen=True)
class StageResult(Generic[T]):
    item: Item
    output: Optional[T] = None
    failure: Optional[Failure] = None
    attempts: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.cancelled


@dataclass(frozen=True)
class StageStats:
    """Execution stats for a stage run."""

    stage: Stage
    candidates: int
    succeeded: int
    failed: int
    cancelled: int

    @classmethod
    def from_results(cls, stage: Stage, results: Iterable[StageResult]) -> "StageStats":
        results = list(results)
        return cls(
            stage=stage,
            candidates=len(results),
            succeeded=sum(1 for r in results if r.ok),
            failed=sum(1 for r in results if r.failure is not None),
            cancelled=sum(1 for r in results if r.cancelled),
        )


class StageRunner:
    """Execute a work function for many items with a concurrency ceiling."""

    def __init__(
        self,
        stage: Stage,
        *,
        concurrency: int,
        retry: RetryPolicy | None = None,
        executor: Executor | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.stage = stage
        self.concurrency = concurrency
        self.retry = retry
        self.executor = executor
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _call(self, work: WorkFn, item: Item) -> Any:
        if inspect.iscoroutinefunction(work):
            return await work(item)
        loop = asyncio.get_running_loop()
        out = await loop.run_in_executor(self.executor, work, item)
        if inspect.isawaitable(out):
            return await out
        return out

    async def _run_one(self, work: WorkFn, item: Item, sem: asyncio.Semaphore, stop: asyncio.Event) -> StageResult:
        async with sem:
            # Checked after acquiring a slot: items still waiting when a cancel or a
            # fatal error arrives are never started.
            if self._cancelled() or stop.is_set():
                return StageResult(item=item, cancelled=True)
            try:
                output, attempts = await retry_call(
                    lambda: self._call(work, item),
                    self.retry,
                    label=f"{self.stage.value} {item.label}",
                )
                return StageResult(item=item, output=output, attempts=attempts)
            except RetryExhausted as e:
                if is_fatal(e.last):
                    stop.set()
                    raise e.last
                failure = to_failure(self.stage, e.last)
                logger.info(f"{self.stage.value} failed for {item.label}: {failure.kind}: {failure.message}")
                return StageResult(item=item, failure=failure, attempts=e.attempts)

    async def run(
        self,
        items: Iterable[Item],
        work: WorkFn,
        *,
        on_result: ResultHook | None = None,
    ) -> list[StageResult]:
        """Run `work` over `items`; returns one result per item, in completion order."""
        items = list(items)
        if not items:
            return []

        logger.info(f"{self.stage.value}: {len(items)} item(s), concurrency={self.concurrency}")
        sem = asyncio.Semaphore(self.concurrency)
        stop = asyncio.Event()
        tasks = [asyncio.ensure_future(self._run_one(work, item, sem, stop)) for item in items]

        results: list[StageResult] = []
        fatal: BaseException | None = None
        try:
            for fut in asyncio.as_completed(tasks):
                try:
                    result = await fut
                except Exception as e:  # noqa: BLE001
                    # Only run-fatal errors escape `_run_one`; keep draining so in-flight
                    # items still get persisted.
                    if fatal is None:
                        fatal = e
                    continue
                results.append(result)
                if on_result is not None and not result.cancelled:
                    try:
                        hook_out = on_result(result)
                        if inspect.isawaitable(hook_out):
                            await hook_out
                    except Exception as e:  # noqa: BLE001
                        if not is_fatal(e):
                            raise
                        stop.set()
                        if fatal is None:
                            fatal = e
        except BaseException:
            # A failing hook (or outer cancellation) must not leave workers running.
            await _cancel_all(tasks)
            raise

        if fatal is not None:
            raise RunFatalError(f"{self.stage.value} stage aborted: {fatal}", cause=fatal)

        stats = StageStats.from_results(self.stage, results)
        logger.info(
            f"{self.stage.value} summary: succeeded={stats.succeeded} "
            f"failed={stats.failed} cancelled={stats.cancelled}"
        )
        return results
