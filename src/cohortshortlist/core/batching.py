"""Batched, bounded-concurrency execution with per-item failure isolation."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

import structlog

T = TypeVar("T")
C = TypeVar("C")

Worker = Callable[[T, C], Awaitable[str | None]]
Prepare = Callable[[list[T]], Awaitable[C]]
FailureHook = Callable[[T, BaseException], None]
Describe = Callable[[T], dict[str, Any]]


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive batches of at most ``size``."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


@dataclass(slots=True)
class BatchResult:
    """Counts for one batch."""

    index: int
    processed: int = 0
    succeeded: Counter = field(default_factory=Counter)
    failed: int = 0
    duration_seconds: float = 0.0


@dataclass(slots=True)
class AggregateCounts:
    """Counts merged across every batch of a run."""

    processed: int = 0
    succeeded: dict[str, int] = field(default_factory=dict)
    failed: int = 0
    batches: int = 0
    slow_batches: list[int] = field(default_factory=list)
    duration_seconds: float = 0.0

    def merge(self, result: BatchResult, *, slow: bool = False) -> None:
        self.processed += result.processed
        self.failed += result.failed
        self.batches += 1
        for kind, count in result.succeeded.items():
            self.succeeded[kind] = self.succeeded.get(kind, 0) + count
        if slow:
            self.slow_batches.append(result.index)

    def count(self, kind: str) -> int:
        return self.succeeded.get(kind, 0)


class BatchRunner(Generic[T, C]):
    """Drive items through a worker in batches, never more than N batches at once."""

    def __init__(
        self,
        *,
        batch_size: int = 100,
        max_concurrency: int = 5,
        slow_batch_seconds: float = 30.0,
        progress_every_groups: int = 10,
    ) -> None:
        if batch_size <= 0 or max_concurrency <= 0:
            raise ValueError("batch_size and max_concurrency must be positive")
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self._slow_batch_seconds = slow_batch_seconds
        self._progress_every_groups = progress_every_groups
        self._logger = structlog.get_logger(__name__)

    async def run(
        self,
        items: Sequence[T],
        worker: Worker,
        *,
        prepare: Prepare | None = None,
        on_failure: FailureHook | None = None,
        describe: Describe | None = None,
        batch_size: int | None = None,
    ) -> AggregateCounts:
        """Process ``items`` and return aggregated counts.

        ``prepare`` runs once per batch (e.g. a bulk prefetch) and its result is
        handed to ``worker`` for every item of that batch. A failing item is
        counted and reported through ``on_failure``; it never aborts the run.
        """
        started = time.perf_counter()
        batches = partition(items, batch_size or self.batch_size)
        totals = AggregateCounts()
        if not batches:
            return totals

        semaphore = asyncio.Semaphore(self.max_concurrency)
        progress_every = self.max_concurrency * self._progress_every_groups

        async def guarded(index: int, batch: list[T]) -> BatchResult:
            async with semaphore:
                return await self._run_batch(index, batch, worker, prepare, on_failure, describe)

        tasks = [asyncio.create_task(guarded(index, batch)) for index, batch in enumerate(batches)]
        try:
            completed = 0
            for finished in asyncio.as_completed(tasks):
                result = await finished
                slow = result.duration_seconds > self._slow_batch_seconds
                totals.merge(result, slow=slow)
                completed += 1
                if completed % progress_every == 0:
                    self._logger.info(
                        "batch.progress",
                        batches_completed=completed,
                        batches_total=len(batches),
                        processed=totals.processed,
                        failed=totals.failed,
                    )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        totals.duration_seconds = time.perf_counter() - started
        return totals

    async def _run_batch(
        self,
        index: int,
        batch: list[T],
        worker: Worker,
        prepare: Prepare | None,
        on_failure: FailureHook | None,
        describe: Describe | None,
    ) -> BatchResult:
        started = time.perf_counter()
        result = BatchResult(index=index)

        context: Any = None
        if prepare is not None:
            try:
                context = await prepare(batch)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("batch.prepare_failed", batch=index, size=len(batch), error=str(exc))
                result.processed = len(batch)
                result.failed = len(batch)
                for item in batch:
                    self._report_failure(item, exc, on_failure)
                result.duration_seconds = time.perf_counter() - started
                return result

        for item in batch:
            result.processed += 1
            try:
                kind = await worker(item, context)
            except Exception as exc:  # noqa: BLE001
                result.failed += 1
                self._logger.warning(
                    "member.failed",
                    batch=index,
                    error=str(exc) or type(exc).__name__,
                    error_type=type(exc).__name__,
                    **(describe(item) if describe else {}),
                )
                self._report_failure(item, exc, on_failure)
                continue
            result.succeeded[kind or "succeeded"] += 1

        result.duration_seconds = time.perf_counter() - started
        if result.duration_seconds > self._slow_batch_seconds:
            self._logger.warning(
                "batch.slow",
                batch=index,
                size=len(batch),
                duration_seconds=round(result.duration_seconds, 3),
                threshold_seconds=self._slow_batch_seconds,
            )
        return result

    @staticmethod
    def _report_failure(item: T, exc: BaseException, on_failure: FailureHook | None) -> None:
        if on_failure is not None:
            on_failure(item, exc)
