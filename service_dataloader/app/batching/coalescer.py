"""
Batch coalescing for point lookups.

Individual ``load(key)`` calls issued within a short window are collected into
one batch and resolved with a single call to a bulk resolver. Batches
pipeline: once a batch closes, new calls open a fresh batch immediately while
the previous one is still resolving.

All batch bookkeeping runs in synchronous sections of the event loop (never
across an ``await``), which makes "append key" and "close batch" atomic with
respect to each other without an explicit lock.

Resolved values stay memoized for at most ``memo_ttl`` seconds after their
batch resolves, and the memo never holds more than ``max_memo_size`` keys;
the oldest entries are dropped first.
"""

import asyncio
import time
from dataclasses import dataclass, asdict, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Set, TypeVar, TYPE_CHECKING

from shared.errors import BatchResolutionError, LoadTimeoutError
from shared.logging import get_logger, elapsed_ms

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


V = TypeVar("V")

Resolver = Callable[[List[str]], Awaitable[Mapping[str, Any]]]


@dataclass
class BatchStats:
    """Per-loader batching counters."""

    batches_dispatched: int = 0
    keys_requested: int = 0
    keys_dispatched: int = 0
    keys_coalesced: int = 0
    memo_hits: int = 0
    failures: int = 0
    timeouts: int = 0

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_batch_size"] = (
            round(self.keys_dispatched / self.batches_dispatched, 2) if self.batches_dispatched else 0.0
        )
        return data


@dataclass
class _Batch:
    """An open or dispatched batch; ``waiters`` preserves key insertion order."""

    opened_at: float
    waiters: Dict[str, List[asyncio.Future]] = field(default_factory=dict)
    timer: Optional[asyncio.TimerHandle] = None
    dispatched: bool = False


def _consume_exception(future: asyncio.Future) -> None:
    # Waiters that gave up on their deadline never read the exception
    if not future.cancelled():
        future.exception()


class BatchCoalescer(Generic[V]):
    """Coalesce concurrent lookups for one entity type into bulk resolver calls."""

    def __init__(
        self,
        name: str,
        resolver: Resolver,
        *,
        window_ms: int = 10,
        max_batch_size: int = 100,
        resolve_timeout: Optional[float] = None,
        cache_results: bool = True,
        memo_ttl: Optional[float] = None,
        max_memo_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if window_ms < 0:
            raise ValueError("window_ms must be >= 0")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")

        self.name = name
        self.window_ms = window_ms
        self.max_batch_size = max_batch_size
        self.resolve_timeout = resolve_timeout
        self.cache_results = cache_results
        self.memo_ttl = memo_ttl
        self.max_memo_size = max_memo_size
        self.metrics = metrics
        self.logger = get_logger(f"dataloader.batching.{name}")

        self._resolver = resolver
        self._current: Optional[_Batch] = None
        self._clock = clock
        self._memo: Dict[str, asyncio.Future] = {}
        self._memoized_at: Dict[str, float] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._stats = BatchStats()

    # ------------------------------------------------------------------
    # Public API

    async def load(self, key: str, timeout: Optional[float] = None) -> Optional[V]:
        """Resolve one key; ``None`` means not found."""
        future = self._enqueue(key)
        if timeout is None:
            return await asyncio.shield(future)

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            self._stats.timeouts += 1
            self.logger.warning("Load deadline elapsed before batch resolved", key=key, timeout=timeout)
            raise LoadTimeoutError(self.name, key, timeout) from None

    async def load_many(self, keys: Sequence[str], timeout: Optional[float] = None) -> List[Optional[V]]:
        """Resolve several keys; results follow the order of ``keys``."""
        return list(await asyncio.gather(*(self.load(key, timeout) for key in keys)))

    def prime(self, key: str, value: V) -> None:
        """Seed the memo with a known value; existing entries win."""
        if not self.cache_results or self._recall(key) is not None:
            return
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._remember(key, future)

    def clear(self, key: str) -> None:
        self._memo.pop(key, None)
        self._memoized_at.pop(key, None)

    def clear_all(self) -> None:
        """Forget every memoized result. In-flight batches are unaffected."""
        self._memo.clear()
        self._memoized_at.clear()

    def dispatch_pending(self) -> None:
        """Close the open batch now instead of waiting for its window."""
        if self._current is not None:
            self._dispatch(self._current)

    async def close(self) -> None:
        """Dispatch the open batch and wait for every in-flight resolution."""
        self.dispatch_pending()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @property
    def pending(self) -> int:
        """Unique keys waiting in the open batch."""
        return len(self._current.waiters) if self._current is not None else 0

    def stats(self) -> BatchStats:
        return BatchStats(**asdict(self._stats))

    def reset_stats(self) -> None:
        self._stats = BatchStats()

    # ------------------------------------------------------------------
    # Batch state machine

    def _enqueue(self, key: str) -> asyncio.Future:
        self._stats.keys_requested += 1

        if self.cache_results:
            memoized = self._recall(key)
            if memoized is not None:
                self._stats.memo_hits += 1
                return memoized

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_consume_exception)
        if self.cache_results:
            self._remember(key, future)

        batch = self._current
        if batch is None:
            batch = self._open_batch(loop)

        waiters = batch.waiters.get(key)
        if waiters is not None:
            waiters.append(future)
            self._stats.keys_coalesced += 1
        else:
            batch.waiters[key] = [future]
            if len(batch.waiters) >= self.max_batch_size:
                self._dispatch(batch)

        return future

    def _open_batch(self, loop: asyncio.AbstractEventLoop) -> _Batch:
        batch = _Batch(opened_at=time.perf_counter())
        if self.window_ms == 0:
            batch.timer = loop.call_soon(self._dispatch, batch)
        else:
            batch.timer = loop.call_later(self.window_ms / 1000.0, self._dispatch, batch)
        self._current = batch
        return batch

    def _dispatch(self, batch: _Batch) -> None:
        """Close ``batch`` and start resolving it. Idempotent."""
        if batch.dispatched:
            return
        batch.dispatched = True
        if batch.timer is not None:
            batch.timer.cancel()
            batch.timer = None
        if self._current is batch:
            self._current = None

        self._stats.batches_dispatched += 1
        self._stats.keys_dispatched += len(batch.waiters)

        task = asyncio.get_running_loop().create_task(self._resolve(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _resolve(self, batch: _Batch) -> None:
        keys = list(batch.waiters)
        started = time.perf_counter()

        try:
            if self.resolve_timeout is not None:
                results = await asyncio.wait_for(self._resolver(keys), self.resolve_timeout)
            else:
                results = await self._resolver(keys)
            if not isinstance(results, Mapping):
                raise TypeError(f"resolver returned {type(results).__name__}, expected a mapping")
        except asyncio.CancelledError as exc:
            self._fail(batch, keys, exc)
            raise
        except Exception as exc:
            self.logger.error(
                "Batch resolution failed",
                batch_size=len(keys),
                error=str(exc) or type(exc).__name__,
                duration_ms=elapsed_ms(started),
            )
            self._fail(batch, keys, exc)
            self._record_batch(len(keys), started, "error")
            return

        found = 0
        for key, waiters in batch.waiters.items():
            value = results.get(key)
            if value is None:
                self._forget(key, waiters)
            else:
                found += 1
                if self._memo.get(key) in waiters:
                    self._memoized_at[key] = self._clock()
            for future in waiters:
                if not future.done():
                    future.set_result(value)

        self.logger.debug(
            "Batch resolved",
            batch_size=len(keys),
            found=found,
            duration_ms=elapsed_ms(started),
            queued_ms=round((started - batch.opened_at) * 1000, 2),
        )
        self._record_batch(len(keys), started, "ok")

    def _fail(self, batch: _Batch, keys: List[str], cause: BaseException) -> None:
        self._stats.failures += 1
        for key, waiters in batch.waiters.items():
            self._forget(key, waiters)
            for future in waiters:
                if not future.done():
                    future.set_exception(BatchResolutionError(self.name, keys, cause))

    def _forget(self, key: str, waiters: List[asyncio.Future]) -> None:
        """Drop a memo entry that belongs to this batch (not-found or failed)."""
        memoized = self._memo.get(key)
        if memoized is not None and memoized in waiters:
            del self._memo[key]
            self._memoized_at.pop(key, None)

    def _remember(self, key: str, future: asyncio.Future) -> None:
        self._memo[key] = future
        self._memoized_at[key] = self._clock()
        if self.max_memo_size is not None:
            while len(self._memo) > self.max_memo_size:
                oldest = next(iter(self._memo))
                del self._memo[oldest]
                self._memoized_at.pop(oldest, None)

    def _recall(self, key: str) -> Optional[asyncio.Future]:
        """Memoized future for ``key``, unless it resolved longer than ``memo_ttl`` ago."""
        future = self._memo.get(key)
        if future is None or self.memo_ttl is None or not future.done():
            return future
        if self._clock() - self._memoized_at.get(key, 0.0) < self.memo_ttl:
            return future
        del self._memo[key]
        self._memoized_at.pop(key, None)
        return None

    def _record_batch(self, size: int, started: float, result: str) -> None:
        if not self.metrics:
            return

        try:
            self.metrics.increment_counter("loader_batches_total", entity_type=self.name, result=result)
            self.metrics.observe_histogram("loader_batch_size", size, entity_type=self.name)
            self.metrics.observe_histogram(
                "loader_batch_duration_seconds", time.perf_counter() - started, entity_type=self.name
            )
        except Exception as exc:  # pragma: no cover - metrics failures should never break loading
            self.logger.debug("Failed to record batch metrics", error=str(exc))
