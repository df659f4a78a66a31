"""
Unit tests for the batch coalescer.
"""

import asyncio

import pytest

from shared.errors import BatchResolutionError, LoadTimeoutError
from service_dataloader.app.batching.coalescer import BatchCoalescer


class RecordingResolver:
    """Bulk resolver over a dict that records every call."""

    def __init__(self, data=None, delay: float = 0.0, error: Exception = None):
        self.data = dict(data or {})
        self.delay = delay
        self.error = error
        self.calls = []

    async def __call__(self, keys):
        self.calls.append(list(keys))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {key: self.data[key] for key in keys if key in self.data}


@pytest.fixture
def users():
    return {
        "u1": {"clerk_id": "u1", "name": "Ada"},
        "u2": {"clerk_id": "u2", "name": "Grace"},
        "u3": {"clerk_id": "u3", "name": "Linus"},
    }


class TestCoalescing:
    """Batch windows and sizes."""

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_resolver_call(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=10, max_batch_size=100, cache_results=False)

        first, second, third = await asyncio.gather(loader.load("u1"), loader.load("u2"), loader.load("u1"))

        assert resolver.calls == [["u1", "u2"]]
        assert first == users["u1"]
        assert second == users["u2"]
        assert third == first
        stats = loader.stats()
        assert stats.batches_dispatched == 1
        assert stats.keys_requested == 3
        assert stats.keys_dispatched == 2
        assert stats.keys_coalesced == 1

    @pytest.mark.asyncio
    async def test_memoized_duplicate_is_served_from_memo(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=10)

        results = await asyncio.gather(loader.load("u1"), loader.load("u2"), loader.load("u1"))

        assert resolver.calls == [["u1", "u2"]]
        assert results[0] == results[2] == users["u1"]
        assert loader.stats().memo_hits == 1

    @pytest.mark.asyncio
    async def test_batch_closes_at_max_size(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1000, max_batch_size=2)

        results = await asyncio.wait_for(
            asyncio.gather(loader.load("u1"), loader.load("u2"), loader.load("u3"), loader.load("u4")),
            timeout=5,
        )

        assert resolver.calls[:2] == [["u1", "u2"], ["u3", "u4"]]
        assert results == [users["u1"], users["u2"], users["u3"], None]

    @pytest.mark.asyncio
    async def test_zero_window_dispatches_on_next_tick(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=0)

        results = await asyncio.gather(loader.load("u1"), loader.load("u2"))

        assert resolver.calls == [["u1", "u2"]]
        assert results == [users["u1"], users["u2"]]

    @pytest.mark.asyncio
    async def test_loads_in_separate_windows_are_separate_batches(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=5)

        await loader.load("u1")
        await loader.load("u2")

        assert resolver.calls == [["u1"], ["u2"]]

    @pytest.mark.asyncio
    async def test_load_many_preserves_order(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=5)

        results = await loader.load_many(["u3", "missing", "u1", "u3"])

        assert results == [users["u3"], None, users["u1"], users["u3"]]
        assert len(resolver.calls) == 1

    @pytest.mark.asyncio
    async def test_batches_pipeline_while_previous_resolves(self, users):
        release = asyncio.Event()
        calls = []

        async def slow_resolver(keys):
            calls.append(list(keys))
            await release.wait()
            return {key: users[key] for key in keys}

        loader = BatchCoalescer("user", slow_resolver, window_ms=1)

        first = asyncio.ensure_future(loader.load("u1"))
        await asyncio.sleep(0.02)
        second = asyncio.ensure_future(loader.load("u2"))
        await asyncio.sleep(0.02)

        assert calls == [["u1"], ["u2"]]

        release.set()
        assert await first == users["u1"]
        assert await second == users["u2"]

    @pytest.mark.asyncio
    async def test_dispatch_pending_closes_open_batch(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=60_000)

        pending = asyncio.ensure_future(loader.load("u1"))
        await asyncio.sleep(0)
        assert loader.pending == 1

        loader.dispatch_pending()

        assert await asyncio.wait_for(pending, timeout=1) == users["u1"]
        assert loader.pending == 0

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_batches(self, users):
        resolver = RecordingResolver(users, delay=0.05)
        loader = BatchCoalescer("user", resolver, window_ms=60_000)

        pending = asyncio.ensure_future(loader.load("u1"))
        await asyncio.sleep(0)
        await loader.close()

        assert resolver.calls == [["u1"]]
        assert await asyncio.wait_for(pending, timeout=1) == users["u1"]
        assert loader.pending == 0

    def test_rejects_invalid_settings(self):
        resolver = RecordingResolver()

        with pytest.raises(ValueError):
            BatchCoalescer("user", resolver, window_ms=-1)
        with pytest.raises(ValueError):
            BatchCoalescer("user", resolver, max_batch_size=0)


class TestMemo:
    """Per-process memo of resolved results."""

    @pytest.mark.asyncio
    async def test_found_values_are_memoized(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1)

        await loader.load("u1")
        await loader.load("u1")

        assert resolver.calls == [["u1"]]

    @pytest.mark.asyncio
    async def test_not_found_is_not_memoized(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1)

        assert await loader.load("ghost") is None
        resolver.data["ghost"] = {"clerk_id": "ghost"}

        assert await loader.load("ghost") == {"clerk_id": "ghost"}
        assert resolver.calls == [["ghost"], ["ghost"]]

    @pytest.mark.asyncio
    async def test_clear_and_clear_all(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1)
        await loader.load_many(["u1", "u2"])

        loader.clear("u1")
        await loader.load_many(["u1", "u2"])
        loader.clear_all()
        await loader.load_many(["u1", "u2"])

        assert resolver.calls == [["u1", "u2"], ["u1"], ["u1", "u2"]]

    @pytest.mark.asyncio
    async def test_prime_seeds_memo(self):
        resolver = RecordingResolver()
        loader = BatchCoalescer("user", resolver, window_ms=1)

        loader.prime("u9", {"clerk_id": "u9"})
        loader.prime("u9", {"clerk_id": "other"})

        assert await loader.load("u9") == {"clerk_id": "u9"}
        assert resolver.calls == []

    @pytest.mark.asyncio
    async def test_memo_disabled_always_resolves(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1, cache_results=False)

        await loader.load("u1")
        await loader.load("u1")

        assert resolver.calls == [["u1"], ["u1"]]

    @pytest.mark.asyncio
    async def test_memo_entries_expire_after_memo_ttl(self, users, clock):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1, memo_ttl=2.0, clock=clock)

        await loader.load("u1")
        clock.advance(1.5)
        await loader.load("u1")
        clock.advance(1.0)
        await loader.load("u1")

        assert resolver.calls == [["u1"], ["u1"]]
        assert loader.stats().memo_hits == 1

    @pytest.mark.asyncio
    async def test_memo_is_bounded_oldest_first(self, users):
        resolver = RecordingResolver(users)
        loader = BatchCoalescer("user", resolver, window_ms=1, max_memo_size=2)

        await loader.load_many(["u1", "u2"])
        await loader.load("u3")
        await loader.load_many(["u2", "u3"])
        await loader.load("u1")

        assert resolver.calls == [["u1", "u2"], ["u3"], ["u1"]]


class TestFailures:
    """Batch failures and caller deadlines."""

    @pytest.mark.asyncio
    async def test_resolver_error_fails_every_waiter(self):
        resolver = RecordingResolver(error=RuntimeError("database unavailable"))
        loader = BatchCoalescer("user", resolver, window_ms=5)

        results = await asyncio.gather(loader.load("u1"), loader.load("u2"), return_exceptions=True)

        assert all(isinstance(result, BatchResolutionError) for result in results)
        assert results[0] is not results[1]
        assert results[0].retryable is True
        assert results[0].details["batch_size"] == 2
        assert isinstance(results[0].__cause__, RuntimeError)
        assert loader.stats().failures == 1

    @pytest.mark.asyncio
    async def test_failure_is_not_memoized(self, users):
        resolver = RecordingResolver(users, error=RuntimeError("boom"))
        loader = BatchCoalescer("user", resolver, window_ms=1)

        with pytest.raises(BatchResolutionError):
            await loader.load("u1")

        resolver.error = None
        assert await loader.load("u1") == users["u1"]

    @pytest.mark.asyncio
    async def test_non_mapping_result_fails_batch(self):
        async def bad_resolver(keys):
            return [{"clerk_id": key} for key in keys]

        loader = BatchCoalescer("user", bad_resolver, window_ms=1)

        with pytest.raises(BatchResolutionError):
            await loader.load("u1")

    @pytest.mark.asyncio
    async def test_resolve_timeout_fails_batch(self, users):
        resolver = RecordingResolver(users, delay=1.0)
        loader = BatchCoalescer("user", resolver, window_ms=1, resolve_timeout=0.05)

        with pytest.raises(BatchResolutionError):
            await loader.load("u1")

    @pytest.mark.asyncio
    async def test_caller_deadline_does_not_cancel_shared_batch(self, users):
        resolver = RecordingResolver(users, delay=0.1)
        loader = BatchCoalescer("user", resolver, window_ms=1, cache_results=False)

        impatient, patient = await asyncio.gather(
            loader.load("u1", timeout=0.02),
            loader.load("u1"),
            return_exceptions=True,
        )

        assert isinstance(impatient, LoadTimeoutError)
        assert impatient.details["key"] == "u1"
        assert patient == users["u1"]
        assert loader.stats().timeouts == 1
        assert resolver.calls == [["u1"]]

    @pytest.mark.asyncio
    async def test_failures_are_isolated_per_batch(self, users):
        resolver = RecordingResolver(users, error=RuntimeError("boom"))
        loader = BatchCoalescer("user", resolver, window_ms=1)

        with pytest.raises(BatchResolutionError):
            await loader.load("u1")
        resolver.error = None

        assert await loader.load("u2") == users["u2"]


class TestBatchMetrics:
    """Metrics and statistics."""

    @pytest.mark.asyncio
    async def test_records_batch_metrics(self, users, metrics):
        loader = BatchCoalescer("user", RecordingResolver(users), window_ms=1, metrics=metrics)

        await loader.load_many(["u1", "u2"])

        assert metrics.total("loader_batches_total", entity_type="user", result="ok") == 1
        sizes = [value for name, value, _ in metrics.histograms if name == "loader_batch_size"]
        assert sizes == [2]

    @pytest.mark.asyncio
    async def test_stats_average_and_reset(self, users):
        loader = BatchCoalescer("user", RecordingResolver(users), window_ms=1)

        await loader.load_many(["u1", "u2"])
        await loader.load("u3")

        assert loader.stats().as_dict()["average_batch_size"] == 1.5

        loader.reset_stats()
        assert loader.stats().batches_dispatched == 0
