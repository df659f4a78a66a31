"""
Cache-aside loaders: batch coalescing in front of the key-value store in
front of the backing store.

For every closed batch the loader reads all keys from the key-value store in
one MGET, fetches only the misses from the backing store in one bulk call,
and writes the fetched records back in one pipelined MSET.
"""

import time
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, TYPE_CHECKING

from shared.logging import get_logger, elapsed_ms

from ..adapters.backing_store import BackingStoreAdapter, record_field
from ..batching.coalescer import BatchCoalescer, BatchStats
from ..cache.kv_store import CacheWrite, KeyValueStore, MISSING
from .config import LoaderConfig

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


V = TypeVar("V")


class CacheAsideLoader(Generic[V]):
    """Point-lookup loader for one entity type."""

    def __init__(
        self,
        config: LoaderConfig,
        store: Optional[KeyValueStore],
        adapter: BackingStoreAdapter,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.store = store
        self.adapter = adapter
        self.metrics = metrics
        self.logger = get_logger(f"dataloader.loaders.{config.entity_type}")
        self._coalescer: BatchCoalescer[V] = BatchCoalescer(
            config.entity_type,
            self._resolve,
            window_ms=config.window_ms,
            max_batch_size=config.max_batch_size,
            resolve_timeout=config.resolve_timeout_seconds,
            cache_results=config.cache_results,
            memo_ttl=config.memo_ttl,
            max_memo_size=config.max_memo_size,
            clock=clock or (store.clock if store is not None else time.time),
            metrics=metrics,
        )

    @property
    def entity_type(self) -> str:
        return self.config.entity_type

    @property
    def uses_store(self) -> bool:
        return self.store is not None and self.config.caching_enabled

    async def load(self, key: str, timeout: Optional[float] = None) -> Optional[V]:
        return await self._coalescer.load(str(key), timeout)

    async def load_many(self, keys: Sequence[str], timeout: Optional[float] = None) -> List[Optional[V]]:
        return await self._coalescer.load_many([str(key) for key in keys], timeout)

    def prime(self, key: str, value: V) -> None:
        self._coalescer.prime(str(key), value)

    def clear(self, key: str) -> None:
        self._coalescer.clear(str(key))

    def clear_all(self) -> None:
        self._coalescer.clear_all()

    async def invalidate(self, key: str) -> bool:
        """Forget ``key`` in the memo and the key-value store after a write to the source of truth."""
        key = str(key)
        self._coalescer.clear(key)
        if not self.uses_store:
            return False

        removed = await self.store.delete(self.config.cache_key(key))
        self.logger.info("Loader key invalidated", key=key, removed=removed)
        return removed > 0

    async def warm(self, keys: Sequence[str]) -> Dict[str, int]:
        """Load ``keys`` through the loader so later requests hit the cache."""
        unique = list(dict.fromkeys(str(key) for key in keys))
        if not unique:
            return {"requested": 0, "found": 0}

        values = await self.load_many(unique)
        found = sum(1 for value in values if value is not None)
        self.logger.info("Loader warmed", requested=len(unique), found=found)
        return {"requested": len(unique), "found": found}

    def stats(self) -> BatchStats:
        return self._coalescer.stats()

    def reset_stats(self) -> None:
        self._coalescer.reset_stats()

    def dispatch_pending(self) -> None:
        self._coalescer.dispatch_pending()

    async def close(self) -> None:
        await self._coalescer.close()

    # ------------------------------------------------------------------
    # Batch resolution

    async def _resolve(self, keys: List[str]) -> Dict[str, Any]:
        started = time.perf_counter()
        results: Dict[str, Any] = {}
        misses = list(keys)
        read_degraded = False

        if self.uses_store:
            cached = await self.store.mget([self.config.cache_key(key) for key in keys])
            read_degraded = self.store.degraded
            misses = []
            for key, value in zip(keys, cached):
                # A cached null would hide a record that exists
                if value is MISSING or value is None:
                    misses.append(key)
                else:
                    results[key] = value
            self._record_lookups(hits=len(keys) - len(misses), misses=len(misses))
            if read_degraded:
                self.logger.warning("Key-value store degraded; resolving batch from backing store", batch_size=len(keys))

        fetched: Dict[str, Any] = {}
        if misses:
            fetched = await self._fetch(misses)
            results.update(fetched)

        if fetched and self.uses_store:
            if read_degraded:
                self.logger.warning("Skipping cache population while key-value store is degraded", entries=len(fetched))
            else:
                ttl = self.config.cache_ttl_seconds
                await self.store.mset(
                    CacheWrite(self.config.cache_key(key), value, ttl) for key, value in fetched.items()
                )

        self.logger.debug(
            "Loader batch resolved",
            batch_size=len(keys),
            cache_hits=len(keys) - len(misses),
            fetched=len(fetched),
            duration_ms=elapsed_ms(started),
        )
        return {key: results.get(key) for key in keys}

    async def _fetch(self, keys: List[str]) -> Dict[str, Any]:
        """Fetch ``keys`` from the backing store; absent keys are omitted."""
        records = await self.adapter.fetch_many(self.entity_type, keys)
        requested = set(keys)
        fetched: Dict[str, Any] = {}
        for record in records or []:
            record_key = record_field(record, self.config.key_field)
            if record_key is None:
                continue
            record_key = str(record_key)
            if record_key in requested and record_key not in fetched:
                fetched[record_key] = record
        return fetched

    def _record_lookups(self, hits: int, misses: int) -> None:
        if not self.metrics:
            return

        try:
            if hits:
                self.metrics.increment_counter(
                    "loader_cache_lookups_total", hits, entity_type=self.entity_type, result="hit"
                )
            if misses:
                self.metrics.increment_counter(
                    "loader_cache_lookups_total", misses, entity_type=self.entity_type, result="miss"
                )
        except Exception as exc:  # pragma: no cover - metrics failures should never break loading
            self.logger.debug("Failed to record lookup metrics", error=str(exc))


class GroupedCacheAsideLoader(CacheAsideLoader[List[Any]]):
    """Children-by-parent loader; every key resolves to a list, possibly empty."""

    async def _fetch(self, keys: List[str]) -> Dict[str, Any]:
        groups = await self.adapter.fetch_many_grouped(self.entity_type, keys)
        groups = groups or {}
        return {key: list(groups.get(key) or []) for key in keys}
