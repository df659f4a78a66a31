"""
Redis-backed key-value store shared by every loader.

The store is an accelerator, never a source of truth: every method absorbs
transport failures and returns a neutral value (MISSING, False, 0, an all-
MISSING list) so callers only ever see slower reads, never errors.
"""

import asyncio
import json
import time
from dataclasses import dataclass, asdict, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import redis.asyncio as redis

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.logging import get_logger, elapsed_ms

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


ENVELOPE_MARKER = "__kv__"
FLUSH_CHUNK_SIZE = 500


class _Missing:
    """Sentinel for an absent key; distinct from a stored ``None``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


@dataclass
class OperationalStats:
    """Monotonic operation counters; reset only through ``reset_stats``."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    deletes: int = 0
    errors: int = 0
    total_requests: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = round(self.hit_rate, 4)
        return data


@dataclass(frozen=True)
class HealthStatus:
    """Result of a liveness probe."""

    status: str
    latency_ms: float

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def as_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "latency_ms": self.latency_ms}


@dataclass(frozen=True)
class CacheWrite:
    """One entry of a pipelined ``mset``."""

    key: str
    value: Any
    ttl: Optional[float] = None


CacheWriteLike = Union[CacheWrite, Tuple[str, Any], Tuple[str, Any, Optional[float]]]


class KeyValueStore:
    """Fail-open Redis cache with JSON values, per-key TTLs and counters."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        client: Optional[redis.Redis] = None,
        namespace: str = "",
        operation_timeout: float = 5.0,
        health_check_timeout: float = 2.0,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        self.namespace = namespace.rstrip(":")
        self.operation_timeout = operation_timeout
        self.health_check_timeout = health_check_timeout
        self.metrics = metrics
        self.logger = get_logger("dataloader.cache.kv_store")

        self._client = client
        self._owns_client = client is None
        self.clock = clock
        self._stats = OperationalStats()
        self._breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            name="kv_store",
        )

        # True while the most recent round trip failed
        self.degraded = False

    async def __aenter__(self) -> "KeyValueStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the client and probe it. An unreachable server is logged, not raised."""
        client = self._get_client()
        try:
            await asyncio.wait_for(client.ping(), self.health_check_timeout)
            self.degraded = False
            self.logger.info("Key-value store connected", namespace=self.namespace or None)
        except Exception as e:
            self.degraded = True
            self.logger.warning(
                "Key-value store unreachable at startup; serving from backing store only",
                error=str(e),
            )

    async def close(self) -> None:
        """Close the client if this store created it."""
        if self._client is None:
            return
        if self._owns_client:
            try:
                await self._client.aclose()
                self.logger.info("Key-value store connection closed")
            except Exception as e:
                self.logger.warning("Error closing key-value store connection", error=str(e))
            self._client = None

    def _get_client(self) -> redis.Redis:
        """Get Redis connection."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.operation_timeout,
                socket_timeout=self.operation_timeout,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self._client

    # ------------------------------------------------------------------
    # Reads

    async def get(self, key: str) -> Any:
        """Return the stored value, or ``MISSING``."""
        self._stats.total_requests += 1
        try:
            raw = await self._run("get", lambda c: c.get(self._k(key)))
        except Exception as e:
            self._record_failure("get", e, key=key)
            return MISSING

        value, outcome = self._decode(raw)
        self._count_lookup(outcome, key)
        return value

    async def mget(self, keys: Sequence[str]) -> List[Any]:
        """Return one value or ``MISSING`` per key, in input order."""
        keys = list(keys)
        if not keys:
            return []

        self._stats.total_requests += len(keys)
        try:
            raws = await self._run("mget", lambda c: c.mget([self._k(k) for k in keys]))
        except Exception as e:
            self._record_failure("mget", e, count=len(keys), keys=len(keys))
            return [MISSING] * len(keys)

        results = []
        for key, raw in zip(keys, raws):
            value, outcome = self._decode(raw)
            self._count_lookup(outcome, key)
            results.append(value)
        return results

    async def exists(self, key: str) -> bool:
        self._stats.total_requests += 1
        try:
            result = await self._run("exists", lambda c: c.exists(self._k(key)))
        except Exception as e:
            self._record_failure("exists", e, key=key)
            return False
        return int(result) == 1

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds: -1 without expiry, -2 when absent or unknown."""
        self._stats.total_requests += 1
        try:
            return int(await self._run("ttl", lambda c: c.ttl(self._k(key))))
        except Exception as e:
            self._record_failure("ttl", e, key=key)
            return -2

    # ------------------------------------------------------------------
    # Writes

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value``; ``ttl=None`` means no expiration."""
        payload = self._encode(value, ttl)
        px = self._px(ttl)
        self._stats.total_requests += 1
        try:
            await self._run("set", lambda c: c.set(self._k(key), payload, px=px))
        except Exception as e:
            self._record_failure("set", e, key=key)
            return False

        self._stats.writes += 1
        return True

    async def setex(self, key: str, ttl: float, value: Any) -> bool:
        return await self.set(key, value, ttl)

    async def setnx(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` only if ``key`` is absent."""
        payload = self._encode(value, ttl)
        px = self._px(ttl)
        self._stats.total_requests += 1
        try:
            created = await self._run("setnx", lambda c: c.set(self._k(key), payload, px=px, nx=True))
        except Exception as e:
            self._record_failure("setnx", e, key=key)
            return False

        if created:
            self._stats.writes += 1
        return bool(created)

    async def mset(self, entries: Iterable[CacheWriteLike]) -> bool:
        """Write every entry in a single pipelined round trip."""
        writes = [self._coerce_write(entry) for entry in entries]
        if not writes:
            return True

        commands = [(self._k(w.key), self._encode(w.value, w.ttl), self._px(w.ttl)) for w in writes]

        async def _pipelined(client: redis.Redis):
            async with client.pipeline(transaction=False) as pipe:
                for cache_key, payload, px in commands:
                    pipe.set(cache_key, payload, px=px)
                return await pipe.execute()

        self._stats.total_requests += len(writes)
        try:
            await self._run("mset", _pipelined)
        except Exception as e:
            self._record_failure("mset", e, count=len(writes), entries=len(writes))
            return False

        self._stats.writes += len(writes)
        return True

    async def expire(self, key: str, ttl: float) -> bool:
        """Reset the TTL of an existing key. Envelopes are rewritten so the embedded deadline moves too."""
        px = self._px(ttl)
        cache_key = self._k(key)

        async def _expire(client: redis.Redis) -> bool:
            raw = await client.get(cache_key)
            if raw is None:
                return False
            value, outcome = self._decode(raw)
            if outcome != "hit":
                return False
            if not self._is_envelope(raw):
                return bool(await client.pexpire(cache_key, px))
            return bool(await client.set(cache_key, self._encode(value, ttl), px=px, xx=True))

        self._stats.total_requests += 1
        try:
            result = await self._run("expire", _expire)
        except Exception as e:
            self._record_failure("expire", e, key=key)
            return False
        return bool(result)

    async def increment(self, key: str, by: int = 1) -> int:
        """Increment a counter, creating it at 0 first if absent. Returns 0 on failure."""
        self._stats.total_requests += 1
        try:
            value = await self._run("increment", lambda c: c.incrby(self._k(key), by))
        except Exception as e:
            self._record_failure("increment", e, key=key)
            return 0

        self._stats.writes += 1
        return int(value)

    async def delete(self, key: str) -> int:
        """Delete one key; returns the number of keys removed."""
        self._stats.total_requests += 1
        try:
            removed = int(await self._run("delete", lambda c: c.delete(self._k(key))))
        except Exception as e:
            self._record_failure("delete", e, key=key)
            return 0

        self._stats.deletes += removed
        return removed

    async def mdelete(self, keys: Sequence[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0

        self._stats.total_requests += len(keys)
        try:
            removed = int(await self._run("mdelete", lambda c: c.delete(*[self._k(k) for k in keys])))
        except Exception as e:
            self._record_failure("mdelete", e, count=len(keys), keys=len(keys))
            return 0

        self._stats.deletes += removed
        return removed

    async def flush(self) -> int:
        """Delete every key in this store's namespace (the whole database without one)."""

        async def _flush(client: redis.Redis) -> int:
            if not self.namespace:
                removed = await client.dbsize()
                await client.flushdb()
                return int(removed)

            removed = 0
            batch: List[str] = []
            async for cache_key in client.scan_iter(match=f"{self.namespace}:*", count=FLUSH_CHUNK_SIZE):
                batch.append(cache_key)
                if len(batch) >= FLUSH_CHUNK_SIZE:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
            return removed

        self._stats.total_requests += 1
        try:
            removed = await self._run("flush", _flush)
        except Exception as e:
            self._record_failure("flush", e)
            return 0

        self._stats.deletes += removed
        self.logger.warning("Key-value store flushed", namespace=self.namespace or None, removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Observability

    async def health_check(self) -> HealthStatus:
        """PING the server within ``health_check_timeout``."""
        started = time.perf_counter()
        try:
            client = self._get_client()
            await asyncio.wait_for(client.ping(), self.health_check_timeout)
        except Exception as e:
            self.logger.warning("Key-value store health check failed", error=str(e))
            return HealthStatus(status="unhealthy", latency_ms=-1.0)

        return HealthStatus(status="healthy", latency_ms=elapsed_ms(started))

    def stats(self) -> OperationalStats:
        """Snapshot of the operation counters."""
        return replace(self._stats)

    def reset_stats(self) -> None:
        self._stats = OperationalStats()
        self.logger.info("Key-value store statistics reset")

    def circuit_state(self) -> Dict[str, Any]:
        return self._breaker.get_state()

    # ------------------------------------------------------------------
    # Internals

    def _k(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    @staticmethod
    def _px(ttl: Optional[float]) -> Optional[int]:
        if ttl is None:
            return None
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl!r}")
        return max(1, int(ttl * 1000))

    def _encode(self, value: Any, ttl: Optional[float]) -> str:
        expires_at = self.clock() + ttl if ttl is not None else None
        return json.dumps(
            {ENVELOPE_MARKER: 1, "v": value, "exp": expires_at},
            default=str,
            separators=(",", ":"),
        )

    def _decode(self, raw: Any) -> Tuple[Any, str]:
        """Return ``(value, outcome)`` where outcome is hit, miss, expired or corrupt."""
        if raw is None:
            return MISSING, "miss"

        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            return MISSING, "corrupt"

        if isinstance(decoded, dict) and decoded.get(ENVELOPE_MARKER) == 1 and "v" in decoded:
            expires_at = decoded.get("exp")
            if expires_at is not None:
                try:
                    expired = float(expires_at) <= self.clock()
                except (TypeError, ValueError):
                    return MISSING, "corrupt"
                if expired:
                    return MISSING, "expired"
            return decoded["v"], "hit"

        # INCRBY counters are the only values stored outside the envelope
        if isinstance(decoded, int) and not isinstance(decoded, bool):
            return decoded, "hit"
        return MISSING, "corrupt"

    @staticmethod
    def _is_envelope(raw: Any) -> bool:
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            return False
        return isinstance(decoded, dict) and decoded.get(ENVELOPE_MARKER) == 1

    def _count_lookup(self, outcome: str, key: str) -> None:
        if outcome == "hit":
            self._stats.hits += 1
        else:
            self._stats.misses += 1
            if outcome == "corrupt":
                self.logger.warning("Discarding malformed cached value", key=key)
        self._record_metric("get", outcome)

    @staticmethod
    def _coerce_write(entry: CacheWriteLike) -> CacheWrite:
        if isinstance(entry, CacheWrite):
            return entry
        if len(entry) == 2:
            key, value = entry  # type: ignore[misc]
            return CacheWrite(key, value)
        key, value, ttl = entry  # type: ignore[misc]
        return CacheWrite(key, value, ttl)

    async def _run(self, operation: str, command: Callable[[redis.Redis], Awaitable[Any]]) -> Any:
        """Run one bounded round trip through the circuit breaker."""
        client = self._get_client()
        result = await self._breaker.call(self._bounded, command, client)
        self.degraded = False
        self._record_metric(operation, "ok")
        return result

    async def _bounded(self, command: Callable[[redis.Redis], Awaitable[Any]], client: redis.Redis) -> Any:
        return await asyncio.wait_for(command(client), self.operation_timeout)

    def _record_failure(self, operation: str, exc: Exception, count: int = 1, **context) -> None:
        self._stats.errors += count
        self.degraded = True
        if isinstance(exc, CircuitBreakerOpenException):
            self.logger.debug("Key-value store circuit open; skipping call", operation=operation, **context)
            self._record_metric(operation, "short_circuit")
        else:
            self.logger.error(
                "Key-value store operation failed",
                operation=operation,
                error=str(exc) or type(exc).__name__,
                **context,
            )
            self._record_metric(operation, "error")

    def _record_metric(self, operation: str, result: str) -> None:
        if not self.metrics:
            return

        try:
            self.metrics.increment_counter("cache_operations_total", operation=operation, result=result)
            self.metrics.set_gauge("cache_circuit_open", 1.0 if self._breaker.is_open() else 0.0)
        except Exception as exc:  # pragma: no cover - metrics failures should never break caching
            self.logger.debug("Failed to record cache metrics", error=str(exc))
