"""
Shared fixtures for DataLoader service tests.
"""

import asyncio
import fnmatch
from typing import Any, Dict, List, Optional, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from service_dataloader.app.adapters.backing_store import group_records
from service_dataloader.app.cache.kv_store import KeyValueStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Queues SETs and sends them in one round trip on ``execute``."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.queued: List[Tuple[str, str, Optional[int], bool]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.queued = []

    def set(self, key, value, px=None, nx=False):
        self.queued.append((key, value, px, nx))
        return self

    async def execute(self):
        await self.redis._call("PIPELINE")
        return [self.redis._set(key, value, px, nx) for key, value, px, nx in self.queued]


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with decoded responses."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.commands: List[str] = []
        self.fail = False
        self.delay = 0.0
        self.closed = False

    @property
    def round_trips(self) -> int:
        return len(self.commands)

    async def _call(self, command: str) -> None:
        self.commands.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def _set(self, key, value, px=None, nx=False, xx=False):
        if nx and self._alive(key):
            return None
        if xx and not self._alive(key):
            return None
        self.data[key] = value
        if px is not None:
            self.expiry[key] = self.clock() + px / 1000.0
        else:
            self.expiry.pop(key, None)
        return True

    async def ping(self):
        await self._call("PING")
        return True

    async def get(self, key):
        await self._call("GET")
        return self.data.get(key) if self._alive(key) else None

    async def mget(self, keys):
        await self._call("MGET")
        return [self.data.get(key) if self._alive(key) else None for key in keys]

    async def set(self, key, value, px=None, nx=False, xx=False):
        await self._call("SET")
        return self._set(key, value, px, nx, xx)

    async def exists(self, *keys):
        await self._call("EXISTS")
        return sum(1 for key in keys if self._alive(key))

    async def delete(self, *keys):
        await self._call("DEL")
        removed = 0
        for key in keys:
            if self._alive(key):
                del self.data[key]
                self.expiry.pop(key, None)
                removed += 1
        return removed

    async def pexpire(self, key, px):
        await self._call("PEXPIRE")
        if not self._alive(key):
            return False
        self.expiry[key] = self.clock() + px / 1000.0
        return True

    async def ttl(self, key):
        await self._call("TTL")
        if not self._alive(key):
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return int(round(deadline - self.clock()))

    async def incrby(self, key, amount):
        await self._call("INCRBY")
        current = int(self.data[key]) if self._alive(key) else 0
        self.data[key] = str(current + amount)
        return current + amount

    async def dbsize(self):
        await self._call("DBSIZE")
        return sum(1 for key in list(self.data) if self._alive(key))

    async def flushdb(self):
        await self._call("FLUSHDB")
        self.data.clear()
        self.expiry.clear()
        return True

    async def scan_iter(self, match=None, count=None):
        await self._call("SCAN")
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


class InMemoryBackingStore:
    """Backing store adapter over in-memory tables; records every bulk fetch."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.key_fields: Dict[str, str] = {}
        self.parent_fields: Dict[str, str] = {}
        self.calls: List[Tuple[str, str, List[str]]] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0

    def add(self, entity_type: str, *records: Dict[str, Any], key_field: str = "id", parent_field: Optional[str] = None):
        self.tables.setdefault(entity_type, []).extend(records)
        self.key_fields[entity_type] = key_field
        if parent_field:
            self.parent_fields[entity_type] = parent_field

    def fetches(self, entity_type: Optional[str] = None) -> List[List[str]]:
        """Key lists passed to each bulk fetch, in call order."""
        return [keys for _, name, keys in self.calls if entity_type is None or name == entity_type]

    async def _before(self, method: str, entity_type: str, keys) -> None:
        self.calls.append((method, entity_type, list(keys)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def fetch_many(self, entity_type, keys):
        await self._before("fetch_many", entity_type, keys)
        key_field = self.key_fields.get(entity_type, "id")
        wanted = set(keys)
        return [dict(r) for r in self.tables.get(entity_type, []) if str(r.get(key_field)) in wanted]

    async def fetch_many_grouped(self, entity_type, parent_keys):
        await self._before("fetch_many_grouped", entity_type, parent_keys)
        parent_field = self.parent_fields.get(entity_type, "parent_id")
        return group_records(
            (dict(r) for r in self.tables.get(entity_type, [])),
            parent_field,
            parent_keys,
        )


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []
        self.gauges = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))

    def total(self, metric_name: str, **labels) -> float:
        return sum(
            amount for name, amount, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def store(fake_redis, clock, metrics):
    return KeyValueStore(
        "redis://localhost:6379/0",
        client=fake_redis,
        namespace="test",
        operation_timeout=0.5,
        health_check_timeout=0.2,
        failure_threshold=1000,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def backing():
    backing = InMemoryBackingStore()
    backing.add(
        "user",
        {"clerk_id": "u1", "email": "ada@example.com", "organization_id": "org-1"},
        {"clerk_id": "u2", "email": "grace@example.com", "organization_id": "org-1"},
        {"clerk_id": "u3", "email": "linus@example.com", "organization_id": "org-2"},
        key_field="clerk_id",
    )
    backing.add(
        "users_by_org",
        {"clerk_id": "u1", "organization_id": "org-1"},
        {"clerk_id": "u2", "organization_id": "org-1"},
        {"clerk_id": "u3", "organization_id": "org-2"},
        key_field="clerk_id",
        parent_field="organization_id",
    )
    backing.add(
        "project",
        {"id": "p1", "name": "Riverside Tower", "organization_id": "org-1"},
        {"id": "p2", "name": "Harbor Bridge", "organization_id": "org-2"},
    )
    return backing
