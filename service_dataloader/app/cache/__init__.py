"""
Cache package for the DataLoader Service.

Provides a Redis-backed key-value store that degrades to cache misses when
Redis is slow or unavailable.
"""

from .kv_store import CacheWrite, HealthStatus, KeyValueStore, MISSING, OperationalStats

__all__ = ["CacheWrite", "HealthStatus", "KeyValueStore", "MISSING", "OperationalStats"]
