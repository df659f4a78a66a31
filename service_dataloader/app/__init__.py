"""
DataLoader Service package for the DataLoader layer.

This package shields the backing data store from redundant and N+1 style
lookups. It provides:

- app.main: Operator API surface (stats, memo clearing, invalidation, health).
- app.batching: Window-based coalescing of concurrent point lookups.
- app.cache: Fail-open Redis key-value store with per-key TTLs.
- app.loaders: Cache-aside loaders, per-entity configuration and the registry.
- app.adapters: Backing store contract and the PostgreSQL implementation.

Guidelines:
- The key-value store is an accelerator; its failures only cost latency.
- Backing store failures fail the whole batch, uniformly for every caller.
- Construct clients in the composition root and pass them down.
"""
