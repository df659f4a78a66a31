"""
DataLoader service for the DataLoader layer.

Hosts the process-wide loader registry and exposes operator endpoints for
statistics, memo clearing and cache invalidation. Entity lookups happen
in-process through ``service.registry``; this service never serves them over
HTTP.
"""

from datetime import datetime
from typing import Optional

from shared.base_service import BaseService
from shared.logging import set_entity_context

from .adapters.backing_store import BackingStoreAdapter
from .adapters.postgres import PostgresBackingStore, build_table_mappings
from .cache.kv_store import KeyValueStore
from .loaders.config import build_loader_configs, read_loader_file
from .loaders.registry import LoaderRegistry


class DataLoaderService(BaseService):
    """DataLoader service implementation."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        adapter: Optional[BackingStoreAdapter] = None,
    ):
        super().__init__("dataloader", 8020)

        overrides = read_loader_file(self.config.loader_config_file)
        self.loader_configs = build_loader_configs(overrides)

        self.store = store or KeyValueStore(
            self.config.redis_url,
            namespace=self.config.cache_namespace,
            operation_timeout=self.config.cache_operation_timeout,
            health_check_timeout=self.config.cache_health_timeout,
            failure_threshold=self.config.cache_failure_threshold,
            recovery_timeout=self.config.cache_recovery_timeout,
            metrics=self.metrics,
        )
        self.adapter = adapter or PostgresBackingStore(
            self.config.postgres_dsn,
            build_table_mappings(overrides),
            fetch_timeout=self.config.fetch_timeout,
        )
        self.registry = LoaderRegistry(self.store, self.adapter, self.loader_configs, metrics=self.metrics)

        self._setup_dataloader_routes()

    def _setup_dataloader_routes(self):
        """Set up dataloader-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "dataloader",
                "message": "DataLoader layer batching and cache-aside service",
                "version": "1.0.0",
                "loaders": len(self.registry),
            }

        @self.app.get("/loaders")
        async def list_loaders():
            """Active loader configuration per entity type."""
            return {
                "loaders": {name: config.as_dict() for name, config in self.registry.configs().items()},
                "count": len(self.registry),
            }

        @self.app.get("/stats")
        async def get_stats():
            """Key-value store and per-loader batching statistics."""
            stats = self.registry.stats()
            stats["circuit_breaker"] = self.store.circuit_state()
            stats["timestamp"] = datetime.now().isoformat()
            return stats

        @self.app.post("/stats/reset")
        async def reset_stats():
            """Reset all statistics counters."""
            self.registry.reset_stats()
            self.logger.info("Statistics reset by operator")
            return {"status": "reset", "timestamp": datetime.now().isoformat()}

        @self.app.post("/loaders/clear")
        async def clear_loaders():
            """Clear the per-process memo of every loader."""
            self.registry.clear_all()
            self.logger.info("Loader memos cleared by operator")
            return {"status": "cleared", "loaders": len(self.registry)}

        @self.app.delete("/loaders/{entity_type}/{key}")
        async def invalidate_key(entity_type: str, key: str):
            """Drop one key from a loader's memo and from the key-value store."""
            set_entity_context(entity_type)
            removed = await self.registry.invalidate(entity_type, key)
            self.logger.info("Key invalidated by operator", key=key, removed=removed)
            return {"entity_type": entity_type, "key": key, "removed": removed}

    async def _check_dependencies(self):
        """Check dataloader service dependencies."""
        dependencies = {}

        # Check Redis
        try:
            health = await self.store.health_check()
            dependencies["redis"] = "ok" if health.healthy else "error"
            dependencies["redis_latency_ms"] = health.latency_ms
        except Exception:
            dependencies["redis"] = "error"

        # Check PostgreSQL
        try:
            healthy = await self.adapter.health_check() if hasattr(self.adapter, "health_check") else True
            dependencies["postgres"] = "ok" if healthy else "error"
        except Exception:
            dependencies["postgres"] = "error"

        return dependencies

    async def start(self):
        """Start dataloader service components."""
        await self.store.open()
        if hasattr(self.adapter, "start"):
            await self.adapter.start()
        self.logger.info("DataLoader service started", loaders=len(self.registry))

    async def stop(self):
        """Stop dataloader service components."""
        await self.registry.close()
        if hasattr(self.adapter, "stop"):
            await self.adapter.stop()
        await self.store.close()
        self.logger.info("DataLoader service stopped")


def create_app():
    """Create dataloader service application."""
    service = DataLoaderService()
    return service.app


if __name__ == "__main__":
    service = DataLoaderService()
    service.run()
