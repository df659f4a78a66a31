"""
Composition root for loaders: one loader per entity type, all sharing one
key-value store and one backing store adapter.
"""

from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, TYPE_CHECKING

from shared.errors import ValidationError
from shared.logging import get_logger

from ..adapters.backing_store import BackingStoreAdapter
from ..cache.kv_store import KeyValueStore
from .cache_aside import CacheAsideLoader, GroupedCacheAsideLoader
from .config import DEFAULT_LOADER_CONFIGS, LoaderConfig

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class LoaderRegistry:
    """Owns every loader of the process."""

    def __init__(
        self,
        store: Optional[KeyValueStore],
        adapter: BackingStoreAdapter,
        configs: Optional[Mapping[str, LoaderConfig]] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.metrics = metrics
        self.logger = get_logger("dataloader.loaders.registry")
        self._loaders: Dict[str, CacheAsideLoader] = {}

        for config in (DEFAULT_LOADER_CONFIGS if configs is None else configs).values():
            self.register(config)

    def register(self, config: LoaderConfig) -> CacheAsideLoader:
        """Create (or replace) the loader for ``config.entity_type``."""
        loader_cls = GroupedCacheAsideLoader if config.grouped else CacheAsideLoader
        loader = loader_cls(config, self.store, self.adapter, metrics=self.metrics)
        self._loaders[config.entity_type] = loader
        self.logger.debug(
            "Loader registered",
            entity_type=config.entity_type,
            grouped=config.grouped,
            window_ms=config.window_ms,
            max_batch_size=config.max_batch_size,
            cache_ttl_seconds=config.cache_ttl_seconds,
        )
        return loader

    def get(self, entity_type: str) -> CacheAsideLoader:
        loader = self._loaders.get(entity_type)
        if loader is None:
            raise ValidationError(
                f"Unknown entity type '{entity_type}'",
                {"entity_type": entity_type, "known": sorted(self._loaders)},
            )
        return loader

    def __getitem__(self, entity_type: str) -> CacheAsideLoader:
        return self.get(entity_type)

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._loaders

    def __iter__(self) -> Iterator[str]:
        return iter(self._loaders)

    def __len__(self) -> int:
        return len(self._loaders)

    def configs(self) -> Dict[str, LoaderConfig]:
        return {name: loader.config for name, loader in self._loaders.items()}

    def clear_all(self) -> None:
        """Clear every loader's memo; call between request lifecycles."""
        for loader in self._loaders.values():
            loader.clear_all()

    async def invalidate(self, entity_type: str, key: str) -> bool:
        return await self.get(entity_type).invalidate(key)

    async def warm(self, entity_type: str, keys: Sequence[str]) -> Dict[str, int]:
        return await self.get(entity_type).warm(keys)

    def stats(self) -> Dict[str, Any]:
        return {
            "store": self.store.stats().as_dict() if self.store is not None else None,
            "loaders": {name: loader.stats().as_dict() for name, loader in self._loaders.items()},
        }

    def reset_stats(self) -> None:
        if self.store is not None:
            self.store.reset_stats()
        for loader in self._loaders.values():
            loader.reset_stats()

    async def close(self) -> None:
        """Drain every loader; the store and adapter are closed by their owner."""
        for name, loader in self._loaders.items():
            try:
                await loader.close()
            except Exception as e:
                self.logger.error("Error draining loader", entity_type=name, error=str(e))
