"""
Loaders package for the DataLoader Service.
"""

from .cache_aside import CacheAsideLoader, GroupedCacheAsideLoader
from .config import DEFAULT_LOADER_CONFIGS, LoaderConfig, load_loader_configs
from .registry import LoaderRegistry

__all__ = [
    "CacheAsideLoader",
    "GroupedCacheAsideLoader",
    "DEFAULT_LOADER_CONFIGS",
    "LoaderConfig",
    "LoaderRegistry",
    "load_loader_configs",
]
