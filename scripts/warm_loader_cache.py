#!/usr/bin/env python3
"""
Warm the loader cache for one entity type.

Loads the given keys through the same cache-aside loader the service uses, so
records missing from Redis are fetched from PostgreSQL in batches and written
back with the entity's TTL. Useful after a deploy or a Redis flush.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional
import sys

from shared.config import BaseConfig
from shared.logging import configure_logging
from service_dataloader.app.adapters.postgres import PostgresBackingStore, build_table_mappings
from service_dataloader.app.cache.kv_store import KeyValueStore, MISSING
from service_dataloader.app.loaders.config import build_loader_configs, read_loader_file
from service_dataloader.app.loaders.registry import LoaderRegistry


async def inspect(store: KeyValueStore, registry: LoaderRegistry, entity_type: str, keys: List[str]) -> dict:
    """Report which keys are already cached without touching the backing store."""
    config = registry[entity_type].config
    if not config.caching_enabled:
        return {"entity_type": entity_type, "requested": len(keys), "caching_enabled": False}

    values = await store.mget([config.cache_key(key) for key in keys])
    cached = [key for key, value in zip(keys, values) if value is not MISSING]
    return {
        "entity_type": entity_type,
        "requested": len(keys),
        "cached": len(cached),
        "uncached": sorted(set(keys) - set(cached)),
        "caching_enabled": True,
    }


async def warm(
    *,
    config: BaseConfig,
    entity_type: str,
    keys: List[str],
    loader_config_file: Optional[Path],
    dry_run: bool,
) -> dict:
    """Execute cache warming and return the summary."""
    overrides = read_loader_file(loader_config_file or config.loader_config_file)
    store = KeyValueStore(
        config.redis_url,
        namespace=config.cache_namespace,
        operation_timeout=config.cache_operation_timeout,
        health_check_timeout=config.cache_health_timeout,
    )
    adapter = PostgresBackingStore(
        config.postgres_dsn,
        build_table_mappings(overrides),
        fetch_timeout=config.fetch_timeout,
    )
    registry = LoaderRegistry(store, adapter, build_loader_configs(overrides))

    async with store:
        if dry_run:
            return await inspect(store, registry, entity_type, keys)

        await adapter.start()
        try:
            summary = await registry.warm(entity_type, keys)
            await registry.close()
        finally:
            await adapter.stop()

    summary["entity_type"] = entity_type
    summary["store"] = store.stats().as_dict()
    return summary


def _read_keys(args: argparse.Namespace) -> List[str]:
    keys: List[str] = []
    if args.keys:
        keys.extend(key.strip() for key in args.keys.split(","))
    if args.keys_file:
        keys.extend(line.strip() for line in args.keys_file.read_text().splitlines())
    return list(dict.fromkeys(key for key in keys if key))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the loader cache for one entity type.")
    parser.add_argument("entity_type", help="Loader entity type, e.g. user or form_template")
    parser.add_argument("--keys", default=None, help="Comma-separated keys to warm")
    parser.add_argument("--keys-file", type=Path, default=None, help="File with one key per line")
    parser.add_argument("--loader-config", type=Path, default=None, help="YAML loader overrides")
    parser.add_argument("--dry-run", action="store_true", help="Only report which keys are already cached")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    keys = _read_keys(args)
    if not keys:
        print("[loader-warm] no keys given (use --keys or --keys-file)", file=sys.stderr)
        return 2

    config = BaseConfig()
    configure_logging("loader-warm", config.log_level)

    try:
        summary = asyncio.run(
            warm(
                config=config,
                entity_type=args.entity_type,
                keys=keys,
                loader_config_file=args.loader_config,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[loader-warm] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[loader-warm] DRY RUN - nothing fetched or written")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
