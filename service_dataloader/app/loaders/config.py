"""
Per-entity loader configuration.

Built-in defaults carry the batch windows, batch sizes and TTLs that were tuned
for each entity type in production. An optional YAML file overrides them and
may add new entity types:

    loaders:
      user:
        cache_ttl_seconds: 1800
        key_column: clerk_id
      audit_event:
        window_ms: 20
        max_batch_size: 200
        table: audit_events
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from shared.errors import ValidationError
from shared.logging import get_logger


logger = get_logger("dataloader.loaders.config")


@dataclass(frozen=True)
class LoaderConfig:
    """Immutable batching and caching policy for one entity type."""

    entity_type: str
    window_ms: int = 10
    max_batch_size: int = 100
    cache_ttl_seconds: Optional[int] = None
    cache_key_prefix: Optional[str] = None
    grouped: bool = False
    key_field: str = "id"
    cache_results: bool = True
    resolve_timeout_seconds: Optional[float] = 10.0
    memo_ttl_seconds: Optional[float] = 5.0
    max_memo_size: Optional[int] = 10_000

    def __post_init__(self):
        if not self.entity_type:
            raise ValidationError("entity_type must not be empty")
        if self.window_ms < 0:
            raise ValidationError(
                "window_ms must be >= 0",
                {"entity_type": self.entity_type, "window_ms": self.window_ms},
            )
        if self.max_batch_size < 1:
            raise ValidationError(
                "max_batch_size must be >= 1",
                {"entity_type": self.entity_type, "max_batch_size": self.max_batch_size},
            )
        if self.cache_ttl_seconds is not None and self.cache_ttl_seconds <= 0:
            raise ValidationError(
                "cache_ttl_seconds must be positive or unset",
                {"entity_type": self.entity_type, "cache_ttl_seconds": self.cache_ttl_seconds},
            )
        if self.resolve_timeout_seconds is not None and self.resolve_timeout_seconds <= 0:
            raise ValidationError(
                "resolve_timeout_seconds must be positive or unset",
                {"entity_type": self.entity_type},
            )
        if self.memo_ttl_seconds is not None and self.memo_ttl_seconds < 0:
            raise ValidationError(
                "memo_ttl_seconds must be >= 0 or unset",
                {"entity_type": self.entity_type, "memo_ttl_seconds": self.memo_ttl_seconds},
            )
        if self.max_memo_size is not None and self.max_memo_size < 1:
            raise ValidationError(
                "max_memo_size must be >= 1 or unset",
                {"entity_type": self.entity_type, "max_memo_size": self.max_memo_size},
            )

    @property
    def key_prefix(self) -> str:
        return self.cache_key_prefix or self.entity_type

    @property
    def caching_enabled(self) -> bool:
        return self.cache_ttl_seconds is not None

    @property
    def memo_ttl(self) -> Optional[float]:
        """How long a resolved value may be reused without re-reading; never past the cache TTL."""
        ttls = [ttl for ttl in (self.memo_ttl_seconds, self.cache_ttl_seconds) if ttl is not None]
        return min(ttls) if ttls else None

    def cache_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def with_overrides(self, **overrides: Any) -> "LoaderConfig":
        return replace(self, **overrides)

    @classmethod
    def from_dict(cls, entity_type: str, raw: Mapping[str, Any], base: Optional["LoaderConfig"] = None) -> "LoaderConfig":
        """Build a config from a mapping, ignoring keys that are not loader settings."""
        known = {f.name for f in fields(cls)} - {"entity_type"}
        values = {key: value for key, value in raw.items() if key in known}
        try:
            if base is not None:
                return replace(base, **values)
            return cls(entity_type=entity_type, **values)
        except TypeError as e:
            raise ValidationError(f"Invalid loader settings for '{entity_type}'", {"error": str(e)}) from e

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_LOADER_CONFIGS: Dict[str, LoaderConfig] = {
    "user": LoaderConfig(
        "user", window_ms=10, max_batch_size=100, cache_ttl_seconds=3600, cache_key_prefix="user", key_field="clerk_id"
    ),
    "users_by_org": LoaderConfig("users_by_org", window_ms=10, max_batch_size=50, grouped=True),
    "project": LoaderConfig("project", window_ms=10, max_batch_size=100),
    "projects_by_org": LoaderConfig("projects_by_org", window_ms=10, max_batch_size=50, grouped=True),
    "projects_by_user": LoaderConfig("projects_by_user", window_ms=15, max_batch_size=20, grouped=True),
    "form_template": LoaderConfig(
        "form_template", window_ms=5, max_batch_size=50, cache_ttl_seconds=86400, cache_key_prefix="form_template"
    ),
    "form_submission": LoaderConfig("form_submission", window_ms=10, max_batch_size=100),
    "submissions_by_project": LoaderConfig("submissions_by_project", window_ms=10, max_batch_size=25, grouped=True),
    "weather_data": LoaderConfig(
        "weather_data", window_ms=5, max_batch_size=20, cache_ttl_seconds=300, cache_key_prefix="weather", grouped=True
    ),
    "current_weather": LoaderConfig("current_weather", window_ms=5, max_batch_size=10, key_field="location_key"),
}


def read_loader_file(path: Optional[Union[str, Path]]) -> Dict[str, Dict[str, Any]]:
    """
    Read the raw ``loaders:`` mapping from a YAML file.

    A missing or unparsable file yields an empty mapping so the service still
    starts on built-in defaults.
    """
    if not path:
        return {}

    config_path = Path(path)
    if not config_path.exists():
        logger.warning("Loader config file not found; using defaults", path=str(config_path))
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.error("Failed to read loader config file; using defaults", path=str(config_path), error=str(e))
        return {}

    loaders = document.get("loaders", {}) if isinstance(document, dict) else {}
    if not isinstance(loaders, dict):
        logger.error("Loader config 'loaders' must be a mapping; using defaults", path=str(config_path))
        return {}

    return {str(name): (entry or {}) for name, entry in loaders.items()}


def build_loader_configs(
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    defaults: Optional[Mapping[str, LoaderConfig]] = None,
) -> Dict[str, LoaderConfig]:
    """Merge raw per-entity overrides onto the defaults. Invalid values raise ValidationError."""
    configs = dict(DEFAULT_LOADER_CONFIGS if defaults is None else defaults)
    for entity_type, raw in (overrides or {}).items():
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Loader settings for '{entity_type}' must be a mapping")
        configs[entity_type] = LoaderConfig.from_dict(entity_type, raw, base=configs.get(entity_type))
    return configs


def load_loader_configs(path: Optional[Union[str, Path]] = None) -> Dict[str, LoaderConfig]:
    """Defaults merged with the optional YAML file at ``path``."""
    return build_loader_configs(read_loader_file(path))
