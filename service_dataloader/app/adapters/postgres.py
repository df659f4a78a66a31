"""
PostgreSQL backing store for the loaders.
"""

import asyncio
import re
import time
from dataclasses import dataclass, fields, replace
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from uuid import UUID

import asyncpg

from shared.errors import DataAccessError, ExternalServiceError, ValidationError
from shared.logging import get_logger, elapsed_ms

from .backing_store import ProjectAccess, group_records


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_ORDER_BY = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)(\s+(ASC|DESC))?\s*$", re.IGNORECASE)


def _check_identifier(value: str, what: str) -> str:
    if not value or not _IDENTIFIER.match(value):
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


def _check_order_by(value: str) -> str:
    terms = [term.strip() for term in value.split(",")]
    for term in terms:
        if not _ORDER_BY.match(term):
            raise ValidationError(f"Invalid order_by clause: {value!r}")
    return ", ".join(terms)


def _qualify_order_by(value: str, alias: str) -> str:
    return ", ".join(f"{alias}.{term.strip()}" for term in value.split(","))


# Helper columns added by the queries below; stripped before rows leave the adapter
RANK_COLUMN = "_row_rank"
ACCESS_KEY_COLUMN = "_access_key"


@dataclass(frozen=True)
class TableMapping:
    """
    Where an entity type lives and how its rows are looked up.

    ``since_seconds`` keeps only rows whose ``time_column`` falls inside the
    trailing window, and ``limit_per_key`` keeps the first N rows of every
    requested key in ``order_by`` order.
    """

    table: str
    key_column: str = "id"
    parent_column: Optional[str] = None
    order_by: Optional[str] = None
    time_column: Optional[str] = None
    since_seconds: Optional[float] = None
    limit_per_key: Optional[int] = None

    def __post_init__(self):
        _check_identifier(self.table, "table name")
        _check_identifier(self.key_column, "key column")
        if self.parent_column is not None:
            _check_identifier(self.parent_column, "parent column")
        if self.order_by is not None:
            _check_order_by(self.order_by)
        if self.time_column is not None:
            _check_identifier(self.time_column, "time column")
        if self.since_seconds is not None:
            if self.time_column is None:
                raise ValidationError(f"Table '{self.table}' needs a time_column to filter by since_seconds")
            if isinstance(self.since_seconds, bool) or self.since_seconds <= 0:
                raise ValidationError(f"Invalid since_seconds: {self.since_seconds!r}")
        if self.limit_per_key is not None:
            if not isinstance(self.limit_per_key, int) or isinstance(self.limit_per_key, bool) or self.limit_per_key < 1:
                raise ValidationError(f"Invalid limit_per_key: {self.limit_per_key!r}")

    def select_by(self, column: str) -> str:
        where = f"{column} = ANY($1::text[])"
        if self.since_seconds is not None:
            where += f" AND {self.time_column} >= now() - make_interval(secs => $2)"

        if self.limit_per_key is None:
            query = f"SELECT * FROM {self.table} WHERE {where}"
        else:
            window = f"PARTITION BY {column}"
            if self.order_by:
                window += f" ORDER BY {self.order_by}"
            query = (
                f"SELECT * FROM (SELECT *, row_number() OVER ({window}) AS {RANK_COLUMN} "
                f"FROM {self.table} WHERE {where}) ranked WHERE {RANK_COLUMN} <= {self.limit_per_key}"
            )

        if self.order_by:
            query += f" ORDER BY {self.order_by}"
        return query

    def query_args(self, keys: Sequence[str]) -> List[Any]:
        args: List[Any] = [[str(key) for key in keys]]
        if self.since_seconds is not None:
            args.append(float(self.since_seconds))
        return args


@dataclass(frozen=True)
class ProjectAccessMapping:
    """Tables behind the projects-by-user loader and its role-based visibility rules."""

    table: str = "projects"
    key_column: str = "id"
    organization_column: str = "organization_id"
    manager_column: str = "manager_id"
    members_table: str = "project_members"
    member_project_column: str = "project_id"
    member_user_column: str = "user_id"
    order_by: Optional[str] = "updated_at DESC"

    def __post_init__(self):
        _check_identifier(self.table, "table name")
        _check_identifier(self.key_column, "key column")
        _check_identifier(self.organization_column, "organization column")
        _check_identifier(self.manager_column, "manager column")
        _check_identifier(self.members_table, "members table")
        _check_identifier(self.member_project_column, "member project column")
        _check_identifier(self.member_user_column, "member user column")
        if self.order_by is not None:
            _check_order_by(self.order_by)

    def select_visible(self) -> str:
        """One query for a whole batch of ``ProjectAccess`` keys passed as four parallel arrays."""
        query = (
            f"SELECT access.access_key AS {ACCESS_KEY_COLUMN}, p.* "
            "FROM unnest($1::text[], $2::text[], $3::text[], $4::text[]) "
            "AS access(access_key, user_id, organization_id, scope) "
            f"JOIN {self.table} p ON p.{self.organization_column}::text = access.organization_id "
            "WHERE access.scope = 'all' "
            f"OR (access.scope = 'managed' AND p.{self.manager_column}::text = access.user_id) "
            "OR (access.scope IN ('managed', 'member') AND EXISTS ("
            f"SELECT 1 FROM {self.members_table} m "
            f"WHERE m.{self.member_project_column} = p.{self.key_column} "
            f"AND m.{self.member_user_column}::text = access.user_id))"
        )
        if self.order_by:
            query += f" ORDER BY {_qualify_order_by(self.order_by, 'p')}"
        return query


EntityMapping = Union[TableMapping, ProjectAccessMapping]


DEFAULT_TABLE_MAPPINGS: Dict[str, EntityMapping] = {
    "user": TableMapping("users", key_column="clerk_id"),
    "users_by_org": TableMapping("users", parent_column="organization_id", order_by="created_at ASC"),
    "project": TableMapping("projects"),
    "projects_by_org": TableMapping("projects", parent_column="organization_id", order_by="updated_at DESC"),
    "projects_by_user": ProjectAccessMapping(),
    "form_template": TableMapping("form_templates"),
    "form_submission": TableMapping("form_submissions"),
    "submissions_by_project": TableMapping(
        "form_submissions", parent_column="project_id", order_by="created_at DESC", limit_per_key=100
    ),
    "weather_data": TableMapping(
        "weather_data",
        parent_column="location_key",
        order_by="timestamp DESC",
        time_column="timestamp",
        since_seconds=24 * 3600,
        limit_per_key=1000,
    ),
    "current_weather": TableMapping(
        "weather_data",
        key_column="location_key",
        order_by="timestamp DESC",
        time_column="timestamp",
        since_seconds=3600,
        limit_per_key=1,
    ),
}

_MAPPING_FIELDS = tuple(f.name for f in fields(TableMapping))


def build_table_mappings(
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    defaults: Optional[Mapping[str, EntityMapping]] = None,
) -> Dict[str, EntityMapping]:
    """Merge the table keys of per-entity loader settings onto the defaults."""
    mappings = dict(DEFAULT_TABLE_MAPPINGS if defaults is None else defaults)
    for entity_type, raw in (overrides or {}).items():
        base = mappings.get(entity_type)
        names = [f.name for f in fields(base)] if base is not None else _MAPPING_FIELDS
        values = {name: raw[name] for name in names if name in raw}
        if not values:
            continue
        if base is not None:
            mappings[entity_type] = replace(base, **values)
        elif "table" in values:
            mappings[entity_type] = TableMapping(**values)
        else:
            raise ValidationError(f"Loader '{entity_type}' needs a table to be served from PostgreSQL")
    return mappings


def normalize_value(value: Any) -> Any:
    """Convert driver types into JSON-friendly values."""
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    if isinstance(value, dict):
        return {key: normalize_value(item) for key, item in value.items()}
    return value


def normalize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: normalize_value(value) for key, value in dict(row).items() if key != RANK_COLUMN}


class PostgresBackingStore:
    """Bulk entity reads over an asyncpg pool."""

    def __init__(
        self,
        dsn: str,
        mappings: Optional[Mapping[str, EntityMapping]] = None,
        *,
        fetch_timeout: float = 5.0,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.dsn = dsn
        self.mappings = dict(DEFAULT_TABLE_MAPPINGS if mappings is None else mappings)
        self.fetch_timeout = fetch_timeout
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.logger = get_logger("dataloader.adapters.postgres")
        self.pool: Optional[asyncpg.Pool] = pool
        self._owns_pool = pool is None

    async def start(self):
        """Create the connection pool."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.fetch_timeout,
            )
            self.logger.info("PostgreSQL backing store started", entities=len(self.mappings))
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL backing store", error=str(e))
            raise ExternalServiceError("postgres", str(e)) from e

    async def stop(self):
        """Close the pool if this adapter created it."""
        if self.pool is not None and self._owns_pool:
            await self.pool.close()
            self.logger.info("PostgreSQL backing store stopped")
        self.pool = None

    async def health_check(self) -> bool:
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await asyncio.wait_for(conn.fetchval("SELECT 1"), self.fetch_timeout)
                return True
        except Exception:
            return False

    def mapping_for(self, entity_type: str) -> EntityMapping:
        mapping = self.mappings.get(entity_type)
        if mapping is None:
            raise ValidationError(f"No table mapping for entity type '{entity_type}'", {"entity_type": entity_type})
        return mapping

    async def fetch_many(self, entity_type: str, keys: Sequence[str]) -> List[Dict[str, Any]]:
        mapping = self.mapping_for(entity_type)
        if not isinstance(mapping, TableMapping):
            raise ValidationError(f"Entity type '{entity_type}' only supports grouped lookups", {"entity_type": entity_type})
        if not keys:
            return []
        return await self._fetch(entity_type, mapping.select_by(mapping.key_column), mapping.query_args(keys))

    async def fetch_many_grouped(self, entity_type: str, parent_keys: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
        mapping = self.mapping_for(entity_type)
        if isinstance(mapping, ProjectAccessMapping):
            return await self._fetch_visible_projects(entity_type, mapping, parent_keys)
        if mapping.parent_column is None:
            raise ValidationError(f"Entity type '{entity_type}' has no parent column", {"entity_type": entity_type})
        if not parent_keys:
            return {}
        rows = await self._fetch(entity_type, mapping.select_by(mapping.parent_column), mapping.query_args(parent_keys))
        return group_records(rows, mapping.parent_column, parent_keys)

    async def _fetch_visible_projects(
        self,
        entity_type: str,
        mapping: ProjectAccessMapping,
        keys: Sequence[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Projects each ``userId:orgId:role`` key may see; malformed keys and unknown roles get none."""
        grouped: Dict[str, List[Dict[str, Any]]] = {str(key): [] for key in keys}
        accesses = []
        for key in grouped:
            access = ProjectAccess.parse(key)
            if access is None:
                self.logger.warning("Ignoring malformed project access key", entity_type=entity_type, key=key)
            elif access.scope is not None:
                accesses.append((key, access))
        if not accesses:
            return grouped

        args = [
            [key for key, _ in accesses],
            [access.user_id for _, access in accesses],
            [access.organization_id for _, access in accesses],
            [access.scope for _, access in accesses],
        ]
        rows = await self._fetch(entity_type, mapping.select_visible(), args)
        for row in rows:
            grouped[row.pop(ACCESS_KEY_COLUMN)].append(row)
        return grouped

    async def _fetch(self, entity_type: str, query: str, args: Sequence[Any]) -> List[Dict[str, Any]]:
        if self.pool is None:
            raise ExternalServiceError("postgres", "connection pool is not started")

        keys = len(args[0]) if args else 0
        started = time.perf_counter()
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, *args, timeout=self.fetch_timeout)
        except DataAccessError:
            raise
        except Exception as e:
            self.logger.error(
                "Bulk fetch failed",
                entity_type=entity_type,
                keys=keys,
                error=str(e) or type(e).__name__,
            )
            raise ExternalServiceError("postgres", f"bulk fetch for {entity_type} failed: {e}") from e

        self.logger.debug(
            "Bulk fetch completed",
            entity_type=entity_type,
            keys=keys,
            rows=len(rows),
            duration_ms=elapsed_ms(started),
        )
        return [normalize_row(row) for row in rows]
