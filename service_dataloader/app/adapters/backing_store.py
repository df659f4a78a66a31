"""
Contract between the loaders and the persistent source of truth.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, runtime_checkable


Record = Any


@runtime_checkable
class BackingStoreAdapter(Protocol):
    """Bulk access to the source of truth; one call per batch, never per key."""

    async def fetch_many(self, entity_type: str, keys: Sequence[str]) -> List[Record]:
        """Records whose key is in ``keys``. Missing keys are simply absent."""
        ...

    async def fetch_many_grouped(self, entity_type: str, parent_keys: Sequence[str]) -> Dict[str, List[Record]]:
        """Child records per parent key."""
        ...


def record_field(record: Record, field_name: str) -> Any:
    """Read ``field_name`` from a mapping record or an attribute-style record."""
    if isinstance(record, Mapping):
        return record.get(field_name)
    return getattr(record, field_name, None)


def group_records(
    records: Iterable[Record],
    parent_field: str,
    parent_keys: Sequence[str],
) -> Dict[str, List[Record]]:
    """
    Group ``records`` under the parent key they reference.

    Every requested parent appears in the result (an empty list when it has no
    children) and each group keeps the order the records arrived in. Records
    pointing at a parent that was not requested are dropped.
    """
    grouped: Dict[str, List[Record]] = {str(key): [] for key in parent_keys}
    for record in records:
        parent = record_field(record, parent_field)
        if parent is None:
            continue
        bucket = grouped.get(str(parent))
        if bucket is not None:
            bucket.append(record)
    return grouped


# Project visibility per organization role; roles not listed see nothing
PROJECT_ROLE_SCOPES = {
    "OWNER": "all",
    "ADMIN": "all",
    "MANAGER": "managed",
    "MEMBER": "member",
}


@dataclass(frozen=True)
class ProjectAccess:
    """Composite ``userId:orgId:role`` key of the projects-by-user loader."""

    user_id: str
    organization_id: str
    role: str

    @classmethod
    def parse(cls, key: str) -> Optional["ProjectAccess"]:
        parts = str(key).split(":")
        if len(parts) != 3 or not all(parts):
            return None
        user_id, organization_id, role = parts
        return cls(user_id, organization_id, role.upper())

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.organization_id}:{self.role}"

    @property
    def scope(self) -> Optional[str]:
        """``all``, ``managed`` (managed or member of), ``member``, or None for no access."""
        return PROJECT_ROLE_SCOPES.get(self.role)
