"""
Backing store adapters for the DataLoader Service.

Loaders only ever talk to the source of truth in bulk, through the
``BackingStoreAdapter`` contract.
"""

from .backing_store import BackingStoreAdapter, ProjectAccess, group_records

__all__ = ["BackingStoreAdapter", "ProjectAccess", "group_records"]
