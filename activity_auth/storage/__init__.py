"""
Storage Package

Storage contract for users and entitlements with two implementations,
selected once at startup:

- MemoryStorage: process memory, for tests and local development
- PostgresStorage: PostgreSQL via asyncpg

Both share the merge rules in ``storage.base``.
"""

from .base import Storage, merge_entitlement_upsert, merge_user_upsert
from .memory import MemoryStorage
from .postgres import PostgresStorage

__all__ = [
    "Storage",
    "MemoryStorage",
    "PostgresStorage",
    "merge_user_upsert",
    "merge_entitlement_upsert",
]
