"""
In-memory storage backend for testing and development.

Refresh tokens are encrypted exactly as the PostgreSQL backend does, so both
implementations behave identically behind the contract.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from ..auth import encryption
from ..models import (
    Entitlement,
    EntitlementUpsertParams,
    SubscriptionSource,
    SubscriptionTier,
    User,
    UserUpsertParams,
    utcnow,
)
from .base import Storage, merge_entitlement_upsert, merge_user_upsert

logger = logging.getLogger(__name__)


class MemoryStorage(Storage):
    """
    Process-memory storage.

    Users are held with their refresh token material still encrypted.
    Mutations for one user id are serialized by a per-user asyncio.Lock;
    different users never contend. Locks are only created for stored ids.
    """

    def __init__(self):
        self._users: Dict[int, User] = {}
        self._entitlements: Dict[int, Entitlement] = {}
        self._user_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._entitlement_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        """Clear all stored data."""
        self._users.clear()
        self._entitlements.clear()
        self._user_locks.clear()
        self._entitlement_locks.clear()

    def user_count(self) -> int:
        return len(self._users)

    def entitlement_count(self) -> int:
        return len(self._entitlements)

    def raw_token_material(self, user_id: int) -> Optional[str]:
        """Stored (encrypted) refresh token material for a user."""
        user = self._users.get(user_id)
        return user.refresh_token if user else None

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: int, encryption_key: str) -> Optional[User]:
        stored = self._users.get(user_id)
        if stored is None:
            return None

        user = stored.model_copy()
        if stored.refresh_token is not None:
            user.refresh_token = encryption.decrypt(stored.refresh_token, encryption_key)
        return user

    async def upsert_user(self, params: UserUpsertParams, encryption_key: str) -> None:
        encrypted_token = None
        if isinstance(params.refresh_token, str):
            encrypted_token = encryption.encrypt(params.refresh_token, encryption_key)

        async with self._user_locks[params.user_id]:
            existing = self._users.get(params.user_id)
            self._users[params.user_id] = merge_user_upsert(existing, params, encrypted_token)

    async def update_refresh_token(
        self,
        user_id: int,
        refresh_token: str,
        token_expires_at: datetime,
        encryption_key: str,
    ) -> None:
        encrypted_token = encryption.encrypt(refresh_token, encryption_key)

        if user_id not in self._users:
            logger.debug(f"update_refresh_token: no user {user_id}")
            return

        async with self._user_locks[user_id]:
            user = self._users.get(user_id)
            if user is None:
                return
            user.refresh_token = encrypted_token
            user.token_expires_at = token_expires_at
            user.updated_at = utcnow()

    async def clear_user_tokens(self, user_id: int) -> None:
        if user_id not in self._users:
            return

        async with self._user_locks[user_id]:
            user = self._users.get(user_id)
            if user is None:
                return
            user.refresh_token = None
            user.token_expires_at = None
            user.updated_at = utcnow()

    async def update_subscription(
        self,
        user_id: int,
        tier: SubscriptionTier,
        source: SubscriptionSource,
        expires_at: Optional[datetime],
    ) -> None:
        if user_id not in self._users:
            return

        async with self._user_locks[user_id]:
            user = self._users.get(user_id)
            if user is None:
                return
            user.subscription_tier = tier
            user.subscription_source = source
            user.subscription_expires_at = expires_at
            user.updated_at = utcnow()

    # -------------------------------------------------------------------------
    # Entitlements
    # -------------------------------------------------------------------------

    async def upsert_entitlement(self, params: EntitlementUpsertParams) -> None:
        async with self._entitlement_locks[params.entitlement_id]:
            existing = self._entitlements.get(params.entitlement_id)
            self._entitlements[params.entitlement_id] = merge_entitlement_upsert(existing, params)

    async def list_entitlements(self, user_id: int) -> List[Entitlement]:
        return sorted(
            (e.model_copy() for e in self._entitlements.values() if e.user_id == user_id),
            key=lambda e: e.entitlement_id,
        )
