"""
Storage Contract
================

Abstract storage interface for users and entitlements, plus the merge rules
every implementation shares. Implementations differ only in I/O; the
decisions about which stored fields survive an upsert are made here.

Refresh tokens cross this boundary encrypted: implementations call
``encrypt``/``decrypt`` from the vault with the key passed by the caller and
never persist plaintext.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..models import (
    UNSET,
    Entitlement,
    EntitlementUpsertParams,
    SubscriptionSource,
    SubscriptionTier,
    User,
    UserUpsertParams,
    utcnow,
)


# =============================================================================
# Shared Merge Logic
# =============================================================================

def merge_user_upsert(
    existing: Optional[User],
    params: UserUpsertParams,
    encrypted_token: Optional[str],
    now: Optional[datetime] = None,
) -> User:
    """
    Merge upsert parameters into the stored user record.

    ``existing`` carries refresh token *material* (ciphertext) in its
    ``refresh_token`` field, and ``encrypted_token`` is the already-encrypted
    new value or None. The returned record is what the implementation writes.

    Rules:
        - username always overwrites
        - global_name / avatar_url: UNSET keeps, None clears, value overwrites
        - refresh token / expiry: only a value overwrites; UNSET and None keep
        - new users start on the free tier
    """
    now = now or utcnow()
    token_expires_at = params.token_expires_at if params.token_expires_at is not UNSET else None

    if existing is None:
        return User(
            user_id=params.user_id,
            username=params.username,
            global_name=None if params.global_name is UNSET else params.global_name,
            avatar_url=None if params.avatar_url is UNSET else params.avatar_url,
            refresh_token=encrypted_token,
            token_expires_at=token_expires_at,
            subscription_tier=SubscriptionTier.FREE,
            subscription_source=None,
            subscription_expires_at=None,
            created_at=now,
            updated_at=now,
        )

    merged = existing.model_copy()
    merged.username = params.username
    if params.global_name is not UNSET:
        merged.global_name = params.global_name
    if params.avatar_url is not UNSET:
        merged.avatar_url = params.avatar_url
    if encrypted_token is not None:
        merged.refresh_token = encrypted_token
    if token_expires_at is not None:
        merged.token_expires_at = token_expires_at
    merged.updated_at = now
    return merged


def merge_entitlement_upsert(
    existing: Optional[Entitlement],
    params: EntitlementUpsertParams,
    now: Optional[datetime] = None,
) -> Entitlement:
    """
    Merge an entitlement upsert. Updates refresh only ``consumed`` and
    ``ends_at``; everything else stays as first recorded.
    """
    now = now or utcnow()

    if existing is None:
        return Entitlement(**params.model_dump(), created_at=now, updated_at=now)

    merged = existing.model_copy()
    merged.consumed = params.consumed
    merged.ends_at = params.ends_at
    merged.updated_at = now
    return merged


# =============================================================================
# Contract
# =============================================================================

class Storage(ABC):
    """
    User and entitlement persistence consumed by the auth flow and the
    reconciliation engine.

    Mutations for the same user id are serialized by the implementation.
    No cross-user transaction is provided.
    """

    async def start(self) -> None:
        """Acquire resources (connection pools, schema)."""

    async def stop(self) -> None:
        """Release resources."""

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_user(self, user_id: int, encryption_key: str) -> Optional[User]:
        """
        Get a user by Discord id with the refresh token decrypted.

        Returns None when no record exists.

        Raises:
            EncryptionError: If stored token material cannot be decrypted
            StorageError: On backend failure
        """

    @abstractmethod
    async def upsert_user(self, params: UserUpsertParams, encryption_key: str) -> None:
        """Create a user or merge into the existing record (``merge_user_upsert``)."""

    @abstractmethod
    async def update_refresh_token(
        self,
        user_id: int,
        refresh_token: str,
        token_expires_at: datetime,
        encryption_key: str,
    ) -> None:
        """Encrypt and overwrite the stored token. No-op for unknown users."""

    @abstractmethod
    async def clear_user_tokens(self, user_id: int) -> None:
        """Remove the stored refresh token and its expiry. Idempotent."""

    @abstractmethod
    async def update_subscription(
        self,
        user_id: int,
        tier: SubscriptionTier,
        source: SubscriptionSource,
        expires_at: Optional[datetime],
    ) -> None:
        """Overwrite tier, source and expiry together."""

    # -------------------------------------------------------------------------
    # Entitlements
    # -------------------------------------------------------------------------

    @abstractmethod
    async def upsert_entitlement(self, params: EntitlementUpsertParams) -> None:
        """Create or update an entitlement (``merge_entitlement_upsert``)."""

    @abstractmethod
    async def list_entitlements(self, user_id: int) -> List[Entitlement]:
        """Stored entitlements for a user, ordered by entitlement id."""
