"""
PostgreSQL storage backend (asyncpg).

Per-user atomicity comes from the database: upserts run in a transaction that
holds ``SELECT ... FOR UPDATE`` on the user row while the shared merge rules
are applied, and every other mutation is a single UPDATE statement.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import asyncpg

from ..auth import encryption
from ..errors import StorageError
from ..models import (
    Entitlement,
    EntitlementUpsertParams,
    SubscriptionSource,
    SubscriptionTier,
    User,
    UserUpsertParams,
)
from .base import Storage, merge_user_upsert

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

USER_COLUMNS = """
    user_id, username, global_name, avatar_url,
    refresh_token, token_expires_at,
    subscription_tier, subscription_source, subscription_expires_at,
    created_at, updated_at
"""


def user_from_row(row) -> User:
    """Build a User from a row; ``refresh_token`` is still ciphertext."""
    return User(
        user_id=row["user_id"],
        username=row["username"],
        global_name=row["global_name"],
        avatar_url=row["avatar_url"],
        refresh_token=row["refresh_token"],
        token_expires_at=row["token_expires_at"],
        subscription_tier=SubscriptionTier(row["subscription_tier"]),
        subscription_source=(
            SubscriptionSource(row["subscription_source"])
            if row["subscription_source"] is not None
            else None
        ),
        subscription_expires_at=row["subscription_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def entitlement_from_row(row) -> Entitlement:
    return Entitlement(
        entitlement_id=row["entitlement_id"],
        user_id=row["user_id"],
        sku_id=row["sku_id"],
        entitlement_type=row["entitlement_type"],
        is_test=row["is_test"],
        consumed=row["consumed"],
        starts_at=row["starts_at"],
        ends_at=row["ends_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStorage(Storage):
    """PostgreSQL storage for users and entitlements."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self) -> None:
        """Create the connection pool and apply migrations."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
            )
            await self.migrate()
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to start PostgreSQL storage: {e}")
            raise StorageError(f"failed to start: {e}") from e

        logger.info("PostgreSQL storage started")

    async def stop(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL storage stopped")

    async def migrate(self) -> None:
        """Apply the SQL migrations in order. Every migration is idempotent."""
        async with self._pool().acquire() as conn:
            for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
                logger.info(f"Applying migration {path.name}")
                await conn.execute(path.read_text(encoding="utf-8"))

    async def truncate(self) -> None:
        """Delete all users and entitlements."""
        await self._execute("TRUNCATE entitlements, users")

    def _pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StorageError("storage not started")
        return self.pool

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: int, encryption_key: str) -> Optional[User]:
        try:
            row = await self._pool().fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE user_id = $1",
                user_id,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e

        if row is None:
            return None

        user = user_from_row(row)
        if user.refresh_token is not None:
            user.refresh_token = encryption.decrypt(user.refresh_token, encryption_key)
        return user

    async def upsert_user(self, params: UserUpsertParams, encryption_key: str) -> None:
        encrypted_token = None
        if isinstance(params.refresh_token, str):
            encrypted_token = encryption.encrypt(params.refresh_token, encryption_key)

        try:
            async with self._pool().acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT {USER_COLUMNS} FROM users WHERE user_id = $1 FOR UPDATE",
                        params.user_id,
                    )

                    if row is None:
                        created = merge_user_upsert(None, params, encrypted_token)
                        inserted = await conn.fetchval(
                            """
                            INSERT INTO users (
                                user_id, username, global_name, avatar_url,
                                refresh_token, token_expires_at, created_at, updated_at
                            )
                            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                            ON CONFLICT (user_id) DO NOTHING
                            RETURNING user_id
                            """,
                            created.user_id,
                            created.username,
                            created.global_name,
                            created.avatar_url,
                            created.refresh_token,
                            created.token_expires_at,
                            created.created_at,
                            created.updated_at,
                        )
                        if inserted is not None:
                            return

                        # Lost an insert race; merge into the winner's row.
                        row = await conn.fetchrow(
                            f"SELECT {USER_COLUMNS} FROM users WHERE user_id = $1 FOR UPDATE",
                            params.user_id,
                        )

                    merged = merge_user_upsert(user_from_row(row), params, encrypted_token)
                    await conn.execute(
                        """
                        UPDATE users
                        SET username = $2, global_name = $3, avatar_url = $4,
                            refresh_token = $5, token_expires_at = $6, updated_at = $7
                        WHERE user_id = $1
                        """,
                        merged.user_id,
                        merged.username,
                        merged.global_name,
                        merged.avatar_url,
                        merged.refresh_token,
                        merged.token_expires_at,
                        merged.updated_at,
                    )
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e

    async def update_refresh_token(
        self,
        user_id: int,
        refresh_token: str,
        token_expires_at: datetime,
        encryption_key: str,
    ) -> None:
        encrypted_token = encryption.encrypt(refresh_token, encryption_key)

        await self._execute(
            """
            UPDATE users
            SET refresh_token = $2, token_expires_at = $3, updated_at = NOW()
            WHERE user_id = $1
            """,
            user_id,
            encrypted_token,
            token_expires_at,
        )

    async def clear_user_tokens(self, user_id: int) -> None:
        await self._execute(
            """
            UPDATE users
            SET refresh_token = NULL, token_expires_at = NULL, updated_at = NOW()
            WHERE user_id = $1
            """,
            user_id,
        )

    async def update_subscription(
        self,
        user_id: int,
        tier: SubscriptionTier,
        source: SubscriptionSource,
        expires_at: Optional[datetime],
    ) -> None:
        await self._execute(
            """
            UPDATE users
            SET subscription_tier = $2, subscription_source = $3,
                subscription_expires_at = $4, updated_at = NOW()
            WHERE user_id = $1
            """,
            user_id,
            tier.value,
            source.value,
            expires_at,
        )

    # -------------------------------------------------------------------------
    # Entitlements
    # -------------------------------------------------------------------------

    async def upsert_entitlement(self, params: EntitlementUpsertParams) -> None:
        await self._execute(
            """
            INSERT INTO entitlements (
                entitlement_id, user_id, sku_id, entitlement_type,
                is_test, consumed, starts_at, ends_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (entitlement_id) DO UPDATE SET
                consumed = EXCLUDED.consumed,
                ends_at = EXCLUDED.ends_at,
                updated_at = NOW()
            """,
            params.entitlement_id,
            params.user_id,
            params.sku_id,
            params.entitlement_type,
            params.is_test,
            params.consumed,
            params.starts_at,
            params.ends_at,
        )

    async def list_entitlements(self, user_id: int) -> List[Entitlement]:
        try:
            rows = await self._pool().fetch(
                """
                SELECT entitlement_id, user_id, sku_id, entitlement_type, is_test,
                       consumed, starts_at, ends_at, created_at, updated_at
                FROM entitlements
                WHERE user_id = $1
                ORDER BY entitlement_id
                """,
                user_id,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e

        return [entitlement_from_row(row) for row in rows]

    async def _execute(self, query: str, *args) -> None:
        try:
            await self._pool().execute(query, *args)
        except asyncpg.PostgresError as e:
            raise StorageError(str(e)) from e
