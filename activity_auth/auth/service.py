"""
Authentication Flow
===================

Sequences the Discord OAuth2 exchange, user persistence, entitlement
reconciliation and session issuance.

    Unauthenticated --exchange--> Authenticated
    Authenticated   --refresh---> Authenticated   (Discord rejects -> AuthFailed,
                                                   client restarts at exchange)
    Authenticated   --revoke----> Unauthenticated (local tokens always cleared)
    Authenticated   --logout----> Unauthenticated

Provider and storage failures on the primary path abort the operation.
Reconciliation failures never do, and revocation at Discord never fails the
caller.
"""

import logging

from ..entitlements.reconciler import EntitlementReconciler
from ..errors import AuthFailed, EncryptionError, InvalidRequest, ProviderError, UserNotFound
from ..models import TokenResponse, UserResponse, UserUpsertParams
from ..storage.base import Storage
from .provider import DiscordClient, build_avatar_url
from .session import SessionIdentity, issue_session_token

logger = logging.getLogger(__name__)


class AuthService:
    """
    Orchestrates the authentication flow.

    Args:
        settings: Immutable application settings
        storage: Storage contract implementation
        provider: Discord API client
        reconciler: Entitlement reconciler
    """

    def __init__(
        self,
        settings,
        storage: Storage,
        provider: DiscordClient,
        reconciler: EntitlementReconciler,
    ):
        self.settings = settings
        self.storage = storage
        self.provider = provider
        self.reconciler = reconciler

    @property
    def _key(self) -> str:
        return self.settings.ENCRYPTION_KEY

    def _issue(self, user_id: int, username: str) -> str:
        return issue_session_token(
            user_id,
            username,
            self.settings.JWT_SECRET,
            expires_in_minutes=self.settings.SESSION_JWT_EXPIRY_MINUTES,
            issuer=self.settings.JWT_ISSUER,
        )

    # =========================================================================
    # Exchange
    # =========================================================================

    async def exchange(self, code: str) -> TokenResponse:
        """
        Exchange an authorization code for a session.

        Raises:
            InvalidRequest: Empty code
            ProviderError: Discord rejected the code or returned bad data
            StorageError: The user could not be persisted
            EncryptionError: The refresh token could not be sealed
        """
        if not code or not code.strip():
            raise InvalidRequest("authorization code is required")

        logger.info("Exchanging authorization code for access token")

        token = await self.provider.exchange_code(code.strip())
        discord_user = await self.provider.fetch_user_info(token.access_token)

        try:
            user_id = int(discord_user.id)
        except ValueError:
            raise ProviderError(f"invalid Discord user id '{discord_user.id}'") from None

        await self.storage.upsert_user(
            UserUpsertParams(
                user_id=user_id,
                username=discord_user.username,
                global_name=discord_user.global_name,
                avatar_url=build_avatar_url(discord_user),
                refresh_token=token.refresh_token,
                token_expires_at=token.expires_at,
            ),
            self._key,
        )

        if self.reconciler.enabled:
            tier = await self.reconciler.reconcile(user_id)
            logger.debug(f"Reconciled user {user_id} as {tier.value}")

        logger.info(
            f"Successfully authenticated user: {discord_user.username} (ID: {user_id})",
            extra={"user_id": user_id},
        )

        return TokenResponse(
            access_token=self._issue(user_id, discord_user.username),
            discord_access_token=token.access_token,
        )

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, identity: SessionIdentity) -> TokenResponse:
        """
        Refresh the stored Discord tokens and mint a new session token.

        Raises:
            UserNotFound: No stored user for the session
            AuthFailed: No stored refresh token, or Discord rejected it
            EncryptionError: Stored token material cannot be decrypted
        """
        logger.info(
            f"Refreshing token for user: {identity.username} ({identity.user_id})",
            extra={"user_id": identity.user_id},
        )

        user = await self.storage.get_user(identity.user_id, self._key)
        if user is None:
            raise UserNotFound(identity.user_id)

        if not user.refresh_token:
            logger.warning(f"No refresh token stored for user: {identity.user_id}")
            raise AuthFailed("no refresh token stored, re-authentication required")

        token = await self.provider.refresh_token(user.refresh_token)

        await self.storage.update_refresh_token(
            identity.user_id,
            token.refresh_token,
            token.expires_at,
            self._key,
        )

        logger.info(
            f"Successfully refreshed token for user: {identity.username} ({identity.user_id})",
            extra={"user_id": identity.user_id},
        )

        return TokenResponse(
            access_token=self._issue(identity.user_id, user.username),
            discord_access_token=token.access_token,
        )

    # =========================================================================
    # Revoke / Logout
    # =========================================================================

    async def revoke(self, identity: SessionIdentity) -> None:
        """
        Revoke the Discord refresh token and clear local tokens.

        Revocation at Discord is best effort; local tokens are cleared
        whatever its outcome.
        """
        logger.info(
            f"Revoking tokens for user: {identity.username} ({identity.user_id})",
            extra={"user_id": identity.user_id},
        )

        try:
            user = await self.storage.get_user(identity.user_id, self._key)
        except EncryptionError:
            logger.warning(
                f"Stored token for user {identity.user_id} is unreadable, skipping Discord revocation"
            )
            user = None

        if user is not None and user.refresh_token:
            await self.provider.revoke_token(user.refresh_token)

        await self.storage.clear_user_tokens(identity.user_id)

        logger.info(
            f"Successfully revoked tokens for user: {identity.username} ({identity.user_id})",
            extra={"user_id": identity.user_id},
        )

    async def logout(self, identity: SessionIdentity) -> None:
        """Clear the user's stored tokens."""
        logger.info(
            f"Logging out user: {identity.username} ({identity.user_id})",
            extra={"user_id": identity.user_id},
        )
        await self.storage.clear_user_tokens(identity.user_id)

    # =========================================================================
    # Current user
    # =========================================================================

    async def me(self, identity: SessionIdentity) -> UserResponse:
        """
        Public view of the session's user.

        Raises:
            UserNotFound: No stored user for the session
        """
        user = await self.storage.get_user(identity.user_id, self._key)
        if user is None:
            logger.warning(f"User not found in storage: {identity.user_id}")
            raise UserNotFound(identity.user_id)

        return UserResponse.from_user(user)
