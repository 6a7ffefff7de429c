"""
Discord OAuth2 / REST Client
============================

Wraps the Discord endpoints the auth flow needs. Every method is one network
round trip on a shared httpx.AsyncClient with the configured timeout, so a
stalled call only holds up the request that made it. Nothing is retried.

Endpoints:
    POST /oauth2/token                            code exchange, refresh (basic auth)
    POST /oauth2/token/revoke                     revoke (basic auth)
    GET  /users/@me                               user info (user bearer token)
    GET  /applications/{id}/entitlements          entitlements (Bot credential)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..errors import AuthFailed, ProviderError
from ..models import ProviderEntitlement, ProviderUser, TokenResult

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://discord.com/api/v10"
CDN_BASE = "https://cdn.discordapp.com"

# Avatar hashes with this prefix are animated.
ANIMATED_AVATAR_PREFIX = "a_"
DEFAULT_AVATAR_COUNT = 5


# =============================================================================
# Avatar URLs
# =============================================================================

def build_avatar_url(user: ProviderUser) -> str:
    """
    Build a CDN URL for a user's avatar, or the default embed avatar.

    Example:
        >>> build_avatar_url(ProviderUser(id="1", username="a", avatar="a_ff"))
        'https://cdn.discordapp.com/avatars/1/a_ff.gif?size=1024'
    """
    if user.avatar:
        ext = "gif" if user.avatar.startswith(ANIMATED_AVATAR_PREFIX) else "png"
        return f"{CDN_BASE}/avatars/{user.id}/{user.avatar}.{ext}?size=1024"

    return f"{CDN_BASE}/embed/avatars/{default_avatar_index(user.discriminator)}.png"


def default_avatar_index(discriminator: Optional[str]) -> int:
    """Default avatar index from the legacy discriminator (0 when absent)."""
    if not discriminator:
        return 0
    try:
        return int(discriminator) % DEFAULT_AVATAR_COUNT
    except ValueError:
        return 0


# =============================================================================
# Client
# =============================================================================

class DiscordClient:
    """
    Discord API client.

    Args:
        http_client: Shared httpx.AsyncClient (owned by the application)
        client_id: Application client id
        client_secret: Application client secret
        redirect_uri: Redirect URI registered for the code grant
        bot_token: Bot token for application-level entitlement listing
        api_base: Discord REST API base URL
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        bot_token: str,
        api_base: str = DEFAULT_API_BASE,
    ):
        self.http_client = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_settings(cls, settings, http_client: httpx.AsyncClient) -> "DiscordClient":
        return cls(
            http_client=http_client,
            client_id=settings.DISCORD_CLIENT_ID,
            client_secret=settings.DISCORD_CLIENT_SECRET,
            redirect_uri=settings.DISCORD_REDIRECT_URI,
            bot_token=settings.DISCORD_BOT_TOKEN,
            api_base=settings.discord_api_base,
        )

    @property
    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.client_id, self.client_secret)

    # -------------------------------------------------------------------------
    # OAuth2 token endpoint
    # -------------------------------------------------------------------------

    async def exchange_code(self, code: str) -> TokenResult:
        """
        Exchange a single-use authorization code for tokens.

        Raises:
            ProviderError: On rejection (including a replayed code), transport
                failure or malformed body
        """
        response = await self._post_token_endpoint(
            "/oauth2/token",
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
        )

        if not response.is_success:
            logger.error(
                f"Discord token exchange failed: {response.status_code}",
                extra={"status": response.status_code, "body": _error_body(response)},
            )
            raise ProviderError(
                f"token exchange failed with status {response.status_code}",
                provider_status=response.status_code,
            )

        return self._parse_token_result(response)

    async def refresh_token(self, refresh_token: str) -> TokenResult:
        """
        Obtain new tokens with a refresh token.

        Raises:
            AuthFailed: Discord rejected the refresh token; re-authenticate
            ProviderError: Transport failure, 5xx or malformed body
        """
        response = await self._post_token_endpoint(
            "/oauth2/token",
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

        if response.is_client_error:
            logger.warning(
                f"Discord rejected refresh token: {response.status_code}",
                extra={"status": response.status_code, "body": _error_body(response)},
            )
            raise AuthFailed("refresh token rejected by Discord")

        if not response.is_success:
            logger.error(f"Discord token refresh failed: {response.status_code}")
            raise ProviderError(
                f"token refresh failed with status {response.status_code}",
                provider_status=response.status_code,
            )

        return self._parse_token_result(response)

    async def revoke_token(self, token: str) -> None:
        """Revoke a token with Discord. Best effort: failures are only logged."""
        try:
            response = await self._post_token_endpoint("/oauth2/token/revoke", {"token": token})
        except ProviderError as e:
            logger.warning(f"Discord token revocation failed (continuing anyway): {e}")
            return

        if not response.is_success:
            logger.warning(
                f"Discord token revocation returned non-success: {response.status_code}",
                extra={"status": response.status_code, "body": _error_body(response)},
            )

    # -------------------------------------------------------------------------
    # REST endpoints
    # -------------------------------------------------------------------------

    async def fetch_user_info(self, access_token: str) -> ProviderUser:
        """
        Fetch the user that owns an access token.

        Raises:
            ProviderError: On non-success status, transport failure or
                malformed body
        """
        try:
            response = await self.http_client.get(
                f"{self.api_base}/users/@me",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"user info request failed: {e}") from e

        if not response.is_success:
            logger.error(f"Discord user info fetch failed: {response.status_code}")
            raise ProviderError(
                f"failed to fetch user info with status {response.status_code}",
                provider_status=response.status_code,
            )

        try:
            return ProviderUser.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProviderError("malformed user info response") from e

    async def fetch_entitlements(self, user_id: int) -> List[ProviderEntitlement]:
        """
        List all entitlements (including ended ones) for a user.

        Authenticated with the bot token: listing is an application-level
        privilege. Any failure yields an empty list so that reconciliation
        never blocks authentication.
        """
        url = f"{self.api_base}/applications/{self.client_id}/entitlements"

        try:
            response = await self.http_client.get(
                url,
                params={"user_id": str(user_id), "exclude_ended": "false"},
                headers={"Authorization": f"Bot {self.bot_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Discord entitlements request failed: {e}", extra={"user_id": user_id})
            return []

        if not response.is_success:
            logger.warning(
                f"Discord entitlements fetch failed: {response.status_code}",
                extra={"user_id": user_id, "body": _error_body(response)},
            )
            return []

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Discord entitlements response is not JSON", extra={"user_id": user_id})
            return []

        if not isinstance(payload, list):
            logger.warning("Discord entitlements response is not a list", extra={"user_id": user_id})
            return []

        entitlements = []
        for item in payload:
            try:
                entitlements.append(ProviderEntitlement.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Dropping malformed entitlement: {e.error_count()} errors")
        return entitlements

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _post_token_endpoint(self, path: str, form: Dict[str, str]) -> httpx.Response:
        try:
            return await self.http_client.post(
                f"{self.api_base}{path}",
                data=form,
                auth=self._basic_auth,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"token endpoint request failed: {e}") from e

    @staticmethod
    def _parse_token_result(response: httpx.Response) -> TokenResult:
        try:
            data: Dict[str, Any] = response.json()
            expires_in = int(data["expires_in"])
            return TokenResult(
                access_token=data["access_token"],
                token_type=data["token_type"],
                expires_in=expires_in,
                refresh_token=data["refresh_token"],
                scope=data["scope"],
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            )
        except (ValueError, TypeError, KeyError, ValidationError) as e:
            raise ProviderError("malformed token response") from e


def _error_body(response: httpx.Response) -> str:
    """Short response body for logs."""
    return response.text[:200]
