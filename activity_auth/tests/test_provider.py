"""
Discord Client Tests

Exercises DiscordClient against a scripted Discord API served through
httpx.MockTransport, plus avatar URL construction.
"""

import base64
from datetime import datetime, timezone

import httpx
import pytest

from activity_auth.auth.provider import DiscordClient, build_avatar_url, default_avatar_index
from activity_auth.errors import AuthFailed, ProviderError
from activity_auth.models import ProviderUser
from activity_auth.tests.fakes import TEST_CLIENT_ID, entitlement_payload


@pytest.fixture
def client(settings, http_client):
    return DiscordClient.from_settings(settings, http_client)


# =============================================================================
# Avatar URLs
# =============================================================================

class TestAvatarUrl:

    def test_static_avatar(self):
        user = ProviderUser(id="42", username="alice", avatar="abc123")

        assert build_avatar_url(user) == "https://cdn.discordapp.com/avatars/42/abc123.png?size=1024"

    def test_animated_avatar(self):
        user = ProviderUser(id="42", username="alice", avatar="a_abc123")

        assert build_avatar_url(user) == "https://cdn.discordapp.com/avatars/42/a_abc123.gif?size=1024"

    def test_default_avatar_new_username_system(self):
        user = ProviderUser(id="42", username="alice", discriminator="0")

        assert build_avatar_url(user) == "https://cdn.discordapp.com/embed/avatars/0.png"

    def test_default_avatar_legacy_discriminator(self):
        user = ProviderUser(id="42", username="alice", discriminator="7")

        assert build_avatar_url(user) == "https://cdn.discordapp.com/embed/avatars/2.png"

    @pytest.mark.parametrize(
        "discriminator,expected",
        [(None, 0), ("", 0), ("0001", 1), ("1234", 4), ("abcd", 0)],
    )
    def test_default_avatar_index(self, discriminator, expected):
        assert default_avatar_index(discriminator) == expected


# =============================================================================
# Token endpoint
# =============================================================================

class TestCodeExchange:

    @pytest.mark.asyncio
    async def test_exchange_success(self, client, fake_discord):
        result = await client.exchange_code("auth-code")

        assert result.access_token == "discord-access-1"
        assert result.refresh_token == "discord-refresh-1"
        assert result.expires_in == 604800
        assert result.expires_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_exchange_sends_form_and_basic_auth(self, client, fake_discord):
        await client.exchange_code("auth-code")

        [request] = fake_discord.requests_to("/oauth2/token")
        form = fake_discord.form(request)
        expected_auth = base64.b64encode(
            f"{TEST_CLIENT_ID}:test-client-secret".encode()
        ).decode()

        assert request.method == "POST"
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == "https://activity.example.com/callback"
        assert request.headers["Authorization"] == f"Basic {expected_auth}"

    @pytest.mark.asyncio
    async def test_rejected_code_is_provider_error(self, client, fake_discord):
        fake_discord.token_status = 400

        with pytest.raises(ProviderError) as exc_info:
            await client.exchange_code("replayed-code")

        assert exc_info.value.provider_status == 400

    @pytest.mark.asyncio
    async def test_malformed_token_body(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"access_token": "x"}))
        async with httpx.AsyncClient(transport=transport) as http_client:
            client = DiscordClient.from_settings(settings, http_client)

            with pytest.raises(ProviderError):
                await client.exchange_code("auth-code")

    @pytest.mark.asyncio
    async def test_transport_failure(self, settings):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(fail)) as http_client:
            client = DiscordClient.from_settings(settings, http_client)

            with pytest.raises(ProviderError):
                await client.exchange_code("auth-code")


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_success(self, client, fake_discord):
        result = await client.refresh_token("discord-refresh-0")

        [request] = fake_discord.requests_to("/oauth2/token")
        assert fake_discord.form(request)["grant_type"] == "refresh_token"
        assert fake_discord.form(request)["refresh_token"] == "discord-refresh-0"
        assert result.refresh_token == "discord-refresh-1"

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_auth_failed(self, client, fake_discord):
        fake_discord.refresh_status = 400

        with pytest.raises(AuthFailed):
            await client.refresh_token("revoked")

    @pytest.mark.asyncio
    async def test_server_error_is_provider_error(self, client, fake_discord):
        fake_discord.refresh_status = 503

        with pytest.raises(ProviderError):
            await client.refresh_token("discord-refresh-0")


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_posts_token(self, client, fake_discord):
        await client.revoke_token("discord-refresh-1")

        [request] = fake_discord.requests_to("/oauth2/token/revoke")
        assert fake_discord.form(request)["token"] == "discord-refresh-1"

    @pytest.mark.asyncio
    async def test_revoke_failure_is_swallowed(self, client, fake_discord):
        fake_discord.revoke_status = 500

        assert await client.revoke_token("discord-refresh-1") is None

    @pytest.mark.asyncio
    async def test_revoke_transport_failure_is_swallowed(self, settings):
        def fail(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(fail)) as http_client:
            client = DiscordClient.from_settings(settings, http_client)

            assert await client.revoke_token("discord-refresh-1") is None


# =============================================================================
# REST endpoints
# =============================================================================

class TestUserInfo:

    @pytest.mark.asyncio
    async def test_fetch_user_info(self, client, fake_discord):
        user = await client.fetch_user_info("discord-access-1")

        [request] = fake_discord.requests_to("/users/@me")
        assert request.headers["Authorization"] == "Bearer discord-access-1"
        assert user.id == "123456789"
        assert user.global_name == "Alice"

    @pytest.mark.asyncio
    async def test_unauthorized_is_provider_error(self, client, fake_discord):
        fake_discord.user_status = 401

        with pytest.raises(ProviderError):
            await client.fetch_user_info("bad-token")

    @pytest.mark.asyncio
    async def test_missing_fields_is_provider_error(self, client, fake_discord):
        fake_discord.user = {"id": "1"}

        with pytest.raises(ProviderError):
            await client.fetch_user_info("discord-access-1")


class TestEntitlements:

    @pytest.mark.asyncio
    async def test_fetch_entitlements_uses_bot_auth(self, client, fake_discord):
        fake_discord.entitlements = [entitlement_payload("1001")]

        entitlements = await client.fetch_entitlements(123456789)

        [request] = [r for r in fake_discord.requests if "/entitlements" in r.url.path]
        assert request.url.path.endswith(f"/applications/{TEST_CLIENT_ID}/entitlements")
        assert request.url.params["user_id"] == "123456789"
        assert request.url.params["exclude_ended"] == "false"
        assert request.headers["Authorization"] == "Bot test-bot-token"
        assert [e.id for e in entitlements] == ["1001"]
        assert entitlements[0].entitlement_type == 8

    @pytest.mark.asyncio
    async def test_numeric_snowflakes_accepted(self, client, fake_discord):
        fake_discord.entitlements = [{"id": 1001, "sku_id": 777, "user_id": 123456789, "type": 8}]

        [entitlement] = await client.fetch_entitlements(123456789)

        assert entitlement.id == "1001"
        assert entitlement.sku_id == "777"
        assert entitlement.user_id == "123456789"

    @pytest.mark.asyncio
    async def test_failure_yields_empty_list(self, client, fake_discord):
        fake_discord.entitlements_status = 500

        assert await client.fetch_entitlements(123456789) == []

    @pytest.mark.asyncio
    async def test_non_list_body_yields_empty_list(self, client, fake_discord):
        fake_discord.entitlements = {"message": "unexpected"}

        assert await client.fetch_entitlements(123456789) == []

    @pytest.mark.asyncio
    async def test_malformed_items_are_dropped(self, client, fake_discord):
        fake_discord.entitlements = [{"id": "1"}, entitlement_payload("1002")]

        entitlements = await client.fetch_entitlements(123456789)

        assert [e.id for e in entitlements] == ["1002"]

    @pytest.mark.asyncio
    async def test_transport_failure_yields_empty_list(self, settings):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(fail)) as http_client:
            client = DiscordClient.from_settings(settings, http_client)

            assert await client.fetch_entitlements(1) == []
