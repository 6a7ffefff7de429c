"""
AuthService Tests

Edge paths of the flow with mocked collaborators.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from activity_auth.auth.service import AuthService
from activity_auth.auth.session import SessionIdentity
from activity_auth.errors import EncryptionError, InvalidRequest, ProviderError, StorageError
from activity_auth.models import ProviderUser, TokenResult
from activity_auth.tests.fakes import make_settings

IDENTITY = SessionIdentity(user_id=123456789, username="alice")


def token_result() -> TokenResult:
    return TokenResult(
        access_token="discord-access",
        token_type="Bearer",
        expires_in=3600,
        refresh_token="discord-refresh",
        scope="identify",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def mock_storage():
    return AsyncMock()


@pytest.fixture
def mock_provider():
    provider = Mock()
    provider.exchange_code = AsyncMock(return_value=token_result())
    provider.fetch_user_info = AsyncMock(
        return_value=ProviderUser(id="123456789", username="alice")
    )
    provider.revoke_token = AsyncMock()
    return provider


@pytest.fixture
def mock_reconciler():
    reconciler = Mock()
    reconciler.enabled = True
    reconciler.reconcile = AsyncMock()
    return reconciler


@pytest.fixture
def service(mock_storage, mock_provider, mock_reconciler):
    return AuthService(make_settings(), mock_storage, mock_provider, mock_reconciler)


class TestExchange:

    @pytest.mark.asyncio
    async def test_empty_code_rejected_before_network(self, service, mock_provider):
        with pytest.raises(InvalidRequest):
            await service.exchange("")

        mock_provider.exchange_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_numeric_user_id_is_provider_error(self, service, mock_provider, mock_storage):
        mock_provider.fetch_user_info.return_value = ProviderUser(id="abc", username="alice")

        with pytest.raises(ProviderError):
            await service.exchange("auth-code")

        mock_storage.upsert_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure_aborts_before_reconcile(self, service, mock_storage, mock_reconciler):
        mock_storage.upsert_user.side_effect = StorageError("connection lost")

        with pytest.raises(StorageError):
            await service.exchange("auth-code")

        mock_reconciler.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconcile_skipped_when_disabled(self, service, mock_reconciler):
        mock_reconciler.enabled = False

        await service.exchange("auth-code")

        mock_reconciler.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_upsert_carries_token_and_profile(self, service, mock_storage):
        await service.exchange("auth-code")

        params = mock_storage.upsert_user.call_args[0][0]
        assert params.user_id == 123456789
        assert params.refresh_token == "discord-refresh"
        assert params.global_name is None
        assert params.avatar_url == "https://cdn.discordapp.com/embed/avatars/0.png"


class TestRevoke:

    @pytest.mark.asyncio
    async def test_unreadable_token_skips_discord_but_clears(self, service, mock_storage, mock_provider):
        mock_storage.get_user.side_effect = EncryptionError("failed to decrypt refresh token")

        await service.revoke(IDENTITY)

        mock_provider.revoke_token.assert_not_called()
        mock_storage.clear_user_tokens.assert_awaited_once_with(IDENTITY.user_id)

    @pytest.mark.asyncio
    async def test_unknown_user_still_clears(self, service, mock_storage, mock_provider):
        mock_storage.get_user.return_value = None

        await service.revoke(IDENTITY)

        mock_provider.revoke_token.assert_not_called()
        mock_storage.clear_user_tokens.assert_awaited_once_with(IDENTITY.user_id)
