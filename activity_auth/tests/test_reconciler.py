"""
Entitlement Reconciliation Tests

Covers tier derivation and the promotion-only reconciliation pass, with a
mocked entitlements provider and the in-memory store.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from activity_auth.entitlements import EntitlementReconciler, derive_subscription
from activity_auth.errors import StorageError
from activity_auth.models import (
    EntitlementUpsertParams,
    ProviderEntitlement,
    SubscriptionSource,
    SubscriptionTier,
    UserUpsertParams,
)
from activity_auth.tests.fakes import (
    OTHER_SKU_ID,
    PREMIUM_SKU_ID,
    TEST_ENCRYPTION_KEY,
    entitlement_payload,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)
USER_ID = 123456789


def params(entitlement_id: int, sku_id: int = PREMIUM_SKU_ID, ends_at=None) -> EntitlementUpsertParams:
    return EntitlementUpsertParams(
        entitlement_id=entitlement_id,
        user_id=USER_ID,
        sku_id=sku_id,
        entitlement_type=8,
        ends_at=ends_at,
    )


def provider_entitlements(*payloads):
    return [ProviderEntitlement.model_validate(p) for p in payloads]


def iso(dt: datetime) -> str:
    return dt.isoformat()


# =============================================================================
# Derivation
# =============================================================================

class TestDeriveSubscription:

    def test_no_entitlements_is_free(self):
        derived = derive_subscription([], PREMIUM_SKU_ID, now=NOW)

        assert derived.tier == SubscriptionTier.FREE
        assert derived.expires_at is None

    def test_other_sku_ignored(self):
        derived = derive_subscription([params(1, sku_id=OTHER_SKU_ID)], PREMIUM_SKU_ID, now=NOW)

        assert derived.tier == SubscriptionTier.FREE

    def test_non_expiring_premium(self):
        derived = derive_subscription([params(1)], PREMIUM_SKU_ID, now=NOW)

        assert derived.tier == SubscriptionTier.PREMIUM
        assert derived.expires_at is None

    def test_ended_entitlement_ignored(self):
        derived = derive_subscription(
            [params(1, ends_at=NOW - timedelta(days=1))], PREMIUM_SKU_ID, now=NOW
        )

        assert derived.tier == SubscriptionTier.FREE

    def test_ending_exactly_now_ignored(self):
        derived = derive_subscription([params(1, ends_at=NOW)], PREMIUM_SKU_ID, now=NOW)

        assert derived.tier == SubscriptionTier.FREE

    def test_latest_end_wins(self):
        soon = NOW + timedelta(days=1)
        later = NOW + timedelta(days=30)

        derived = derive_subscription(
            [params(1, ends_at=later), params(2, ends_at=soon)], PREMIUM_SKU_ID, now=NOW
        )

        assert derived.expires_at == later

    @pytest.mark.parametrize("order", [(0, 1), (1, 0)])
    def test_non_expiring_beats_dated_in_any_order(self, order):
        entitlements = [params(1, ends_at=NOW + timedelta(days=30)), params(2)]

        derived = derive_subscription(
            [entitlements[i] for i in order], PREMIUM_SKU_ID, now=NOW
        )

        assert derived.tier == SubscriptionTier.PREMIUM
        assert derived.expires_at is None


# =============================================================================
# Reconciliation pass
# =============================================================================

@pytest.fixture
def provider():
    provider = Mock()
    provider.fetch_entitlements = AsyncMock(return_value=[])
    return provider


async def seed_user(storage):
    await storage.upsert_user(
        UserUpsertParams(user_id=USER_ID, username="alice"), TEST_ENCRYPTION_KEY
    )


class TestReconciler:

    @pytest.mark.asyncio
    async def test_premium_sku_promotes(self, storage, provider):
        await seed_user(storage)
        future = datetime.now(timezone.utc) + timedelta(days=30)
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("1001", sku_id=PREMIUM_SKU_ID, ends_at=iso(future)),
            entitlement_payload("1002", sku_id=OTHER_SKU_ID),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        tier = await reconciler.reconcile(USER_ID)

        user = await storage.get_user(USER_ID, TEST_ENCRYPTION_KEY)
        assert tier == SubscriptionTier.PREMIUM
        assert user.subscription_tier == SubscriptionTier.PREMIUM
        assert user.subscription_source == SubscriptionSource.DISCORD
        assert user.subscription_expires_at == future
        assert len(await storage.list_entitlements(USER_ID)) == 2

    @pytest.mark.asyncio
    async def test_only_other_sku_leaves_user_free(self, storage, provider):
        await seed_user(storage)
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("1002", sku_id=OTHER_SKU_ID),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        tier = await reconciler.reconcile(USER_ID)

        user = await storage.get_user(USER_ID, TEST_ENCRYPTION_KEY)
        assert tier == SubscriptionTier.FREE
        assert user.subscription_tier == SubscriptionTier.FREE
        assert user.subscription_source is None

    @pytest.mark.asyncio
    async def test_empty_result_never_demotes(self, storage, provider):
        await seed_user(storage)
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("1001"),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)
        await reconciler.reconcile(USER_ID)

        provider.fetch_entitlements.return_value = []
        await reconciler.reconcile(USER_ID)

        user = await storage.get_user(USER_ID, TEST_ENCRYPTION_KEY)
        assert user.subscription_tier == SubscriptionTier.PREMIUM
        assert user.subscription_expires_at is None

    @pytest.mark.asyncio
    async def test_deleted_entitlement_skipped(self, storage, provider):
        await seed_user(storage)
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("1001", deleted=True),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        tier = await reconciler.reconcile(USER_ID)

        assert tier == SubscriptionTier.FREE
        assert await storage.list_entitlements(USER_ID) == []

    @pytest.mark.asyncio
    async def test_unparsable_id_skipped(self, storage, provider):
        await seed_user(storage)
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("not-a-snowflake"),
            entitlement_payload("1003"),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        tier = await reconciler.reconcile(USER_ID)

        stored = await storage.list_entitlements(USER_ID)
        assert tier == SubscriptionTier.PREMIUM
        assert [e.entitlement_id for e in stored] == [1003]

    @pytest.mark.asyncio
    async def test_disabled_without_sku(self, storage, provider):
        reconciler = EntitlementReconciler(storage, provider, None)

        tier = await reconciler.reconcile(USER_ID)

        assert not reconciler.enabled
        assert tier == SubscriptionTier.FREE
        provider.fetch_entitlements.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_exception_is_absorbed(self, storage, provider):
        provider.fetch_entitlements.side_effect = RuntimeError("boom")
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        assert await reconciler.reconcile(USER_ID) == SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_failed_entitlement_write_excluded_from_derivation(self, provider):
        storage = Mock()
        storage.upsert_entitlement = AsyncMock(side_effect=StorageError("disk full"))
        storage.update_subscription = AsyncMock()
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("1001"),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        tier = await reconciler.reconcile(USER_ID)

        assert tier == SubscriptionTier.FREE
        storage.update_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_naive_timestamps_treated_as_utc(self, storage, provider):
        await seed_user(storage)
        future = (datetime.now(timezone.utc) + timedelta(days=3)).replace(tzinfo=None)
        provider.fetch_entitlements.return_value = provider_entitlements(
            entitlement_payload("1001", ends_at=future.isoformat()),
        )
        reconciler = EntitlementReconciler(storage, provider, PREMIUM_SKU_ID)

        tier = await reconciler.reconcile(USER_ID)

        user = await storage.get_user(USER_ID, TEST_ENCRYPTION_KEY)
        assert tier == SubscriptionTier.PREMIUM
        assert user.subscription_expires_at == future.replace(tzinfo=timezone.utc)
