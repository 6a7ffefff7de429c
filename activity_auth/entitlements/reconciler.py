"""
Entitlement Reconciliation
==========================

Turns a user's Discord entitlements into a single subscription tier and
expiry.

A pass fetches the full entitlement list, stores every usable entitlement,
and promotes the user to premium when at least one active entitlement for the
premium SKU exists. A pass that finds nothing never demotes: a transient
empty response from Discord must not take premium away.

Reconciliation is best effort. It logs and absorbs every failure so that the
authentication flow around it always proceeds.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..errors import AuthServiceError
from ..models import (
    EntitlementUpsertParams,
    ProviderEntitlement,
    SubscriptionSource,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DerivedSubscription:
    tier: SubscriptionTier
    expires_at: Optional[datetime]


def derive_subscription(
    entitlements: Iterable[EntitlementUpsertParams],
    premium_sku_id: int,
    now: Optional[datetime] = None,
) -> DerivedSubscription:
    """
    Derive tier and expiry from stored entitlements.

    An entitlement counts when its SKU is the premium SKU and it has no end
    or ends strictly after ``now``. The expiry is the latest end among those;
    one non-expiring entitlement makes the result non-expiring.
    """
    now = now or datetime.now(timezone.utc)
    tier = SubscriptionTier.FREE
    expires_at: Optional[datetime] = None
    non_expiring = False

    for entitlement in entitlements:
        if entitlement.sku_id != premium_sku_id:
            continue
        if entitlement.ends_at is not None and entitlement.ends_at <= now:
            continue

        tier = SubscriptionTier.PREMIUM
        if entitlement.ends_at is None:
            non_expiring = True
        elif expires_at is None or entitlement.ends_at > expires_at:
            expires_at = entitlement.ends_at

    if non_expiring:
        expires_at = None

    return DerivedSubscription(tier=tier, expires_at=expires_at)


def parse_entitlement(
    entitlement: ProviderEntitlement,
    user_id: int,
) -> Optional[EntitlementUpsertParams]:
    """Convert a Discord entitlement into upsert params, or None if its ids don't parse."""
    try:
        entitlement_id = int(entitlement.id)
    except ValueError:
        logger.warning(f"Failed to parse entitlement.id '{entitlement.id}'")
        return None

    try:
        sku_id = int(entitlement.sku_id)
    except ValueError:
        logger.warning(f"Failed to parse entitlement.sku_id '{entitlement.sku_id}'")
        return None

    return EntitlementUpsertParams(
        entitlement_id=entitlement_id,
        user_id=user_id,
        sku_id=sku_id,
        entitlement_type=entitlement.entitlement_type,
        is_test=False,
        consumed=entitlement.consumed,
        starts_at=_as_utc(entitlement.starts_at),
        ends_at=_as_utc(entitlement.ends_at),
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EntitlementReconciler:
    """
    Reconciles Discord entitlements into the user's subscription.

    Args:
        storage: Storage contract implementation
        provider: Client exposing ``fetch_entitlements(user_id)``
        premium_sku_id: SKU that grants premium; None disables reconciliation
    """

    def __init__(self, storage, provider, premium_sku_id: Optional[int]):
        self.storage = storage
        self.provider = provider
        self.premium_sku_id = premium_sku_id

    @property
    def enabled(self) -> bool:
        return self.premium_sku_id is not None

    async def reconcile(self, user_id: int) -> SubscriptionTier:
        """
        Run one reconciliation pass for a user.

        Returns the derived tier for logging. Never raises.
        """
        if not self.enabled:
            return SubscriptionTier.FREE

        try:
            return await self._reconcile(user_id)
        except Exception as e:
            logger.error(
                f"Entitlement reconciliation failed for user {user_id}: {e}",
                extra={"user_id": user_id},
                exc_info=True,
            )
            return SubscriptionTier.FREE

    async def _reconcile(self, user_id: int) -> SubscriptionTier:
        entitlements = await self.provider.fetch_entitlements(user_id)
        persisted = await self._persist(user_id, entitlements)

        derived = derive_subscription(persisted, self.premium_sku_id)

        if derived.tier is SubscriptionTier.PREMIUM:
            try:
                await self.storage.update_subscription(
                    user_id,
                    SubscriptionTier.PREMIUM,
                    SubscriptionSource.DISCORD,
                    derived.expires_at,
                )
            except AuthServiceError as e:
                logger.warning(f"Failed to update subscription for user {user_id}: {e}")
            else:
                logger.info(
                    f"Updated user {user_id} subscription to premium "
                    f"(expires: {derived.expires_at})",
                    extra={"user_id": user_id},
                )

        return derived.tier

    async def _persist(
        self,
        user_id: int,
        entitlements: List[ProviderEntitlement],
    ) -> List[EntitlementUpsertParams]:
        persisted = []

        for entitlement in entitlements:
            if entitlement.deleted:
                continue

            params = parse_entitlement(entitlement, user_id)
            if params is None:
                continue

            try:
                await self.storage.upsert_entitlement(params)
            except AuthServiceError as e:
                logger.warning(f"Failed to upsert entitlement {params.entitlement_id}: {e}")
                continue

            persisted.append(params)

        return persisted
