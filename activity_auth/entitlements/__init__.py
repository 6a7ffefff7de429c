"""
Entitlements Package

Reconciliation of Discord entitlements into the local subscription tier.
"""

from .reconciler import EntitlementReconciler, derive_subscription

__all__ = ["EntitlementReconciler", "derive_subscription"]
