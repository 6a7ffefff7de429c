"""
Activity Auth
=============

Discord OAuth2 authentication for Discord Activities: exchanges
authorization codes, keeps the Discord refresh token encrypted at rest,
issues the service's own session JWTs, and reconciles Discord entitlements
into a local subscription tier.

Packages:
    - auth:         Discord client, vault, session tokens, flow, routes
    - storage:      Storage contract with memory and PostgreSQL backends
    - entitlements: Entitlement reconciliation
"""

__version__ = "1.0.0"
