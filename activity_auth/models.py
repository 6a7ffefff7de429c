"""
Data Models Module

This module defines the Pydantic models used across the service.

Models are organized by functional area:
- Subscription enums
- Domain records (users, entitlements) owned by the storage layer
- Storage upsert parameters
- Discord wire models (token, user-info and entitlement payloads)
- API request/response models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Subscription Enums
# ============================================================================

class SubscriptionTier(str, Enum):
    """Subscription tier for a user."""

    FREE = "free"
    PREMIUM = "premium"

    def is_premium(self) -> bool:
        return self is SubscriptionTier.PREMIUM


class SubscriptionSource(str, Enum):
    """Where a user's subscription came from."""

    DISCORD = "discord"
    MANUAL = "manual"
    EXTERNAL = "external"


# ============================================================================
# Domain Records
# ============================================================================

class User(BaseModel):
    """
    A user authenticated via Discord OAuth.

    ``refresh_token`` holds plaintext only after the storage layer decrypted
    it, and is excluded from every serialized representation.
    """

    user_id: int = Field(..., description="Discord user ID (snowflake)")
    username: str = Field(..., description="Discord username")
    global_name: Optional[str] = Field(None, description="Discord display name")
    avatar_url: Optional[str] = Field(None, description="CDN URL of the avatar")
    refresh_token: Optional[str] = Field(None, exclude=True, repr=False)
    token_expires_at: Optional[datetime] = Field(None, description="When the Discord token expires")
    subscription_tier: SubscriptionTier = Field(default=SubscriptionTier.FREE)
    subscription_source: Optional[SubscriptionSource] = None
    subscription_expires_at: Optional[datetime] = Field(
        None, description="When the subscription expires (None = non-expiring)"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_premium(self, now: Optional[datetime] = None) -> bool:
        """True if the user holds an active premium subscription."""
        if not self.subscription_tier.is_premium():
            return False

        if self.subscription_expires_at is None:
            return True

        return self.subscription_expires_at > (now or utcnow())

    @property
    def display_name(self) -> str:
        """Display name, preferring global_name over username."""
        return self.global_name or self.username


class Entitlement(BaseModel):
    """Stored copy of a Discord entitlement."""

    entitlement_id: int
    user_id: int
    sku_id: int
    entitlement_type: int
    is_test: bool = False
    consumed: bool = False
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Storage Upsert Parameters
# ============================================================================

class _Unset:
    """Marker for an upsert field the caller did not supply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class UserUpsertParams(BaseModel):
    """
    Parameters for creating or updating a user.

    Optional fields are three-way: ``UNSET`` keeps the stored value, ``None``
    means explicitly absent, anything else overwrites. A ``None`` refresh
    token or expiry never clears the stored one; use ``clear_user_tokens``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: int
    username: str
    global_name: Union[Optional[str], _Unset] = UNSET
    avatar_url: Union[Optional[str], _Unset] = UNSET
    refresh_token: Union[Optional[str], _Unset] = Field(default=UNSET, repr=False)
    token_expires_at: Union[Optional[datetime], _Unset] = UNSET


class EntitlementUpsertParams(BaseModel):
    """Parameters for upserting an entitlement."""

    entitlement_id: int
    user_id: int
    sku_id: int
    entitlement_type: int
    is_test: bool = False
    consumed: bool = False
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


# ============================================================================
# Discord Wire Models
# ============================================================================

class TokenResult(BaseModel):
    """Discord OAuth2 token response plus the computed absolute expiry."""

    access_token: str
    token_type: str
    expires_in: int
    refresh_token: str
    scope: str
    expires_at: datetime


class ProviderUser(BaseModel):
    """Discord user from the /users/@me endpoint."""

    id: str
    username: str
    avatar: Optional[str] = None
    global_name: Optional[str] = None
    discriminator: Optional[str] = None


class ProviderEntitlement(BaseModel):
    """Discord entitlement from the application entitlements endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    sku_id: str
    user_id: Optional[str] = None
    entitlement_type: int = Field(..., alias="type")
    deleted: bool = False
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    consumed: bool = False

    @field_validator("id", "sku_id", "user_id", mode="before")
    @classmethod
    def snowflake_as_str(cls, v):
        """Accept snowflakes sent as JSON numbers."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


# ============================================================================
# API Models
# ============================================================================

class CodeExchangeRequest(BaseModel):
    """Request body for the code exchange endpoint."""

    code: str = Field(..., description="Single-use Discord authorization code")


class TokenResponse(BaseModel):
    """Session token returned to the client."""

    access_token: str = Field(..., description="Session JWT for backend API authentication")
    discord_access_token: Optional[str] = Field(
        None, description="Discord OAuth access token for Discord SDK authentication"
    )


class UserResponse(BaseModel):
    """Public view of the current user. Never carries the refresh token."""

    user_id: int
    username: str
    global_name: Optional[str] = None
    avatar_url: Optional[str] = None
    subscription_tier: SubscriptionTier
    is_premium: bool

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            user_id=user.user_id,
            username=user.username,
            global_name=user.global_name,
            avatar_url=user.avatar_url,
            subscription_tier=user.subscription_tier,
            is_premium=user.is_premium(),
        )


class ErrorResponse(BaseModel):
    """Standardized error response model."""

    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    service: str
    version: str
