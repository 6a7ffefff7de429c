"""
Configuration module for the Activity Auth service.

This module uses Pydantic Settings to load and validate environment variables
for Discord OAuth2, session JWT signing, refresh-token encryption, storage
and server settings.

Environment variables are loaded from .env file or system environment.
The resulting Settings object is immutable and is handed to each component
constructor at startup; components never read the environment themselves.
"""

import base64
import binascii
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # =========================================================================
    # Discord OAuth2 / API Configuration
    # =========================================================================

    DISCORD_CLIENT_ID: str = Field(
        ...,
        description="Discord application client ID",
        min_length=1,
    )

    DISCORD_CLIENT_SECRET: str = Field(
        ...,
        description="Discord application client secret",
        min_length=1,
    )

    DISCORD_REDIRECT_URI: str = Field(
        ...,
        description="OAuth2 redirect URI registered with the Discord application",
        min_length=1,
    )

    DISCORD_BOT_TOKEN: str = Field(
        ...,
        description="Bot token used for the application entitlements API",
        min_length=1,
    )

    DISCORD_PREMIUM_SKU_ID: Optional[int] = Field(
        None,
        description="SKU id whose entitlements grant the premium tier (unset disables reconciliation)",
    )

    DISCORD_API_BASE_URL: str = Field(
        default="https://discord.com/api/v10",
        description="Discord REST API base URL",
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout applied to every Discord API call",
        gt=0,
        le=120,
    )

    # =========================================================================
    # Session JWT Configuration
    # =========================================================================

    JWT_SECRET: str = Field(
        ...,
        description="Secret key for signing session JWTs (must be cryptographically secure)",
        min_length=32,
    )

    JWT_ISSUER: str = Field(
        default="activity-auth",
        description="Issuer claim written into and required on session JWTs",
    )

    SESSION_JWT_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Session JWT expiry time in minutes",
        ge=5,
        le=1440,  # Max 24 hours
    )

    # =========================================================================
    # Refresh Token Encryption
    # =========================================================================

    ENCRYPTION_KEY: str = Field(
        ...,
        description="Base64-encoded 32-byte key used to encrypt stored refresh tokens",
    )

    # =========================================================================
    # Storage Configuration
    # =========================================================================

    STORAGE_BACKEND: Literal["memory", "postgres"] = Field(
        default="postgres",
        description="Storage implementation selected at startup",
    )

    DATABASE_URL: Optional[str] = Field(
        None,
        description="PostgreSQL DSN (required when STORAGE_BACKEND=postgres)",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the server",
    )

    PORT: int = Field(
        default=3000,
        description="Port to bind the server",
        ge=1,
        le=65535,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def discord_api_base(self) -> str:
        """Discord API base URL without trailing slash."""
        return self.DISCORD_API_BASE_URL.rstrip("/")

    @property
    def reconciliation_enabled(self) -> bool:
        """Entitlement reconciliation only runs when a premium SKU is configured."""
        return self.DISCORD_PREMIUM_SKU_ID is not None

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("ENCRYPTION_KEY")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """
        Validate that ENCRYPTION_KEY decodes to exactly 32 bytes.

        Raises:
            ValueError: If the key is not valid base64 or has the wrong length
        """
        try:
            raw = base64.b64decode(v.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("ENCRYPTION_KEY must be base64-encoded")

        if len(raw) != 32:
            raise ValueError(
                f"ENCRYPTION_KEY must decode to 32 bytes, got {len(raw)}"
            )

        return v.strip()

    @field_validator("DISCORD_PREMIUM_SKU_ID", mode="before")
    @classmethod
    def empty_sku_is_unset(cls, v):
        """Treat an empty DISCORD_PREMIUM_SKU_ID as not configured."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return level

    @model_validator(mode="after")
    def require_database_url(self) -> "Settings":
        if self.STORAGE_BACKEND == "postgres" and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required when STORAGE_BACKEND=postgres")
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Validate configuration settings and return a status report.

    Called during application startup to surface configuration that is
    accepted by the model but probably not what the operator intended.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if settings.JWT_SECRET == settings.DISCORD_CLIENT_SECRET:
        errors.append("JWT_SECRET must not reuse DISCORD_CLIENT_SECRET")

    if not settings.reconciliation_enabled:
        warnings.append(
            "DISCORD_PREMIUM_SKU_ID is not set; entitlement reconciliation is disabled"
        )

    if settings.STORAGE_BACKEND == "memory":
        warnings.append("STORAGE_BACKEND=memory keeps users only for the process lifetime")

    if not settings.DISCORD_REDIRECT_URI.startswith("https://"):
        warnings.append("DISCORD_REDIRECT_URI is not an https URL")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "storage_backend": settings.STORAGE_BACKEND,
        "jwt_expiry_minutes": settings.SESSION_JWT_EXPIRY_MINUTES,
    }
