"""
Error Types
===========

Every failure the service surfaces to a caller is an ``AuthServiceError``.
Each subclass carries the HTTP status it maps to, so the application's
exception handler can translate it without a lookup table.

    StorageError     -> 500  persistence layer failure
    ProviderError    -> 502  Discord call failed or returned malformed data
    AuthFailed       -> 401  signature / expiry / credential invalid
    EncryptionError  -> 500  vault failure, never leaks cryptographic detail
    UserNotFound     -> 404
    InvalidRequest   -> 400  malformed caller input
"""

from typing import Any, Dict, Optional

from fastapi import status


class AuthServiceError(Exception):
    """Base exception for the auth service."""

    code: str = "internal_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def public_message(self) -> str:
        """Message that is safe to return to the caller."""
        return self.message


class StorageError(AuthServiceError):
    """Persistence layer failure."""

    code = "storage_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"storage error: {message}", details)


class ProviderError(AuthServiceError):
    """Discord API request failed or returned a malformed body."""

    code = "provider_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.provider_status = provider_status
        super().__init__(f"discord API error: {message}", details)


class AuthFailed(AuthServiceError):
    """Credential, signature or expiry check failed."""

    code = "auth_failed"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"authentication failed: {message}", details)


class EncryptionError(AuthServiceError):
    """Vault operation failed."""

    code = "encryption_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "encryption error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)

    @property
    def public_message(self) -> str:
        return "encryption error"


class UserNotFound(AuthServiceError):
    """No user record for the given id."""

    code = "user_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"user not found: {user_id}", {"user_id": user_id})


class InvalidRequest(AuthServiceError):
    """Malformed caller input."""

    code = "invalid_request"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"invalid request: {message}", details)


__all__ = [
    "AuthServiceError",
    "StorageError",
    "ProviderError",
    "AuthFailed",
    "EncryptionError",
    "UserNotFound",
    "InvalidRequest",
]
