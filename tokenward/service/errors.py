from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from tokenward.storage.errors import StoreUnavailable


class ServiceError(Exception):
    """Base class for token service exceptions.

    Each class carries an HTTP-style ``status_code`` and a stable ``error_code``
    so a transport layer can map it without inspecting the message. Security
    failures override ``public_message`` so callers never learn which check
    rejected the token.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def client_message(self) -> str:
        """Message that is safe to return to the token holder."""
        return self.public_message or self.message


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token could not be decoded, was tampered with, or has expired."""
    error_code = "invalid_token"


class WrongTokenTypeError(AuthenticationError):
    error_code = "wrong_token_type"


class TokenNotFoundError(AuthenticationError):
    error_code = "token_not_found"


class SecurityError(AuthenticationError):
    """Rejections that are logged and audited but reported generically."""
    public_message = "invalid refresh token"


class TokenReusedError(SecurityError):
    """A refresh token was presented after it had already been redeemed."""
    error_code = "token_reused"


class FamilyRevokedError(SecurityError):
    error_code = "family_revoked"


class TokenRevokedError(SecurityError):
    error_code = "token_revoked"


class DeviceMismatchError(SecurityError):
    error_code = "device_mismatch"


class UserNotFoundError(AuthenticationError):
    error_code = "user_not_found"
    public_message = "authentication failed"


class IssuanceFailedError(ServiceError):
    """Signing a token pair failed (500)."""
    status_code = 500
    error_code = "issuance_failed"
    public_message = "authentication failed"


class UnavailableError(ServiceError):
    """A dependency timed out or could not be reached (503)."""
    status_code = 503
    error_code = "unavailable"
    retryable = True
    public_message = "service temporarily unavailable"


@contextlib.contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Surface storage-layer outages as retryable service errors."""
    try:
        yield
    except StoreUnavailable as exc:
        raise UnavailableError(
            "token store unavailable", detail={"operation": operation}
        ) from exc


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "WrongTokenTypeError",
    "TokenNotFoundError",
    "SecurityError",
    "TokenReusedError",
    "FamilyRevokedError",
    "TokenRevokedError",
    "DeviceMismatchError",
    "UserNotFoundError",
    "IssuanceFailedError",
    "UnavailableError",
    "translate_store_errors",
]
