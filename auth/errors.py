"""
auth/errors.py -- Typed failures raised by the authentication core.

Every failure carries a stable machine-readable ``kind`` (used as the API
error code) and a human-readable ``message`` that is safe to show to an end
user. ``reason`` is for audit logging only and is never sent to clients --
InvalidCredentialsError in particular always presents the same message
whether the email was unknown or the password was wrong.

Layer rule: no imports from api/, core/, or notify/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all typed authentication failures."""

    kind: str = "auth_error"
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        self.message = message or self.default_message
        self.reason = reason
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class DuplicateEmailError(AuthError):
    kind = "duplicate_email"
    default_message = "An account with that email already exists."


class InvalidCredentialsError(AuthError):
    kind = "invalid_credentials"
    default_message = "Invalid email or password."


class InvalidTokenError(AuthError):
    kind = "invalid_token"
    default_message = "The token is invalid."


class ExpiredTokenError(AuthError):
    kind = "expired_token"
    default_message = "The token has expired."


class RevokedTokenError(AuthError):
    kind = "revoked_token"
    default_message = "The session has been revoked."


class AlreadyConsumedError(AuthError):
    kind = "already_consumed"
    default_message = "The reset link has already been used."


class InputValidationError(AuthError):
    """Malformed input shape, rejected before storage or hashing is touched."""

    kind = "validation_error"
    default_message = "Request validation failed."

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(AuthError):
    kind = "not_found"
    default_message = "Record not found."


class TransientStorageError(AuthError):
    """Storage I/O failure or timeout. Safe to retry."""

    kind = "transient_storage_error"
    default_message = "The service is temporarily unavailable. Please retry."


class NotificationUnavailableError(AuthError):
    """The email provider could not accept the message."""

    kind = "unavailable"
    default_message = "Email delivery is temporarily unavailable."
