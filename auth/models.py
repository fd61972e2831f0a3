"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, managers, and routes do the work.

Timestamps are timezone-aware UTC datetimes. Token fields hold the RAW token
only on objects freshly returned by issue(); rows read back from storage
carry token=None because only HMAC digests are persisted.

Layer rule: no imports from api/, core/, or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime


@dataclass
class User:
    """An identity with a local email/password credential.

    email is always the normalized form (trimmed, lowercased).
    password_hash stays inside the store/hasher boundary: AuthService hands
    callers the result of public(), which blanks it.
    """

    id: str
    name: str
    email: str
    created_at: datetime
    password_hash: str | None = None
    updated_at: datetime | None = None

    def public(self) -> User:
        return replace(self, password_hash=None)


@dataclass
class Session:
    """A server-side session row plus (on issue) the bearer token for it."""

    user_id: str
    issued_at: datetime
    expires_at: datetime
    token: str | None = None  # signed bearer token, only present on issue
    revoked: bool = False

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class ResetToken:
    """A single-use password reset credential."""

    user_id: str
    issued_at: datetime
    expires_at: datetime
    token: str | None = None  # raw token, only present on issue
    consumed: bool = False


@dataclass
class AuthResult:
    """Outcome of a successful sign-up or sign-in."""

    user: User
    session: Session
