"""
auth/tokens.py -- Random token generation, token digests, and the signed
session envelope.

Security design decisions:
  Raw tokens: secrets.token_urlsafe(32) gives 256 bits of entropy, so
       guessing a live session id or reset token is computationally
       infeasible.

  Digests: only HMAC-SHA256(SECRET_KEY, raw_token) is persisted. An attacker
       who reads the database cannot replay tokens without also knowing
       SECRET_KEY. The digest is deterministic, which gives O(1) lookup
       through a UNIQUE index. bcrypt/argon2 slowness is unnecessary for
       high-entropy values.

  Session envelope: python-jose HS256 JWT carrying sub (user id), sid (the
       random session id), iat and exp. The signature lets the API reject
       forged or mangled tokens before touching the database; the sessions
       row remains the authority on revocation and expiry. decode_session()
       therefore skips jose's own exp check and leaves expiry to
       SessionManager, which uses an injectable clock.

Layer rule: no imports from api/, core/, or notify/. Callers pass the secret
key in explicitly.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime

from jose import JWTError, jwt

_ALGORITHM = "HS256"


def generate_token() -> str:
    """Return a URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def digest_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def encode_session(user_id: str, sid: str, issued_at: datetime, expires_at: datetime, secret_key: str) -> str:
    """Sign the bearer token handed to clients for a session."""
    payload = {
        "sub": user_id,
        "sid": sid,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_session(token: str, secret_key: str) -> dict | None:
    """Verify the signature and shape of a session token.

    Returns the payload dict, or None for anything that is not a well-formed
    token signed with secret_key. Expiry is not checked here.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM], options={"verify_exp": False})
    except JWTError:
        return None
    if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("sid"), str):
        return None
    return payload


def set_auth_cookie(response, token: str, max_age: int, secure: bool) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the session TTL so cookie and session expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )
