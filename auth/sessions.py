"""
auth/sessions.py -- Session issue, validation, and revocation.

State machine per session row:

    Active --(now >= expires_at)--> Expired   (checked lazily in validate())
    Active --(revoke / revoke_all)--> Revoked

Expired and Revoked are terminal. Nothing un-revokes a row or extends
expires_at. purge_expired() only deletes dead rows; validate() is correct
without it.

Layer rule: no imports from api/, core/, or notify/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.engine import Connection, Engine

from auth.errors import ExpiredTokenError, InvalidTokenError, RevokedTokenError
from auth.models import Session
from auth.store import from_db_time, sessions, storage_errors, to_db_time, transaction, utcnow
from auth.tokens import decode_session, digest_token, encode_session, generate_token

logger = logging.getLogger("latchkey.auth.sessions")


class SessionManager:
    """Issues and checks bearer sessions backed by the sessions table."""

    def __init__(self, engine: Engine, secret_key: str, ttl_seconds: int, clock=utcnow) -> None:
        self.engine = engine
        self._secret_key = secret_key
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self, user_id: str, conn: Connection | None = None) -> Session:
        """Create a new active session and return it with its bearer token.

        Pass conn to run inside an enclosing transaction (sign-in).
        """
        sid = generate_token()
        issued_at = self._clock()
        expires_at = issued_at + self.ttl
        with storage_errors("session_issue"), transaction(self.engine, conn) as tx:
            tx.execute(
                sessions.insert().values(
                    sid_digest=digest_token(sid, self._secret_key),
                    user_id=user_id,
                    issued_at=to_db_time(issued_at),
                    expires_at=to_db_time(expires_at),
                    revoked=0,
                )
            )
        token = encode_session(user_id, sid, issued_at, expires_at, self._secret_key)
        return Session(user_id=user_id, issued_at=issued_at, expires_at=expires_at, token=token)

    def validate(self, token: str) -> str:
        """Return the user id for an active session.

        Raises InvalidTokenError, ExpiredTokenError or RevokedTokenError.
        Revocation is reported before expiry so a logged-out session reads
        as revoked even after its TTL has run out.
        """
        row = self._lookup(token)
        if row is None:
            raise InvalidTokenError("The session is invalid.")
        if row.revoked:
            raise RevokedTokenError()
        if self._clock() >= from_db_time(row.expires_at):
            raise ExpiredTokenError("The session has expired.")
        return row.user_id

    def revoke(self, token: str) -> bool:
        """Revoke one session. Returns False if the token matches no session."""
        payload = decode_session(token, self._secret_key)
        if payload is None:
            return False
        with storage_errors("session_revoke"), self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where(
                    (sessions.c.sid_digest == digest_token(payload["sid"], self._secret_key))
                    & (sessions.c.revoked == 0)
                )
                .values(revoked=1, revoked_at=to_db_time(self._clock()))
            )
        return result.rowcount > 0

    def revoke_all(self, user_id: str, conn: Connection | None = None) -> int:
        """Revoke every active session for a user. Returns the number revoked.

        Pass conn to run inside an enclosing transaction (password reset).
        """
        with storage_errors("session_revoke_all"), transaction(self.engine, conn) as tx:
            result = tx.execute(
                sessions.update()
                .where((sessions.c.user_id == user_id) & (sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=to_db_time(self._clock()))
            )
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete sessions that can never validate again. Returns rows removed.

        Revoked rows are kept until their natural expiry so validate() keeps
        answering Revoked (not Invalid) for a logged-out token within its TTL.
        """
        with storage_errors("session_purge"), self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= to_db_time(self._clock())))
        if result.rowcount:
            logger.info("Purged %d expired sessions", result.rowcount)
        return result.rowcount

    def _lookup(self, token: str):
        payload = decode_session(token, self._secret_key)
        if payload is None:
            return None
        with storage_errors("session_validate"), self.engine.connect() as conn:
            row = conn.execute(
                sessions.select().where(sessions.c.sid_digest == digest_token(payload["sid"], self._secret_key))
            ).fetchone()
        # The signed subject must agree with the stored owner.
        if row is None or row.user_id != payload["sub"]:
            return None
        return row
