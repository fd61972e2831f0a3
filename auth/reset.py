"""
auth/reset.py -- Single-use, time-bounded password reset tokens.

Invariants:
  - At most one outstanding token per user. issue() deletes the user's
    unconsumed tokens and inserts the new one in a single transaction; the
    UNIQUE live_user_id column backs this up when two issue() calls race.
    A superseded link therefore redeems as InvalidTokenError.
  - A token is consumed exactly once, in the same transaction that stores the
    new password hash and revokes every session of the user. The claim is a
    conditional UPDATE (consumed = 0 AND expires_at > now); whichever caller
    flips the row wins, every other concurrent redeem() sees zero rows and
    is reported as AlreadyConsumedError. Any failure after the claim rolls
    the whole transaction back, so a password is never changed while the
    token stays redeemable (and vice versa).
  - The new password is hashed BEFORE the transaction opens, so no database
    lock is held across the slow argon2 step.

Layer rule: no imports from api/, core/, or notify/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import AlreadyConsumedError, ExpiredTokenError, InvalidTokenError, TransientStorageError
from auth.models import ResetToken
from auth.passwords import PasswordHasher
from auth.sessions import SessionManager
from auth.store import CredentialStore, from_db_time, reset_tokens, storage_errors, to_db_time, utcnow
from auth.tokens import digest_token, generate_token

logger = logging.getLogger("latchkey.auth.reset")

# issue() retries when a concurrent issue() for the same user holds the
# live_user_id slot at insert time.
_ISSUE_ATTEMPTS = 3


class ResetTokenManager:
    def __init__(
        self,
        engine: Engine,
        credentials: CredentialStore,
        hasher: PasswordHasher,
        sessions: SessionManager,
        secret_key: str,
        ttl_seconds: int,
        clock=utcnow,
    ) -> None:
        self.engine = engine
        self._credentials = credentials
        self._hasher = hasher
        self._sessions = sessions
        self._secret_key = secret_key
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self, user_id: str) -> ResetToken:
        """Create a new reset token for user_id, invalidating any outstanding one."""
        raw = generate_token()
        issued_at = self._clock()
        expires_at = issued_at + self.ttl
        for attempt in range(1, _ISSUE_ATTEMPTS + 1):
            try:
                with storage_errors("reset_issue"), self.engine.begin() as conn:
                    conn.execute(
                        reset_tokens.delete().where(
                            (reset_tokens.c.user_id == user_id) & (reset_tokens.c.consumed == 0)
                        )
                    )
                    conn.execute(
                        reset_tokens.insert().values(
                            token_digest=digest_token(raw, self._secret_key),
                            user_id=user_id,
                            live_user_id=user_id,
                            issued_at=to_db_time(issued_at),
                            expires_at=to_db_time(expires_at),
                            consumed=0,
                        )
                    )
                break
            except IntegrityError as exc:
                if attempt == _ISSUE_ATTEMPTS:
                    raise TransientStorageError(reason="reset_issue: live token contention") from exc
                logger.info("Reset token issue raced for user %s, retrying (%d)", user_id, attempt)
        return ResetToken(user_id=user_id, issued_at=issued_at, expires_at=expires_at, token=raw)

    def redeem(self, token: str, new_password: str) -> str:
        """Consume token and set the user's password to new_password.

        Returns the user id. Raises InvalidTokenError, ExpiredTokenError or
        AlreadyConsumedError; on any of these nothing has changed.
        """
        digest = digest_token(token, self._secret_key)
        row = self._lookup(digest)
        self._check_redeemable(row)

        new_hash = self._hasher.hash(new_password)
        now = self._clock()
        with storage_errors("reset_redeem"), self.engine.begin() as conn:
            claimed = conn.execute(
                reset_tokens.update()
                .where(
                    (reset_tokens.c.token_digest == digest)
                    & (reset_tokens.c.consumed == 0)
                    & (reset_tokens.c.expires_at > to_db_time(now))
                )
                .values(consumed=1, consumed_at=to_db_time(now), live_user_id=None)
            ).rowcount
            if claimed:
                self._credentials.update_password_hash(row.user_id, new_hash, conn=conn)
                revoked = self._sessions.revoke_all(row.user_id, conn=conn)

        if not claimed:
            # Lost a race between the read above and the claim. Report the
            # state the winner left behind.
            self._check_redeemable(self._lookup(digest))
            raise AlreadyConsumedError()

        logger.info("Password reset for user %s; %d sessions revoked", row.user_id, revoked)
        return row.user_id

    def purge_expired(self) -> int:
        """Delete tokens past their expiry. Returns rows removed."""
        with storage_errors("reset_purge"), self.engine.begin() as conn:
            result = conn.execute(reset_tokens.delete().where(reset_tokens.c.expires_at <= to_db_time(self._clock())))
        if result.rowcount:
            logger.info("Purged %d expired reset tokens", result.rowcount)
        return result.rowcount

    def _lookup(self, digest: str):
        with storage_errors("reset_lookup"), self.engine.connect() as conn:
            return conn.execute(reset_tokens.select().where(reset_tokens.c.token_digest == digest)).fetchone()

    def _check_redeemable(self, row) -> None:
        if row is None:
            raise InvalidTokenError("The reset link is invalid.")
        if row.consumed:
            raise AlreadyConsumedError()
        if self._clock() >= from_db_time(row.expires_at):
            raise ExpiredTokenError("The reset link has expired.")
