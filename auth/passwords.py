"""
auth/passwords.py -- One-way, salted password hashing.

Security design decisions:
  argon2id (argon2-cffi) for every new record. It is memory-hard, so GPU and
       ASIC brute force is expensive, and each hash() call draws a fresh
       random salt that is embedded in the PHC-format output record together
       with the cost parameters.

  bcrypt records ($2a$/$2b$/$2y$) are still verified so accounts hashed
       before the switch keep working. needs_rehash() reports them (and
       argon2 records with outdated parameters) and AuthService.sign_in()
       upgrades them after a successful login.

  verify() never raises. A malformed, truncated or unknown record is simply
       a non-match; callers cannot learn anything about the stored value from
       an exception. Digest comparison is constant-time inside both libraries.

  dummy_verify() runs a full verification against a record computed once at
       construction, so sign-in for an unknown email costs the same as a wrong
       password and response time does not reveal whether an account exists.

The minimum-length policy lives in AuthService, not here -- the hasher
accepts any string.
"""

from __future__ import annotations

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class PasswordHasher:
    """argon2id hasher with bcrypt read compatibility.

    Cost parameters default to argon2-cffi's RFC 9106 low-memory profile;
    tests pass tiny values to keep the suite fast.
    """

    def __init__(self, time_cost: int = 3, memory_cost: int = 64 * 1024, parallelism: int = 4) -> None:
        self._argon2 = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_record = self.hash("latchkey_timing_dummy")

    @classmethod
    def from_settings(cls, settings) -> PasswordHasher:
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        """Return an argon2id PHC record with a fresh random salt."""
        return self._argon2.hash(plaintext)

    def verify(self, plaintext: str, record: str | None) -> bool:
        """Return True if plaintext matches record. Never raises."""
        if not record:
            return False
        if record.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(plaintext.encode("utf-8"), record.encode("utf-8"))
            except ValueError:
                return False
        try:
            return self._argon2.verify(record, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, record: str) -> bool:
        """True for legacy bcrypt records and argon2 records with old parameters."""
        if record.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._argon2.check_needs_rehash(record)
        except (InvalidHashError, ValueError):
            return True

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification's worth of work. Result is discarded."""
        self.verify(plaintext, self._dummy_record)
