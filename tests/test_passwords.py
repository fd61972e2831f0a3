"""Unit tests for auth/passwords.py -- argon2id hashing and legacy bcrypt reads.

Covers:
- hash() salts every call and produces argon2id PHC records
- verify() matches the right password and rejects the wrong one
- verify() returns False (never raises) for malformed or empty records
- bcrypt records verify and are flagged for rehash
- argon2 records with weaker parameters are flagged for rehash
"""

import bcrypt
import pytest

from auth.passwords import PasswordHasher


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


def test_hash_is_salted_argon2id(fast_hasher):
    first = fast_hasher.hash("secret1")
    second = fast_hasher.hash("secret1")
    assert first.startswith("$argon2id$")
    assert first != second, "each hash() must draw a fresh salt"


def test_verify_round(fast_hasher):
    record = fast_hasher.hash("secret1")
    assert fast_hasher.verify("secret1", record) is True
    assert fast_hasher.verify("secret2", record) is False


@pytest.mark.parametrize(
    "record",
    ["", None, "not-a-hash", "$argon2id$v=19$m=1024,t=1,p=1$broken", "$2b$12$tooShort"],
)
def test_verify_malformed_record_is_false(fast_hasher, record):
    assert fast_hasher.verify("secret1", record) is False


def test_legacy_bcrypt_record_verifies_and_needs_rehash(fast_hasher):
    legacy = bcrypt.hashpw(b"secret1", bcrypt.gensalt(rounds=4)).decode()
    assert fast_hasher.verify("secret1", legacy) is True
    assert fast_hasher.verify("wrong-pw", legacy) is False
    assert fast_hasher.needs_rehash(legacy) is True


def test_current_record_does_not_need_rehash(fast_hasher):
    assert fast_hasher.needs_rehash(fast_hasher.hash("secret1")) is False


def test_weaker_parameters_need_rehash(fast_hasher):
    stronger = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)
    assert stronger.needs_rehash(fast_hasher.hash("secret1")) is True


def test_dummy_verify_returns_nothing(fast_hasher):
    assert fast_hasher.dummy_verify("anything") is None
