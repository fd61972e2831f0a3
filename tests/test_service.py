"""Unit tests for auth/service.py -- the AuthService orchestrator.

Covers:
- sign-up: session valid immediately, duplicate normalized email, input checks
- sign-in: one InvalidCredentialsError for unknown email and wrong password
- forgot-password: token + one email for known accounts, silence otherwise,
  delivery failures swallowed, deferred delivery, redirect URL rules
- reset-password: full end-to-end scenario, session revocation, input checks
- sign-out / authenticate, legacy hash upgrade on sign-in
- a reset committed while a sign-in is in flight wins over that sign-in
"""

import bcrypt
import pytest
from conftest import RecordingNotifier, extract_token, make_settings
from sqlalchemy import func, select

from auth.errors import (
    AlreadyConsumedError,
    DuplicateEmailError,
    InputValidationError,
    InvalidCredentialsError,
    InvalidTokenError,
    RevokedTokenError,
)
from auth.service import AuthService, build_reset_url
from auth.store import sessions

RESET_PAGE = "https://app.example.com/reset-password"


# ---------------------------------------------------------------------------
# Sign-up
# ---------------------------------------------------------------------------


class TestSignUp:
    def test_session_valid_immediately(self, service):
        result = service.sign_up("Jane", "Jane@x.com", "secret1")
        assert service.sessions.validate(result.session.token) == result.user.id
        assert result.user.email == "jane@x.com"
        assert result.user.password_hash is None, "password hash must not leave the core"

    def test_duplicate_normalized_email(self, service):
        service.sign_up("Foo", "Foo@Example.com", "secret1")
        with pytest.raises(DuplicateEmailError):
            service.sign_up("Foo", "foo@example.com", "secret1")

    def test_confirm_password_must_match(self, service):
        with pytest.raises(InputValidationError) as excinfo:
            service.sign_up("Jane", "jane@x.com", "secret1", confirm_password="secret9")
        assert excinfo.value.field == "confirm_password"

    def test_matching_confirm_password_accepted(self, service):
        service.sign_up("Jane", "jane@x.com", "secret1", confirm_password="secret1")

    @pytest.mark.parametrize(
        "name,email,password,field",
        [
            ("Jane", "jane@x.com", "short", "password"),
            ("Jo", "jane@x.com", "secret1", "name"),
            ("Jane", "not-an-email", "secret1", "email"),
            ("Jane", "jane@localhost", "secret1", "email"),
            ("Jane", "jane@x.com", "p" * 1025, "password"),
        ],
    )
    def test_shape_errors_fail_fast(self, service, monkeypatch, name, email, password, field):
        # Neither the hasher nor the store may be reached.
        monkeypatch.setattr(service.hasher, "hash", _forbidden)
        monkeypatch.setattr(service.credentials, "create_user", _forbidden)
        with pytest.raises(InputValidationError) as excinfo:
            service.sign_up(name, email, password)
        assert excinfo.value.field == field

    def test_min_password_length_configurable(self, engine, hasher, clock):
        strict = AuthService.build(
            make_settings(min_password_length=10),
            notifier=RecordingNotifier(),
            engine=engine,
            hasher=hasher,
            clock=clock,
        )
        with pytest.raises(InputValidationError):
            strict.sign_up("Jane", "jane@x.com", "secret123")


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


class TestSignIn:
    def test_case_insensitive_email(self, service):
        service.sign_up("Jane", "Jane@x.com", "secret1")
        result = service.sign_in("jane@x.com", "secret1")
        assert service.sessions.validate(result.session.token) == result.user.id

    def test_enumeration_safe_errors(self, service):
        service.sign_up("Jane", "jane@x.com", "secret1")

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            service.sign_in("jane@x.com", "not-it")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            service.sign_in("ghost@x.com", "secret1")

        assert type(wrong_password.value) is type(unknown_email.value)
        assert wrong_password.value.to_dict() == unknown_email.value.to_dict()
        # Still distinguishable for audit logging.
        assert wrong_password.value.reason != unknown_email.value.reason

    def test_unknown_email_still_runs_hasher(self, service, monkeypatch):
        calls = []
        monkeypatch.setattr(service.hasher, "dummy_verify", lambda pw: calls.append(pw))
        with pytest.raises(InvalidCredentialsError):
            service.sign_in("ghost@x.com", "secret1")
        assert calls == ["secret1"]

    def test_empty_password_is_validation_error(self, service):
        with pytest.raises(InputValidationError):
            service.sign_in("jane@x.com", "")

    def test_legacy_bcrypt_hash_upgraded(self, service):
        legacy = bcrypt.hashpw(b"secret1", bcrypt.gensalt(rounds=4)).decode()
        user = service.credentials.create_user("Jane", "jane@x.com", legacy)

        service.sign_in("jane@x.com", "secret1")

        upgraded = service.credentials.get_by_id(user.id).password_hash
        assert upgraded.startswith("$argon2id$")
        assert service.hasher.verify("secret1", upgraded)

    def test_reset_committed_mid_sign_in_wins(self, service, engine, monkeypatch):
        """A reset landing between password check and session issue rejects the sign-in."""
        user = service.sign_up("Jane", "jane@x.com", "secret1").user
        reset = service.reset_tokens.issue(user.id)
        _reset_after_verify(service, monkeypatch, reset.token, "secret2")

        with pytest.raises(InvalidCredentialsError) as excinfo:
            service.sign_in("jane@x.com", "secret1")
        assert excinfo.value.to_dict() == InvalidCredentialsError().to_dict()

        assert _active_sessions(engine, user.id) == 0
        service.sign_in("jane@x.com", "secret2")

    def test_hash_upgrade_never_overwrites_a_reset(self, service, monkeypatch):
        legacy = bcrypt.hashpw(b"secret1", bcrypt.gensalt(rounds=4)).decode()
        user = service.credentials.create_user("Jane", "jane@x.com", legacy)
        reset = service.reset_tokens.issue(user.id)
        _reset_after_verify(service, monkeypatch, reset.token, "secret2")

        with pytest.raises(InvalidCredentialsError):
            service.sign_in("jane@x.com", "secret1")

        record = service.credentials.get_by_id(user.id).password_hash
        assert service.hasher.verify("secret2", record)
        assert not service.hasher.verify("secret1", record)


# ---------------------------------------------------------------------------
# Forgot password
# ---------------------------------------------------------------------------


class TestForgotPassword:
    def test_known_email_sends_one_link(self, service, notifier):
        service.sign_up("Jane", "jane@x.com", "secret1")
        service.forgot_password("JANE@x.com", RESET_PAGE)

        assert len(notifier.sent) == 1
        to_email, subject, body = notifier.sent[0]
        assert to_email == "jane@x.com"
        assert subject == service.settings.reset_email_subject
        assert f"{RESET_PAGE}?token=" in body
        assert extract_token(body)

    def test_unknown_email_reports_success_without_sending(self, service, notifier):
        assert service.forgot_password("ghost@x.com", RESET_PAGE) is None
        assert notifier.sent == []

    def test_delivery_failure_does_not_fail_request(self, service, notifier):
        service.sign_up("Jane", "jane@x.com", "secret1")
        notifier.fail = True
        service.forgot_password("jane@x.com", RESET_PAGE)
        assert notifier.sent == []

    def test_defer_schedules_delivery(self, service, notifier):
        service.sign_up("Jane", "jane@x.com", "secret1")
        scheduled = []
        service.forgot_password("jane@x.com", RESET_PAGE, defer=lambda fn, *args: scheduled.append((fn, args)))

        assert notifier.sent == [], "nothing is sent until the scheduler runs the task"
        fn, args = scheduled[0]
        fn(*args)
        assert len(notifier.sent) == 1

    @pytest.mark.parametrize(
        "url",
        ["ftp://app.example.com/reset", "/reset-password", "https://app.example.com/reset#frag", ""],
    )
    def test_bad_redirect_rejected(self, service, url):
        with pytest.raises(InputValidationError):
            service.forgot_password("jane@x.com", url)

    def test_redirect_origin_allowlist(self, engine, hasher, clock):
        notifier = RecordingNotifier()
        locked = AuthService.build(
            make_settings(reset_redirect_allowed_origins=["https://app.example.com/"]),
            notifier=notifier,
            engine=engine,
            hasher=hasher,
            clock=clock,
        )
        locked.sign_up("Jane", "jane@x.com", "secret1")
        with pytest.raises(InputValidationError):
            locked.forgot_password("jane@x.com", "https://evil.example.net/reset")
        locked.forgot_password("jane@x.com", RESET_PAGE)
        assert len(notifier.sent) == 1


def test_build_reset_url():
    assert build_reset_url("https://a.io/reset", "abc") == "https://a.io/reset?token=abc"
    assert build_reset_url("https://a.io/reset?lang=en", "abc") == "https://a.io/reset?lang=en&token=abc"


# ---------------------------------------------------------------------------
# Reset password, sign-out, authenticate
# ---------------------------------------------------------------------------


class TestResetPassword:
    def test_full_recovery_scenario(self, service, notifier):
        s1 = service.sign_up("Jane", "Jane@x.com", "secret1").session
        assert service.authenticate(s1.token).email == "jane@x.com"

        s2 = service.sign_in("jane@x.com", "secret1").session
        assert service.authenticate(s2.token).name == "Jane"

        service.forgot_password("jane@x.com", RESET_PAGE)
        assert len(notifier.sent) == 1
        token = extract_token(notifier.sent[0][2])

        service.reset_password(token, "secret2")

        for session in (s1, s2):
            with pytest.raises(RevokedTokenError):
                service.sessions.validate(session.token)
        with pytest.raises(InvalidCredentialsError):
            service.sign_in("jane@x.com", "secret1")
        s3 = service.sign_in("jane@x.com", "secret2").session
        assert service.authenticate(s3.token).email == "jane@x.com"

    def test_token_single_use(self, service, notifier):
        service.sign_up("Jane", "jane@x.com", "secret1")
        service.forgot_password("jane@x.com", RESET_PAGE)
        token = extract_token(notifier.sent[0][2])

        service.reset_password(token, "secret2")
        with pytest.raises(AlreadyConsumedError):
            service.reset_password(token, "secret3")
        service.sign_in("jane@x.com", "secret2")

    def test_superseded_link_rejected(self, service, notifier):
        service.sign_up("Jane", "jane@x.com", "secret1")
        service.forgot_password("jane@x.com", RESET_PAGE)
        service.forgot_password("jane@x.com", RESET_PAGE)
        first, second = (extract_token(body) for _, _, body in notifier.sent)

        with pytest.raises(InvalidTokenError):
            service.reset_password(first, "secret2")
        service.reset_password(second, "secret2")

    def test_weak_new_password_rejected_before_redeem(self, service, notifier, monkeypatch):
        monkeypatch.setattr(service.reset_tokens, "redeem", _forbidden)
        with pytest.raises(InputValidationError) as excinfo:
            service.reset_password("some-token", "abc")
        assert excinfo.value.field == "new_password"

    def test_blank_token_rejected(self, service):
        with pytest.raises(InputValidationError):
            service.reset_password("   ", "secret2")


def test_sign_out_revokes_only_that_session(service):
    first = service.sign_up("Jane", "jane@x.com", "secret1").session
    second = service.sign_in("jane@x.com", "secret1").session

    assert service.sign_out(first.token) is True
    with pytest.raises(RevokedTokenError):
        service.authenticate(first.token)
    assert service.authenticate(second.token).email == "jane@x.com"


def test_authenticate_returns_public_user(service):
    session = service.sign_up("Jane", "jane@x.com", "secret1").session
    user = service.authenticate(session.token)
    assert user.password_hash is None


def _forbidden(*args, **kwargs):
    raise AssertionError("must not be called for malformed input")


def _reset_after_verify(service, monkeypatch, token: str, new_password: str) -> None:
    """Make the next password check redeem token right after it succeeds."""
    original = service.hasher.verify

    def verify_then_reset(plaintext, record):
        matched = original(plaintext, record)
        monkeypatch.setattr(service.hasher, "verify", original)
        service.reset_tokens.redeem(token, new_password)
        return matched

    monkeypatch.setattr(service.hasher, "verify", verify_then_reset)


def _active_sessions(engine, user_id: str) -> int:
    with engine.connect() as conn:
        return conn.execute(
            select(func.count())
            .select_from(sessions)
            .where((sessions.c.user_id == user_id) & (sessions.c.revoked == 0))
        ).scalar()
