"""
auth/service.py -- AuthService, the orchestrator behind every auth request.

AuthService composes the credential store, password hasher, session manager,
reset token manager and notifier into the four public flows (sign-up,
sign-in, forgot-password, reset-password) plus sign-out and session lookup.

Error policy:
  Input shape (email format, password length, name, confirmation) is
  checked first and raises InputValidationError without touching storage
  or the hasher.

  Sign-in raises one InvalidCredentialsError for both "unknown email" and
  "wrong password". The distinction is kept in the exception's reason and
  in the audit log line, never in the message. The hasher runs in both
  branches so timing does not leak which one happened.

  forgot_password() reports success for any well-formed email. Unknown
  addresses simply skip token issue and delivery. Delivery failures are
  logged, never raised -- the request succeeded once the token was stored.

Audit log lines identify accounts by user id or a short SHA-256 fingerprint
of the normalized email, never the address itself.

Layer rule: no imports from api/ or core/. notify/ is referenced only
through the Notifier protocol.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable
from urllib.parse import urlencode, urlparse

from sqlalchemy.engine import Engine

from auth.errors import (
    InputValidationError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    NotificationUnavailableError,
)
from auth.models import AuthResult, Session, User
from auth.passwords import PasswordHasher
from auth.reset import ResetTokenManager
from auth.sessions import SessionManager
from auth.store import CredentialStore, create_db_engine, normalize_email, storage_errors, transaction, utcnow
from notify.dispatcher import Notifier

logger = logging.getLogger("latchkey.auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s.]+$")
_MAX_EMAIL_LENGTH = 320
_MIN_NAME_LENGTH = 3
_MAX_NAME_LENGTH = 255
# argon2 has no input limit; this only stops multi-megabyte request bodies
# from being fed to the hasher.
_MAX_PASSWORD_LENGTH = 1024
_MAX_TOKEN_LENGTH = 2048


class AuthService:
    """Entry point for all authentication flows.

    Usage:
        service = AuthService.build(settings, notifier=ResendNotifier(...))
        result = service.sign_up("Jane", "Jane@x.com", "secret1")
        user = service.authenticate(result.session.token)
    """

    def __init__(
        self,
        settings,
        credentials: CredentialStore,
        hasher: PasswordHasher,
        sessions: SessionManager,
        reset_tokens: ResetTokenManager,
        notifier: Notifier,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.hasher = hasher
        self.sessions = sessions
        self.reset_tokens = reset_tokens
        self.notifier = notifier

    @classmethod
    def build(
        cls,
        settings,
        notifier: Notifier,
        engine: Engine | None = None,
        hasher: PasswordHasher | None = None,
        clock=utcnow,
    ) -> AuthService:
        """Wire every collaborator from one Settings object."""
        if engine is None:
            engine = create_db_engine(settings.database_url, timeout=settings.storage_timeout_seconds)
        hasher = hasher or PasswordHasher.from_settings(settings)
        credentials = CredentialStore(engine, clock=clock)
        sessions = SessionManager(engine, settings.secret_key, settings.session_ttl_seconds, clock=clock)
        reset_tokens = ResetTokenManager(
            engine,
            credentials,
            hasher,
            sessions,
            settings.secret_key,
            settings.reset_token_ttl_seconds,
            clock=clock,
        )
        return cls(settings, credentials, hasher, sessions, reset_tokens, notifier)

    # ------------------------------------------------------------------
    # Public flows
    # ------------------------------------------------------------------

    def sign_up(self, name: str, email: str, password: str, confirm_password: str | None = None) -> AuthResult:
        """Register a new account and sign it in.

        Raises InputValidationError or DuplicateEmailError.
        """
        name = self._check_name(name)
        email = self._check_email(email)
        self._check_password(password)
        if confirm_password is not None and confirm_password != password:
            raise InputValidationError("Passwords do not match.", field="confirm_password")

        user = self.credentials.create_user(name, email, self.hasher.hash(password))
        session = self.sessions.issue(user.id)
        logger.info("sign-up: created user %s", user.id)
        return AuthResult(user=user.public(), session=session)

    def sign_in(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password and start a session.

        Raises InputValidationError or InvalidCredentialsError.
        """
        email = self._check_email(email)
        if not isinstance(password, str) or not password or len(password) > _MAX_PASSWORD_LENGTH:
            raise InputValidationError("Password is required.", field="password")

        try:
            user = self.credentials.find_by_email(email)
        except NotFoundError:
            # Equalize timing -- do NOT return before running the hasher.
            self.hasher.dummy_verify(password)
            logger.info("sign-in rejected: unknown email (%s)", _fingerprint(email))
            raise InvalidCredentialsError(reason="unknown email") from None

        if not self.hasher.verify(password, user.password_hash):
            logger.info("sign-in rejected: wrong password for user %s", user.id)
            raise InvalidCredentialsError(reason="wrong password")

        session = self._start_session(user, password)
        logger.info("sign-in: user %s", user.id)
        return AuthResult(user=user.public(), session=session)

    def forgot_password(
        self,
        email: str,
        redirect_base_url: str,
        defer: Callable[..., None] | None = None,
    ) -> None:
        """Issue a reset token and email the recovery link, if the account exists.

        defer, when given, schedules delivery (e.g. BackgroundTasks.add_task)
        so the caller does not wait on the email provider. Without it the
        link is sent inline. Either way the caller sees the same outcome for
        known and unknown addresses.
        """
        email = self._check_email(email)
        base_url = self._check_redirect(redirect_base_url)

        try:
            user = self.credentials.find_by_email(email)
        except NotFoundError:
            logger.info("forgot-password: no account for %s, nothing sent", _fingerprint(email))
            return

        reset = self.reset_tokens.issue(user.id)
        link = build_reset_url(base_url, reset.token)
        minutes = int(self.reset_tokens.ttl.total_seconds() // 60)
        body = (
            f"Hi {user.name},\n\n"
            f"Click the link to reset your password: {link}\n\n"
            f"The link expires in {minutes} minutes and can be used once. "
            "If you did not ask for a password reset, you can ignore this email."
        )
        logger.info("forgot-password: reset token issued for user %s", user.id)
        if defer is not None:
            defer(self._deliver, user.email, self.settings.reset_email_subject, body)
        else:
            self._deliver(user.email, self.settings.reset_email_subject, body)

    def reset_password(self, token: str, new_password: str) -> None:
        """Redeem a reset token, set the new password and revoke all sessions.

        Raises InputValidationError, InvalidTokenError, ExpiredTokenError or
        AlreadyConsumedError.
        """
        if not isinstance(token, str) or not token.strip() or len(token) > _MAX_TOKEN_LENGTH:
            raise InputValidationError("A reset token is required.", field="token")
        self._check_password(new_password, field="new_password")
        self.reset_tokens.redeem(token.strip(), new_password)

    def sign_out(self, token: str) -> bool:
        """Revoke the session behind token. Returns False if there was none."""
        return self.sessions.revoke(token)

    def authenticate(self, token: str) -> User:
        """Return the user behind an active session token.

        Raises InvalidTokenError, ExpiredTokenError or RevokedTokenError.
        """
        user_id = self.sessions.validate(token)
        try:
            user = self.credentials.get_by_id(user_id)
        except NotFoundError:
            raise InvalidTokenError("The session is invalid.") from None
        return user.public()

    def purge_expired(self) -> tuple[int, int]:
        """Delete dead session and reset token rows. Returns (sessions, reset_tokens)."""
        return self.sessions.purge_expired(), self.reset_tokens.purge_expired()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deliver(self, to_email: str, subject: str, body: str) -> None:
        try:
            self.notifier.send(to_email, subject, body)
        except NotificationUnavailableError as exc:
            logger.warning("forgot-password: delivery failed (%s)", exc.reason or exc.message)

    def _start_session(self, user: User, password: str) -> Session:
        """Issue a session for a just-verified password, upgrading the hash if due.

        The stored hash is re-read under a row lock in the same transaction as
        the session insert. If a password reset committed after verification,
        the hash no longer matches and the sign-in is rejected, so no session
        outlives the reset's revoke_all. The upgrade hash is computed before
        the transaction opens.
        """
        new_hash = self.hasher.hash(password) if self.hasher.needs_rehash(user.password_hash) else None
        with storage_errors("sign_in"), transaction(self.credentials.engine) as conn:
            if self.credentials.locked_password_hash(user.id, conn) != user.password_hash:
                logger.info("sign-in rejected: password changed during sign-in for user %s", user.id)
                raise InvalidCredentialsError(reason="password changed")
            if new_hash is not None:
                self.credentials.update_password_hash(user.id, new_hash, conn=conn)
                logger.info("sign-in: upgraded password hash for user %s", user.id)
            return self.sessions.issue(user.id, conn=conn)

    def _check_email(self, email: str) -> str:
        if not isinstance(email, str):
            raise InputValidationError("Invalid email address.", field="email")
        normalized = normalize_email(email)
        if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
            raise InputValidationError("Invalid email address.", field="email")
        return normalized

    def _check_name(self, name: str) -> str:
        if not isinstance(name, str) or len(name.strip()) < _MIN_NAME_LENGTH:
            raise InputValidationError(
                f"Name must be at least {_MIN_NAME_LENGTH} characters long.",
                field="name",
            )
        if len(name.strip()) > _MAX_NAME_LENGTH:
            raise InputValidationError(f"Name must be at most {_MAX_NAME_LENGTH} characters long.", field="name")
        return name.strip()

    def _check_password(self, password: str, field: str = "password") -> None:
        minimum = self.settings.min_password_length
        if not isinstance(password, str) or len(password) < minimum:
            raise InputValidationError(f"Password must be at least {minimum} characters long.", field=field)
        if len(password) > _MAX_PASSWORD_LENGTH:
            raise InputValidationError(
                f"Password must be at most {_MAX_PASSWORD_LENGTH} characters long.",
                field=field,
            )

    def _check_redirect(self, redirect_base_url: str) -> str:
        """Accept only absolute http(s) URLs, optionally from allowed origins."""
        if not isinstance(redirect_base_url, str):
            raise InputValidationError("Invalid redirect URL.", field="redirect_base_url")
        url = redirect_base_url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc or parsed.fragment:
            raise InputValidationError("Invalid redirect URL.", field="redirect_base_url")
        allowed = self.settings.reset_redirect_allowed_origins
        if allowed and f"{parsed.scheme}://{parsed.netloc}".lower() not in {o.lower() for o in allowed}:
            raise InputValidationError("Redirect URL origin is not allowed.", field="redirect_base_url")
        return url


def build_reset_url(base_url: str, token: str) -> str:
    """Return {base_url}?token={token}, or &token= when base_url has a query."""
    sep = "&" if urlparse(base_url).query else "?"
    return f"{base_url}{sep}{urlencode({'token': token})}"


def _fingerprint(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:12]
