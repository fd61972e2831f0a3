"""
auth/store.py -- SQLAlchemy Core schema and credential persistence.

Pattern: Repository + Data Mapper. CredentialStore is the repository for
User records; _row_to_user is the mapper. SessionManager (auth/sessions.py)
and ResetTokenManager (auth/reset.py) share the same MetaData and engine so
a password reset can touch all three tables in one transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is a storage-level UNIQUE constraint on the normalized
  address. A concurrent insert of the same address surfaces as an
  IntegrityError, which create_user() turns into DuplicateEmailError.
  No application-level lock is involved.

  reset_tokens.live_user_id is set to the owning user_id only while the token
  is outstanding (NULL once consumed). Its UNIQUE constraint keeps at most one
  outstanding token per user. Both SQLite and PostgreSQL treat NULLs as
  distinct in UNIQUE constraints, so any number of spent tokens may coexist.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision, so lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/, core/, or notify/.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import DuplicateEmailError, NotFoundError, TransientStorageError
from auth.models import User

logger = logging.getLogger("latchkey.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("name", String(255), nullable=False),
    Column("email", String(320), nullable=False, unique=True),  # normalized
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sid_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", String(32), nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
)

reset_tokens = Table(
    "reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", String(32), nullable=False, index=True),
    Column("live_user_id", String(32), unique=True),  # NULL once consumed
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("consumed_at", String(32)),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and hand transaction control to SQLAlchemy.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. isolation_level=None stops pysqlite from
    emitting its own deferred BEGIN; _begin_immediate() emits BEGIN IMMEDIATE
    instead.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_immediate(conn) -> None:
    """Take the SQLite write lock at BEGIN.

    A deferred transaction that upgrades from reader to writer after another
    writer committed fails at once with SQLITE_BUSY, skipping the busy
    timeout. BEGIN IMMEDIATE waits for the lock up to the timeout and then
    sees the committed state, so the conditional UPDATE in a concurrent
    reset redemption loses cleanly instead of erroring.
    """
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def _driver_timeouts(db_url: str, timeout: float) -> tuple[dict, dict]:
    """Return (connect_args, engine kwargs) bounding waits for db_url's driver.

    SQLite: busy timeout for lock waits. Server databases: pool checkout
    timeout plus the driver's own connect and statement/read timeouts, so a
    hung server surfaces as an error instead of blocking the request thread.
    """
    url = make_url(db_url)
    backend, driver = url.get_backend_name(), url.get_driver_name()
    if backend == "sqlite":
        return {"check_same_thread": False, "timeout": timeout}, {}

    engine_kwargs = {"pool_timeout": timeout, "pool_pre_ping": True}
    seconds = max(1, math.ceil(timeout))
    connect_args: dict = {}
    if backend == "postgresql" and driver in ("psycopg2", "psycopg"):
        # libpq: connect_timeout in whole seconds, statement_timeout in ms.
        connect_args = {
            "connect_timeout": seconds,
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    elif backend == "postgresql" and driver == "pg8000":
        connect_args = {"timeout": seconds}
    elif backend in ("mysql", "mariadb") and driver in ("pymysql", "mysqldb"):
        connect_args = {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    else:
        logger.warning("No driver timeouts known for %s+%s; only pool checkout is bounded", backend, driver)
    return connect_args, engine_kwargs


def create_db_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create the shared engine and make sure all tables exist.

    timeout bounds how long a call may wait on the database (see
    _driver_timeouts). Exceeding it raises TransientStorageError in the
    callers.
    """
    connect_args, engine_kwargs = _driver_timeouts(db_url, timeout)
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if make_url(db_url).get_backend_name() == "sqlite":
        event.listen(engine, "connect", _set_sqlite_pragmas)
        event.listen(engine, "begin", _begin_immediate)
    with storage_errors("create_schema"):
        metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookup: trimmed and lowercased."""
    return email.strip().lower()


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver-level failures into TransientStorageError.

    IntegrityError passes through untouched -- it is a constraint signal the
    caller interprets (duplicate email, competing reset token), not an I/O
    failure.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, PoolTimeoutError) as exc:
        logger.warning("storage failure during %s: %s", operation, exc.__class__.__name__)
        raise TransientStorageError(reason=f"{operation}: {exc.__class__.__name__}") from exc


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield conn when the caller already holds a transaction, else open one.

    The opened transaction commits on normal exit and rolls back on any
    exception, including the caller abandoning the operation midway.
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User records and their password hashes.

    Usage:
        engine = create_db_engine("sqlite:///latchkey.db")
        store = CredentialStore(engine)
        user = store.create_user("Jane", "Jane@x.com", hasher.hash("secret1"))
        same = store.find_by_email("jane@x.com")
    """

    def __init__(self, engine: Engine, clock=utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def create_user(self, name: str, email: str, password_hash: str) -> User:
        """Insert a new user. Raises DuplicateEmailError if the normalized email exists."""
        now = self._clock()
        user = User(
            id=uuid.uuid4().hex,
            name=name.strip(),
            email=normalize_email(email),
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )
        try:
            with storage_errors("create_user"), self.engine.begin() as conn:
                conn.execute(
                    users.insert().values(
                        id=user.id,
                        name=user.name,
                        email=user.email,
                        password_hash=user.password_hash,
                        created_at=to_db_time(now),
                        updated_at=to_db_time(now),
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmailError(reason="email already registered") from exc
        return user

    def find_by_email(self, email: str) -> User:
        """Look up a user by normalized email. Raises NotFoundError."""
        with storage_errors("find_by_email"), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        if row is None:
            raise NotFoundError("User not found.")
        return _row_to_user(row)

    def get_by_id(self, user_id: str) -> User:
        """Look up a user by primary key. Raises NotFoundError."""
        with storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        if row is None:
            raise NotFoundError("User not found.")
        return _row_to_user(row)

    def update_password_hash(self, user_id: str, new_hash: str, conn: Connection | None = None) -> None:
        """Replace a user's password hash. Raises NotFoundError.

        Pass conn to join an enclosing transaction (password reset); the
        enclosing transaction then owns commit and rollback.
        """
        with storage_errors("update_password_hash"), transaction(self.engine, conn) as tx:
            result = tx.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(password_hash=new_hash, updated_at=to_db_time(self._clock()))
            )
            if result.rowcount == 0:
                raise NotFoundError("User not found.")

    def locked_password_hash(self, user_id: str, conn: Connection) -> str | None:
        """Read the current hash inside conn's transaction, locking the row.

        FOR UPDATE on server databases; SQLite already holds the write lock
        from BEGIN IMMEDIATE. A concurrent password reset therefore commits
        either entirely before or entirely after the caller's transaction.
        """
        with storage_errors("locked_password_hash"):
            return conn.execute(
                select(users.c.password_hash).where(users.c.id == user_id).with_for_update()
            ).scalar()

    def count_users(self) -> int:
        with storage_errors("count_users"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        try:
            self.count_users()
        except TransientStorageError:
            return False
        return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        created_at=from_db_time(row.created_at),
        updated_at=from_db_time(row.updated_at),
    )
