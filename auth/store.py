"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials and refresh tokens.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_refresh_token are the mappers. The engine never
touches SQL directly.

Atomicity:
  Every mutation that other requests can race is a single conditional
  statement inside engine.begin(), and its rowcount decides the outcome:

  - increment_failed_attempts(): one UPDATE computes the new counter and the
    lock timestamp with CASE expressions, then re-reads the row inside the
    same transaction. Concurrent failed logins serialize on the row write
    lock, so none are lost.
  - update_last_login(): the success-path reset only matches a row that is
    not locked at that instant. A correct password racing the failure that
    locks the account loses instead of unlocking it.
  - rotate_refresh_token(): revoke-if-still-issued is the FIRST statement of
    the transaction, and the successor is inserted only when it affected one
    row. A concurrent second rotation sees zero rows and aborts; a crash
    between the two leaves the old token revoked, never two usable tokens.

Timestamps are stored as fixed-width UTC ISO-8601 strings, so lexicographic
comparison in SQL matches chronological order.

Timeouts: the SQLite busy timeout or the Postgres connect/statement timeout
is set from store_timeout_seconds, so no call blocks indefinitely.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    null,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.lockout import LockoutPolicy
from auth.models import LockState, RefreshToken, Role, User
from auth.passwords import verify_password as _check_password
from core.errors import AlreadyExists

logger = logging.getLogger("gatehouse.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatehouse_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    # Always stored lowercased; the UNIQUE constraint is therefore case-insensitive.
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex of the raw secret
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("rotated_at", String(32)),
    Column("replaced_by", String(36)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    WAL lets readers proceed while a writer holds the lock. PRAGMAs are not
    inherited by new pooled connections, so this runs per-connection.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and RefreshToken records.

    Usage:
        store = CredentialStore("sqlite:///auth.db", timeout=5.0)
        user = store.create_user("a@example.com", hash_password("..."), Role.user, now=utcnow())
        found = store.get_by_email("A@Example.com")
        store.close()

    Every method that depends on the current time takes `now` from the
    caller, so the engine's injected clock governs expiry and lockout.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, *, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        elif db_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, int(timeout))
            connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
        self.engine: Engine = create_engine(
            db_url,
            connect_args=connect_args,
            pool_pre_ping=True,
            **({} if db_url.startswith("sqlite") else {"pool_timeout": timeout}),
        )
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, email: str, password_hash: str, role: Role, *, now: datetime) -> User:
        """Insert a new user and return the stored record.

        Raises AlreadyExists if the email (case-insensitive) is taken. The
        UNIQUE constraint is the arbiter, so two concurrent registrations for
        the same address cannot both succeed.
        """
        user_id = _new_id()
        stamp = _ts(now)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=_normalize_email(email),
                        password_hash=password_hash,
                        role=Role(role).value,
                        is_active=1,
                        email_verified=0,
                        failed_login_attempts=0,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
        except IntegrityError as exc:
            raise AlreadyExists() from exc
        return User(
            id=user_id,
            email=_normalize_email(email),
            password_hash=password_hash,
            role=Role(role),
            created_at=_parse_ts(stamp),
            updated_at=_parse_ts(stamp),
        )

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def verify_password(self, user: User, plaintext: str) -> bool:
        """Constant-time check of plaintext against the record's bcrypt hash."""
        return _check_password(plaintext, user.password_hash)

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_failed_attempts(self, user_id: str, *, now: datetime, policy: LockoutPolicy) -> LockState:
        """Atomically count one failed login and lock the account at the threshold.

        A lock that has already expired restarts the count at 1 instead of
        re-locking on the very next failure.
        """
        stamp = _ts(now)
        lock_stamp = _ts(policy.lock_expires_at(now))
        lock_expired = and_(_users.c.locked_until.is_not(None), _users.c.locked_until <= stamp)
        new_count = case((lock_expired, 1), else_=_users.c.failed_login_attempts + 1)
        new_lock = case(
            (new_count >= policy.threshold, lock_stamp),
            (lock_expired, null()),
            else_=_users.c.locked_until,
        )
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=new_count, locked_until=new_lock, updated_at=stamp)
            )
            row = conn.execute(
                select(_users.c.failed_login_attempts, _users.c.locked_until).where(_users.c.id == user_id)
            ).fetchone()
        if row is None:
            return LockState(failed_login_attempts=0, locked_until=None)
        return LockState(failed_login_attempts=row.failed_login_attempts, locked_until=_parse_ts(row.locked_until))

    def reset_failed_attempts(self, user_id: str, *, now: datetime) -> None:
        """Zero the counter and clear the lock unconditionally (admin unlock, password reset)."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, updated_at=_ts(now))
            )

    def update_last_login(self, user_id: str, *, now: datetime) -> bool:
        """Stamp last_login and reset the failure counter, unless the account is locked right now.

        Returns False (and changes nothing) when a lock is in force at `now`,
        which closes the window where a late correct password could unlock an
        account that a concurrent brute-force burst just locked.
        """
        stamp = _ts(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    and_(
                        _users.c.id == user_id,
                        or_(_users.c.locked_until.is_(None), _users.c.locked_until <= stamp),
                    )
                )
                .values(failed_login_attempts=0, locked_until=None, last_login=stamp, updated_at=stamp)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------

    def update_password(self, user_id: str, password_hash: str, *, now: datetime) -> bool:
        """Replace the password hash. Also clears lockout state."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, failed_login_attempts=0, locked_until=None, updated_at=_ts(now))
            )
        return result.rowcount > 0

    def set_active(self, user_id: str, active: bool, *, now: datetime) -> bool:
        """Flip the active flag. Deactivation is a flag, never a delete."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if active else 0, updated_at=_ts(now))
            )
        return result.rowcount > 0

    def set_role(self, user_id: str, role: Role, *, now: datetime) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(role=Role(role).value, updated_at=_ts(now))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, user_id: str, token_hash: str, expires_at: datetime, *, now: datetime) -> RefreshToken:
        token_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    id=token_id,
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=_ts(expires_at),
                    revoked=0,
                    created_at=_ts(now),
                )
            )
        return RefreshToken(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=_parse_ts(_ts(expires_at)),
            created_at=_parse_ts(_ts(now)),
        )

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        """Look up a refresh record by secret hash, whatever its state. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(
        self, old_id: str, new_hash: str, new_expires_at: datetime, *, now: datetime
    ) -> RefreshToken | None:
        """Revoke `old_id` if it is still issued, and insert its successor, in one transaction.

        Returns the successor, or None if the old record was already revoked
        or expired (the caller lost a rotation race or presented a dead token).
        """
        stamp = _ts(now)
        new_id = _new_id()
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    and_(
                        _refresh_tokens.c.id == old_id,
                        _refresh_tokens.c.revoked == 0,
                        _refresh_tokens.c.expires_at > stamp,
                    )
                )
                .values(revoked=1, rotated_at=stamp, replaced_by=new_id)
            )
            if result.rowcount != 1:
                return None
            user_id = conn.execute(
                select(_refresh_tokens.c.user_id).where(_refresh_tokens.c.id == old_id)
            ).scalar_one()
            conn.execute(
                _refresh_tokens.insert().values(
                    id=new_id,
                    user_id=user_id,
                    token_hash=new_hash,
                    expires_at=_ts(new_expires_at),
                    revoked=0,
                    created_at=stamp,
                )
            )
        return RefreshToken(
            id=new_id,
            user_id=user_id,
            token_hash=new_hash,
            expires_at=_parse_ts(_ts(new_expires_at)),
            created_at=_parse_ts(stamp),
        )

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Revoke one record by hash. Returns True if an issued record was revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.token_hash == token_hash, _refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every still-issued record owned by the user in one bulk UPDATE."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.user_id == user_id, _refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    def purge_refresh_tokens(self, *, now: datetime) -> int:
        """Delete expired and revoked records. Maintenance only, never on the hot path."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    or_(_refresh_tokens.c.revoked == 1, _refresh_tokens.c.expires_at <= _ts(now))
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    def stats(self, *, now: datetime) -> dict[str, int]:
        stamp = _ts(now)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
            active = conn.execute(select(func.count()).select_from(_users).where(_users.c.is_active == 1)).scalar()
            locked = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.locked_until > stamp)
            ).scalar()
            tokens = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(and_(_refresh_tokens.c.revoked == 0, _refresh_tokens.c.expires_at > stamp))
            ).scalar()
        return {
            "users": total,
            "active_users": active or 0,
            "locked_users": locked or 0,
            "active_refresh_tokens": tokens or 0,
        }

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_parse_ts(row.locked_until),
        last_login=_parse_ts(row.last_login),
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse_ts(row.expires_at),
        revoked=bool(row.revoked),
        rotated_at=_parse_ts(row.rotated_at),
        created_at=_parse_ts(row.created_at),
    )
