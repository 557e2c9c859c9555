"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore and RefreshTokenStore are the
repositories; _row_to_user / _row_to_refresh_token are the mappers. Route and
service code never touches SQL directly.

Both stores share one Engine built by create_auth_engine(), so the two
tables live in the same database and the same connection pool.

Concurrency:
  RefreshTokenStore.rotate() is the only compare-and-swap in the system.
  Inside one transaction it flips is_available 1 -> 0 with a conditional
  UPDATE and inserts the successor only when that UPDATE changed exactly one
  row. Two concurrent redemptions of the same id therefore serialize on the
  row (SQLite: database write lock, PostgreSQL: row lock) and the loser's
  UPDATE matches nothing -- it reports "already used", never a second
  success.

  UserStore.resolve_or_create() relies on UNIQUE(email). A concurrent first
  login that loses the insert race gets IntegrityError and re-reads the
  winner's row. No application lock, so it holds across processes too.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Token ids are uuid4 values generated here, never supplied by the client.

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision) so that string comparison in SQL orders them correctly.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    PersistenceError,
    RefreshTokenExpiredError,
    RefreshTokenInvalidError,
    RefreshTokenReusedError,
)
from auth.models import RefreshToken, User

logger = logging.getLogger("passgate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_available", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed while a rotation transaction holds the write
    lock. Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str, timeout_seconds: float = 5.0) -> Engine:
    """Create the Engine shared by UserStore and RefreshTokenStore, and the schema.

    timeout_seconds is the SQLite busy timeout: how long a writer waits for a
    concurrent transaction to finish before failing with PersistenceError.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _storage_errors(operation: str, entity_id: str = "") -> Iterator[None]:
    """Log and re-raise driver failures as PersistenceError.

    IntegrityError is left alone -- callers that expect it (resolve_or_create)
    handle it themselves.
    """
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s (%s): %s", operation, entity_id or "-", exc)
        raise PersistenceError(operation, str(exc)) from exc


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        engine = create_auth_engine("sqlite:///passgate.db")
        users = UserStore(engine)
        user = users.resolve_or_create("a@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, email: str) -> User:
        """Insert a new user and return it.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user = User(id=_new_id(), email=email, created_at=_to_iso(utcnow()))
        with _storage_errors("create_user", email), self.engine.begin() as conn:
            conn.execute(_users.insert().values(id=user.id, email=user.email, created_at=user.created_at))
        logger.info("Created user %s (%s)", user.id, user.email)
        return user

    def exists_by_email(self, email: str) -> bool:
        with _storage_errors("exists_by_email", email), self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).first()
        return row is not None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with _storage_errors("get_by_email", email), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).first()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with _storage_errors("get_by_id", user_id), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).first()
        return _row_to_user(row) if row is not None else None

    def resolve_or_create(self, email: str) -> User:
        """Return the user for email, creating it on first sight.

        Two concurrent first logins for the same email both miss the lookup
        and both try to insert; UNIQUE(email) lets exactly one through. The
        loser re-reads and returns the winner's row, so every caller sees the
        same user id.
        """
        user = self.get_by_email(email)
        if user is not None:
            return user
        try:
            return self.create_user(email)
        except IntegrityError:
            logger.info("Concurrent creation of user %s detected, using existing record", email)
        user = self.get_by_email(email)
        if user is None:
            # IntegrityError without a visible row: not a uniqueness race.
            raise PersistenceError("resolve_or_create", f"user {email} vanished after uniqueness conflict")
        return user


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository and rotator for single-use refresh tokens.

    This class is the only writer of refresh_tokens.is_available.

    Args:
        engine:           Engine from create_auth_engine().
        lifetime_seconds: Expiry window given to every token minted by rotate().
        clock:            Returns the current aware UTC datetime. Tests inject
                          a fake clock to exercise expiry.
    """

    def __init__(
        self,
        engine: Engine,
        lifetime_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if lifetime_seconds <= 0:
            raise ValueError("lifetime_seconds must be positive")
        self.engine = engine
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def next_expiry(self) -> datetime:
        return self._clock() + timedelta(seconds=self.lifetime_seconds)

    def create(self, user_id: str, expires_at: datetime | None = None) -> RefreshToken:
        """Insert a new available refresh token for user_id.

        expires_at defaults to now + lifetime_seconds and must be timezone-aware.
        """
        if expires_at is not None and expires_at.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")
        token = RefreshToken(
            id=_new_id(),
            user_id=user_id,
            expires_at=expires_at or self.next_expiry(),
            is_available=True,
            created_at=_to_iso(self._clock()),
        )
        with _storage_errors("create_refresh_token", user_id), self.engine.begin() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
        logger.info("Created refresh token %s for user %s", token.id, user_id)
        return token

    def get(self, token_id: str) -> RefreshToken | None:
        with _storage_errors("get_refresh_token", token_id), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).first()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate(self, token_id: str) -> RefreshToken:
        """Redeem token_id once and return its successor.

        Raises:
            RefreshTokenInvalidError -- no such token.
            RefreshTokenReusedError  -- already redeemed (replay), including
                                        losing a concurrent redemption race.
            RefreshTokenExpiredError -- expires_at <= now. The token is marked
                                        unavailable before this is raised.
            PersistenceError         -- storage failure; nothing was committed.
        """
        now = self._clock()
        expired_at: datetime | None = None
        successor: RefreshToken | None = None

        with _storage_errors("rotate_refresh_token", token_id), self.engine.begin() as conn:
            # Compare-and-swap first: the write lock is taken by the first
            # statement of the transaction, so a concurrent redeemer waits here
            # and then matches zero rows.
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == token_id)
                    & (_refresh_tokens.c.is_available == 1)
                    & (_refresh_tokens.c.expires_at > _to_iso(now))
                )
                .values(is_available=0)
            )
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).first()

            if result.rowcount == 1:
                successor = RefreshToken(
                    id=_new_id(),
                    user_id=row.user_id,
                    expires_at=now + timedelta(seconds=self.lifetime_seconds),
                    is_available=True,
                    created_at=_to_iso(now),
                )
                conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(successor)))
            elif row is None:
                logger.warning("Refresh token %s not found", token_id)
                raise RefreshTokenInvalidError(token_id)
            elif not row.is_available:
                logger.warning("Refresh token %s already used", token_id)
                raise RefreshTokenReusedError(token_id)
            else:
                # Available but the CAS did not match: expires_at <= now.
                # Leave the block normally so the invalidation commits.
                conn.execute(
                    _refresh_tokens.update().where(_refresh_tokens.c.id == token_id).values(is_available=0)
                )
                expired_at = _from_iso(row.expires_at)

        if expired_at is not None:
            logger.warning("Refresh token %s expired at %s", token_id, expired_at.isoformat())
            raise RefreshTokenExpiredError(token_id, expired_at)

        logger.info("Rotated refresh token %s -> %s for user %s", token_id, successor.id, successor.user_id)
        return successor


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(id=row.id, email=row.email, created_at=row.created_at)


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        expires_at=_from_iso(row.expires_at),
        is_available=bool(row.is_available),
        created_at=row.created_at,
    )


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "id": token.id,
        "user_id": token.user_id,
        "expires_at": _to_iso(token.expires_at),
        "is_available": 1 if token.is_available else 0,
        "created_at": token.created_at,
    }
