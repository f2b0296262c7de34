"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and EventStore are the repositories; _row_to_user is the mapper.
Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL. This -- not the
  character stripping in auth/sanitize.py -- is what prevents SQL injection.

  Emails are stored lower-cased and the column is UNIQUE, which makes
  uniqueness case-insensitive at the DB level. A concurrent duplicate insert
  surfaces as sqlalchemy.exc.IntegrityError.

  security_events is append-only. Nothing in this service reads it back.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import SecurityEvent, User

_DEFAULT_DB_URL = "sqlite:///authgate.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # always lower-case
    Column("password", Text, nullable=False),  # bcrypt hash
    Column("email_verified_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_security_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event", String(64), nullable=False),
    Column("timestamp", String(40), nullable=False),
    Column("ip", String(64)),
    Column("user_agent", Text),
    Column("detail", Text),  # JSON object
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> Engine:
    """Create an engine with the schema in place.

    timeout bounds how long a SQLite writer waits on a lock before raising
    OperationalError, which the orchestrator reports as 503.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(name="Ana", email="ana@x.com", hashed_password=hash_password("...")))
        user = store.get_by_email("ANA@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    name=user.name,
                    email=user.email.lower(),
                    password=user.hashed_password,
                    email_verified_at=user.email_verified_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email.lower())).fetchone()
        return row is not None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields (name, email_verified_at, hashed_password); stamps updated_at.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "hashed_password" in fields:
            fields["password"] = fields.pop("hashed_password")
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


class EventStore:
    """Append-only sink for SecurityEvent rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append(self, entry: SecurityEvent) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _security_events.insert().values(
                    event=entry.event,
                    timestamp=entry.timestamp,
                    ip=entry.ip,
                    user_agent=entry.user_agent,
                    detail=json.dumps(entry.detail, default=str),
                )
            )
            conn.commit()

    def count(self) -> int:
        """Row count, for health checks and tests. The core never reads events back."""
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_security_events)).scalar() or 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.password,
        email_verified_at=row.email_verified_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
