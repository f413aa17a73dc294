"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_event are the mappers. Services and routes never touch SQL directly --
the login orchestrator in particular only calls the methods below.

Lookups are explicit per identifier (get_by_email, get_by_phone, get_by_id,
get_by_email_or_phone) rather than a query built from whichever fields happen
to be present. Identifier lookups return active users only unless
include_inactive=True; get_by_id always returns the row so admin flows can
inspect deactivated accounts.

Concurrency:
  record_failed_login() increments in SQL (attempts = attempts + 1) and reads
  the new value back inside the same transaction, so two concurrent wrong
  passwords can never both observe the same count.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as ISO 8601 UTC strings and mapped back to aware
datetimes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import AccessEvent, Role, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'intranet_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True),
    Column("phone", String(32), unique=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("role", String(20), nullable=False, server_default=Role.USER.value),
    Column("hashed_password", Text),  # NULL until the user sets a password
    Column("password_last_changed", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("one_time_code", String(64)),  # HMAC-SHA256 hex of the outstanding code
    Column("one_time_code_expiry", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_access_history = Table(
    "access_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("timestamp", String(32), nullable=False),
    Column("action", String(40), nullable=False),
    Column("detail", Text),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks both auth stores rely on."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and AccessEvent entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="ana@corp.com", role=Role.USER))
        user = store.get_by_email("ana@corp.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url or _DEFAULT_DB_URL)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key, active or not."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str, include_inactive: bool = False) -> User | None:
        query = _users.select().where(_users.c.email == email)
        return self._fetch_one(query, include_inactive)

    def get_by_phone(self, phone: str, include_inactive: bool = False) -> User | None:
        query = _users.select().where(_users.c.phone == phone)
        return self._fetch_one(query, include_inactive)

    def get_by_email_or_phone(
        self, email: str | None, phone: str | None, include_inactive: bool = False
    ) -> User | None:
        """Match either identifier. Returns None when neither is supplied."""
        clauses = []
        if email:
            clauses.append(_users.c.email == email)
        if phone:
            clauses.append(_users.c.phone == phone)
        if not clauses:
            return None
        query = _users.select().where(or_(*clauses)).order_by(_users.c.id)
        return self._fetch_one(query, include_inactive)

    def _fetch_one(self, query, include_inactive: bool) -> User | None:
        if not include_inactive:
            query = query.where(_users.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMIN.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or phone is already
        taken. Callers treat that as "someone else created it first".
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    phone=user.phone,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=Role(user.role).value,
                    hashed_password=user.hashed_password,
                    password_last_changed=to_iso(user.password_last_changed),
                    is_active=1 if user.is_active else 0,
                    failed_login_attempts=0,
                    created_at=to_iso(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: role, is_active, first_name, last_name, email, phone.
        Returns True if a row was updated, False if user_id was not found.
        """
        allowed = {"role", "is_active", "first_name", "last_name", "email", "phone"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_password(self, user_id: int, hashed_password: str) -> None:
        """Store a new password hash and stamp password_last_changed."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, password_last_changed=to_iso(_now()))
            )
            conn.commit()

    def record_failed_login(self, user_id: int) -> int:
        """Atomically increment failed_login_attempts and return the new value."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            count = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar()
        return count or 0

    def lock_account(self, user_id: int, until: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(lock_until=to_iso(until)))
            conn.commit()

    def reset_failed_logins(self, user_id: int) -> None:
        """Zero the failure counter and lift any lock."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(failed_login_attempts=0, lock_until=None)
            )
            conn.commit()

    def set_one_time_code(self, user_id: int, code_digest: str, expires_at: datetime) -> None:
        """Record an outstanding code and mark the user active.

        A provisional account becomes active as soon as a code has been
        dispatched to it -- "engaged", not "verified".
        """
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(one_time_code=code_digest, one_time_code_expiry=to_iso(expires_at), is_active=1)
            )
            conn.commit()

    def clear_one_time_code(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(one_time_code=None, one_time_code_expiry=None)
            )
            conn.commit()

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=to_iso(_now())))
            conn.commit()

    # ------------------------------------------------------------------
    # Access history
    # ------------------------------------------------------------------

    def append_history(self, user_id: int, action: str, detail: str = "") -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _access_history.insert().values(
                    user_id=user_id,
                    timestamp=to_iso(_now()),
                    action=action,
                    detail=detail,
                )
            )
            conn.commit()

    def list_history(self, user_id: int, limit: int = 100) -> list[AccessEvent]:
        """Return a user's access history, oldest first, capped at the last `limit` events."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _access_history.select()
                .where(_access_history.c.user_id == user_id)
                .order_by(_access_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in reversed(rows)]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        phone=row.phone,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        hashed_password=row.hashed_password,
        password_last_changed=from_iso(row.password_last_changed),
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        lock_until=from_iso(row.lock_until),
        one_time_code=row.one_time_code,
        one_time_code_expiry=from_iso(row.one_time_code_expiry),
        created_at=from_iso(row.created_at),
        last_login=from_iso(row.last_login),
    )


def _row_to_event(row) -> AccessEvent:
    return AccessEvent(
        id=row.id,
        user_id=row.user_id,
        timestamp=from_iso(row.timestamp),
        action=row.action,
        detail=row.detail or "",
    )
