"""
auth/access_store.py -- SQLAlchemy Core persistence for authorization entries.

Same Repository + Data Mapper shape as auth/store.py. One table holds all four
entry kinds (email, phone, domain, invite code); exactly one discriminant
column is non-NULL per row, which the AuthorizationEntry dataclass enforces
before anything is written.

Invite redemption is a single conditional UPDATE:

    UPDATE authorization_entries
       SET used_count = used_count + 1
     WHERE id = :id AND status = 'active'
       AND (max_uses IS NULL OR used_count < max_uses)

so two requests racing for the last use of a code cannot both win -- the
rowcount tells each caller whether it got the use.

notes is a JSON array serialized as text.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, or_, select
from sqlalchemy.engine import Engine

from auth.models import AuthorizationEntry, EntryStatus
from auth.store import _DEFAULT_DB_URL, _now, from_iso, make_engine, to_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_entries = Table(
    "authorization_entries",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), index=True),
    Column("phone", String(32), index=True),
    Column("domain", String(255), index=True),
    Column("invite_code", String(16), unique=True),
    Column("status", String(16), nullable=False, server_default=EntryStatus.PENDING.value),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("max_uses", Integer),
    Column("used_count", Integer, nullable=False, server_default="0"),
    Column("notes", Text),  # JSON array
    Column("created_by", String(255)),
)


class AccessStore:
    """Repository for AuthorizationEntry entities.

    Usage:
        store = AccessStore()
        store.create_entry(AuthorizationEntry(domain="corp.com"))
        entry = store.find_by_domain("corp.com", status=EntryStatus.ACTIVE)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url or _DEFAULT_DB_URL)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: int) -> AuthorizationEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(_entries.select().where(_entries.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def find_by_email(self, email: str, status: EntryStatus | None = None) -> AuthorizationEntry | None:
        return self._find_one(_entries.c.email == email, status)

    def find_by_phone(self, phone: str, status: EntryStatus | None = None) -> AuthorizationEntry | None:
        return self._find_one(_entries.c.phone == phone, status)

    def find_by_domain(self, domain: str, status: EntryStatus | None = None) -> AuthorizationEntry | None:
        return self._find_one(_entries.c.domain == domain, status)

    def find_by_invite_code(self, code: str) -> AuthorizationEntry | None:
        return self._find_one(_entries.c.invite_code == code, None)

    def find_by_email_or_phone(
        self, email: str | None, phone: str | None, status: EntryStatus | None = None
    ) -> AuthorizationEntry | None:
        """Return the oldest entry matching either identifier, or None."""
        clauses = []
        if email:
            clauses.append(_entries.c.email == email)
        if phone:
            clauses.append(_entries.c.phone == phone)
        if not clauses:
            return None
        return self._find_one(or_(*clauses), status)

    def invite_code_exists(self, code: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_entries.c.id).where(_entries.c.invite_code == code)).first()
        return row is not None

    def list_entries(self, status: EntryStatus | None = None) -> list[AuthorizationEntry]:
        """Return entries newest first, optionally filtered by status."""
        query = _entries.select().order_by(_entries.c.id.desc())
        if status is not None:
            query = query.where(_entries.c.status == EntryStatus(status).value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def _find_one(self, clause, status: EntryStatus | None) -> AuthorizationEntry | None:
        query = _entries.select().where(clause).order_by(_entries.c.id)
        if status is not None:
            query = query.where(_entries.c.status == EntryStatus(status).value)
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return _row_to_entry(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_entry(self, entry: AuthorizationEntry) -> int:
        """Insert an entry and return its ID.

        Raises sqlalchemy.exc.IntegrityError when the invite code already
        exists; the invite generator treats that as a collision.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _entries.insert().values(
                    email=entry.email,
                    phone=entry.phone,
                    domain=entry.domain,
                    invite_code=entry.invite_code,
                    status=EntryStatus(entry.status).value,
                    created_at=to_iso(_now()),
                    expires_at=to_iso(entry.expires_at),
                    max_uses=entry.max_uses,
                    used_count=entry.used_count,
                    notes=json.dumps(entry.notes),
                    created_by=entry.created_by,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_status(self, entry_id: int, status: EntryStatus, add_notes: list[str] | None = None) -> bool:
        """Set an entry's status, appending add_notes to its notes.

        Returns False when the entry does not exist.
        """
        with self.engine.begin() as conn:
            row = conn.execute(select(_entries.c.notes).where(_entries.c.id == entry_id)).first()
            if row is None:
                return False
            notes = json.loads(row.notes) if row.notes else []
            notes.extend(add_notes or [])
            conn.execute(
                _entries.update()
                .where(_entries.c.id == entry_id)
                .values(status=EntryStatus(status).value, notes=json.dumps(notes))
            )
        return True

    def consume_invite(self, entry_id: int) -> bool:
        """Redeem one use of an invite code. Returns False if none was left.

        When the redemption uses up max_uses the entry flips to expired in the
        same transaction.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _entries.update()
                .where(
                    (_entries.c.id == entry_id)
                    & (_entries.c.status == EntryStatus.ACTIVE.value)
                    & (_entries.c.max_uses.is_(None) | (_entries.c.used_count < _entries.c.max_uses))
                )
                .values(used_count=_entries.c.used_count + 1)
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                _entries.update()
                .where(
                    (_entries.c.id == entry_id)
                    & _entries.c.max_uses.isnot(None)
                    & (_entries.c.used_count >= _entries.c.max_uses)
                )
                .values(status=EntryStatus.EXPIRED.value)
            )
        return True

    def delete_entry(self, entry_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_entries.delete().where(_entries.c.id == entry_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuthorizationEntry:
    return AuthorizationEntry(
        id=row.id,
        email=row.email,
        phone=row.phone,
        domain=row.domain,
        invite_code=row.invite_code,
        status=EntryStatus(row.status),
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        max_uses=row.max_uses,
        used_count=row.used_count or 0,
        notes=json.loads(row.notes) if row.notes else [],
        created_by=row.created_by,
    )
