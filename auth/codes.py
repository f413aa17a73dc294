"""
auth/codes.py -- One-time verification code registry.

A code proves ownership of an email address or phone number. The registry
keeps at most one unused code per (identifier, channel) pair: registering a
new code replaces the previous one, so only the most recently sent message
works. Codes are single use -- a successful verify() consumes the entry.

Two interchangeable implementations behind the CodeRegistry interface:

  InMemoryCodeRegistry -- dict guarded by a lock. A process restart silently
      invalidates every outstanding code; callers already handle "invalid
      code" so that is acceptable for single-worker deployments.

  SQLiteCodeRegistry   -- a small SQLite table (WAL mode) so several workers
      on one host share codes. Registration is one transaction.

Expired and used entries are purged opportunistically by register() and
verify(); there is no background sweep.

The clock is injectable so expiry can be tested without sleeping.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from auth.models import Channel, VerificationCode

logger = logging.getLogger("intranet.auth.codes")

_DEFAULT_TTL_MINUTES = 15


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    """Return a uniformly random 6-digit code in 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime


class CodeRegistry(ABC):
    """Interface shared by all code registries."""

    def __init__(self, ttl_minutes: int = _DEFAULT_TTL_MINUTES, clock: Callable[[], datetime] = _utcnow) -> None:
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def register(self, identifier: str, channel: Channel) -> IssuedCode:
        """Generate and store a fresh code, replacing any earlier one for the pair."""
        now = self._clock()
        entry = VerificationCode(
            code=generate_code(),
            identifier=identifier,
            channel=Channel(channel),
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._replace(entry)
        self.cleanup()
        logger.info("Registered %s code for %s (expires %s)", entry.channel.value, identifier, entry.expires_at)
        return IssuedCode(code=entry.code, expires_at=entry.expires_at)

    def verify(self, identifier: str, code: str, channel: Channel) -> bool:
        """Return True and consume the entry if code is live and matches exactly."""
        code = (code or "").strip()
        # compare_digest raises on non-ASCII str, e.g. full-width digits.
        if not (code.isascii() and code.isdigit()):
            return False
        ok = self._consume(identifier, Channel(channel), code, self._clock())
        self.cleanup()
        if not ok:
            logger.info("Rejected %s code for %s", Channel(channel).value, identifier)
        return ok

    @abstractmethod
    def cleanup(self) -> int:
        """Remove used or expired entries. Returns the number removed."""

    @abstractmethod
    def active_codes(self) -> list[VerificationCode]:
        """Unused, unexpired entries (debug tooling only)."""

    def latest_code(self, identifier: str) -> VerificationCode | None:
        """Most recent live entry for identifier on any channel (debug tooling only)."""
        candidates = [c for c in self.active_codes() if c.identifier == identifier]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.created_at)

    def close(self) -> None:
        """Release storage resources. Nothing to release for in-memory registries."""

    @abstractmethod
    def _replace(self, entry: VerificationCode) -> None: ...

    @abstractmethod
    def _consume(self, identifier: str, channel: Channel, code: str, now: datetime) -> bool: ...


class InMemoryCodeRegistry(CodeRegistry):
    def __init__(self, ttl_minutes: int = _DEFAULT_TTL_MINUTES, clock: Callable[[], datetime] = _utcnow) -> None:
        super().__init__(ttl_minutes, clock)
        self._entries: dict[tuple[str, Channel], VerificationCode] = {}
        self._lock = threading.Lock()

    def _replace(self, entry: VerificationCode) -> None:
        with self._lock:
            self._entries[(entry.identifier, entry.channel)] = entry

    def _consume(self, identifier: str, channel: Channel, code: str, now: datetime) -> bool:
        with self._lock:
            entry = self._entries.get((identifier, channel))
            if entry is None or not entry.is_live(now):
                return False
            if not hmac.compare_digest(entry.code, code):
                return False
            entry.used = True
            return True

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if not entry.is_live(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def active_codes(self) -> list[VerificationCode]:
        now = self._clock()
        with self._lock:
            return [e for e in self._entries.values() if e.is_live(now)]


_DDL = """
CREATE TABLE IF NOT EXISTS verification_codes (
    identifier  TEXT NOT NULL,
    channel     TEXT NOT NULL,
    code        TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL,
    used        INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (identifier, channel)
);
"""


class SQLiteCodeRegistry(CodeRegistry):
    """Code registry persisted in a SQLite file shared by local workers.

    The (identifier, channel) primary key makes "at most one code per pair"
    a storage-level guarantee: INSERT OR REPLACE swaps the old row out in a
    single statement.
    """

    def __init__(
        self,
        db_path: Path | str,
        ttl_minutes: int = _DEFAULT_TTL_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(ttl_minutes, clock)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def _replace(self, entry: VerificationCode) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO verification_codes "
                "(identifier, channel, code, created_at, expires_at, used) VALUES (?, ?, ?, ?, ?, 0)",
                (
                    entry.identifier,
                    entry.channel.value,
                    entry.code,
                    entry.created_at.isoformat(),
                    entry.expires_at.isoformat(),
                ),
            )
            self._conn.commit()

    def _consume(self, identifier: str, channel: Channel, code: str, now: datetime) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT code, expires_at, used FROM verification_codes WHERE identifier = ? AND channel = ?",
                (identifier, channel.value),
            ).fetchone()
            if row is None:
                return False
            stored, expires_at, used = row
            if used or now > datetime.fromisoformat(expires_at) or not hmac.compare_digest(stored, code):
                return False
            cursor = self._conn.execute(
                "UPDATE verification_codes SET used = 1 WHERE identifier = ? AND channel = ? AND used = 0",
                (identifier, channel.value),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def cleanup(self) -> int:
        # ISO strings with the same UTC offset sort chronologically.
        cutoff = self._clock().isoformat()
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM verification_codes WHERE used = 1 OR expires_at < ?",
                (cutoff,),
            )
            self._conn.commit()
        return cursor.rowcount

    def active_codes(self) -> list[VerificationCode]:
        now = self._clock()
        with self._lock:
            rows = self._conn.execute(
                "SELECT identifier, channel, code, created_at, expires_at FROM verification_codes WHERE used = 0"
            ).fetchall()
        codes = [
            VerificationCode(
                identifier=identifier,
                channel=Channel(channel),
                code=code,
                created_at=datetime.fromisoformat(created_at),
                expires_at=datetime.fromisoformat(expires_at),
            )
            for identifier, channel, code, created_at, expires_at in rows
        ]
        return [c for c in codes if c.is_live(now)]

    def close(self) -> None:
        self._conn.close()


def build_code_registry(store: str, ttl_minutes: int) -> CodeRegistry:
    """Return the registry named by the CODE_STORE setting."""
    if not store or store == "memory":
        return InMemoryCodeRegistry(ttl_minutes=ttl_minutes)
    return SQLiteCodeRegistry(store, ttl_minutes=ttl_minutes)
