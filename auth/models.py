"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and services do the work. The only behaviour here is
invariant enforcement in __post_init__ -- an entity that violates its shape
should never make it as far as a store.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"


class EntryStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass
class User:
    """A portal account.

    At least one of email / phone is always set. hashed_password is None for
    users who have only ever authenticated with a one-time code (provisional
    accounts). one_time_code holds an HMAC digest of the outstanding code,
    never the raw value; the code registry is the source of truth for
    validity, this column only records that a code is outstanding.

    The access history lives in its own table and is read through
    UserStore.list_history() -- lookups stay cheap.
    """

    role: Role = Role.USER
    email: str | None = None
    phone: str | None = None
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    hashed_password: str | None = None
    password_last_changed: datetime | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    lock_until: datetime | None = None
    one_time_code: str | None = None
    one_time_code_expiry: datetime | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None

    def __post_init__(self) -> None:
        if not self.email and not self.phone:
            raise ValueError("A user needs an email or a phone number.")
        if self.failed_login_attempts < 0:
            raise ValueError("failed_login_attempts cannot be negative.")

    @property
    def identifier(self) -> str:
        """The identifier carried in session tokens -- email when known."""
        return self.email or self.phone or ""

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now


@dataclass
class AccessEvent:
    """One row of a user's access history (LOGIN, ACCOUNT_LOCKED, CREATED, ...)."""

    user_id: int
    action: str
    detail: str = ""
    timestamp: datetime | None = None
    id: int | None = None


@dataclass
class AuthorizationEntry:
    """A rule or pending request granting or denying portal access.

    Exactly one discriminant is set:
      email / phone -- an individual allow-list entry or access request
      domain        -- every address whose part after "@" equals this value
      invite_code   -- an 8-character code with optional expiry and use cap

    max_uses is None for unlimited codes. notes is append-only; approval and
    rejection add a line each.
    """

    status: EntryStatus = EntryStatus.ACTIVE
    email: str | None = None
    phone: str | None = None
    domain: str | None = None
    invite_code: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    max_uses: int | None = None
    used_count: int = 0
    notes: list[str] = field(default_factory=list)
    created_by: str | None = None

    def __post_init__(self) -> None:
        discriminants = [self.email, self.phone, self.domain, self.invite_code]
        if sum(1 for d in discriminants if d) != 1:
            raise ValueError("An authorization entry needs exactly one of email, phone, domain or invite_code.")

    @property
    def kind(self) -> str:
        if self.email:
            return "email"
        if self.phone:
            return "phone"
        if self.domain:
            return "domain"
        return "invite_code"

    @property
    def value(self) -> str:
        return self.email or self.phone or self.domain or self.invite_code or ""

    def is_exhausted(self, now: datetime) -> bool:
        """True when an invite code can no longer be redeemed."""
        if self.expires_at is not None and self.expires_at < now:
            return True
        return self.max_uses is not None and self.used_count >= self.max_uses


@dataclass
class VerificationCode:
    """An ephemeral proof-of-ownership code for one (identifier, channel) pair."""

    code: str
    identifier: str
    channel: Channel
    created_at: datetime
    expires_at: datetime
    used: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.used and now <= self.expires_at
