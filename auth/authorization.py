"""
auth/authorization.py -- Who may enter the portal at all.

AuthorizationGate answers "is this email / phone / invite code allowed in?"
before any account exists, and manages the allow-list behind that answer:
individual entries, whole email domains, invite codes and the pending access
requests created when a stranger tries to sign in.

check_authorization() evaluates rules in a fixed priority order, first match
wins:

  1. configured administrator identity
  2. an existing active user with that email / phone
  3. an active allow-list entry for the exact email / phone
  4. an active domain entry equal to the part of the email after "@"
  5. a live invite code (redeeming one use)
  6. a pending request for the email / phone        -> pending
  7. nothing                                          -> rejected

Invite codes are checked for expiry and exhaustion at redemption time, not
only when written, and redemption itself is a conditional UPDATE in the
store so concurrent sign-ups cannot overspend a code.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.access_store import AccessStore
from auth.identifiers import email_domain, normalize_email, normalize_phone
from auth.models import AuthorizationEntry, Channel, EntryStatus
from auth.notify import NotificationDispatcher
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("intranet.auth.authorization")

_INVITE_ALPHABET = string.ascii_uppercase + string.digits
_INVITE_LENGTH = 8
_INVITE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def random_invite_code() -> str:
    return "".join(secrets.choice(_INVITE_ALPHABET) for _ in range(_INVITE_LENGTH))


@dataclass(frozen=True)
class AuthorizationResult:
    authorized: bool
    status: EntryStatus
    message: str
    method: str | None = None  # admin, email, phone, domain, invite_code


@dataclass(frozen=True)
class OperationResult:
    success: bool
    message: str
    entry_id: int | None = None
    error: str | None = None  # invalid_input, not_found or conflict


@dataclass(frozen=True)
class InviteResult:
    success: bool
    message: str
    code: str | None = None
    expires_at: datetime | None = None
    max_uses: int | None = None


class AuthorizationGate:
    """Allow-list checks and administration.

    Usage:
        gate = AuthorizationGate(user_store, access_store, settings, dispatcher)
        result = gate.check_authorization(email="bob@acme.com")
        if not result.authorized and result.status is EntryStatus.REJECTED:
            gate.create_access_request(email="bob@acme.com")
    """

    def __init__(
        self,
        users: UserStore,
        entries: AccessStore,
        settings: Settings,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.entries = entries
        self.settings = settings
        self.dispatcher = dispatcher
        self._clock = clock
        # A malformed admin identity is a configuration error: fail at startup.
        self.admin_email = normalize_email(settings.admin_email)
        self.admin_phone = normalize_phone(settings.admin_phone)

    def is_admin_identity(self, email: str | None = None, phone: str | None = None) -> bool:
        return bool(
            (self.admin_email and email == self.admin_email) or (self.admin_phone and phone == self.admin_phone)
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_authorization(
        self, email: str | None = None, phone: str | None = None, invite_code: str | None = None
    ) -> AuthorizationResult:
        try:
            email = normalize_email(email)
            phone = normalize_phone(phone)
        except ValueError as e:
            return AuthorizationResult(False, EntryStatus.REJECTED, str(e))
        invite_code = (invite_code or "").strip().upper() or None

        if not email and not phone and not invite_code:
            return AuthorizationResult(False, EntryStatus.REJECTED, "No email, phone or invite code supplied.")

        if self.is_admin_identity(email, phone):
            return AuthorizationResult(True, EntryStatus.ACTIVE, "Administrator.", method="admin")

        user = self.users.get_by_email_or_phone(email, phone)
        if user is not None:
            method = "email" if email and user.email == email else "phone"
            return AuthorizationResult(True, EntryStatus.ACTIVE, "Registered active user.", method=method)

        if email and self.entries.find_by_email(email, status=EntryStatus.ACTIVE):
            return AuthorizationResult(True, EntryStatus.ACTIVE, "Authorized by email.", method="email")
        if phone and self.entries.find_by_phone(phone, status=EntryStatus.ACTIVE):
            return AuthorizationResult(True, EntryStatus.ACTIVE, "Authorized by phone.", method="phone")

        if email:
            domain = email_domain(email)
            if domain and self.entries.find_by_domain(domain, status=EntryStatus.ACTIVE):
                return AuthorizationResult(
                    True, EntryStatus.ACTIVE, f"Authorized by domain {domain}.", method="domain"
                )

        if invite_code:
            result = self._redeem_invite(invite_code)
            if result is not None:
                return result

        pending = self.entries.find_by_email_or_phone(email, phone, status=EntryStatus.PENDING)
        if pending is not None:
            return AuthorizationResult(
                False, EntryStatus.PENDING, "Access request awaiting approval.", method=pending.kind
            )

        return AuthorizationResult(False, EntryStatus.REJECTED, "Not authorized.")

    def _redeem_invite(self, code: str) -> AuthorizationResult | None:
        """Redeem one use of code. None means the code does not exist at all."""
        entry = self.entries.find_by_invite_code(code)
        if entry is None:
            return None
        expired = AuthorizationResult(False, EntryStatus.EXPIRED, "Invite code is no longer valid.", "invite_code")
        if entry.status != EntryStatus.ACTIVE:
            return expired
        now = self._clock()
        if entry.is_exhausted(now):
            self.entries.update_status(entry.id, EntryStatus.EXPIRED, [f"Expired {now.isoformat()}"])
            return expired
        if not self.entries.consume_invite(entry.id):
            return expired
        logger.info("Invite code %s redeemed (%d/%s)", code, entry.used_count + 1, entry.max_uses or "unlimited")
        return AuthorizationResult(True, EntryStatus.ACTIVE, "Authorized by invite code.", method="invite_code")

    # ------------------------------------------------------------------
    # Access requests
    # ------------------------------------------------------------------

    def create_access_request(
        self, email: str | None = None, phone: str | None = None, notes: str | None = None
    ) -> OperationResult:
        """Record a pending request. Repeating it never duplicates the entry."""
        try:
            email = normalize_email(email)
            phone = normalize_phone(phone)
        except ValueError as e:
            return OperationResult(False, str(e), error="invalid_input")
        if not email and not phone:
            return OperationResult(False, "An email or phone number is required.", error="invalid_input")

        note_lines = [notes] if notes else []
        existing = self.entries.find_by_email_or_phone(email, phone)
        if existing is not None:
            if existing.status == EntryStatus.ACTIVE:
                return OperationResult(False, "Already authorized.", existing.id, error="conflict")
            if existing.status == EntryStatus.PENDING:
                return OperationResult(False, "A request is already pending.", existing.id, error="conflict")
            self.entries.update_status(existing.id, EntryStatus.PENDING, note_lines)
            logger.info("Access request reopened for %s", existing.value)
            return OperationResult(True, "Access request reopened.", existing.id)

        # Email is the discriminant when both are given; keep the phone on record.
        if email and phone:
            note_lines.append(f"phone: {phone}")
        entry = AuthorizationEntry(
            email=email,
            phone=None if email else phone,
            status=EntryStatus.PENDING,
            notes=note_lines,
        )
        entry_id = self.entries.create_entry(entry)
        logger.info("Access request created for %s", entry.value)
        return OperationResult(True, "Access request created.", entry_id)

    def approve_request(self, entry_id: int, approved_by: str) -> OperationResult:
        return self._decide(entry_id, approved_by, approved=True)

    def reject_request(self, entry_id: int, rejected_by: str, reason: str | None = None) -> OperationResult:
        return self._decide(entry_id, rejected_by, approved=False, reason=reason)

    def _decide(self, entry_id: int, actor: str, approved: bool, reason: str | None = None) -> OperationResult:
        entry = self.entries.get_entry(entry_id)
        if entry is None:
            return OperationResult(False, "Entry not found.", error="not_found")
        if entry.status != EntryStatus.PENDING:
            return OperationResult(
                False, f"Only pending requests can be decided (status is {entry.status.value}).", error="conflict"
            )
        stamp = self._clock().isoformat()
        if approved:
            status, note = EntryStatus.ACTIVE, f"Approved by {actor} on {stamp}"
        else:
            status, note = EntryStatus.REJECTED, f"Rejected by {actor} on {stamp}. Reason: {reason or 'not given'}"
        self.entries.update_status(entry_id, status, [note])
        logger.info("Access request %d %s by %s", entry_id, status.value, actor)

        message = "Request approved." if approved else "Request rejected."
        if self.dispatcher is not None and (entry.email or entry.phone):
            channel = Channel.EMAIL if entry.email else Channel.SMS
            sent = self.dispatcher.send_access_decision(entry.value, channel, approved, reason)
            if not sent.success:
                message += " The requester could not be notified."
        return OperationResult(True, message, entry_id)

    # ------------------------------------------------------------------
    # Allow-list administration
    # ------------------------------------------------------------------

    def authorize_identity(
        self,
        email: str | None = None,
        phone: str | None = None,
        created_by: str | None = None,
        notes: str | None = None,
    ) -> OperationResult:
        """Allow an individual email and/or phone, reactivating old entries."""
        try:
            email = normalize_email(email)
            phone = normalize_phone(phone)
        except ValueError as e:
            return OperationResult(False, str(e), error="invalid_input")
        if not email and not phone:
            return OperationResult(False, "An email or phone number is required.", error="invalid_input")

        note_lines = [notes] if notes else []
        changed: list[int] = []
        for kind, value in (("email", email), ("phone", phone)):
            if not value:
                continue
            finder = self.entries.find_by_email if kind == "email" else self.entries.find_by_phone
            existing = finder(value)
            if existing is None:
                changed.append(
                    self.entries.create_entry(
                        AuthorizationEntry(
                            status=EntryStatus.ACTIVE, created_by=created_by, notes=note_lines, **{kind: value}
                        )
                    )
                )
            elif existing.status != EntryStatus.ACTIVE:
                self.entries.update_status(existing.id, EntryStatus.ACTIVE, note_lines)
                changed.append(existing.id)
        if not changed:
            return OperationResult(False, "Already authorized.", error="conflict")
        return OperationResult(True, "Authorized.", changed[0])

    def add_authorized_domain(
        self, domain: str, created_by: str | None = None, notes: str | None = None
    ) -> OperationResult:
        domain = (domain or "").strip().lower().lstrip("@")
        if not domain or "." not in domain or "@" in domain:
            return OperationResult(False, f"Invalid domain: {domain!r}", error="invalid_input")
        note_lines = [notes] if notes else []
        existing = self.entries.find_by_domain(domain)
        if existing is not None:
            if existing.status == EntryStatus.ACTIVE:
                return OperationResult(False, "Domain already authorized.", existing.id, error="conflict")
            self.entries.update_status(existing.id, EntryStatus.ACTIVE, note_lines)
            return OperationResult(True, "Domain reactivated.", existing.id)
        entry_id = self.entries.create_entry(
            AuthorizationEntry(domain=domain, status=EntryStatus.ACTIVE, created_by=created_by, notes=note_lines)
        )
        return OperationResult(True, "Domain authorized.", entry_id)

    def generate_invite_code(
        self,
        created_by: str | None = None,
        notes: str | None = None,
        expiry_days: int | None = None,
        max_uses: int | None = None,
    ) -> InviteResult:
        """Create an invite code, giving up after five collisions."""
        days = expiry_days or self.settings.invite_expiry_days
        uses = max_uses or self.settings.invite_max_uses
        expires_at = self._clock() + timedelta(days=days)
        for _ in range(_INVITE_ATTEMPTS):
            code = random_invite_code()
            if self.entries.invite_code_exists(code):
                continue
            entry = AuthorizationEntry(
                invite_code=code,
                status=EntryStatus.ACTIVE,
                expires_at=expires_at,
                max_uses=uses,
                created_by=created_by,
                notes=[notes] if notes else [],
            )
            try:
                self.entries.create_entry(entry)
            except IntegrityError:
                # Lost a race with a concurrent generator for the same code.
                continue
            logger.info("Invite code created by %s (expires %s, %d uses)", created_by, expires_at, uses)
            return InviteResult(
                True,
                f"Invite code created. Expires in {days} days, usable {uses} time(s).",
                code=code,
                expires_at=expires_at,
                max_uses=uses,
            )
        logger.error("Could not generate a unique invite code after %d attempts", _INVITE_ATTEMPTS)
        return InviteResult(False, "Could not generate a unique invite code.")

    def list_entries(self, status: EntryStatus | None = None) -> list[AuthorizationEntry]:
        return self.entries.list_entries(status)

    def remove_entry(self, entry_id: int) -> bool:
        return self.entries.delete_entry(entry_id)
