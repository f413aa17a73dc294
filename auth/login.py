"""
auth/login.py -- Login orchestration: one-time codes, passwords, lockout.

LoginService ties the other auth pieces together and is the only thing the
HTTP layer calls for sign-in. It never touches SQL: every read and write goes
through UserStore, the AuthorizationGate and the CodeRegistry.

Flows:

  initiate_login(email/phone)      -> HAS_PASSWORD | NEEDS_CODE | denial
  complete_login(email/phone, code)-> AUTHENTICATED | NEEDS_REGISTRATION | denial
  login_with_password(id, pw)      -> AUTHENTICATED | LOCKED | WRONG_PASSWORD | ...
  register(...)                    -> AUTHENTICATED (after NEEDS_REGISTRATION)

Every public method returns a LoginResult and never raises. Unexpected
failures (database unavailable, a bug) are logged with the traceback and
reported as INTERNAL_ERROR so the request handler gets a normal value back.

Security notes:
  NOT_FOUND and WRONG_PASSWORD carry the same human message, and a missing
  user still costs one bcrypt comparison, so neither the text nor the timing
  tells a caller whether an account exists.

  The failure counter is incremented in SQL (UserStore.record_failed_login),
  so concurrent wrong passwords cannot under-count.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import functools
import hmac
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy.exc import IntegrityError

from auth.authorization import AuthorizationGate
from auth.codes import CodeRegistry
from auth.identifiers import looks_like_email, normalize_email, normalize_phone
from auth.models import Channel, EntryStatus, Role, User
from auth.notify import NotificationDispatcher
from auth.store import UserStore
from auth.tokens import (
    BCRYPT_MAX_BYTES,
    TokenService,
    burn_password_check,
    hash_code,
    hash_password,
    verify_password,
)
from core.config import Settings

logger = logging.getLogger("intranet.auth.login")

_INVALID_CREDENTIALS = "Invalid credentials."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoginStatus(str, Enum):
    HAS_PASSWORD = "HAS_PASSWORD"
    NEEDS_CODE = "NEEDS_CODE"
    NEEDS_REGISTRATION = "NEEDS_REGISTRATION"
    LOCKED = "LOCKED"
    INACTIVE = "INACTIVE"
    UNAUTHORIZED_PENDING = "UNAUTHORIZED_PENDING"
    UNAUTHORIZED_REJECTED = "UNAUTHORIZED_REJECTED"
    AUTHENTICATED = "AUTHENTICATED"
    PASSWORD_UPDATED = "PASSWORD_UPDATED"
    NOT_FOUND = "NOT_FOUND"
    NO_PASSWORD_SET = "NO_PASSWORD_SET"
    WRONG_PASSWORD = "WRONG_PASSWORD"
    INVALID_CODE = "INVALID_CODE"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class LoginResult:
    status: LoginStatus
    message: str
    user: User | None = None
    token: str | None = None
    channel: Channel | None = None
    preview_url: str | None = None
    dev_code: str | None = None  # only ever set in debug mode
    requires_password: bool = False
    password_expired: bool = False
    attempts: int | None = None
    max_attempts: int | None = None
    lock_expires: datetime | None = None
    remaining_minutes: int | None = None


def _internal_errors(method):
    """Turn any unexpected exception into an INTERNAL_ERROR result."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except Exception:
            logger.exception("Unexpected error in %s", method.__name__)
            return LoginResult(LoginStatus.INTERNAL_ERROR, "Something went wrong. Please try again.")

    return wrapper


def _remaining_minutes(until: datetime, now: datetime) -> int:
    return max(1, math.ceil((until - now).total_seconds() / 60))


class LoginService:
    """Sign-in orchestration over the auth stores and services.

    Usage:
        service = LoginService(users, gate, codes, dispatcher, tokens, settings)
        result = service.initiate_login(email="ana@corp.com")
        if result.status is LoginStatus.NEEDS_CODE:
            result = service.complete_login(email="ana@corp.com", code="482913")
    """

    def __init__(
        self,
        users: UserStore,
        gate: AuthorizationGate,
        codes: CodeRegistry,
        dispatcher: NotificationDispatcher,
        tokens: TokenService,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.gate = gate
        self.codes = codes
        self.dispatcher = dispatcher
        self.tokens = tokens
        self.settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # One-time code flow
    # ------------------------------------------------------------------

    @_internal_errors
    def initiate_login(
        self, phone: str | None = None, email: str | None = None, invite_code: str | None = None
    ) -> LoginResult:
        try:
            email, phone = normalize_email(email), normalize_phone(phone)
        except ValueError as e:
            return LoginResult(LoginStatus.INVALID_INPUT, str(e))
        if not email and not phone:
            return LoginResult(LoginStatus.INVALID_INPUT, "An email or phone number is required.")

        user = self._resolve(email, phone)
        if user is not None and user.hashed_password:
            return LoginResult(LoginStatus.HAS_PASSWORD, "Enter your password.", user=user)

        is_admin = self.gate.is_admin_identity(email, phone)
        if is_admin and self.settings.admin_password:
            return LoginResult(LoginStatus.HAS_PASSWORD, "Enter your password.", user=user)

        if user is None:
            auth = self.gate.check_authorization(email, phone, invite_code)
            if not auth.authorized:
                if auth.status == EntryStatus.PENDING:
                    return LoginResult(LoginStatus.UNAUTHORIZED_PENDING, "Your access request is awaiting approval.")
                self.gate.create_access_request(email, phone)
                return LoginResult(
                    LoginStatus.UNAUTHORIZED_REJECTED,
                    "You are not authorized yet. An access request has been sent to the administrators.",
                )
            user = self._create_provisional(email, phone, Role.ADMIN if is_admin else Role.USER, auth.method)
        elif not user.is_active:
            return LoginResult(LoginStatus.INACTIVE, "This account has been deactivated.")

        channel, target = self._pick_channel(user, email)
        issued = self.codes.register(target, channel)
        # Marks provisional users active before delivery, so a failed send
        # cannot leave them stuck as INACTIVE.
        self.users.set_one_time_code(user.id, hash_code(issued.code, self.settings.secret_key), issued.expires_at)
        sent = self.dispatcher.send_code(target, issued.code, channel)
        if not sent.success:
            return LoginResult(LoginStatus.DISPATCH_FAILED, sent.message, user=user, channel=channel)
        return LoginResult(
            LoginStatus.NEEDS_CODE,
            f"A verification code was sent by {channel.value}.",
            user=user,
            channel=channel,
            preview_url=sent.preview_url,
            dev_code=issued.code if self.settings.debug else None,
        )

    @_internal_errors
    def complete_login(
        self,
        phone: str | None = None,
        email: str | None = None,
        code: str | None = None,
        invite_code: str | None = None,
    ) -> LoginResult:
        try:
            email, phone = normalize_email(email), normalize_phone(phone)
        except ValueError as e:
            return LoginResult(LoginStatus.INVALID_INPUT, str(e))
        if not email and not phone:
            return LoginResult(LoginStatus.INVALID_INPUT, "An email or phone number is required.")
        if not code:
            return LoginResult(LoginStatus.INVALID_INPUT, "A verification code is required.")

        user = self._resolve(email, phone)
        if user is None:
            # Checked without the invite so the code is only spent by register().
            auth = self.gate.check_authorization(email, phone)
            if auth.authorized or invite_code:
                return LoginResult(LoginStatus.NEEDS_REGISTRATION, "Complete your registration to continue.")
            if auth.status == EntryStatus.PENDING:
                return LoginResult(LoginStatus.UNAUTHORIZED_PENDING, "Your access request is awaiting approval.")
            return LoginResult(LoginStatus.UNAUTHORIZED_REJECTED, "You are not authorized to sign in.")
        if not user.is_active:
            return LoginResult(LoginStatus.INACTIVE, "This account has been deactivated.")

        channel, target = self._pick_channel(user, email)
        if not self.codes.verify(target, code, channel):
            return LoginResult(LoginStatus.INVALID_CODE, "The code is invalid or has expired.")

        self.users.clear_one_time_code(user.id)
        self.users.update_last_login(user.id)
        self.users.append_history(user.id, "LOGIN", f"one-time code via {channel.value}")
        logger.info("User %d signed in with a %s code", user.id, channel.value)
        return LoginResult(
            LoginStatus.AUTHENTICATED,
            "Signed in.",
            user=user,
            token=self.tokens.issue(user),
            channel=channel,
            requires_password=not user.hashed_password,
        )

    # ------------------------------------------------------------------
    # Password flow
    # ------------------------------------------------------------------

    @_internal_errors
    def login_with_password(self, identifier: str | None, password: str | None) -> LoginResult:
        if not identifier or not password:
            return LoginResult(LoginStatus.INVALID_INPUT, "Identifier and password are required.")
        try:
            email, phone = self._split_identifier(identifier)
        except ValueError as e:
            return LoginResult(LoginStatus.INVALID_INPUT, str(e))

        if (
            self.settings.admin_password
            and self.gate.is_admin_identity(email, phone)
            and hmac.compare_digest(password.encode(), self.settings.admin_password.encode())
        ):
            return self._admin_login(email, phone, password)

        user = self.users.get_by_email_or_phone(email, phone, include_inactive=True)
        if user is None:
            burn_password_check(password)
            return LoginResult(LoginStatus.NOT_FOUND, _INVALID_CREDENTIALS)
        if not user.hashed_password:
            return LoginResult(LoginStatus.NO_PASSWORD_SET, "No password is set. Sign in with a code instead.")
        if not user.is_active:
            return LoginResult(LoginStatus.INACTIVE, "This account has been deactivated.")

        now = self._clock()
        if user.is_locked(now):
            minutes = _remaining_minutes(user.lock_until, now)
            return LoginResult(
                LoginStatus.LOCKED,
                f"Account locked. Try again in {minutes} minute(s).",
                lock_expires=user.lock_until,
                remaining_minutes=minutes,
            )
        if user.lock_until is not None:
            # The previous lock has run out: start counting from zero again.
            self.users.reset_failed_logins(user.id)

        max_attempts = self.settings.max_login_attempts
        if not verify_password(password, user.hashed_password):
            attempts = self.users.record_failed_login(user.id)
            if attempts >= max_attempts:
                until = now + timedelta(minutes=self.settings.lock_minutes)
                self.users.lock_account(user.id, until)
                self.users.append_history(user.id, "ACCOUNT_LOCKED", f"{attempts} failed password attempts")
                logger.warning("Locked user %d after %d failed password attempts", user.id, attempts)
                return LoginResult(
                    LoginStatus.LOCKED,
                    f"Too many failed attempts. Account locked for {self.settings.lock_minutes} minutes.",
                    attempts=attempts,
                    max_attempts=max_attempts,
                    lock_expires=until,
                    remaining_minutes=self.settings.lock_minutes,
                )
            return LoginResult(
                LoginStatus.WRONG_PASSWORD, _INVALID_CREDENTIALS, attempts=attempts, max_attempts=max_attempts
            )

        self.users.reset_failed_logins(user.id)
        self.users.update_last_login(user.id)
        self.users.append_history(user.id, "LOGIN", "password")
        return LoginResult(
            LoginStatus.AUTHENTICATED,
            "Signed in.",
            user=user,
            token=self.tokens.issue(user),
            password_expired=self.is_password_expired(user),
        )

    def _admin_login(self, email: str | None, phone: str | None, password: str) -> LoginResult:
        """Configured administrator: upsert the account and sign in."""
        user = self.users.get_by_email_or_phone(email, phone, include_inactive=True)
        if user is None:
            user_id = self.users.create_user(
                User(
                    email=email,
                    phone=phone,
                    role=Role.ADMIN,
                    hashed_password=hash_password(password),
                    password_last_changed=self._clock(),
                )
            )
            self.users.append_history(user_id, "CREATED", "administrator bootstrap")
            logger.info("Created administrator account %d", user_id)
        else:
            user_id = user.id
            self.users.update_user(user_id, role=Role.ADMIN, is_active=True)
            if not user.hashed_password or not verify_password(password, user.hashed_password):
                self.users.set_password(user_id, hash_password(password))
        self.users.reset_failed_logins(user_id)
        self.users.update_last_login(user_id)
        self.users.append_history(user_id, "LOGIN", "administrator password")
        user = self.users.get_by_id(user_id)
        return LoginResult(LoginStatus.AUTHENTICATED, "Signed in.", user=user, token=self.tokens.issue(user))

    # ------------------------------------------------------------------
    # Registration and password management
    # ------------------------------------------------------------------

    @_internal_errors
    def register(
        self,
        email: str | None = None,
        phone: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        password: str | None = None,
        invite_code: str | None = None,
    ) -> LoginResult:
        """Create an account for an authorized identity and sign it in."""
        try:
            email, phone = normalize_email(email), normalize_phone(phone)
        except ValueError as e:
            return LoginResult(LoginStatus.INVALID_INPUT, str(e))
        if not email and not phone:
            return LoginResult(LoginStatus.INVALID_INPUT, "An email or phone number is required.")
        problem = self._password_problem(password)
        if problem:
            return LoginResult(LoginStatus.INVALID_INPUT, problem)
        if self.users.get_by_email_or_phone(email, phone, include_inactive=True) is not None:
            return LoginResult(LoginStatus.INVALID_INPUT, "An account already exists. Sign in instead.")

        auth = self.gate.check_authorization(email, phone, invite_code)
        if not auth.authorized:
            if auth.status == EntryStatus.PENDING:
                return LoginResult(LoginStatus.UNAUTHORIZED_PENDING, "Your access request is awaiting approval.")
            return LoginResult(LoginStatus.UNAUTHORIZED_REJECTED, auth.message)

        role = Role.ADMIN if self.gate.is_admin_identity(email, phone) else Role.USER
        try:
            user_id = self.users.create_user(
                User(
                    email=email,
                    phone=phone,
                    first_name=first_name,
                    last_name=last_name,
                    role=role,
                    hashed_password=hash_password(password),
                    password_last_changed=self._clock(),
                )
            )
        except IntegrityError:
            return LoginResult(LoginStatus.INVALID_INPUT, "An account already exists. Sign in instead.")
        self.users.append_history(user_id, "CREATED", f"registered ({auth.method})")
        self.users.append_history(user_id, "LOGIN", "registration")
        self.users.update_last_login(user_id)
        user = self.users.get_by_id(user_id)
        logger.info("Registered user %d via %s", user_id, auth.method)
        return LoginResult(LoginStatus.AUTHENTICATED, "Account created.", user=user, token=self.tokens.issue(user))

    @_internal_errors
    def set_password(self, user_id: int, password: str | None) -> LoginResult:
        """First password for an account that so far only used codes."""
        user = self.users.get_by_id(user_id)
        if user is None:
            return LoginResult(LoginStatus.NOT_FOUND, "User not found.")
        if user.hashed_password:
            return LoginResult(LoginStatus.INVALID_INPUT, "A password is already set. Use change password instead.")
        problem = self._password_problem(password)
        if problem:
            return LoginResult(LoginStatus.INVALID_INPUT, problem)
        self.users.set_password(user_id, hash_password(password))
        self.users.append_history(user_id, "PASSWORD_SET")
        return LoginResult(LoginStatus.PASSWORD_UPDATED, "Password set.", user=self.users.get_by_id(user_id))

    @_internal_errors
    def change_password(self, user_id: int, current: str | None, new: str | None) -> LoginResult:
        user = self.users.get_by_id(user_id)
        if user is None:
            return LoginResult(LoginStatus.NOT_FOUND, "User not found.")
        if not user.hashed_password:
            return LoginResult(LoginStatus.NO_PASSWORD_SET, "No password is set yet.")
        if not current or not verify_password(current, user.hashed_password):
            return LoginResult(LoginStatus.WRONG_PASSWORD, "Current password is incorrect.")
        problem = self._password_problem(new)
        if problem:
            return LoginResult(LoginStatus.INVALID_INPUT, problem)
        if new == current:
            return LoginResult(LoginStatus.INVALID_INPUT, "The new password must differ from the current one.")
        self.users.set_password(user_id, hash_password(new))
        self.users.append_history(user_id, "PASSWORD_CHANGED")
        return LoginResult(LoginStatus.PASSWORD_UPDATED, "Password changed.", user=self.users.get_by_id(user_id))

    @_internal_errors
    def refresh_token(self, user_id: int) -> LoginResult:
        """Issue a fresh token from the stored account, so role changes take effect."""
        user = self.users.get_by_id(user_id)
        if user is None:
            return LoginResult(LoginStatus.NOT_FOUND, "User not found.")
        if not user.is_active:
            return LoginResult(LoginStatus.INACTIVE, "This account has been deactivated.")
        return LoginResult(
            LoginStatus.AUTHENTICATED,
            "Token refreshed.",
            user=user,
            token=self.tokens.issue(user),
            password_expired=self.is_password_expired(user),
        )

    def is_password_expired(self, user: User) -> bool:
        """Passwords older than password_expiry_days must be changed. Admins are exempt."""
        if user.role == Role.ADMIN or not user.hashed_password:
            return False
        if user.password_last_changed is None:
            return True
        expires = user.password_last_changed + timedelta(days=self.settings.password_expiry_days)
        return self._clock() > expires

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(self, email: str | None, phone: str | None) -> User | None:
        """Email first, then phone, then either; inactive users included."""
        if email:
            user = self.users.get_by_email(email, include_inactive=True)
            if user is not None:
                return user
        if phone:
            user = self.users.get_by_phone(phone, include_inactive=True)
            if user is not None:
                return user
        return self.users.get_by_email_or_phone(email, phone, include_inactive=True)

    def _create_provisional(self, email: str | None, phone: str | None, role: Role, method: str | None) -> User:
        try:
            user_id = self.users.create_user(User(email=email, phone=phone, role=role, is_active=False))
        except IntegrityError:
            # A concurrent request created the same identity first.
            user = self._resolve(email, phone)
            if user is None:
                raise
            return user
        self.users.append_history(user_id, "CREATED", f"provisional ({method})")
        logger.info("Created provisional user %d (%s)", user_id, method)
        return self.users.get_by_id(user_id)

    @staticmethod
    def _pick_channel(user: User, email: str | None) -> tuple[Channel, str]:
        if email and user.email == email:
            return Channel.EMAIL, user.email
        if user.phone:
            return Channel.SMS, user.phone
        return Channel.EMAIL, user.email

    @staticmethod
    def _split_identifier(identifier: str) -> tuple[str | None, str | None]:
        if looks_like_email(identifier):
            return normalize_email(identifier), None
        return None, normalize_phone(identifier)

    def _password_problem(self, password: str | None) -> str | None:
        minimum = self.settings.min_password_length
        if not password or len(password) < minimum:
            return f"Password must be at least {minimum} characters."
        if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
            return f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded."
        return None
