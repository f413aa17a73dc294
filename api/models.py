"""
API request and response models for the intranet auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Identifier fields are only trimmed here. Canonical normalization (lower-cased
emails, digits-only phones) happens once, in auth/identifiers.py, so the
services report malformed identifiers as INVALID_INPUT results.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auth.login import LoginResult
from auth.models import AccessEvent, AuthorizationEntry, EntryStatus, Role, User

# ---------------------------------------------------------------------------
# Request models -- login
# ---------------------------------------------------------------------------


class _IdentityRequest(BaseModel):
    """Base for bodies that name a person by email and/or phone."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def require_identifier(self):
        if not self.email and not self.phone:
            raise ValueError("Provide an email or a phone number.")
        return self


class LoginInitiateRequest(_IdentityRequest):
    """Request body for POST /api/v1/auth/login/initiate."""

    invite_code: Optional[str] = Field(default=None, max_length=16)


class LoginVerifyRequest(_IdentityRequest):
    """Request body for POST /api/v1/auth/login/verify."""

    code: str = Field(min_length=6, max_length=6, pattern=r"^[0-9]{6}$")
    invite_code: Optional[str] = Field(default=None, max_length=16)


class PasswordLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login/password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255)
    # 72 bytes is bcrypt's effective maximum.
    password: str = Field(min_length=1, max_length=72)


class RegisterRequest(_IdentityRequest):
    """Request body for POST /api/v1/auth/register."""

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    password: str = Field(min_length=1, max_length=72)
    invite_code: Optional[str] = Field(default=None, max_length=16)


class SetPasswordRequest(BaseModel):
    password: str = Field(min_length=1, max_length=72)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=72)
    new_password: str = Field(min_length=1, max_length=72)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[Role] = None
    is_active: Optional[bool] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


# ---------------------------------------------------------------------------
# Request models -- access management
# ---------------------------------------------------------------------------


class AccessRequestCreate(_IdentityRequest):
    """Request body for POST /api/v1/access/requests (public)."""

    notes: Optional[str] = Field(default=None, max_length=500)


class AuthorizeIdentityRequest(_IdentityRequest):
    """Request body for POST /api/v1/access/entries."""

    notes: Optional[str] = Field(default=None, max_length=500)


class DomainCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    domain: str = Field(min_length=3, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=500)


class InviteCreate(BaseModel):
    """Request body for POST /api/v1/access/invites. Omitted fields use settings defaults."""

    notes: Optional[str] = Field(default=None, max_length=500)
    expiry_days: Optional[int] = Field(default=None, ge=1, le=365)
    max_uses: Optional[int] = Field(default=None, ge=1, le=1000)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user account. Never includes hashes or codes."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    phone: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    role: Role
    is_active: bool
    has_password: bool
    locked_until: Optional[datetime]
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            phone=user.phone,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            has_password=bool(user.hashed_password),
            locked_until=user.lock_until,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class LoginResponse(BaseModel):
    """Body of every login-flow response, successful or not.

    status is the machine-readable outcome (LoginStatus value); message is
    suitable for direct display. Other fields are present only when they
    apply to that status.
    """

    model_config = ConfigDict(frozen=True)

    status: str
    message: str
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    user: Optional[UserResponse] = None
    channel: Optional[str] = None
    preview_url: Optional[str] = None
    dev_code: Optional[str] = None
    requires_password: bool = False
    password_expired: bool = False
    attempts: Optional[int] = None
    max_attempts: Optional[int] = None
    lock_expires: Optional[datetime] = None
    remaining_minutes: Optional[int] = None

    @classmethod
    def from_result(cls, result: LoginResult, expires_in: int) -> "LoginResponse":
        return cls(
            status=result.status.value,
            message=result.message,
            access_token=result.token,
            token_type="bearer" if result.token else None,  # noqa: S106 # nosec B106
            expires_in=expires_in if result.token else None,
            user=UserResponse.from_user(result.user) if result.user is not None and result.token else None,
            channel=result.channel.value if result.channel else None,
            preview_url=result.preview_url,
            dev_code=result.dev_code,
            requires_password=result.requires_password,
            password_expired=result.password_expired,
            attempts=result.attempts,
            max_attempts=result.max_attempts,
            lock_expires=result.lock_expires,
            remaining_minutes=result.remaining_minutes,
        )


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int | str
    identifier: str
    role: Role
    source: str
    user: Optional[UserResponse] = None


class TokenCheckResponse(BaseModel):
    """Response for GET /api/v1/auth/verify-token."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    user_id: Optional[int | str] = None
    identifier: Optional[str] = None
    role: Optional[Role] = None
    source: Optional[str] = None
    expires_at: Optional[datetime] = None


class AccessEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: Optional[datetime]
    action: str
    detail: str

    @classmethod
    def from_event(cls, event: AccessEvent) -> "AccessEventResponse":
        return cls(timestamp=event.timestamp, action=event.action, detail=event.detail)


class EntryResponse(BaseModel):
    """One authorization entry (individual, domain, invite or request)."""

    model_config = ConfigDict(frozen=True)

    id: int
    kind: str
    value: str
    status: EntryStatus
    created_at: Optional[datetime]
    expires_at: Optional[datetime]
    max_uses: Optional[int]
    used_count: int
    notes: list[str]
    created_by: Optional[str]

    @classmethod
    def from_entry(cls, entry: AuthorizationEntry) -> "EntryResponse":
        return cls(
            id=entry.id,
            kind=entry.kind,
            value=entry.value,
            status=entry.status,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
            max_uses=entry.max_uses,
            used_count=entry.used_count,
            notes=list(entry.notes),
            created_by=entry.created_by,
        )


class OperationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    entry_id: Optional[int] = None


class InviteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    expires_at: datetime
    max_uses: int
    message: str


class DebugCodeRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    channel: str
    code: str
    expires_at: datetime


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
