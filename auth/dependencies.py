"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The token is read from, in priority order:
  1. the "access_token" cookie -- set by the login routes for browsers.
  2. the Authorization header  -- "Bearer <token>", a bare JWT, or a token
     carrying the identity provider's prefix.

TokenService.verify() decides what the token is. Tokens we issued resolve to
a live User row (so deactivation and role changes apply immediately); tokens
from the external identity provider resolve to a Principal with no local
user attached.

try_get_principal() is the soft variant (returns None on failure).
get_principal() raises HTTP 401. get_current_user() additionally requires a
local portal account. require_admin() / require_manager() raise HTTP 403 on
insufficient role.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import Role, User
from auth.tokens import TokenPayload, extract_token_from_header

COOKIE_NAME = "access_token"


@dataclass(frozen=True)
class Principal:
    """Whoever a verified token speaks for."""

    payload: TokenPayload
    user: User | None = None

    @property
    def role(self) -> Role:
        return self.user.role if self.user is not None else self.payload.role

    @property
    def name(self) -> str:
        return self.user.identifier if self.user is not None else self.payload.identifier


def set_auth_cookie(response, token: str, max_age: int, secure: bool) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request. Never raises; None means anonymous."""
    state = request.app.state
    token: str | None = request.cookies.get(COOKIE_NAME)
    if not token:
        token = extract_token_from_header(
            request.headers.get("Authorization"), state.settings.external_token_prefix
        )
    payload = state.token_service.verify(token)
    if payload is None:
        return None
    if payload.source != "internal-jwt":
        return Principal(payload=payload)
    user = state.user_store.get_by_id(payload.user_id)
    if user is None or not user.is_active:
        return None
    return Principal(payload=payload, user=user)


def get_principal(request: Request) -> Principal:
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def get_current_user(request: Request) -> User:
    """Require a signed-in portal account.

    Use as a FastAPI dependency:
        @router.get("/me")
        async def route(user: User = Depends(get_current_user)): ...
    """
    principal = get_principal(request)
    if principal.user is None:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "A portal account is required."},
        )
    return principal.user


def _require_roles(request: Request, roles: set[Role], label: str) -> Principal:
    principal = get_principal(request)
    if principal.role not in roles:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": f"{label} access required."},
        )
    return principal


def require_admin(request: Request) -> Principal:
    return _require_roles(request, {Role.ADMIN}, "Admin")


def require_manager(request: Request) -> Principal:
    """Managers and admins."""
    return _require_roles(request, {Role.ADMIN, Role.MANAGER}, "Manager")
