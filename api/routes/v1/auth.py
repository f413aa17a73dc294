"""
api/routes/v1/auth.py -- Sign-in, session and user management REST endpoints.

Routes:
  POST  /api/v1/auth/login/initiate      -- start sign-in; sends a code or asks for a password
  POST  /api/v1/auth/login/verify        -- finish code sign-in; sets JWT cookie
  POST  /api/v1/auth/login/password      -- password sign-in; sets JWT cookie
  POST  /api/v1/auth/register            -- create an account after NEEDS_REGISTRATION
  POST  /api/v1/auth/password            -- first password after code sign-in (requires auth)
  POST  /api/v1/auth/change-password     -- change password (requires auth)
  POST  /api/v1/auth/token-refresh       -- fresh token for a live session; resets the cookie
  POST  /api/v1/auth/logout              -- clears cookie; 200
  GET   /api/v1/auth/me                  -- current principal (requires auth)
  GET   /api/v1/auth/verify-token        -- token introspection for other intranet apps
  GET   /api/v1/auth/history             -- caller's own access history (requires auth)
  GET   /api/v1/auth/users               -- list all users (admin only)
  PATCH /api/v1/auth/users/{id}          -- update role/is_active/name (admin only)
  GET   /api/v1/auth/users/{id}/history  -- a user's access history (admin only)

Every login-flow route answers with LoginResponse: the LoginStatus value, a
display message, and the fields that status carries. The HTTP status code
comes from _STATUS_CODES below and nowhere else.

Security:
  Sign-in routes are rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  NOT_FOUND and WRONG_PASSWORD share a message and both answer 401.
  PATCH /users/{id} blocks self-deactivation and removing the last admin.
  Cache-Control: no-store on every login-flow response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccessEventResponse,
    ChangePasswordRequest,
    LoginInitiateRequest,
    LoginResponse,
    LoginVerifyRequest,
    MeResponse,
    PasswordLoginRequest,
    RegisterRequest,
    SetPasswordRequest,
    TokenCheckResponse,
    UserPatch,
    UserResponse,
)
from auth.dependencies import (
    COOKIE_NAME,
    Principal,
    get_current_user,
    get_principal,
    require_admin,
    set_auth_cookie,
    try_get_principal,
)
from auth.login import LoginResult, LoginService, LoginStatus
from auth.models import Role, User
from auth.store import UserStore

# Auth policy:
# - POST  /auth/login/*, /auth/register:  public -- these are how a session starts
# - POST  /auth/logout:                   public -- clearing a cookie needs no prior auth
# - GET   /auth/verify-token:             public -- answers valid=false for bad tokens
# - POST  /auth/password, change-password, token-refresh, GET /auth/me, /auth/history: requires auth
# - GET   /auth/users, PATCH /auth/users/{id}, GET /auth/users/{id}/history: admin only
router = APIRouter()

_STATUS_CODES: dict[LoginStatus, int] = {
    LoginStatus.HAS_PASSWORD: 200,
    LoginStatus.NEEDS_CODE: 200,
    LoginStatus.NEEDS_REGISTRATION: 200,
    LoginStatus.AUTHENTICATED: 200,
    LoginStatus.PASSWORD_UPDATED: 200,
    LoginStatus.INVALID_INPUT: 400,
    LoginStatus.NO_PASSWORD_SET: 400,
    LoginStatus.NOT_FOUND: 401,
    LoginStatus.WRONG_PASSWORD: 401,
    LoginStatus.INVALID_CODE: 401,
    LoginStatus.INACTIVE: 403,
    LoginStatus.UNAUTHORIZED_PENDING: 403,
    LoginStatus.UNAUTHORIZED_REJECTED: 403,
    LoginStatus.LOCKED: 423,
    LoginStatus.INTERNAL_ERROR: 500,
    LoginStatus.DISPATCH_FAILED: 502,
}


def _login_service(request: Request) -> LoginService:
    return request.app.state.login_service


def _respond(request: Request, result: LoginResult) -> JSONResponse:
    """Render a LoginResult, setting the session cookie when a token was issued."""
    settings = request.app.state.settings
    expires_in = request.app.state.token_service.expire_seconds
    resp = JSONResponse(
        status_code=_STATUS_CODES[result.status],
        content=LoginResponse.from_result(result, expires_in).model_dump(mode="json"),
    )
    if result.token:
        set_auth_cookie(resp, result.token, max_age=expires_in, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login/initiate", response_model=LoginResponse)
def login_initiate(request: Request, body: LoginInitiateRequest) -> JSONResponse:
    """First sign-in step: password prompt, code dispatch, or a denial."""
    result = _login_service(request).initiate_login(
        phone=body.phone, email=body.email, invite_code=body.invite_code
    )
    return _respond(request, result)


@limiter.limit(login_rate_limit)
@router.post("/auth/login/verify", response_model=LoginResponse)
def login_verify(request: Request, body: LoginVerifyRequest) -> JSONResponse:
    """Exchange a one-time code for a session."""
    result = _login_service(request).complete_login(
        phone=body.phone, email=body.email, code=body.code, invite_code=body.invite_code
    )
    return _respond(request, result)


@limiter.limit(login_rate_limit)
@router.post("/auth/login/password", response_model=LoginResponse)
def login_password(request: Request, body: PasswordLoginRequest) -> JSONResponse:
    """Password sign-in with lockout after repeated failures."""
    result = _login_service(request).login_with_password(body.identifier, body.password)
    return _respond(request, result)


@limiter.limit(login_rate_limit)
@router.post("/auth/register", response_model=LoginResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account for an authorized identity and sign it in."""
    result = _login_service(request).register(
        email=body.email,
        phone=body.phone,
        first_name=body.first_name,
        last_name=body.last_name,
        password=body.password,
        invite_code=body.invite_code,
    )
    return _respond(request, result)


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(COOKIE_NAME)
    return resp


@router.get("/auth/verify-token", response_model=TokenCheckResponse)
def verify_token(request: Request) -> TokenCheckResponse:
    """Tell another intranet app whether the caller's token is good."""
    principal = try_get_principal(request)
    if principal is None:
        return TokenCheckResponse(valid=False)
    return TokenCheckResponse(
        valid=True,
        user_id=principal.payload.user_id,
        identifier=principal.name,
        role=principal.role,
        source=principal.payload.source,
        expires_at=principal.payload.expires_at,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(get_principal)) -> MeResponse:
    """Return identity information for the authenticated caller."""
    return MeResponse(
        user_id=principal.payload.user_id,
        identifier=principal.name,
        role=principal.role,
        source=principal.payload.source,
        user=UserResponse.from_user(principal.user) if principal.user is not None else None,
    )


@router.post("/auth/password", response_model=LoginResponse)
def set_password(
    request: Request,
    body: SetPasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Set the first password after a code sign-in (requires_password=true)."""
    return _respond(request, _login_service(request).set_password(current_user.id, body.password))


@router.post("/auth/change-password", response_model=LoginResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    result = _login_service(request).change_password(current_user.id, body.current_password, body.new_password)
    return _respond(request, result)


@router.post("/auth/token-refresh", response_model=LoginResponse)
def token_refresh(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Swap a live token for a new one with a full lifetime.

    The account is reloaded, so a deactivated user gets 401 and a changed role
    shows up in the new token.
    """
    return _respond(request, _login_service(request).refresh_token(current_user.id))


@router.get("/auth/history", response_model=list[AccessEventResponse])
def my_history(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    current_user: User = Depends(get_current_user),
) -> list[AccessEventResponse]:
    user_store: UserStore = request.app.state.user_store
    return [AccessEventResponse.from_event(e) for e in user_store.list_history(current_user.id, limit)]


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    principal: Principal = Depends(require_admin),
) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    principal: Principal = Depends(require_admin),
) -> UserResponse:
    """Update a user's role, active status or name. Admin only.

    Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating or demoting the last active admin.
    """
    user_store: UserStore = request.app.state.user_store

    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    deactivating = updates.get("is_active") is False
    if deactivating and principal.user is not None and target.id == principal.user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    demoting = "role" in updates and updates["role"] != Role.ADMIN
    if (
        (deactivating or demoting)
        and target.role == Role.ADMIN
        and target.is_active
        and user_store.count_active_admins() <= 1
    ):
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )

    user_store.update_user(user_id, **updates)
    user_store.append_history(user_id, "UPDATED", f"{sorted(updates)} by {principal.name}")
    return UserResponse.from_user(user_store.get_by_id(user_id))


@router.get("/auth/users/{user_id}/history", response_model=list[AccessEventResponse])
def user_history(
    request: Request,
    user_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal = Depends(require_admin),
) -> list[AccessEventResponse]:
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_id(user_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return [AccessEventResponse.from_event(e) for e in user_store.list_history(user_id, limit)]
