"""
api/routes/v1/access.py -- Allow-list and access-request REST endpoints.

Routes:
  POST   /api/v1/access/requests               -- ask for access (public)
  GET    /api/v1/access/entries                -- list entries, ?status= filter (manager)
  POST   /api/v1/access/entries                -- authorize an email and/or phone (admin)
  POST   /api/v1/access/domains                -- authorize a whole email domain (admin)
  POST   /api/v1/access/invites                -- generate an invite code (manager)
  POST   /api/v1/access/entries/{id}/approve   -- approve a pending request (admin)
  POST   /api/v1/access/entries/{id}/reject    -- reject a pending request (admin)
  DELETE /api/v1/access/entries/{id}           -- remove an entry (admin)
  GET    /api/v1/debug/codes                   -- live one-time codes, ?identifier= (debug, admin)

Operation failures from the gate map by OperationResult.error: invalid input
is 400, a missing entry 404, and "already authorized" / "not pending" are
409 conflicts.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccessRequestCreate,
    AuthorizeIdentityRequest,
    DebugCodeRow,
    DomainCreate,
    EntryResponse,
    InviteCreate,
    InviteResponse,
    OperationResponse,
    RejectRequest,
)
from auth.authorization import AuthorizationGate, OperationResult
from auth.dependencies import Principal, require_admin, require_manager
from auth.identifiers import looks_like_email, normalize_email, normalize_phone
from auth.models import EntryStatus

# Auth policy:
# - POST   /access/requests:                 public -- strangers ask for access here
# - GET    /access/entries, POST /invites:   manager or admin
# - everything else under /access:          admin only
# - GET    /debug/codes:                     admin, and 404 unless DEBUG=true
router = APIRouter()


def _gate(request: Request) -> AuthorizationGate:
    return request.app.state.gate


_ERROR_STATUS = {"invalid_input": 400, "not_found": 404, "conflict": 409}


def _operation_response(result: OperationResult) -> OperationResponse:
    if not result.success:
        code = result.error or "conflict"
        raise HTTPException(
            status_code=_ERROR_STATUS.get(code, 409),
            detail={"code": code, "message": result.message},
        )
    return OperationResponse(message=result.message, entry_id=result.entry_id)


@limiter.limit(login_rate_limit)
@router.post("/access/requests", response_model=OperationResponse, status_code=201)
def create_access_request(request: Request, body: AccessRequestCreate) -> OperationResponse:
    """Record a pending access request. Repeating it never duplicates the entry."""
    result = _gate(request).create_access_request(email=body.email, phone=body.phone, notes=body.notes)
    return _operation_response(result)


@router.get("/access/entries", response_model=list[EntryResponse])
def list_entries(
    request: Request,
    status: EntryStatus | None = None,
    principal: Principal = Depends(require_manager),
) -> list[EntryResponse]:
    return [EntryResponse.from_entry(e) for e in _gate(request).list_entries(status)]


@router.post("/access/entries", response_model=OperationResponse, status_code=201)
def authorize_identity(
    request: Request,
    body: AuthorizeIdentityRequest,
    principal: Principal = Depends(require_admin),
) -> OperationResponse:
    result = _gate(request).authorize_identity(
        email=body.email, phone=body.phone, created_by=principal.name, notes=body.notes
    )
    return _operation_response(result)


@router.post("/access/domains", response_model=OperationResponse, status_code=201)
def add_domain(
    request: Request,
    body: DomainCreate,
    principal: Principal = Depends(require_admin),
) -> OperationResponse:
    result = _gate(request).add_authorized_domain(body.domain, created_by=principal.name, notes=body.notes)
    return _operation_response(result)


@router.post("/access/invites", response_model=InviteResponse, status_code=201)
def create_invite(
    request: Request,
    body: InviteCreate,
    principal: Principal = Depends(require_manager),
) -> InviteResponse:
    """Generate an invite code. The code is returned once; share it out of band."""
    result = _gate(request).generate_invite_code(
        created_by=principal.name,
        notes=body.notes,
        expiry_days=body.expiry_days,
        max_uses=body.max_uses,
    )
    if not result.success:
        raise HTTPException(
            status_code=503,
            detail={"code": "invite_unavailable", "message": result.message},
        )
    return InviteResponse(
        code=result.code,
        expires_at=result.expires_at,
        max_uses=result.max_uses,
        message=result.message,
    )


@router.post("/access/entries/{entry_id}/approve", response_model=OperationResponse)
def approve_entry(
    request: Request,
    entry_id: int,
    principal: Principal = Depends(require_admin),
) -> OperationResponse:
    return _operation_response(_gate(request).approve_request(entry_id, approved_by=principal.name))


@router.post("/access/entries/{entry_id}/reject", response_model=OperationResponse)
def reject_entry(
    request: Request,
    entry_id: int,
    body: RejectRequest,
    principal: Principal = Depends(require_admin),
) -> OperationResponse:
    result = _gate(request).reject_request(entry_id, rejected_by=principal.name, reason=body.reason)
    return _operation_response(result)


@router.delete("/access/entries/{entry_id}", status_code=204)
def delete_entry(
    request: Request,
    entry_id: int,
    principal: Principal = Depends(require_admin),
) -> Response:
    if not _gate(request).remove_entry(entry_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Entry not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Debug tooling
# ---------------------------------------------------------------------------


@router.get("/debug/codes", response_model=list[DebugCodeRow])
def debug_codes(
    request: Request,
    identifier: str | None = Query(default=None, max_length=255),
    principal: Principal = Depends(require_admin),
) -> list[DebugCodeRow]:
    """Live one-time codes, for testing sign-in without a mailbox. DEBUG only.

    ?identifier= narrows the answer to the most recent code sent to that
    email or phone.
    """
    if not request.app.state.settings.debug:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Not found."},
        )
    registry = request.app.state.code_registry
    if identifier:
        try:
            key = normalize_email(identifier) if looks_like_email(identifier) else normalize_phone(identifier)
        except ValueError as e:
            raise HTTPException(status_code=400, detail={"code": "invalid_input", "message": str(e)})
        latest = registry.latest_code(key)
        codes = [latest] if latest else []
    else:
        codes = registry.active_codes()
    return [
        DebugCodeRow(identifier=c.identifier, channel=c.channel.value, code=c.code, expires_at=c.expires_at)
        for c in codes
    ]
