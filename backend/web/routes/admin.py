"""
Administration API routes: tenants, invite credentials, principal lifecycle.

Why:
    Thin HTTP adapter over `AdminService`. Every decision is taken by the
    access core against a principal context resolved fresh for this request
    (`request.state.principal`); routes only translate errors to responses.

Security:
    - Denials are generic (`403 forbidden`), whether the target exists or not.
    - State-changing endpoints enforce same-origin for browser clients.
    - Responses are `private, no-store`.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from backend.identity_access.domain import Principal, PrincipalContext, Tenant
from backend.identity_access.errors import (
    AuthorizationDenied,
    CredentialGenerationExhausted,
)
from backend.invites.codes import audit_prefix
from backend.invites.models import CredentialScope, InviteCredential, ScopeKind
from backend.web.access_wiring import get_services

from .security import _is_same_origin


admin_router = APIRouter(tags=["Administration"])
logger = logging.getLogger("classio.web")


class TenantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    id: Optional[str] = Field(default=None, max_length=64)


class InviteCreate(BaseModel):
    role: str = Field(..., min_length=1, max_length=32)
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    class_id: Optional[str] = Field(default=None, max_length=64)
    student_id: Optional[str] = Field(default=None, max_length=64)
    usage_limit: int = Field(default=1, ge=1)
    ttl_hours: Optional[int] = Field(default=None, ge=1)

    @field_validator("tenant_id", "class_id", "student_id")
    @classmethod
    def _strip_empty(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v


class RoleChange(BaseModel):
    role: str = Field(..., min_length=1, max_length=32)
    tenant_id: Optional[str] = Field(default=None, max_length=64)


class TenantChange(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)


def _private_no_store() -> Dict[str, str]:
    return {"Cache-Control": "private, no-store"}


def _json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers=_private_no_store())


def _error(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    body: Dict[str, str] = {"error": error}
    if detail:
        body["detail"] = detail
    return _json_private(body, status_code=status_code)


def _principal(request: Request) -> Optional[PrincipalContext]:
    ctx = getattr(request.state, "principal", None)
    return ctx if isinstance(ctx, PrincipalContext) else None


def _csrf_guard(request: Request) -> Optional[JSONResponse]:
    if not _is_same_origin(request):
        return _error(403, "forbidden", "csrf_violation")
    return None


def _map_error(exc: Exception) -> JSONResponse:
    """Translate access-core failures into the HTTP contract."""
    if isinstance(exc, AuthorizationDenied):
        return _error(403, "forbidden")
    if isinstance(exc, (CredentialGenerationExhausted, TimeoutError)):
        return _error(503, "unavailable")
    if isinstance(exc, PermissionError):
        return _error(409, "conflict", str(exc) or None)
    if isinstance(exc, LookupError):
        return _error(404, "not_found")
    if isinstance(exc, ValueError):
        return _error(400, "bad_request", str(exc) or None)
    raise exc


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_tenant(tenant: Tenant) -> Dict[str, Any]:
    return {"id": tenant.id, "name": tenant.name, "created_at": _iso(tenant.created_at)}


def _serialize_invite(credential: InviteCredential) -> Dict[str, Any]:
    scope = credential.scope
    return {
        "token": credential.token,
        "role": credential.role.value,
        "tenant_id": credential.tenant_id,
        "scope": {"kind": scope.kind.value, "id": scope.target_id} if scope else None,
        "usage_limit": credential.usage_limit,
        "times_used": credential.times_used,
        "expires_at": _iso(credential.expires_at),
    }


def _serialize_principal(principal: Principal) -> Dict[str, Any]:
    return {
        "id": principal.identity_id,
        "role": principal.role.value,
        "tenant_id": principal.tenant_id,
        "first_name": principal.first_name,
        "last_name": principal.last_name,
        "deleted_at": _iso(principal.deleted_at),
    }


def _scope_from(payload: InviteCreate) -> Optional[CredentialScope]:
    if payload.class_id and payload.student_id:
        raise ValueError("invalid_scope")
    if payload.class_id:
        return CredentialScope(kind=ScopeKind.CLASS, target_id=payload.class_id)
    if payload.student_id:
        return CredentialScope(kind=ScopeKind.WARD, target_id=payload.student_id)
    return None


@admin_router.get("/api/bootstrap/status")
async def bootstrap_status():
    """Public bootstrap readiness probe.

    Behavior:
        Reports only whether bootstrap is still required and a short message;
        never credential material or principal counts.
    """
    status = get_services().bootstrap.bootstrap_status()
    return _json_private({"needs_bootstrap": status.needs_bootstrap, "message": status.message})


@admin_router.post("/api/admin/tenants")
async def create_tenant(request: Request, payload: TenantCreate):
    """Create a tenant (school).

    Behavior:
        - 201 with the tenant on success
        - 400 on an invalid name
        - 403 for anyone but a platform principal

    Permissions:
        Platform role (`superadmin`).
    """
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        tenant = get_services().admin.create_tenant(actor, payload.name, tenant_id=payload.id)
    except Exception as exc:
        return _map_error(exc)
    return _json_private(_serialize_tenant(tenant), status_code=201)


@admin_router.post("/api/admin/invites")
async def issue_invite(request: Request, payload: InviteCreate):
    """Issue an invite credential.

    Behavior:
        - 201 with the credential (the only response that carries the full code
          besides the listing)
        - 400 on invalid role, usage limit, TTL or scope
        - 403 when the issuance rules deny the request
        - 503 when no unique code could be generated

    Permissions:
        Decided by the INVITE rule table: principals mint any tenant role,
        admins mint below admin, teachers mint student invites for classes they
        teach.
    """
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        credential = get_services().admin.issue_invite(
            actor,
            payload.role,
            tenant_id=payload.tenant_id,
            scope=_scope_from(payload),
            usage_limit=payload.usage_limit,
            ttl=timedelta(hours=payload.ttl_hours) if payload.ttl_hours else None,
        )
    except Exception as exc:
        return _map_error(exc)
    logger.info("invite issued via api prefix=%s", audit_prefix(credential.token))
    return _json_private(_serialize_invite(credential), status_code=201)


@admin_router.get("/api/admin/invites")
async def list_invites(request: Request, tenant_id: Optional[str] = None):
    """Live invite credentials the caller may read."""
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    try:
        rows = get_services().admin.list_invites(actor, tenant_id)
    except Exception as exc:
        return _map_error(exc)
    return _json_private([_serialize_invite(c) for c in rows])


@admin_router.get("/api/admin/invite-roles")
async def invite_roles(request: Request):
    """Roles the caller may issue unscoped invites for (empty for teachers)."""
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    try:
        roles = get_services().admin.issuable_roles(actor)
    except Exception as exc:
        return _map_error(exc)
    return _json_private({"roles": [r.value for r in roles]})


@admin_router.delete("/api/admin/invites/{token}")
async def revoke_invite(request: Request, token: str):
    """Invalidate a credential; unknown and out-of-reach codes both yield 403."""
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        changed = get_services().admin.revoke_invite(actor, token)
    except Exception as exc:
        return _map_error(exc)
    return _json_private({"revoked": bool(changed)})


@admin_router.get("/api/admin/principals")
async def list_principals(
    request: Request,
    tenant_id: Optional[str] = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
):
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    try:
        rows = get_services().admin.list_principals(
            actor, tenant_id, include_deleted=include_deleted, limit=limit, offset=offset
        )
    except Exception as exc:
        return _map_error(exc)
    return _json_private([_serialize_principal(p) for p in rows])


@admin_router.post("/api/admin/principals/{identity_id}/deactivate")
async def deactivate_principal(request: Request, identity_id: str):
    """Soft-delete a principal.

    Behavior:
        - 200 with the deactivated principal
        - 403 when denied or the target is unknown
        - 409 `last_platform_principal` / `self_delete_forbidden`
    """
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        principal = get_services().admin.deactivate_principal(actor, identity_id)
    except Exception as exc:
        return _map_error(exc)
    return _json_private(_serialize_principal(principal))


@admin_router.post("/api/admin/principals/{identity_id}/restore")
async def restore_principal(request: Request, identity_id: str):
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        principal = get_services().admin.restore_principal(actor, identity_id)
    except Exception as exc:
        return _map_error(exc)
    return _json_private(_serialize_principal(principal))


@admin_router.patch("/api/admin/principals/{identity_id}/role")
async def change_role(request: Request, identity_id: str, payload: RoleChange):
    """Change a principal's role; takes effect on the target's next request."""
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        principal = get_services().admin.change_role(actor, identity_id, payload.role, tenant_id=payload.tenant_id)
    except Exception as exc:
        return _map_error(exc)
    return _json_private(_serialize_principal(principal))


@admin_router.patch("/api/admin/principals/{identity_id}/tenant")
async def change_tenant(request: Request, identity_id: str, payload: TenantChange):
    actor = _principal(request)
    if actor is None:
        return _error(403, "forbidden")
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        principal = get_services().admin.change_tenant(actor, identity_id, payload.tenant_id)
    except Exception as exc:
        return _map_error(exc)
    return _json_private(_serialize_principal(principal))
