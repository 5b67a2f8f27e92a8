"""
Identity-created hook: provisions a principal when the identity provider
reports a new identity.

Security:
    The call is authenticated by a provider-signed JWT with the dedicated hook
    audience, never by a user session. Role and tenant come only from the
    redeemed credential; any role/tenant in the identity metadata is advisory.

Behavior:
    - 201 when a principal was created
    - 200 when the identity already had a principal (idempotent replay)
    - 401 when the hook token is missing or invalid
    - 422 `provisioning_failed` with a stable `detail` code otherwise
"""
from __future__ import annotations

import logging
from typing import Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.identity_access.config import load_idp_config
from backend.identity_access.errors import ProvisioningFailed
from backend.identity_access.hook_tokens import TokenVerificationError, verify_hook_token
from backend.onboarding.provisioning import IdentityCreated
from backend.web.access_wiring import get_services


onboarding_router = APIRouter(tags=["Onboarding"])
logger = logging.getLogger("classio.web")


def _private_no_store() -> Dict[str, str]:
    return {"Cache-Control": "private, no-store"}


def _hook_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    scheme, _, value = header.partition(" ")
    return value.strip() if scheme.lower() == "bearer" else ""


@onboarding_router.post("/internal/identity/created")
async def identity_created(request: Request):
    token = _hook_token(request)
    if not token:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_private_no_store())
    try:
        claims = verify_hook_token(token=token, cfg=load_idp_config())
    except TokenVerificationError as exc:
        logger.warning("identity hook rejected: %s", exc.code)
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_private_no_store())

    event = IdentityCreated.from_claims(claims)
    try:
        outcome = get_services().provisioning.on_identity_created(event)
    except ProvisioningFailed as exc:
        return JSONResponse(
            {"error": "provisioning_failed", "detail": exc.code},
            status_code=422,
            headers=_private_no_store(),
        )
    principal = outcome.principal
    return JSONResponse(
        {
            "id": principal.identity_id,
            "role": principal.role.value,
            "tenant_id": principal.tenant_id,
            "created": outcome.created,
        },
        status_code=201 if outcome.created else 200,
        headers=_private_no_store(),
    )
