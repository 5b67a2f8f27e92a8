"Classio access API"
from __future__ import annotations

import logging
import os
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.identity_access.config import load_idp_config
from backend.identity_access.domain import short_id
from backend.identity_access.hook_tokens import TokenVerificationError, verify_access_token
from backend.web import config as _cfg
from backend.web.access_wiring import get_services


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via CLASSIO_ENABLE_DOTENV (default true outside pytest).
    """
    import sys

    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("CLASSIO_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv

    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

logger = logging.getLogger("classio.web")
IDP_CFG = load_idp_config()

app = FastAPI(title="Classio access API", description="Multi-tenant authorization and onboarding", version="0.1.0")

from backend.web.routes.admin import admin_router  # noqa: E402
from backend.web.routes.onboarding import onboarding_router  # noqa: E402

app.include_router(admin_router)
app.include_router(onboarding_router)


def _private_no_store() -> Dict[str, str]:
    return {"Cache-Control": "private, no-store"}


def _is_public_path(path: str) -> bool:
    # The identity hook authenticates with its own signed token.
    return path in ("/health", "/api/bootstrap/status") or path.startswith("/internal/identity/")


def _verify_bearer(token: str) -> Dict[str, object]:
    return verify_access_token(token=token, cfg=IDP_CFG)


def _bearer(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()


@app.middleware("http")
async def principal_context(request: Request, call_next):
    """Resolve a fresh principal context for every API request.

    Behavior:
        - 401 when the bearer token is missing or fails verification.
        - 403 (generic) when the identity has no live principal.
        - Otherwise `request.state.principal` carries the context for this
          request only; nothing is cached across requests.
    """
    path = request.url.path
    if _is_public_path(path) or not path.startswith("/api/"):
        return await call_next(request)

    token = _bearer(request)
    if not token:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_private_no_store())
    try:
        claims = _verify_bearer(token)
    except TokenVerificationError as exc:
        logger.info("bearer rejected: %s", exc.code)
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=_private_no_store())

    sub = str(claims.get("sub") or "")
    services = get_services()
    with services.resolver.operation() as cache:
        ctx = services.resolver.resolve(sub, cache=cache)
    if ctx is None:
        logger.info("no live principal for sub=%s", short_id(sub))
        return JSONResponse({"error": "forbidden"}, status_code=403, headers=_private_no_store())
    request.state.principal = ctx
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.get("/health")
async def health():
    return JSONResponse({"status": "ok"}, headers=_private_no_store())
