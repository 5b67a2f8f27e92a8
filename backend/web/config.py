"""
Configuration and startup security checks for the Classio access API.

Why: Authorization and onboarding must never run on an insecure deployment
by accident. This module provides a single guard that enforces minimal
production safety constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os
import re
from urllib.parse import urlparse


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _dsn_user(dsn_value: str) -> str | None:
    try:
        if "://" in dsn_value:
            return urlparse(dsn_value).username
        m = re.search(r"\buser\s*=\s*([^\s]+)", dsn_value)
        return m.group(1) if m else None
    except ValueError:
        return None


def ensure_secure_config_on_startup() -> None:
    """Refuse to boot the access API on an unsafe production setup.

    Only prod-like `CLASSIO_ENV` values are checked; dev and test pass through.

    Checks:
    - The access store must be the database store (in-memory state is lost on
      restart and not shared between workers).
    - A service-role DSN must be configured and must not disable TLS.
    - The service DSN must not authenticate as the limited end-user role.
    - Identity provider issuer/JWKS URLs must use HTTPS.
    - Bootstrap TTL must not be configured above the hard ceiling.
    """
    env = os.getenv("CLASSIO_ENV", "dev")
    if not _is_prod_like(env):
        return

    store = (os.getenv("ACCESS_STORE") or "db").strip().lower()
    if store != "db":
        raise SystemExit("Refusing to start: ACCESS_STORE must be 'db' in production/staging.")

    dsn = (os.getenv("SERVICE_ROLE_DSN") or os.getenv("DATABASE_URL") or "").strip()
    if not dsn:
        raise SystemExit("Refusing to start: SERVICE_ROLE_DSN (or DATABASE_URL) is unset in production.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: the service DSN contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
    if (_dsn_user(dsn) or "").lower() == "classio_limited":
        raise SystemExit(
            "Refusing to start: the service DSN authenticates as 'classio_limited'. "
            "Provisioning and authorization lookups need the service role."
        )

    for var in ("IDP_ISSUER", "IDP_JWKS_URL"):
        val = (os.getenv(var) or "").strip().lower()
        if not val:
            raise SystemExit(f"Refusing to start: {var} must be set in production.")
        if val.startswith("http://"):
            raise SystemExit(f"Refusing to start: {var} must use https in production (got http).")

    raw_ttl = (os.getenv("BOOTSTRAP_TTL_HOURS") or "").strip()
    if raw_ttl:
        try:
            ttl = int(raw_ttl)
        except ValueError:
            raise SystemExit("Refusing to start: BOOTSTRAP_TTL_HOURS must be an integer.")
        if ttl > 168:
            raise SystemExit("Refusing to start: BOOTSTRAP_TTL_HOURS above 168 in production.")
