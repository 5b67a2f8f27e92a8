"""
Access-core configuration parsing and validation.

Intent:
    One place that reads the environment variables controlling credential
    lifetimes, token shape, retry bounds, timeouts and store selection.

Why:
    Explicit defaults and range checks keep deployments from drifting into
    weak settings (e.g., a 3-character invite code or a month-long bootstrap
    token). Tests can exercise the parsing without booting the web app.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os


logger = logging.getLogger("classio.identity_access")

# Hard ceiling for bootstrap credentials; configured values are clamped to it.
BOOTSTRAP_TTL_MAX_HOURS = 168


@dataclass(frozen=True)
class AccessConfig:
    invite_ttl_hours: int = 168
    invite_max_usage: int = 500
    invite_code_length: int = 6
    collision_retries: int = 10
    bootstrap_ttl_hours: int = 24
    redeem_timeout_seconds: float = 5.0
    store_backend: str = "memory"  # "memory" | "db"
    service_dsn: str = ""


@dataclass(frozen=True)
class IdPConfig:
    issuer: str
    jwks_url: str
    audience: str
    hook_audience: str


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < lo or value > hi:
        raise ValueError(f"{name} out of range ({lo}..{hi}), got: {value}")
    return value


def _is_prod_like() -> bool:
    env = (os.getenv("CLASSIO_ENV") or "dev").lower()
    return env in {"prod", "production", "stage", "staging"}


def load_access_config() -> AccessConfig:
    """
    Parse and validate access-core configuration from environment variables.

    Behavior:
        - `INVITE_TTL_HOURS` 1..2160 (default 168 = 7 days).
        - `INVITE_MAX_USAGE` 1..10000 (default 500).
        - `INVITE_CODE_LENGTH` 6..12 (default 6).
        - `TOKEN_COLLISION_RETRIES` 1..50 (default 10).
        - `BOOTSTRAP_TTL_HOURS` >= 1, clamped to 168 (default 24).
        - `REDEEM_TIMEOUT_SECONDS` 1..60 (default 5).
        - `ACCESS_STORE` "memory" or "db"; "db" requires a service DSN from
          `SERVICE_ROLE_DSN` (preferred) or `DATABASE_URL`.
    """
    bootstrap_ttl = _int_env("BOOTSTRAP_TTL_HOURS", 24, lo=1, hi=10_000)
    if bootstrap_ttl > BOOTSTRAP_TTL_MAX_HOURS:
        logger.warning("BOOTSTRAP_TTL_HOURS=%s clamped to %s", bootstrap_ttl, BOOTSTRAP_TTL_MAX_HOURS)
        bootstrap_ttl = BOOTSTRAP_TTL_MAX_HOURS

    backend = (os.getenv("ACCESS_STORE") or ("db" if _is_prod_like() else "memory")).strip().lower()
    if backend not in {"memory", "db"}:
        raise ValueError("ACCESS_STORE must be 'memory' or 'db'")
    dsn = (os.getenv("SERVICE_ROLE_DSN") or os.getenv("DATABASE_URL") or "").strip()
    if backend == "db" and not dsn:
        raise ValueError("ACCESS_STORE=db requires SERVICE_ROLE_DSN or DATABASE_URL")

    return AccessConfig(
        invite_ttl_hours=_int_env("INVITE_TTL_HOURS", 168, lo=1, hi=2160),
        invite_max_usage=_int_env("INVITE_MAX_USAGE", 500, lo=1, hi=10_000),
        invite_code_length=_int_env("INVITE_CODE_LENGTH", 6, lo=6, hi=12),
        collision_retries=_int_env("TOKEN_COLLISION_RETRIES", 10, lo=1, hi=50),
        bootstrap_ttl_hours=bootstrap_ttl,
        redeem_timeout_seconds=float(_int_env("REDEEM_TIMEOUT_SECONDS", 5, lo=1, hi=60)),
        store_backend=backend,
        service_dsn=dsn,
    )


def load_idp_config() -> IdPConfig:
    """Identity provider endpoints used to verify access and hook tokens."""
    issuer = (os.getenv("IDP_ISSUER") or "http://localhost:8080/realms/classio").rstrip("/")
    jwks_url = os.getenv("IDP_JWKS_URL") or f"{issuer}/protocol/openid-connect/certs"
    return IdPConfig(
        issuer=issuer,
        jwks_url=jwks_url,
        audience=os.getenv("IDP_AUDIENCE", "classio-api"),
        hook_audience=os.getenv("IDP_HOOK_AUDIENCE", "classio-provisioning"),
    )


__all__ = [
    "AccessConfig",
    "BOOTSTRAP_TTL_MAX_HOURS",
    "IdPConfig",
    "load_access_config",
    "load_idp_config",
]
