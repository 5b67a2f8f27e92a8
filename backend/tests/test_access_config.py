"""
Access-core configuration parsing: defaults, ranges and store selection.
"""
from __future__ import annotations

import pytest

from backend.identity_access.config import (
    BOOTSTRAP_TTL_MAX_HOURS,
    load_access_config,
    load_idp_config,
)


def test_defaults(monkeypatch):
    monkeypatch.delenv("SERVICE_ROLE_DSN", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    cfg = load_access_config()
    assert cfg.invite_ttl_hours == 168
    assert cfg.invite_code_length == 6
    assert cfg.bootstrap_ttl_hours == 24
    assert cfg.store_backend == "memory"


def test_bootstrap_ttl_is_clamped(monkeypatch, caplog):
    monkeypatch.setenv("BOOTSTRAP_TTL_HOURS", "720")
    with caplog.at_level("WARNING", logger="classio.identity_access"):
        cfg = load_access_config()
    assert cfg.bootstrap_ttl_hours == BOOTSTRAP_TTL_MAX_HOURS
    assert any("clamped" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize(
    "name, value",
    [
        ("BOOTSTRAP_TTL_HOURS", "0"),
        ("INVITE_CODE_LENGTH", "4"),
        ("INVITE_MAX_USAGE", "lots"),
        ("TOKEN_COLLISION_RETRIES", "0"),
        ("REDEEM_TIMEOUT_SECONDS", "120"),
    ],
)
def test_out_of_range_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_access_config()


def test_db_store_requires_dsn(monkeypatch):
    monkeypatch.setenv("ACCESS_STORE", "db")
    monkeypatch.delenv("SERVICE_ROLE_DSN", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ValueError, match="requires"):
        load_access_config()

    monkeypatch.setenv("DATABASE_URL", "postgresql://classio_service@db/classio")
    monkeypatch.setenv("SERVICE_ROLE_DSN", "postgresql://classio_service@primary/classio")
    cfg = load_access_config()
    assert cfg.service_dsn.endswith("@primary/classio")


def test_unknown_store_backend(monkeypatch):
    monkeypatch.setenv("ACCESS_STORE", "redis")
    with pytest.raises(ValueError):
        load_access_config()


def test_prod_defaults_to_db_store(monkeypatch):
    monkeypatch.setenv("CLASSIO_ENV", "production")
    monkeypatch.setenv("SERVICE_ROLE_DSN", "postgresql://classio_service@db/classio?sslmode=require")
    assert load_access_config().store_backend == "db"


def test_idp_defaults_derive_jwks_from_issuer(monkeypatch):
    for var in ("IDP_ISSUER", "IDP_JWKS_URL", "IDP_AUDIENCE", "IDP_HOOK_AUDIENCE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("IDP_ISSUER", "https://id.example/realms/classio/")
    cfg = load_idp_config()
    assert cfg.issuer == "https://id.example/realms/classio"
    assert cfg.jwks_url == "https://id.example/realms/classio/protocol/openid-connect/certs"
    assert cfg.audience != cfg.hook_audience
