"""
Identity-created hook over HTTP: signed hook token in, principal out.
"""
from __future__ import annotations

import pytest
import httpx
from httpx import ASGITransport

from backend.identity_access.domain import Role
from backend.identity_access.hook_tokens import TokenVerificationError
from backend.web import main
import backend.web.routes.onboarding as onboarding


pytestmark = pytest.mark.anyio


@pytest.fixture
def hook_claims(monkeypatch):
    """Maps hook tokens to claims; any unknown token fails verification."""
    registry = {}

    def fake_verify(*, token: str, cfg):
        if token not in registry:
            raise TokenVerificationError("invalid_token")
        return registry[token]

    monkeypatch.setattr(onboarding, "verify_hook_token", fake_verify)
    return registry


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


async def _post(token: str | None):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    async with _client() as client:
        return await client.post("/internal/identity/created", headers=headers)


async def test_missing_hook_token_is_401(services, hook_claims):
    r = await _post(None)
    assert r.status_code == 401
    assert r.json() == {"error": "unauthenticated"}


async def test_invalid_hook_token_is_401(services, hook_claims):
    r = await _post("forged")
    assert r.status_code == 401
    assert r.headers["Cache-Control"] == "private, no-store"


async def test_new_identity_is_provisioned_then_replay_is_200(school, services, hook_claims, store):
    cred = services.issuance.generate_token(school.ctx("p1"), Role.TEACHER)
    hook_claims["h1"] = {
        "sub": "kc-100",
        "user_metadata": {"invite_token": cred.token, "first_name": "Ada", "role": "superadmin"},
    }
    first = await _post("h1")
    assert first.status_code == 201
    assert first.json() == {"id": "kc-100", "role": "teacher", "tenant_id": "t1", "created": True}

    again = await _post("h1")
    assert again.status_code == 200
    assert again.json()["created"] is False
    assert store.credential(cred.token).times_used == 1


async def test_identity_without_credential_is_rejected(school, services, hook_claims, store):
    hook_claims["h2"] = {"sub": "kc-200", "user_metadata": {"first_name": "Eve"}}
    r = await _post("h2")
    assert r.status_code == 422
    assert r.json() == {"error": "provisioning_failed", "detail": "credential_required"}
    assert store.reader().get_principal("kc-200") is None


async def test_unknown_credential_is_rejected(school, services, hook_claims):
    hook_claims["h3"] = {"sub": "kc-300", "credential_token": "ZZZZZZ"}
    r = await _post("h3")
    assert r.status_code == 422
    assert r.json()["detail"] == "credential_invalid"


async def test_bootstrap_code_provisions_first_platform_principal(services, hook_claims, store):
    boot = services.bootstrap.generate_bootstrap_token()
    hook_claims["h4"] = {"sub": "kc-root", "invite_token": boot.token}
    r = await _post("h4")
    assert r.status_code == 201
    assert r.json()["role"] == "superadmin" and r.json()["tenant_id"] is None
    assert services.bootstrap.bootstrap_status().needs_bootstrap is False
