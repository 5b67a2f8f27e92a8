"""
Live Postgres store: atomic redemption and audit rows.

Skipped unless a migrated database is reachable (see utils/db.py).
"""
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from backend.identity_access.config import AccessConfig
from backend.identity_access.domain import Principal, Role, Tenant
from backend.identity_access.resolver import ContextResolver
from backend.invites.models import Redemption, Rejected, RejectionReason
from backend.invites.service import IssuanceService
from utils.db import require_db_or_skip


@pytest.fixture
def db_store():
    dsn = require_db_or_skip()
    from backend.identity_access.stores_db import DBAccessStore

    return DBAccessStore(dsn=dsn)


@pytest.fixture
def seeded(db_store):
    suffix = uuid.uuid4().hex[:8]
    tenant_id = f"t-{suffix}"
    principal_id = f"p-{suffix}"
    with db_store.unit_of_work() as uow:
        uow.insert_tenant(Tenant(id=tenant_id, name=f"Testschule {suffix}"))
        uow.insert_principal(Principal(identity_id=principal_id, role=Role.PRINCIPAL, tenant_id=tenant_id))
    return tenant_id, principal_id


def test_generate_and_redeem_round_trip(db_store, seeded):
    tenant_id, principal_id = seeded
    issuance = IssuanceService(store=db_store, config=AccessConfig())
    actor = ContextResolver(db_store.reader()).resolve(principal_id)
    assert actor is not None and actor.tenant_id == tenant_id

    cred = issuance.generate_token(actor, Role.TEACHER, ttl=timedelta(hours=1))
    redeemer = f"kc-{uuid.uuid4().hex[:8]}"
    result = issuance.redeem_token(cred.token, redeemer)
    assert isinstance(result, Redemption)
    assert (result.role, result.tenant_id) == (Role.TEACHER, tenant_id)

    again = issuance.redeem_token(cred.token, f"kc-{uuid.uuid4().hex[:8]}")
    assert again == Rejected(RejectionReason.EXHAUSTED)


def test_unknown_token_is_not_found(db_store):
    issuance = IssuanceService(store=db_store, config=AccessConfig())
    assert issuance.redeem_token("ZZZZZZZZZZZZ", "kc-nobody") == Rejected(RejectionReason.NOT_FOUND)
