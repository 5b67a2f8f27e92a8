"""
Provisioning on identity creation: atomic, idempotent, credential-driven.
"""
from __future__ import annotations

from datetime import timedelta
import threading

import pytest

from backend.identity_access.audit import AuditKind, AuditSink
from backend.identity_access.config import AccessConfig
from backend.identity_access.domain import Role
from backend.identity_access.errors import ProvisioningFailed
from backend.identity_access.stores import _MemoryUnitOfWork
from backend.invites.bootstrap import BootstrapService
from backend.invites.models import CredentialScope, ScopeKind
from backend.invites.service import IssuanceService
from backend.onboarding.provisioning import IdentityCreated, ProvisioningWorkflow
from utils.access import FixedClock


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def issuance(store, clock):
    return IssuanceService(store=store, config=AccessConfig(), clock=clock)


@pytest.fixture
def workflow(issuance):
    return ProvisioningWorkflow(issuance=issuance)


def test_creates_principal_from_credential(school, store, issuance, workflow):
    cred = issuance.generate_token(school.ctx("p1"), Role.TEACHER)
    outcome = workflow.on_identity_created(
        IdentityCreated(identity_id="kc-42", credential_token=cred.token, first_name=" Grace ", last_name="Hopper")
    )
    assert outcome.created
    p = store.reader().get_principal("kc-42")
    assert (p.role, p.tenant_id, p.first_name, p.last_name) == (Role.TEACHER, "t1", "Grace", "Hopper")
    kinds = [e.kind for e in store.audit_events()]
    assert AuditKind.PRINCIPAL_PROVISIONED in kinds and AuditKind.TOKEN_REDEEMED in kinds


def test_replay_is_a_noop(school, store, issuance, workflow):
    cred = issuance.generate_token(school.ctx("p1"), Role.TEACHER, usage_limit=3)
    event = IdentityCreated(identity_id="kc-42", credential_token=cred.token)
    assert workflow.on_identity_created(event).created
    again = workflow.on_identity_created(event)
    assert not again.created and again.principal.identity_id == "kc-42"
    assert store.credential(cred.token).times_used == 1


def test_existing_principal_needs_no_credential(school, workflow):
    outcome = workflow.on_identity_created(IdentityCreated(identity_id="s1"))
    assert not outcome.created and outcome.principal.role is Role.STUDENT


@pytest.mark.parametrize("token", [None, "", "   "])
def test_missing_credential_rejects_identity(school, store, workflow, token):
    with pytest.raises(ProvisioningFailed) as exc:
        workflow.on_identity_created(IdentityCreated(identity_id="kc-9", credential_token=token))
    assert exc.value.code == "credential_required"
    assert store.reader().get_principal("kc-9") is None


def test_blank_identity_is_rejected(workflow):
    with pytest.raises(ProvisioningFailed) as exc:
        workflow.on_identity_created(IdentityCreated(identity_id=" ", credential_token="AB3C9Q"))
    assert exc.value.code == "invalid_identity"


@pytest.mark.parametrize(
    "setup, code",
    [
        ("unknown", "credential_invalid"),
        ("expired", "credential_expired"),
        ("exhausted", "credential_exhausted"),
    ],
)
def test_rejected_credentials_map_to_codes(school, store, issuance, workflow, clock, setup, code):
    cred = issuance.generate_token(school.ctx("p1"), Role.TEACHER)
    token = cred.token
    if setup == "unknown":
        token = "ZZZZZZ"
    elif setup == "expired":
        clock.advance(days=30)
    else:
        workflow.on_identity_created(IdentityCreated(identity_id="first", credential_token=token))
    with pytest.raises(ProvisioningFailed) as exc:
        workflow.on_identity_created(IdentityCreated(identity_id="kc-x", credential_token=token))
    assert exc.value.code == code
    assert store.reader().get_principal("kc-x") is None


def test_failing_side_effect_leaves_nothing_behind(school, store, issuance, workflow, monkeypatch):
    cred = issuance.generate_token(school.ctx("tch1"), Role.STUDENT, scope=CredentialScope(ScopeKind.CLASS, "c1"))
    before = len(store.audit_events())

    def broken(self, class_id, student_id):
        raise RuntimeError("enrollment table unavailable")

    monkeypatch.setattr(_MemoryUnitOfWork, "add_enrollment", broken)
    with pytest.raises(ProvisioningFailed) as exc:
        workflow.on_identity_created(IdentityCreated(identity_id="kc-7", credential_token=cred.token))
    assert exc.value.code == "internal_error"
    assert store.reader().get_principal("kc-7") is None
    assert store.credential(cred.token).times_used == 0
    assert store.redemptions() == []
    assert len(store.audit_events()) == before


def test_rolled_back_audit_events_never_reach_the_log(store, caplog):
    sink = AuditSink()
    with caplog.at_level("INFO", logger="classio.audit"):
        with pytest.raises(RuntimeError):
            with store.unit_of_work() as uow:
                sink.record(uow, AuditKind.TENANT_CREATED, actor_id="root", tenant_id="t7")
                raise RuntimeError("tenant insert failed")
        assert [r for r in caplog.records if r.name == "classio.audit"] == []

        with store.unit_of_work() as uow:
            sink.record(uow, AuditKind.TENANT_CREATED, actor_id="root", tenant_id="t8")
    logged = [r.getMessage() for r in caplog.records if r.name == "classio.audit"]
    assert len(logged) == 1
    assert "kind=tenant_created" in logged[0] and "tenant=t8" in logged[0]
    assert [e.tenant_id for e in store.audit_events()] == ["t8"]


def test_class_scope_enrolls_new_student(school, store, issuance, workflow):
    cred = issuance.generate_token(school.ctx("tch1"), Role.STUDENT, scope=CredentialScope(ScopeKind.CLASS, "c1"), usage_limit=25)
    workflow.on_identity_created(IdentityCreated(identity_id="kc-s", credential_token=cred.token))
    assert store.reader().is_enrolled("kc-s", "c1")
    assert store.reader().teaches_student("tch1", "kc-s")


def test_ward_scope_links_new_parent(school, store, issuance, workflow):
    cred = issuance.generate_token(school.ctx("a1"), Role.PARENT, scope=CredentialScope(ScopeKind.WARD, "s2"))
    workflow.on_identity_created(IdentityCreated(identity_id="kc-p", credential_token=cred.token))
    assert store.reader().is_guardian_of("kc-p", "s2")


def test_advisory_claims_never_override_credential(school, store, issuance, workflow, caplog):
    cred = issuance.generate_token(school.ctx("p1"), Role.STUDENT)
    event = IdentityCreated.from_claims(
        {
            "sub": "kc-adv",
            "user_metadata": {"invite_token": cred.token, "role": "superadmin", "school_id": "t2"},
        }
    )
    with caplog.at_level("INFO", logger="classio.onboarding"):
        outcome = workflow.on_identity_created(event)
    assert (outcome.principal.role, outcome.principal.tenant_id) == (Role.STUDENT, "t1")
    assert sum("advisory" in r.getMessage() for r in caplog.records) == 2


def test_profile_fields_are_sanitized(school, store, issuance, workflow):
    cred = issuance.generate_token(school.ctx("p1"), Role.TEACHER)
    event = IdentityCreated.from_claims(
        {
            "sub": "kc-prof",
            "given_name": "x" * 300,
            "family_name": "   ",
            "picture": "http://insecure.example/avatar.png",
            "credential_token": cred.token,
        }
    )
    p = workflow.on_identity_created(event).principal
    assert len(p.first_name) == 100
    assert p.last_name is None
    assert p.avatar_url is None


def test_concurrent_first_provisioning_returns_existing(school, store, issuance, workflow, monkeypatch):
    cred = issuance.generate_token(school.ctx("p1"), Role.TEACHER, usage_limit=2)
    original = issuance.redeem_token

    def racing(token, identity, **kwargs):
        # Another request provisions the same identity first.
        from backend.identity_access.domain import Principal

        store.add_principal(Principal(identity_id=identity, role=Role.TEACHER, tenant_id="t1"))
        return original(token, identity, **kwargs)

    monkeypatch.setattr(issuance, "redeem_token", racing)
    outcome = workflow.on_identity_created(IdentityCreated(identity_id="kc-race", credential_token=cred.token))
    assert not outcome.created
    assert store.credential(cred.token).times_used == 0


def test_simultaneous_deliveries_of_one_event_both_succeed(school, store, issuance, workflow, monkeypatch):
    cred = issuance.generate_token(school.ctx("p1"), Role.TEACHER)
    event = IdentityCreated(identity_id="kc-dup", credential_token=cred.token)
    original = workflow._existing
    barrier = threading.Barrier(2, timeout=5)
    seen = threading.local()

    def lookup(identity_id):
        # Hold both deliveries until each has passed the first lookup.
        found = original(identity_id)
        if not getattr(seen, "first_done", False):
            seen.first_done = True
            barrier.wait()
        return found

    monkeypatch.setattr(workflow, "_existing", lookup)
    outcomes, errors = [], []

    def deliver():
        try:
            outcomes.append(workflow.on_identity_created(event))
        except ProvisioningFailed as exc:
            errors.append(exc.code)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(o.created for o in outcomes) == [False, True]
    assert {o.principal.identity_id for o in outcomes} == {"kc-dup"}
    assert store.credential(cred.token).times_used == 1


def test_platform_provisioning_closes_bootstrap(store, issuance, clock):
    bootstrap = BootstrapService(issuance=issuance)
    stale = bootstrap.generate_bootstrap_token()
    # A platform credential minted by tooling while the bootstrap code is live.
    with store.unit_of_work() as uow:
        direct = issuance.mint(
            uow,
            role=Role.SUPERADMIN,
            tenant_id=None,
            scope=None,
            usage_limit=1,
            expires_at=clock.now + timedelta(hours=1),
            issued_by="ops",
            length=16,
            now=clock.now,
        )
    workflow = ProvisioningWorkflow(issuance=issuance, bootstrap=bootstrap)
    workflow.on_identity_created(IdentityCreated(identity_id="root-1", credential_token=direct.token))
    assert not issuance.is_token_valid(stale.token)
