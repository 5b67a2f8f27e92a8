"""
Credential issuance: who may mint what, scope validation and audit.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from backend.identity_access.audit import AuditKind
from backend.identity_access.config import AccessConfig
from backend.identity_access.domain import Role
from backend.identity_access.errors import AuthorizationDenied, CredentialGenerationExhausted
from backend.invites import issuance
from backend.invites.models import CredentialScope, ScopeKind
from backend.invites.service import IssuanceService
from utils.access import FixedClock


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def svc(store, clock):
    return IssuanceService(store=store, config=AccessConfig(), clock=clock)


def test_teacher_mints_class_scoped_student_credential(school, store, svc, clock):
    scope = CredentialScope(ScopeKind.CLASS, "c1")
    cred = svc.generate_token(school.ctx("tch1"), Role.STUDENT, scope=scope, usage_limit=30)
    assert cred.role is Role.STUDENT and cred.tenant_id == "t1"
    assert cred.scope == scope
    assert cred.issued_by == "tch1"
    assert cred.expires_at == clock.now + timedelta(hours=168)
    assert store.credential(cred.token) is not None


def test_teacher_cannot_mint_for_class_they_do_not_teach(school, svc, store):
    before = len(store.audit_events())
    with pytest.raises(AuthorizationDenied):
        svc.generate_token(school.ctx("tch1"), Role.STUDENT, scope=CredentialScope(ScopeKind.CLASS, "c2"))
    assert len(store.audit_events()) == before


def test_teacher_cannot_mint_unscoped_or_non_student(school, svc):
    with pytest.raises(AuthorizationDenied):
        svc.generate_token(school.ctx("tch1"), Role.STUDENT)
    with pytest.raises(AuthorizationDenied):
        svc.generate_token(school.ctx("tch1"), Role.PARENT, scope=CredentialScope(ScopeKind.CLASS, "c1"))


@pytest.mark.parametrize(
    "issuer, target, allowed",
    [
        ("root", Role.SUPERADMIN, True),
        ("root", Role.PRINCIPAL, True),
        ("p1", Role.SUPERADMIN, False),
        ("p1", Role.PRINCIPAL, True),
        ("p1", Role.ADMIN, True),
        ("p1", Role.STUDENT, True),
        ("a1", Role.PRINCIPAL, False),
        ("a1", Role.ADMIN, False),
        ("a1", Role.TEACHER, True),
        ("a1", Role.PARENT, True),
        ("s1", Role.STUDENT, False),
        ("par1", Role.PARENT, False),
    ],
)
def test_issuance_table(school, svc, issuer, target, allowed):
    tenant = None if target.is_platform else "t1"
    if allowed:
        cred = svc.generate_token(school.ctx(issuer), target, tenant_id=tenant)
        assert cred.role is target
    else:
        with pytest.raises(AuthorizationDenied):
            svc.generate_token(school.ctx(issuer), target, tenant_id=tenant)


def test_issuable_roles_follow_rank(school, store):
    reader = store.reader()
    assert issuance.issuable_roles(reader, school.ctx("a1")) == [Role.TEACHER, Role.PARENT, Role.STUDENT]
    assert Role.SUPERADMIN not in issuance.issuable_roles(reader, school.ctx("p1"))
    assert issuance.issuable_roles(reader, school.ctx("tch1")) == []


def test_cannot_mint_into_foreign_tenant(school, svc):
    with pytest.raises(AuthorizationDenied):
        svc.generate_token(school.ctx("p1"), Role.TEACHER, tenant_id="t2")


def test_platform_issuer_needs_existing_tenant(school, svc):
    with pytest.raises(LookupError):
        svc.generate_token(school.ctx("root"), Role.PRINCIPAL, tenant_id="t-missing")
    with pytest.raises(ValueError, match="tenant_required"):
        svc.generate_token(school.ctx("root"), Role.PRINCIPAL)


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"target_role": "janitor"}, "invalid_role"),
        ({"target_role": Role.STUDENT, "usage_limit": 0}, "invalid_usage_limit"),
        ({"target_role": Role.STUDENT, "usage_limit": 501}, "invalid_usage_limit"),
        ({"target_role": Role.STUDENT, "usage_limit": True}, "invalid_usage_limit"),
        ({"target_role": Role.STUDENT, "ttl": timedelta(0)}, "invalid_ttl"),
        ({"target_role": Role.STUDENT, "ttl": timedelta(days=91)}, "invalid_ttl"),
    ],
)
def test_malformed_requests(school, svc, kwargs, code):
    with pytest.raises(ValueError, match=code):
        svc.generate_token(school.ctx("p1"), **kwargs)


def test_platform_credentials_are_single_use_and_tenantless(school, svc):
    with pytest.raises(ValueError, match="invalid_usage_limit"):
        svc.generate_token(school.ctx("root"), Role.SUPERADMIN, usage_limit=2)
    with pytest.raises(ValueError, match="platform_role_has_no_tenant"):
        svc.generate_token(school.ctx("root"), Role.SUPERADMIN, tenant_id="t1")


@pytest.mark.parametrize(
    "role, scope",
    [
        (Role.STUDENT, CredentialScope(ScopeKind.CLASS, "c9")),  # class of another tenant
        (Role.STUDENT, CredentialScope(ScopeKind.CLASS, "nope")),
        (Role.TEACHER, CredentialScope(ScopeKind.CLASS, "c1")),  # class scope is for students
        (Role.PARENT, CredentialScope(ScopeKind.WARD, "s9")),  # ward in another tenant
        (Role.PARENT, CredentialScope(ScopeKind.WARD, "tch1")),  # ward must be a student
    ],
)
def test_scope_must_fit_role_and_tenant(school, svc, role, scope):
    with pytest.raises(ValueError, match="invalid_scope"):
        svc.generate_token(school.ctx("p1"), role, scope=scope)


def test_generation_audits_prefix_only(school, store, svc):
    cred = svc.generate_token(school.ctx("a1"), Role.PARENT, scope=CredentialScope(ScopeKind.WARD, "s1"))
    event = store.audit_events()[-1]
    assert event.kind is AuditKind.TOKEN_GENERATED
    assert event.actor_id == "a1" and event.tenant_id == "t1"
    assert event.details["token_prefix"] == cred.token[:2]
    assert cred.token not in repr(event.details)
    assert event.details["scope"] == "ward:s1"


def test_collisions_are_retried(school, store, clock):
    codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    svc = IssuanceService(store=store, config=AccessConfig(), clock=clock, code_factory=lambda n: next(codes))
    first = svc.generate_token(school.ctx("p1"), Role.TEACHER)
    second = svc.generate_token(school.ctx("p1"), Role.TEACHER)
    assert (first.token, second.token) == ("AAAAAA", "BBBBBB")


def test_collision_retries_are_bounded(school, store, clock):
    svc = IssuanceService(
        store=store,
        config=AccessConfig(collision_retries=3),
        clock=clock,
        code_factory=lambda n: "CCCCCC",
    )
    svc.generate_token(school.ctx("p1"), Role.TEACHER)
    before = len(store.audit_events())
    with pytest.raises(CredentialGenerationExhausted):
        svc.generate_token(school.ctx("p1"), Role.TEACHER)
    assert len(store.audit_events()) == before


def test_weak_generated_codes_are_discarded(school, store, clock):
    codes = iter(["TOKEN", "DDDDDD"])
    svc = IssuanceService(store=store, config=AccessConfig(), clock=clock, code_factory=lambda n: next(codes))
    assert svc.generate_token(school.ctx("p1"), Role.TEACHER).token == "DDDDDD"


def test_list_active_tokens_is_scoped(school, svc, clock):
    p1_cred = svc.generate_token(school.ctx("p1"), Role.TEACHER)
    tch_cred = svc.generate_token(school.ctx("tch1"), Role.STUDENT, scope=CredentialScope(ScopeKind.CLASS, "c1"))
    svc.generate_token(school.ctx("p2"), Role.TEACHER)

    assert {c.token for c in svc.list_active_tokens(school.ctx("a1"))} == {p1_cred.token, tch_cred.token}
    assert [c.token for c in svc.list_active_tokens(school.ctx("tch1"))] == [tch_cred.token]
    assert svc.list_active_tokens(school.ctx("s1")) == []
    clock.advance(days=8)
    assert svc.list_active_tokens(school.ctx("a1")) == []
