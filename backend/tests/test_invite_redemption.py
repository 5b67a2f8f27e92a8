"""
Credential redemption: atomic consumption, expiry, exhaustion, side effects,
rollback and revocation.
"""
from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from backend.identity_access.audit import AuditKind
from backend.identity_access.config import AccessConfig
from backend.identity_access.domain import Principal, Role
from backend.identity_access.errors import (
    AuthorizationDenied,
    CredentialExhausted,
    CredentialExpired,
    IntegrityViolation,
)
from backend.invites.models import (
    CredentialScope,
    InviteCredential,
    Redemption,
    Rejected,
    RejectionReason,
    ScopeKind,
)
from backend.invites.service import IssuanceService
from utils.access import FixedClock


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def svc(store, clock):
    return IssuanceService(store=store, config=AccessConfig(), clock=clock)


def _seed(store, clock, token="AB3C9Q", *, role=Role.TEACHER, tenant="t1", limit=1, used=0, expires_in=timedelta(days=1), scope=None):
    cred = InviteCredential(
        token=token,
        role=role,
        tenant_id=tenant,
        scope=scope,
        usage_limit=limit,
        times_used=used,
        expires_at=clock.now + expires_in,
        issued_by="p1",
        created_at=clock.now,
    )
    with store.unit_of_work() as uow:
        assert uow.insert_credential(cred)
    return cred


def _race(svc, token, identities):
    barrier = threading.Barrier(len(identities))
    results = {}

    def worker(ident):
        barrier.wait()
        results[ident] = svc.redeem_token(token, ident)

    threads = [threading.Thread(target=worker, args=(i,)) for i in identities]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results


def test_redeem_returns_grant_and_records(school, store, svc, clock):
    _seed(store, clock, limit=2)
    result = svc.redeem_token(" ab3c9q ", "new-user")
    assert isinstance(result, Redemption)
    assert (result.role, result.tenant_id, result.times_used, result.usage_limit) == (Role.TEACHER, "t1", 1, 2)
    assert result.token_prefix == "AB"
    assert store.credential("AB3C9Q").times_used == 1
    assert [(r.token, r.identity_id) for r in store.redemptions()] == [("AB3C9Q", "new-user")]
    event = store.audit_events()[-1]
    assert event.kind is AuditKind.TOKEN_REDEEMED and "AB3C9Q" not in repr(event.details)


def test_unknown_token_is_rejected(school, svc):
    assert svc.redeem_token("ZZZZZZ", "u") == Rejected(RejectionReason.NOT_FOUND)
    assert svc.redeem_token("", "u") == Rejected(RejectionReason.NOT_FOUND)


def test_blank_identity_is_a_caller_error(svc):
    with pytest.raises(ValueError, match="invalid_identity"):
        svc.redeem_token("AB3C9Q", " ")


def test_expired_credential_leaves_store_unchanged(school, store, svc, clock):
    _seed(store, clock, expires_in=timedelta(seconds=-1))
    before = len(store.audit_events())
    result = svc.redeem_token("AB3C9Q", "u")
    assert result == Rejected(RejectionReason.EXPIRED)
    assert isinstance(result.as_error(), CredentialExpired)
    assert store.credential("AB3C9Q").times_used == 0
    assert store.redemptions() == []
    assert len(store.audit_events()) == before


def test_expiry_is_reported_before_exhaustion(school, store, svc, clock):
    _seed(store, clock, limit=1, used=1, expires_in=timedelta(seconds=-1))
    assert svc.redeem_token("AB3C9Q", "u").reason is RejectionReason.EXPIRED


def test_exhausted_credential(school, store, svc, clock):
    _seed(store, clock, limit=1, used=1)
    result = svc.redeem_token("AB3C9Q", "u")
    assert result.reason is RejectionReason.EXHAUSTED
    assert isinstance(result.as_error(), CredentialExhausted)


def test_last_use_goes_to_exactly_one_of_two_racers(school, store, svc, clock):
    _seed(store, clock, limit=3, used=2)
    results = _race(svc, "AB3C9Q", ["racer-a", "racer-b"])
    grants = [r for r in results.values() if isinstance(r, Redemption)]
    rejections = [r for r in results.values() if isinstance(r, Rejected)]
    assert len(grants) == 1 and grants[0].times_used == 3
    assert [r.reason for r in rejections] == [RejectionReason.EXHAUSTED]
    assert store.credential("AB3C9Q").times_used == 3


def test_single_use_has_exactly_one_winner(school, store, svc, clock):
    _seed(store, clock, limit=1)
    results = _race(svc, "AB3C9Q", [f"user-{i}" for i in range(8)])
    assert sum(isinstance(r, Redemption) for r in results.values()) == 1
    assert store.credential("AB3C9Q").times_used == 1
    assert len(store.redemptions()) == 1


def test_concurrent_redemptions_never_exceed_limit(school, store, svc, clock):
    _seed(store, clock, limit=5)
    results = _race(svc, "AB3C9Q", [f"user-{i}" for i in range(12)])
    assert sum(isinstance(r, Redemption) for r in results.values()) == 5
    assert store.credential("AB3C9Q").times_used == 5


def test_class_scope_enrolls_redeemer(school, store, svc, clock):
    store.add_principal(Principal(identity_id="s3", role=Role.STUDENT, tenant_id="t1"))
    _seed(store, clock, role=Role.STUDENT, limit=30, scope=CredentialScope(ScopeKind.CLASS, "c1"))
    assert isinstance(svc.redeem_token("AB3C9Q", "s3"), Redemption)
    assert store.reader().is_enrolled("s3", "c1")


def test_ward_scope_links_guardian(school, store, svc, clock):
    store.add_principal(Principal(identity_id="par2", role=Role.PARENT, tenant_id="t1"))
    _seed(store, clock, role=Role.PARENT, scope=CredentialScope(ScopeKind.WARD, "s2"))
    assert isinstance(svc.redeem_token("AB3C9Q", "par2"), Redemption)
    assert store.reader().is_guardian_of("par2", "s2")


def test_failing_side_effect_rolls_back_consumption(school, store, svc, clock):
    # A teacher cannot take a student's class credential.
    _seed(store, clock, role=Role.STUDENT, scope=CredentialScope(ScopeKind.CLASS, "c1"))
    before = len(store.audit_events())
    with pytest.raises(ValueError, match="redeemer_does_not_match_credential"):
        svc.redeem_token("AB3C9Q", "tch1")
    assert store.credential("AB3C9Q").times_used == 0
    assert not store.reader().is_enrolled("tch1", "c1")
    assert store.redemptions() == []
    assert len(store.audit_events()) == before


def test_failing_hook_rolls_back_consumption(school, store, svc, clock):
    _seed(store, clock)

    def explode(uow, grant):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        svc.redeem_token("AB3C9Q", "u", on_consumed=explode)
    assert store.credential("AB3C9Q").times_used == 0


def test_timed_out_redemption_leaves_credential_unconsumed(school, store, svc, clock):
    _seed(store, clock)
    holding = threading.Event()
    release = threading.Event()

    def hold():
        with store.unit_of_work():
            holding.set()
            release.wait(5)

    t = threading.Thread(target=hold)
    t.start()
    try:
        assert holding.wait(5)
        with pytest.raises(TimeoutError):
            svc.redeem_token("AB3C9Q", "u", timeout=0.05)
    finally:
        release.set()
        t.join(5)
    assert store.credential("AB3C9Q").times_used == 0


def test_corrupted_counter_is_an_integrity_violation(school, store, svc, clock, caplog):
    _seed(store, clock, limit=1)
    with store.unit_of_work() as uow:
        uow.set_times_used("AB3C9Q", 4)
    with caplog.at_level("CRITICAL", logger="classio.invites"):
        with pytest.raises(IntegrityViolation):
            svc.redeem_token("AB3C9Q", "u")
    assert any("integrity violation" in r.getMessage() for r in caplog.records)


def test_invalidate_forces_expiry(school, store, svc, clock):
    cred = svc.generate_token(school.ctx("a1"), Role.TEACHER, usage_limit=5)
    assert svc.is_token_valid(cred.token)
    assert svc.invalidate_token(school.ctx("p1"), cred.token) is True
    assert not svc.is_token_valid(cred.token)
    assert svc.redeem_token(cred.token, "late").reason is RejectionReason.EXPIRED
    assert store.audit_events()[-1].kind is AuditKind.TOKEN_INVALIDATED
    # Second call is a no-op.
    assert svc.invalidate_token(school.ctx("p1"), cred.token) is False


def test_invalidate_is_generic_for_unknown_and_foreign(school, svc):
    cred = svc.generate_token(school.ctx("p2"), Role.TEACHER)
    with pytest.raises(AuthorizationDenied):
        svc.invalidate_token(school.ctx("p1"), cred.token)
    with pytest.raises(AuthorizationDenied):
        svc.invalidate_token(school.ctx("p1"), "NOPE99")
    with pytest.raises(AuthorizationDenied):
        svc.invalidate_token(school.ctx("tch1"), cred.token)
