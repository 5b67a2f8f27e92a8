"""
Credential issuance service: generate, redeem, invalidate invite credentials.

Why:
    Invite credentials are the only way an account acquires a role and a
    tenant. Generation is gated by the issuance table; redemption is one
    atomic check-and-increment so concurrent redeemers can never exceed the
    usage limit; bound side effects (class enrollment, guardianship link) ride
    in the same unit and roll back with it.

Security:
    - Token values are never logged or audited, only `audit_prefix(token)`.
    - Denials are generic (`AuthorizationDenied`) so callers cannot probe
      which tenants, classes or tokens exist.

Behavior:
    - `redeem_token` returns `Redemption` or `Rejected(reason)`; expired is
      checked before exhausted. Infrastructure failures, side-effect failures
      and broken invariants raise and leave the credential unconsumed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging

from backend.identity_access.audit import AuditKind, AuditSink
from backend.identity_access.config import AccessConfig
from backend.identity_access.domain import PrincipalContext, Role, short_id, utcnow
from backend.identity_access.errors import (
    AuthorizationDenied,
    CredentialGenerationExhausted,
    IntegrityViolation,
)
from backend.identity_access.policy import decide
from backend.identity_access.ports import AccessStore, UnitOfWork
from backend.identity_access.rules import Operation, Resource, ResourceType

from . import issuance
from .codes import MIN_PLATFORM_CODE_LENGTH, audit_prefix, generate_code, is_weak_code, normalize_code
from .models import (
    CredentialScope,
    InviteCredential,
    RedeemResult,
    Redemption,
    Rejected,
    RejectionReason,
    ScopeKind,
)


logger = logging.getLogger("classio.invites")

# Upper bound for any invite lifetime, regardless of configuration.
MAX_INVITE_TTL = timedelta(days=90)

OnConsumed = Callable[[UnitOfWork, Redemption], None]


def credential_resource(credential: InviteCredential) -> Resource:
    attrs = {"role": credential.role.value, "issuer_id": credential.issued_by}
    if credential.scope is not None:
        key = "class_id" if credential.scope.kind is ScopeKind.CLASS else "student_id"
        attrs[key] = credential.scope.target_id
    return Resource(type=ResourceType.INVITE, tenant_id=credential.tenant_id, attrs=attrs)


@dataclass
class IssuanceService:
    store: AccessStore
    config: AccessConfig = field(default_factory=AccessConfig)
    audit: AuditSink = field(default_factory=AuditSink)
    clock: Callable[[], datetime] = utcnow
    code_factory: Callable[[int], str] = generate_code

    # Generation -----------------------------------------------------------
    def generate_token(
        self,
        issuer: PrincipalContext,
        target_role: Role | str,
        tenant_id: Optional[str] = None,
        scope: Optional[CredentialScope] = None,
        usage_limit: int = 1,
        ttl: Optional[timedelta] = None,
    ) -> InviteCredential:
        """Mint a credential for `target_role`.

        Raises:
            AuthorizationDenied: issuer may not mint this role/tenant/scope.
            ValueError: malformed role, usage limit, ttl or scope.
            CredentialGenerationExhausted: every attempt collided.
        """
        if not isinstance(issuer, PrincipalContext):
            raise AuthorizationDenied()
        role = Role.parse(target_role)
        if role is None:
            raise ValueError("invalid_role")
        limit = self._validate_usage_limit(role, usage_limit)
        lifetime = self._validate_ttl(ttl)

        if role.is_platform:
            if tenant_id is not None or scope is not None:
                raise ValueError("platform_role_has_no_tenant")
            target_tenant = None
        else:
            target_tenant = tenant_id or issuer.tenant_id
            if not target_tenant:
                raise ValueError("tenant_required")

        with self.store.unit_of_work() as uow:
            if not issuance.can_issue(uow, issuer, role, target_tenant, scope):
                logger.info(
                    "issuance denied issuer=%s role=%s target_role=%s",
                    short_id(issuer.identity_id),
                    issuer.role.value,
                    role.value,
                )
                raise AuthorizationDenied()
            if target_tenant is not None and uow.get_tenant(target_tenant) is None:
                raise LookupError("not_found")
            if not issuance.scope_matches(uow, target_role=role, tenant_id=target_tenant, scope=scope):
                raise ValueError("invalid_scope")
            now = self.clock()
            credential = self.mint(
                uow,
                role=role,
                tenant_id=target_tenant,
                scope=scope,
                usage_limit=limit,
                expires_at=now + lifetime,
                issued_by=issuer.identity_id,
                length=self._code_length(role),
                now=now,
            )
            self.audit.record(
                uow,
                AuditKind.TOKEN_GENERATED,
                actor_id=issuer.identity_id,
                tenant_id=target_tenant,
                at=now,
                token_prefix=audit_prefix(credential.token),
                role=role.value,
                usage_limit=limit,
                expires_at=credential.expires_at.isoformat(),
                scope=(f"{scope.kind.value}:{scope.target_id}" if scope else None),
            )
        logger.info(
            "credential issued issuer=%s role=%s prefix=%s",
            short_id(issuer.identity_id),
            role.value,
            audit_prefix(credential.token),
        )
        return credential

    def mint(
        self,
        uow: UnitOfWork,
        *,
        role: Role,
        tenant_id: Optional[str],
        scope: Optional[CredentialScope],
        usage_limit: int,
        expires_at: datetime,
        issued_by: Optional[str],
        length: int,
        now: datetime,
        code_fn: Optional[Callable[[], str]] = None,
    ) -> InviteCredential:
        """Insert a fresh credential, retrying on collisions (bounded)."""
        make = code_fn or (lambda: self.code_factory(length))
        for attempt in range(1, self.config.collision_retries + 1):
            token = make()
            if is_weak_code(token, role):
                logger.warning("discarded weak generated code attempt=%s", attempt)
                continue
            credential = InviteCredential(
                token=token,
                role=role,
                tenant_id=tenant_id,
                scope=scope,
                usage_limit=usage_limit,
                times_used=0,
                expires_at=expires_at,
                issued_by=issued_by,
                created_at=now,
            )
            if uow.insert_credential(credential):
                return credential
            logger.info("credential code collision attempt=%s", attempt)
        logger.error("credential generation exhausted after %s attempts", self.config.collision_retries)
        raise CredentialGenerationExhausted()

    def _code_length(self, role: Role) -> int:
        if role.is_platform:
            return max(self.config.invite_code_length, MIN_PLATFORM_CODE_LENGTH)
        return self.config.invite_code_length

    def _validate_usage_limit(self, role: Role, usage_limit: object) -> int:
        if isinstance(usage_limit, bool) or not isinstance(usage_limit, int):
            raise ValueError("invalid_usage_limit")
        if usage_limit < 1 or usage_limit > self.config.invite_max_usage:
            raise ValueError("invalid_usage_limit")
        if role.is_platform and usage_limit != 1:
            raise ValueError("invalid_usage_limit")
        return usage_limit

    def _validate_ttl(self, ttl: Optional[timedelta]) -> timedelta:
        if ttl is None:
            return timedelta(hours=self.config.invite_ttl_hours)
        if not isinstance(ttl, timedelta) or ttl <= timedelta(0) or ttl > MAX_INVITE_TTL:
            raise ValueError("invalid_ttl")
        return ttl

    # Redemption -----------------------------------------------------------
    def redeem_token(
        self,
        token: str,
        redeemer_identity: str,
        *,
        timeout: Optional[float] = None,
        on_consumed: Optional[OnConsumed] = None,
    ) -> RedeemResult:
        """Atomically consume one use of `token` for `redeemer_identity`.

        Parameters:
            on_consumed: hook run inside the same unit after the increment and
                before bound side effects (provisioning creates the principal
                here). Raising from it rolls the redemption back.
            timeout: seconds to wait for the unit; defaults to configuration.
                A timeout raises TimeoutError with the credential unconsumed.
        """
        code = normalize_code(token)
        if not isinstance(redeemer_identity, str) or not redeemer_identity.strip():
            raise ValueError("invalid_identity")
        if not code:
            return Rejected(RejectionReason.NOT_FOUND)
        wait = self.config.redeem_timeout_seconds if timeout is None else timeout

        with self.store.unit_of_work(timeout=wait) as uow:
            now = self.clock()
            credential = uow.get_credential(code, for_update=True)
            if credential is None:
                logger.info("redeem rejected reason=not_found sub=%s", short_id(redeemer_identity))
                return Rejected(RejectionReason.NOT_FOUND)
            self._check_counter(credential)
            if credential.is_expired(now):
                logger.info("redeem rejected reason=expired prefix=%s", audit_prefix(code))
                return Rejected(RejectionReason.EXPIRED)
            if credential.is_exhausted:
                logger.info("redeem rejected reason=exhausted prefix=%s", audit_prefix(code))
                return Rejected(RejectionReason.EXHAUSTED)

            used = credential.times_used + 1
            uow.set_times_used(code, used)
            stored = uow.get_credential(code)
            if stored is None or stored.times_used != used:
                self._integrity("lost_update", code)
            self._check_counter(stored)

            grant = Redemption(
                role=credential.role,
                tenant_id=credential.tenant_id,
                scope=credential.scope,
                token_prefix=audit_prefix(code),
                times_used=used,
                usage_limit=credential.usage_limit,
                bootstrap=credential.is_bootstrap,
            )
            if on_consumed is not None:
                on_consumed(uow, grant)
            self._apply_side_effects(uow, grant, redeemer_identity)
            uow.record_redemption(code, redeemer_identity, now)
            self.audit.record(
                uow,
                AuditKind.TOKEN_REDEEMED,
                actor_id=redeemer_identity,
                subject_id=redeemer_identity,
                tenant_id=credential.tenant_id,
                at=now,
                token_prefix=grant.token_prefix,
                role=credential.role.value,
                times_used=used,
                usage_limit=credential.usage_limit,
            )
        logger.info(
            "credential redeemed sub=%s prefix=%s uses=%s/%s",
            short_id(redeemer_identity),
            grant.token_prefix,
            grant.times_used,
            grant.usage_limit,
        )
        return grant

    def _apply_side_effects(self, uow: UnitOfWork, grant: Redemption, redeemer: str) -> None:
        if grant.scope is None:
            return
        principal = uow.get_principal(redeemer)
        if principal is None or principal.is_deleted or principal.role is not grant.role or principal.tenant_id != grant.tenant_id:
            raise ValueError("redeemer_does_not_match_credential")
        if grant.scope.kind is ScopeKind.CLASS:
            uow.add_enrollment(grant.scope.target_id, redeemer)
        elif grant.scope.kind is ScopeKind.WARD:
            uow.add_guardianship(redeemer, grant.scope.target_id)

    def _check_counter(self, credential: InviteCredential) -> None:
        if credential.times_used < 0 or credential.times_used > credential.usage_limit:
            self._integrity("times_used_out_of_range", credential.token)

    def _integrity(self, code: str, token: str) -> None:
        logger.critical("integrity violation code=%s prefix=%s", code, audit_prefix(token))
        raise IntegrityViolation(code)

    # Revocation / queries -------------------------------------------------
    def invalidate_token(self, actor: PrincipalContext, token: str) -> bool:
        """Force immediate expiry. Returns False when already expired.

        Unknown tokens and tokens outside the actor's reach both raise the
        same AuthorizationDenied.
        """
        code = normalize_code(token)
        with self.store.unit_of_work() as uow:
            credential = uow.get_credential(code, for_update=True) if code else None
            if credential is None or not decide(actor, credential_resource(credential), Operation.DELETE, reader=uow).allowed:
                raise AuthorizationDenied()
            now = self.clock()
            if credential.is_expired(now):
                return False
            self.expire(uow, credential, now=now, actor_id=actor.identity_id, kind=AuditKind.TOKEN_INVALIDATED)
        return True

    def expire(
        self,
        uow: UnitOfWork,
        credential: InviteCredential,
        *,
        now: datetime,
        actor_id: Optional[str],
        kind: AuditKind,
    ) -> None:
        uow.set_expiry(credential.token, now)
        self.audit.record(
            uow,
            kind,
            actor_id=actor_id,
            tenant_id=credential.tenant_id,
            at=now,
            token_prefix=audit_prefix(credential.token),
            role=credential.role.value,
        )

    def is_token_valid(self, token: str) -> bool:
        code = normalize_code(token)
        if not code:
            return False
        with self.store.unit_of_work() as uow:
            credential = uow.get_credential(code)
            return credential is not None and credential.is_live(self.clock())

    def list_active_tokens(self, actor: PrincipalContext, tenant_id: Optional[str] = None) -> List[InviteCredential]:
        """Live credentials the actor may see (tenant admins: tenant; teachers: own)."""
        if not isinstance(actor, PrincipalContext):
            raise AuthorizationDenied()
        scope_tenant = tenant_id if actor.is_platform else actor.tenant_id
        with self.store.unit_of_work() as uow:
            now = self.clock()
            candidates = uow.list_credentials(tenant_id=scope_tenant, live_at=now)
            return [
                c for c in candidates
                if decide(actor, credential_resource(c), Operation.READ, reader=uow).allowed
            ]


__all__ = ["IssuanceService", "MAX_INVITE_TTL", "credential_resource"]
