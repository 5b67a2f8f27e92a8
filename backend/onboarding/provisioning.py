"""
Provisioning workflow: turn a newly created identity into a Principal.

Why:
    No identity may exist without a principal, and no principal may exist
    without a redeemed credential. The identity provider calls this workflow
    synchronously while creating the identity; a failure here aborts the
    identity creation.

Behavior:
    - Missing credential reference: `ProvisioningFailed("credential_required")`.
    - Identity already owns a principal (live or soft-deleted): no-op.
    - Otherwise one unit of work: redeem the credential, insert the principal
      from the credential's {role, tenant}, run bound side effects (class
      enrollment, guardianship), and when the principal is platform-level,
      expire every live bootstrap credential. Any failure rolls back all of it.
    - Role/tenant claims in the payload are advisory only and never used.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlparse
import logging

from backend.identity_access.audit import AuditKind, AuditSink
from backend.identity_access.domain import Principal, check_tenant_binding, short_id
from backend.identity_access.errors import AccessError, ProvisioningFailed
from backend.identity_access.ports import UnitOfWork
from backend.invites.bootstrap import BootstrapService
from backend.invites.models import Redemption, Rejected
from backend.invites.service import IssuanceService


logger = logging.getLogger("classio.onboarding")

_MAX_NAME_LENGTH = 100
_MAX_URL_LENGTH = 2048


@dataclass(frozen=True)
class IdentityCreated:
    """Identity-creation event as delivered by the identity provider."""

    identity_id: str
    credential_token: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    claims: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "IdentityCreated":
        """Build an event from verified hook-token claims.

        Profile fields live under `user_metadata` (falling back to top-level
        claims). `invite_token` and `credential_token` are both accepted.
        """
        meta = claims.get("user_metadata")
        meta = meta if isinstance(meta, Mapping) else {}

        def pick(*names: str) -> Optional[str]:
            for name in names:
                for source in (meta, claims):
                    value = source.get(name)
                    if isinstance(value, str) and value.strip():
                        return value
            return None

        advisory = {}
        for key in ("role", "school_id", "tenant_id"):
            value = meta.get(key, claims.get(key))
            if value is not None:
                advisory[key] = value
        return cls(
            identity_id=str(claims.get("sub") or ""),
            credential_token=pick("credential_token", "invite_token"),
            first_name=pick("first_name", "given_name"),
            last_name=pick("last_name", "family_name"),
            avatar_url=pick("avatar_url", "picture"),
            claims=advisory,
        )


@dataclass(frozen=True)
class ProvisioningOutcome:
    principal: Principal
    created: bool


def _clean_name(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = " ".join(value.split())
    return value[:_MAX_NAME_LENGTH] or None


def _clean_url(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str) or len(value) > _MAX_URL_LENGTH:
        return None
    parsed = urlparse(value.strip())
    if parsed.scheme != "https" or not parsed.netloc:
        return None
    return value.strip()


@dataclass
class ProvisioningWorkflow:
    issuance: IssuanceService
    bootstrap: Optional[BootstrapService] = None
    audit: AuditSink = field(default_factory=AuditSink)

    def __post_init__(self) -> None:
        if self.bootstrap is None:
            self.bootstrap = BootstrapService(issuance=self.issuance, audit=self.audit)

    def on_identity_created(self, event: IdentityCreated) -> ProvisioningOutcome:
        identity_id = (event.identity_id or "").strip()
        if not identity_id:
            raise ProvisioningFailed("invalid_identity")

        existing = self._existing(identity_id)
        if existing is not None:
            logger.info("provisioning skipped, principal exists sub=%s", short_id(identity_id))
            return ProvisioningOutcome(principal=existing, created=False)

        if not event.credential_token or not event.credential_token.strip():
            logger.info("provisioning rejected: no credential sub=%s", short_id(identity_id))
            raise ProvisioningFailed("credential_required")

        created: dict[str, Principal] = {}

        def create_principal(uow: UnitOfWork, grant: Redemption) -> None:
            created["principal"] = self._insert_principal(uow, identity_id, grant, event)

        try:
            result = self.issuance.redeem_token(event.credential_token, identity_id, on_consumed=create_principal)
        except ProvisioningFailed:
            raise
        except Exception as exc:
            raced = self._existing(identity_id)
            if raced is not None:
                logger.info("provisioning raced, principal exists sub=%s", short_id(identity_id))
                return ProvisioningOutcome(principal=raced, created=False)
            code = exc.code if isinstance(exc, AccessError) else exc.__class__.__name__
            logger.warning("provisioning failed sub=%s err=%s", short_id(identity_id), code)
            raise ProvisioningFailed(self._failure_code(exc)) from exc

        if isinstance(result, Rejected):
            # A concurrent delivery of the same event may have consumed the
            # credential for this very identity.
            raced = self._existing(identity_id)
            if raced is not None:
                logger.info("provisioning replayed concurrently, principal exists sub=%s", short_id(identity_id))
                return ProvisioningOutcome(principal=raced, created=False)
            error = result.as_error()
            logger.info("provisioning rejected sub=%s reason=%s", short_id(identity_id), error.code)
            raise ProvisioningFailed(error.code) from error

        principal = created["principal"]
        self._note_advisory_claims(event, principal)
        logger.info(
            "principal provisioned sub=%s role=%s",
            short_id(identity_id),
            principal.role.value,
        )
        return ProvisioningOutcome(principal=principal, created=True)

    def _insert_principal(self, uow: UnitOfWork, identity_id: str, grant: Redemption, event: IdentityCreated) -> Principal:
        check_tenant_binding(grant.role, grant.tenant_id)
        if grant.tenant_id is not None and uow.get_tenant(grant.tenant_id) is None:
            raise ProvisioningFailed("tenant_missing")
        principal = Principal(
            identity_id=identity_id,
            role=grant.role,
            tenant_id=grant.tenant_id,
            first_name=_clean_name(event.first_name),
            last_name=_clean_name(event.last_name),
            avatar_url=_clean_url(event.avatar_url),
        )
        uow.insert_principal(principal)
        if grant.role.is_platform:
            self.bootstrap.invalidate_live(uow, reason="platform_principal_provisioned", actor_id=identity_id)
        self.audit.record(
            uow,
            AuditKind.PRINCIPAL_PROVISIONED,
            actor_id=identity_id,
            subject_id=identity_id,
            tenant_id=grant.tenant_id,
            role=grant.role.value,
            token_prefix=grant.token_prefix,
            bootstrap=grant.bootstrap,
        )
        return principal

    def _existing(self, identity_id: str) -> Optional[Principal]:
        return self.issuance.store.reader().get_principal(identity_id)

    @staticmethod
    def _failure_code(exc: Exception) -> str:
        if isinstance(exc, AccessError):
            return exc.code
        if isinstance(exc, TimeoutError):
            return "timeout"
        if isinstance(exc, (ValueError, LookupError)) and exc.args and isinstance(exc.args[0], str):
            return exc.args[0]
        return "internal_error"

    @staticmethod
    def _note_advisory_claims(event: IdentityCreated, principal: Principal) -> None:
        claimed_role = event.claims.get("role")
        claimed_tenant = event.claims.get("tenant_id") or event.claims.get("school_id")
        if claimed_role is not None and claimed_role != principal.role.value:
            logger.info("advisory role claim ignored sub=%s", short_id(principal.identity_id))
        if claimed_tenant is not None and claimed_tenant != principal.tenant_id:
            logger.info("advisory tenant claim ignored sub=%s", short_id(principal.identity_id))


__all__ = ["IdentityCreated", "ProvisioningOutcome", "ProvisioningWorkflow"]
