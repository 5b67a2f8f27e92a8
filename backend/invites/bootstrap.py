"""
Bootstrap: mint the credential for the very first platform principal.

Why:
    A fresh deployment has no superadmin and therefore nobody who could pass
    the issuance table. This path exists only while zero live platform
    principals exist and closes itself as soon as one is provisioned.

Security:
    - Serialized with `lock_bootstrap()` so two concurrent calls cannot both
      observe "no platform principal".
    - At most one live bootstrap credential: every call expires the previous
      live ones before minting a new one.
    - TTL defaults to 24 hours and is clamped to 168 hours.
    - Audit/log lines carry only the token prefix.
    - Calls after a platform principal exists raise BootstrapConflict and are
      logged on `classio.security`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
import logging

from backend.identity_access.audit import AuditKind, AuditSink
from backend.identity_access.config import BOOTSTRAP_TTL_MAX_HOURS, AccessConfig
from backend.identity_access.domain import Role
from backend.identity_access.errors import BootstrapConflict
from backend.identity_access.ports import UnitOfWork

from .codes import audit_prefix, generate_bootstrap_code
from .models import InviteCredential
from .service import IssuanceService


logger = logging.getLogger("classio.invites")
security_logger = logging.getLogger("classio.security")


@dataclass(frozen=True)
class BootstrapStatus:
    needs_bootstrap: bool
    platform_principals: int
    pending_tokens: int
    message: str


@dataclass
class BootstrapService:
    issuance: IssuanceService
    audit: AuditSink = field(default_factory=AuditSink)

    @property
    def config(self) -> AccessConfig:
        return self.issuance.config

    def generate_bootstrap_token(self, ttl_hours: Optional[int] = None, *, notes: str = "") -> InviteCredential:
        """Expire any live bootstrap credential and mint a new one.

        Raises:
            BootstrapConflict: a live platform principal already exists.
            ValueError: `ttl_hours` below 1.
        """
        hours = self._ttl_hours(ttl_hours)
        with self.issuance.store.unit_of_work() as uow:
            uow.lock_bootstrap()
            now = self.issuance.clock()
            platform_count = uow.count_platform_principals()
            if platform_count > 0:
                self.audit.record(uow, AuditKind.BOOTSTRAP_CONFLICT, at=now, platform_principals=platform_count)
                conflict = True
            else:
                conflict = False
                self.invalidate_live(uow, reason="superseded")
                credential = self.issuance.mint(
                    uow,
                    role=Role.SUPERADMIN,
                    tenant_id=None,
                    scope=None,
                    usage_limit=1,
                    expires_at=now + timedelta(hours=hours),
                    issued_by=None,
                    length=0,
                    now=now,
                    code_fn=generate_bootstrap_code,
                )
                self.audit.record(
                    uow,
                    AuditKind.BOOTSTRAP_GENERATED,
                    at=now,
                    token_prefix=audit_prefix(credential.token),
                    expires_at=credential.expires_at.isoformat(),
                    ttl_hours=hours,
                    notes=notes or None,
                )
        if conflict:
            # Logged after commit so the conflict audit row persists.
            security_logger.warning("bootstrap attempted with %s live platform principal(s)", platform_count)
            raise BootstrapConflict()
        logger.warning(
            "bootstrap credential generated prefix=%s expires_at=%s",
            audit_prefix(credential.token),
            credential.expires_at.isoformat(),
        )
        return credential

    def invalidate_live(self, uow: UnitOfWork, *, reason: str, actor_id: Optional[str] = None) -> List[str]:
        """Expire every live bootstrap credential inside `uow`. Returns prefixes."""
        now = self.issuance.clock()
        prefixes = []
        for credential in uow.list_credentials(live_at=now, bootstrap_only=True):
            self.issuance.expire(uow, credential, now=now, actor_id=actor_id, kind=AuditKind.BOOTSTRAP_INVALIDATED)
            prefixes.append(audit_prefix(credential.token))
        if prefixes:
            logger.info("bootstrap credentials invalidated count=%s reason=%s", len(prefixes), reason)
        return prefixes

    def bootstrap_status(self) -> BootstrapStatus:
        with self.issuance.store.unit_of_work() as uow:
            now = self.issuance.clock()
            count = uow.count_platform_principals()
            pending = len(uow.list_credentials(live_at=now, bootstrap_only=True))
        if count > 0:
            message = "Platform administrator exists; bootstrap is closed."
        elif pending:
            message = "A bootstrap credential is pending redemption."
        else:
            message = "No platform administrator; generate a bootstrap credential."
        return BootstrapStatus(
            needs_bootstrap=count == 0,
            platform_principals=count,
            pending_tokens=pending,
            message=message,
        )

    def _ttl_hours(self, ttl_hours: Optional[int]) -> int:
        if ttl_hours is None:
            hours = self.config.bootstrap_ttl_hours
        elif isinstance(ttl_hours, bool) or not isinstance(ttl_hours, int) or ttl_hours < 1:
            raise ValueError("invalid_bootstrap_ttl")
        else:
            hours = ttl_hours
        if hours > BOOTSTRAP_TTL_MAX_HOURS:
            logger.warning("bootstrap ttl %sh clamped to %sh", hours, BOOTSTRAP_TTL_MAX_HOURS)
            hours = BOOTSTRAP_TTL_MAX_HOURS
        return hours


__all__ = ["BootstrapService", "BootstrapStatus"]
