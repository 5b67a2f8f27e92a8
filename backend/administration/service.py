"""
Administrative use cases: tenants, invites, principal management.

Why:
    The admin surface is a consumer of the access core. Every call asks the
    evaluator before it touches storage and then delegates to the component
    that owns the invariant (issuance service, principal lifecycle).

Permissions:
    - create_tenant: platform only (administrative TENANT resource, no tenant).
    - issue_invite / revoke_invite / list_invites: INVITE rule table.
    - list_principals: TENANT read, then per-row PRINCIPAL read.
    - deactivate / restore / change_role / change_tenant: PRINCIPAL table.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging
import uuid

from backend.identity_access.audit import AuditKind, AuditSink
from backend.identity_access.domain import Principal, PrincipalContext, Role, Tenant, short_id, utcnow
from backend.identity_access.errors import AuthorizationDenied
from backend.identity_access.policy import decide, require
from backend.identity_access.ports import AccessStore
from backend.identity_access.rules import Operation, Resource, ResourceType
from backend.invites import issuance as issuance_rules
from backend.invites.issuance import invite_resource
from backend.invites.models import CredentialScope, InviteCredential
from backend.invites.service import IssuanceService
from backend.onboarding.lifecycle import PrincipalLifecycle, principal_resource


logger = logging.getLogger("classio.administration")

_MAX_TENANT_NAME = 200


@dataclass
class AdminService:
    store: AccessStore
    issuance: IssuanceService
    lifecycle: PrincipalLifecycle
    audit: AuditSink = field(default_factory=AuditSink)
    clock: Callable[[], datetime] = utcnow

    def _reader(self):
        return self.store.reader()

    def create_tenant(self, actor: PrincipalContext, name: str, *, tenant_id: Optional[str] = None) -> Tenant:
        require(actor, Resource(type=ResourceType.TENANT, tenant_id=None), Operation.CREATE, reader=self._reader())
        clean = " ".join((name or "").split()) if isinstance(name, str) else ""
        if not clean or len(clean) > _MAX_TENANT_NAME:
            raise ValueError("invalid_name")
        tenant = Tenant(id=tenant_id or str(uuid.uuid4()), name=clean, created_at=self.clock(), created_by=actor.identity_id)
        with self.store.unit_of_work() as uow:
            uow.insert_tenant(tenant)
            self.audit.record(
                uow,
                AuditKind.TENANT_CREATED,
                actor_id=actor.identity_id,
                tenant_id=tenant.id,
                at=tenant.created_at,
                name=tenant.name,
            )
        logger.info("tenant created actor=%s tenant=%s", short_id(actor.identity_id), tenant.id)
        return tenant

    def issue_invite(
        self,
        actor: PrincipalContext,
        role: Role | str,
        *,
        tenant_id: Optional[str] = None,
        scope: Optional[CredentialScope] = None,
        usage_limit: int = 1,
        ttl: Optional[timedelta] = None,
    ) -> InviteCredential:
        target_role = Role.parse(role)
        if target_role is None:
            raise ValueError("invalid_role")
        target_tenant = None if target_role.is_platform else (tenant_id or actor.tenant_id)
        require(
            actor,
            invite_resource(issuer=actor, target_role=target_role, tenant_id=target_tenant, scope=scope),
            Operation.CREATE,
            reader=self._reader(),
        )
        return self.issuance.generate_token(
            actor,
            target_role,
            tenant_id=target_tenant,
            scope=scope,
            usage_limit=usage_limit,
            ttl=ttl,
        )

    def issuable_roles(self, actor: PrincipalContext) -> List[Role]:
        """Roles the actor may mint without a scope, for invite forms."""
        if not isinstance(actor, PrincipalContext):
            raise AuthorizationDenied()
        return issuance_rules.issuable_roles(self._reader(), actor)

    def revoke_invite(self, actor: PrincipalContext, token: str) -> bool:
        return self.issuance.invalidate_token(actor, token)

    def list_invites(self, actor: PrincipalContext, tenant_id: Optional[str] = None) -> List[InviteCredential]:
        return self.issuance.list_active_tokens(actor, tenant_id)

    def list_principals(
        self,
        actor: PrincipalContext,
        tenant_id: Optional[str] = None,
        *,
        include_deleted: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Principal]:
        """Principals of one tenant that the actor may see.

        Soft-deleted rows are only returned to actors who could delete them.
        Platform actors without `tenant_id` list the platform principals.
        """
        if not isinstance(actor, PrincipalContext):
            raise AuthorizationDenied()
        target_tenant = tenant_id if actor.is_platform else (tenant_id or actor.tenant_id)
        reader = self._reader()
        if target_tenant is not None:
            require(actor, Resource(type=ResourceType.TENANT, tenant_id=target_tenant, attrs={"id": target_tenant}), Operation.READ, reader=reader)
        elif not actor.is_platform:
            raise AuthorizationDenied()
        limit = max(1, min(200, int(limit or 50)))
        offset = max(0, int(offset or 0))
        with self.store.unit_of_work() as uow:
            rows = uow.list_principals(target_tenant, include_deleted=include_deleted, limit=limit, offset=offset)
            visible = []
            for row in rows:
                op = Operation.DELETE if row.is_deleted else Operation.READ
                if decide(actor, principal_resource(row), op, reader=uow).allowed:
                    visible.append(row)
        return visible

    def deactivate_principal(self, actor: PrincipalContext, identity_id: str) -> Principal:
        return self.lifecycle.soft_delete(actor, identity_id)

    def restore_principal(self, actor: PrincipalContext, identity_id: str) -> Principal:
        return self.lifecycle.restore(actor, identity_id)

    def change_role(self, actor: PrincipalContext, identity_id: str, role: Role | str, *, tenant_id: Optional[str] = None) -> Principal:
        return self.lifecycle.change_role(actor, identity_id, role, tenant_id=tenant_id)

    def change_tenant(self, actor: PrincipalContext, identity_id: str, tenant_id: str) -> Principal:
        return self.lifecycle.change_tenant(actor, identity_id, tenant_id)


__all__ = ["AdminService"]
