"""
Principal lifecycle: role and tenant reassignment, soft delete, restore.

Why:
    Together with provisioning these are the only writers of a principal's
    `role`, `tenant_id` and delete marker, so the invariants live here:

    - a non-platform principal always has a tenant, a platform one never;
    - the last live platform principal cannot be deleted or demoted;
    - a platform principal cannot delete itself;
    - principals are never hard-deleted.

Permissions:
    Each operation asks the evaluator first (PRINCIPAL resource; ASSIGN,
    DELETE, RESTORE). Unknown targets raise the same generic
    AuthorizationDenied as forbidden ones.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional
import logging

from backend.identity_access.audit import AuditKind, AuditSink
from backend.identity_access.domain import Principal, PrincipalContext, Role, check_tenant_binding, short_id, utcnow
from backend.identity_access.errors import AuthorizationDenied
from backend.identity_access.policy import decide
from backend.identity_access.ports import AccessStore, UnitOfWork
from backend.identity_access.rules import Operation, Resource, ResourceType
from backend.invites import issuance


logger = logging.getLogger("classio.onboarding")


def principal_resource(principal: Principal) -> Resource:
    return Resource(
        type=ResourceType.PRINCIPAL,
        tenant_id=principal.tenant_id,
        attrs={"id": principal.identity_id, "role": principal.role.value},
    )


@dataclass
class PrincipalLifecycle:
    store: AccessStore
    audit: AuditSink = field(default_factory=AuditSink)
    clock: Callable[[], datetime] = utcnow

    def _target(self, uow: UnitOfWork, actor: PrincipalContext, identity_id: str, operation: Operation, *, deleted: bool = False) -> Principal:
        target = uow.get_principal(identity_id) if isinstance(identity_id, str) and identity_id else None
        if target is None or target.is_deleted != deleted:
            raise AuthorizationDenied()
        if not decide(actor, principal_resource(target), operation, reader=uow).allowed:
            raise AuthorizationDenied()
        return target

    def change_role(
        self,
        actor: PrincipalContext,
        identity_id: str,
        new_role: Role | str,
        *,
        tenant_id: Optional[str] = None,
    ) -> Principal:
        """Assign `new_role`; the actor must also be allowed to mint that role.

        `tenant_id` is required when promoting a platform principal back into a
        tenant role; otherwise the current tenant is kept.
        """
        role = Role.parse(new_role)
        if role is None:
            raise ValueError("invalid_role")
        with self.store.unit_of_work() as uow:
            target = self._target(uow, actor, identity_id, Operation.ASSIGN)
            if role is target.role and (tenant_id is None or tenant_id == target.tenant_id):
                return target
            new_tenant = None if role.is_platform else (tenant_id or target.tenant_id)
            check_tenant_binding(role, new_tenant)
            if not issuance.can_issue(uow, actor, role, new_tenant):
                raise AuthorizationDenied()
            if new_tenant is not None and uow.get_tenant(new_tenant) is None:
                raise LookupError("not_found")
            if target.role.is_platform and not role.is_platform and uow.count_platform_principals() <= 1:
                raise PermissionError("last_platform_principal")

            updated = replace(target, role=role, tenant_id=new_tenant)
            uow.update_principal(updated)
            now = self.clock()
            self.audit.record(
                uow,
                AuditKind.ROLE_CHANGED,
                actor_id=actor.identity_id,
                subject_id=target.identity_id,
                tenant_id=new_tenant,
                at=now,
                old_role=target.role.value,
                new_role=role.value,
            )
            if new_tenant != target.tenant_id:
                self.audit.record(
                    uow,
                    AuditKind.TENANT_CHANGED,
                    actor_id=actor.identity_id,
                    subject_id=target.identity_id,
                    tenant_id=new_tenant,
                    at=now,
                    old_tenant=target.tenant_id,
                    new_tenant=new_tenant,
                )
        logger.info(
            "role changed actor=%s sub=%s %s->%s",
            short_id(actor.identity_id),
            short_id(identity_id),
            target.role.value,
            role.value,
        )
        return updated

    def change_tenant(self, actor: PrincipalContext, identity_id: str, tenant_id: str) -> Principal:
        """Move a principal into another tenant (requires authority over both)."""
        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise ValueError("tenant_required")
        with self.store.unit_of_work() as uow:
            target = self._target(uow, actor, identity_id, Operation.ASSIGN)
            if target.role.is_platform:
                raise ValueError("platform_role_has_no_tenant")
            if target.tenant_id == tenant_id:
                return target
            destination = Resource(type=ResourceType.TENANT, tenant_id=tenant_id, attrs={"id": tenant_id})
            if not decide(actor, destination, Operation.UPDATE, reader=uow).allowed:
                raise AuthorizationDenied()
            if uow.get_tenant(tenant_id) is None:
                raise LookupError("not_found")
            updated = replace(target, tenant_id=tenant_id)
            uow.update_principal(updated)
            self.audit.record(
                uow,
                AuditKind.TENANT_CHANGED,
                actor_id=actor.identity_id,
                subject_id=target.identity_id,
                tenant_id=tenant_id,
                at=self.clock(),
                old_tenant=target.tenant_id,
                new_tenant=tenant_id,
            )
        logger.info("tenant changed actor=%s sub=%s", short_id(actor.identity_id), short_id(identity_id))
        return updated

    def soft_delete(self, actor: PrincipalContext, identity_id: str) -> Principal:
        with self.store.unit_of_work() as uow:
            target = self._target(uow, actor, identity_id, Operation.DELETE)
            if target.role.is_platform:
                if target.identity_id == actor.identity_id:
                    raise PermissionError("self_delete_forbidden")
                if uow.count_platform_principals() <= 1:
                    raise PermissionError("last_platform_principal")
            now = self.clock()
            updated = replace(target, deleted_at=now, deleted_by=actor.identity_id)
            uow.update_principal(updated)
            self.audit.record(
                uow,
                AuditKind.PRINCIPAL_DELETED,
                actor_id=actor.identity_id,
                subject_id=target.identity_id,
                tenant_id=target.tenant_id,
                at=now,
                role=target.role.value,
            )
        logger.info("principal soft-deleted actor=%s sub=%s", short_id(actor.identity_id), short_id(identity_id))
        return updated

    def restore(self, actor: PrincipalContext, identity_id: str) -> Principal:
        with self.store.unit_of_work() as uow:
            target = self._target(uow, actor, identity_id, Operation.RESTORE, deleted=True)
            updated = replace(target, deleted_at=None, deleted_by=None)
            uow.update_principal(updated)
            self.audit.record(
                uow,
                AuditKind.PRINCIPAL_RESTORED,
                actor_id=actor.identity_id,
                subject_id=target.identity_id,
                tenant_id=target.tenant_id,
                at=self.clock(),
                role=target.role.value,
            )
        logger.info("principal restored actor=%s sub=%s", short_id(actor.identity_id), short_id(identity_id))
        return updated


__all__ = ["PrincipalLifecycle", "principal_resource"]
