"""
Issuance rules: which principal may mint which credential.

The rule itself lives in the INVITE rule table (`identity_access.rules`):

    superadmin  -> any role (administrative shortcut)
    principal   -> any non-platform role, own tenant
    admin       -> teacher / parent / student, own tenant
    teacher     -> student only, scoped to a class the teacher teaches
    parent, student -> nothing

This module turns an issuance request into the INVITE resource the evaluator
understands and checks the scope belongs to the credential's tenant.
"""
from __future__ import annotations

from typing import List, Optional

from backend.identity_access.domain import PrincipalContext, Role
from backend.identity_access.policy import decide
from backend.identity_access.ports import PrivilegedReader
from backend.identity_access.rules import Operation, Resource, ResourceType

from .models import CredentialScope, ScopeKind


def invite_resource(
    *,
    issuer: PrincipalContext,
    target_role: Role,
    tenant_id: Optional[str],
    scope: Optional[CredentialScope],
) -> Resource:
    attrs = {"role": target_role.value, "issuer_id": issuer.identity_id}
    if scope is not None:
        key = "class_id" if scope.kind is ScopeKind.CLASS else "student_id"
        attrs[key] = scope.target_id
    return Resource(type=ResourceType.INVITE, tenant_id=tenant_id, attrs=attrs)


def scope_matches(
    reader: PrivilegedReader,
    *,
    target_role: Role,
    tenant_id: Optional[str],
    scope: Optional[CredentialScope],
) -> bool:
    """A scope must fit the role and point inside the credential's tenant."""
    if scope is None:
        return True
    if not scope.target_id:
        return False
    if scope.kind is ScopeKind.CLASS:
        return target_role is Role.STUDENT and reader.class_tenant(scope.target_id) == tenant_id
    if scope.kind is ScopeKind.WARD:
        if target_role is not Role.PARENT:
            return False
        ward = reader.get_principal(scope.target_id)
        return bool(ward and not ward.is_deleted and ward.role is Role.STUDENT and ward.tenant_id == tenant_id)
    return False


def can_issue(
    reader: PrivilegedReader,
    issuer: PrincipalContext,
    target_role: Role,
    tenant_id: Optional[str],
    scope: Optional[CredentialScope] = None,
) -> bool:
    resource = invite_resource(issuer=issuer, target_role=target_role, tenant_id=tenant_id, scope=scope)
    return decide(issuer, resource, Operation.CREATE, reader=reader).allowed


def issuable_roles(reader: PrivilegedReader, issuer: PrincipalContext) -> List[Role]:
    """Roles the issuer may mint for its own tenant (unscoped), highest first.

    Teachers get an empty list here because their credentials always need a
    class scope.
    """
    tenant_id = None if issuer.is_platform else issuer.tenant_id
    out = []
    for role in Role:
        target_tenant = None if role.is_platform else tenant_id
        if not role.is_platform and target_tenant is None:
            continue
        if can_issue(reader, issuer, role, target_tenant):
            out.append(role)
    return out


__all__ = ["can_issue", "invite_resource", "issuable_roles", "scope_matches"]
