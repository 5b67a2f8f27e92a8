"""
Identity domain: roles, principals, tenants and the per-request context.

Why:
- One ordered Role type replaces per-role checks scattered across modules.
  Administrative reach is compared through `outranks` / `at_least` only.
- `PrincipalContext` is the value threaded through every authorization call.
  It is resolved once per request/operation and never stored in a session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Roles ordered by administrative reach (highest first)."""

    SUPERADMIN = "superadmin"
    PRINCIPAL = "principal"
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    STUDENT = "student"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @property
    def is_platform(self) -> bool:
        return at_least(self, Role.SUPERADMIN)

    @property
    def is_tenant_admin(self) -> bool:
        return at_least(self, Role.ADMIN) and not self.is_platform

    @classmethod
    def parse(cls, value: object) -> Optional["Role"]:
        """Return the Role for `value` or None when it is not a known role."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Guardian and student share the lowest tier.
_RANKS = {
    Role.SUPERADMIN: 50,
    Role.PRINCIPAL: 40,
    Role.ADMIN: 30,
    Role.TEACHER: 20,
    Role.PARENT: 10,
    Role.STUDENT: 10,
}

ALLOWED_ROLES = frozenset(r.value for r in Role)


def outranks(actor: Role, other: Role) -> bool:
    """True when `actor` sits strictly above `other` in the hierarchy."""
    return actor.rank > other.rank


def at_least(actor: Role, floor: Role) -> bool:
    return actor.rank >= floor.rank


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PrincipalContext:
    """Resolved authorization context for one authenticated identity."""

    identity_id: str
    role: Role
    tenant_id: Optional[str]

    @property
    def is_platform(self) -> bool:
        return self.role.is_platform


@dataclass
class Principal:
    identity_id: str
    role: Role
    tenant_id: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def context(self) -> PrincipalContext:
        return PrincipalContext(identity_id=self.identity_id, role=self.role, tenant_id=self.tenant_id)


@dataclass
class Tenant:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None


def check_tenant_binding(role: Role, tenant_id: Optional[str]) -> None:
    """Raise ValueError when a role/tenant pair breaks the tenancy invariant.

    Platform principals never belong to a tenant; everyone else always does.
    """
    if role.is_platform and tenant_id is not None:
        raise ValueError("platform_role_has_no_tenant")
    if not role.is_platform and not tenant_id:
        raise ValueError("tenant_required")


def short_id(value: Optional[str]) -> str:
    """PII-minimal identifier for logs (last 6 characters)."""
    return (value or "")[-6:]


__all__ = [
    "ALLOWED_ROLES",
    "Principal",
    "PrincipalContext",
    "Role",
    "Tenant",
    "at_least",
    "check_tenant_binding",
    "outranks",
    "short_id",
    "utcnow",
]
