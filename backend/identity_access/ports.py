"""
Storage ports for the access core.

Two paths exist on purpose:

- `PrivilegedReader` is used only by predicates and the context resolver.
  It reads relationship and principal rows directly and has no way to reach
  the decision evaluator, so evaluating a decision can never recurse into
  another decision.
- `UnitOfWork` is the write path. One unit is one atomic transaction:
  everything done through it commits together or not at all.
  Only the issuance service, provisioning workflow, principal lifecycle and
  bootstrap subsystem open units.

Adapters: `stores.InMemoryAccessStore` (tests/dev) and
`stores_db.DBAccessStore` (Postgres, service-role DSN).
"""
from __future__ import annotations

from datetime import datetime
from typing import ContextManager, List, Optional, Protocol, TYPE_CHECKING

from .domain import Principal, Tenant

if TYPE_CHECKING:  # pragma: no cover
    from backend.invites.models import InviteCredential
    from .audit import AuditEvent


class PrivilegedReader(Protocol):
    def get_principal(self, identity_id: str) -> Optional[Principal]:
        ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    def class_tenant(self, class_id: str) -> Optional[str]:
        """Return the owning tenant of a class, or None when unknown."""
        ...

    def teaches_subject(self, teacher_id: str, subject_id: str) -> bool:
        ...

    def teaches_class(self, teacher_id: str, class_id: str) -> bool:
        ...

    def teaches_student(self, teacher_id: str, student_id: str) -> bool:
        ...

    def is_guardian_of(self, parent_id: str, student_id: str) -> bool:
        ...

    def is_enrolled(self, student_id: str, class_id: str) -> bool:
        ...

    def ward_enrolled_in(self, parent_id: str, class_id: str) -> bool:
        ...

    def is_group_member(self, identity_id: str, group_id: str) -> bool:
        ...


class UnitOfWork(PrivilegedReader, Protocol):
    # Credentials
    def get_credential(self, token: str, *, for_update: bool = False) -> Optional["InviteCredential"]:
        ...

    def insert_credential(self, credential: "InviteCredential") -> bool:
        """Insert a credential; return False when the token value already exists."""
        ...

    def set_times_used(self, token: str, times_used: int) -> None:
        ...

    def set_expiry(self, token: str, expires_at: datetime) -> None:
        ...

    def list_credentials(
        self,
        *,
        tenant_id: Optional[str] = None,
        issued_by: Optional[str] = None,
        live_at: Optional[datetime] = None,
        bootstrap_only: bool = False,
    ) -> List["InviteCredential"]:
        ...

    def record_redemption(self, token: str, identity_id: str, at: datetime) -> None:
        ...

    # Principals
    def insert_principal(self, principal: Principal) -> None:
        ...

    def update_principal(self, principal: Principal) -> None:
        ...

    def list_principals(
        self, tenant_id: Optional[str], *, include_deleted: bool = False, limit: int = 50, offset: int = 0
    ) -> List[Principal]:
        ...

    def count_platform_principals(self) -> int:
        """Live (not soft-deleted) platform principals."""
        ...

    def lock_bootstrap(self) -> None:
        """Serialize bootstrap checks across concurrent units."""
        ...

    # Tenants
    def insert_tenant(self, tenant: Tenant) -> None:
        ...

    # Bound side effects of redemption
    def add_enrollment(self, class_id: str, student_id: str) -> None:
        ...

    def add_guardianship(self, parent_id: str, student_id: str) -> None:
        ...

    # Audit
    def append_audit(self, event: "AuditEvent") -> None:
        ...


class AccessStore(Protocol):
    def reader(self) -> PrivilegedReader:
        ...

    def unit_of_work(self, *, timeout: Optional[float] = None) -> ContextManager[UnitOfWork]:
        """Open one atomic unit. Raises TimeoutError when it cannot start in time."""
        ...


__all__ = ["AccessStore", "PrivilegedReader", "UnitOfWork"]
