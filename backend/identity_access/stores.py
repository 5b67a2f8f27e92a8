"""
In-memory access store for development and tests.

Why: The core needs a store with real transactional behavior (atomic
check-and-increment, rollback on failure) without a database. Units of work
are serialized by one re-entrant lock and undone through a journal when the
unit raises, which gives serializable semantics for a single process.

Security: Reads hand out copies; state changes only through a unit of work.
For production use `stores_db.DBAccessStore`.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple
import threading

from backend.invites.models import InviteCredential, RedemptionRecord

from .audit import AuditEvent, log_committed
from .domain import Principal, Role, Tenant

_MISSING = object()


class _MemoryReads:
    """Read operations shared by the privileged reader and units of work."""

    def __init__(self, store: "InMemoryAccessStore"):
        self._store = store

    def get_principal(self, identity_id: str) -> Optional[Principal]:
        rec = self._store._principals.get(identity_id)
        return replace(rec) if rec else None

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        rec = self._store._tenants.get(tenant_id)
        return replace(rec) if rec else None

    def class_tenant(self, class_id: str) -> Optional[str]:
        return self._store._classes.get(class_id)

    def teaches_subject(self, teacher_id: str, subject_id: str) -> bool:
        entry = self._store._subjects.get(subject_id)
        return bool(entry and entry[1] == teacher_id)

    def teaches_class(self, teacher_id: str, class_id: str) -> bool:
        return (class_id, teacher_id) in self._store._class_teachers

    def teaches_student(self, teacher_id: str, student_id: str) -> bool:
        classes = self._store._student_classes.get(student_id, set())
        return any((class_id, teacher_id) in self._store._class_teachers for class_id in classes)

    def is_guardian_of(self, parent_id: str, student_id: str) -> bool:
        return (parent_id, student_id) in self._store._guardianships

    def is_enrolled(self, student_id: str, class_id: str) -> bool:
        return class_id in self._store._student_classes.get(student_id, set())

    def ward_enrolled_in(self, parent_id: str, class_id: str) -> bool:
        return any(
            parent == parent_id and self.is_enrolled(student, class_id)
            for parent, student in self._store._guardianships
        )

    def is_group_member(self, identity_id: str, group_id: str) -> bool:
        return (group_id, identity_id) in self._store._group_members


class _MemoryReader:
    """Privileged reader: each call takes the store lock (read-committed)."""

    def __init__(self, store: "InMemoryAccessStore"):
        self._store = store
        self._reads = _MemoryReads(store)

    def _locked(self, name: str, *args):
        with self._store._lock:
            return getattr(self._reads, name)(*args)

    def get_principal(self, identity_id: str) -> Optional[Principal]:
        return self._locked("get_principal", identity_id)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self._locked("get_tenant", tenant_id)

    def class_tenant(self, class_id: str) -> Optional[str]:
        return self._locked("class_tenant", class_id)

    def teaches_subject(self, teacher_id: str, subject_id: str) -> bool:
        return self._locked("teaches_subject", teacher_id, subject_id)

    def teaches_class(self, teacher_id: str, class_id: str) -> bool:
        return self._locked("teaches_class", teacher_id, class_id)

    def teaches_student(self, teacher_id: str, student_id: str) -> bool:
        return self._locked("teaches_student", teacher_id, student_id)

    def is_guardian_of(self, parent_id: str, student_id: str) -> bool:
        return self._locked("is_guardian_of", parent_id, student_id)

    def is_enrolled(self, student_id: str, class_id: str) -> bool:
        return self._locked("is_enrolled", student_id, class_id)

    def ward_enrolled_in(self, parent_id: str, class_id: str) -> bool:
        return self._locked("ward_enrolled_in", parent_id, class_id)

    def is_group_member(self, identity_id: str, group_id: str) -> bool:
        return self._locked("is_group_member", identity_id, group_id)


class _MemoryUnitOfWork(_MemoryReads):
    def __init__(self, store: "InMemoryAccessStore"):
        super().__init__(store)
        self._undo: List[Callable[[], None]] = []
        self.staged_audit: List[AuditEvent] = []

    # Journal helpers -----------------------------------------------------
    def _put(self, table: dict, key, value) -> None:
        previous = table.get(key, _MISSING)
        table[key] = value

        def undo() -> None:
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous

        self._undo.append(undo)

    def _add(self, target: set, item) -> None:
        if item in target:
            return
        target.add(item)
        self._undo.append(lambda: target.discard(item))

    def _append(self, target: list, item) -> None:
        target.append(item)
        self._undo.append(target.pop)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    # Credentials ---------------------------------------------------------
    def get_credential(self, token: str, *, for_update: bool = False) -> Optional[InviteCredential]:
        rec = self._store._credentials.get(token)
        return replace(rec) if rec else None

    def insert_credential(self, credential: InviteCredential) -> bool:
        if credential.token in self._store._credentials:
            return False
        self._put(self._store._credentials, credential.token, replace(credential))
        return True

    def set_times_used(self, token: str, times_used: int) -> None:
        rec = self._store._credentials[token]
        self._put(self._store._credentials, token, replace(rec, times_used=times_used))

    def set_expiry(self, token: str, expires_at: datetime) -> None:
        rec = self._store._credentials[token]
        self._put(self._store._credentials, token, replace(rec, expires_at=expires_at))

    def list_credentials(
        self,
        *,
        tenant_id: Optional[str] = None,
        issued_by: Optional[str] = None,
        live_at: Optional[datetime] = None,
        bootstrap_only: bool = False,
    ) -> List[InviteCredential]:
        out = []
        for rec in self._store._credentials.values():
            if tenant_id is not None and rec.tenant_id != tenant_id:
                continue
            if issued_by is not None and rec.issued_by != issued_by:
                continue
            if live_at is not None and not rec.is_live(live_at):
                continue
            if bootstrap_only and not rec.is_bootstrap:
                continue
            out.append(replace(rec))
        out.sort(key=lambda c: c.created_at)
        return out

    def record_redemption(self, token: str, identity_id: str, at: datetime) -> None:
        self._append(self._store._redemptions, RedemptionRecord(token=token, identity_id=identity_id, redeemed_at=at))

    # Principals ----------------------------------------------------------
    def insert_principal(self, principal: Principal) -> None:
        if principal.identity_id in self._store._principals:
            raise ValueError("principal_exists")
        self._put(self._store._principals, principal.identity_id, replace(principal))

    def update_principal(self, principal: Principal) -> None:
        if principal.identity_id not in self._store._principals:
            raise LookupError("not_found")
        self._put(self._store._principals, principal.identity_id, replace(principal))

    def list_principals(
        self, tenant_id: Optional[str], *, include_deleted: bool = False, limit: int = 50, offset: int = 0
    ) -> List[Principal]:
        rows = [
            replace(p)
            for p in self._store._principals.values()
            if p.tenant_id == tenant_id and (include_deleted or not p.is_deleted)
        ]
        rows.sort(key=lambda p: (p.created_at, p.identity_id))
        return rows[offset: offset + limit]

    def count_platform_principals(self) -> int:
        return sum(1 for p in self._store._principals.values() if p.role is Role.SUPERADMIN and not p.is_deleted)

    def lock_bootstrap(self) -> None:
        # Units are already serialized by the store lock.
        return None

    # Tenants -------------------------------------------------------------
    def insert_tenant(self, tenant: Tenant) -> None:
        if tenant.id in self._store._tenants:
            raise ValueError("tenant_exists")
        self._put(self._store._tenants, tenant.id, replace(tenant))

    # Side effects --------------------------------------------------------
    def add_enrollment(self, class_id: str, student_id: str) -> None:
        if class_id not in self._store._classes:
            raise LookupError("class_not_found")
        classes = self._store._student_classes.get(student_id)
        if classes is None:
            self._put(self._store._student_classes, student_id, set())
            classes = self._store._student_classes[student_id]
        self._add(classes, class_id)

    def add_guardianship(self, parent_id: str, student_id: str) -> None:
        self._add(self._store._guardianships, (parent_id, student_id))

    # Audit ---------------------------------------------------------------
    def append_audit(self, event: AuditEvent) -> None:
        self._append(self._store._audit, event)
        self.staged_audit.append(event)


class InMemoryAccessStore:
    """Process-local store with serialized, journaled units of work."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tenants: Dict[str, Tenant] = {}
        self._principals: Dict[str, Principal] = {}
        self._credentials: Dict[str, InviteCredential] = {}
        self._redemptions: List[RedemptionRecord] = []
        self._audit: List[AuditEvent] = []
        # Collaborator relationship tables
        self._classes: Dict[str, str] = {}
        self._subjects: Dict[str, Tuple[str, str]] = {}
        self._class_teachers: Set[Tuple[str, str]] = set()
        self._student_classes: Dict[str, Set[str]] = {}
        self._guardianships: Set[Tuple[str, str]] = set()
        self._group_members: Set[Tuple[str, str]] = set()

    def reader(self) -> _MemoryReader:
        return _MemoryReader(self)

    @contextmanager
    def unit_of_work(self, *, timeout: Optional[float] = None) -> Iterator[_MemoryUnitOfWork]:
        acquired = self._lock.acquire(timeout=timeout) if timeout is not None else self._lock.acquire()
        if not acquired:
            raise TimeoutError("store_busy")
        uow = _MemoryUnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            raise
        finally:
            self._lock.release()
        log_committed(uow.staged_audit)

    # Seeding helpers for collaborator-owned relationships ---------------
    def add_tenant(self, tenant_id: str, name: str = "") -> Tenant:
        with self._lock:
            tenant = Tenant(id=tenant_id, name=name or tenant_id)
            self._tenants[tenant_id] = tenant
            return replace(tenant)

    def add_principal(self, principal: Principal) -> None:
        with self._lock:
            self._principals[principal.identity_id] = replace(principal)

    def add_class(self, class_id: str, tenant_id: str) -> None:
        with self._lock:
            self._classes[class_id] = tenant_id

    def assign_subject(self, subject_id: str, class_id: str, teacher_id: str) -> None:
        with self._lock:
            self._subjects[subject_id] = (class_id, teacher_id)
            self._class_teachers.add((class_id, teacher_id))

    def enroll(self, class_id: str, student_id: str) -> None:
        with self._lock:
            self._student_classes.setdefault(student_id, set()).add(class_id)

    def link_guardian(self, parent_id: str, student_id: str) -> None:
        with self._lock:
            self._guardianships.add((parent_id, student_id))

    def add_group_member(self, group_id: str, identity_id: str) -> None:
        with self._lock:
            self._group_members.add((group_id, identity_id))

    # Inspection (tests, diagnostics) ------------------------------------
    def credential(self, token: str) -> Optional[InviteCredential]:
        with self._lock:
            rec = self._credentials.get(token)
            return replace(rec) if rec else None

    def audit_events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit)

    def redemptions(self) -> List[RedemptionRecord]:
        with self._lock:
            return list(self._redemptions)


__all__ = ["InMemoryAccessStore"]
