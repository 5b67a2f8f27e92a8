"""
Database-backed access store (Postgres/Supabase).

Why: Production needs durable principals, credentials and audit rows, and a
redemption path that stays race-free across processes. Each unit of work is
one transaction; the credential row is locked with `select ... for update`,
so concurrent redeemers queue on the row and see each other's increments.

Security:
- Intended for a service-role connection string. This is the privileged path:
  it reads relationship tables directly and never consults the evaluator.
  Row Level Security for end-user traffic lives on the limited role, not here.
- Schema names are composed with `psycopg.sql.Identifier`, never string
  formatting of user input.
- Caller timeouts become transaction-local `lock_timeout`/`statement_timeout`;
  a timed-out unit rolls back and surfaces as TimeoutError.

Note: psycopg3 is imported lazily-safe; `ACCESS_STORE=memory` keeps working
without it.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence
import os
import re

try:
    import psycopg
    from psycopg import sql
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    sql = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

from backend.invites.models import CredentialScope, InviteCredential, ScopeKind

from .audit import AuditEvent, event_to_row, log_committed
from .domain import Principal, Role, Tenant

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_PRINCIPAL_COLUMNS = "id, role, school_id, first_name, last_name, avatar_url, created_at, deleted_at, deleted_by"
_CREDENTIAL_COLUMNS = (
    "token, role, school_id, scope_kind, scope_id, usage_limit, times_used, expires_at, created_by, created_at"
)


def _principal_from_row(row: Sequence[Any]) -> Principal:
    return Principal(
        identity_id=row[0],
        role=Role(row[1]),
        tenant_id=row[2],
        first_name=row[3],
        last_name=row[4],
        avatar_url=row[5],
        created_at=row[6],
        deleted_at=row[7],
        deleted_by=row[8],
    )


def _credential_from_row(row: Sequence[Any]) -> InviteCredential:
    scope = CredentialScope(kind=ScopeKind(row[3]), target_id=row[4]) if row[3] else None
    return InviteCredential(
        token=row[0],
        role=Role(row[1]),
        tenant_id=row[2],
        scope=scope,
        usage_limit=int(row[5]),
        times_used=int(row[6]),
        expires_at=row[7],
        issued_by=row[8],
        created_at=row[9],
    )


class _DBReads:
    """Privileged reads; subclasses decide which connection runs them."""

    def __init__(self, schema: str):
        self._schema = schema

    def _q(self, text: str):
        return sql.SQL(text).format(s=sql.Identifier(self._schema))

    def _one(self, query, params: Sequence[Any]) -> Optional[Sequence[Any]]:
        raise NotImplementedError

    def _exists(self, text: str, params: Sequence[Any]) -> bool:
        row = self._one(self._q(f"select exists({text})"), params)
        return bool(row and row[0])

    def get_principal(self, identity_id: str) -> Optional[Principal]:
        row = self._one(self._q(f"select {_PRINCIPAL_COLUMNS} from {{s}}.profiles where id = %s"), (identity_id,))
        return _principal_from_row(row) if row else None

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        row = self._one(self._q("select id, name, created_at, created_by from {s}.schools where id = %s"), (tenant_id,))
        return Tenant(id=row[0], name=row[1], created_at=row[2], created_by=row[3]) if row else None

    def class_tenant(self, class_id: str) -> Optional[str]:
        row = self._one(self._q("select school_id from {s}.classes where id = %s"), (class_id,))
        return row[0] if row else None

    def teaches_subject(self, teacher_id: str, subject_id: str) -> bool:
        return self._exists("select 1 from {s}.subjects where id = %s and teacher_id = %s", (subject_id, teacher_id))

    def teaches_class(self, teacher_id: str, class_id: str) -> bool:
        return self._exists("select 1 from {s}.subjects where class_id = %s and teacher_id = %s", (class_id, teacher_id))

    def teaches_student(self, teacher_id: str, student_id: str) -> bool:
        return self._exists(
            "select 1 from {s}.class_students cs join {s}.subjects sj on sj.class_id = cs.class_id "
            "where cs.student_id = %s and sj.teacher_id = %s",
            (student_id, teacher_id),
        )

    def is_guardian_of(self, parent_id: str, student_id: str) -> bool:
        return self._exists(
            "select 1 from {s}.parent_student where parent_id = %s and student_id = %s", (parent_id, student_id)
        )

    def is_enrolled(self, student_id: str, class_id: str) -> bool:
        return self._exists(
            "select 1 from {s}.class_students where student_id = %s and class_id = %s", (student_id, class_id)
        )

    def ward_enrolled_in(self, parent_id: str, class_id: str) -> bool:
        return self._exists(
            "select 1 from {s}.parent_student ps join {s}.class_students cs on cs.student_id = ps.student_id "
            "where ps.parent_id = %s and cs.class_id = %s",
            (parent_id, class_id),
        )

    def is_group_member(self, identity_id: str, group_id: str) -> bool:
        return self._exists(
            "select 1 from {s}.message_group_members where group_id = %s and user_id = %s", (group_id, identity_id)
        )


class DBPrivilegedReader(_DBReads):
    """One short autocommit connection per read (read-committed)."""

    def __init__(self, dsn: str, schema: str):
        super().__init__(schema)
        self._dsn = dsn

    def _one(self, query, params: Sequence[Any]) -> Optional[Sequence[Any]]:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone()


class _DBUnitOfWork(_DBReads):
    def __init__(self, cur, schema: str):
        super().__init__(schema)
        self._cur = cur
        self.staged_audit: List[AuditEvent] = []

    def _one(self, query, params: Sequence[Any]) -> Optional[Sequence[Any]]:
        self._cur.execute(query, params)
        return self._cur.fetchone()

    def _all(self, query, params: Sequence[Any]) -> List[Sequence[Any]]:
        self._cur.execute(query, params)
        return list(self._cur.fetchall())

    def _exec(self, query, params: Sequence[Any]) -> int:
        self._cur.execute(query, params)
        return self._cur.rowcount

    # Credentials ---------------------------------------------------------
    def get_credential(self, token: str, *, for_update: bool = False) -> Optional[InviteCredential]:
        text = f"select {_CREDENTIAL_COLUMNS} from {{s}}.invite_tokens where token = %s"
        if for_update:
            text += " for update"
        row = self._one(self._q(text), (token,))
        return _credential_from_row(row) if row else None

    def insert_credential(self, credential: InviteCredential) -> bool:
        scope = credential.scope
        row = self._one(
            self._q(
                f"insert into {{s}}.invite_tokens ({_CREDENTIAL_COLUMNS}) "
                "values (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                "on conflict (token) do nothing returning token"
            ),
            (
                credential.token,
                credential.role.value,
                credential.tenant_id,
                scope.kind.value if scope else None,
                scope.target_id if scope else None,
                credential.usage_limit,
                credential.times_used,
                credential.expires_at,
                credential.issued_by,
                credential.created_at,
            ),
        )
        return row is not None

    def set_times_used(self, token: str, times_used: int) -> None:
        self._exec(self._q("update {s}.invite_tokens set times_used = %s where token = %s"), (times_used, token))

    def set_expiry(self, token: str, expires_at: datetime) -> None:
        self._exec(self._q("update {s}.invite_tokens set expires_at = %s where token = %s"), (expires_at, token))

    def list_credentials(
        self,
        *,
        tenant_id: Optional[str] = None,
        issued_by: Optional[str] = None,
        live_at: Optional[datetime] = None,
        bootstrap_only: bool = False,
    ) -> List[InviteCredential]:
        clauses = ["true"]
        params: List[Any] = []
        if tenant_id is not None:
            clauses.append("school_id = %s")
            params.append(tenant_id)
        if issued_by is not None:
            clauses.append("created_by = %s")
            params.append(issued_by)
        if live_at is not None:
            clauses.append("expires_at > %s and times_used < usage_limit")
            params.append(live_at)
        if bootstrap_only:
            clauses.append("created_by is null and role = 'superadmin'")
        text = f"select {_CREDENTIAL_COLUMNS} from {{s}}.invite_tokens where " + " and ".join(clauses) + " order by created_at"
        return [_credential_from_row(r) for r in self._all(self._q(text), params)]

    def record_redemption(self, token: str, identity_id: str, at: datetime) -> None:
        self._exec(
            self._q("insert into {s}.invite_redemptions (token, identity_id, redeemed_at) values (%s, %s, %s)"),
            (token, identity_id, at),
        )

    # Principals ----------------------------------------------------------
    def insert_principal(self, principal: Principal) -> None:
        try:
            self._exec(
                self._q(
                    f"insert into {{s}}.profiles ({_PRINCIPAL_COLUMNS}) "
                    "values (%s, %s, %s, %s, %s, %s, %s, %s, %s)"
                ),
                (
                    principal.identity_id,
                    principal.role.value,
                    principal.tenant_id,
                    principal.first_name,
                    principal.last_name,
                    principal.avatar_url,
                    principal.created_at,
                    principal.deleted_at,
                    principal.deleted_by,
                ),
            )
        except psycopg.errors.UniqueViolation as exc:
            raise ValueError("principal_exists") from exc

    def update_principal(self, principal: Principal) -> None:
        count = self._exec(
            self._q(
                "update {s}.profiles set role = %s, school_id = %s, first_name = %s, last_name = %s, "
                "avatar_url = %s, deleted_at = %s, deleted_by = %s where id = %s"
            ),
            (
                principal.role.value,
                principal.tenant_id,
                principal.first_name,
                principal.last_name,
                principal.avatar_url,
                principal.deleted_at,
                principal.deleted_by,
                principal.identity_id,
            ),
        )
        if count == 0:
            raise LookupError("not_found")

    def list_principals(
        self, tenant_id: Optional[str], *, include_deleted: bool = False, limit: int = 50, offset: int = 0
    ) -> List[Principal]:
        text = f"select {_PRINCIPAL_COLUMNS} from {{s}}.profiles where school_id is not distinct from %s"
        if not include_deleted:
            text += " and deleted_at is null"
        text += " order by created_at, id limit %s offset %s"
        return [_principal_from_row(r) for r in self._all(self._q(text), (tenant_id, limit, offset))]

    def count_platform_principals(self) -> int:
        row = self._one(
            self._q("select count(*) from {s}.profiles where role = 'superadmin' and deleted_at is null"), ()
        )
        return int(row[0]) if row else 0

    def lock_bootstrap(self) -> None:
        self._cur.execute("select pg_advisory_xact_lock(hashtext(%s))", ("classio.bootstrap",))

    # Tenants -------------------------------------------------------------
    def insert_tenant(self, tenant: Tenant) -> None:
        try:
            self._exec(
                self._q("insert into {s}.schools (id, name, created_at, created_by) values (%s, %s, %s, %s)"),
                (tenant.id, tenant.name, tenant.created_at, tenant.created_by),
            )
        except psycopg.errors.UniqueViolation as exc:
            raise ValueError("tenant_exists") from exc

    # Side effects --------------------------------------------------------
    def add_enrollment(self, class_id: str, student_id: str) -> None:
        try:
            self._exec(
                self._q(
                    "insert into {s}.class_students (class_id, student_id) values (%s, %s) on conflict do nothing"
                ),
                (class_id, student_id),
            )
        except psycopg.errors.ForeignKeyViolation as exc:
            raise LookupError("class_not_found") from exc

    def add_guardianship(self, parent_id: str, student_id: str) -> None:
        self._exec(
            self._q("insert into {s}.parent_student (parent_id, student_id) values (%s, %s) on conflict do nothing"),
            (parent_id, student_id),
        )

    # Audit ---------------------------------------------------------------
    def append_audit(self, event: AuditEvent) -> None:
        row = event_to_row(event)
        self._exec(
            self._q(
                "insert into {s}.audit_log (kind, actor_id, subject_id, school_id, details, created_at) "
                "values (%s, %s, %s, %s, %s, %s)"
            ),
            (row["kind"], row["actor_id"], row["subject_id"], row["tenant_id"], Json(row["details"]), row["created_at"]),
        )
        self.staged_audit.append(event)


class DBAccessStore:
    """Postgres-backed access store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string for the service role. Defaults to
        `SERVICE_ROLE_DSN`, then `DATABASE_URL`.
    schema:
        Schema holding the access tables. Defaults to `public`.
    """

    def __init__(self, dsn: str | None = None, schema: str = "public") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBAccessStore")
        self._dsn = dsn or os.getenv("SERVICE_ROLE_DSN") or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBAccessStore")
        if not _IDENT_RE.match(schema or ""):
            raise ValueError("Invalid schema name")
        self._schema = schema

    def reader(self) -> DBPrivilegedReader:
        return DBPrivilegedReader(self._dsn, self._schema)

    @contextmanager
    def unit_of_work(self, *, timeout: Optional[float] = None) -> Iterator[_DBUnitOfWork]:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        if timeout is not None:
                            ms = f"{max(1, int(timeout * 1000))}ms"
                            cur.execute(
                                "select set_config('lock_timeout', %s, true), set_config('statement_timeout', %s, true)",
                                (ms, ms),
                            )
                        uow = _DBUnitOfWork(cur, self._schema)
                        yield uow
            except (psycopg.errors.LockNotAvailable, psycopg.errors.QueryCanceled) as exc:
                raise TimeoutError("store_busy") from exc
        log_committed(uow.staged_audit)


__all__ = ["DBAccessStore", "DBPrivilegedReader", "HAVE_PSYCOPG"]
