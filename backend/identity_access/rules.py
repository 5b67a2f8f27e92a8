"""
Declarative rule tables: one table per resource type.

Why:
    The visibility matrix lives in one place. Each cell maps
    (role, operation) to a predicate expression; a missing cell means deny.
    Platform access to administrative resources and tenant isolation are
    handled by `policy.decide` before any table is consulted, so tables only
    describe relationships inside one tenant.

Expressions:
    ALWAYS, IsSelf("attr"), NotSelf("attr"), TeachesClass("attr"), TeachesSubject("attr"),
    TeachesStudent("attr"), GuardianOf("attr"), EnrolledIn("attr"),
    WardEnrolledIn("attr"), MemberOf("attr"), TargetRoleIn("attr", roles),
    TargetRoleBelow("attr", role), Absent("attr"); combined with `|`, `&`
    and `~`. `attr` names a key of `Resource.attrs`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from . import predicates
from .domain import PrincipalContext, Role, outranks
from .ports import PrivilegedReader


class Operation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"  # role / tenant reassignment
    RESTORE = "restore"


class ResourceType(str, Enum):
    TENANT = "tenant"
    PRINCIPAL = "principal"
    INVITE = "invite"
    CLASS = "class"
    ENROLLMENT = "enrollment"
    GUARDIANSHIP = "guardianship"
    SUBJECT = "subject"
    LESSON = "lesson"
    GRADE = "grade"
    ATTENDANCE = "attendance"
    ABSENCE_EXCUSE = "absence_excuse"
    ASSIGNMENT = "assignment"
    SUBMISSION = "submission"
    MESSAGE_GROUP = "message_group"
    MESSAGE = "message"
    AUDIT_LOG = "audit_log"


@dataclass(frozen=True)
class Resource:
    """A resource instance as seen by the evaluator.

    `tenant_id` is the owning tenant (None only for platform-level resources
    such as a tenant that does not exist yet). `attrs` carries the ids the
    rule expressions refer to.
    """

    type: ResourceType
    tenant_id: Optional[str]
    attrs: Mapping[str, object] = field(default_factory=dict)

    def attr(self, name: str) -> Optional[str]:
        value = self.attrs.get(name)
        if isinstance(value, Enum):
            value = value.value
        return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class RuleEnv:
    ctx: PrincipalContext
    resource: Resource
    reader: PrivilegedReader


class Expr:
    def evaluate(self, env: RuleEnv) -> bool:
        raise NotImplementedError

    def __or__(self, other: "Expr") -> "Expr":
        return AnyOf((self, other))

    def __and__(self, other: "Expr") -> "Expr":
        return AllOf((self, other))

    def __invert__(self) -> "Expr":
        return Not(self)


class _Always(Expr):
    def evaluate(self, env: RuleEnv) -> bool:
        return True

    def __repr__(self) -> str:
        return "ALWAYS"


ALWAYS = _Always()


@dataclass(frozen=True)
class AnyOf(Expr):
    parts: Tuple[Expr, ...]

    def evaluate(self, env: RuleEnv) -> bool:
        return any(p.evaluate(env) for p in self.parts)


@dataclass(frozen=True)
class AllOf(Expr):
    parts: Tuple[Expr, ...]

    def evaluate(self, env: RuleEnv) -> bool:
        return all(p.evaluate(env) for p in self.parts)


@dataclass(frozen=True)
class Not(Expr):
    inner: Expr

    def evaluate(self, env: RuleEnv) -> bool:
        return not self.inner.evaluate(env)


@dataclass(frozen=True)
class _Relation(Expr):
    attr: str

    def evaluate(self, env: RuleEnv) -> bool:
        return self.check(env, env.resource.attr(self.attr))

    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        raise NotImplementedError


class IsSelf(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.is_self(env.ctx, value)


class NotSelf(_Relation):
    """The attribute names an identity other than the caller."""

    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return value is not None and not predicates.is_self(env.ctx, value)


class TeachesSubject(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.teaches(env.reader, env.ctx, value)


class TeachesClass(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.teaches_class(env.reader, env.ctx, value)


class TeachesStudent(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.teaches_student(env.reader, env.ctx, value)


class GuardianOf(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.guardian_of(env.reader, env.ctx, value)


class EnrolledIn(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.enrolled_in(env.reader, env.ctx, value)


class WardEnrolledIn(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.ward_enrolled_in(env.reader, env.ctx, value)


class MemberOf(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return predicates.member_of(env.reader, env.ctx, value)


class Absent(_Relation):
    def check(self, env: RuleEnv, value: Optional[str]) -> bool:
        return value is None


@dataclass(frozen=True)
class TargetRoleIn(Expr):
    attr: str
    roles: Tuple[Role, ...]

    def evaluate(self, env: RuleEnv) -> bool:
        target = Role.parse(env.resource.attr(self.attr))
        return target is not None and target in self.roles


@dataclass(frozen=True)
class TargetRoleBelow(Expr):
    """The role named by `attr` ranks strictly below `ceiling`."""

    attr: str
    ceiling: Role

    def evaluate(self, env: RuleEnv) -> bool:
        target = Role.parse(env.resource.attr(self.attr))
        return target is not None and outranks(self.ceiling, target)


@dataclass(frozen=True)
class RuleTable:
    resource: ResourceType
    administrative: bool
    rules: Mapping[Tuple[Role, Operation], Expr]

    def rule_for(self, role: Role, operation: Operation) -> Optional[Expr]:
        return self.rules.get((role, operation))


ADMINS = (Role.PRINCIPAL, Role.ADMIN)
TENANT_ROLES = (Role.PRINCIPAL, Role.ADMIN, Role.TEACHER, Role.PARENT, Role.STUDENT)
STAFF = (Role.PRINCIPAL, Role.ADMIN, Role.TEACHER)


def _table(resource: ResourceType, *, administrative: bool, cells: Mapping[Operation, Mapping[Role, Expr]]) -> RuleTable:
    rules: Dict[Tuple[Role, Operation], Expr] = {}
    for operation, by_role in cells.items():
        for role, expr in by_role.items():
            if role.is_platform:
                raise ValueError("platform_role_not_allowed_in_rule_table")
            rules[(role, operation)] = expr
    return RuleTable(resource=resource, administrative=administrative, rules=rules)


def _for(roles: Tuple[Role, ...], expr: Expr) -> Dict[Role, Expr]:
    return {role: expr for role in roles}


R, C, U, D = Operation.READ, Operation.CREATE, Operation.UPDATE, Operation.DELETE


RULE_TABLES: Dict[ResourceType, RuleTable] = {
    t.resource: t
    for t in (
        _table(ResourceType.TENANT, administrative=True, cells={
            R: _for(TENANT_ROLES, ALWAYS),
            U: {Role.PRINCIPAL: ALWAYS},
        }),
        _table(ResourceType.PRINCIPAL, administrative=True, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: IsSelf("id") | TeachesStudent("id") | TargetRoleIn("role", STAFF),
                Role.PARENT: IsSelf("id") | GuardianOf("id") | TargetRoleIn("role", STAFF),
                Role.STUDENT: IsSelf("id") | TargetRoleIn("role", STAFF),
            },
            U: {
                Role.PRINCIPAL: ALWAYS,
                Role.ADMIN: IsSelf("id") | TargetRoleBelow("role", Role.ADMIN),
                Role.TEACHER: IsSelf("id"),
                Role.PARENT: IsSelf("id"),
                Role.STUDENT: IsSelf("id"),
            },
            D: {
                Role.PRINCIPAL: TargetRoleBelow("role", Role.SUPERADMIN) & NotSelf("id"),
                Role.ADMIN: TargetRoleBelow("role", Role.ADMIN),
            },
            Operation.ASSIGN: {
                Role.PRINCIPAL: TargetRoleBelow("role", Role.SUPERADMIN) & NotSelf("id"),
                Role.ADMIN: TargetRoleBelow("role", Role.ADMIN),
            },
            Operation.RESTORE: {
                Role.PRINCIPAL: TargetRoleBelow("role", Role.SUPERADMIN) & NotSelf("id"),
                Role.ADMIN: TargetRoleBelow("role", Role.ADMIN),
            },
        }),
        # Issuance table: who may mint which role. `role` is the target role,
        # `class_id` the class a student credential is bound to.
        _table(ResourceType.INVITE, administrative=True, cells={
            C: {
                Role.PRINCIPAL: TargetRoleBelow("role", Role.SUPERADMIN),
                Role.ADMIN: TargetRoleBelow("role", Role.ADMIN),
                Role.TEACHER: TargetRoleIn("role", (Role.STUDENT,)) & TeachesClass("class_id"),
            },
            R: {**_for(ADMINS, ALWAYS), Role.TEACHER: IsSelf("issuer_id")},
            D: {**_for(ADMINS, ALWAYS), Role.TEACHER: IsSelf("issuer_id")},
        }),
        _table(ResourceType.CLASS, administrative=True, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: ALWAYS,
                Role.STUDENT: EnrolledIn("id"),
                Role.PARENT: WardEnrolledIn("id"),
            },
            C: _for(ADMINS, ALWAYS),
            U: _for(ADMINS, ALWAYS),
            D: _for(ADMINS, ALWAYS),
        }),
        _table(ResourceType.ENROLLMENT, administrative=True, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesClass("class_id"),
                Role.STUDENT: IsSelf("student_id"),
                Role.PARENT: GuardianOf("student_id"),
            },
            C: {**_for(ADMINS, ALWAYS), Role.TEACHER: TeachesClass("class_id")},
            D: _for(ADMINS, ALWAYS),
        }),
        _table(ResourceType.GUARDIANSHIP, administrative=True, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesStudent("student_id"),
                Role.PARENT: IsSelf("parent_id"),
                Role.STUDENT: IsSelf("student_id"),
            },
            C: _for(ADMINS, ALWAYS),
            D: _for(ADMINS, ALWAYS),
        }),
        _table(ResourceType.SUBJECT, administrative=True, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: ALWAYS,
                Role.STUDENT: EnrolledIn("class_id"),
                Role.PARENT: WardEnrolledIn("class_id"),
            },
            C: _for(ADMINS, ALWAYS),
            U: _for(ADMINS, ALWAYS),
            D: _for(ADMINS, ALWAYS),
        }),
        _table(ResourceType.LESSON, administrative=False, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: ALWAYS,
                Role.STUDENT: EnrolledIn("class_id"),
                Role.PARENT: WardEnrolledIn("class_id"),
            },
            C: _for(ADMINS, ALWAYS),
            U: {**_for(ADMINS, ALWAYS), Role.TEACHER: TeachesSubject("subject_id")},
            D: _for(ADMINS, ALWAYS),
        }),
        _table(ResourceType.GRADE, administrative=False, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesSubject("subject_id"),
                Role.STUDENT: IsSelf("student_id"),
                Role.PARENT: GuardianOf("student_id"),
            },
            C: {Role.TEACHER: TeachesSubject("subject_id") & TeachesStudent("student_id")},
            U: {Role.TEACHER: TeachesSubject("subject_id") & TeachesStudent("student_id")},
            D: {Role.TEACHER: TeachesSubject("subject_id")},
        }),
        _table(ResourceType.ATTENDANCE, administrative=False, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesClass("class_id"),
                Role.STUDENT: IsSelf("student_id"),
                Role.PARENT: GuardianOf("student_id"),
            },
            C: {Role.TEACHER: TeachesClass("class_id")},
            U: {Role.TEACHER: TeachesClass("class_id")},
        }),
        _table(ResourceType.ABSENCE_EXCUSE, administrative=False, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesStudent("student_id"),
                Role.STUDENT: IsSelf("student_id"),
                Role.PARENT: GuardianOf("student_id"),
            },
            C: {Role.PARENT: GuardianOf("student_id")},
            U: {**_for(ADMINS, ALWAYS), Role.TEACHER: TeachesStudent("student_id")},
        }),
        _table(ResourceType.ASSIGNMENT, administrative=False, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesSubject("subject_id"),
                Role.STUDENT: EnrolledIn("class_id"),
                Role.PARENT: WardEnrolledIn("class_id"),
            },
            C: {Role.TEACHER: TeachesSubject("subject_id")},
            U: {Role.TEACHER: TeachesSubject("subject_id")},
            D: {Role.TEACHER: TeachesSubject("subject_id")},
        }),
        _table(ResourceType.SUBMISSION, administrative=False, cells={
            R: {
                **_for(ADMINS, ALWAYS),
                Role.TEACHER: TeachesSubject("subject_id"),
                Role.STUDENT: IsSelf("student_id"),
                Role.PARENT: GuardianOf("student_id"),
            },
            C: {Role.STUDENT: IsSelf("student_id") & EnrolledIn("class_id")},
            U: {Role.STUDENT: IsSelf("student_id"), Role.TEACHER: TeachesSubject("subject_id")},
        }),
        _table(ResourceType.MESSAGE_GROUP, administrative=False, cells={
            R: {**_for(TENANT_ROLES, MemberOf("id")), **_for(ADMINS, ALWAYS)},
            C: {**_for(ADMINS, ALWAYS), Role.TEACHER: ALWAYS},
            U: {**_for(ADMINS, ALWAYS), Role.TEACHER: IsSelf("created_by")},
            D: {**_for(ADMINS, ALWAYS), Role.TEACHER: IsSelf("created_by")},
        }),
        _table(ResourceType.MESSAGE, administrative=False, cells={
            R: _for(TENANT_ROLES, IsSelf("sender_id") | IsSelf("recipient_id") | MemberOf("group_id")),
            C: _for(TENANT_ROLES, IsSelf("sender_id") & (Absent("group_id") | MemberOf("group_id"))),
            U: _for(TENANT_ROLES, IsSelf("recipient_id")),
            D: _for(TENANT_ROLES, IsSelf("sender_id")),
        }),
        # Platform staff only (administrative shortcut in decide()).
        _table(ResourceType.AUDIT_LOG, administrative=True, cells={}),
    )
}


__all__ = [
    "ADMINS",
    "ALWAYS",
    "Absent",
    "AllOf",
    "AnyOf",
    "EnrolledIn",
    "Expr",
    "GuardianOf",
    "IsSelf",
    "MemberOf",
    "Not",
    "NotSelf",
    "Operation",
    "RULE_TABLES",
    "Resource",
    "ResourceType",
    "RuleEnv",
    "RuleTable",
    "TargetRoleBelow",
    "TargetRoleIn",
    "TeachesClass",
    "TeachesStudent",
    "TeachesSubject",
    "WardEnrolledIn",
]
