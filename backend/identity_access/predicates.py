"""
Policy predicates: pure relationship checks used by the decision evaluator.

Why:
    Each predicate answers one question ("does this principal teach that
    class?") with a single indexed read through the privileged reader. The
    reader cannot reach `policy.decide`, so predicate evaluation never
    re-enters the decision path.

Behavior:
    - Unknown, empty or malformed ids resolve to False.
    - Reader failures are logged and resolve to False (fail closed).
    - No side effects.
"""
from __future__ import annotations

from typing import Callable, Optional
import logging

from .domain import PrincipalContext, Role
from .ports import PrivilegedReader


logger = logging.getLogger("classio.policy")


def _valid_id(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _read(check: Callable[..., bool], *args: str) -> bool:
    if not all(_valid_id(a) for a in args):
        return False
    try:
        return bool(check(*args))
    except Exception as exc:
        logger.warning("predicate read failed: %s", exc.__class__.__name__)
        return False


def has_role(ctx: Optional[PrincipalContext], *roles: Role) -> bool:
    if ctx is None:
        return False
    return ctx.role in roles


def same_tenant(ctx: Optional[PrincipalContext], tenant_id: Optional[str]) -> bool:
    """Both sides must name the same, non-empty tenant."""
    if ctx is None or not _valid_id(ctx.tenant_id) or not _valid_id(tenant_id):
        return False
    return ctx.tenant_id == tenant_id


def is_self(ctx: Optional[PrincipalContext], identity_id: Optional[str]) -> bool:
    if ctx is None or not _valid_id(identity_id):
        return False
    return ctx.identity_id == identity_id


def teaches(reader: PrivilegedReader, ctx: Optional[PrincipalContext], subject_id: Optional[str]) -> bool:
    if ctx is None:
        return False
    return _read(reader.teaches_subject, ctx.identity_id, subject_id)


def teaches_class(reader: PrivilegedReader, ctx: Optional[PrincipalContext], class_id: Optional[str]) -> bool:
    if ctx is None:
        return False
    return _read(reader.teaches_class, ctx.identity_id, class_id)


def teaches_student(reader: PrivilegedReader, ctx: Optional[PrincipalContext], student_id: Optional[str]) -> bool:
    """The principal teaches at least one class the student is enrolled in."""
    if ctx is None:
        return False
    return _read(reader.teaches_student, ctx.identity_id, student_id)


def guardian_of(reader: PrivilegedReader, ctx: Optional[PrincipalContext], student_id: Optional[str]) -> bool:
    if ctx is None:
        return False
    return _read(reader.is_guardian_of, ctx.identity_id, student_id)


def enrolled_in(reader: PrivilegedReader, ctx: Optional[PrincipalContext], class_id: Optional[str]) -> bool:
    if ctx is None:
        return False
    return _read(reader.is_enrolled, ctx.identity_id, class_id)


def ward_enrolled_in(reader: PrivilegedReader, ctx: Optional[PrincipalContext], class_id: Optional[str]) -> bool:
    """A child of the principal is enrolled in the class."""
    if ctx is None:
        return False
    return _read(reader.ward_enrolled_in, ctx.identity_id, class_id)


def member_of(reader: PrivilegedReader, ctx: Optional[PrincipalContext], group_id: Optional[str]) -> bool:
    if ctx is None:
        return False
    return _read(reader.is_group_member, ctx.identity_id, group_id)


__all__ = [
    "enrolled_in",
    "guardian_of",
    "has_role",
    "is_self",
    "member_of",
    "same_tenant",
    "teaches",
    "teaches_class",
    "teaches_student",
    "ward_enrolled_in",
]
