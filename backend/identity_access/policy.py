"""
Access decision evaluator.

Why:
    Every authorized operation asks one question: may this principal perform
    this operation on this resource? The answer depends only on the explicit
    `PrincipalContext`, the resource and the rule tables in `rules.py`.

Algorithm (order matters):
    1. Platform role on an administrative resource type: allow.
    2. Tenant mismatch (or a missing tenant on either side): deny. Tenant
       isolation is never overridden by role logic.
    3. Evaluate the (role, operation) cell of the resource's rule table.
    4. No cell or a false expression: deny.

Failure semantics:
    `decide` never raises. Malformed inputs, unknown resource types and reader
    failures all resolve to DENY. A nested `decide` call issued while another
    evaluation is running (e.g., a reader that routes back into the evaluator)
    is an integrity error: it is logged and denied instead of recursing.
"""
from __future__ import annotations

from contextvars import ContextVar
from enum import Enum
from typing import Optional
import logging

from . import predicates
from .domain import PrincipalContext, Role, short_id
from .errors import AuthorizationDenied
from .ports import PrivilegedReader
from .rules import RULE_TABLES, Operation, Resource, ResourceType, RuleEnv


logger = logging.getLogger("classio.policy")

_EVALUATING: ContextVar[bool] = ContextVar("classio_policy_evaluating", default=False)


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOW


def decide(
    ctx: Optional[PrincipalContext],
    resource: Optional[Resource],
    operation: object,
    *,
    reader: PrivilegedReader,
) -> Decision:
    """Return ALLOW or DENY for (ctx, resource, operation). Never raises."""
    if _EVALUATING.get():
        logger.error("re-entrant decision blocked resource=%s", getattr(getattr(resource, "type", None), "value", "?"))
        return Decision.DENY
    token = _EVALUATING.set(True)
    try:
        return _evaluate(ctx, resource, operation, reader)
    except Exception as exc:
        logger.error("decision evaluation failed: %s", exc.__class__.__name__)
        return Decision.DENY
    finally:
        _EVALUATING.reset(token)


def _evaluate(ctx, resource, operation, reader) -> Decision:
    if not isinstance(ctx, PrincipalContext) or not isinstance(resource, Resource):
        return Decision.DENY
    role = Role.parse(ctx.role)
    if role is None or not ctx.identity_id:
        return Decision.DENY
    try:
        op = Operation(operation)
        rtype = ResourceType(resource.type)
    except ValueError:
        return Decision.DENY
    table = RULE_TABLES.get(rtype)
    if table is None:
        return Decision.DENY

    actor = PrincipalContext(ctx.identity_id, role, ctx.tenant_id)
    if predicates.has_role(actor, Role.SUPERADMIN):
        # Platform principals act only on administrative resources.
        return Decision.ALLOW if table.administrative else Decision.DENY

    if not predicates.same_tenant(actor, resource.tenant_id):
        return Decision.DENY

    expr = table.rule_for(role, op)
    if expr is None:
        return Decision.DENY
    env = RuleEnv(ctx=actor, resource=resource, reader=reader)
    return Decision.ALLOW if expr.evaluate(env) else Decision.DENY


def require(
    ctx: Optional[PrincipalContext],
    resource: Resource,
    operation: Operation,
    *,
    reader: PrivilegedReader,
) -> None:
    """Raise the generic AuthorizationDenied unless `decide` allows."""
    if decide(ctx, resource, operation, reader=reader).allowed:
        return
    logger.info(
        "access denied sub=%s resource=%s op=%s",
        short_id(getattr(ctx, "identity_id", None)),
        getattr(resource.type, "value", resource.type),
        getattr(operation, "value", operation),
    )
    raise AuthorizationDenied()


__all__ = ["Decision", "Operation", "Resource", "ResourceType", "decide", "require"]
