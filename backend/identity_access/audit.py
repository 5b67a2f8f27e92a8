"""
Audit sink: append-only record of credential and principal changes.

Why:
    Role, tenant and credential changes must be reconstructable after the fact.
    Events are written through the active unit of work so they commit or roll
    back together with the change they describe. Stores hand committed events
    to `log_committed`, so the `classio.audit` logger never reports a change
    that was rolled back.

Security:
    Token values never enter an event. Callers pass `token_prefix`; a `token`
    detail key is rejected outright.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, TYPE_CHECKING
import logging

from .domain import short_id, utcnow

if TYPE_CHECKING:  # pragma: no cover
    from .ports import UnitOfWork


logger = logging.getLogger("classio.audit")


class AuditKind(str, Enum):
    TENANT_CREATED = "tenant_created"
    TOKEN_GENERATED = "token_generated"
    TOKEN_REDEEMED = "token_redeemed"
    TOKEN_INVALIDATED = "token_invalidated"
    PRINCIPAL_PROVISIONED = "principal_provisioned"
    ROLE_CHANGED = "role_changed"
    TENANT_CHANGED = "tenant_changed"
    PRINCIPAL_DELETED = "principal_deleted"
    PRINCIPAL_RESTORED = "principal_restored"
    BOOTSTRAP_GENERATED = "bootstrap_generated"
    BOOTSTRAP_INVALIDATED = "bootstrap_invalidated"
    BOOTSTRAP_CONFLICT = "bootstrap_conflict"


@dataclass(frozen=True)
class AuditEvent:
    kind: AuditKind
    actor_id: Optional[str] = None
    subject_id: Optional[str] = None
    tenant_id: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)


class AuditSink:
    """Builds events and appends them to the unit of work."""

    def record(
        self,
        uow: "UnitOfWork",
        kind: AuditKind,
        *,
        actor_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        at: Optional[datetime] = None,
        **details: Any,
    ) -> AuditEvent:
        if "token" in details:
            raise ValueError("audit_details_must_not_contain_token")
        event = AuditEvent(
            kind=kind,
            actor_id=actor_id,
            subject_id=subject_id,
            tenant_id=tenant_id,
            details=dict(details),
            at=at or utcnow(),
        )
        uow.append_audit(event)
        return event


def log_committed(events: Iterable[AuditEvent]) -> None:
    """Mirror events to the operator log once their unit of work committed."""
    for event in events:
        logger.info(
            "audit kind=%s actor=%s subject=%s tenant=%s",
            event.kind.value,
            short_id(event.actor_id),
            short_id(event.subject_id),
            event.tenant_id or "-",
        )


def event_to_row(event: AuditEvent) -> Dict[str, Any]:
    """Flatten an event for storage adapters."""
    return {
        "kind": event.kind.value,
        "actor_id": event.actor_id,
        "subject_id": event.subject_id,
        "tenant_id": event.tenant_id,
        "details": dict(event.details),
        "created_at": event.at,
    }


__all__ = ["AuditEvent", "AuditKind", "AuditSink", "event_to_row", "log_committed"]
