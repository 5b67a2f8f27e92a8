"""
Invite credential records and redemption outcomes.

Why:
    Redemption is a hot, user-facing path. Rejections (unknown, expired,
    exhausted) are ordinary outcomes and are returned as values; only broken
    invariants and infrastructure failures raise.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from backend.identity_access.domain import Role, utcnow
from backend.identity_access.errors import (
    AccessError,
    CredentialExhausted,
    CredentialExpired,
    CredentialInvalid,
)


class ScopeKind(str, Enum):
    CLASS = "class"  # student credential: enroll into this class on redemption
    WARD = "ward"  # parent credential: link to this student on redemption


@dataclass(frozen=True)
class CredentialScope:
    kind: ScopeKind
    target_id: str


@dataclass
class InviteCredential:
    token: str
    role: Role
    tenant_id: Optional[str]
    usage_limit: int
    expires_at: datetime
    issued_by: Optional[str]
    scope: Optional[CredentialScope] = None
    times_used: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_bootstrap(self) -> bool:
        return self.issued_by is None and self.role.is_platform

    @property
    def is_exhausted(self) -> bool:
        return self.times_used >= self.usage_limit

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_live(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.is_exhausted


@dataclass(frozen=True)
class RedemptionRecord:
    token: str
    identity_id: str
    redeemed_at: datetime


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


_REASON_ERRORS = {
    RejectionReason.NOT_FOUND: CredentialInvalid,
    RejectionReason.EXPIRED: CredentialExpired,
    RejectionReason.EXHAUSTED: CredentialExhausted,
}


@dataclass(frozen=True)
class Redemption:
    """What a successful redemption grants."""

    role: Role
    tenant_id: Optional[str]
    scope: Optional[CredentialScope]
    token_prefix: str
    times_used: int
    usage_limit: int
    bootstrap: bool = False


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason

    def as_error(self) -> AccessError:
        return _REASON_ERRORS[self.reason]()


RedeemResult = Union[Redemption, Rejected]


__all__ = [
    "CredentialScope",
    "InviteCredential",
    "RedeemResult",
    "Redemption",
    "RedemptionRecord",
    "Rejected",
    "RejectionReason",
    "ScopeKind",
]
