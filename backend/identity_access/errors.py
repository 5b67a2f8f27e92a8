"""
Typed errors for authorization, credentials and onboarding.

Every error carries a stable snake_case `code` so adapters can map it to a
response without parsing messages. Messages never include token values or
full identity ids.
"""
from __future__ import annotations


class AccessError(Exception):
    """Base class for all access-core errors."""

    code = "access_error"

    def __init__(self, code: str | None = None):
        if code:
            self.code = code
        super().__init__(self.code)


class AuthorizationDenied(AccessError):
    """A decision came back Deny.

    Always generic: callers must not learn whether the target exists.
    """

    code = "forbidden"


class CredentialInvalid(AccessError):
    code = "credential_invalid"


class CredentialExpired(AccessError):
    code = "credential_expired"


class CredentialExhausted(AccessError):
    code = "credential_exhausted"


class CredentialGenerationExhausted(AccessError):
    """Every collision retry produced an existing token value."""

    code = "token_generation_exhausted"


class ProvisioningFailed(AccessError):
    code = "provisioning_failed"


class BootstrapConflict(AccessError):
    code = "bootstrap_conflict"


class IntegrityViolation(AccessError):
    """An invariant was observed broken. Treated as a bug, never retried."""

    code = "integrity_violation"


__all__ = [
    "AccessError",
    "AuthorizationDenied",
    "BootstrapConflict",
    "CredentialExhausted",
    "CredentialExpired",
    "CredentialGenerationExhausted",
    "CredentialInvalid",
    "IntegrityViolation",
    "ProvisioningFailed",
]
