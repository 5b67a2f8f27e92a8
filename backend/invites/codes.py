"""
Invite code generation.

Security:
    - Values come from `secrets` (CSPRNG). Bytes are mapped onto the alphabet
      with rejection sampling so every character is equally likely.
    - The alphabet drops visually confusable characters (0/O, 1/I/L) so codes
      survive being read aloud or copied from paper.
    - Bootstrap codes carry 16 random characters (~79 bits); invite codes
      are short by design and protected by expiry and usage limits.
"""
from __future__ import annotations

import secrets

from backend.identity_access.domain import Role

ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 6
BOOTSTRAP_PREFIX = "GEN"
BOOTSTRAP_GROUPS = 4
BOOTSTRAP_GROUP_LENGTH = 4
MIN_PLATFORM_CODE_LENGTH = 10

# Largest multiple of len(ALPHABET) that fits in one byte; bytes at or above
# it are discarded to avoid modulo bias.
_ACCEPT_BELOW = 256 - (256 % len(ALPHABET))

_WEAK_VALUES = frozenset(
    {
        "ADMIN",
        "BOOTSTRAP",
        "GENESIS",
        "GENESIS-KEY",
        "PASSWORD",
        "SECRET",
        "SUPERADMIN",
        "TEST",
        "TOKEN",
    }
)


def generate_code(length: int) -> str:
    if length < 1:
        raise ValueError("invalid_code_length")
    out: list[str] = []
    while len(out) < length:
        for byte in secrets.token_bytes(length - len(out) + 4):
            if byte < _ACCEPT_BELOW:
                out.append(ALPHABET[byte % len(ALPHABET)])
                if len(out) == length:
                    break
    return "".join(out)


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return generate_code(length)


def generate_bootstrap_code() -> str:
    """Return `GEN-XXXX-XXXX-XXXX-XXXX`."""
    groups = [generate_code(BOOTSTRAP_GROUP_LENGTH) for _ in range(BOOTSTRAP_GROUPS)]
    return "-".join([BOOTSTRAP_PREFIX, *groups])


def normalize_code(value: object) -> str:
    """Canonical form for lookups: trimmed, upper-case. Empty for non-strings."""
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def audit_prefix(token: str) -> str:
    """Short, non-secret prefix for audit/log lines (at most a quarter of the code)."""
    token = token or ""
    return token[: max(2, len(token) // 4)]


def is_weak_code(token: str, role: Role) -> bool:
    """Reject placeholders and platform codes below the minimum length."""
    value = normalize_code(token)
    if not value or value in _WEAK_VALUES:
        return True
    if any(ch not in ALPHABET for ch in value.replace("-", "")):
        return True
    if role.is_platform and len(value.replace("-", "")) < MIN_PLATFORM_CODE_LENGTH:
        return True
    return False


__all__ = [
    "ALPHABET",
    "INVITE_CODE_LENGTH",
    "MIN_PLATFORM_CODE_LENGTH",
    "audit_prefix",
    "generate_bootstrap_code",
    "generate_code",
    "generate_invite_code",
    "is_weak_code",
    "normalize_code",
]
