"""
JWT verification for tokens issued by the identity provider.

Why: Two inbound paths carry provider-signed JWTs: API access tokens
(`Authorization: Bearer` on admin routes) and identity-created hook calls
(the provider tells us a new identity exists). Both are verified here so the
web adapter stays thin and the checks can be unit tested in isolation.

Security: RS256 only, key selected by `kid` from the provider JWKS, issuer and
audience enforced, `exp`/`iat`/`nbf` checked with a small clock skew. The
JWKS is cached in memory per URL.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict
import time

import requests
from jose import jwt
from jose.exceptions import JOSEError

from .config import IdPConfig


class TokenVerificationError(Exception):
    """Raised when a provider token fails verification."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass
class _CacheEntry:
    jwks: Dict[str, object]
    expires_at: float


class JWKSCache:
    """In-memory JWKS cache keyed by URL."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, _CacheEntry] = {}

    def get(self, cfg: IdPConfig) -> Dict[str, object]:
        now = time.time()
        entry = self._entries.get(cfg.jwks_url)
        if entry and entry.expires_at > now:
            return entry.jwks
        jwks = self._fetch(cfg.jwks_url)
        self._entries[cfg.jwks_url] = _CacheEntry(jwks=jwks, expires_at=now + self.ttl_seconds)
        return jwks

    def clear(self) -> None:
        self._entries.clear()

    def _fetch(self, url: str) -> Dict[str, object]:
        try:
            resp = requests.get(url, timeout=5)
        except requests.RequestException as exc:
            raise TokenVerificationError("jwks_fetch_failed") from exc
        if resp.status_code != 200:
            raise TokenVerificationError("jwks_fetch_failed")
        try:
            jwks = resp.json()
        except ValueError as exc:
            raise TokenVerificationError("jwks_invalid") from exc
        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise TokenVerificationError("jwks_invalid")
        return jwks


JWKS_CACHE = JWKSCache()

MAX_CLOCK_SKEW_SECONDS = 5
ALLOWED_ALGORITHMS = ["RS256"]


def verify_access_token(*, token: str, cfg: IdPConfig, cache: JWKSCache | None = None) -> Dict[str, object]:
    """Verify an API bearer token; returns claims (needs a non-empty `sub`)."""
    return _verify(token=token, cfg=cfg, audience=cfg.audience, cache=cache)


def verify_hook_token(*, token: str, cfg: IdPConfig, cache: JWKSCache | None = None) -> Dict[str, object]:
    """Verify an identity-created hook token (audience `cfg.hook_audience`)."""
    return _verify(token=token, cfg=cfg, audience=cfg.hook_audience, cache=cache)


def _verify(*, token: str, cfg: IdPConfig, audience: str, cache: JWKSCache | None) -> Dict[str, object]:
    if not isinstance(token, str) or not token:
        raise TokenVerificationError("missing_token")
    cache = cache or JWKS_CACHE
    try:
        header = jwt.get_unverified_header(token)
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token") from exc
    kid = header.get("kid")
    if not kid:
        raise TokenVerificationError("missing_kid")
    jwks = cache.get(cfg)
    key_dict = _find_key(jwks, kid)
    if not key_dict:
        raise TokenVerificationError("unknown_kid")

    try:
        claims = jwt.decode(
            token,
            key_dict,
            algorithms=ALLOWED_ALGORITHMS,
            audience=audience,
            issuer=cfg.issuer,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "verify_at_hash": False,
            },
        )
    except JOSEError as exc:
        raise TokenVerificationError("invalid_token") from exc

    _validate_temporal_claims(claims)
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise TokenVerificationError("missing_sub")
    return claims


def _find_key(jwks: Dict[str, object], kid: str) -> Dict[str, object] | None:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        return None
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    return None


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = time.time()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise TokenVerificationError("invalid_token")
    if exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise TokenVerificationError("token_expired")

    iat = claims.get("iat")
    if isinstance(iat, (int, float)) and iat - MAX_CLOCK_SKEW_SECONDS > now:
        raise TokenVerificationError("invalid_token")

    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and nbf - MAX_CLOCK_SKEW_SECONDS > now:
        raise TokenVerificationError("invalid_token")


__all__ = [
    "JWKSCache",
    "JWKS_CACHE",
    "TokenVerificationError",
    "verify_access_token",
    "verify_hook_token",
]
