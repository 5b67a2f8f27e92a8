"""
Principal context resolver.

Why:
    Authorization needs {role, tenant} for the caller. Resolving it through the
    privileged reader keeps the lookup outside the decision path (no
    recursion), and scoping any cache to one operation means a role change is
    visible on the very next request.

Usage:
    with resolver.operation() as cache:
        ctx = resolver.resolve(sub, cache=cache)
        ...  # pass ctx explicitly to decide()/services
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional
import logging

from .domain import PrincipalContext, Role, short_id
from .ports import PrivilegedReader


logger = logging.getLogger("classio.identity_access")


@dataclass
class ResolutionCache:
    """Cache for the lifetime of one operation. Never shared between operations."""

    entries: Dict[str, Optional[PrincipalContext]] = field(default_factory=dict)
    closed: bool = False

    def get(self, identity_id: str):
        if self.closed:
            raise RuntimeError("resolution_cache_closed")
        return self.entries.get(identity_id, _MISS)

    def put(self, identity_id: str, ctx: Optional[PrincipalContext]) -> None:
        if self.closed:
            raise RuntimeError("resolution_cache_closed")
        self.entries[identity_id] = ctx

    def close(self) -> None:
        self.entries.clear()
        self.closed = True


_MISS = object()


class ContextResolver:
    def __init__(self, reader: PrivilegedReader):
        self._reader = reader

    @contextmanager
    def operation(self) -> Iterator[ResolutionCache]:
        cache = ResolutionCache()
        try:
            yield cache
        finally:
            cache.close()

    def resolve(self, identity_id: Optional[str], *, cache: Optional[ResolutionCache] = None) -> Optional[PrincipalContext]:
        """Return the live principal context for `identity_id` or None (not found).

        Soft-deleted principals and rows that violate the tenancy invariant
        resolve to None.
        """
        if not isinstance(identity_id, str) or not identity_id.strip():
            return None
        if cache is not None:
            hit = cache.get(identity_id)
            if hit is not _MISS:
                return hit
        ctx = self._load(identity_id)
        if cache is not None:
            cache.put(identity_id, ctx)
        return ctx

    def _load(self, identity_id: str) -> Optional[PrincipalContext]:
        try:
            principal = self._reader.get_principal(identity_id)
        except Exception as exc:
            logger.warning("principal lookup failed sub=%s err=%s", short_id(identity_id), exc.__class__.__name__)
            return None
        if principal is None or principal.is_deleted:
            return None
        role = Role.parse(principal.role)
        if role is None:
            logger.error("principal has unknown role sub=%s", short_id(identity_id))
            return None
        if role.is_platform != (principal.tenant_id is None):
            logger.error("principal violates tenancy invariant sub=%s role=%s", short_id(identity_id), role.value)
            return None
        return PrincipalContext(identity_id=principal.identity_id, role=role, tenant_id=principal.tenant_id)


__all__ = ["ContextResolver", "ResolutionCache"]
