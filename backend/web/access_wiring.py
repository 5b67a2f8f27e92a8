"""
Wire the access core for the web adapter.

Why:
    Routes need one consistent set of services bound to the same store. The
    store is chosen by configuration (`ACCESS_STORE`); tests swap the whole
    set with `set_services(build_services(store=InMemoryAccessStore()))`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging

from backend.administration.service import AdminService
from backend.identity_access.audit import AuditSink
from backend.identity_access.config import AccessConfig, load_access_config
from backend.identity_access.ports import AccessStore
from backend.identity_access.resolver import ContextResolver
from backend.identity_access.stores import InMemoryAccessStore
from backend.invites.bootstrap import BootstrapService
from backend.invites.service import IssuanceService
from backend.onboarding.lifecycle import PrincipalLifecycle
from backend.onboarding.provisioning import ProvisioningWorkflow


logger = logging.getLogger("classio.web")


@dataclass
class AccessServices:
    store: AccessStore
    config: AccessConfig
    resolver: ContextResolver
    issuance: IssuanceService
    bootstrap: BootstrapService
    provisioning: ProvisioningWorkflow
    lifecycle: PrincipalLifecycle
    admin: AdminService


def _build_default_store(config: AccessConfig) -> AccessStore:
    if config.store_backend == "db":
        from backend.identity_access.stores_db import DBAccessStore

        return DBAccessStore(dsn=config.service_dsn)
    logger.warning("Using in-memory access store (ACCESS_STORE=memory); state is not persisted")
    return InMemoryAccessStore()


def build_services(store: Optional[AccessStore] = None, config: Optional[AccessConfig] = None) -> AccessServices:
    config = config or load_access_config()
    store = store or _build_default_store(config)
    audit = AuditSink()
    issuance = IssuanceService(store=store, config=config, audit=audit)
    bootstrap = BootstrapService(issuance=issuance, audit=audit)
    lifecycle = PrincipalLifecycle(store=store, audit=audit)
    return AccessServices(
        store=store,
        config=config,
        resolver=ContextResolver(store.reader()),
        issuance=issuance,
        bootstrap=bootstrap,
        provisioning=ProvisioningWorkflow(issuance=issuance, bootstrap=bootstrap, audit=audit),
        lifecycle=lifecycle,
        admin=AdminService(store=store, issuance=issuance, lifecycle=lifecycle, audit=audit),
    )


SERVICES: Optional[AccessServices] = None


def get_services() -> AccessServices:
    global SERVICES
    if SERVICES is None:
        SERVICES = build_services()
    return SERVICES


def set_services(services: Optional[AccessServices]) -> None:
    """Replace the active services (tests); None rebuilds lazily from config."""
    global SERVICES
    SERVICES = services
