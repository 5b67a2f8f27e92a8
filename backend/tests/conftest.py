"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
give every test a fresh in-memory access store so state never leaks.
"""
import sys
from pathlib import Path

import pytest

# Ensure `backend.*` and the test helpers (`utils.*`) are importable.
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from backend.identity_access.stores import InMemoryAccessStore  # noqa: E402
from utils.access import School  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven behavior deterministic between tests.

    Tests opt into prod semantics or store selection explicitly.
    """
    for var in (
        "CLASSIO_ENV",
        "CLASSIO_TRUST_PROXY",
        "ACCESS_STORE",
        "BOOTSTRAP_TTL_HOURS",
        "INVITE_TTL_HOURS",
        "INVITE_MAX_USAGE",
        "INVITE_CODE_LENGTH",
        "TOKEN_COLLISION_RETRIES",
        "REDEEM_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_access_services():
    """Drop the process-wide services so each test wires its own store."""
    from backend.web import access_wiring

    access_wiring.set_services(None)
    yield
    access_wiring.set_services(None)


@pytest.fixture
def store() -> InMemoryAccessStore:
    return InMemoryAccessStore()


@pytest.fixture
def school(store: InMemoryAccessStore) -> School:
    return School(store)


@pytest.fixture
def services(store: InMemoryAccessStore):
    from backend.identity_access.config import AccessConfig
    from backend.web.access_wiring import build_services, set_services

    built = build_services(store=store, config=AccessConfig())
    set_services(built)
    return built
