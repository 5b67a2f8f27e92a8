"""Operator tool: mint the one-time platform bootstrap credential.

Only works while no platform principal exists. The full code is printed once
to stdout; logs (stderr) and the audit trail only carry its prefix.

Usage example:

    ACCESS_STORE=db SERVICE_ROLE_DSN=postgresql://... \
        python -m backend.tools.bootstrap_token generate --ttl-hours 12

    python -m backend.tools.bootstrap_token status

`generate` refuses to run unless ACCESS_STORE=db: a code minted into the
in-memory store would vanish when this process exits.

Exit codes: 0 success, 2 a platform principal already exists, 1 other errors
(including a non-durable store).
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from backend.identity_access.errors import BootstrapConflict
from backend.web.access_wiring import AccessServices, build_services


logger = logging.getLogger("classio.tools.bootstrap")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate or inspect the platform bootstrap credential")
    sub = parser.add_subparsers(dest="command", required=True)
    gen = sub.add_parser("generate", help="Invalidate pending bootstrap codes and mint a new one")
    gen.add_argument("--ttl-hours", type=int, default=None, help="Validity in hours (clamped to 168)")
    gen.add_argument("--notes", default="", help="Free-text note stored in the audit record")
    sub.add_parser("status", help="Report whether bootstrap is still required")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, *, services: Optional[AccessServices] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s", stream=sys.stderr)
    args = _parse_args(argv)
    services = services or build_services()

    if args.command == "status":
        status = services.bootstrap.bootstrap_status()
        print(f"needs_bootstrap={str(status.needs_bootstrap).lower()} pending_tokens={status.pending_tokens}")
        print(status.message)
        return 0

    if services.config.store_backend != "db":
        logger.error("Refusing to generate: ACCESS_STORE=db is required, the in-memory store is lost on exit")
        return 1

    try:
        credential = services.bootstrap.generate_bootstrap_token(args.ttl_hours, notes=args.notes)
    except BootstrapConflict:
        logger.error("A platform administrator already exists; bootstrap is closed")
        return 2
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        return 1
    print(credential.token)
    logger.info("Valid until %s; single use", credential.expires_at.isoformat())
    return 0


if __name__ == "__main__":  # pragma: no cover - manual entry point
    raise SystemExit(main())
