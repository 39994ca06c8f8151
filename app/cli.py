"""CLI entrypoints for auth service operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from datetime import UTC, datetime

from app.config import configure_structlog, get_settings
from app.core.sessions import get_session_service
from app.db import dispose_engine, get_session_factory
from app.services.verification_service import get_verification_service


async def _run_purge_expired() -> int:
    """Delete expired sessions and expired verification records."""
    configure_structlog(get_settings())
    now = datetime.now(UTC)
    session_factory = get_session_factory()
    try:
        async with session_factory() as db_session:
            sessions = await get_session_service().purge_expired(db_session, now=now)
            verifications = await get_verification_service().purge_expired(db_session, now=now)
    finally:
        await dispose_engine()

    print(
        json.dumps(
            {
                "purged_sessions": sessions,
                "purged_verifications": verifications,
                "cutoff": now.isoformat(),
            }
        )
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m app.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser(
        "purge-expired",
        help="Delete sessions and one-time verification records past their expiry.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "purge-expired":
        return asyncio.run(_run_purge_expired())
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
