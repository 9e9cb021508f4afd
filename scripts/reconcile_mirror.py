#!/usr/bin/env python3
"""Backfill users missing from the relational mirror.

Registration writes the mirror best-effort, so a mirror outage leaves users
that exist only in the primary store. This walks the primary store and
inserts each missing user into the mirror with the same password hash.

Usage:
    python scripts/reconcile_mirror.py            # backfill
    python scripts/reconcile_mirror.py --dry-run  # only report

Reads the same environment variables as the server (MONGO_URI, DB_HOST, ...).
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reconcile(dry_run: bool = False) -> dict:
    from chatrelay.service.runtime import Runtime

    runtime = Runtime()
    try:
        return await runtime.registry.reconcile_mirror(dry_run=dry_run)
    finally:
        runtime.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill the user mirror from the primary store")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report missing users without writing to the mirror",
    )
    args = parser.parse_args()

    from chatrelay.config import ConfigurationError

    try:
        summary = asyncio.run(reconcile(dry_run=args.dry_run))
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    prefix = "[DRY RUN] " if args.dry_run else ""
    verb = "would backfill" if args.dry_run else "backfilled"
    print(
        f"{prefix}checked {summary['checked']} users, {verb} {summary['backfilled']}, "
        f"{summary['failed']} failed"
    )
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
