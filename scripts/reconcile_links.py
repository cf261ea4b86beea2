#!/usr/bin/env python3
"""List connection keys that were consumed but never produced a link.

Such a key is burned: the user cannot reuse it and has no link. Support
issues a new key or fixes the row by hand; this script only reports.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/reconcile_links.py [--json]

Exit status is 1 when any orphaned consumption is found.
"""

import argparse
import asyncio
import json
import sys

from kitakita.config import settings
from kitakita.database import close_database, get_db_session
from kitakita.logging_config import setup_logging
from kitakita.services.linking import find_unlinked_consumptions


async def _collect() -> list[dict]:
    try:
        async with get_db_session() as db:
            orphans = await find_unlinked_consumptions(db)
            return [
                {
                    "code": record.code,
                    "owner_user_id": record.owner_user_id,
                    "used_by_external_id": record.used_by_external_id,
                    "used_at": record.used_at.isoformat() if record.used_at else None,
                }
                for record in orphans
            ]
    finally:
        await close_database()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--json", action="store_true", help="print rows as JSON")
    args = parser.parse_args()

    setup_logging(log_format="text", log_level=settings.log_level)

    rows = asyncio.run(_collect())

    if args.json:
        print(json.dumps(rows, indent=2))
    elif not rows:
        print("No unlinked consumptions.")
    else:
        print(f"{len(rows)} consumed key(s) without an account link:")
        for row in rows:
            print(
                f"  {row['code']}  owner={row['owner_user_id']}  "
                f"chat={row['used_by_external_id']}  used_at={row['used_at']}"
            )

    return 1 if rows else 0


if __name__ == "__main__":
    sys.exit(main())
