from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from quotagate.core.logging import configure_logging
from quotagate.persistence.db import SessionLocal
from quotagate.services.maintenance import prune_usage_daily


async def prune(now: datetime | None) -> None:
    async with SessionLocal() as session:
        deleted = await prune_usage_daily(session, now=now)
        await session.commit()
        print(f"pruned_usage_daily={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete usage_daily rows beyond retention")
    parser.add_argument("--as-of", default=None, help="UTC date (YYYY-MM-DD) to compute the cutoff from")
    args = parser.parse_args()

    configure_logging()
    now = None
    if args.as_of:
        now = datetime.strptime(args.as_of, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    asyncio.run(prune(now))


if __name__ == "__main__":
    main()
