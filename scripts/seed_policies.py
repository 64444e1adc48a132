from __future__ import annotations

import asyncio

from quotagate.core.logging import configure_logging
from quotagate.persistence.db import SessionLocal
from quotagate.services.maintenance import seed_quota_policies


async def seed() -> None:
    # Materialize configured tier limits so operators can edit them in place.
    async with SessionLocal() as session:
        inserted = await seed_quota_policies(session)
        await session.commit()
        print(f"seeded_quota_policies={','.join(inserted) or 'none'}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed())
