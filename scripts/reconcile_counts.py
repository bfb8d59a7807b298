"""
Recompute Category.post_count from the posts table.

Meant for cron or a one-off repair after manual data changes:

    python -m scripts.reconcile_counts            # every category
    python -m scripts.reconcile_counts -c Data    # a single category
"""
import asyncio
import argparse
import logging
import sys

from app.cache import CacheManager
from app.config import settings
from app.database import async_session, commit_and_invalidate, engine
from app.services import counter_service

logger = logging.getLogger("reconcile_counts")


async def reconcile(category: str | None = None) -> int:
    # Only a shared (redis) cache outlives this process.
    cache = CacheManager.from_settings(settings)
    await cache.connect()
    async with async_session() as session:
        if category:
            count = await counter_service.reconcile_category_count(session, category)
            if count is None:
                logger.error("Category %r not found", category)
                await cache.disconnect()
                return 1
            counts = {category: count}
        else:
            counts = await counter_service.reconcile_all(session)
        await commit_and_invalidate(session, cache)
    await cache.disconnect()
    await engine.dispose()

    for name, count in counts.items():
        print(f"{name}: {count}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Reconcile category post counters")
    parser.add_argument("-c", "--category", help="Category name; all categories when omitted")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(reconcile(args.category)))


if __name__ == "__main__":
    main()
