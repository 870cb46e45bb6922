from __future__ import annotations

import asyncio
import logging

from winning import repositories
from winning.db import Database
from winning.db_init import init_db
from winning.settings import get_settings

logger = logging.getLogger(__name__)


async def reconcile_once(db: Database, limit: int = 100) -> dict:
    """Insert missing derived wins and drop stale ones. Manual wins are left alone."""
    created = 0
    failed = 0
    for record in await repositories.list_completions_without_win(db, limit=limit):
        try:
            if await repositories.insert_derived_win(db, record):
                created += 1
        except Exception as exc:
            failed += 1
            logger.exception("Failed to restore %s win for user %s: %s", record["source"], record["user_id"], exc)
    stale = await repositories.list_stale_derived_wins(db, limit=limit)
    removed = await repositories.delete_wins(db, [row["id"] for row in stale])
    if created or removed or failed:
        logger.info("Win reconciliation: %s created, %s removed, %s failed", created, removed, failed)
    return {"created": created, "removed": removed, "failed": failed}


async def run_forever(db: Database, interval_seconds: int) -> None:
    while True:
        await reconcile_once(db)
        await asyncio.sleep(interval_seconds)


async def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    db = Database(settings.database_url)
    try:
        await init_db(db)
        await run_forever(db, settings.win_reconcile_interval_seconds)
    finally:
        await db.dispose()


if __name__ == "__main__":
    asyncio.run(main())
