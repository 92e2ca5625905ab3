"""
Inventory Expiry Sweeper - Marks medicine lots past their expiry date as expired.

Runs periodically (INVENTORY_EXPIRY_CHECK_INTERVAL_SECONDS, default 1 hour).
The same sweep also runs before every inventory listing, so this worker only
keeps `condition` fresh for lots nobody is looking at.

Run standalone:
    python -m engine.workers.expiry_sweeper
"""

import asyncio
import logging

from database.connection import Database
from engine.services.inventory_registry import mark_expired_lots
from shared.config import get_settings
from shared.errors import AllocationError
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def sweep_expired_lots(database: Database) -> int:
    """
    Run one expiry sweep in its own transaction.

    Returns:
        int: Number of lots marked expired in this run
    """
    async with database.unit_of_work() as uow:
        marked = await mark_expired_lots(uow)
        await uow.commit()

    logger.info(f"Expiry sweep completed | marked_count={marked}")
    return marked


async def run_expiry_sweeper(database: Database, interval_seconds: int | None = None) -> None:
    """
    Main worker loop - sweeps every interval_seconds until cancelled.

    A failed sweep (database unavailable) is logged and retried next cycle.
    """
    interval = interval_seconds or get_settings().INVENTORY_EXPIRY_CHECK_INTERVAL_SECONDS

    logger.info("Inventory expiry sweeper starting...")
    logger.info(f"Check interval: {interval} seconds")

    try:
        while True:
            try:
                await sweep_expired_lots(database)
            except AllocationError as e:
                logger.error(f"Error in expiry sweep cycle: {e.error_code} {e.message}")

            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info("Inventory expiry sweeper shutting down...")
        raise


async def main() -> None:
    database = Database.from_settings()
    try:
        await run_expiry_sweeper(database)
    finally:
        await database.dispose()


if __name__ == "__main__":
    configure_logging()

    logger.info("Starting inventory expiry sweeper...")

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Inventory expiry sweeper stopped by user")
