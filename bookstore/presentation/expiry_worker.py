import asyncio
import logging
from datetime import datetime, timedelta, timezone

from bookstore.database import AsyncSessionLocal
from bookstore.infrastructure.unit_of_work import UnitOfWork
from bookstore.application.expire_returns import ExpireOverdueReturnsUseCase
from bookstore.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

RUN_AT_HOUR = 2


def seconds_until_next_run(now: datetime) -> float:
    next_run = now.replace(hour=RUN_AT_HOUR, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def expiry_worker():
    """Daily sweep of returns past their shipping deadline"""
    logger.info("Return expiry worker started")

    while True:
        await asyncio.sleep(seconds_until_next_run(datetime.now(timezone.utc)))
        try:
            expired = await ExpireOverdueReturnsUseCase(UnitOfWork(AsyncSessionLocal))()
            logger.info(f"Return expiry sweep finished, {expired} expired")
        except Exception as e:
            logger.error(f"Return expiry sweep error: {e}", exc_info=True)


async def main():
    await expiry_worker()


if __name__ == "__main__":
    asyncio.run(main())
