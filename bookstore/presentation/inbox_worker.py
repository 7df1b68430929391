import asyncio
import logging

from bookstore.database import AsyncSessionLocal
from bookstore.infrastructure.unit_of_work import UnitOfWork
from bookstore.application.process_inbox import ProcessInboxEventsUseCase
from bookstore.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def inbox_worker():
    """Applies stored carrier events to orders"""
    logger.info("Inbox worker started")

    while True:
        try:
            use_case = ProcessInboxEventsUseCase(unit_of_work=UnitOfWork(AsyncSessionLocal))

            processed = await use_case(limit=10)
            if processed:
                logger.info(f"Applied {processed} inbox events")

            await asyncio.sleep(2)

        except Exception as e:
            logger.error(f"Inbox worker error: {e}", exc_info=True)
            await asyncio.sleep(10)


async def main():
    await inbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
