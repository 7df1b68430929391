import asyncio
import logging

from bookstore.database import AsyncSessionLocal
from bookstore.infrastructure.unit_of_work import UnitOfWork
from bookstore.infrastructure.http_clients import HTTPNotificationsClient
from bookstore.infrastructure.kafka_producer import KafkaAuditPublisher
from bookstore.application.process_outbox import ProcessOutboxEventsUseCase
from bookstore.config import settings

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

audit_publisher = KafkaAuditPublisher(settings.KAFKA_BOOTSTRAP_SERVERS, settings.AUDIT_TOPIC)
notifications_client = HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN)


async def outbox_worker():
    """Dispatches committed notifications and audit events"""
    logger.info("Outbox worker started")

    await audit_publisher.start()
    try:
        while True:
            try:
                use_case = ProcessOutboxEventsUseCase(
                    unit_of_work=UnitOfWork(AsyncSessionLocal),
                    notifications_client=notifications_client,
                    audit_publisher=audit_publisher
                )

                processed = await use_case(limit=20)
                if processed:
                    logger.info(f"Published {processed} outbox events")

                await asyncio.sleep(3)

            except Exception as e:
                logger.error(f"Outbox worker error: {e}", exc_info=True)
                await asyncio.sleep(10)
    finally:
        await audit_publisher.stop()


async def main():
    await outbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
