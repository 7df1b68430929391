import asyncio
import logging

from bookstore.database import AsyncSessionLocal
from bookstore.infrastructure.kafka_consumer import KafkaConsumerClient
from bookstore.infrastructure.unit_of_work import UnitOfWork
from bookstore.config import settings

logger = logging.getLogger(__name__)


async def handle_carrier_event(event_data: dict, session_factory=AsyncSessionLocal) -> bool:
    """Stores a carrier tracking event in the inbox; returns False for duplicates"""
    event_type = event_data.get("event_type")
    tracking_number = event_data.get("tracking_number")
    if not event_type or not tracking_number:
        logger.warning(f"Carrier event without type or tracking number dropped: {event_data}")
        return False
    idempotency_key = event_data.get("event_id") or f"{event_type}_{tracking_number}"

    logger.info(f"Received {event_type} for tracking number {tracking_number}")

    async with UnitOfWork(session_factory)() as uow:
        if await uow.inbox.is_processed(idempotency_key):
            logger.info(f"Event {idempotency_key} already stored")
            return False

        await uow.inbox.create(
            event_type=event_type,
            event_data=event_data,
            aggregate_id=tracking_number,
            idempotency_key=idempotency_key
        )
        await uow.commit()
    logger.info(f"Stored {event_type} in inbox for tracking number {tracking_number}")
    return True


async def carrier_consumer():
    """Consumer for carrier tracking events"""
    logger.info("Carrier consumer started")

    consumer = KafkaConsumerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.CARRIER_TOPIC)
    await consumer.start()

    try:
        await consumer.consume(handle_carrier_event)
    finally:
        await consumer.stop()


async def main():
    await carrier_consumer()


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    asyncio.run(main())
