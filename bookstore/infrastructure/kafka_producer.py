import json
import logging
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from bookstore.application.interfaces import AuditPublisher

logger = logging.getLogger(__name__)


class KafkaAuditPublisher(AuditPublisher):
    def __init__(self, bootstrap_servers: str, topic: str):
        self._bootstrap_servers = bootstrap_servers
        self._producer: AIOKafkaProducer | None = None
        self._topic = topic

    async def start(self):
        if not self._producer:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._bootstrap_servers
            )
            await self._producer.start()
            logger.info("Kafka producer started")

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")

    async def publish(self, event: dict, key: str) -> bool:
        if not self._producer:
            logger.error("Kafka producer not started")
            return False

        try:
            await self._producer.send_and_wait(
                topic=self._topic,
                key=key.encode(),
                value=json.dumps(event, default=str).encode()
            )
            logger.info(f"Published audit event {event.get('action')} for {key}")
            return True

        except KafkaError as e:
            logger.error(f"Failed to publish audit event {event.get('action')}: {e}")
            return False
