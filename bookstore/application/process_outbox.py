import logging

from bookstore.application.interfaces import AuditPublisher, NotificationsService
from bookstore.application.side_effects import AUDIT_EVENT, NOTIFICATION_EVENT

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    """Dispatches committed side effects. A failed dispatch stays pending
    for the next poll until it runs out of attempts."""

    def __init__(self, unit_of_work, notifications_client: NotificationsService, audit_publisher: AuditPublisher, max_attempts: int = 5):
        self._uow = unit_of_work
        self._notifications = notifications_client
        self._audit = audit_publisher
        self._max_attempts = max_attempts

    async def __call__(self, limit: int = 20) -> int:
        """Processes pending outbox events. Returns how many were published."""
        published = 0
        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(limit=limit)

            for event in pending:
                try:
                    success = await self._dispatch(event)
                except Exception as e:
                    logger.error(f"Error dispatching outbox event {event['id']}: {e}")
                    success = False
                    error = str(e)
                else:
                    error = "collaborator did not accept the event"

                if success:
                    await uow.outbox.mark_as_published(event["id"])
                    published += 1
                    logger.info(f"Published {event['event_type']} event {event['id']}")
                else:
                    await uow.outbox.record_failure(event["id"], error, self._max_attempts)
                    logger.warning(f"Outbox event {event['id']} not delivered: {error}")

            await uow.commit()

        return published

    async def _dispatch(self, event: dict) -> bool:
        data = event["event_data"]
        if event["event_type"] == NOTIFICATION_EVENT:
            return await self._notifications.send(
                kind=data["kind"],
                message=data["message"],
                reference_id=data["reference_id"],
                idempotency_key=data["idempotency_key"],
                user_id=data["user_id"],
            )
        if event["event_type"] == AUDIT_EVENT:
            return await self._audit.publish(
                {"event_id": event["id"], "created_at": event["created_at"], **data},
                key=event["aggregate_id"],
            )
        logger.error(f"Unknown outbox event type {event['event_type']} for event {event['id']}")
        return False
