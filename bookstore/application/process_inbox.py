import logging
from datetime import datetime

from bookstore.application.side_effects import enqueue_history, enqueue_notification
from bookstore.domain.exceptions import InvalidStateError
from bookstore.domain.history import Actor

logger = logging.getLogger(__name__)

IN_TRANSIT_EVENT = "shipment.in_transit"
DELIVERED_EVENT = "shipment.delivered"


class ProcessInboxEventsUseCase:
    """Applies carrier tracking events stored in the inbox by the consumer."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, limit: int = 10) -> int:
        """Processes pending inbox events. Returns how many were applied."""
        async with self._uow() as uow:
            pending = await uow.inbox.get_pending(limit=limit)
        if not pending:
            return 0

        logger.info(f"Processing {len(pending)} inbox events")
        applied = 0
        for event in pending:
            try:
                if await self._apply(event):
                    applied += 1
            except Exception as e:
                logger.error(f"Error processing inbox event {event['id']}: {e}")
        return applied

    async def _apply(self, event: dict) -> bool:
        event_id = event["id"]
        data = event["event_data"]
        tracking_number = event["aggregate_id"]
        carrier = Actor.system()

        async with self._uow() as uow:
            order = await uow.orders.get_by_tracking_number(tracking_number, for_update=True)
            if not order:
                logger.error(f"No order with tracking number {tracking_number} for inbox event {event_id}")
                await uow.inbox.mark_as_failed(event_id)
                await uow.commit()
                return False

            delivered_at = None
            if event["event_type"] == DELIVERED_EVENT and data.get("delivered_at"):
                try:
                    delivered_at = datetime.fromisoformat(data["delivered_at"])
                except (TypeError, ValueError) as e:
                    logger.error(f"Carrier event {event_id} has an unreadable delivery time: {e}")
                    await uow.inbox.mark_as_failed(event_id)
                    await uow.commit()
                    return False

            try:
                if event["event_type"] == IN_TRANSIT_EVENT:
                    order.mark_in_transit(carrier, description=data.get("description", ""), location=data.get("location"))
                elif event["event_type"] == DELIVERED_EVENT:
                    order.mark_delivered(carrier, delivered_at=delivered_at)
                else:
                    logger.warning(f"Unknown carrier event {event['event_type']} ({event_id})")
                    await uow.inbox.mark_as_failed(event_id)
                    await uow.commit()
                    return False
            except InvalidStateError as e:
                # repeated or out of order carrier updates are dropped
                logger.warning(f"Carrier event {event_id} ignored for order {order.number}: {e}")
                await uow.inbox.mark_as_processed(event_id)
                await uow.commit()
                return False

            await uow.orders.save(order)
            await enqueue_history(uow, "order", order)
            if event["event_type"] == DELIVERED_EVENT:
                await enqueue_notification(
                    uow,
                    kind="entrega",
                    user_id=order.customer_id,
                    reference_id=order.id,
                    message=f"Your order {order.number} was delivered",
                    data={"number": order.number},
                )
            await uow.inbox.mark_as_processed(event_id)
            await uow.commit()

        logger.info(f"Order {order.number} marked {order.status.value} from carrier event {event_id}")
        return True
