import logging
from datetime import datetime

from pydantic import BaseModel

from bookstore.application.side_effects import enqueue_history, enqueue_notification
from bookstore.domain.exceptions import OrderNotFoundError, PermissionDeniedError, ValidationError
from bookstore.domain.history import Actor
from bookstore.domain.order import Order, OrderStatus, ShipmentData


logger = logging.getLogger(__name__)


class UpdateShippingStatusDTO(BaseModel):
    number: str
    status: OrderStatus
    actor: Actor
    tracking_number: str | None = None
    carrier: str | None = None
    estimated_delivery: datetime | None = None
    delivered_at: datetime | None = None
    description: str = ""
    note: str | None = None


NOTIFIED = {
    OrderStatus.SHIPPED: ("envio", "Your order {number} is on its way. Tracking number: {tracking}"),
    OrderStatus.DELIVERED: ("entrega", "Your order {number} was delivered"),
}


def apply_shipping_status(order: Order, data: UpdateShippingStatusDTO) -> None:
    if data.status == OrderStatus.READY_TO_SHIP:
        order.mark_ready_to_ship(data.actor)
    elif data.status == OrderStatus.SHIPPED:
        order.mark_shipped(
            ShipmentData(
                tracking_number=data.tracking_number or "",
                carrier=data.carrier or "",
                estimated_delivery=data.estimated_delivery,
            ),
            data.actor,
        )
    elif data.status == OrderStatus.IN_TRANSIT:
        order.mark_in_transit(data.actor, description=data.description)
    elif data.status == OrderStatus.DELIVERED:
        order.mark_delivered(data.actor, delivered_at=data.delivered_at)
    else:
        raise ValidationError(f"Status {data.status.value} cannot be set through a shipping update")


class UpdateShippingStatusUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: UpdateShippingStatusDTO) -> Order:
        if not data.actor.is_admin:
            raise PermissionDeniedError("Only staff may update shipping status")

        async with self._uow() as uow:
            order = await uow.orders.get_by_number(data.number, for_update=True)
            if order is None:
                raise OrderNotFoundError(f"Order {data.number} not found")

            apply_shipping_status(order, data)
            if data.note:
                order.add_internal_note(data.note, data.actor)

            await uow.orders.save(order)
            await enqueue_history(uow, "order", order)
            if data.status in NOTIFIED:
                kind, template = NOTIFIED[data.status]
                await enqueue_notification(
                    uow,
                    kind=kind,
                    user_id=order.customer_id,
                    reference_id=order.id,
                    message=template.format(number=order.number, tracking=order.shipping.tracking_number),
                    data={"number": order.number, "status": order.status.value},
                )
            await uow.commit()

        logger.info(f"Order {order.number} moved to {order.status.value}")
        return order
