import logging

from pydantic import BaseModel

from bookstore.application.payments import PaymentInstrumentService
from bookstore.application.side_effects import enqueue_history, enqueue_movement, enqueue_notification
from bookstore.domain.exceptions import InstrumentNotFoundError, OrderNotFoundError
from bookstore.domain.history import Actor
from bookstore.domain.money import format_amount
from bookstore.domain.order import Order


logger = logging.getLogger(__name__)


class CancelOrderDTO(BaseModel):
    number: str
    reason: str
    actor: Actor


class CancelOrderUseCase:
    """Cancels an order, gives the money back and returns confirmed stock."""

    def __init__(self, unit_of_work, payment_service: PaymentInstrumentService):
        self._uow = unit_of_work
        self._payments = payment_service

    async def __call__(self, data: CancelOrderDTO) -> Order:
        actor = data.actor
        async with self._uow() as uow:
            order = await uow.orders.get_by_number(data.number, for_update=True)
            if order is None:
                raise OrderNotFoundError(f"Order {data.number} not found")

            refund_due = order.cancel(data.reason, requested_by=actor.role, actor=actor)

            if order.stock_confirmed:
                for item in order.items:
                    record = await uow.inventory.get(item.product_id, for_update=True)
                    if record is None:
                        logger.error(f"Inventory record {item.product_id} missing while cancelling {order.number}")
                        continue
                    movement = record.credit_cancellation(item.quantity, actor, order_id=order.id)
                    await uow.inventory.save(record)
                    await enqueue_movement(uow, "inventory", record.product_id, movement, actor)

            await uow.orders.save(order)
            await enqueue_history(uow, "order", order)
            await enqueue_notification(
                uow,
                kind="cancelacion",
                user_id=order.customer_id,
                reference_id=order.id,
                message=f"Your order {order.number} was cancelled: {data.reason}",
                data={"number": order.number, "refund": refund_due},
            )

            # money goes back after every internal write
            if refund_due > 0:
                instrument = await uow.instruments.get(order.payment.instrument_id, for_update=True)
                if instrument is None:
                    raise InstrumentNotFoundError(
                        f"Payment instrument {order.payment.instrument_id} of order {order.number} not found"
                    )
                await self._payments.credit(
                    uow, instrument, refund_due,
                    memo=f"Cancellation of order {order.number}",
                    actor=actor,
                    order_id=order.id,
                )

            await uow.commit()

        logger.info(
            f"Order {order.number} cancelled by {actor.role.value} {actor.id}, "
            f"refunded {format_amount(refund_due)}"
        )
        return order
