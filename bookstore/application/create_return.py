import logging
import uuid

from pydantic import BaseModel

from bookstore.application.side_effects import enqueue_history, enqueue_notification
from bookstore.domain.exceptions import InvalidStateError, OrderNotFoundError, PermissionDeniedError
from bookstore.domain.history import Actor, utcnow
from bookstore.domain.returns import Return, ReturnSelection


logger = logging.getLogger(__name__)


class CreateReturnDTO(BaseModel):
    order_number: str
    items: list[ReturnSelection]
    actor: Actor


class CreateReturnUseCase:
    def __init__(self, unit_of_work, service_url: str, window_days: int = 8, shipping_deadline_days: int = 15):
        self._uow = unit_of_work
        self._service_url = service_url
        self._window_days = window_days
        self._shipping_deadline_days = shipping_deadline_days

    async def __call__(self, data: CreateReturnDTO) -> Return:
        logger.info(f"Return requested for order {data.order_number} by {data.actor.id}")
        async with self._uow() as uow:
            order = await uow.orders.get_by_number(data.order_number, for_update=True)
            if order is None:
                raise OrderNotFoundError(f"Order {data.order_number} not found")
            if not order.is_owned_by(data.actor):
                raise PermissionDeniedError(f"Order {order.number} does not belong to customer {data.actor.id}")

            allowed, reason = order.can_request_return(utcnow(), self._window_days)
            if not allowed:
                raise InvalidStateError("Order", order.status.value, "request_return", reason)

            returned = Return.create_from_order(
                return_id=str(uuid.uuid4()),
                order=order,
                selections=data.items,
                actor=data.actor,
                tracking_base_url=self._service_url,
                shipping_deadline_days=self._shipping_deadline_days,
            )
            # quantities held here are what stops a second return of the same units
            order.reserve_for_return(returned.quantities_by_order_item(), returned.code, data.actor)

            await uow.orders.save(order)
            await uow.returns.add(returned)
            await enqueue_history(uow, "order", order)
            await enqueue_history(uow, "return", returned)
            await enqueue_notification(
                uow,
                kind="devolucion_solicitada",
                user_id=returned.customer_id,
                reference_id=returned.id,
                message=f"We received your return request {returned.code} for order {order.number}",
                data={
                    "code": returned.code,
                    "qr_token": returned.qr.token,
                    "tracking_url": returned.qr.tracking_url,
                },
            )
            await uow.commit()

        logger.info(
            f"Return {returned.code} created for order {order.number}, "
            f"requested amount {returned.totals.requested_amount}"
        )
        return returned
