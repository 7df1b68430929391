import logging

from pydantic import BaseModel

from bookstore.domain.exceptions import OrderNotFoundError, PermissionDeniedError
from bookstore.domain.history import Actor
from bookstore.domain.order import Order
from bookstore.domain.returns import Return


logger = logging.getLogger(__name__)


class OrderView(BaseModel):
    order: Order
    returns: list[Return] = []


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, number: str, actor: Actor) -> OrderView:
        async with self._uow() as uow:
            order = await uow.orders.get_by_number(number)
            if not order:
                raise OrderNotFoundError(f"Order {number} not found")
            if not order.is_owned_by(actor):
                raise PermissionDeniedError(f"Order {number} does not belong to customer {actor.id}")
            returns = await uow.returns.list_by_order(order.id)
            return OrderView(order=order, returns=returns)


class ListCustomerOrdersUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, customer_id: str, actor: Actor, limit: int = 20, offset: int = 0) -> list[Order]:
        if not actor.is_admin and actor.id != customer_id:
            raise PermissionDeniedError(f"Customer {actor.id} cannot list orders of {customer_id}")
        async with self._uow() as uow:
            orders = await uow.orders.list_by_customer(customer_id, limit=limit, offset=offset)
        logger.info(f"Listed {len(orders)} orders for customer {customer_id}")
        return orders
