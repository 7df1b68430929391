"""Public, unauthenticated tracking projections.

Only status, timestamps and titles/quantities leave through here: no
customer data, no addresses, no internal notes, no actor ids.
"""
import logging
from datetime import datetime

from pydantic import BaseModel

from bookstore.domain.exceptions import OrderNotFoundError, ReturnNotFoundError
from bookstore.domain.history import HistoryEvent
from bookstore.domain.order import Order
from bookstore.domain.returns import Return


logger = logging.getLogger(__name__)


class TrackingEvent(BaseModel):
    event: str
    at: datetime
    description: str


class TrackedItem(BaseModel):
    title: str
    quantity: int
    status: str


class OrderTracking(BaseModel):
    number: str
    status: str
    created_at: datetime
    shipping_mode: str
    carrier: str | None
    tracking_number: str | None
    shipped_at: datetime | None
    estimated_delivery: datetime | None
    delivered_at: datetime | None
    items: list[TrackedItem]
    events: list[TrackingEvent]


class ReturnTracking(BaseModel):
    code: str
    order_number: str
    status: str
    requested_at: datetime
    shipping_deadline: datetime
    refund_completed_at: datetime | None
    items: list[TrackedItem]
    events: list[TrackingEvent]


class QRValidation(BaseModel):
    valid: bool
    code: str | None = None
    status: str | None = None


def _events(history: list[HistoryEvent]) -> list[TrackingEvent]:
    return [TrackingEvent(event=e.event, at=e.at, description=e.description) for e in history]


def order_projection(order: Order) -> OrderTracking:
    return OrderTracking(
        number=order.number,
        status=order.status.value,
        created_at=order.created_at,
        shipping_mode=order.shipping.mode.value,
        carrier=order.shipping.carrier,
        tracking_number=order.shipping.tracking_number,
        shipped_at=order.shipping.shipped_at,
        estimated_delivery=order.shipping.estimated_delivery,
        delivered_at=order.shipping.delivered_at,
        items=[TrackedItem(title=i.book.title, quantity=i.quantity, status=i.status.value) for i in order.items],
        events=_events(order.history),
    )


def return_projection(returned: Return) -> ReturnTracking:
    return ReturnTracking(
        code=returned.code,
        order_number=returned.order_number,
        status=returned.status.value,
        requested_at=returned.requested_at,
        shipping_deadline=returned.shipping_deadline,
        refund_completed_at=returned.refund.completed_at,
        items=[TrackedItem(title=i.title, quantity=i.quantity, status=i.status.value) for i in returned.items],
        events=_events(returned.history),
    )


class TrackingUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def order_by_tracking_number(self, tracking_number: str) -> OrderTracking:
        async with self._uow() as uow:
            order = await uow.orders.get_by_tracking_number(tracking_number)
        if order is None:
            raise OrderNotFoundError(f"No order with tracking number {tracking_number}")
        return order_projection(order)

    async def return_by_code(self, code: str) -> ReturnTracking:
        async with self._uow() as uow:
            returned = await uow.returns.get_by_code(code)
        if returned is None:
            raise ReturnNotFoundError(f"Return {code} not found")
        return return_projection(returned)

    async def return_by_qr(self, token: str) -> ReturnTracking:
        async with self._uow() as uow:
            returned = await uow.returns.get_by_qr_token(token)
        if returned is None:
            raise ReturnNotFoundError("Unknown QR code")
        return return_projection(returned)

    async def validate_qr(self, token: str) -> QRValidation:
        async with self._uow() as uow:
            returned = await uow.returns.get_by_qr_token(token)
        if returned is None:
            logger.info("QR validation failed for unknown token")
            return QRValidation(valid=False)
        return QRValidation(valid=returned.is_open, code=returned.code, status=returned.status.value)
