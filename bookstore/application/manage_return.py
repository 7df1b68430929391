"""Return state machine use cases.

Each one loads the return (and its order when quantities held on the order
have to move), applies a single aggregate transition and saves both.
"""
import logging

from pydantic import BaseModel

from bookstore.application.side_effects import enqueue_history, enqueue_notification
from bookstore.domain.exceptions import OrderNotFoundError, ReturnNotFoundError
from bookstore.domain.history import Actor
from bookstore.domain.order import Order
from bookstore.domain.returns import (
    DocumentKind,
    InspectionOutcome,
    ReceiptData,
    Return,
    ReturnStatus,
)


logger = logging.getLogger(__name__)


async def load_return(uow, code: str, for_update: bool = True) -> Return:
    returned = await uow.returns.get_by_code(code, for_update=for_update)
    if returned is None:
        raise ReturnNotFoundError(f"Return {code} not found")
    return returned


async def load_order_of(uow, returned: Return) -> Order:
    order = await uow.orders.get_by_id(returned.order_id, for_update=True)
    if order is None:
        raise OrderNotFoundError(f"Order {returned.order_number} of return {returned.code} not found")
    return order


async def release_on_order(uow, returned: Return, actor: Actor, reason: str) -> Order:
    """Frees the quantities this return was holding on its order."""
    order = await load_order_of(uow, returned)
    order.release_return_reservation(returned.quantities_by_order_item(), returned.code, actor, reason)
    await uow.orders.save(order)
    await enqueue_history(uow, "order", order)
    return order


async def save_return(uow, returned: Return, kind: str | None = None, message: str = "", data: dict | None = None) -> None:
    await uow.returns.save(returned)
    await enqueue_history(uow, "return", returned)
    if kind:
        await enqueue_notification(
            uow,
            kind=kind,
            user_id=returned.customer_id,
            reference_id=returned.id,
            message=message,
            data={"code": returned.code, "status": returned.status.value, **(data or {})},
        )


class ApproveReturnDTO(BaseModel):
    code: str
    actor: Actor
    notes: str = ""


class ApproveReturnUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: ApproveReturnDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.approve(data.actor, data.notes)
            returned.add_communication(
                "aprobacion", "Return approved",
                f"Ship the items before {returned.shipping_deadline:%Y-%m-%d}", data.actor,
            )
            await save_return(
                uow, returned, "devolucion_aprobada",
                f"Your return {returned.code} was approved. Ship it before {returned.shipping_deadline:%Y-%m-%d}",
                {"shipping_deadline": returned.shipping_deadline.isoformat(), "qr_token": returned.qr.token},
            )
            await uow.commit()
        logger.info(f"Return {returned.code} approved by {data.actor.id}")
        return returned


class RejectReturnDTO(BaseModel):
    code: str
    actor: Actor
    reason: str


class RejectReturnUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: RejectReturnDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.reject(data.actor, data.reason)
            await release_on_order(uow, returned, data.actor, f"Return {returned.code} rejected")
            await save_return(
                uow, returned, "devolucion_rechazada",
                f"Your return {returned.code} was rejected: {data.reason}",
                {"reason": data.reason},
            )
            await uow.commit()
        logger.info(f"Return {returned.code} rejected by {data.actor.id}: {data.reason}")
        return returned


class MarkReturnInTransitDTO(BaseModel):
    code: str
    actor: Actor
    carrier: str = ""
    tracking_number: str


class MarkReturnInTransitUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: MarkReturnInTransitDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.mark_in_transit(data.actor, data.carrier, data.tracking_number)
            await save_return(uow, returned)
            await uow.commit()
        logger.info(f"Return {returned.code} shipped by customer, tracking {data.tracking_number}")
        return returned


class ReceiveReturnDTO(BaseModel):
    code: str
    actor: Actor
    receipt: ReceiptData = ReceiptData()


class ReceiveReturnUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: ReceiveReturnDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.mark_received(data.actor, data.receipt)
            await save_return(uow, returned)
            await uow.commit()
        logger.info(f"Return {returned.code} received, inspection started")
        return returned


class InspectReturnItemDTO(BaseModel):
    code: str
    item_id: str
    outcome: InspectionOutcome
    actor: Actor
    notes: str = ""
    refund_percent: int | None = None


class InspectReturnItemUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: InspectReturnItemDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            item = returned.inspect_item(
                data.item_id, data.outcome, data.actor, notes=data.notes, refund_percent=data.refund_percent,
            )
            logger.info(
                f"Return {returned.code} item {item.id} inspected: {data.outcome.value}, "
                f"refund {item.refund_amount}"
            )

            if returned.status == ReturnStatus.CLOSED:
                await release_on_order(uow, returned, data.actor, f"Return {returned.code} closed after inspection")

            if returned.status in (ReturnStatus.REFUND_APPROVED, ReturnStatus.CLOSED):
                await save_return(
                    uow, returned, "resultado_inspeccion",
                    f"Inspection of return {returned.code} finished. "
                    f"Approved refund: {returned.totals.approved_amount}",
                    {"approved_amount": returned.totals.approved_amount},
                )
            else:
                await save_return(uow, returned)
            await uow.commit()
        return returned


class CancelReturnDTO(BaseModel):
    code: str
    actor: Actor
    reason: str = ""


class CancelReturnUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: CancelReturnDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.cancel(data.actor, data.reason)
            await release_on_order(uow, returned, data.actor, f"Return {returned.code} cancelled")
            await save_return(
                uow, returned, "devolucion_cancelada",
                f"Your return {returned.code} was cancelled",
                {"reason": returned.cancellation_reason},
            )
            await uow.commit()
        logger.info(f"Return {returned.code} cancelled by {data.actor.role.value} {data.actor.id}")
        return returned


class AddReturnDocumentDTO(BaseModel):
    code: str
    actor: Actor
    kind: DocumentKind
    url: str
    filename: str = ""


class AddReturnDocumentUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: AddReturnDocumentDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.add_document(data.kind, data.url, data.actor, filename=data.filename)
            await save_return(uow, returned)
            await uow.commit()
        logger.info(f"Document {data.kind.value} attached to return {returned.code}")
        return returned
