import logging

from pydantic import BaseModel

from bookstore.application.manage_return import load_order_of, load_return, save_return
from bookstore.application.payments import PaymentInstrumentService
from bookstore.application.side_effects import enqueue_audit, enqueue_history, enqueue_movement
from bookstore.domain.exceptions import (
    DomainException,
    InstrumentNotFoundError,
    InvalidStateError,
    PermissionDeniedError,
    ValidationError,
)
from bookstore.domain.history import Actor
from bookstore.domain.returns import RefundMethod, RefundRequest, Return, ReturnStatus


logger = logging.getLogger(__name__)


class ProcessRefundDTO(BaseModel):
    code: str
    actor: Actor
    method: RefundMethod = RefundMethod.ORIGINAL_CARD
    instrument_id: str | None = None
    notes: str = ""


class RetryRefundDTO(BaseModel):
    code: str
    actor: Actor


class _RefundCompletion:
    """Credits the approved amount and closes the return.

    The credit runs in its own unit of work after the return was moved to
    reembolso_procesando. When it fails the return is flagged for retry in a
    separate unit of work and the error is raised to the caller.
    """

    def __init__(self, unit_of_work, payment_service: PaymentInstrumentService):
        self._uow = unit_of_work
        self._payments = payment_service

    async def _complete(self, code: str, actor: Actor) -> Return:
        try:
            async with self._uow() as uow:
                returned = await load_return(uow, code)
                if returned.status != ReturnStatus.REFUND_PROCESSING:
                    raise InvalidStateError("Return", returned.status.value, "complete_refund")
                order = await load_order_of(uow, returned)

                for item in returned.items:
                    if item.refund_amount <= 0:
                        continue
                    record = await uow.inventory.get(item.product_id, for_update=True)
                    if record is None:
                        logger.error(f"Inventory record {item.product_id} missing for return {returned.code}")
                        continue
                    movement = record.credit_return(item.quantity, actor, return_id=returned.id, order_id=order.id)
                    await uow.inventory.save(record)
                    await enqueue_movement(uow, "inventory", record.product_id, movement, actor)

                order.settle_return(returned.settlements(), returned.code, actor)
                await uow.orders.save(order)
                await enqueue_history(uow, "order", order)

                instrument_id = returned.refund.instrument_id or order.payment.instrument_id
                instrument = await uow.instruments.get(instrument_id, for_update=True)
                if instrument is None:
                    raise InstrumentNotFoundError(f"Payment instrument {instrument_id} not found")
                receipt = await self._payments.credit(
                    uow, instrument, returned.totals.approved_amount,
                    memo=f"Refund of return {returned.code}",
                    actor=actor,
                    order_id=order.id,
                    return_id=returned.id,
                    external=returned.refund.method == RefundMethod.TRANSFER,
                )

                returned.complete_refund(actor, reference=receipt.reference)
                await save_return(
                    uow, returned, "reembolso_completado",
                    f"Your refund of {returned.totals.refunded_amount} for return {returned.code} was completed",
                    {"amount": returned.totals.refunded_amount, "reference": receipt.reference},
                )
                await uow.commit()
        except DomainException as e:
            await self._flag_for_retry(code, actor, e)
            raise

        logger.info(
            f"Refund of return {returned.code} completed: {returned.totals.refunded_amount} "
            f"to instrument {instrument_id}"
        )
        return returned

    async def _flag_for_retry(self, code: str, actor: Actor, error: Exception) -> None:
        if isinstance(error, InvalidStateError) and error.operation == "complete_refund":
            return
        async with self._uow() as uow:
            returned = await load_return(uow, code)
            if returned.status != ReturnStatus.REFUND_PROCESSING:
                return
            returned.mark_refund_failed(str(error), actor)
            await save_return(uow, returned)
            await enqueue_audit(
                uow, "return.refund_failed", "return", returned.id, actor,
                {"code": returned.code, "error": str(error), "attempts": returned.refund.attempts},
            )
            await uow.commit()
        logger.error(f"Refund of return {code} failed and needs a retry: {error}")


class ProcessRefundUseCase(_RefundCompletion):
    async def __call__(self, data: ProcessRefundDTO) -> Return:
        if not data.actor.is_admin:
            raise PermissionDeniedError("Only administrators may process refunds")

        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            order = await load_order_of(uow, returned)
            instrument_id = order.payment.instrument_id
            if data.method == RefundMethod.STORE_CREDIT:
                instrument_id = await self._store_credit_instrument(uow, data, returned.customer_id)
            returned.process_refund(
                RefundRequest(
                    method=data.method,
                    instrument_id=instrument_id,
                    reference=f"REF-{returned.code}-{returned.refund.attempts + 1}",
                    notes=data.notes,
                ),
                data.actor,
            )
            await save_return(uow, returned)
            await uow.commit()
        logger.info(f"Refund of return {returned.code} started, amount {returned.totals.approved_amount}")

        return await self._complete(returned.code, data.actor)

    async def _store_credit_instrument(self, uow, data: ProcessRefundDTO, customer_id: str) -> str:
        if not data.instrument_id:
            raise ValidationError("Store credit refunds need a debit instrument to credit")
        instrument = await uow.instruments.get(data.instrument_id)
        if instrument is None:
            raise InstrumentNotFoundError(f"Payment instrument {data.instrument_id} not found")
        if instrument.customer_id != customer_id or not instrument.is_debit:
            raise ValidationError(f"Instrument {data.instrument_id} cannot hold store credit for {customer_id}")
        return instrument.id


class RetryRefundUseCase(_RefundCompletion):
    async def __call__(self, data: RetryRefundDTO) -> Return:
        async with self._uow() as uow:
            returned = await load_return(uow, data.code)
            returned.begin_refund_retry(data.actor)
            await save_return(uow, returned)
            await uow.commit()
        logger.info(f"Retrying refund of return {returned.code}, attempt {returned.refund.attempts}")

        return await self._complete(returned.code, data.actor)
