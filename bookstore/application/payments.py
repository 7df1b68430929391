import logging
from datetime import datetime

from pydantic import BaseModel

from bookstore.application.interfaces import PaymentProcessor
from bookstore.application.side_effects import enqueue_movement
from bookstore.domain.balance import BalanceMovement, PaymentInstrument
from bookstore.domain.exceptions import ExternalProcessorError, InstrumentNotFoundError
from bookstore.domain.history import Actor


logger = logging.getLogger(__name__)


class PaymentReceipt(BaseModel):
    """Result of moving money through an instrument."""
    instrument_id: str
    amount: int
    reference: str
    external: bool
    movement: BalanceMovement | None = None


class PaymentInstrumentService:
    """Single write path for money: the Balance Ledger for debit
    instruments, the external processor for credit instruments."""

    def __init__(self, processor: PaymentProcessor):
        self._processor = processor

    async def validate(self, uow, instrument_id: str, customer_id: str, now: datetime | None = None) -> PaymentInstrument:
        instrument = await uow.instruments.get(instrument_id, for_update=True)
        if instrument is None:
            raise InstrumentNotFoundError(f"Payment instrument {instrument_id} not found")
        instrument.ensure_usable_by(customer_id, now)
        return instrument

    async def withdraw(self, uow, instrument: PaymentInstrument, amount: int, memo: str, order_id: str, actor: Actor) -> PaymentReceipt:
        if instrument.is_debit:
            movement = instrument.charge_purchase(amount, actor, order_id=order_id, memo=memo)
            await uow.instruments.save(instrument)
            await enqueue_movement(uow, "balance", instrument.id, movement, actor)
            logger.info(f"Debited {amount} from instrument {instrument.id} for order {order_id}")
            return PaymentReceipt(
                instrument_id=instrument.id,
                amount=amount,
                reference=f"BAL-{instrument.id[:8]}-{movement.sequence}",
                external=False,
                movement=movement,
            )

        reference = await self._processor.capture(
            instrument_id=instrument.id,
            amount=amount,
            reference=order_id,
            idempotency_key=f"capture_{order_id}",
        )
        logger.info(f"Captured {amount} on instrument {instrument.id} for order {order_id}: {reference}")
        return PaymentReceipt(instrument_id=instrument.id, amount=amount, reference=reference, external=True)

    async def credit(
        self,
        uow,
        instrument: PaymentInstrument,
        amount: int,
        memo: str,
        actor: Actor,
        order_id: str | None = None,
        return_id: str | None = None,
        external: bool = False,
    ) -> PaymentReceipt:
        if instrument.is_debit and not external:
            existing = instrument.refund_movement_for(return_id=return_id, order_id=order_id)
            if existing is not None:
                logger.warning(
                    f"Instrument {instrument.id} already credited for "
                    f"{return_id or order_id}, skipping duplicate credit"
                )
                movement = existing
            else:
                movement = instrument.credit_refund(amount, actor, memo=memo, order_id=order_id, return_id=return_id)
                await uow.instruments.save(instrument)
                await enqueue_movement(uow, "balance", instrument.id, movement, actor)
                logger.info(f"Credited {amount} to instrument {instrument.id}")
            return PaymentReceipt(
                instrument_id=instrument.id,
                amount=movement.amount,
                reference=f"BAL-{instrument.id[:8]}-{movement.sequence}",
                external=False,
                movement=movement,
            )

        key = return_id or order_id
        reference = await self._processor.refund(
            instrument_id=instrument.id,
            amount=amount,
            reference=key,
            idempotency_key=f"refund_{key}",
        )
        logger.info(f"Refunded {amount} to instrument {instrument.id} through processor: {reference}")
        return PaymentReceipt(instrument_id=instrument.id, amount=amount, reference=reference, external=True)

    async def compensate(self, receipt: PaymentReceipt, reason: str) -> bool:
        """Gives back an external capture whose unit of work did not commit."""
        if not receipt.external:
            return True
        try:
            await self._processor.refund(
                instrument_id=receipt.instrument_id,
                amount=receipt.amount,
                reference=receipt.reference,
                idempotency_key=f"compensate_{receipt.reference}",
            )
            logger.warning(f"Compensated capture {receipt.reference} ({reason})")
            return True
        except ExternalProcessorError as e:
            logger.error(f"Compensation of capture {receipt.reference} failed, manual action required: {e}")
            return False
