import logging

from pydantic import BaseModel

from bookstore.application.side_effects import enqueue_movement
from bookstore.domain.balance import BalanceMovement, PaymentInstrument
from bookstore.domain.exceptions import InstrumentNotFoundError, PermissionDeniedError, ValidationError
from bookstore.domain.history import Actor
from bookstore.domain.inventory import InventoryRecord, StockMovement


logger = logging.getLogger(__name__)


class DepositFundsDTO(BaseModel):
    instrument_id: str
    amount: int
    actor: Actor
    memo: str = ""
    adjustment: bool = False


class DepositFundsUseCase:
    """Deposits into a debit instrument, or applies a signed manual adjustment."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: DepositFundsDTO) -> tuple[PaymentInstrument, BalanceMovement]:
        if data.adjustment and not data.actor.is_admin:
            raise PermissionDeniedError("Only administrators may adjust balances")

        async with self._uow() as uow:
            instrument = await uow.instruments.get(data.instrument_id, for_update=True)
            if instrument is None:
                raise InstrumentNotFoundError(f"Payment instrument {data.instrument_id} not found")
            if not data.actor.is_admin and data.actor.id != instrument.customer_id:
                raise PermissionDeniedError(f"Instrument {instrument.id} does not belong to {data.actor.id}")

            if data.adjustment:
                movement = instrument.adjust(data.amount, data.actor, data.memo)
            else:
                movement = instrument.deposit(data.amount, data.actor, data.memo or "Deposit")
            await uow.instruments.save(instrument)
            await enqueue_movement(uow, "balance", instrument.id, movement, data.actor)
            await uow.commit()

        logger.info(
            f"Balance of instrument {instrument.id}: {movement.kind.value} {movement.amount}, "
            f"now {instrument.balance}"
        )
        return instrument, movement


class RegisterStockEntryDTO(BaseModel):
    product_id: str
    quantity: int
    actor: Actor
    title: str = ""
    notes: str = ""


class RegisterStockEntryUseCase:
    """Purchase entry; creates the inventory record on the first entry of a title."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, data: RegisterStockEntryDTO) -> tuple[InventoryRecord, StockMovement]:
        if not data.actor.is_admin:
            raise PermissionDeniedError("Only staff may register stock entries")

        async with self._uow() as uow:
            record = await uow.inventory.get(data.product_id, for_update=True)
            created = record is None
            if created:
                if not data.title:
                    raise ValidationError(f"A title is required for the first entry of {data.product_id}")
                record = InventoryRecord(product_id=data.product_id, title=data.title)
            movement = record.register_entry(data.quantity, data.actor, data.notes)
            if created:
                await uow.inventory.add(record)
            else:
                await uow.inventory.save(record)
            await enqueue_movement(uow, "inventory", record.product_id, movement, data.actor)
            await uow.commit()

        logger.info(f"Stock entry of {data.quantity} for {record.product_id}, available {record.available}")
        return record, movement
