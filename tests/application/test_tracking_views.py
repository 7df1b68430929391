"""Tests for public tracking projections and the ledger entry use cases."""

import pytest

from bookstore.application.create_return import CreateReturnDTO, CreateReturnUseCase
from bookstore.application.ledger import (
    DepositFundsDTO,
    DepositFundsUseCase,
    RegisterStockEntryDTO,
    RegisterStockEntryUseCase,
)
from bookstore.application.manage_return import (
    CancelReturnDTO,
    CancelReturnUseCase,
    RejectReturnDTO,
    RejectReturnUseCase,
)
from bookstore.application.tracking import TrackingUseCase
from bookstore.domain.balance import BalanceMovementKind, InstrumentKind
from bookstore.domain.exceptions import (
    ConcurrencyError,
    OrderNotFoundError,
    PaymentInstrumentError,
    PermissionDeniedError,
    ReturnNotFoundError,
    ValidationError,
)
from bookstore.domain.inventory import MovementType
from bookstore.domain.returns import ReturnReason, ReturnSelection
from tests.factories import ADMIN, CUSTOMER, OTHER_CUSTOMER, make_instrument, make_stock


async def _return_for(uow, order):
    return await CreateReturnUseCase(uow, "http://testserver")(CreateReturnDTO(
        order_number=order.number,
        items=[ReturnSelection(item_id=order.items[0].id, quantity=1, reason=ReturnReason.WRONG_PRODUCT)],
        actor=CUSTOMER,
    ))


class TestOrderTracking:
    async def test_projection_hides_private_data(self, place_order, deliver, uow):
        order = await deliver(await place_order())
        tracking = await TrackingUseCase(uow).order_by_tracking_number("TRK-123")

        assert tracking.number == order.number
        assert tracking.status == "entregado"
        assert tracking.carrier == "Servientrega"
        assert tracking.items[0].title == order.items[0].book.title
        assert [e.event for e in tracking.events] == [e.event for e in order.history]
        dumped = tracking.model_dump()
        for private in ("customer_id", "address", "payment", "internal_notes"):
            assert private not in dumped
        assert all("actor_id" not in event for event in dumped["events"])

    async def test_unknown_tracking_number(self, uow):
        with pytest.raises(OrderNotFoundError):
            await TrackingUseCase(uow).order_by_tracking_number("TRK-404")


class TestReturnTracking:
    async def test_by_code_and_by_qr(self, place_order, deliver, uow):
        order = await deliver(await place_order())
        returned = await _return_for(uow, order)
        tracking = TrackingUseCase(uow)

        by_code = await tracking.return_by_code(returned.code)
        by_qr = await tracking.return_by_qr(returned.qr.token)
        assert by_code == by_qr
        assert by_code.order_number == order.number
        assert by_code.status == "solicitada"
        assert by_code.items[0].quantity == 1

    async def test_qr_validation(self, place_order, deliver, uow):
        order = await deliver(await place_order())
        returned = await _return_for(uow, order)
        tracking = TrackingUseCase(uow)

        valid = await tracking.validate_qr(returned.qr.token)
        assert valid.valid
        assert valid.code == returned.code

        await CancelReturnUseCase(uow)(CancelReturnDTO(code=returned.code, actor=CUSTOMER))
        assert not (await tracking.validate_qr(returned.qr.token)).valid
        assert (await tracking.validate_qr("QR-nothing")).model_dump() == {"valid": False, "code": None, "status": None}

    async def test_rejected_return_qr_is_not_valid(self, place_order, deliver, uow):
        order = await deliver(await place_order())
        returned = await _return_for(uow, order)
        await RejectReturnUseCase(uow)(RejectReturnDTO(code=returned.code, actor=ADMIN, reason="Outside policy"))

        validation = await TrackingUseCase(uow).validate_qr(returned.qr.token)

        assert not validation.valid
        assert validation.status == "rechazada"

    async def test_unknown_code(self, uow):
        with pytest.raises(ReturnNotFoundError):
            await TrackingUseCase(uow).return_by_code("DEV-20260101-AAAAAA")


class TestDeposits:
    async def test_customer_deposits_into_own_card(self, seed, uow):
        await seed(instruments=[make_instrument()])
        instrument, movement = await DepositFundsUseCase(uow)(DepositFundsDTO(
            instrument_id="card-001", amount=3_000_000, actor=CUSTOMER,
        ))
        assert instrument.balance == 3_000_000
        assert movement.kind == BalanceMovementKind.DEPOSIT
        async with uow() as u:
            assert (await u.instruments.get("card-001")).balance == 3_000_000

    async def test_adjustments_are_for_admins(self, seed, uow):
        await seed(instruments=[make_instrument(balance=1_000_000)])
        with pytest.raises(PermissionDeniedError):
            await DepositFundsUseCase(uow)(DepositFundsDTO(
                instrument_id="card-001", amount=-500_000, actor=CUSTOMER, memo="x", adjustment=True,
            ))
        instrument, _ = await DepositFundsUseCase(uow)(DepositFundsDTO(
            instrument_id="card-001", amount=-500_000, actor=ADMIN, memo="Chargeback", adjustment=True,
        ))
        assert instrument.balance == 500_000

    async def test_other_customers_card(self, seed, uow):
        await seed(instruments=[make_instrument()])
        with pytest.raises(PermissionDeniedError):
            await DepositFundsUseCase(uow)(DepositFundsDTO(
                instrument_id="card-001", amount=1000, actor=OTHER_CUSTOMER,
            ))

    async def test_credit_cards_take_no_deposits(self, seed, uow):
        await seed(instruments=[make_instrument(kind=InstrumentKind.CREDIT)])
        with pytest.raises(PaymentInstrumentError):
            await DepositFundsUseCase(uow)(DepositFundsDTO(instrument_id="card-001", amount=1000, actor=CUSTOMER))


class TestStockEntries:
    async def test_first_entry_creates_record(self, uow):
        record, movement = await RegisterStockEntryUseCase(uow)(RegisterStockEntryDTO(
            product_id="book-003", quantity=4, title="Pedro Páramo", actor=ADMIN,
        ))
        assert record.total == 4
        assert movement.type == MovementType.ENTRY

        record, _ = await RegisterStockEntryUseCase(uow)(RegisterStockEntryDTO(
            product_id="book-003", quantity=6, actor=ADMIN,
        ))
        assert record.total == 10
        async with uow() as u:
            saved = await u.inventory.get("book-003")
        assert [m.sequence for m in saved.movements] == [1, 2]
        assert saved.version == 2

    async def test_first_entry_needs_title(self, uow):
        with pytest.raises(ValidationError):
            await RegisterStockEntryUseCase(uow)(RegisterStockEntryDTO(product_id="book-003", quantity=4, actor=ADMIN))

    async def test_staff_only(self, uow):
        with pytest.raises(PermissionDeniedError):
            await RegisterStockEntryUseCase(uow)(RegisterStockEntryDTO(
                product_id="book-003", quantity=4, title="x", actor=CUSTOMER,
            ))


class TestOptimisticVersions:
    async def test_stale_inventory_write_is_refused(self, seed, uow):
        await seed(stock=[make_stock("book-001", 5)])
        async with uow() as u:
            first = await u.inventory.get("book-001")
        async with uow() as u:
            second = await u.inventory.get("book-001")

        async with uow() as u:
            first.register_entry(1, ADMIN)
            await u.inventory.save(first)
            await u.commit()

        with pytest.raises(ConcurrencyError):
            async with uow() as u:
                second.register_entry(2, ADMIN)
                await u.inventory.save(second)
                await u.commit()

        async with uow() as u:
            assert (await u.inventory.get("book-001")).total == 6

    async def test_stale_balance_write_is_refused(self, seed, uow):
        await seed(instruments=[make_instrument(balance=1000)])
        async with uow() as u:
            first = await u.instruments.get("card-001")
        async with uow() as u:
            second = await u.instruments.get("card-001")

        async with uow() as u:
            first.withdraw(600, CUSTOMER)
            await u.instruments.save(first)
            await u.commit()

        with pytest.raises(ConcurrencyError):
            async with uow() as u:
                second.withdraw(600, CUSTOMER)
                await u.instruments.save(second)
                await u.commit()

        async with uow() as u:
            assert (await u.instruments.get("card-001")).balance == 400
