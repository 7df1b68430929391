"""Tests for the checkout orchestration against a real database."""

import pytest

from bookstore.application.checkout import CheckoutDTO, CheckoutUseCase
from bookstore.application.side_effects import AUDIT_EVENT, NOTIFICATION_EVENT
from bookstore.domain.balance import BalanceMovementKind, InstrumentKind
from bookstore.domain.cart import CartLine
from bookstore.domain.exceptions import (
    EmptyCartError,
    ExternalProcessorError,
    InsufficientFundsError,
    InsufficientStockError,
    InstrumentNotFoundError,
    PaymentInstrumentError,
    StockShortfall,
    StorageError,
)
from bookstore.domain.inventory import MovementType
from bookstore.domain.order import OrderStatus, PaymentStatus
from bookstore.infrastructure.repositories import SQLAlchemyCartRepository
from tests.factories import (
    CUSTOMER_ID,
    HOME,
    PICKUP,
    SHIPPING_FEE,
    UNIT_PRICE,
    make_cart,
    make_instrument,
    make_stock,
)


def _checkout(uow, catalog, payments, instrument_id="card-001", shipping=HOME):
    use_case = CheckoutUseCase(uow, catalog, payments, SHIPPING_FEE)
    return use_case(CheckoutDTO(customer_id=CUSTOMER_ID, instrument_id=instrument_id, shipping=shipping))


async def _state(uow):
    async with uow() as u:
        return {
            "instrument": await u.instruments.get("card-001"),
            "book": await u.inventory.get("book-001"),
            "cart": await u.carts.load_active(CUSTOMER_ID),
            "orders": await u.orders.list_by_customer(CUSTOMER_ID),
            "outbox": await u.outbox.get_pending(limit=200),
        }


class TestCheckoutHappyPath:
    async def test_order_created_and_everything_moves_once(self, place_order, uow):
        order = await place_order()

        assert order.status == OrderStatus.PREPARING
        assert order.payment.status == PaymentStatus.APPROVED
        assert order.totals.final_total == 2 * UNIT_PRICE + SHIPPING_FEE == 10_700_000
        assert order.stock_confirmed

        state = await _state(uow)
        instrument = state["instrument"]
        assert instrument.balance == 20_000_000 - 10_700_000
        purchases = [m for m in instrument.movements if m.kind == BalanceMovementKind.PURCHASE]
        assert len(purchases) == 1
        assert purchases[0].order_id == order.id

        book = state["book"]
        assert (book.total, book.reserved) == (8, 0)
        assert [m.type for m in book.movements[1:]] == [MovementType.RESERVATION, MovementType.SALE_CONFIRMATION]

        assert state["cart"] is None
        assert [o.number for o in state["orders"]] == [order.number]

    async def test_saved_order_matches_returned_order(self, place_order, uow):
        order = await place_order()
        async with uow() as u:
            saved = await u.orders.get_by_number(order.number)
        assert saved.id == order.id
        assert saved.totals == order.totals
        assert saved.version == 1
        assert [e.event for e in saved.history] == [e.event for e in order.history]

    async def test_confirmation_and_audit_queued(self, place_order, uow):
        order = await place_order()
        pending = (await _state(uow))["outbox"]

        notifications = [e for e in pending if e["event_type"] == NOTIFICATION_EVENT]
        assert len(notifications) == 1
        assert notifications[0]["event_data"]["kind"] == "compra_confirmada"
        assert notifications[0]["event_data"]["user_id"] == CUSTOMER_ID

        actions = [e["event_data"]["action"] for e in pending if e["event_type"] == AUDIT_EVENT]
        assert "creada" in actions
        assert "preparando" in actions
        assert "balance.compra" in actions
        assert actions.count("inventory.venta") == 1
        assert order.pull_events() == []

    async def test_store_pickup_has_no_shipping_fee(self, place_order):
        order = await place_order(shipping=PICKUP)
        assert order.totals.final_total == 2 * UNIT_PRICE

    async def test_credit_card_is_captured_externally(self, place_order, processor, uow):
        order = await place_order(kind=InstrumentKind.CREDIT)

        assert processor.captures == [("card-001", 10_700_000, f"capture_{order.id}")]
        assert order.payment.reference == "CAP-1"
        assert order.payment.method == InstrumentKind.CREDIT
        instrument = (await _state(uow))["instrument"]
        assert instrument.movements == []


class TestCheckoutRejections:
    async def test_insufficient_stock_changes_nothing(self, seed, uow, catalog, payments):
        cart = make_cart([
            CartLine(product_id="book-001", quantity=2, unit_price=UNIT_PRICE),
            CartLine(product_id="book-002", quantity=1, unit_price=UNIT_PRICE),
        ])
        await seed(cart=cart, stock=[make_stock("book-001", 1)], instruments=[make_instrument(balance=20_000_000)])

        with pytest.raises(InsufficientStockError) as exc:
            await _checkout(uow, catalog, payments)

        by_product = {s.product_id: s for s in exc.value.shortfalls}
        assert by_product["book-001"].diagnosis == StockShortfall.PARTIAL
        assert (by_product["book-001"].requested, by_product["book-001"].available) == (2, 1)
        assert by_product["book-002"].diagnosis == StockShortfall.NO_STOCK

        state = await _state(uow)
        assert state["instrument"].balance == 20_000_000
        assert len(state["instrument"].movements) == 1
        assert (state["book"].total, state["book"].reserved) == (1, 0)
        assert len(state["book"].movements) == 1
        assert state["cart"] is not None
        assert state["orders"] == []
        assert state["outbox"] == []

    async def test_insufficient_funds_rolls_back_reservation(self, seed, uow, catalog, payments):
        await seed(cart=make_cart(), stock=[make_stock("book-001", 10)], instruments=[make_instrument(balance=1_000_000)])

        with pytest.raises(InsufficientFundsError):
            await _checkout(uow, catalog, payments)

        state = await _state(uow)
        assert state["instrument"].balance == 1_000_000
        assert state["book"].reserved == 0
        assert state["orders"] == []

    async def test_empty_cart(self, seed, uow, catalog, payments):
        await seed(instruments=[make_instrument(balance=1_000_000)])
        with pytest.raises(EmptyCartError):
            await _checkout(uow, catalog, payments)

    async def test_unknown_instrument(self, seed, uow, catalog, payments):
        await seed(cart=make_cart(), stock=[make_stock("book-001", 10)])
        with pytest.raises(InstrumentNotFoundError):
            await _checkout(uow, catalog, payments, instrument_id="card-404")
        assert (await _state(uow))["book"].reserved == 0

    async def test_someone_elses_instrument(self, seed, uow, catalog, payments):
        await seed(
            cart=make_cart(),
            stock=[make_stock("book-001", 10)],
            instruments=[make_instrument(balance=20_000_000, customer_id="cust-999")],
        )
        with pytest.raises(PaymentInstrumentError):
            await _checkout(uow, catalog, payments)

    async def test_processor_rejection_is_audited(self, seed, uow, catalog, payments, processor):
        await seed(cart=make_cart(), stock=[make_stock("book-001", 10)], instruments=[make_instrument(kind=InstrumentKind.CREDIT)])
        processor.fail_capture = True

        with pytest.raises(ExternalProcessorError):
            await _checkout(uow, catalog, payments)

        state = await _state(uow)
        assert state["orders"] == []
        assert state["book"].reserved == 0
        assert state["cart"] is not None
        audits = [e["event_data"] for e in state["outbox"] if e["event_type"] == AUDIT_EVENT]
        assert len(audits) == 1
        assert audits[0]["action"] == "order.payment_rejected"
        assert audits[0]["data"]["reason"] == "Card declined"
        assert audits[0]["data"]["status"] == OrderStatus.PAYMENT_FAILED.value
        assert processor.refunds == []


class TestCheckoutCompensation:
    async def test_external_capture_refunded_when_commit_fails(self, seed, uow, catalog, payments, processor, monkeypatch):
        await seed(cart=make_cart(), stock=[make_stock("book-001", 10)], instruments=[make_instrument(kind=InstrumentKind.CREDIT)])

        async def broken_clear(self, cart_id):
            raise StorageError("Storage error: OperationalError")

        monkeypatch.setattr(SQLAlchemyCartRepository, "clear", broken_clear)

        with pytest.raises(StorageError):
            await _checkout(uow, catalog, payments)

        assert len(processor.captures) == 1
        assert processor.refunds == [("card-001", 10_700_000, "compensate_CAP-1")]
        state = await _state(uow)
        assert state["orders"] == []
        assert state["book"].total == 10

    async def test_debit_charge_rolls_back_with_the_order(self, seed, uow, catalog, payments, processor, monkeypatch):
        await seed(cart=make_cart(), stock=[make_stock("book-001", 10)], instruments=[make_instrument(balance=20_000_000)])

        async def broken_clear(self, cart_id):
            raise StorageError("Storage error: OperationalError")

        monkeypatch.setattr(SQLAlchemyCartRepository, "clear", broken_clear)

        with pytest.raises(StorageError):
            await _checkout(uow, catalog, payments)

        assert processor.refunds == []
        state = await _state(uow)
        assert state["instrument"].balance == 20_000_000
        assert state["orders"] == []
