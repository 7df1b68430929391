"""Tests for the inventory and balance ledgers."""

from datetime import timezone, datetime

import pytest

from bookstore.domain.balance import BalanceMovementKind, InstrumentKind
from bookstore.domain.exceptions import (
    InsufficientFundsError,
    InsufficientStockError,
    PaymentInstrumentError,
    StockShortfall,
    ValidationError,
)
from bookstore.domain.inventory import InventoryRecord, MovementType, StockStatus
from tests.factories import ADMIN, CUSTOMER, make_instrument, make_stock


class TestInventoryMovements:
    def test_entry_increases_total(self):
        record = make_stock(quantity=10)
        assert (record.total, record.reserved, record.available) == (10, 0, 10)
        movement = record.movements[0]
        assert movement.type == MovementType.ENTRY
        assert movement.before.total == 0
        assert movement.after.total == 10

    def test_reserve_then_confirm_sale(self):
        record = make_stock(quantity=10)
        record.reserve(3, CUSTOMER, reservation_id="order-001", order_id="order-001")
        assert (record.total, record.reserved, record.available) == (10, 3, 7)

        record.confirm_sale(3, CUSTOMER, order_id="order-001", reservation_id="order-001")
        assert (record.total, record.reserved, record.available) == (7, 0, 7)

    def test_release_returns_units_to_available(self):
        record = make_stock(quantity=5)
        record.reserve(2, CUSTOMER, reservation_id="r-1")
        record.release(2, CUSTOMER, reservation_id="r-1")
        assert (record.total, record.reserved) == (5, 0)

    def test_release_more_than_reserved_rejected(self):
        record = make_stock(quantity=5)
        record.reserve(1, CUSTOMER, reservation_id="r-1")
        with pytest.raises(ValidationError):
            record.release(2, CUSTOMER, reservation_id="r-1")
        assert record.reserved == 1

    def test_confirm_more_than_reserved_rejected(self):
        record = make_stock(quantity=5)
        with pytest.raises(ValidationError):
            record.confirm_sale(1, CUSTOMER, order_id="order-001")

    def test_credits_add_to_total(self):
        record = make_stock(quantity=2)
        record.credit_return(1, ADMIN, return_id="return-001")
        record.credit_cancellation(2, ADMIN, order_id="order-001")
        assert record.total == 5
        assert [m.type for m in record.movements[1:]] == [
            MovementType.RETURN_CREDIT,
            MovementType.CANCELLATION_CREDIT,
        ]

    def test_non_positive_quantities_rejected(self):
        record = make_stock(quantity=2)
        with pytest.raises(ValidationError):
            record.register_entry(0, ADMIN)
        with pytest.raises(ValidationError):
            record.credit_return(-1, ADMIN, return_id="return-001")

    def test_sequences_are_consecutive(self):
        record = make_stock(quantity=10)
        record.reserve(2, CUSTOMER, reservation_id="r-1")
        record.release(1, CUSTOMER, reservation_id="r-1")
        record.confirm_sale(1, CUSTOMER, order_id="order-001")
        assert [m.sequence for m in record.movements] == [1, 2, 3, 4]
        for previous, current in zip(record.movements, record.movements[1:]):
            assert previous.after == current.before

    def test_stock_status(self):
        assert make_stock(quantity=10).status == StockStatus.AVAILABLE
        assert make_stock(quantity=3).status == StockStatus.LOW
        assert InventoryRecord(product_id="book-001", title="x").status == StockStatus.OUT_OF_STOCK


class TestStockShortfalls:
    def test_partial(self):
        record = make_stock(quantity=2)
        with pytest.raises(InsufficientStockError) as exc:
            record.reserve(3, CUSTOMER, reservation_id="r-1")
        shortfall = exc.value.shortfalls[0]
        assert shortfall.diagnosis == StockShortfall.PARTIAL
        assert (shortfall.requested, shortfall.available) == (3, 2)
        assert record.reserved == 0
        assert len(record.movements) == 1

    def test_no_stock(self):
        record = InventoryRecord(product_id="book-001", title="Rayuela")
        assert record.shortfall_for(1).diagnosis == StockShortfall.NO_STOCK

    def test_reserved_by_others(self):
        record = make_stock(quantity=2)
        record.reserve(2, CUSTOMER, reservation_id="r-1")
        shortfall = record.shortfall_for(1)
        assert shortfall.diagnosis == StockShortfall.RESERVED_BY_OTHERS
        assert shortfall.as_dict()["reserved"] == 2

    def test_enough_stock_has_no_shortfall(self):
        assert make_stock(quantity=3).shortfall_for(3) is None


class TestBalanceLedger:
    def test_deposit_and_purchase(self):
        instrument = make_instrument(balance=20_000_000)
        movement = instrument.charge_purchase(10_700_000, CUSTOMER, order_id="order-001")
        assert instrument.balance == 9_300_000
        assert movement.kind == BalanceMovementKind.PURCHASE
        assert movement.amount == -10_700_000
        assert (movement.balance_before, movement.balance_after) == (20_000_000, 9_300_000)

    def test_overdraw_rejected_without_clamping(self):
        instrument = make_instrument(balance=1000)
        with pytest.raises(InsufficientFundsError) as exc:
            instrument.withdraw(1500, CUSTOMER)
        assert (exc.value.available, exc.value.required) == (1000, 1500)
        assert instrument.balance == 1000
        assert len(instrument.movements) == 1

    def test_balance_equals_fold_of_movements(self):
        instrument = make_instrument(balance=5000)
        instrument.withdraw(1200, CUSTOMER)
        instrument.charge_purchase(800, CUSTOMER, order_id="order-001")
        instrument.credit_refund(800, ADMIN, order_id="order-001")
        instrument.adjust(-300, ADMIN, "Bank fee")
        assert instrument.balance == 3500
        assert instrument.folded_balance() == instrument.balance
        assert [m.sequence for m in instrument.movements] == [1, 2, 3, 4, 5]

    def test_credit_instruments_hold_no_balance(self):
        instrument = make_instrument(kind=InstrumentKind.CREDIT)
        with pytest.raises(PaymentInstrumentError):
            instrument.deposit(1000, ADMIN)
        instrument.ensure_funds(10**12)

    def test_ensure_funds(self):
        instrument = make_instrument(balance=100)
        instrument.ensure_funds(100)
        with pytest.raises(InsufficientFundsError):
            instrument.ensure_funds(101)

    def test_amounts_must_be_positive(self):
        instrument = make_instrument(balance=100)
        with pytest.raises(ValidationError):
            instrument.deposit(0, ADMIN)
        with pytest.raises(ValidationError):
            instrument.withdraw(-5, CUSTOMER)

    def test_adjustment_needs_memo_and_amount(self):
        instrument = make_instrument(balance=100)
        with pytest.raises(ValidationError):
            instrument.adjust(50, ADMIN, "")
        with pytest.raises(ValidationError):
            instrument.adjust(0, ADMIN, "noop")
        with pytest.raises(InsufficientFundsError):
            instrument.adjust(-200, ADMIN, "Chargeback")

    def test_refund_movement_lookup(self):
        instrument = make_instrument(balance=100)
        instrument.credit_refund(50, ADMIN, order_id="order-001", return_id="return-001")
        instrument.credit_refund(70, ADMIN, order_id="order-002")
        assert instrument.refund_movement_for(return_id="return-001").amount == 50
        assert instrument.refund_movement_for(order_id="order-002").amount == 70
        assert instrument.refund_movement_for(order_id="order-001") is None
        assert instrument.refund_movement_for(return_id="return-999") is None


class TestInstrumentUsability:
    def test_owner_only(self):
        instrument = make_instrument()
        instrument.ensure_usable_by("cust-001")
        with pytest.raises(PaymentInstrumentError):
            instrument.ensure_usable_by("cust-999")

    def test_inactive(self):
        instrument = make_instrument()
        instrument.active = False
        with pytest.raises(PaymentInstrumentError):
            instrument.ensure_usable_by("cust-001")

    def test_valid_through_expiry_month(self):
        instrument = make_instrument()
        instrument.expiry_year, instrument.expiry_month = 2025, 6
        assert not instrument.is_expired(datetime(2025, 6, 30, tzinfo=timezone.utc))
        assert instrument.is_expired(datetime(2025, 7, 1, tzinfo=timezone.utc))
        assert instrument.info(datetime(2025, 7, 1, tzinfo=timezone.utc)).expired
