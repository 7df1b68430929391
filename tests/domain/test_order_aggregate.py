"""Tests for the Order aggregate."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from bookstore.domain.cart import CartLine
from bookstore.domain.exceptions import InvalidStateError, PermissionDeniedError, ValidationError
from bookstore.domain.history import ActorRole, utcnow
from bookstore.domain.order import (
    ItemStatus,
    Order,
    OrderReturnStatus,
    OrderStatus,
    PaymentStatus,
    ReturnSettlement,
    ShipmentData,
    ShippingMode,
    ShippingSelection,
)
from tests.factories import (
    ADMIN,
    BOOKS,
    CUSTOMER,
    OTHER_CUSTOMER,
    PICKUP,
    SHIPPING_FEE,
    UNIT_PRICE,
    delivered_order,
    make_cart,
    make_instrument,
    make_order,
    with_tax,
)


class TestCreateFromCart:
    def test_home_delivery_totals(self):
        order = make_order(paid=False)
        assert order.totals.subtotal_base == 2 * UNIT_PRICE
        assert order.totals.shipping_cost == SHIPPING_FEE
        assert order.totals.final_total == 10_700_000
        assert order.payment.amount == order.totals.final_total
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.payment.status == PaymentStatus.PENDING

    def test_pickup_has_no_shipping_cost(self):
        order = make_order(shipping=PICKUP, paid=False)
        assert order.totals.shipping_cost == 0
        assert order.totals.final_total == 2 * UNIT_PRICE

    def test_included_tax_is_part_of_the_total(self):
        order = make_order(cart=with_tax(), paid=False)
        assert order.totals.subtotal_discounted == 9_000_000
        assert order.totals.total_taxes == 1_710_000
        assert order.tax_info.included_amount == 1_710_000
        assert order.totals.final_total == 9_000_000 + 1_710_000 + SHIPPING_FEE
        assert order.items[0].unit_paid == 5_355_000

    def test_tax_paid_separately_is_left_out(self):
        order = make_order(cart=with_tax(), tax_paid_separately=True, paid=False)
        assert order.tax_info.paid_separately
        assert order.tax_info.excluded_amount == 1_710_000
        assert order.totals.final_total == 9_000_000 + SHIPPING_FEE
        assert order.items[0].unit_paid == 4_500_000

    def test_items_are_frozen_from_cart_and_catalog(self):
        order = make_order(paid=False)
        item = order.items[0]
        assert item.id == "order-001-1"
        assert item.book.title == BOOKS["book-001"].title
        assert item.quantity == 2
        assert item.subtotal == 2 * UNIT_PRICE

    def test_number_format(self):
        assert re.match(r"^VTA-\d{6}-\d{4}$", make_order(paid=False).number)

    def test_home_delivery_needs_address(self):
        with pytest.raises(ValidationError):
            Order.create_from_cart(
                order_id="order-001",
                cart=make_cart(),
                books=BOOKS,
                shipping=ShippingSelection(mode=ShippingMode.HOME_DELIVERY),
                instrument=make_instrument().info(),
                shipping_fee=SHIPPING_FEE,
            )

    def test_missing_catalog_data(self):
        with pytest.raises(ValidationError):
            Order.create_from_cart(
                order_id="order-001",
                cart=make_cart([CartLine(product_id="book-404", quantity=1, unit_price=UNIT_PRICE)]),
                books=BOOKS,
                shipping=PICKUP,
                instrument=make_instrument().info(),
                shipping_fee=SHIPPING_FEE,
            )


class TestPayment:
    def test_approval_moves_to_preparing(self):
        order = make_order(paid=False)
        order.start_payment_capture(CUSTOMER)
        order.approve_payment("BAL-1", CUSTOMER)
        assert order.status == OrderStatus.PREPARING
        assert order.payment.status == PaymentStatus.APPROVED
        assert order.payment.paid_at is not None
        assert [e.event for e in order.history] == ["creada", "pago_procesando", "pago_aprobado", "preparando"]
        assert all(item.status == ItemStatus.PREPARING for item in order.items)

    def test_approval_is_not_repeated(self):
        order = make_order()
        with pytest.raises(InvalidStateError):
            order.approve_payment("BAL-2", CUSTOMER)

    def test_rejection(self):
        order = make_order(paid=False)
        order.reject_payment("Card declined", CUSTOMER)
        assert order.status == OrderStatus.PAYMENT_FAILED
        assert order.payment.status == PaymentStatus.REJECTED
        assert order.payment.rejection_reason == "Card declined"
        with pytest.raises(InvalidStateError):
            order.approve_payment("late", CUSTOMER)


class TestFulfillment:
    def test_ship_and_deliver(self):
        order = make_order()
        order.mark_ready_to_ship(ADMIN)
        order.mark_shipped(ShipmentData(tracking_number=" TRK-1 ", carrier="Servientrega"), ADMIN)
        assert order.shipping.tracking_number == "TRK-1"
        assert order.shipping.estimated_delivery is not None
        order.mark_in_transit(ADMIN, description="Left the warehouse")
        order.mark_delivered(ADMIN)
        assert order.status == OrderStatus.DELIVERED
        assert order.shipping.delivered_at is not None
        assert all(item.status == ItemStatus.DELIVERED for item in order.items)

    def test_naive_delivery_time_is_stored_as_utc(self):
        order = make_order()
        order.mark_ready_to_ship(ADMIN)
        order.mark_shipped(ShipmentData(tracking_number="TRK-1"), ADMIN)
        order.mark_delivered(ADMIN, delivered_at=datetime(2026, 3, 1, 10, 30))
        assert order.shipping.delivered_at == datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc)
        allowed, _ = order.can_request_return(now=datetime(2026, 3, 2, 10, 30))
        assert allowed

    def test_offset_delivery_time_is_converted_to_utc(self):
        order = make_order()
        order.mark_ready_to_ship(ADMIN)
        order.mark_shipped(ShipmentData(tracking_number="TRK-1"), ADMIN)
        bogota = timezone(timedelta(hours=-5))
        order.mark_delivered(ADMIN, delivered_at=utcnow().astimezone(bogota))
        assert order.shipping.delivered_at.utcoffset() == timedelta(0)
        assert order.can_request_return() == (True, "")

    def test_shipping_needs_tracking_number(self):
        order = make_order()
        with pytest.raises(ValidationError):
            order.mark_shipped(ShipmentData(tracking_number="   "), ADMIN)
        assert order.status == OrderStatus.PREPARING

    def test_in_transit_only_after_shipping(self):
        order = make_order()
        with pytest.raises(InvalidStateError):
            order.mark_in_transit(ADMIN)

    def test_cannot_ship_unpaid_order(self):
        order = make_order(paid=False)
        with pytest.raises(InvalidStateError):
            order.mark_shipped(ShipmentData(tracking_number="TRK-1"), ADMIN)


class TestHistory:
    def test_sequences_and_times_are_ordered(self):
        order = delivered_order()
        sequences = [e.sequence for e in order.history]
        assert sequences == list(range(1, len(order.history) + 1))
        times = [e.at for e in order.history]
        assert times == sorted(times)

    def test_status_events_record_previous_status(self):
        order = make_order()
        event = order.history[-2]
        assert event.event == OrderStatus.PREPARING.value
        assert event.metadata["previous_status"] == OrderStatus.PAYMENT_APPROVED.value

    def test_pull_events_drains_pending(self):
        order = make_order()
        assert len(order.pull_events()) == len(order.history)
        assert order.pull_events() == []


class TestCancellation:
    def test_cancel_paid_order_returns_refund_due(self):
        order = make_order(shipping=PICKUP)
        refund_due = order.cancel("Changed my mind", ActorRole.CUSTOMER, CUSTOMER)
        assert refund_due == 2 * UNIT_PRICE
        assert order.status == OrderStatus.CANCELLED
        assert order.payment.status == PaymentStatus.REFUNDED
        assert order.payment.refunded_amount == order.payment.amount
        assert order.cancellation.reason == "Changed my mind"
        assert all(item.status == ItemStatus.CANCELLED for item in order.items)

    def test_cancel_unpaid_order_refunds_nothing(self):
        order = make_order(paid=False)
        assert order.cancel("Duplicate", ActorRole.ADMIN, ADMIN) == 0

    def test_cancel_twice_rejected(self):
        order = make_order()
        order.cancel("Changed my mind", ActorRole.CUSTOMER, CUSTOMER)
        with pytest.raises(InvalidStateError):
            order.cancel("Again", ActorRole.CUSTOMER, CUSTOMER)

    @pytest.mark.parametrize("stage", ["shipped", "delivered"])
    def test_cancel_after_shipping_rejected(self, stage):
        order = delivered_order() if stage == "delivered" else make_order()
        if stage == "shipped":
            order.mark_shipped(ShipmentData(tracking_number="TRK-1"), ADMIN)
        with pytest.raises(InvalidStateError):
            order.cancel("Too late", ActorRole.CUSTOMER, CUSTOMER)

    def test_other_customer_cannot_cancel(self):
        order = make_order()
        with pytest.raises(PermissionDeniedError):
            order.cancel("Not mine", ActorRole.CUSTOMER, OTHER_CUSTOMER)
        assert order.status == OrderStatus.PREPARING

    def test_reason_required(self):
        with pytest.raises(ValidationError):
            make_order().cancel("  ", ActorRole.ADMIN, ADMIN)


class TestReturnsOnOrder:
    def test_delivered_order_within_window(self):
        assert delivered_order().can_request_return() == (True, "")

    def test_window_expired(self):
        allowed, reason = delivered_order(days_ago=9).can_request_return(window_days=8)
        assert not allowed
        assert "window" in reason

    def test_undelivered_order(self):
        allowed, _ = make_order().can_request_return()
        assert not allowed

    def test_reservation_blocks_second_request(self):
        order = delivered_order()
        item = order.items[0]
        order.reserve_for_return({item.id: 2}, "DEV-1", CUSTOMER)
        assert item.returnable_quantity == 0
        assert order.return_status == OrderReturnStatus.REQUESTED
        with pytest.raises(ValidationError):
            order.reserve_for_return({item.id: 1}, "DEV-2", CUSTOMER)
        allowed, _ = order.can_request_return()
        assert not allowed

    def test_release_frees_quantities(self):
        order = delivered_order()
        item = order.items[0]
        order.reserve_for_return({item.id: 1}, "DEV-1", CUSTOMER)
        order.release_return_reservation({item.id: 1}, "DEV-1", ADMIN)
        assert item.returnable_quantity == 2
        assert order.return_status == OrderReturnStatus.NONE

    def test_settle_partial_return(self):
        order = delivered_order()
        item = order.items[0]
        order.reserve_for_return({item.id: 1}, "DEV-1", CUSTOMER)
        refunded = order.settle_return(
            [ReturnSettlement(item_id=item.id, quantity=1, refund_amount=UNIT_PRICE)], "DEV-1", ADMIN,
        )
        assert refunded == UNIT_PRICE
        assert order.payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert order.payment.refunded_amount == UNIT_PRICE
        assert item.status == ItemStatus.PARTIALLY_RETURNED
        assert item.return_info.returned_quantity == 1
        assert item.returnable_quantity == 1
        assert order.return_status == OrderReturnStatus.PARTIAL

    def test_settle_cannot_exceed_paid_amount(self):
        order = delivered_order()
        item = order.items[0]
        with pytest.raises(ValidationError):
            order.settle_return(
                [ReturnSettlement(item_id=item.id, quantity=2, refund_amount=order.payment.amount + 1)],
                "DEV-1", ADMIN,
            )
        assert order.payment.refunded_amount == 0
