"""Tests for the outbox dispatcher, the carrier inbox and the carrier consumer."""

from bookstore.application.process_inbox import DELIVERED_EVENT, IN_TRANSIT_EVENT, ProcessInboxEventsUseCase
from bookstore.application.process_outbox import ProcessOutboxEventsUseCase
from bookstore.application.side_effects import AUDIT_EVENT, NOTIFICATION_EVENT
from bookstore.application.order_fulfillment import UpdateShippingStatusDTO, UpdateShippingStatusUseCase
from bookstore.domain.order import OrderStatus
from bookstore.presentation.carrier_consumer import handle_carrier_event
from tests.fakes import FakeNotifications
from tests.factories import ADMIN, CUSTOMER_ID


class ExplodingNotifications(FakeNotifications):
    async def send(self, kind, message, reference_id, idempotency_key, user_id):
        raise ConnectionError("notifications service unreachable")


async def _pending(uow):
    async with uow() as u:
        return await u.outbox.get_pending(limit=500)


async def _ship(uow, order, tracking_number="TRK-123"):
    await UpdateShippingStatusUseCase(uow)(UpdateShippingStatusDTO(
        number=order.number, status=OrderStatus.SHIPPED, actor=ADMIN, tracking_number=tracking_number,
    ))


class TestOutboxDispatch:
    async def test_publishes_everything_pending(self, place_order, uow, notifications, audit):
        order = await place_order()
        pending = await _pending(uow)

        published = await ProcessOutboxEventsUseCase(uow, notifications, audit)(limit=500)

        assert published == len(pending)
        assert await _pending(uow) == []
        assert notifications.sent == [("compra_confirmada", CUSTOMER_ID, order.id)]
        audit_count = len([e for e in pending if e["event_type"] == AUDIT_EVENT])
        assert len(audit.events) == audit_count
        keys = {key for key, _ in audit.events}
        assert order.id in keys
        assert "card-001" in keys
        assert "book-001" in keys

    async def test_rejected_notification_stays_pending_until_attempts_run_out(self, place_order, uow, audit):
        await place_order()
        refusing = FakeNotifications(accept=False)
        dispatch = ProcessOutboxEventsUseCase(uow, refusing, audit, max_attempts=2)

        await dispatch(limit=500)
        pending = await _pending(uow)
        assert [e["event_type"] for e in pending] == [NOTIFICATION_EVENT]
        assert pending[0]["attempts"] == 1

        await dispatch(limit=500)
        assert await _pending(uow) == []
        assert len(refusing.sent) == 2

    async def test_dispatch_error_is_recorded(self, place_order, uow, audit):
        await place_order()
        await ProcessOutboxEventsUseCase(uow, ExplodingNotifications(), audit)(limit=500)
        pending = await _pending(uow)
        assert len(pending) == 1
        assert pending[0]["attempts"] == 1

    async def test_empty_outbox(self, seed, uow, notifications, audit):
        await seed()
        assert await ProcessOutboxEventsUseCase(uow, notifications, audit)() == 0
        assert notifications.sent == []


class TestCarrierInbox:
    async def test_consumer_stores_each_event_once(self, session_factory, uow):
        event = {"event_id": "evt-1", "event_type": IN_TRANSIT_EVENT, "tracking_number": "TRK-123"}
        assert await handle_carrier_event(event, session_factory)
        assert not await handle_carrier_event(event, session_factory)
        async with uow() as u:
            assert len(await u.inbox.get_pending()) == 1

    async def test_consumer_drops_incomplete_events(self, session_factory):
        assert not await handle_carrier_event({"event_type": DELIVERED_EVENT}, session_factory)

    async def test_carrier_updates_move_the_order(self, place_order, session_factory, uow):
        order = await place_order()
        await _ship(uow, order)
        await handle_carrier_event(
            {"event_id": "evt-1", "event_type": IN_TRANSIT_EVENT, "tracking_number": "TRK-123",
             "description": "Arrived at hub", "location": "Bogotá"},
            session_factory,
        )
        await handle_carrier_event(
            {"event_id": "evt-2", "event_type": DELIVERED_EVENT, "tracking_number": "TRK-123",
             "delivered_at": "2026-01-15T10:30:00+00:00"},
            session_factory,
        )

        assert await ProcessInboxEventsUseCase(uow)() == 2

        async with uow() as u:
            saved = await u.orders.get_by_number(order.number)
            assert await u.inbox.get_pending() == []
        assert saved.status == OrderStatus.DELIVERED
        assert saved.shipping.delivered_at.isoformat() == "2026-01-15T10:30:00+00:00"
        assert [e.event for e in saved.history][-2:] == ["en_transito", "entregado"]
        kinds = [e["event_data"]["kind"] for e in await _pending(uow) if e["event_type"] == NOTIFICATION_EVENT]
        assert "entrega" in kinds

    async def test_out_of_order_update_is_dropped(self, place_order, session_factory, uow):
        order = await place_order()
        await _ship(uow, order)
        await handle_carrier_event(
            {"event_id": "evt-1", "event_type": DELIVERED_EVENT, "tracking_number": "TRK-123"}, session_factory,
        )
        await handle_carrier_event(
            {"event_id": "evt-2", "event_type": IN_TRANSIT_EVENT, "tracking_number": "TRK-123"}, session_factory,
        )

        assert await ProcessInboxEventsUseCase(uow)() == 1

        async with uow() as u:
            assert (await u.orders.get_by_number(order.number)).status == OrderStatus.DELIVERED
            assert await u.inbox.get_pending() == []

    async def test_unknown_tracking_number(self, session_factory, uow):
        await handle_carrier_event(
            {"event_id": "evt-1", "event_type": DELIVERED_EVENT, "tracking_number": "TRK-404"}, session_factory,
        )
        assert await ProcessInboxEventsUseCase(uow)() == 0
        async with uow() as u:
            assert await u.inbox.get_pending() == []

    async def test_unreadable_delivery_time_fails_the_event(self, place_order, session_factory, uow):
        order = await place_order()
        await _ship(uow, order)
        await handle_carrier_event(
            {"event_id": "evt-1", "event_type": DELIVERED_EVENT, "tracking_number": "TRK-123",
             "delivered_at": "not-a-date"},
            session_factory,
        )

        assert await ProcessInboxEventsUseCase(uow)() == 0
        assert await ProcessInboxEventsUseCase(uow)() == 0

        async with uow() as u:
            assert await u.inbox.get_pending() == []
            saved = await u.orders.get_by_number(order.number)
        assert saved.status == OrderStatus.SHIPPED
        assert saved.shipping.delivered_at is None
