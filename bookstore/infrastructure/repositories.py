import uuid
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, delete, case
from sqlalchemy.ext.asyncio import AsyncSession

from bookstore.domain.balance import BalanceMovement, PaymentInstrument
from bookstore.domain.cart import CartLine, CartSnapshot, CartStatus
from bookstore.domain.exceptions import ConcurrencyError
from bookstore.domain.inventory import InventoryRecord, StockMovement
from bookstore.domain.order import Order
from bookstore.domain.returns import Return, ReturnStatus
from bookstore.infrastructure.db_schema import (
    orders_tbl,
    returns_tbl,
    inventory_records_tbl,
    inventory_movements_tbl,
    payment_instruments_tbl,
    balance_movements_tbl,
    carts_tbl,
    cart_items_tbl,
    outbox_events_tbl,
    inbox_events_tbl,
)
from bookstore.application.interfaces import (
    OrderRepository,
    ReturnRepository,
    InventoryRepository,
    PaymentInstrumentRepository,
    CartRepository,
    OutboxRepository,
    InboxRepository,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_saved(result, kind: str, key: str, version: int) -> None:
    if result.rowcount != 1:
        raise ConcurrencyError(f"{kind} {key} was modified concurrently (expected version {version})")


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        return await self._get(orders_tbl.c.id == order_id, for_update)

    async def get_by_number(self, number: str, for_update: bool = False) -> Optional[Order]:
        return await self._get(orders_tbl.c.number == number, for_update)

    async def get_by_tracking_number(self, tracking_number: str, for_update: bool = False) -> Optional[Order]:
        return await self._get(orders_tbl.c.tracking_number == tracking_number, for_update)

    async def list_by_customer(self, customer_id: str, limit: int = 20, offset: int = 0) -> List[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .where(orders_tbl.c.customer_id == customer_id)
            .order_by(orders_tbl.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def add(self, order: Order) -> None:
        stmt = insert(orders_tbl).values(
            id=order.id,
            number=order.number,
            customer_id=order.customer_id,
            status=order.status.value,
            tracking_number=order.shipping.tracking_number,
            version=1,
            document=self._to_document(order),
            created_at=order.created_at,
            updated_at=order.updated_at
        )
        await self._session.execute(stmt)
        order.version = 1

    async def save(self, order: Order) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order.id, orders_tbl.c.version == order.version)
            .values(
                status=order.status.value,
                tracking_number=order.shipping.tracking_number,
                version=order.version + 1,
                document=self._to_document(order),
                updated_at=order.updated_at
            )
        )
        result = await self._session.execute(stmt)
        _check_saved(result, "Order", order.number, order.version)
        order.version += 1

    async def _get(self, condition, for_update: bool) -> Optional[Order]:
        stmt = select(orders_tbl).where(condition)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        return self._to_domain(row) if row else None

    @staticmethod
    def _to_document(order: Order) -> dict:
        return order.model_dump(mode="json", exclude={"version"})

    def _to_domain(self, row) -> Order:
        """DB → Domain"""
        order = Order.model_validate(row.document)
        order.version = row.version
        return order


class SQLAlchemyReturnRepository(ReturnRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_code(self, code: str, for_update: bool = False) -> Optional[Return]:
        stmt = select(returns_tbl).where(returns_tbl.c.code == code)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_qr_token(self, token: str) -> Optional[Return]:
        result = await self._session.execute(
            select(returns_tbl).where(returns_tbl.c.qr_token == token)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def list_by_order(self, order_id: str) -> List[Return]:
        result = await self._session.execute(
            select(returns_tbl)
            .where(returns_tbl.c.order_id == order_id)
            .order_by(returns_tbl.c.created_at.asc())
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def list_overdue(self, now: datetime, limit: int = 50) -> List[Return]:
        result = await self._session.execute(
            select(returns_tbl)
            .where(
                returns_tbl.c.status == ReturnStatus.AWAITING_SHIPMENT.value,
                returns_tbl.c.shipping_deadline < now
            )
            .order_by(returns_tbl.c.shipping_deadline.asc())
            .limit(limit)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def add(self, returned: Return) -> None:
        stmt = insert(returns_tbl).values(
            id=returned.id,
            code=returned.code,
            qr_token=returned.qr.token,
            order_id=returned.order_id,
            customer_id=returned.customer_id,
            status=returned.status.value,
            shipping_deadline=returned.shipping_deadline,
            version=1,
            document=returned.model_dump(mode="json", exclude={"version"}),
            created_at=returned.requested_at,
            updated_at=returned.updated_at
        )
        await self._session.execute(stmt)
        returned.version = 1

    async def save(self, returned: Return) -> None:
        stmt = (
            update(returns_tbl)
            .where(returns_tbl.c.id == returned.id, returns_tbl.c.version == returned.version)
            .values(
                status=returned.status.value,
                shipping_deadline=returned.shipping_deadline,
                version=returned.version + 1,
                document=returned.model_dump(mode="json", exclude={"version"}),
                updated_at=returned.updated_at
            )
        )
        result = await self._session.execute(stmt)
        _check_saved(result, "Return", returned.code, returned.version)
        returned.version += 1

    def _to_domain(self, row) -> Return:
        returned = Return.model_validate(row.document)
        returned.version = row.version
        return returned


class SQLAlchemyInventoryRepository(InventoryRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, product_id: str, for_update: bool = False) -> Optional[InventoryRecord]:
        stmt = select(inventory_records_tbl).where(inventory_records_tbl.c.product_id == product_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if not row:
            return None

        movements = await self._session.execute(
            select(inventory_movements_tbl.c.document)
            .where(inventory_movements_tbl.c.product_id == product_id)
            .order_by(inventory_movements_tbl.c.sequence.asc())
        )
        record = InventoryRecord(
            product_id=row.product_id,
            title=row.title,
            total=row.total,
            reserved=row.reserved,
            low_stock_threshold=row.low_stock_threshold,
            movements=[StockMovement.model_validate(m.document) for m in movements.fetchall()],
            version=row.version
        )
        record.mark_movements_saved()
        return record

    async def add(self, record: InventoryRecord) -> None:
        await self._session.execute(
            insert(inventory_records_tbl).values(
                product_id=record.product_id,
                title=record.title,
                total=record.total,
                reserved=record.reserved,
                low_stock_threshold=record.low_stock_threshold,
                version=1,
                updated_at=_now()
            )
        )
        record.version = 1
        await self._insert_movements(record)

    async def save(self, record: InventoryRecord) -> None:
        stmt = (
            update(inventory_records_tbl)
            .where(
                inventory_records_tbl.c.product_id == record.product_id,
                inventory_records_tbl.c.version == record.version
            )
            .values(
                title=record.title,
                total=record.total,
                reserved=record.reserved,
                low_stock_threshold=record.low_stock_threshold,
                version=record.version + 1,
                updated_at=_now()
            )
        )
        result = await self._session.execute(stmt)
        _check_saved(result, "Inventory record", record.product_id, record.version)
        record.version += 1
        await self._insert_movements(record)

    async def _insert_movements(self, record: InventoryRecord) -> None:
        for movement in record.unsaved_movements():
            await self._session.execute(
                insert(inventory_movements_tbl).values(
                    id=str(uuid.uuid4()),
                    product_id=record.product_id,
                    sequence=movement.sequence,
                    type=movement.type.value,
                    quantity=movement.quantity,
                    order_id=movement.order_id,
                    return_id=movement.return_id,
                    document=movement.model_dump(mode="json"),
                    created_at=movement.at
                )
            )
        record.mark_movements_saved()


class SQLAlchemyPaymentInstrumentRepository(PaymentInstrumentRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, instrument_id: str, for_update: bool = False) -> Optional[PaymentInstrument]:
        stmt = select(payment_instruments_tbl).where(payment_instruments_tbl.c.id == instrument_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if not row:
            return None

        movements = await self._session.execute(
            select(balance_movements_tbl.c.document)
            .where(balance_movements_tbl.c.instrument_id == instrument_id)
            .order_by(balance_movements_tbl.c.sequence.asc())
        )
        instrument = PaymentInstrument(
            id=row.id,
            customer_id=row.customer_id,
            kind=row.kind,
            brand=row.brand,
            last4=row.last4,
            holder_name=row.holder_name,
            expiry_month=row.expiry_month,
            expiry_year=row.expiry_year,
            active=row.active,
            balance=row.balance,
            movements=[BalanceMovement.model_validate(m.document) for m in movements.fetchall()],
            version=row.version
        )
        instrument.mark_movements_saved()
        return instrument

    async def add(self, instrument: PaymentInstrument) -> None:
        await self._session.execute(
            insert(payment_instruments_tbl).values(
                id=instrument.id,
                customer_id=instrument.customer_id,
                kind=instrument.kind.value,
                brand=instrument.brand,
                last4=instrument.last4,
                holder_name=instrument.holder_name,
                expiry_month=instrument.expiry_month,
                expiry_year=instrument.expiry_year,
                active=instrument.active,
                balance=instrument.balance,
                version=1,
                created_at=_now(),
                updated_at=_now()
            )
        )
        instrument.version = 1
        await self._insert_movements(instrument)

    async def save(self, instrument: PaymentInstrument) -> None:
        stmt = (
            update(payment_instruments_tbl)
            .where(
                payment_instruments_tbl.c.id == instrument.id,
                payment_instruments_tbl.c.version == instrument.version
            )
            .values(
                active=instrument.active,
                balance=instrument.balance,
                version=instrument.version + 1,
                updated_at=_now()
            )
        )
        result = await self._session.execute(stmt)
        _check_saved(result, "Payment instrument", instrument.id, instrument.version)
        instrument.version += 1
        await self._insert_movements(instrument)

    async def _insert_movements(self, instrument: PaymentInstrument) -> None:
        for movement in instrument.unsaved_movements():
            await self._session.execute(
                insert(balance_movements_tbl).values(
                    id=str(uuid.uuid4()),
                    instrument_id=instrument.id,
                    sequence=movement.sequence,
                    kind=movement.kind.value,
                    amount=movement.amount,
                    balance_after=movement.balance_after,
                    order_id=movement.order_id,
                    return_id=movement.return_id,
                    document=movement.model_dump(mode="json"),
                    created_at=movement.at
                )
            )
        instrument.mark_movements_saved()


class SQLAlchemyCartRepository(CartRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def load_active(self, customer_id: str, for_update: bool = False) -> Optional[CartSnapshot]:
        stmt = (
            select(carts_tbl)
            .where(carts_tbl.c.customer_id == customer_id, carts_tbl.c.status == CartStatus.ACTIVE.value)
            .order_by(carts_tbl.c.created_at.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if not row:
            return None

        items = await self._session.execute(
            select(cart_items_tbl)
            .where(cart_items_tbl.c.cart_id == row.id)
            .order_by(cart_items_tbl.c.position.asc())
        )
        return CartSnapshot(
            cart_id=row.id,
            customer_id=row.customer_id,
            status=CartStatus(row.status),
            lines=[
                CartLine(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    unit_discount=item.unit_discount,
                    tax_type=item.tax_type,
                    tax_percent=item.tax_percent
                )
                for item in items.fetchall()
            ]
        )

    async def add(self, cart: CartSnapshot) -> None:
        await self._session.execute(
            insert(carts_tbl).values(
                id=cart.cart_id,
                customer_id=cart.customer_id,
                status=cart.status.value,
                items_count=cart.totals.items_count,
                totals=cart.totals.model_dump(),
                created_at=_now(),
                updated_at=_now()
            )
        )
        for position, line in enumerate(cart.lines):
            await self._session.execute(
                insert(cart_items_tbl).values(
                    id=str(uuid.uuid4()),
                    cart_id=cart.cart_id,
                    position=position,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    unit_discount=line.unit_discount,
                    tax_type=line.tax_type.value,
                    tax_percent=line.tax_percent
                )
            )

    async def clear(self, cart_id: str) -> None:
        await self._session.execute(
            delete(cart_items_tbl).where(cart_items_tbl.c.cart_id == cart_id)
        )
        await self._session.execute(
            update(carts_tbl)
            .where(carts_tbl.c.id == cart_id)
            .values(
                status=CartStatus.CONVERTED.value,
                items_count=0,
                totals={},
                updated_at=_now()
            )
        )


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, aggregate_id: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,
            aggregate_id=aggregate_id,
            status="pending",
            attempts=0,
            created_at=_now()
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.status == "pending")
            .order_by(outbox_events_tbl.c.created_at.asc(), outbox_events_tbl.c.id.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "aggregate_id": row.aggregate_id,
                "attempts": row.attempts,
                "created_at": row.created_at.isoformat() if row.created_at else None
            }
            for row in rows
        ]

    async def mark_as_published(self, event_id: str) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status="published", published_at=_now())
        )
        await self._session.execute(stmt)

    async def record_failure(self, event_id: str, error: str, max_attempts: int) -> None:
        attempts = outbox_events_tbl.c.attempts + 1
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(
                attempts=attempts,
                last_error=error[:500],
                status=case((attempts >= max_attempts, "failed"), else_="pending")
            )
        )
        await self._session.execute(stmt)


class SQLAlchemyInboxRepository(InboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, aggregate_id: str, idempotency_key: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(inbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,
            aggregate_id=aggregate_id,
            idempotency_key=idempotency_key,
            status="pending",
            created_at=_now()
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(inbox_events_tbl)
            .where(inbox_events_tbl.c.status == "pending")
            .order_by(inbox_events_tbl.c.created_at.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "aggregate_id": row.aggregate_id,
                "idempotency_key": row.idempotency_key
            }
            for row in rows
        ]

    async def mark_as_processed(self, event_id: str) -> None:
        stmt = (
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(
                status="processed",
                processed_at=_now()
            )
        )
        await self._session.execute(stmt)

    async def mark_as_failed(self, event_id: str) -> None:
        stmt = (
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(status="failed")
        )
        await self._session.execute(stmt)

    async def is_processed(self, idempotency_key: str) -> bool:
        result = await self._session.execute(
            select(inbox_events_tbl.c.id)
            .where(inbox_events_tbl.c.idempotency_key == idempotency_key)
        )
        return result.fetchone() is not None
