import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bookstore.application.checkout import CheckoutDTO, CheckoutUseCase
from bookstore.application.order_fulfillment import UpdateShippingStatusDTO, UpdateShippingStatusUseCase
from bookstore.application.payments import PaymentInstrumentService
from bookstore.domain.balance import InstrumentKind
from bookstore.domain.order import OrderStatus
from bookstore.infrastructure.db_schema import metadata
from bookstore.infrastructure.unit_of_work import UnitOfWork
from tests.factories import (
    ADMIN,
    CUSTOMER_ID,
    HOME,
    SHIPPING_FEE,
    make_cart,
    make_instrument,
    make_stock,
)
from tests.fakes import FakeAuditPublisher, FakeCatalog, FakeNotifications, FakePaymentProcessor


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def payments(processor):
    return PaymentInstrumentService(processor)


@pytest.fixture
def notifications():
    return FakeNotifications()


@pytest.fixture
def audit():
    return FakeAuditPublisher()


@pytest.fixture
def seed(uow):
    """Writes carts, stock and instruments straight through the repositories."""

    async def _seed(cart=None, stock=(), instruments=()):
        async with uow() as u:
            if cart is not None:
                await u.carts.add(cart)
            for record in stock:
                await u.inventory.add(record)
            for instrument in instruments:
                await u.instruments.add(instrument)
            await u.commit()

    return _seed


@pytest.fixture
def place_order(seed, uow, catalog, payments):
    """Seeds stock, a funded instrument and a cart, then checks out."""

    async def _place(cart=None, shipping=HOME, balance=20_000_000, kind=InstrumentKind.DEBIT, stock=10):
        await seed(
            cart=cart or make_cart(),
            stock=[make_stock("book-001", stock), make_stock("book-002", stock)],
            instruments=[make_instrument(balance=balance if kind == InstrumentKind.DEBIT else 0, kind=kind)],
        )
        checkout = CheckoutUseCase(uow, catalog, payments, SHIPPING_FEE)
        return await checkout(CheckoutDTO(customer_id=CUSTOMER_ID, instrument_id="card-001", shipping=shipping))

    return _place


@pytest.fixture
def deliver(uow):
    async def _deliver(order):
        update = UpdateShippingStatusUseCase(uow)
        await update(UpdateShippingStatusDTO(
            number=order.number, status=OrderStatus.SHIPPED, actor=ADMIN,
            tracking_number="TRK-123", carrier="Servientrega",
        ))
        return await update(UpdateShippingStatusDTO(number=order.number, status=OrderStatus.DELIVERED, actor=ADMIN))

    return _deliver
