import logging
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookstore.domain.exceptions import StorageError
from bookstore.infrastructure.repositories import (
    SQLAlchemyOrderRepository,
    SQLAlchemyReturnRepository,
    SQLAlchemyInventoryRepository,
    SQLAlchemyPaymentInstrumentRepository,
    SQLAlchemyCartRepository,
    SQLAlchemyOutboxRepository,
    SQLAlchemyInboxRepository
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # nothing is kept unless commit() was called
                await session.rollback()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Storage error, unit of work rolled back: {e}")
                raise StorageError(f"Storage error: {e.__class__.__name__}") from e
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    def __init__(self, session: AsyncSession):
        self._session = session
        self.orders = SQLAlchemyOrderRepository(session)
        self.returns = SQLAlchemyReturnRepository(session)
        self.inventory = SQLAlchemyInventoryRepository(session)
        self.instruments = SQLAlchemyPaymentInstrumentRepository(session)
        self.carts = SQLAlchemyCartRepository(session)
        self.outbox = SQLAlchemyOutboxRepository(session)
        self.inbox = SQLAlchemyInboxRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
