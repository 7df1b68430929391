from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from bookstore.domain.balance import PaymentInstrument
from bookstore.domain.cart import CartSnapshot
from bookstore.domain.inventory import InventoryRecord
from bookstore.domain.order import BookSnapshot, Order
from bookstore.domain.returns import Return


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_number(self, number: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_tracking_number(self, tracking_number: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_by_customer(self, customer_id: str, limit: int = 20, offset: int = 0) -> List[Order]:
        pass

    @abstractmethod
    async def add(self, order: Order) -> None:
        pass

    @abstractmethod
    async def save(self, order: Order) -> None:
        pass


class ReturnRepository(ABC):
    @abstractmethod
    async def get_by_code(self, code: str, for_update: bool = False) -> Optional[Return]:
        pass

    @abstractmethod
    async def get_by_qr_token(self, token: str) -> Optional[Return]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Return]:
        pass

    @abstractmethod
    async def list_overdue(self, now: datetime, limit: int = 50) -> List[Return]:
        pass

    @abstractmethod
    async def add(self, returned: Return) -> None:
        pass

    @abstractmethod
    async def save(self, returned: Return) -> None:
        pass


class InventoryRepository(ABC):
    @abstractmethod
    async def get(self, product_id: str, for_update: bool = False) -> Optional[InventoryRecord]:
        pass

    @abstractmethod
    async def add(self, record: InventoryRecord) -> None:
        pass

    @abstractmethod
    async def save(self, record: InventoryRecord) -> None:
        pass


class PaymentInstrumentRepository(ABC):
    @abstractmethod
    async def get(self, instrument_id: str, for_update: bool = False) -> Optional[PaymentInstrument]:
        pass

    @abstractmethod
    async def add(self, instrument: PaymentInstrument) -> None:
        pass

    @abstractmethod
    async def save(self, instrument: PaymentInstrument) -> None:
        pass


class CartRepository(ABC):
    @abstractmethod
    async def load_active(self, customer_id: str, for_update: bool = False) -> Optional[CartSnapshot]:
        pass

    @abstractmethod
    async def add(self, cart: CartSnapshot) -> None:
        pass

    @abstractmethod
    async def clear(self, cart_id: str) -> None:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, aggregate_id: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def record_failure(self, event_id: str, error: str, max_attempts: int) -> None:
        pass


class InboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, aggregate_id: str, idempotency_key: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_failed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def is_processed(self, idempotency_key: str) -> bool:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def returns(self) -> ReturnRepository:
        pass

    @property
    @abstractmethod
    def inventory(self) -> InventoryRepository:
        pass

    @property
    @abstractmethod
    def instruments(self) -> PaymentInstrumentRepository:
        pass

    @property
    @abstractmethod
    def carts(self) -> CartRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @property
    @abstractmethod
    def inbox(self) -> InboxRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class CatalogService(ABC):
    @abstractmethod
    async def get_book(self, product_id: str) -> Optional[BookSnapshot]:
        pass


class PaymentProcessor(ABC):
    """External card processor; only credit instruments go through it."""

    @abstractmethod
    async def capture(self, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        pass

    @abstractmethod
    async def refund(self, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        pass


class NotificationsService(ABC):
    @abstractmethod
    async def send(self, kind: str, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        pass


class AuditPublisher(ABC):
    @abstractmethod
    async def publish(self, event: dict, key: str) -> bool:
        pass
