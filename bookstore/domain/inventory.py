"""Inventory Ledger.

One record per title. Counters change only through the typed movements below,
and every movement keeps the counters it saw before and after so the record
can be audited back to its first entry.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, PrivateAttr

from bookstore.domain.exceptions import (
    InsufficientStockError,
    StockShortfall,
    ValidationError,
)
from bookstore.domain.history import Actor, utcnow


class MovementType(str, Enum):
    ENTRY = "entrada"
    RESERVATION = "reserva"
    RELEASE = "liberacion_reserva"
    SALE_CONFIRMATION = "venta"
    RETURN_CREDIT = "devolucion"
    CANCELLATION_CREDIT = "cancelacion"


class StockStatus(str, Enum):
    AVAILABLE = "disponible"
    LOW = "baja_existencia"
    OUT_OF_STOCK = "agotado"


class StockLevels(BaseModel):
    total: int
    reserved: int
    available: int


class StockMovement(BaseModel):
    sequence: int
    type: MovementType
    quantity: int
    at: datetime
    actor_id: str | None = None
    order_id: str | None = None
    return_id: str | None = None
    reservation_id: str | None = None
    notes: str = ""
    before: StockLevels
    after: StockLevels


class InventoryRecord(BaseModel):
    product_id: str
    title: str = ""
    total: int = 0
    reserved: int = 0
    low_stock_threshold: int = 5
    movements: list[StockMovement] = Field(default_factory=list)
    version: int = 0

    # number of movements already persisted, maintained by the repository
    _stored_movements: int = PrivateAttr(default=0)

    @property
    def available(self) -> int:
        return self.total - self.reserved

    @property
    def status(self) -> StockStatus:
        if self.available <= 0:
            return StockStatus.OUT_OF_STOCK
        if self.available <= self.low_stock_threshold:
            return StockStatus.LOW
        return StockStatus.AVAILABLE

    def levels(self) -> StockLevels:
        return StockLevels(total=self.total, reserved=self.reserved, available=self.available)

    def shortfall_for(self, requested: int) -> StockShortfall | None:
        if requested <= self.available:
            return None
        return StockShortfall(
            product_id=self.product_id,
            title=self.title,
            requested=requested,
            available=max(self.available, 0),
            reserved=self.reserved,
        )

    def register_entry(self, quantity: int, actor: Actor, notes: str = "") -> StockMovement:
        """Purchase entry: new units arrive at the warehouse."""
        return self._apply(MovementType.ENTRY, quantity, actor, total_delta=quantity, notes=notes)

    def reserve(self, quantity: int, actor: Actor, reservation_id: str, order_id: str | None = None) -> StockMovement:
        shortfall = self.shortfall_for(quantity)
        if shortfall:
            raise InsufficientStockError([shortfall])
        return self._apply(
            MovementType.RESERVATION, quantity, actor,
            reserved_delta=quantity, reservation_id=reservation_id, order_id=order_id,
        )

    def release(self, quantity: int, actor: Actor, reservation_id: str, notes: str = "") -> StockMovement:
        if quantity > self.reserved:
            raise ValidationError(
                f"Cannot release {quantity} units of {self.product_id}: only {self.reserved} reserved"
            )
        return self._apply(
            MovementType.RELEASE, quantity, actor,
            reserved_delta=-quantity, reservation_id=reservation_id, notes=notes,
        )

    def confirm_sale(self, quantity: int, actor: Actor, order_id: str, reservation_id: str | None = None) -> StockMovement:
        """Turns reserved units into sold units; they leave the total."""
        if quantity > self.reserved:
            raise ValidationError(
                f"Cannot confirm {quantity} units of {self.product_id}: only {self.reserved} reserved"
            )
        return self._apply(
            MovementType.SALE_CONFIRMATION, quantity, actor,
            total_delta=-quantity, reserved_delta=-quantity,
            order_id=order_id, reservation_id=reservation_id,
        )

    def credit_return(self, quantity: int, actor: Actor, return_id: str, order_id: str | None = None) -> StockMovement:
        return self._apply(
            MovementType.RETURN_CREDIT, quantity, actor,
            total_delta=quantity, return_id=return_id, order_id=order_id,
        )

    def credit_cancellation(self, quantity: int, actor: Actor, order_id: str) -> StockMovement:
        return self._apply(
            MovementType.CANCELLATION_CREDIT, quantity, actor,
            total_delta=quantity, order_id=order_id,
        )

    def unsaved_movements(self) -> list[StockMovement]:
        return self.movements[self._stored_movements:]

    def mark_movements_saved(self) -> None:
        self._stored_movements = len(self.movements)

    def _apply(
        self,
        movement_type: MovementType,
        quantity: int,
        actor: Actor,
        total_delta: int = 0,
        reserved_delta: int = 0,
        **links,
    ) -> StockMovement:
        if quantity <= 0:
            raise ValidationError(f"Movement quantity must be positive, got {quantity}")
        before = self.levels()
        total = self.total + total_delta
        reserved = self.reserved + reserved_delta
        if total < 0 or reserved < 0 or total - reserved < 0:
            raise ValidationError(
                f"Movement {movement_type.value} of {quantity} would leave {self.product_id} "
                f"with total={total}, reserved={reserved}"
            )
        self.total = total
        self.reserved = reserved
        movement = StockMovement(
            sequence=len(self.movements) + 1,
            type=movement_type,
            quantity=quantity,
            at=utcnow(),
            actor_id=actor.id,
            before=before,
            after=self.levels(),
            **links,
        )
        self.movements.append(movement)
        return movement
