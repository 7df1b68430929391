"""Payment instruments and the Balance Ledger kept for debit instruments."""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, PrivateAttr

from bookstore.domain.exceptions import (
    InsufficientFundsError,
    PaymentInstrumentError,
    ValidationError,
)
from bookstore.domain.history import Actor, utcnow


class InstrumentKind(str, Enum):
    DEBIT = "tarjeta_debito"
    CREDIT = "tarjeta_credito"


class BalanceMovementKind(str, Enum):
    DEPOSIT = "deposito"
    WITHDRAWAL = "retiro"
    PURCHASE = "compra"
    REFUND = "reembolso"
    MANUAL_ADJUSTMENT = "ajuste_manual"


class BalanceMovement(BaseModel):
    """Value Object: one signed entry of the ledger"""
    sequence: int
    kind: BalanceMovementKind
    amount: int
    balance_before: int
    balance_after: int
    memo: str = ""
    at: datetime
    actor_id: str | None = None
    order_id: str | None = None
    return_id: str | None = None


class InstrumentInfo(BaseModel):
    instrument_id: str
    active: bool
    expired: bool
    kind: InstrumentKind
    last4: str
    brand: str


class PaymentInstrument(BaseModel):
    id: str
    customer_id: str
    kind: InstrumentKind
    brand: str = ""
    last4: str = Field(min_length=4, max_length=4)
    holder_name: str = ""
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int
    active: bool = True
    balance: int = 0
    movements: list[BalanceMovement] = Field(default_factory=list)
    version: int = 0

    _stored_movements: int = PrivateAttr(default=0)

    @property
    def is_debit(self) -> bool:
        return self.kind == InstrumentKind.DEBIT

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        # a card is valid through the last day of its expiry month
        return (now.year, now.month) > (self.expiry_year, self.expiry_month)

    def info(self, now: datetime | None = None) -> InstrumentInfo:
        return InstrumentInfo(
            instrument_id=self.id,
            active=self.active,
            expired=self.is_expired(now),
            kind=self.kind,
            last4=self.last4,
            brand=self.brand,
        )

    def ensure_usable_by(self, customer_id: str, now: datetime | None = None) -> None:
        if self.customer_id != customer_id:
            raise PaymentInstrumentError(f"Instrument {self.id} does not belong to customer {customer_id}")
        if not self.active:
            raise PaymentInstrumentError(f"Instrument {self.id} is inactive")
        if self.is_expired(now):
            raise PaymentInstrumentError(f"Instrument {self.id} is expired")

    def ensure_funds(self, amount: int) -> None:
        if self.is_debit and self.balance < amount:
            raise InsufficientFundsError(self.balance, amount)

    def deposit(self, amount: int, actor: Actor, memo: str = "") -> BalanceMovement:
        return self._apply(BalanceMovementKind.DEPOSIT, self._positive(amount), actor, memo)

    def withdraw(self, amount: int, actor: Actor, memo: str = "") -> BalanceMovement:
        return self._apply(BalanceMovementKind.WITHDRAWAL, -self._positive(amount), actor, memo)

    def charge_purchase(self, amount: int, actor: Actor, order_id: str, memo: str = "") -> BalanceMovement:
        return self._apply(BalanceMovementKind.PURCHASE, -self._positive(amount), actor, memo, order_id=order_id)

    def credit_refund(
        self,
        amount: int,
        actor: Actor,
        memo: str = "",
        order_id: str | None = None,
        return_id: str | None = None,
    ) -> BalanceMovement:
        return self._apply(
            BalanceMovementKind.REFUND, self._positive(amount), actor, memo,
            order_id=order_id, return_id=return_id,
        )

    def adjust(self, amount: int, actor: Actor, memo: str) -> BalanceMovement:
        """Manual adjustment by an administrator; the sign gives the direction."""
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero")
        if not memo:
            raise ValidationError("Manual adjustments require a memo")
        return self._apply(BalanceMovementKind.MANUAL_ADJUSTMENT, amount, actor, memo)

    def refund_movement_for(self, return_id: str | None = None, order_id: str | None = None) -> BalanceMovement | None:
        for movement in self.movements:
            if movement.kind != BalanceMovementKind.REFUND:
                continue
            if return_id is not None and movement.return_id == return_id:
                return movement
            if return_id is None and order_id is not None and movement.order_id == order_id and movement.return_id is None:
                return movement
        return None

    def folded_balance(self) -> int:
        return sum(movement.amount for movement in self.movements)

    def unsaved_movements(self) -> list[BalanceMovement]:
        return self.movements[self._stored_movements:]

    def mark_movements_saved(self) -> None:
        self._stored_movements = len(self.movements)

    @staticmethod
    def _positive(amount: int) -> int:
        if amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        return amount

    def _apply(self, kind: BalanceMovementKind, signed_amount: int, actor: Actor, memo: str, **links) -> BalanceMovement:
        if not self.is_debit:
            raise PaymentInstrumentError(f"Instrument {self.id} has no stored balance")
        after = self.balance + signed_amount
        if after < 0:
            raise InsufficientFundsError(self.balance, -signed_amount)
        movement = BalanceMovement(
            sequence=len(self.movements) + 1,
            kind=kind,
            amount=signed_amount,
            balance_before=self.balance,
            balance_after=after,
            memo=memo,
            at=utcnow(),
            actor_id=actor.id,
            **links,
        )
        self.balance = after
        self.movements.append(movement)
        return movement
