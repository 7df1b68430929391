"""Order aggregate.

Every mutator is a pure in-memory transition: it validates the current state,
changes the aggregate and appends to its history. Stock, balance and
notifications are handled by the use cases that save the order.
"""
import random
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from bookstore.domain.balance import InstrumentInfo, InstrumentKind
from bookstore.domain.cart import CartSnapshot, TaxType
from bookstore.domain.exceptions import (
    InvalidStateError,
    PermissionDeniedError,
    ValidationError,
)
from bookstore.domain.history import Actor, ActorRole, HistoryMixin, as_utc, utcnow


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pendiente_pago"
    PAYMENT_APPROVED = "pago_aprobado"
    PREPARING = "preparando"
    READY_TO_SHIP = "listo_para_envio"
    SHIPPED = "enviado"
    IN_TRANSIT = "en_transito"
    DELIVERED = "entregado"
    PAYMENT_FAILED = "fallo_pago"
    CANCELLED = "cancelado"


class PaymentStatus(str, Enum):
    PENDING = "pendiente"
    PROCESSING = "procesando"
    APPROVED = "aprobado"
    REJECTED = "rechazado"
    REFUNDED = "reembolsado"
    PARTIALLY_REFUNDED = "reembolso_parcial"


class ItemStatus(str, Enum):
    PROCESSING = "procesando"
    PREPARING = "preparando"
    SHIPPED = "enviado"
    DELIVERED = "entregado"
    PARTIALLY_RETURNED = "devolucion_parcial"
    RETURNED = "devuelto"
    CANCELLED = "cancelado"


class ShippingMode(str, Enum):
    HOME_DELIVERY = "domicilio"
    STORE_PICKUP = "recogida_tienda"


class OrderReturnStatus(str, Enum):
    NONE = "sin_devolucion"
    REQUESTED = "devolucion_solicitada"
    PARTIAL = "devolucion_parcial"
    COMPLETED = "devolucion_completada"


CANCEL_FORBIDDEN = {
    OrderStatus.SHIPPED,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
}
REFUNDABLE_PAYMENT = {PaymentStatus.APPROVED, PaymentStatus.PARTIALLY_REFUNDED}


class BookSnapshot(BaseModel):
    """Value Object: catalog data frozen at purchase time"""
    title: str
    author: str = ""
    isbn: str = ""
    publisher: str = ""
    cover_image: str | None = None


class ItemReturnInfo(BaseModel):
    returned_quantity: int = 0
    reserved_for_return: int = 0
    refunded_amount: int = 0


class OrderItem(BaseModel):
    id: str
    product_id: str
    book: BookSnapshot
    quantity: int
    unit_price: int
    unit_discount: int = 0
    tax_type: TaxType = TaxType.EXEMPT
    tax_percent: int = 0
    unit_tax: int = 0
    unit_paid: int
    subtotal: int
    status: ItemStatus = ItemStatus.PROCESSING
    return_info: ItemReturnInfo = Field(default_factory=ItemReturnInfo)

    @property
    def returnable_quantity(self) -> int:
        return self.quantity - self.return_info.returned_quantity - self.return_info.reserved_for_return


class Totals(BaseModel):
    subtotal_base: int
    total_discounts: int
    subtotal_discounted: int
    total_taxes: int
    shipping_cost: int
    final_total: int


class TaxInfo(BaseModel):
    paid_separately: bool = False
    excluded_amount: int = 0
    included_amount: int = 0
    note: str = ""


class Payment(BaseModel):
    method: InstrumentKind
    instrument_id: str
    last4: str
    brand: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    amount: int
    reference: str | None = None
    paid_at: datetime | None = None
    refunded_amount: int = 0
    rejection_reason: str | None = None


class Address(BaseModel):
    recipient_name: str
    street: str
    city: str
    state: str = ""
    postal_code: str = ""
    country: str = "Colombia"
    phone: str = ""


class ShippingSelection(BaseModel):
    mode: ShippingMode
    address: Address | None = None
    store_id: str | None = None

    def validate_for_checkout(self) -> None:
        if self.mode == ShippingMode.HOME_DELIVERY and self.address is None:
            raise ValidationError("Home delivery requires a shipping address")
        if self.mode == ShippingMode.STORE_PICKUP and not self.store_id:
            raise ValidationError("Store pickup requires a store id")


class ShipmentData(BaseModel):
    tracking_number: str
    carrier: str = ""
    estimated_delivery: datetime | None = None
    notes: str = ""


class Shipping(BaseModel):
    mode: ShippingMode
    address: Address | None = None
    store_id: str | None = None
    cost: int = 0
    carrier: str | None = None
    tracking_number: str | None = None
    shipped_at: datetime | None = None
    estimated_delivery: datetime | None = None
    delivered_at: datetime | None = None
    notes: str = ""


class Cancellation(BaseModel):
    at: datetime
    reason: str
    requested_by: ActorRole
    actor_id: str | None = None


class InternalNote(BaseModel):
    at: datetime
    note: str
    actor_id: str | None = None


class ReturnSettlement(BaseModel):
    """Outcome of one return item as it is booked back on the order."""
    item_id: str
    quantity: int
    refund_amount: int


class Order(HistoryMixin):
    """Aggregate Root: the sale record"""
    id: str
    number: str
    customer_id: str
    cart_id: str | None = None
    items: list[OrderItem]
    totals: Totals
    tax_info: TaxInfo = Field(default_factory=TaxInfo)
    payment: Payment
    shipping: Shipping
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    cancellation: Cancellation | None = None
    internal_notes: list[InternalNote] = Field(default_factory=list)
    return_status: OrderReturnStatus = OrderReturnStatus.NONE
    returns_count: int = 0
    stock_confirmed: bool = False
    created_at: datetime
    updated_at: datetime

    @staticmethod
    def generate_number(now: datetime | None = None) -> str:
        now = now or utcnow()
        return f"VTA-{now:%Y%m}-{random.randint(0, 9999):04d}"

    @classmethod
    def create_from_cart(
        cls,
        order_id: str,
        cart: CartSnapshot,
        books: dict[str, BookSnapshot],
        shipping: ShippingSelection,
        instrument: InstrumentInfo,
        shipping_fee: int,
        tax_paid_separately: bool = False,
        actor: Actor | None = None,
        now: datetime | None = None,
    ) -> "Order":
        """Freezes the cart lines, prices and totals into a new order."""
        now = now or utcnow()
        shipping.validate_for_checkout()
        cart_totals = cart.totals
        shipping_cost = shipping_fee if shipping.mode == ShippingMode.HOME_DELIVERY else 0

        items = []
        for index, line in enumerate(cart.lines, start=1):
            book = books.get(line.product_id)
            if book is None:
                raise ValidationError(f"Missing catalog data for product {line.product_id}")
            unit_paid = line.unit_discounted + (0 if tax_paid_separately else line.unit_tax)
            items.append(OrderItem(
                id=f"{order_id}-{index}",
                product_id=line.product_id,
                book=book,
                quantity=line.quantity,
                unit_price=line.unit_price,
                unit_discount=line.unit_discount,
                tax_type=line.tax_type,
                tax_percent=line.tax_percent,
                unit_tax=line.unit_tax,
                unit_paid=unit_paid,
                subtotal=unit_paid * line.quantity,
            ))

        if tax_paid_separately:
            tax_info = TaxInfo(
                paid_separately=True,
                excluded_amount=cart_totals.total_taxes,
                note="Taxes are owed separately by the customer",
            )
        else:
            tax_info = TaxInfo(included_amount=cart_totals.total_taxes)

        final_total = cart_totals.subtotal_discounted + tax_info.included_amount + shipping_cost
        totals = Totals(
            subtotal_base=cart_totals.subtotal_base,
            total_discounts=cart_totals.total_discounts,
            subtotal_discounted=cart_totals.subtotal_discounted,
            total_taxes=cart_totals.total_taxes,
            shipping_cost=shipping_cost,
            final_total=final_total,
        )
        order = cls(
            id=order_id,
            number=cls.generate_number(now),
            customer_id=cart.customer_id,
            cart_id=cart.cart_id,
            items=items,
            totals=totals,
            tax_info=tax_info,
            payment=Payment(
                method=instrument.kind,
                instrument_id=instrument.instrument_id,
                last4=instrument.last4,
                brand=instrument.brand,
                amount=final_total,
            ),
            shipping=Shipping(
                mode=shipping.mode,
                address=shipping.address,
                store_id=shipping.store_id,
                cost=shipping_cost,
            ),
            created_at=now,
            updated_at=now,
        )
        order.record_event("creada", "Order created from cart", actor, cart_id=cart.cart_id, total=final_total)
        return order

    def get_item(self, item_id: str) -> OrderItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ValidationError(f"Order {self.number} has no item {item_id}")

    def is_owned_by(self, actor: Actor) -> bool:
        return actor.is_admin or actor.id == self.customer_id

    # payment

    def start_payment_capture(self, actor: Actor | None = None) -> None:
        if self.payment.status != PaymentStatus.PENDING or self.status != OrderStatus.PENDING_PAYMENT:
            self._invalid("start_payment_capture", self.payment.status.value)
        self.payment.status = PaymentStatus.PROCESSING
        self.record_event("pago_procesando", "Payment capture started", actor, method=self.payment.method.value)
        self._touch()

    def approve_payment(self, reference: str | None = None, actor: Actor | None = None) -> None:
        if self.payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            self._invalid("approve_payment", self.payment.status.value)
        if self.status != OrderStatus.PENDING_PAYMENT:
            self._invalid("approve_payment")
        self.payment.status = PaymentStatus.APPROVED
        self.payment.reference = reference
        self.payment.paid_at = utcnow()
        self._change_status(OrderStatus.PAYMENT_APPROVED, "Payment approved", actor, reference=reference)
        self._change_status(OrderStatus.PREPARING, "Order is being prepared", actor)
        for item in self.items:
            item.status = ItemStatus.PREPARING

    def reject_payment(self, reason: str, actor: Actor | None = None) -> None:
        if self.payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            self._invalid("reject_payment", self.payment.status.value)
        if self.status not in (OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_APPROVED):
            self._invalid("reject_payment")
        self.payment.status = PaymentStatus.REJECTED
        self.payment.rejection_reason = reason
        self._change_status(OrderStatus.PAYMENT_FAILED, f"Payment rejected: {reason}", actor, reason=reason)

    def record_stock_confirmation(self, actor: Actor | None = None) -> None:
        self.stock_confirmed = True
        self.record_event(
            "stock_confirmado", "Stock confirmed for all items", actor,
            units=sum(item.quantity for item in self.items),
        )

    # fulfillment

    def mark_ready_to_ship(self, actor: Actor) -> None:
        if self.status != OrderStatus.PREPARING:
            self._invalid("mark_ready_to_ship")
        self._change_status(OrderStatus.READY_TO_SHIP, "Order ready to ship", actor)

    def mark_shipped(self, shipment: ShipmentData, actor: Actor) -> None:
        if self.status not in (OrderStatus.READY_TO_SHIP, OrderStatus.PREPARING):
            self._invalid("mark_shipped")
        if not shipment.tracking_number or not shipment.tracking_number.strip():
            raise ValidationError("A tracking number is required to ship an order")
        self.shipping.tracking_number = shipment.tracking_number.strip()
        self.shipping.carrier = shipment.carrier or self.shipping.carrier
        self.shipping.estimated_delivery = shipment.estimated_delivery or (utcnow() + timedelta(days=5))
        self.shipping.shipped_at = utcnow()
        if shipment.notes:
            self.shipping.notes = shipment.notes
        for item in self.items:
            item.status = ItemStatus.SHIPPED
        self._change_status(
            OrderStatus.SHIPPED, "Order shipped", actor,
            tracking_number=self.shipping.tracking_number, carrier=self.shipping.carrier,
        )

    def mark_in_transit(self, actor: Actor, description: str = "", location: str | None = None) -> None:
        if self.status != OrderStatus.SHIPPED:
            self._invalid("mark_in_transit")
        self._change_status(OrderStatus.IN_TRANSIT, description or "Package in transit", actor, location=location)

    def mark_delivered(self, actor: Actor, delivered_at: datetime | None = None) -> None:
        if self.status not in (OrderStatus.SHIPPED, OrderStatus.IN_TRANSIT):
            self._invalid("mark_delivered")
        self.shipping.delivered_at = as_utc(delivered_at) if delivered_at else utcnow()
        for item in self.items:
            if item.status != ItemStatus.RETURNED:
                item.status = ItemStatus.DELIVERED
        self._change_status(OrderStatus.DELIVERED, "Order delivered", actor)

    # cancellation

    def can_be_cancelled(self) -> bool:
        return self.status not in CANCEL_FORBIDDEN

    def cancel(self, reason: str, requested_by: ActorRole, actor: Actor) -> int:
        """Cancels the order and returns the amount that has to be given back."""
        if not self.can_be_cancelled():
            self._invalid("cancel")
        if actor.role == ActorRole.CUSTOMER and actor.id != self.customer_id:
            raise PermissionDeniedError(f"Order {self.number} does not belong to customer {actor.id}")
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")

        refund_due = 0
        if self.payment.status == PaymentStatus.APPROVED:
            refund_due = self.payment.amount - self.payment.refunded_amount
            self.payment.status = PaymentStatus.REFUNDED
            self.payment.refunded_amount = self.payment.amount
        self.cancellation = Cancellation(
            at=utcnow(), reason=reason.strip(), requested_by=requested_by, actor_id=actor.id,
        )
        for item in self.items:
            item.status = ItemStatus.CANCELLED
        self._change_status(
            OrderStatus.CANCELLED, f"Order cancelled: {reason.strip()}", actor,
            requested_by=requested_by.value, refund_due=refund_due,
        )
        return refund_due

    # returns

    def can_request_return(self, now: datetime | None = None, window_days: int = 8) -> tuple[bool, str]:
        now = as_utc(now) if now else utcnow()
        if self.status != OrderStatus.DELIVERED:
            return False, "Only delivered orders can be returned"
        if self.shipping.delivered_at is None:
            return False, "Order has no delivery date"
        if now - self.shipping.delivered_at > timedelta(days=window_days):
            return False, f"The {window_days}-day return window has expired"
        if not any(item.returnable_quantity > 0 for item in self.items):
            return False, "No items left to return"
        return True, ""

    def reserve_for_return(self, quantities: dict[str, int], return_code: str, actor: Actor) -> None:
        """Holds item quantities for an open return so they cannot be requested twice."""
        for item_id, quantity in quantities.items():
            item = self.get_item(item_id)
            if quantity < 1:
                raise ValidationError(f"Return quantity for item {item_id} must be at least 1")
            if quantity > item.returnable_quantity:
                raise ValidationError(
                    f"Cannot return {quantity} units of '{item.book.title}': "
                    f"only {item.returnable_quantity} returnable"
                )
        for item_id, quantity in quantities.items():
            self.get_item(item_id).return_info.reserved_for_return += quantity
        self.returns_count += 1
        self._refresh_return_status()
        self.record_event(
            "devolucion_solicitada", f"Return {return_code} requested", actor,
            return_code=return_code, items=quantities,
        )
        self._touch()

    def release_return_reservation(self, quantities: dict[str, int], return_code: str, actor: Actor, reason: str = "") -> None:
        for item_id, quantity in quantities.items():
            info = self.get_item(item_id).return_info
            info.reserved_for_return = max(info.reserved_for_return - quantity, 0)
        self._refresh_return_status()
        self.record_event(
            "devolucion_liberada", reason or f"Return {return_code} closed without refund", actor,
            return_code=return_code, items=quantities,
        )
        self._touch()

    def settle_return(self, settlements: list[ReturnSettlement], return_code: str, actor: Actor) -> int:
        """Books a finished return refund on the order; returns the refunded total."""
        refunded = sum(s.refund_amount for s in settlements)
        if refunded > 0 and self.payment.status not in REFUNDABLE_PAYMENT:
            self._invalid("settle_return", self.payment.status.value)
        if self.payment.refunded_amount + refunded > self.payment.amount:
            raise ValidationError(
                f"Refund of {refunded} exceeds the remaining paid amount of order {self.number}"
            )
        for settlement in settlements:
            item = self.get_item(settlement.item_id)
            info = item.return_info
            info.reserved_for_return = max(info.reserved_for_return - settlement.quantity, 0)
            if settlement.refund_amount > 0:
                info.returned_quantity += settlement.quantity
                info.refunded_amount += settlement.refund_amount
                item.status = (
                    ItemStatus.RETURNED if info.returned_quantity >= item.quantity
                    else ItemStatus.PARTIALLY_RETURNED
                )
        if refunded > 0:
            self.payment.refunded_amount += refunded
            self.payment.status = (
                PaymentStatus.REFUNDED if self.payment.refunded_amount >= self.payment.amount
                else PaymentStatus.PARTIALLY_REFUNDED
            )
        self._refresh_return_status()
        self.record_event(
            "devolucion_reembolsada", f"Return {return_code} refunded", actor,
            return_code=return_code, amount=refunded,
            payment_status=self.payment.status.value,
        )
        self._touch()
        return refunded

    def add_internal_note(self, note: str, actor: Actor) -> None:
        if not note or not note.strip():
            raise ValidationError("Note must not be empty")
        self.internal_notes.append(InternalNote(at=utcnow(), note=note.strip(), actor_id=actor.id))
        self._touch()

    def _refresh_return_status(self) -> None:
        returned = sum(item.return_info.returned_quantity for item in self.items)
        reserved = sum(item.return_info.reserved_for_return for item in self.items)
        purchased = sum(item.quantity for item in self.items)
        if reserved > 0:
            self.return_status = OrderReturnStatus.REQUESTED
        elif returned >= purchased:
            self.return_status = OrderReturnStatus.COMPLETED
        elif returned > 0:
            self.return_status = OrderReturnStatus.PARTIAL
        else:
            self.return_status = OrderReturnStatus.NONE

    def _change_status(self, new_status: OrderStatus, description: str, actor: Actor | None, **metadata) -> None:
        previous = self.status
        self.status = new_status
        self.record_event(
            new_status.value, description, actor,
            previous_status=previous.value, **metadata,
        )
        self._touch()

    def _touch(self) -> None:
        self.updated_at = utcnow()

    def _invalid(self, operation: str, state: str | None = None):
        raise InvalidStateError("Order", state or self.status.value, operation)
