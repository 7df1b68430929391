from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from bookstore.domain.balance import BalanceMovement, PaymentInstrument
from bookstore.domain.history import Actor, ActorRole, HistoryEvent
from bookstore.domain.inventory import InventoryRecord
from bookstore.domain.order import Address, Order, OrderStatus, ShippingMode, Shipping, TaxInfo, Totals
from bookstore.domain.returns import (
    DocumentKind,
    InspectionOutcome,
    RefundInfo,
    RefundMethod,
    Return,
    ReturnItem,
    ReturnSelection,
    ReturnTotals,
)


class ActorRequest(BaseModel):
    actor_id: Optional[str] = None
    actor_role: ActorRole = ActorRole.CUSTOMER

    def actor(self) -> Actor:
        return Actor(id=self.actor_id, role=self.actor_role)


class CheckoutRequest(BaseModel):
    customer_id: str
    instrument_id: str
    shipping_mode: ShippingMode
    address: Optional[Address] = None
    store_id: Optional[str] = None
    tax_paid_separately: bool = False


class CancelOrderRequest(ActorRequest):
    reason: str


class ShippingUpdateRequest(ActorRequest):
    status: OrderStatus
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    description: str = ""
    note: Optional[str] = None


class CreateReturnRequest(ActorRequest):
    items: list[ReturnSelection] = Field(min_length=1)


class ApproveReturnRequest(ActorRequest):
    notes: str = ""


class RejectReturnRequest(ActorRequest):
    reason: str


class ReturnShipmentRequest(ActorRequest):
    carrier: str = ""
    tracking_number: str


class ReceiveReturnRequest(ActorRequest):
    package_condition: str = ""
    notes: str = ""


class InspectionRequest(ActorRequest):
    outcome: InspectionOutcome
    notes: str = ""
    refund_percent: Optional[int] = None


class CancelReturnRequest(ActorRequest):
    reason: str = ""


class DocumentRequest(ActorRequest):
    kind: DocumentKind
    url: str
    filename: str = ""


class RefundRequestBody(ActorRequest):
    method: RefundMethod = RefundMethod.ORIGINAL_CARD
    instrument_id: Optional[str] = None
    notes: str = ""


class DepositRequest(ActorRequest):
    amount: int
    memo: str = ""
    adjustment: bool = False


class StockEntryRequest(ActorRequest):
    quantity: int = Field(gt=0)
    title: str = ""
    notes: str = ""


class QRValidationRequest(BaseModel):
    token: str


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    title: str
    author: str
    isbn: str
    quantity: int
    unit_price: int
    unit_discount: int
    unit_tax: int
    unit_paid: int
    subtotal: int
    status: str
    returned_quantity: int
    refunded_amount: int


class PaymentResponse(BaseModel):
    method: str
    last4: str
    brand: str
    status: str
    amount: int
    reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_amount: int


class OrderResponse(BaseModel):
    id: str
    number: str
    customer_id: str
    status: OrderStatus
    items: list[OrderItemResponse]
    totals: Totals
    tax_info: TaxInfo
    payment: PaymentResponse
    shipping: Shipping
    return_status: str
    cancellation_reason: Optional[str] = None
    history: list[HistoryEvent]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order: Order):
        return cls(
            id=order.id,
            number=order.number,
            customer_id=order.customer_id,
            status=order.status,
            items=[
                OrderItemResponse(
                    id=item.id,
                    product_id=item.product_id,
                    title=item.book.title,
                    author=item.book.author,
                    isbn=item.book.isbn,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    unit_discount=item.unit_discount,
                    unit_tax=item.unit_tax,
                    unit_paid=item.unit_paid,
                    subtotal=item.subtotal,
                    status=item.status.value,
                    returned_quantity=item.return_info.returned_quantity,
                    refunded_amount=item.return_info.refunded_amount
                )
                for item in order.items
            ],
            totals=order.totals,
            tax_info=order.tax_info,
            payment=PaymentResponse(
                method=order.payment.method.value,
                last4=order.payment.last4,
                brand=order.payment.brand,
                status=order.payment.status.value,
                amount=order.payment.amount,
                reference=order.payment.reference,
                paid_at=order.payment.paid_at,
                refunded_amount=order.payment.refunded_amount
            ),
            shipping=order.shipping,
            return_status=order.return_status.value,
            cancellation_reason=order.cancellation.reason if order.cancellation else None,
            history=order.history,
            created_at=order.created_at,
            updated_at=order.updated_at
        )


class ReturnResponse(BaseModel):
    id: str
    code: str
    order_number: str
    customer_id: str
    status: str
    items: list[ReturnItem]
    totals: ReturnTotals
    refund: RefundInfo
    qr_token: str
    tracking_url: str
    shipping_deadline: datetime
    history: list[HistoryEvent]

    @classmethod
    def from_domain(cls, returned: Return):
        return cls(
            id=returned.id,
            code=returned.code,
            order_number=returned.order_number,
            customer_id=returned.customer_id,
            status=returned.status.value,
            items=returned.items,
            totals=returned.totals,
            refund=returned.refund,
            qr_token=returned.qr.token,
            tracking_url=returned.qr.tracking_url,
            shipping_deadline=returned.shipping_deadline,
            history=returned.history
        )


class OrderDetailResponse(OrderResponse):
    returns: list[ReturnResponse] = []


class BalanceResponse(BaseModel):
    instrument_id: str
    balance: int
    movement: BalanceMovement

    @classmethod
    def from_domain(cls, instrument: PaymentInstrument, movement: BalanceMovement):
        return cls(instrument_id=instrument.id, balance=instrument.balance, movement=movement)


class StockResponse(BaseModel):
    product_id: str
    title: str
    total: int
    reserved: int
    available: int
    status: str

    @classmethod
    def from_domain(cls, record: InventoryRecord):
        return cls(
            product_id=record.product_id,
            title=record.title,
            total=record.total,
            reserved=record.reserved,
            available=record.available,
            status=record.status.value
        )


class ErrorResponse(BaseModel):
    detail: str
