"""Return aggregate: per-item return requests, inspection and refund state."""
import secrets
import string
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from bookstore.domain.exceptions import (
    InvalidStateError,
    PermissionDeniedError,
    ValidationError,
)
from bookstore.domain.history import Actor, ActorRole, HistoryMixin, utcnow
from bookstore.domain.money import percent_of
from bookstore.domain.order import Order, ReturnSettlement


class ReturnStatus(str, Enum):
    REQUESTED = "solicitada"
    APPROVED = "aprobada"
    REJECTED = "rechazada"
    AWAITING_SHIPMENT = "esperando_envio"
    IN_TRANSIT = "en_transito"
    RECEIVED = "recibida"
    INSPECTING = "en_inspeccion"
    REFUND_APPROVED = "reembolso_aprobado"
    REFUND_PROCESSING = "reembolso_procesando"
    REFUND_COMPLETED = "reembolso_completado"
    CLOSED = "cerrada"
    CANCELLED = "cancelada"


class ReturnItemStatus(str, Enum):
    REQUESTED = "solicitado"
    APPROVED = "aprobado"
    REJECTED = "rechazado"
    RECEIVED = "recibido"
    INSPECTED = "inspeccionado"
    REFUNDED = "reembolsado"


class ReturnReason(str, Enum):
    DAMAGED = "producto_dañado"
    WRONG_PRODUCT = "producto_incorrecto"
    NOT_AS_DESCRIBED = "no_coincide_descripcion"
    NOT_SATISFIED = "no_satisfecho"
    PURCHASE_ERROR = "error_compra"
    NOT_ARRIVED = "producto_no_llego"
    OTHER = "otro"


class InspectionOutcome(str, Enum):
    APPROVED = "aprobado"
    REJECTED = "rechazado"
    PARTIALLY_APPROVED = "aprobado_parcial"


class RefundMethod(str, Enum):
    ORIGINAL_CARD = "tarjeta_original"
    STORE_CREDIT = "credito_tienda"
    TRANSFER = "transferencia"


class DocumentKind(str, Enum):
    PRODUCT_PHOTO = "foto_producto"
    VIDEO = "video"
    RECEIPT = "comprobante"
    OTHER = "otro"


TERMINAL_STATES = {ReturnStatus.CLOSED, ReturnStatus.CANCELLED}
CANCEL_FORBIDDEN = {
    ReturnStatus.REJECTED,
    ReturnStatus.REFUND_PROCESSING,
    ReturnStatus.REFUND_COMPLETED,
    ReturnStatus.CLOSED,
    ReturnStatus.CANCELLED,
}


class ReturnSelection(BaseModel):
    """Customer choice of one order item to send back"""
    item_id: str
    quantity: int = Field(ge=1)
    reason: ReturnReason
    description: str = ""


class Inspection(BaseModel):
    at: datetime
    outcome: InspectionOutcome
    refund_percent: int
    notes: str = ""
    inspector_id: str | None = None


class ReturnItem(BaseModel):
    id: str
    order_item_id: str
    product_id: str
    title: str
    author: str = ""
    isbn: str = ""
    unit_paid: int
    purchased_quantity: int
    quantity: int
    reason: ReturnReason
    description: str = ""
    status: ReturnItemStatus = ReturnItemStatus.REQUESTED
    inspection: Inspection | None = None
    refund_amount: int = 0

    @property
    def requested_amount(self) -> int:
        return self.unit_paid * self.quantity


class ReturnTotals(BaseModel):
    order_total: int
    requested_amount: int
    approved_amount: int = 0
    refunded_amount: int = 0


class ReturnShipment(BaseModel):
    carrier: str | None = None
    tracking_number: str | None = None
    shipped_at: datetime | None = None
    received_at: datetime | None = None
    received_by: str | None = None
    package_condition: str = ""
    notes: str = ""


class QRInfo(BaseModel):
    token: str
    tracking_url: str
    generated_at: datetime


class RefundInfo(BaseModel):
    method: RefundMethod | None = None
    instrument_id: str | None = None
    reference: str | None = None
    approved_at: datetime | None = None
    processing_at: datetime | None = None
    completed_at: datetime | None = None
    notes: str = ""
    needs_retry: bool = False
    last_error: str | None = None
    attempts: int = 0


class RefundRequest(BaseModel):
    method: RefundMethod = RefundMethod.ORIGINAL_CARD
    instrument_id: str | None = None
    reference: str | None = None
    notes: str = ""


class ReceiptData(BaseModel):
    package_condition: str = ""
    notes: str = ""


class Document(BaseModel):
    kind: DocumentKind
    url: str
    filename: str = ""
    uploaded_at: datetime
    uploaded_by: ActorRole


class Communication(BaseModel):
    at: datetime
    kind: str
    subject: str
    message: str
    actor_id: str | None = None


class Return(HistoryMixin):
    """Aggregate Root: the return and refund record"""
    id: str
    code: str
    order_id: str
    order_number: str
    customer_id: str
    items: list[ReturnItem]
    totals: ReturnTotals
    status: ReturnStatus = ReturnStatus.REQUESTED
    shipment: ReturnShipment = Field(default_factory=ReturnShipment)
    qr: QRInfo
    refund: RefundInfo = Field(default_factory=RefundInfo)
    documents: list[Document] = Field(default_factory=list)
    communications: list[Communication] = Field(default_factory=list)
    requested_at: datetime
    shipping_deadline: datetime
    resolved_at: datetime | None = None
    admin_notes: str = ""
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    updated_at: datetime

    @staticmethod
    def generate_code(now: datetime | None = None) -> str:
        now = now or utcnow()
        suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
        return f"DEV-{now:%Y%m%d}-{suffix}"

    @classmethod
    def create_from_order(
        cls,
        return_id: str,
        order: Order,
        selections: list[ReturnSelection],
        actor: Actor,
        tracking_base_url: str,
        shipping_deadline_days: int = 15,
        now: datetime | None = None,
    ) -> "Return":
        now = now or utcnow()
        if not selections:
            raise ValidationError("A return needs at least one item")
        seen = set()
        items = []
        for index, selection in enumerate(selections, start=1):
            if selection.item_id in seen:
                raise ValidationError(f"Item {selection.item_id} is listed twice")
            seen.add(selection.item_id)
            order_item = order.get_item(selection.item_id)
            if selection.quantity > order_item.returnable_quantity:
                raise ValidationError(
                    f"Cannot return {selection.quantity} units of '{order_item.book.title}': "
                    f"only {order_item.returnable_quantity} returnable"
                )
            items.append(ReturnItem(
                id=f"{return_id}-{index}",
                order_item_id=order_item.id,
                product_id=order_item.product_id,
                title=order_item.book.title,
                author=order_item.book.author,
                isbn=order_item.book.isbn,
                unit_paid=order_item.unit_paid,
                purchased_quantity=order_item.quantity,
                quantity=selection.quantity,
                reason=selection.reason,
                description=selection.description,
            ))

        code = cls.generate_code(now)
        returned = cls(
            id=return_id,
            code=code,
            order_id=order.id,
            order_number=order.number,
            customer_id=order.customer_id,
            items=items,
            totals=ReturnTotals(
                order_total=order.totals.final_total,
                requested_amount=sum(item.requested_amount for item in items),
            ),
            qr=QRInfo(
                token=f"QR-{code}",
                tracking_url=f"{tracking_base_url.rstrip('/')}/devolucion/rastreo/{code}",
                generated_at=now,
            ),
            requested_at=now,
            shipping_deadline=now + timedelta(days=shipping_deadline_days),
            updated_at=now,
        )
        returned.record_event(
            ReturnStatus.REQUESTED.value, f"Return requested for order {order.number}", actor,
            requested_amount=returned.totals.requested_amount,
        )
        return returned

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def is_open(self) -> bool:
        """False once closed, cancelled or rejected."""
        return not self.is_terminal and self.status != ReturnStatus.REJECTED

    def get_item(self, item_id: str) -> ReturnItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ValidationError(f"Return {self.code} has no item {item_id}")

    def quantities_by_order_item(self) -> dict[str, int]:
        return {item.order_item_id: item.quantity for item in self.items}

    def settlements(self) -> list[ReturnSettlement]:
        return [
            ReturnSettlement(item_id=item.order_item_id, quantity=item.quantity, refund_amount=item.refund_amount)
            for item in self.items
        ]

    def ensure_visible_to(self, actor: Actor) -> None:
        if not actor.is_admin and actor.id != self.customer_id:
            raise PermissionDeniedError(f"Return {self.code} does not belong to customer {actor.id}")

    def approve(self, actor: Actor, notes: str = "") -> None:
        self._require({ReturnStatus.REQUESTED}, "approve")
        self._require_admin(actor, "approve")
        for item in self.items:
            item.status = ReturnItemStatus.APPROVED
        self.admin_notes = notes
        self._change_status(ReturnStatus.APPROVED, notes or "Return approved", actor)
        self._change_status(
            ReturnStatus.AWAITING_SHIPMENT, "Waiting for the customer to ship the items", actor,
            shipping_deadline=self.shipping_deadline.isoformat(),
        )

    def reject(self, actor: Actor, reason: str) -> None:
        self._require({ReturnStatus.REQUESTED}, "reject")
        self._require_admin(actor, "reject")
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        for item in self.items:
            item.status = ReturnItemStatus.REJECTED
        self.rejection_reason = reason.strip()
        self.resolved_at = utcnow()
        self._change_status(ReturnStatus.REJECTED, f"Return rejected: {reason.strip()}", actor)

    def mark_in_transit(self, actor: Actor, carrier: str, tracking_number: str) -> None:
        self._require({ReturnStatus.AWAITING_SHIPMENT}, "mark_in_transit")
        self.ensure_visible_to(actor)
        if not tracking_number or not tracking_number.strip():
            raise ValidationError("A tracking number is required")
        self.shipment.carrier = carrier
        self.shipment.tracking_number = tracking_number.strip()
        self.shipment.shipped_at = utcnow()
        self._change_status(
            ReturnStatus.IN_TRANSIT, "Return package shipped", actor,
            carrier=carrier, tracking_number=self.shipment.tracking_number,
        )

    def mark_received(self, actor: Actor, receipt: ReceiptData | None = None) -> None:
        self._require({ReturnStatus.AWAITING_SHIPMENT, ReturnStatus.IN_TRANSIT}, "mark_received")
        self._require_admin(actor, "mark_received")
        receipt = receipt or ReceiptData()
        self.shipment.received_at = utcnow()
        self.shipment.received_by = actor.id
        self.shipment.package_condition = receipt.package_condition
        self.shipment.notes = receipt.notes
        for item in self.items:
            if item.status == ReturnItemStatus.APPROVED:
                item.status = ReturnItemStatus.RECEIVED
        self._change_status(ReturnStatus.RECEIVED, "Return package received", actor)
        self._change_status(ReturnStatus.INSPECTING, "Inspection started", actor)

    def inspect_item(
        self,
        item_id: str,
        outcome: InspectionOutcome,
        actor: Actor,
        notes: str = "",
        refund_percent: int | None = None,
    ) -> ReturnItem:
        self._require({ReturnStatus.INSPECTING}, "inspect_item")
        self._require_admin(actor, "inspect_item")
        item = self.get_item(item_id)
        if item.inspection is not None:
            raise InvalidStateError("ReturnItem", item.status.value, "inspect_item", f"Item {item_id} was already inspected")

        if outcome == InspectionOutcome.APPROVED:
            percent = 100 if refund_percent is None else refund_percent
        elif outcome == InspectionOutcome.REJECTED:
            percent = 0
        else:
            if refund_percent is None:
                raise ValidationError("A partial approval needs a refund percentage")
            percent = refund_percent
        if not 0 <= percent <= 100:
            raise ValidationError(f"Refund percentage must be between 0 and 100, got {percent}")

        item.inspection = Inspection(
            at=utcnow(), outcome=outcome, refund_percent=percent, notes=notes, inspector_id=actor.id,
        )
        item.refund_amount = percent_of(item.requested_amount, percent)
        item.status = ReturnItemStatus.INSPECTED
        self.record_event(
            "item_inspeccionado", f"Item '{item.title}' inspected: {outcome.value}", actor,
            item_id=item.id, outcome=outcome.value, refund_percent=percent, refund_amount=item.refund_amount,
        )
        self.updated_at = utcnow()

        if all(i.inspection is not None for i in self.items):
            self.totals.approved_amount = sum(i.refund_amount for i in self.items)
            if self.totals.approved_amount > 0:
                self.refund.approved_at = utcnow()
                self._change_status(
                    ReturnStatus.REFUND_APPROVED, "Refund approved", actor,
                    approved_amount=self.totals.approved_amount,
                )
            else:
                self.resolved_at = utcnow()
                self._change_status(ReturnStatus.CLOSED, "Inspection finished with nothing to refund", actor)
        return item

    def process_refund(self, refund: RefundRequest, actor: Actor) -> None:
        self._require({ReturnStatus.REFUND_APPROVED}, "process_refund")
        self.refund.method = refund.method
        self.refund.instrument_id = refund.instrument_id
        self.refund.reference = refund.reference
        self.refund.notes = refund.notes
        self.refund.processing_at = utcnow()
        self.refund.attempts += 1
        self.refund.needs_retry = False
        self.refund.last_error = None
        self._change_status(
            ReturnStatus.REFUND_PROCESSING, "Refund in progress", actor,
            amount=self.totals.approved_amount, reference=refund.reference,
        )

    def mark_refund_failed(self, error: str, actor: Actor) -> None:
        self._require({ReturnStatus.REFUND_PROCESSING}, "mark_refund_failed")
        self.refund.needs_retry = True
        self.refund.last_error = error
        self.record_event("reembolso_fallido", f"Refund failed: {error}", actor, attempts=self.refund.attempts)
        self.updated_at = utcnow()

    def begin_refund_retry(self, actor: Actor) -> None:
        self._require({ReturnStatus.REFUND_PROCESSING}, "retry_refund")
        self._require_admin(actor, "retry_refund")
        self.refund.attempts += 1
        self.record_event("reembolso_reintento", "Refund retried", actor, attempts=self.refund.attempts)
        self.updated_at = utcnow()

    def complete_refund(self, actor: Actor, reference: str | None = None) -> None:
        self._require({ReturnStatus.REFUND_PROCESSING}, "complete_refund")
        self.totals.refunded_amount = self.totals.approved_amount
        now = utcnow()
        self.refund.completed_at = now
        self.refund.needs_retry = False
        self.refund.last_error = None
        if reference:
            self.refund.reference = reference
        for item in self.items:
            if item.refund_amount > 0:
                item.status = ReturnItemStatus.REFUNDED
        self._change_status(
            ReturnStatus.REFUND_COMPLETED, "Refund completed", actor,
            amount=self.totals.refunded_amount, reference=self.refund.reference,
        )
        self.resolved_at = now
        self._change_status(ReturnStatus.CLOSED, "Return closed", actor)

    def cancel(self, actor: Actor, reason: str) -> None:
        if self.status in CANCEL_FORBIDDEN:
            self._invalid("cancel")
        self.ensure_visible_to(actor)
        self.cancellation_reason = reason or "Cancelled"
        self.resolved_at = utcnow()
        self._change_status(ReturnStatus.CANCELLED, f"Return cancelled: {self.cancellation_reason}", actor)

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.status == ReturnStatus.AWAITING_SHIPMENT and now > self.shipping_deadline

    def add_document(self, kind: DocumentKind, url: str, actor: Actor, filename: str = "") -> Document:
        if self.is_terminal:
            self._invalid("add_document")
        self.ensure_visible_to(actor)
        if not url:
            raise ValidationError("Document url is required")
        uploaded_by = ActorRole.CUSTOMER if actor.role == ActorRole.CUSTOMER else ActorRole.ADMIN
        document = Document(kind=kind, url=url, filename=filename, uploaded_at=utcnow(), uploaded_by=uploaded_by)
        self.documents.append(document)
        self.record_event("documento_agregado", f"Document {kind.value} attached", actor, url=url)
        self.updated_at = utcnow()
        return document

    def add_communication(self, kind: str, subject: str, message: str, actor: Actor) -> None:
        self.communications.append(Communication(
            at=utcnow(), kind=kind, subject=subject, message=message, actor_id=actor.id,
        ))
        self.updated_at = utcnow()

    def _require(self, allowed: set[ReturnStatus], operation: str) -> None:
        if self.status not in allowed:
            self._invalid(operation)

    def _require_admin(self, actor: Actor, operation: str) -> None:
        if not actor.is_admin:
            raise PermissionDeniedError(f"Only administrators may {operation.replace('_', ' ')} a return")

    def _change_status(self, new_status: ReturnStatus, description: str, actor: Actor | None, **metadata) -> None:
        previous = self.status
        self.status = new_status
        self.record_event(new_status.value, description, actor, previous_status=previous.value, **metadata)
        self.updated_at = utcnow()

    def _invalid(self, operation: str):
        raise InvalidStateError("Return", self.status.value, operation)
