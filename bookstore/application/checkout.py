import logging
import uuid

from pydantic import BaseModel

from bookstore.application.interfaces import CatalogService
from bookstore.application.payments import PaymentInstrumentService, PaymentReceipt
from bookstore.application.side_effects import (
    enqueue_audit,
    enqueue_history,
    enqueue_movement,
    enqueue_notification,
)
from bookstore.domain.cart import CartSnapshot
from bookstore.domain.exceptions import (
    EmptyCartError,
    ExternalProcessorError,
    InsufficientStockError,
    StockShortfall,
    StorageError,
    ValidationError,
)
from bookstore.domain.history import Actor, ActorRole
from bookstore.domain.inventory import InventoryRecord
from bookstore.domain.money import format_amount
from bookstore.domain.order import BookSnapshot, Order, ShippingSelection


logger = logging.getLogger(__name__)


class CheckoutDTO(BaseModel):
    customer_id: str
    instrument_id: str
    shipping: ShippingSelection
    tax_paid_separately: bool = False


class CheckoutUseCase:
    def __init__(
        self,
        unit_of_work,
        catalog_service: CatalogService,
        payment_service: PaymentInstrumentService,
        home_delivery_fee: int,
    ):
        self._uow = unit_of_work
        self._catalog = catalog_service
        self._payments = payment_service
        self._home_delivery_fee = home_delivery_fee

    async def __call__(self, data: CheckoutDTO) -> Order:
        logger.info(f"Checkout for customer {data.customer_id}")
        data.shipping.validate_for_checkout()
        actor = Actor(id=data.customer_id, role=ActorRole.CUSTOMER)
        order_id = str(uuid.uuid4())
        receipt: PaymentReceipt | None = None
        rejected: Order | None = None

        try:
            async with self._uow() as uow:
                # 1. Active cart
                cart = await uow.carts.load_active(data.customer_id, for_update=True)
                if cart is None or cart.is_empty:
                    raise EmptyCartError(f"Customer {data.customer_id} has no active cart with items")

                # 2. Stock check and reservation in the same unit of work
                records = await self._reserve_stock(uow, cart, order_id, actor)

                # 3. Frozen catalog data
                books = await self._load_books(cart, records)

                # 4. Payment instrument
                instrument = await self._payments.validate(uow, data.instrument_id, data.customer_id)

                # 5. Order with frozen totals
                order = Order.create_from_cart(
                    order_id=order_id,
                    cart=cart,
                    books=books,
                    shipping=data.shipping,
                    instrument=instrument.info(),
                    shipping_fee=self._home_delivery_fee,
                    tax_paid_separately=data.tax_paid_separately,
                    actor=actor,
                )
                amount = order.totals.final_total
                instrument.ensure_funds(amount)

                # 6. Capture
                order.start_payment_capture(actor)
                try:
                    receipt = await self._payments.withdraw(
                        uow, instrument, amount, memo=f"Purchase {order.number}", order_id=order.id, actor=actor,
                    )
                except ExternalProcessorError as e:
                    order.reject_payment(str(e), actor)
                    rejected = order
                    raise

                # 7. Approve
                order.approve_payment(receipt.reference, actor)

                # 8. Reservations become confirmed sales
                quantities = cart.requested_quantities()
                for product_id, record in records.items():
                    movement = record.confirm_sale(quantities[product_id], actor, order_id=order.id, reservation_id=order.id)
                    await uow.inventory.save(record)
                    await enqueue_movement(uow, "inventory", record.product_id, movement, actor)
                order.record_stock_confirmation(actor)

                # 9. Cart is emptied and converted
                await uow.carts.clear(cart.cart_id)

                await uow.orders.add(order)
                await enqueue_history(uow, "order", order)
                await enqueue_notification(
                    uow,
                    kind="compra_confirmada",
                    user_id=order.customer_id,
                    reference_id=order.id,
                    message=f"Your order {order.number} was confirmed. Total: {format_amount(amount)}",
                    data={"number": order.number, "total": amount},
                )
                await uow.commit()
        except Exception:
            if receipt is not None and rejected is None:
                await self._payments.compensate(receipt, reason=f"checkout of order {order_id} did not commit")
            if rejected is not None:
                await self._record_rejection(rejected, actor)
            raise

        logger.info(
            f"Order {order.number} created for customer {order.customer_id}, "
            f"total {amount}, payment {order.payment.method.value}"
        )
        return order

    async def _reserve_stock(self, uow, cart: CartSnapshot, order_id: str, actor: Actor) -> dict[str, InventoryRecord]:
        records: dict[str, InventoryRecord] = {}
        shortfalls: list[StockShortfall] = []
        for product_id, requested in cart.requested_quantities().items():
            record = await uow.inventory.get(product_id, for_update=True)
            if record is None:
                shortfalls.append(StockShortfall(product_id, "", requested, 0, 0))
                continue
            shortfall = record.shortfall_for(requested)
            if shortfall:
                shortfalls.append(shortfall)
                continue
            records[product_id] = record

        if shortfalls:
            logger.info(f"Checkout rejected for lack of stock: {'; '.join(str(s) for s in shortfalls)}")
            raise InsufficientStockError(shortfalls)

        for product_id, record in records.items():
            movement = record.reserve(
                cart.requested_quantities()[product_id], actor, reservation_id=order_id, order_id=order_id,
            )
            await enqueue_movement(uow, "inventory", record.product_id, movement, actor)
        return records

    async def _load_books(self, cart: CartSnapshot, records: dict[str, InventoryRecord]) -> dict[str, BookSnapshot]:
        books = {}
        for product_id in cart.requested_quantities():
            book = await self._catalog.get_book(product_id)
            if book is None:
                raise ValidationError(f"Product {product_id} ({records[product_id].title}) is no longer in the catalog")
            books[product_id] = book
        return books

    async def _record_rejection(self, order: Order, actor: Actor) -> None:
        """The rolled back order leaves only an audit trace of the rejection."""
        try:
            async with self._uow() as uow:
                await enqueue_audit(
                    uow,
                    action="order.payment_rejected",
                    aggregate_type="order",
                    aggregate_id=order.id,
                    actor=actor,
                    data={
                        "number": order.number,
                        "amount": order.totals.final_total,
                        "reason": order.payment.rejection_reason,
                        "status": order.status.value,
                    },
                )
                await uow.commit()
        except StorageError as e:
            logger.error(f"Could not record payment rejection of order {order.number}: {e}")
        logger.warning(f"Payment rejected for order {order.number}: {order.payment.rejection_reason}")
