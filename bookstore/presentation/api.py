from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Optional

from bookstore.presentation.schemas import (
    ActorRequest, CheckoutRequest, CancelOrderRequest, ShippingUpdateRequest, CreateReturnRequest,
    ApproveReturnRequest, RejectReturnRequest, ReturnShipmentRequest, ReceiveReturnRequest,
    InspectionRequest, CancelReturnRequest, DocumentRequest, RefundRequestBody, DepositRequest,
    StockEntryRequest, QRValidationRequest, OrderResponse, OrderDetailResponse, ReturnResponse,
    BalanceResponse, StockResponse, ErrorResponse
)
from bookstore.application.checkout import CheckoutUseCase, CheckoutDTO
from bookstore.application.cancel_order import CancelOrderUseCase, CancelOrderDTO
from bookstore.application.create_return import CreateReturnUseCase, CreateReturnDTO
from bookstore.application.get_order import GetOrderUseCase, ListCustomerOrdersUseCase
from bookstore.application.ledger import (
    DepositFundsUseCase, DepositFundsDTO, RegisterStockEntryUseCase, RegisterStockEntryDTO
)
from bookstore.application.manage_return import (
    ApproveReturnUseCase, ApproveReturnDTO, RejectReturnUseCase, RejectReturnDTO,
    MarkReturnInTransitUseCase, MarkReturnInTransitDTO, ReceiveReturnUseCase, ReceiveReturnDTO,
    InspectReturnItemUseCase, InspectReturnItemDTO, CancelReturnUseCase, CancelReturnDTO,
    AddReturnDocumentUseCase, AddReturnDocumentDTO, load_return
)
from bookstore.application.order_fulfillment import UpdateShippingStatusUseCase, UpdateShippingStatusDTO
from bookstore.application.payments import PaymentInstrumentService
from bookstore.application.process_refund import (
    ProcessRefundUseCase, ProcessRefundDTO, RetryRefundUseCase, RetryRefundDTO
)
from bookstore.application.tracking import TrackingUseCase, OrderTracking, ReturnTracking, QRValidation
from bookstore.domain.exceptions import (
    DomainException, ValidationError, EmptyCartError, PermissionDeniedError, NotFoundError,
    InvalidStateError, ConcurrencyError, InsufficientStockError, InsufficientFundsError,
    PaymentInstrumentError, ExternalProcessorError, CatalogServiceError
)
from bookstore.domain.history import Actor, ActorRole
from bookstore.domain.order import ShippingSelection
from bookstore.domain.returns import ReceiptData
from bookstore.infrastructure.unit_of_work import UnitOfWork

router = APIRouter()

ERROR_STATUS = [
    ((ValidationError, EmptyCartError), status.HTTP_400_BAD_REQUEST),
    ((PermissionDeniedError,), status.HTTP_403_FORBIDDEN),
    ((NotFoundError,), status.HTTP_404_NOT_FOUND),
    ((InvalidStateError, ConcurrencyError), status.HTTP_409_CONFLICT),
    ((InsufficientStockError, InsufficientFundsError, PaymentInstrumentError), status.HTTP_422_UNPROCESSABLE_ENTITY),
    ((ExternalProcessorError, CatalogServiceError), status.HTTP_502_BAD_GATEWAY),
]
ERRORS = {code: {"model": ErrorResponse} for code in (400, 403, 404, 409, 422, 502)}


def http_error(e: DomainException) -> HTTPException:
    """Domain error → HTTP error"""
    code = status.HTTP_503_SERVICE_UNAVAILABLE
    for kinds, mapped in ERROR_STATUS:
        if isinstance(e, kinds):
            code = mapped
            break
    if isinstance(e, InsufficientStockError):
        return HTTPException(
            status_code=code,
            detail={"message": str(e), "shortfalls": [s.as_dict() for s in e.shortfalls]}
        )
    return HTTPException(status_code=code, detail=str(e))


# Use case factories
def get_uow(request: Request) -> UnitOfWork:
    return UnitOfWork(request.app.state.session_factory)


def get_payment_service(request: Request) -> PaymentInstrumentService:
    return PaymentInstrumentService(request.app.state.payment_processor)


def get_checkout_use_case(
    request: Request,
    uow: UnitOfWork = Depends(get_uow),
    payments: PaymentInstrumentService = Depends(get_payment_service)
):
    settings = request.app.state.settings
    return CheckoutUseCase(uow, request.app.state.catalog, payments, settings.HOME_DELIVERY_FEE)


def get_cancel_order_use_case(
    uow: UnitOfWork = Depends(get_uow),
    payments: PaymentInstrumentService = Depends(get_payment_service)
):
    return CancelOrderUseCase(uow, payments)


def get_create_return_use_case(request: Request, uow: UnitOfWork = Depends(get_uow)):
    settings = request.app.state.settings
    return CreateReturnUseCase(
        uow, settings.SERVICE_URL, settings.RETURN_WINDOW_DAYS, settings.RETURN_SHIPPING_DEADLINE_DAYS
    )


def get_process_refund_use_case(
    uow: UnitOfWork = Depends(get_uow),
    payments: PaymentInstrumentService = Depends(get_payment_service)
):
    return ProcessRefundUseCase(uow, payments)


def get_retry_refund_use_case(
    uow: UnitOfWork = Depends(get_uow),
    payments: PaymentInstrumentService = Depends(get_payment_service)
):
    return RetryRefundUseCase(uow, payments)


def query_actor(actor_id: Optional[str] = None, actor_role: ActorRole = ActorRole.CUSTOMER) -> Actor:
    return Actor(id=actor_id, role=actor_role)


@router.post("/checkout", response_model=OrderResponse, responses=ERRORS, status_code=status.HTTP_201_CREATED)
async def checkout(request: CheckoutRequest, use_case: CheckoutUseCase = Depends(get_checkout_use_case)):
    """Turn the customer's active cart into a paid order"""
    try:
        dto = CheckoutDTO(
            customer_id=request.customer_id,
            instrument_id=request.instrument_id,
            shipping=ShippingSelection(
                mode=request.shipping_mode,
                address=request.address,
                store_id=request.store_id
            ),
            tax_paid_separately=request.tax_paid_separately
        )
        order = await use_case(dto)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise http_error(e)


@router.get("/orders/{number}", response_model=OrderDetailResponse, responses=ERRORS)
async def get_order(number: str, actor: Actor = Depends(query_actor), uow: UnitOfWork = Depends(get_uow)):
    """Order with its returns"""
    try:
        view = await GetOrderUseCase(uow)(number, actor)
        return OrderDetailResponse(
            **OrderResponse.from_domain(view.order).model_dump(),
            returns=[ReturnResponse.from_domain(r) for r in view.returns]
        )
    except DomainException as e:
        raise http_error(e)


@router.get("/customers/{customer_id}/orders", response_model=list[OrderResponse], responses=ERRORS)
async def list_customer_orders(
    customer_id: str,
    limit: int = 20,
    offset: int = 0,
    actor: Actor = Depends(query_actor),
    uow: UnitOfWork = Depends(get_uow)
):
    try:
        orders = await ListCustomerOrdersUseCase(uow)(customer_id, actor, limit=limit, offset=offset)
        return [OrderResponse.from_domain(order) for order in orders]
    except DomainException as e:
        raise http_error(e)


@router.patch("/orders/{number}/shipping", response_model=OrderResponse, responses=ERRORS)
async def update_shipping(number: str, request: ShippingUpdateRequest, uow: UnitOfWork = Depends(get_uow)):
    """Move an order through preparation, shipment and delivery"""
    try:
        dto = UpdateShippingStatusDTO(
            number=number,
            status=request.status,
            actor=request.actor(),
            tracking_number=request.tracking_number,
            carrier=request.carrier,
            estimated_delivery=request.estimated_delivery,
            delivered_at=request.delivered_at,
            description=request.description,
            note=request.note
        )
        order = await UpdateShippingStatusUseCase(uow)(dto)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise http_error(e)


@router.post("/orders/{number}/cancel", response_model=OrderResponse, responses=ERRORS)
async def cancel_order(
    number: str,
    request: CancelOrderRequest,
    use_case: CancelOrderUseCase = Depends(get_cancel_order_use_case)
):
    try:
        order = await use_case(CancelOrderDTO(number=number, reason=request.reason, actor=request.actor()))
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise http_error(e)


@router.post(
    "/orders/{number}/returns",
    response_model=ReturnResponse,
    responses=ERRORS,
    status_code=status.HTTP_201_CREATED
)
async def create_return(
    number: str,
    request: CreateReturnRequest,
    use_case: CreateReturnUseCase = Depends(get_create_return_use_case)
):
    try:
        returned = await use_case(CreateReturnDTO(order_number=number, items=request.items, actor=request.actor()))
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.get("/returns/{code}", response_model=ReturnResponse, responses=ERRORS)
async def get_return(code: str, actor: Actor = Depends(query_actor), uow: UnitOfWork = Depends(get_uow)):
    try:
        async with uow() as uow_impl:
            returned = await load_return(uow_impl, code, for_update=False)
        returned.ensure_visible_to(actor)
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/approve", response_model=ReturnResponse, responses=ERRORS)
async def approve_return(code: str, request: ApproveReturnRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        returned = await ApproveReturnUseCase(uow)(
            ApproveReturnDTO(code=code, actor=request.actor(), notes=request.notes)
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/reject", response_model=ReturnResponse, responses=ERRORS)
async def reject_return(code: str, request: RejectReturnRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        returned = await RejectReturnUseCase(uow)(
            RejectReturnDTO(code=code, actor=request.actor(), reason=request.reason)
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/in-transit", response_model=ReturnResponse, responses=ERRORS)
async def return_in_transit(code: str, request: ReturnShipmentRequest, uow: UnitOfWork = Depends(get_uow)):
    """Customer reports the return package as shipped"""
    try:
        returned = await MarkReturnInTransitUseCase(uow)(
            MarkReturnInTransitDTO(
                code=code, actor=request.actor(), carrier=request.carrier, tracking_number=request.tracking_number
            )
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/receive", response_model=ReturnResponse, responses=ERRORS)
async def receive_return(code: str, request: ReceiveReturnRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        returned = await ReceiveReturnUseCase(uow)(
            ReceiveReturnDTO(
                code=code,
                actor=request.actor(),
                receipt=ReceiptData(package_condition=request.package_condition, notes=request.notes)
            )
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/items/{item_id}/inspection", response_model=ReturnResponse, responses=ERRORS)
async def inspect_return_item(
    code: str,
    item_id: str,
    request: InspectionRequest,
    uow: UnitOfWork = Depends(get_uow)
):
    try:
        returned = await InspectReturnItemUseCase(uow)(
            InspectReturnItemDTO(
                code=code,
                item_id=item_id,
                outcome=request.outcome,
                actor=request.actor(),
                notes=request.notes,
                refund_percent=request.refund_percent
            )
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/cancel", response_model=ReturnResponse, responses=ERRORS)
async def cancel_return(code: str, request: CancelReturnRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        returned = await CancelReturnUseCase(uow)(
            CancelReturnDTO(code=code, actor=request.actor(), reason=request.reason)
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/documents", response_model=ReturnResponse, responses=ERRORS)
async def add_return_document(code: str, request: DocumentRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        returned = await AddReturnDocumentUseCase(uow)(
            AddReturnDocumentDTO(
                code=code, actor=request.actor(), kind=request.kind, url=request.url, filename=request.filename
            )
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/refund", response_model=ReturnResponse, responses=ERRORS)
async def process_refund(
    code: str,
    request: RefundRequestBody,
    use_case: ProcessRefundUseCase = Depends(get_process_refund_use_case)
):
    """Credit the approved amount and close the return"""
    try:
        returned = await use_case(
            ProcessRefundDTO(
                code=code,
                actor=request.actor(),
                method=request.method,
                instrument_id=request.instrument_id,
                notes=request.notes
            )
        )
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/returns/{code}/refund/retry", response_model=ReturnResponse, responses=ERRORS)
async def retry_refund(
    code: str,
    request: ActorRequest,
    use_case: RetryRefundUseCase = Depends(get_retry_refund_use_case)
):
    try:
        returned = await use_case(RetryRefundDTO(code=code, actor=request.actor()))
        return ReturnResponse.from_domain(returned)
    except DomainException as e:
        raise http_error(e)


@router.post("/instruments/{instrument_id}/deposits", response_model=BalanceResponse, responses=ERRORS)
async def deposit_funds(instrument_id: str, request: DepositRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        instrument, movement = await DepositFundsUseCase(uow)(
            DepositFundsDTO(
                instrument_id=instrument_id,
                amount=request.amount,
                actor=request.actor(),
                memo=request.memo,
                adjustment=request.adjustment
            )
        )
        return BalanceResponse.from_domain(instrument, movement)
    except DomainException as e:
        raise http_error(e)


@router.post("/inventory/{product_id}/entries", response_model=StockResponse, responses=ERRORS)
async def register_stock_entry(product_id: str, request: StockEntryRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        record, _ = await RegisterStockEntryUseCase(uow)(
            RegisterStockEntryDTO(
                product_id=product_id,
                quantity=request.quantity,
                actor=request.actor(),
                title=request.title,
                notes=request.notes
            )
        )
        return StockResponse.from_domain(record)
    except DomainException as e:
        raise http_error(e)


@router.get("/tracking/orders/{tracking_number}", response_model=OrderTracking, responses=ERRORS)
async def track_order(tracking_number: str, uow: UnitOfWork = Depends(get_uow)):
    """Public order tracking"""
    try:
        return await TrackingUseCase(uow).order_by_tracking_number(tracking_number)
    except DomainException as e:
        raise http_error(e)


@router.get("/tracking/returns/{code}", response_model=ReturnTracking, responses=ERRORS)
async def track_return(code: str, uow: UnitOfWork = Depends(get_uow)):
    """Public return tracking, by return code or QR token"""
    try:
        tracking = TrackingUseCase(uow)
        if code.startswith("QR-"):
            return await tracking.return_by_qr(code)
        return await tracking.return_by_code(code)
    except DomainException as e:
        raise http_error(e)


@router.post("/tracking/returns/validate-qr", response_model=QRValidation)
async def validate_qr(request: QRValidationRequest, uow: UnitOfWork = Depends(get_uow)):
    try:
        return await TrackingUseCase(uow).validate_qr(request.token)
    except DomainException as e:
        raise http_error(e)
