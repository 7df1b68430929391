class DomainException(Exception):
    pass


class ValidationError(DomainException):
    pass


class InvalidStateError(DomainException):
    def __init__(self, aggregate: str, state: str, operation: str, message: str | None = None):
        self.aggregate = aggregate
        self.state = state
        self.operation = operation
        super().__init__(message or f"{aggregate}: operation '{operation}' is not allowed in state '{state}'")


class NotFoundError(DomainException):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class ReturnNotFoundError(NotFoundError):
    pass


class InstrumentNotFoundError(NotFoundError):
    pass


class EmptyCartError(DomainException):
    pass


class PermissionDeniedError(DomainException):
    pass


class StockShortfall:
    """One cart line that cannot be covered by available stock."""

    NO_STOCK = "sin_stock"
    PARTIAL = "parcial"
    RESERVED_BY_OTHERS = "reservado_por_otros"

    def __init__(self, product_id: str, title: str, requested: int, available: int, reserved: int):
        self.product_id = product_id
        self.title = title
        self.requested = requested
        self.available = available
        self.reserved = reserved

    @property
    def diagnosis(self) -> str:
        if self.available <= 0 and self.reserved > 0:
            return self.RESERVED_BY_OTHERS
        if self.available <= 0:
            return self.NO_STOCK
        return self.PARTIAL

    def as_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "requested": self.requested,
            "available": self.available,
            "reserved": self.reserved,
            "diagnosis": self.diagnosis,
        }

    def __str__(self) -> str:
        return (
            f"{self.title or self.product_id}: requested {self.requested}, "
            f"available {self.available}, reserved {self.reserved} ({self.diagnosis})"
        )


class InsufficientStockError(DomainException):
    def __init__(self, shortfalls: list[StockShortfall]):
        self.shortfalls = shortfalls
        super().__init__("Insufficient stock. " + "; ".join(str(s) for s in shortfalls))


class InsufficientFundsError(DomainException):
    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient funds. Available: {available}, required: {required}")


class PaymentInstrumentError(DomainException):
    pass


class ExternalProcessorError(DomainException):
    pass


class ConcurrencyError(DomainException):
    pass


class StorageError(DomainException):
    pass


class CatalogServiceError(DomainException):
    pass
