from enum import Enum

from pydantic import BaseModel, Field

from bookstore.domain.money import percent_of


MAX_UNITS_PER_LINE = 3


class CartStatus(str, Enum):
    ACTIVE = "activo"
    CONVERTED = "convertido_a_compra"
    ABANDONED = "abandonado"


class TaxType(str, Enum):
    EXEMPT = "exento"
    EXCLUDED = "excluido"
    TAXED = "gravado"


class CartLine(BaseModel):
    """Value Object: one title in the cart, priced at the moment it was added"""
    product_id: str
    quantity: int = Field(ge=1, le=MAX_UNITS_PER_LINE)
    unit_price: int = Field(ge=0)
    unit_discount: int = Field(default=0, ge=0)
    tax_type: TaxType = TaxType.EXEMPT
    tax_percent: int = Field(default=0, ge=0, le=100)

    @property
    def unit_discounted(self) -> int:
        return max(self.unit_price - self.unit_discount, 0)

    @property
    def unit_tax(self) -> int:
        if self.tax_type != TaxType.TAXED:
            return 0
        return percent_of(self.unit_discounted, self.tax_percent)

    @property
    def subtotal_base(self) -> int:
        return self.unit_price * self.quantity

    @property
    def subtotal_discounted(self) -> int:
        return self.unit_discounted * self.quantity

    @property
    def total_tax(self) -> int:
        return self.unit_tax * self.quantity


class CartTotals(BaseModel):
    subtotal_base: int = 0
    total_discounts: int = 0
    subtotal_discounted: int = 0
    total_taxes: int = 0
    items_count: int = 0


class CartSnapshot(BaseModel):
    cart_id: str
    customer_id: str
    status: CartStatus = CartStatus.ACTIVE
    lines: list[CartLine] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def totals(self) -> CartTotals:
        subtotal_base = sum(line.subtotal_base for line in self.lines)
        subtotal_discounted = sum(line.subtotal_discounted for line in self.lines)
        return CartTotals(
            subtotal_base=subtotal_base,
            total_discounts=subtotal_base - subtotal_discounted,
            subtotal_discounted=subtotal_discounted,
            total_taxes=sum(line.total_tax for line in self.lines),
            items_count=sum(line.quantity for line in self.lines),
        )

    def requested_quantities(self) -> dict[str, int]:
        """Units requested per product; a title may appear on several lines."""
        quantities: dict[str, int] = {}
        for line in self.lines:
            quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
        return quantities
