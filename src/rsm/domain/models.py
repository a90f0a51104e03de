from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Union


class OrderState(str, Enum):
    RECEIVED = "RECEIVED"
    ACCEPTED = "ACCEPTED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class PaymentMethod(str, Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    MERCADOPAGO = "mercadopago"


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    stock: int
    cost: float
    price: float
    promo_price: Optional[float] = None
    promo_active: bool = False
    unit_id: Optional[int] = None
    foreign_currency: bool = False
    active: bool = True

    @property
    def effective_price(self) -> float:
        if self.promo_active and self.promo_price is not None:
            return float(self.promo_price)
        return float(self.price)


@dataclass(frozen=True)
class PromotionItem:
    product_id: int
    qty: int
    id: Optional[int] = None


@dataclass(frozen=True)
class Promotion:
    id: int
    name: str
    price: Optional[float]
    active: bool = True
    items: tuple[PromotionItem, ...] = ()


# Line items shared by orders and sales: exactly one referent per case.
@dataclass(frozen=True)
class ProductLine:
    kind: ClassVar[str] = "product"

    product_id: int
    qty: int
    unit_price: float

    @property
    def ref_id(self) -> int:
        return self.product_id


@dataclass(frozen=True)
class PromotionLine:
    kind: ClassVar[str] = "promotion"

    promotion_id: int
    qty: int
    unit_price: float

    @property
    def ref_id(self) -> int:
        return self.promotion_id


LineItem = Union[ProductLine, PromotionLine]


def make_line(kind: str, ref_id: int, qty: int, unit_price: float) -> LineItem:
    if kind == ProductLine.kind:
        return ProductLine(product_id=int(ref_id), qty=int(qty), unit_price=float(unit_price))
    if kind == PromotionLine.kind:
        return PromotionLine(promotion_id=int(ref_id), qty=int(qty), unit_price=float(unit_price))
    raise ValueError(f"Unknown line kind: {kind!r}")


def is_whole_qty(value: object) -> bool:
    """True for integral quantities; bools and fractional values are not quantities."""
    if isinstance(value, bool):
        return False
    try:
        return int(value) == value
    except (TypeError, ValueError, OverflowError):
        return False


def line_subtotal(line: LineItem) -> float:
    return line.qty * line.unit_price


@dataclass(frozen=True)
class Customer:
    name: str
    phone: str
    address: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Order:
    id: int
    customer_name: str
    customer_phone: str
    customer_address: Optional[str]
    payment_method: Optional[PaymentMethod]
    notes: Optional[str]
    total: float
    created_at: str
    updated_at: str
    state: OrderState
    sale_id: Optional[int]
    items: tuple[LineItem, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.state in (OrderState.DELIVERED, OrderState.CANCELED)


@dataclass(frozen=True)
class SaleLine:
    """A sold line plus the catalog facts frozen at sale time."""

    item: LineItem
    unit_cost: float
    foreign_currency: bool
    id: Optional[int] = None

    @property
    def qty(self) -> int:
        return self.item.qty

    @property
    def unit_price(self) -> float:
        return self.item.unit_price


@dataclass(frozen=True)
class Sale:
    id: int
    date: str
    paid: bool
    voided: bool
    exchange_rate: float
    created_at: str
    lines: tuple[SaleLine, ...] = ()


@dataclass(frozen=True)
class Expense:
    id: int
    cost: float
    description: Optional[str]
    active: bool = True


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    id: Optional[int]
    rate: float
    recorded_at: str
    notes: Optional[str] = None
