from .models import (
    Customer,
    ExchangeRateSnapshot,
    Expense,
    Order,
    OrderState,
    PaymentMethod,
    Product,
    ProductLine,
    Promotion,
    PromotionItem,
    PromotionLine,
    Sale,
    SaleLine,
)
from .errors import (
    CapabilityUnavailableError,
    ConcurrencyError,
    FxUnavailableError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "Customer",
    "ExchangeRateSnapshot",
    "Expense",
    "Order",
    "OrderState",
    "PaymentMethod",
    "Product",
    "ProductLine",
    "Promotion",
    "PromotionItem",
    "PromotionLine",
    "Sale",
    "SaleLine",
    "CapabilityUnavailableError",
    "ConcurrencyError",
    "FxUnavailableError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "NotFoundError",
    "ValidationError",
]
