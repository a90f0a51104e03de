from .fx_service import FxService
from .inventory_service import InventoryService
from .sales_service import SalesService, compute_total
from .promotion_service import PromotionService, SyncResult
from .order_service import OrderService
from .metrics_service import Metrics, compute_metrics
from .expense_service import ExpenseService
from .reporting_service import ReportingService

__all__ = [
    "FxService",
    "InventoryService",
    "SalesService",
    "compute_total",
    "PromotionService",
    "SyncResult",
    "OrderService",
    "Metrics",
    "compute_metrics",
    "ExpenseService",
    "ReportingService",
]
