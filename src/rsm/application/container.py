from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from rsm.config import Settings
from rsm.repositories.sqlite_repo import SqliteRepository, StoreCapabilities
from rsm.repositories.stock_writers import AtomicStockWriter, ReadThenWriteStockWriter
from rsm.repositories.unit_of_work import BestEffortUnitOfWork, TransactionalUnitOfWork, UnitOfWork
from rsm.services.expense_service import ExpenseService
from rsm.services.fx_service import FxService
from rsm.services.inventory_service import InventoryService
from rsm.services.order_service import OrderService
from rsm.services.promotion_service import PromotionService
from rsm.services.reporting_service import ReportingService
from rsm.services.sales_service import SalesService

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    capabilities: StoreCapabilities
    fx: FxService
    inventory: InventoryService
    promotions: PromotionService
    sales: SalesService
    orders: OrderService
    expenses: ExpenseService
    reporting: ReportingService


def build_container(
    db_path: Path | str,
    settings: Settings | None = None,
    capabilities: StoreCapabilities | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> AppContainer:
    """Wire the services once; store capabilities are probed here, not per call."""
    settings = settings or Settings()
    repo = SqliteRepository(db_path)
    repo.init_db()

    caps = capabilities or repo.probe_capabilities()
    if caps.transactions:
        uow_factory: Callable[[], UnitOfWork] = lambda: TransactionalUnitOfWork(repo)
    else:
        log.warning("store_without_transactions db=%s using=best_effort_unit_of_work", db_path)
        uow_factory = lambda: BestEffortUnitOfWork(repo)

    fallback_writer: Optional[ReadThenWriteStockWriter] = ReadThenWriteStockWriter()
    if caps.atomic_stock:
        stock_writer = AtomicStockWriter()
    else:
        log.warning("store_without_atomic_stock db=%s using=read_then_write", db_path)
        stock_writer, fallback_writer = ReadThenWriteStockWriter(), None

    fx = FxService(repo, default_rate=settings.default_fx_rate, clock=clock)
    inventory = InventoryService(repo, stock_writer, fallback_writer, uow_factory)
    promotions = PromotionService(repo, uow_factory)
    sales = SalesService(repo, fx, uow_factory, clock=clock)
    orders = OrderService(
        repo, inventory, sales, uow_factory, clock=clock, stale_hours=settings.stale_order_hours
    )
    expenses = ExpenseService(repo)
    reporting = ReportingService(sales, expenses, fx)

    return AppContainer(
        repo=repo,
        capabilities=caps,
        fx=fx,
        inventory=inventory,
        promotions=promotions,
        sales=sales,
        orders=orders,
        expenses=expenses,
        reporting=reporting,
    )
