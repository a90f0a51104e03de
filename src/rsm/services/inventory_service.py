from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from rsm.domain.errors import (
    CapabilityUnavailableError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from rsm.domain.models import Product
from rsm.repositories.stock_writers import AtomicStockWriter, StockWriter
from rsm.repositories.unit_of_work import TransactionalUnitOfWork, UnitOfWork

log = logging.getLogger("rsm.inventory")


class InventoryService:
    """Sole mutator of product stock, plus the catalog edits staff make."""

    def __init__(
        self,
        repo,
        stock_writer: StockWriter | None = None,
        fallback_writer: StockWriter | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.stock_writer = stock_writer or AtomicStockWriter()
        self.fallback_writer = fallback_writer
        self.uow_factory = uow_factory or (lambda: TransactionalUnitOfWork(repo))

    @contextmanager
    def _unit(self, uow: Optional[UnitOfWork]) -> Iterator[UnitOfWork]:
        if uow is not None:
            yield uow
            return
        with self.uow_factory() as own:
            yield own

    # ---------- Stock ----------
    def adjust_stock(
        self,
        product_id: int,
        new_stock: int,
        expected_stock: int | None = None,
        uow: UnitOfWork | None = None,
    ) -> Product:
        if int(new_stock) < 0:
            raise ValidationError("Stock must be >= 0.")
        with self._unit(uow) as unit:
            product = self._write(unit, int(product_id), int(new_stock), expected_stock)
        log.info("stock_set product_id=%s stock=%s atomic=%s", product.id, product.stock, self.stock_writer.atomic)
        return product

    def adjust_stock_delta(self, product_id: int, delta: int, uow: UnitOfWork | None = None) -> Product:
        with self._unit(uow) as unit:
            product = self.repo.get_product(int(product_id), cur=unit.cur)
            if not product:
                raise NotFoundError("Product not found.")
            new_stock = int(product.stock) + int(delta)
            if new_stock < 0:
                raise InsufficientStockError(product.id, -int(delta), product.stock)
            updated = self._write(unit, product.id, new_stock, int(product.stock))
        log.info("stock_delta product_id=%s delta=%s stock=%s", updated.id, int(delta), updated.stock)
        return updated

    def _write(self, unit: UnitOfWork, product_id: int, new_stock: int, expected_stock: int | None) -> Product:
        try:
            return self.stock_writer.write(unit.cur, product_id, new_stock, expected_stock)
        except CapabilityUnavailableError as e:
            if self.fallback_writer is None:
                raise
            log.warning("stock_atomic_unavailable product_id=%s error=%s switching=read_then_write", product_id, e)
            self.stock_writer, self.fallback_writer = self.fallback_writer, None
            return self.stock_writer.write(unit.cur, product_id, new_stock, expected_stock)

    # ---------- Catalog ----------
    def list_products(self, active_only: bool = True) -> list[Product]:
        return self.repo.list_products(active_only=active_only)

    def get_product(self, product_id: int) -> Product:
        p = self.repo.get_product(int(product_id))
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def add_product(
        self,
        name: str,
        cost: float,
        price: float,
        stock: int = 0,
        promo_price: float | None = None,
        promo_active: bool = False,
        unit_id: int | None = None,
        foreign_currency: bool = False,
    ) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required.")
        if stock < 0:
            raise ValidationError("Stock must be >= 0.")
        if cost < 0:
            raise ValidationError("Cost must be >= 0.")
        if price < 0:
            raise ValidationError("Price must be >= 0.")
        if promo_price is not None and promo_price < 0:
            raise ValidationError("Promotional price must be >= 0.")
        return self.repo.add_product(
            name,
            float(cost),
            float(price),
            int(stock),
            promo_price=(float(promo_price) if promo_price is not None else None),
            promo_active=bool(promo_active),
            unit_id=unit_id,
            foreign_currency=bool(foreign_currency),
        )

    def update_pricing(
        self,
        product_id: int,
        cost: float,
        price: float,
        promo_price: float | None = None,
        promo_active: bool = False,
        foreign_currency: bool = False,
    ) -> Product:
        if cost < 0:
            raise ValidationError("Cost must be >= 0.")
        if price < 0:
            raise ValidationError("Price must be >= 0.")
        if promo_active and promo_price is None:
            raise ValidationError("An active promotion needs a promotional price.")
        updated = self.repo.update_product_pricing(
            int(product_id),
            float(cost),
            float(price),
            (float(promo_price) if promo_price is not None else None),
            bool(promo_active),
            bool(foreign_currency),
        )
        if not updated:
            raise NotFoundError("Product not found.")
        return self.repo.get_product(int(product_id), include_inactive=True)

    def set_product_active(self, product_id: int, active: bool) -> None:
        if not self.repo.set_product_active(int(product_id), bool(active)):
            raise NotFoundError("Product not found.")
