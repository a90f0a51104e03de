from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Iterator, Optional

from rsm.domain.errors import FxUnavailableError, NotFoundError, ValidationError
from rsm.domain.models import LineItem, ProductLine, PromotionLine, Sale, SaleLine, is_whole_qty
from rsm.repositories.unit_of_work import TransactionalUnitOfWork, UnitOfWork

log = logging.getLogger("rsm.sales")


def compute_total(sale: Sale) -> float:
    """Sale total, always derived from the lines."""
    return sum(line.qty * line.unit_price for line in sale.lines)


def _iso_date(value: date | str) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()[:10]).isoformat()
    except ValueError as e:
        raise ValidationError(f"Invalid sale date: {value!r}") from e


class SalesService:
    compute_total = staticmethod(compute_total)

    def __init__(
        self,
        repo,
        fx_service,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.fx = fx_service
        self.uow_factory = uow_factory or (lambda: TransactionalUnitOfWork(repo))
        self.clock = clock

    @contextmanager
    def _unit(self, uow: Optional[UnitOfWork]) -> Iterator[UnitOfWork]:
        if uow is not None:
            yield uow
            return
        with self.uow_factory() as own:
            yield own

    def _current_rate(self) -> float:
        try:
            rate = float(self.fx.current_rate().rate)
        except FxUnavailableError:
            raise
        except (AttributeError, TypeError, ValueError) as e:
            raise FxUnavailableError(str(e)) from e
        if rate <= 0:
            raise FxUnavailableError(f"FX rate must be > 0. Received: {rate}")
        return rate

    def create_sale(self, sale_date: date | str, items: Iterable[LineItem], paid: bool = False) -> Sale:
        items = list(items)
        date_iso = _iso_date(sale_date)
        fx = self._current_rate()
        with self.uow_factory() as uow:
            sale_id = self.record_sale(uow, date_iso, items, paid, fx)
        log.info("sale_created sale_id=%s items=%s fx=%.4f paid=%s", sale_id, len(items), fx, bool(paid))
        return self.get_sale(sale_id)

    def record_sale(
        self,
        uow: UnitOfWork,
        sale_date: date | str,
        items: Iterable[LineItem],
        paid: bool,
        fx_rate: float | None = None,
    ) -> int:
        """Write header and lines inside ``uow``; the caller owns commit.

        Each line freezes the referenced product's currency flag and cost so
        later catalog edits do not change how the sale is valued.
        """
        items = list(items)
        if not items:
            raise ValidationError("A sale needs at least one item.")
        for it in items:
            if not is_whole_qty(it.qty):
                raise ValidationError(f"Qty must be a whole number. Received: {it.qty!r}")
            if int(it.qty) <= 0:
                raise ValidationError("Qty must be >= 1.")
            if float(it.unit_price) < 0:
                raise ValidationError("Unit price must be >= 0.")

        fx = float(fx_rate) if fx_rate is not None else self._current_rate()
        lines = [self._snapshot_line(uow, it, fx) for it in items]

        created_at = self.clock().replace(microsecond=0).isoformat(sep=" ")
        sale_id = self.repo.insert_sale(uow.cur, _iso_date(sale_date), bool(paid), fx, created_at)
        for line in lines:
            self.repo.insert_sale_line(uow.cur, sale_id, line)
        return sale_id

    def _snapshot_line(self, uow: UnitOfWork, item: LineItem, fx: float) -> SaleLine:
        if isinstance(item, ProductLine):
            product = self.repo.get_product(item.product_id, cur=uow.cur, include_inactive=True)
            if not product:
                raise NotFoundError(f"Product not found: {item.product_id}")
            return SaleLine(item=item, unit_cost=float(product.cost), foreign_currency=bool(product.foreign_currency))

        if isinstance(item, PromotionLine):
            promotion = self.repo.get_promotion(item.promotion_id, cur=uow.cur)
            if not promotion:
                raise NotFoundError(f"Promotion not found: {item.promotion_id}")
            # Bundles are priced locally; foreign-priced parts are costed at the sale rate.
            unit_cost = 0.0
            for part in promotion.items:
                product = self.repo.get_product(part.product_id, cur=uow.cur, include_inactive=True)
                if not product:
                    continue
                rate = fx if product.foreign_currency else 1.0
                unit_cost += float(product.cost) * rate * int(part.qty)
            return SaleLine(item=item, unit_cost=unit_cost, foreign_currency=False)

        raise ValidationError(f"Unsupported line item: {item!r}")

    def get_sale(self, sale_id: int) -> Sale:
        sale = self.repo.get_sale(int(sale_id))
        if not sale:
            raise NotFoundError("Sale not found.")
        return sale

    def set_paid(self, sale_id: int, paid: bool) -> Sale:
        return self._set_flag(sale_id, "paid", bool(paid))

    def void_sale(self, sale_id: int, uow: UnitOfWork | None = None) -> Sale:
        return self._set_flag(sale_id, "voided", True, uow)

    def reactivate_sale(self, sale_id: int) -> Sale:
        return self._set_flag(sale_id, "voided", False)

    def _set_flag(self, sale_id: int, field: str, value: bool, uow: UnitOfWork | None = None) -> Sale:
        with self._unit(uow) as unit:
            if not self.repo.set_sale_flag(field, value, int(sale_id), cur=unit.cur):
                raise NotFoundError("Sale not found.")
            sale = self.repo.get_sale(int(sale_id), cur=unit.cur)
        log.info("sale_flag sale_id=%s %s=%s", int(sale_id), field, value)
        return sale

    def list_sales(self, include_voided: bool = False) -> list[Sale]:
        return self.repo.search_sales(voided=None if include_voided else False)

    def search_sales(
        self,
        date_from: date | str | None = None,
        date_to: date | str | None = None,
        paid: bool | None = None,
        voided: bool | None = None,
    ) -> list[Sale]:
        """Filter the ledger; ``date_to`` is inclusive."""
        start = _iso_date(date_from) if date_from else None
        end = None
        if date_to:
            end = (date.fromisoformat(_iso_date(date_to)) + timedelta(days=1)).isoformat()
        return self.repo.search_sales(start, end, paid, voided)
