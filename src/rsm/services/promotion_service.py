from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

from rsm.domain.errors import NotFoundError, ValidationError
from rsm.domain.models import Promotion, PromotionItem, is_whole_qty
from rsm.repositories.unit_of_work import TransactionalUnitOfWork, UnitOfWork

log = logging.getLogger("rsm.promotions")

DesiredItem = Union[PromotionItem, tuple[int, int]]


@dataclass(frozen=True)
class SyncResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def writes(self) -> int:
        return self.inserted + self.updated + self.deleted


class PromotionService:
    def __init__(self, repo, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: TransactionalUnitOfWork(repo))

    @staticmethod
    def _normalize(items: Iterable[DesiredItem]) -> dict[int, int]:
        desired: dict[int, int] = {}
        for it in items or ():
            if isinstance(it, PromotionItem):
                product_id, qty = it.product_id, it.qty
            else:
                product_id, qty = it
            if not is_whole_qty(qty):
                raise ValidationError(f"Qty must be a whole number. Received: {qty!r}")
            product_id, qty = int(product_id), int(qty)
            if qty <= 0:
                raise ValidationError("Qty must be >= 1.")
            if product_id in desired:
                raise ValidationError(f"Product {product_id} listed twice in the promotion.")
            desired[product_id] = qty
        return desired

    @staticmethod
    def _validate_header(name: str, price: Optional[float]) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required.")
        if price is not None and float(price) < 0:
            raise ValidationError("Price must be >= 0.")
        return name

    def create_promotion(
        self,
        name: str,
        price: Optional[float],
        items: Iterable[DesiredItem] = (),
        active: bool = True,
    ) -> Promotion:
        """``price=None`` publishes the bundle as "ask for price"."""
        name = self._validate_header(name, price)
        desired = self._normalize(items)
        with self.uow_factory() as uow:
            promotion_id = self.repo.insert_promotion(
                uow.cur, name, (float(price) if price is not None else None), bool(active)
            )
            self._sync(uow, promotion_id, desired)
        log.info("promotion_created promotion_id=%s items=%s", promotion_id, len(desired))
        return self.get_promotion(promotion_id)

    def update_promotion(
        self,
        promotion_id: int,
        name: str,
        price: Optional[float],
        items: Iterable[DesiredItem],
        active: bool = True,
    ) -> tuple[Promotion, SyncResult]:
        name = self._validate_header(name, price)
        desired = self._normalize(items)
        with self.uow_factory() as uow:
            updated = self.repo.update_promotion_header(
                uow.cur, int(promotion_id), name, (float(price) if price is not None else None), bool(active)
            )
            if not updated:
                raise NotFoundError("Promotion not found.")
            result = self._sync(uow, int(promotion_id), desired)
        return self.get_promotion(promotion_id), result

    def sync_promotion_items(self, promotion_id: int, items: Iterable[DesiredItem]) -> SyncResult:
        desired = self._normalize(items)
        with self.uow_factory() as uow:
            if self.repo.get_promotion(int(promotion_id), cur=uow.cur) is None:
                raise NotFoundError("Promotion not found.")
            return self._sync(uow, int(promotion_id), desired)

    def _sync(self, uow: UnitOfWork, promotion_id: int, desired: dict[int, int]) -> SyncResult:
        existing = {it.product_id: it for it in self.repo.promotion_items(promotion_id, cur=uow.cur)}
        kept: set[int] = set()
        inserted = updated = 0

        for product_id, qty in desired.items():
            current = existing.get(product_id)
            if current is not None:
                if current.qty != qty:
                    self.repo.update_promotion_item_qty(uow.cur, current.id, qty)
                    updated += 1
            else:
                if self.repo.get_product(product_id, cur=uow.cur) is None:
                    raise NotFoundError(f"Product not found: {product_id}")
                self.repo.insert_promotion_item(uow.cur, promotion_id, product_id, qty)
                inserted += 1
            kept.add(product_id)

        stale = [it.id for pid, it in existing.items() if pid not in kept]
        deleted = self.repo.delete_promotion_items(uow.cur, stale)

        result = SyncResult(inserted=inserted, updated=updated, deleted=deleted)
        if result.writes:
            log.info(
                "promotion_synced promotion_id=%s inserted=%s updated=%s deleted=%s",
                promotion_id, inserted, updated, deleted,
            )
        return result

    def set_promotion_active(self, promotion_id: int, active: bool) -> Promotion:
        if not self.repo.set_promotion_active(int(promotion_id), bool(active)):
            raise NotFoundError("Promotion not found.")
        return self.get_promotion(promotion_id)

    def get_promotion(self, promotion_id: int) -> Promotion:
        promotion = self.repo.get_promotion(int(promotion_id))
        if not promotion:
            raise NotFoundError("Promotion not found.")
        return promotion

    def list_promotions(self, active_only: bool = False) -> list[Promotion]:
        return self.repo.list_promotions(active_only=active_only)

    def promotion_items(self, promotion_id: int) -> list[PromotionItem]:
        return self.repo.promotion_items(int(promotion_id))
