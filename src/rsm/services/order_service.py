from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Iterable

from rsm.domain.errors import (
    ConcurrencyError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from rsm.domain.models import (
    Customer,
    LineItem,
    Order,
    OrderState,
    PaymentMethod,
    ProductLine,
    PromotionLine,
    is_whole_qty,
    line_subtotal,
)
from rsm.domain.order_states import PENDING_STATES, ensure_transition
from rsm.repositories.unit_of_work import TransactionalUnitOfWork, UnitOfWork

log = logging.getLogger("rsm.orders")

STALE_ORDER_HOURS = 24


def _iso(ts: datetime) -> str:
    return ts.replace(microsecond=0).isoformat(sep=" ")


@dataclass(frozen=True)
class OrderDaySummary:
    total: int
    delivered: int
    canceled: int
    pending: int
    delivered_revenue: float

    @property
    def conversion_rate(self) -> float:
        return (self.delivered / self.total) * 100 if self.total else 0.0


class OrderService:
    """Customer orders from checkout to a terminal state.

    Delivering an order is the only place that writes to both stock and the
    sale ledger; both happen in one unit of work, stock first.
    """

    def __init__(
        self,
        repo,
        inventory,
        sales,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
        stale_hours: int = STALE_ORDER_HOURS,
        paid_on_delivery: bool = True,
    ):
        self.repo = repo
        self.inventory = inventory
        self.sales = sales
        self.uow_factory = uow_factory or (lambda: TransactionalUnitOfWork(repo))
        self.clock = clock
        self.stale_hours = int(stale_hours)
        self.paid_on_delivery = bool(paid_on_delivery)

    # ---------- Intake ----------
    def create_order(self, customer: Customer, items: Iterable[LineItem]) -> Order:
        items = list(items)
        name = (customer.name or "").strip()
        phone = (customer.phone or "").strip()
        if not name or not phone:
            raise ValidationError("Customer name and phone are required.")
        if not items:
            raise ValidationError("Cart is empty.")
        for it in items:
            if not is_whole_qty(it.qty):
                raise ValidationError(f"Qty must be a whole number. Received: {it.qty!r}")
            if int(it.qty) <= 0:
                raise ValidationError("Qty must be >= 1.")
            if float(it.unit_price) < 0:
                raise ValidationError("Unit price must be >= 0.")

        payment = None
        if customer.payment_method:
            try:
                payment = PaymentMethod(customer.payment_method).value
            except ValueError as e:
                raise ValidationError(f"Unknown payment method: {customer.payment_method!r}") from e
        total = sum(line_subtotal(it) for it in items)
        created_at = _iso(self.clock())

        with self.uow_factory() as uow:
            for it in items:
                self._ensure_referent(uow, it)
            order_id = self.repo.insert_order(
                uow.cur,
                name,
                phone,
                (customer.address or None),
                payment,
                (customer.notes or None),
                total,
                created_at,
            )
            for it in items:
                self.repo.insert_order_line(uow.cur, order_id, it)

        log.info("order_created order_id=%s items=%s total=%.2f", order_id, len(items), total)
        return self.get_order(order_id)

    def _ensure_referent(self, uow: UnitOfWork, item: LineItem) -> None:
        if isinstance(item, ProductLine):
            if self.repo.get_product(item.product_id, cur=uow.cur) is None:
                raise NotFoundError(f"Product not found: {item.product_id}")
        elif isinstance(item, PromotionLine):
            promotion = self.repo.get_promotion(item.promotion_id, cur=uow.cur)
            if promotion is None or not promotion.active:
                raise NotFoundError(f"Promotion not found: {item.promotion_id}")
        else:
            raise ValidationError(f"Unsupported line item: {item!r}")

    # ---------- Queries ----------
    def get_order(self, order_id: int) -> Order:
        order = self.repo.get_order(int(order_id))
        if not order:
            raise NotFoundError("Order not found.")
        return order

    def list_orders(self) -> list[Order]:
        return self.repo.list_orders()

    def list_orders_by_state(self, state: OrderState | str) -> list[Order]:
        return self.repo.list_orders(OrderState(state))

    def search_orders(self, query: str) -> list[Order]:
        """Match customer phone or name (case-insensitive), or an exact order id."""
        return self.repo.search_orders(query)

    def pending_count(self) -> int:
        return self.repo.count_orders_in_states(PENDING_STATES)

    def daily_summary(self, day: date | None = None) -> OrderDaySummary:
        day = day or self.clock().date()
        start = datetime.combine(day, datetime.min.time())
        orders = self.repo.list_orders_created_between(_iso(start), _iso(start + timedelta(days=1)))
        counts = Counter(o.state for o in orders)
        return OrderDaySummary(
            total=len(orders),
            delivered=counts[OrderState.DELIVERED],
            canceled=counts[OrderState.CANCELED],
            pending=sum(counts[s] for s in PENDING_STATES),
            delivered_revenue=sum(o.total for o in orders if o.state is OrderState.DELIVERED),
        )

    # ---------- Lifecycle ----------
    def transition_order(self, order_id: int, target: OrderState | str) -> Order:
        try:
            target = OrderState(target)
        except ValueError as e:
            raise ValidationError(f"Unknown order state: {target!r}") from e

        order = self.get_order(order_id)
        ensure_transition(order.id, order.state, target)

        if target is OrderState.DELIVERED:
            self._deliver(order)
        elif target is OrderState.CANCELED:
            self._cancel(order)
        else:
            with self.uow_factory() as uow:
                self._move(uow, order, target)

        log.info("order_transition order_id=%s from=%s to=%s", order.id, order.state.value, target.value)
        return self.get_order(order.id)

    def _move(self, uow: UnitOfWork, order: Order, target: OrderState, sale_id: int | None = None) -> None:
        moved = self.repo.update_order_state(
            uow.cur, order.id, order.state, target, _iso(self.clock()), sale_id=sale_id
        )
        if not moved:
            raise ConcurrencyError(f"Order {order.id} changed state while moving to {target.value}.")

    def stock_requirements(self, order: Order, uow: UnitOfWork | None = None) -> dict[int, int]:
        """Units to take from each product; promotion lines expand to their parts."""
        cur = uow.cur if uow is not None else None
        needed: Counter[int] = Counter()
        for it in order.items:
            if isinstance(it, ProductLine):
                needed[it.product_id] += int(it.qty)
                continue
            promotion = self.repo.get_promotion(it.promotion_id, cur=cur)
            if promotion is None:
                raise NotFoundError(f"Promotion not found: {it.promotion_id}")
            for part in promotion.items:
                needed[part.product_id] += int(part.qty) * int(it.qty)
        return dict(needed)

    def _deliver(self, order: Order) -> None:
        applied: list[tuple[int, int]] = []
        with self.uow_factory() as uow:
            try:
                requirements = self.stock_requirements(order, uow)
                if not uow.atomic:
                    self._precheck_stock(uow, requirements)
                for product_id, qty in requirements.items():
                    self.inventory.adjust_stock_delta(product_id, -qty, uow=uow)
                    applied.append((product_id, qty))
                sale_id = self.sales.record_sale(
                    uow, self.clock().date(), order.items, paid=self.paid_on_delivery
                )
                self._move(uow, order, OrderState.DELIVERED, sale_id=sale_id)
            except Exception:
                if not uow.atomic and applied:
                    self._compensate(uow, order.id, applied)
                raise
        log.info("order_delivered order_id=%s sale_id=%s products=%s", order.id, sale_id, len(applied))

    def _precheck_stock(self, uow: UnitOfWork, requirements: dict[int, int]) -> None:
        products = self.repo.get_products(requirements.keys(), cur=uow.cur)
        for product_id, qty in requirements.items():
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product not found: {product_id}")
            if product.stock < qty:
                raise InsufficientStockError(product_id, qty, product.stock)

    def _compensate(self, uow: UnitOfWork, order_id: int, applied: list[tuple[int, int]]) -> None:
        for product_id, qty in reversed(applied):
            try:
                self.inventory.adjust_stock_delta(product_id, qty, uow=uow)
            except Exception as e:
                log.error(
                    "stock_compensation_failed order_id=%s product_id=%s qty=%s error=%s",
                    order_id, product_id, qty, e,
                )
            else:
                log.warning("stock_compensated order_id=%s product_id=%s qty=%s", order_id, product_id, qty)

    def _cancel(self, order: Order) -> None:
        with self.uow_factory() as uow:
            if order.sale_id is not None:
                # Only reachable when sale_id was set outside the state machine.
                self.sales.void_sale(order.sale_id, uow=uow)
                log.warning("order_cancel_voided_sale order_id=%s sale_id=%s", order.id, order.sale_id)
            self._move(uow, order, OrderState.CANCELED)

    def auto_cancel_stale_orders(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        cutoff = _iso(now - timedelta(hours=self.stale_hours))
        canceled = 0
        for order_id in self.repo.list_order_ids_before(OrderState.RECEIVED, cutoff):
            try:
                self.transition_order(order_id, OrderState.CANCELED)
            except (InvalidTransitionError, ConcurrencyError) as e:
                log.info("auto_cancel_skipped order_id=%s reason=%s", order_id, e)
                continue
            canceled += 1
        log.info("auto_cancel_done cutoff=%s canceled=%s", cutoff, canceled)
        return canceled
