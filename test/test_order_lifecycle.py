from pathlib import Path

import pytest
from conftest import StepClock, make_app

from rsm.domain.errors import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from rsm.domain.models import Customer, OrderState, PaymentMethod, ProductLine, PromotionLine
from rsm.domain.order_states import ALLOWED_TRANSITIONS, can_transition

CUSTOMER = Customer(name="Ana", phone="1155550000", address="Calle 1", payment_method=PaymentMethod.CASH)


def _order_in_state(app, product_id: int, state: OrderState):
    order = app.orders.create_order(CUSTOMER, [ProductLine(product_id, 1, 10.0)])
    if state is OrderState.RECEIVED:
        return order
    if state is OrderState.CANCELED:
        return app.orders.transition_order(order.id, OrderState.CANCELED)
    order = app.orders.transition_order(order.id, OrderState.ACCEPTED)
    if state is OrderState.DELIVERED:
        order = app.orders.transition_order(order.id, OrderState.DELIVERED)
    return order


def test_transition_table_matches_lifecycle():
    assert can_transition(OrderState.RECEIVED, OrderState.ACCEPTED)
    assert can_transition(OrderState.RECEIVED, OrderState.CANCELED)
    assert can_transition(OrderState.ACCEPTED, OrderState.DELIVERED)
    assert can_transition(OrderState.ACCEPTED, OrderState.CANCELED)
    assert not ALLOWED_TRANSITIONS[OrderState.DELIVERED]
    assert not ALLOWED_TRANSITIONS[OrderState.CANCELED]


def test_every_disallowed_transition_fails_and_keeps_state(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=100)

    for current in OrderState:
        for target in OrderState:
            if can_transition(current, target):
                continue
            order = _order_in_state(app, pid, current)
            stock_before = app.inventory.get_product(pid).stock
            sales_before = len(app.sales.list_sales(include_voided=True))

            with pytest.raises(InvalidTransitionError) as exc:
                app.orders.transition_order(order.id, target)

            assert exc.value.current == current.value
            assert exc.value.target == target.value
            assert app.orders.get_order(order.id).state is current
            assert app.inventory.get_product(pid).stock == stock_before
            assert len(app.sales.list_sales(include_voided=True)) == sales_before


def test_unknown_target_state_is_rejected(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=1)
    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])

    with pytest.raises(ValidationError, match="Unknown order state"):
        app.orders.transition_order(order.id, "SHIPPED")


def test_create_order_captures_total_and_starts_received(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)

    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 3, 50.0), ProductLine(pid, 1, 20.0)])

    assert order.state is OrderState.RECEIVED
    assert order.total == 170.0
    assert order.sale_id is None
    assert order.payment_method is PaymentMethod.CASH
    assert len(order.items) == 2


@pytest.mark.parametrize(
    "customer, items, error",
    [
        (Customer(name="", phone="1"), [ProductLine(1, 1, 1.0)], ValidationError),
        (Customer(name="Ana", phone="  "), [ProductLine(1, 1, 1.0)], ValidationError),
        (CUSTOMER, [], ValidationError),
        (CUSTOMER, [ProductLine(1, 0, 1.0)], ValidationError),
        (CUSTOMER, [ProductLine(1, 2.5, 1.0)], ValidationError),
        (CUSTOMER, [ProductLine(1, 1, -1.0)], ValidationError),
        (Customer(name="Ana", phone="1", payment_method="bitcoin"), [ProductLine(1, 1, 1.0)], ValidationError),
        (CUSTOMER, [ProductLine(999, 1, 1.0)], NotFoundError),
        (CUSTOMER, [PromotionLine(999, 1, 1.0)], NotFoundError),
    ],
)
def test_create_order_rejects_bad_input(tmp_path: Path, customer, items, error):
    app = make_app(tmp_path)
    app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)

    with pytest.raises(error):
        app.orders.create_order(customer, items)

    assert app.orders.list_orders() == []


def test_order_keeps_captured_price_after_catalog_change(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 50.0, stock=10)
    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 2, 50.0)])

    app.inventory.update_pricing(pid, cost=9.0, price=80.0)

    reread = app.orders.get_order(order.id)
    assert reread.items[0].unit_price == 50.0
    assert reread.total == 100.0


def test_end_to_end_delivery_deducts_stock_and_links_sale(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 20.0, 50.0, stock=10)
    assert pid == 1

    order = app.orders.create_order(CUSTOMER, [ProductLine(1, 3, 50.0)])
    app.orders.transition_order(order.id, OrderState.ACCEPTED)
    delivered = app.orders.transition_order(order.id, OrderState.DELIVERED)

    assert app.inventory.get_product(1).stock == 7
    assert delivered.state is OrderState.DELIVERED
    assert delivered.sale_id is not None

    sale = app.sales.get_sale(delivered.sale_id)
    assert len(sale.lines) == 1
    assert sale.lines[0].qty == 3
    assert sale.lines[0].unit_price == 50.0
    assert app.sales.compute_total(sale) == 150.0
    assert sale.paid is True
    assert sale.date == "2024-05-10"


def test_delivery_expands_promotion_lines_into_constituents(tmp_path: Path):
    app = make_app(tmp_path)
    mate = app.inventory.add_product("Mate", 100.0, 300.0, stock=10)
    yerba = app.inventory.add_product("Yerba", 40.0, 90.0, stock=10)
    combo = app.promotions.create_promotion("Combo matero", 350.0, [(mate, 1), (yerba, 2)])

    order = app.orders.create_order(
        CUSTOMER,
        [PromotionLine(combo.id, 2, 350.0), ProductLine(yerba, 1, 90.0)],
    )
    assert app.orders.stock_requirements(order) == {mate: 2, yerba: 5}

    app.orders.transition_order(order.id, OrderState.ACCEPTED)
    delivered = app.orders.transition_order(order.id, OrderState.DELIVERED)

    assert app.inventory.get_product(mate).stock == 8
    assert app.inventory.get_product(yerba).stock == 5

    sale = app.sales.get_sale(delivered.sale_id)
    promo_line = sale.lines[0]
    assert promo_line.item == PromotionLine(combo.id, 2, 350.0)
    assert promo_line.unit_cost == 180.0
    assert app.sales.compute_total(sale) == 790.0


def test_insufficient_stock_leaves_order_accepted_and_no_sale(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=5)
    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 20, 10.0)])
    app.orders.transition_order(order.id, OrderState.ACCEPTED)

    with pytest.raises(InsufficientStockError) as exc:
        app.orders.transition_order(order.id, OrderState.DELIVERED)

    assert exc.value.product_id == pid
    assert exc.value.requested == 20
    assert exc.value.available == 5
    assert app.orders.get_order(order.id).state is OrderState.ACCEPTED
    assert app.inventory.get_product(pid).stock == 5
    assert app.sales.list_sales(include_voided=True) == []


def test_failed_sale_creation_rolls_back_stock(tmp_path: Path, monkeypatch):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)
    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 3, 10.0)])
    app.orders.transition_order(order.id, OrderState.ACCEPTED)

    def boom(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(app.sales, "record_sale", boom)

    with pytest.raises(RuntimeError, match="ledger unavailable"):
        app.orders.transition_order(order.id, OrderState.DELIVERED)

    assert app.inventory.get_product(pid).stock == 10
    assert app.orders.get_order(order.id).state is OrderState.ACCEPTED


def test_cancel_without_sale_touches_nothing_else(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)
    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 3, 10.0)])

    canceled = app.orders.transition_order(order.id, OrderState.CANCELED)

    assert canceled.state is OrderState.CANCELED
    assert app.inventory.get_product(pid).stock == 10
    assert app.sales.list_sales(include_voided=True) == []


def test_cancel_voids_sale_linked_outside_the_state_machine(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)
    order = app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])
    app.orders.transition_order(order.id, OrderState.ACCEPTED)
    sale = app.sales.create_sale("2024-05-10", [ProductLine(pid, 1, 10.0)], paid=True)

    conn = app.repo._conn()
    conn.execute("UPDATE orders SET sale_id=? WHERE id=?", (sale.id, order.id))
    conn.commit()
    conn.close()

    canceled = app.orders.transition_order(order.id, OrderState.CANCELED)

    assert canceled.state is OrderState.CANCELED
    assert app.sales.get_sale(sale.id).voided is True
    assert app.inventory.get_product(pid).stock == 10


def test_auto_cancel_only_touches_stale_received_orders(tmp_path: Path):
    clock = StepClock()
    app = make_app(tmp_path, clock=clock)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)

    stale = app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])
    stale_accepted = app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])
    app.orders.transition_order(stale_accepted.id, OrderState.ACCEPTED)
    clock.advance(hours=24)
    fresh = app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])
    clock.advance(hours=1)

    assert app.orders.auto_cancel_stale_orders() == 1

    assert app.orders.get_order(stale.id).state is OrderState.CANCELED
    assert app.orders.get_order(fresh.id).state is OrderState.RECEIVED
    assert app.orders.get_order(stale_accepted.id).state is OrderState.ACCEPTED


def test_search_orders_by_phone_name_and_id(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)
    ana = app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])
    luis = app.orders.create_order(Customer(name="Luis Perez", phone="3585556789"), [ProductLine(pid, 1, 10.0)])

    assert [o.id for o in app.orders.search_orders("5556789")] == [luis.id]
    assert [o.id for o in app.orders.search_orders("PEREZ")] == [luis.id]
    assert [o.id for o in app.orders.search_orders(str(ana.id))] == [ana.id]
    assert app.orders.search_orders("nobody") == []


def test_search_orders_treats_wildcards_literally(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)
    app.orders.create_order(CUSTOMER, [ProductLine(pid, 1, 10.0)])
    tagged = app.orders.create_order(Customer(name="Mate_100%", phone="3585550000"), [ProductLine(pid, 1, 10.0)])

    assert [o.id for o in app.orders.search_orders("%")] == [tagged.id]
    assert [o.id for o in app.orders.search_orders("_")] == [tagged.id]
    assert app.orders.search_orders("t_") == []


def test_pending_count_and_daily_summary(tmp_path: Path):
    app = make_app(tmp_path)
    pid = app.inventory.add_product("Yerba", 5.0, 10.0, stock=10)

    delivered = _order_in_state(app, pid, OrderState.DELIVERED)
    _order_in_state(app, pid, OrderState.CANCELED)
    _order_in_state(app, pid, OrderState.ACCEPTED)
    _order_in_state(app, pid, OrderState.RECEIVED)

    assert app.orders.pending_count() == 2
    assert len(app.orders.list_orders_by_state(OrderState.DELIVERED)) == 1

    summary = app.orders.daily_summary()
    assert summary.total == 4
    assert summary.delivered == 1
    assert summary.canceled == 1
    assert summary.pending == 2
    assert summary.delivered_revenue == delivered.total
    assert summary.conversion_rate == 25.0
