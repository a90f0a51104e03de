from pathlib import Path

import pytest
from conftest import make_app

from rsm.domain.errors import NotFoundError, ValidationError
from rsm.domain.models import Customer, PromotionItem, PromotionLine


def _catalog(app):
    mate = app.inventory.add_product("Mate", 100.0, 300.0, stock=10)
    yerba = app.inventory.add_product("Yerba", 40.0, 90.0, stock=10)
    bombilla = app.inventory.add_product("Bombilla", 20.0, 60.0, stock=10)
    return mate, yerba, bombilla


def _items(app, promotion_id):
    return sorted((it.product_id, it.qty) for it in app.promotions.promotion_items(promotion_id))


def test_second_sync_with_same_items_writes_nothing(tmp_path: Path):
    app = make_app(tmp_path)
    mate, yerba, _ = _catalog(app)
    promo = app.promotions.create_promotion("Combo", 350.0)
    desired = [PromotionItem(mate, 1), PromotionItem(yerba, 2)]

    first = app.promotions.sync_promotion_items(promo.id, desired)
    after_first = _items(app, promo.id)
    second = app.promotions.sync_promotion_items(promo.id, desired)

    assert (first.inserted, first.updated, first.deleted) == (2, 0, 0)
    assert second.writes == 0
    assert _items(app, promo.id) == after_first == sorted([(mate, 1), (yerba, 2)])


def test_sync_updates_inserts_and_deletes_minimally(tmp_path: Path):
    app = make_app(tmp_path)
    mate, yerba, bombilla = _catalog(app)
    promo = app.promotions.create_promotion("Combo", 350.0, [(mate, 1), (yerba, 2)])
    original_ids = {it.product_id: it.id for it in promo.items}

    result = app.promotions.sync_promotion_items(promo.id, [(mate, 1), (yerba, 3), (bombilla, 1)])
    assert (result.inserted, result.updated, result.deleted) == (1, 1, 0)

    result = app.promotions.sync_promotion_items(promo.id, [(yerba, 3)])
    assert (result.inserted, result.updated, result.deleted) == (0, 0, 2)

    remaining = app.promotions.promotion_items(promo.id)
    assert [(it.product_id, it.qty) for it in remaining] == [(yerba, 3)]
    assert remaining[0].id == original_ids[yerba]


def test_sync_to_empty_removes_all_items(tmp_path: Path):
    app = make_app(tmp_path)
    mate, yerba, _ = _catalog(app)
    promo = app.promotions.create_promotion("Combo", 350.0, [(mate, 1), (yerba, 2)])

    result = app.promotions.sync_promotion_items(promo.id, [])

    assert result.deleted == 2
    assert app.promotions.promotion_items(promo.id) == []


@pytest.mark.parametrize(
    "desired, error",
    [
        ([(1, 0)], ValidationError),
        ([(1, 2.5)], ValidationError),
        ([(1, 1), (1, 2)], ValidationError),
        ([(1, 5), (999, 1)], NotFoundError),
    ],
)
def test_invalid_sync_changes_nothing(tmp_path: Path, desired, error):
    app = make_app(tmp_path)
    mate, yerba, _ = _catalog(app)
    promo = app.promotions.create_promotion("Combo", 350.0, [(mate, 1), (yerba, 2)])
    before = _items(app, promo.id)

    with pytest.raises(error):
        app.promotions.sync_promotion_items(promo.id, desired)

    assert _items(app, promo.id) == before


def test_sync_unknown_promotion(tmp_path: Path):
    app = make_app(tmp_path)

    with pytest.raises(NotFoundError, match="Promotion not found"):
        app.promotions.sync_promotion_items(42, [])


def test_update_promotion_header_and_items_together(tmp_path: Path):
    app = make_app(tmp_path)
    mate, yerba, bombilla = _catalog(app)
    promo = app.promotions.create_promotion("Combo", 350.0, [(mate, 1)])

    updated, result = app.promotions.update_promotion(promo.id, "Combo full", None, [(mate, 1), (bombilla, 1)])

    assert updated.name == "Combo full"
    assert updated.price is None
    assert result.inserted == 1 and result.writes == 1
    assert sorted(it.product_id for it in updated.items) == sorted([mate, bombilla])


def test_inactive_promotion_cannot_be_ordered(tmp_path: Path):
    app = make_app(tmp_path)
    mate, _, _ = _catalog(app)
    promo = app.promotions.create_promotion("Combo", 350.0, [(mate, 1)])

    app.promotions.set_promotion_active(promo.id, False)

    assert app.promotions.list_promotions(active_only=True) == []
    assert [p.id for p in app.promotions.list_promotions()] == [promo.id]
    with pytest.raises(NotFoundError):
        app.orders.create_order(Customer("Ana", "1155550000"), [PromotionLine(promo.id, 1, 350.0)])


def test_create_promotion_validation(tmp_path: Path):
    app = make_app(tmp_path)

    with pytest.raises(ValidationError, match="Name is required"):
        app.promotions.create_promotion("", 10.0)
    with pytest.raises(ValidationError, match="Price must be >= 0"):
        app.promotions.create_promotion("Combo", -1.0)
    assert app.promotions.list_promotions() == []
