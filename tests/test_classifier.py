from dataclasses import dataclass, field

from services.picking.classifier import classify_order_basic, classify_orders, reclassify_pool

from conftest import line


@dataclass
class _Order:
    order_number: str
    items: list = field(default_factory=list)
    is_personalized: bool = False


def test_basic_classification():
    assert classify_order_basic([line("A")], False) == "SINGLE"
    assert classify_order_basic([line("A"), line("SHIPPING-PROTECTION")], False) == "SINGLE"
    assert classify_order_basic([line("A", 2)], False) == "ORDER_BY_SIZE"
    assert classify_order_basic([line("A"), line("B")], False) == "ORDER_BY_SIZE"
    assert classify_order_basic([line("A")], True) == "PERSONALIZED"


def test_identical_orders_at_threshold_become_bulk():
    orders = [_Order(f"B{i}", [line("RED"), line("WHITE")]) for i in range(4)]
    tags = classify_orders(orders, bulk_threshold=4)
    assert set(tags.values()) == {"BULK"}


def test_group_below_threshold_stays_order_by_size():
    orders = [_Order(f"B{i}", [line("RED"), line("WHITE")]) for i in range(3)]
    assert set(classify_orders(orders, bulk_threshold=4).values()) == {"ORDER_BY_SIZE"}


def test_bulk_requires_two_to_four_units():
    big = [_Order(f"B{i}", [line("RED", 5)]) for i in range(6)]
    assert set(classify_orders(big, bulk_threshold=4).values()) == {"ORDER_BY_SIZE"}


def test_singles_never_bulk():
    orders = [_Order(f"S{i}", [line("RED")]) for i in range(10)]
    assert set(classify_orders(orders, bulk_threshold=2).values()) == {"SINGLE"}


def test_personalized_overrides_bulk():
    orders = [_Order(f"B{i}", [line("RED"), line("WHITE")]) for i in range(4)]
    orders.append(_Order("P1", [line("RED"), line("WHITE")], is_personalized=True))
    tags = classify_orders(orders, bulk_threshold=4)
    assert tags["P1"] == "PERSONALIZED"
    assert tags["B0"] == "BULK"


def test_reclassify_pool_persists_tags(db, make_orders, set_picking_settings):
    set_picking_settings(bulk_threshold=2)
    orders = make_orders([[line("RED"), line("BLUE")], [line("BLUE"), line("RED")], [line("MUG")]])

    counts = reclassify_pool(db)
    db.commit()

    assert counts == {"BULK": 2, "SINGLE": 1}
    db.refresh(orders[0])
    assert orders[0].classification == "BULK"
    assert orders[0].signature == "BLUE:1|RED:1"
    assert orders[0].item_count == 2
