from types import SimpleNamespace

from services.picking.bins import (
    UNKNOWN_LOCATION, plan_bulk_bins, plan_default_bins, plan_singles_bins,
)

from conftest import line


def _order(oid, number, items, bulk_batch_id=None):
    return SimpleNamespace(id=oid, order_number=number, items=items, bulk_batch_id=bulk_batch_id)


def test_default_bins_follow_pick_path():
    orders = [
        _order("o1", "1001", [line("C")]),
        _order("o2", "1002", [line("A")]),
        _order("o3", "1003", [line("B"), line("A")]),
    ]
    plan = plan_default_bins(orders, {"A": "A-01", "B": "B-07", "C": "A-02"})
    assert plan.bins == {"o2": 1, "o1": 2, "o3": 3}
    assert plan.bin_count == 3


def test_unknown_locations_go_last():
    orders = [_order("o1", "1001", [line("NOWHERE")]), _order("o2", "1002", [line("A")])]
    plan = plan_default_bins(orders, {"A": "Z-99", "NOWHERE": None})
    assert plan.bins == {"o2": 1, "o1": 2}
    assert UNKNOWN_LOCATION > "Z-99"


def test_singles_share_a_bin_per_sku():
    orders = [
        _order("o1", "1001", [line("MUG")]),
        _order("o2", "1002", [line("CAP")]),
        _order("o3", "1003", [line("MUG")]),
    ]
    plan = plan_singles_bins(orders, {"MUG": "A-01", "CAP": "B-01"})
    assert plan.bins == {"o1": 1, "o3": 1, "o2": 2}
    assert plan.bin_count == 2


def test_bulk_bins_count_across_shelves():
    shelves = [SimpleNamespace(id="bb2", split_index=1), SimpleNamespace(id="bb1", split_index=0)]
    orders = [
        _order("o1", "2002", [line("A")], "bb1"),
        _order("o2", "2001", [line("A")], "bb1"),
        _order("o3", "3001", [line("B")], "bb2"),
    ]
    plan = plan_bulk_bins(orders, shelves)
    assert plan.shelves == [("bb1", 1), ("bb2", 2)]
    assert plan.bins == {"o2": 1, "o1": 2, "o3": 3}


def test_bins_are_contiguous_from_one():
    orders = [_order(f"o{i}", f"{1000 + i}", [line(f"SKU{i}")]) for i in range(7)]
    plan = plan_default_bins(orders, {})
    assert sorted(plan.bins.values()) == list(range(1, 8))
