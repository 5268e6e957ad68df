import pytest

from services.picking.bulk import build_sku_layout, split_bulk_group


@pytest.mark.parametrize("total,expected", [
    (0, []),
    (20, [20]),
    (24, [24]),
    (25, [13, 12]),
    (50, [17, 17, 16]),
    (72, [24, 24, 24]),
])
def test_split_bulk_group(total, expected):
    assert split_bulk_group(total, 24) == expected


def test_split_sizes_are_balanced_and_capped():
    for total in range(1, 200):
        sizes = split_bulk_group(total, 24)
        assert sum(sizes) == total
        assert max(sizes) <= 24
        assert max(sizes) - min(sizes) <= 1


def test_layout_has_one_bin_per_unit():
    layout = build_sku_layout(
        [{"sku": "GREEN", "quantity": 2}, {"sku": "RED", "quantity": 1}, {"sku": "WHITE", "quantity": 1}], 17)
    assert [b["sku"] for b in layout] == ["GREEN", "GREEN", "RED", "WHITE"]
    assert all(b["bin_qty"] == 17 for b in layout)
    assert [b["master_unit_index"] for b in layout] == [0, 1, 2, 3]
