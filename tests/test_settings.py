from services.picking.settings import PickingSettings, load_settings


def test_defaults_without_overrides(db):
    assert load_settings(db) == PickingSettings()
    assert PickingSettings().max_bins(oversized=True) == 6
    assert PickingSettings().max_bins(oversized=False) == 12


def test_overrides_merge_and_bad_values_are_ignored(db, set_picking_settings):
    set_picking_settings(bulk_threshold="6", standard_max_bins=0, oversized_max_bins="lots", unknown=3)
    settings = load_settings(db)
    assert settings.bulk_threshold == 6
    assert settings.standard_max_bins == 12
    assert settings.oversized_max_bins == 6
