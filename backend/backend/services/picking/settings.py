from __future__ import annotations

from dataclasses import dataclass, fields

import structlog
from sqlalchemy.orm import Session

from app.db.models.settings import AppSetting

logger = structlog.get_logger(__name__)

SETTINGS_KEY = "picking"


@dataclass(frozen=True)
class PickingSettings:
    bulk_threshold: int = 4
    standard_max_bins: int = 12
    oversized_max_bins: int = 6
    singles_max_orders_per_bin: int = 24
    bulk_max_shelves: int = 3
    bulk_bins_per_shelf: int = 4
    bulk_max_orders_per_split: int = 24

    def max_bins(self, *, oversized: bool) -> int:
        return self.oversized_max_bins if oversized else self.standard_max_bins


def load_settings(db: Session) -> PickingSettings:
    """Operator overrides stored under the ``picking`` key, merged over defaults.

    Unknown keys and non-positive values are ignored.
    """
    row = db.query(AppSetting).filter(AppSetting.key == SETTINGS_KEY).first()
    if not row or not row.value:
        return PickingSettings()

    overrides = {}
    for f in fields(PickingSettings):
        raw = row.value.get(f.name)
        if raw is None:
            continue
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("picking_setting_ignored", key=f.name, value=raw)
            continue
        if value > 0:
            overrides[f.name] = value
    return PickingSettings(**overrides)
