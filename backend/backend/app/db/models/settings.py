from __future__ import annotations
from sqlalchemy import String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

class AppSetting(Base, HasId, HasCreatedAt):
    """Key/value operator settings (JSON values)."""
    __tablename__ = "sys_app_setting"

    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    value: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
