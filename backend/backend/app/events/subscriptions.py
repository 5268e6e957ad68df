from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasCreatedAt, HasId


class EventSubscription(Base, HasId, HasCreatedAt):
    """Webhook subscriber for picking events.

    Shipping, engraving stations and dashboards register a target URL for a
    topic pattern; the dispatcher POSTs ``{topic, event_id, created_at, payload}``.

    Patterns:
      - exact match:   "picking.chunk.picked"
      - prefix match:  "picking." (recommended)
      - wildcard:      "picking.*" (treated as prefix)
    """

    __tablename__ = "event_subscription"

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    topic_pattern: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    headers: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    timeout_seconds: Mapped[float] = mapped_column(Float, default=10.0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


Index("ix_event_sub_active", EventSubscription.is_active, EventSubscription.topic_pattern)
