from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasCreatedAt, HasId, utc_now


class OutboxEvent(Base, HasId, HasCreatedAt):
    """Transactional outbox.

    Picking transitions insert rows here in the same transaction as the state
    change. The dispatcher (see app.events.dispatcher) runs in-process handlers
    and delivers to webhook subscriptions after commit.
    """

    __tablename__ = "outbox_event"

    topic: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Delivery state
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    abandoned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


Index("ix_outbox_topic_created", OutboxEvent.topic, OutboxEvent.created_at)
Index("ix_outbox_delivery", OutboxEvent.delivered, OutboxEvent.abandoned, OutboxEvent.available_at)
