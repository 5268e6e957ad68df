from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import InvalidTransition, NotFound
from app.db.models.common import utc_now
from app.db.session import atomic, get_db
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription


router = APIRouter(prefix="/admin/events", tags=["admin_events"])


class SubscriptionIn(BaseModel):
    name: str = Field(default="subscription", max_length=128)
    topic_pattern: str = Field(..., max_length=128)
    target_url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    is_active: bool = True


def _sub_out(s: EventSubscription) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "topic_pattern": s.topic_pattern,
        "target_url": s.target_url,
        "headers": s.headers or {},
        "timeout_seconds": s.timeout_seconds,
        "is_active": bool(s.is_active),
        "failure_count": int(s.failure_count or 0),
        "last_error": s.last_error,
        "last_delivered_at": s.last_delivered_at.isoformat() if s.last_delivered_at else None,
    }


def _event_out(e: OutboxEvent) -> dict:
    return {
        "id": e.id,
        "topic": e.topic,
        "payload": e.payload or {},
        "attempt_count": e.attempt_count,
        "last_error": e.last_error,
        "delivered": e.delivered,
        "abandoned": e.abandoned,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


@router.get("/subscriptions")
def list_subscriptions(db: Session = Depends(get_db)):
    subs = db.query(EventSubscription).order_by(EventSubscription.created_at.desc()).all()
    return [_sub_out(s) for s in subs]


@router.post("/subscriptions")
def create_subscription(payload: SubscriptionIn, db: Session = Depends(get_db)):
    s = EventSubscription(**payload.model_dump(), failure_count=0)
    with atomic(db):
        db.add(s)
    return _sub_out(s)


@router.post("/subscriptions/{sub_id}/toggle")
def toggle_subscription(sub_id: str, db: Session = Depends(get_db)):
    s = db.get(EventSubscription, sub_id)
    if not s:
        raise NotFound("Unknown subscription", subscription_id=sub_id)
    with atomic(db):
        s.is_active = not bool(s.is_active)
    return {"id": s.id, "is_active": bool(s.is_active)}


@router.delete("/subscriptions/{sub_id}")
def delete_subscription(sub_id: str, db: Session = Depends(get_db)):
    s = db.get(EventSubscription, sub_id)
    if not s:
        return {"deleted": False}
    with atomic(db):
        db.delete(s)
    return {"deleted": True}


@router.get("/outbox")
def list_outbox(state: str = "pending", limit: int = 100, db: Session = Depends(get_db)):
    """Undelivered events: ``pending`` (still retrying) or ``abandoned``."""
    q = db.query(OutboxEvent).filter(OutboxEvent.delivered == False)  # noqa: E712
    q = q.filter(OutboxEvent.abandoned == (state == "abandoned"))
    rows = q.order_by(OutboxEvent.created_at.asc()).limit(min(max(limit, 1), 500)).all()
    return [_event_out(e) for e in rows]


@router.post("/outbox/{event_id}/retry")
def retry_event(event_id: str, db: Session = Depends(get_db)):
    evt = db.get(OutboxEvent, event_id)
    if not evt:
        raise NotFound("Unknown event", event_id=event_id)
    if evt.delivered:
        raise InvalidTransition("Event was already delivered", event_id=event_id)
    with atomic(db):
        evt.abandoned = False
        evt.attempt_count = 0
        evt.available_at = utc_now()
    return _event_out(evt)
