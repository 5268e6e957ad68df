from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta

import httpx
import structlog
from sqlalchemy.orm import Session, sessionmaker

from app.db.models.common import utc_now
from app.db.session import SessionLocal
from app.events.handlers import handlers_for
from app.events.outbox import OutboxEvent
from app.events.subscriptions import EventSubscription

logger = structlog.get_logger(__name__)

OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "12"))
OUTBOX_BATCH_SIZE = 50


def _pattern_matches(pattern: str, topic: str) -> bool:
    """Topic pattern helper.

    Supported:
      - exact match
      - prefix match using trailing '.'
      - wildcard 'prefix.*' treated as prefix match
    """
    if not pattern:
        return False
    if pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])  # keep trailing '.'
    if pattern.endswith("."):
        return topic.startswith(pattern)
    return False


def _get_matching_subs(db: Session, topic: str) -> list[EventSubscription]:
    subs = db.query(EventSubscription).filter(EventSubscription.is_active == True).all()  # noqa: E712
    return [s for s in subs if _pattern_matches(s.topic_pattern, topic)]


async def _deliver_one(client: httpx.AsyncClient, sub: EventSubscription, evt: OutboxEvent) -> tuple[bool, str | None]:
    headers = {k: str(v) for k, v in (sub.headers or {}).items()}
    body = {
        "topic": evt.topic,
        "event_id": evt.id,
        "created_at": evt.created_at.isoformat() if evt.created_at else None,
        "payload": evt.payload or {},
    }
    try:
        resp = await client.post(sub.target_url, json=body, headers=headers, timeout=sub.timeout_seconds or 10.0)
    except httpx.HTTPError as e:
        return False, f"{type(e).__name__}: {e}"
    if 200 <= resp.status_code < 300:
        return True, None
    return False, f"HTTP {resp.status_code}: {resp.text[:300]}"


async def _run_handlers(client: httpx.AsyncClient, evt: OutboxEvent) -> str | None:
    last_err = None
    for handler in handlers_for(evt.topic):
        try:
            await handler(client, evt.payload or {})
        except Exception as e:
            logger.exception("outbox_handler_failed", topic=evt.topic, event_id=evt.id, handler=handler.__name__)
            last_err = f"{handler.__name__}: {e}"
    return last_err


def _schedule_next(attempt_count: int) -> datetime:
    # Exponential backoff capped at 10 minutes
    seconds = min(600, 2 ** min(attempt_count, 9))
    return utc_now() + timedelta(seconds=seconds)


async def dispatch_pending(db: Session, client: httpx.AsyncClient, *, max_attempts: int = OUTBOX_MAX_ATTEMPTS) -> int:
    """Deliver one page of due outbox events. Returns how many were processed."""
    now = utc_now()
    events = (
        db.query(OutboxEvent)
        .filter(OutboxEvent.delivered == False)  # noqa: E712
        .filter(OutboxEvent.abandoned == False)  # noqa: E712
        .filter(OutboxEvent.available_at <= now)
        .order_by(OutboxEvent.created_at.asc())
        .limit(OUTBOX_BATCH_SIZE)
        .all()
    )
    if not events:
        return 0

    for evt in events:
        last_err = await _run_handlers(client, evt)

        # Event considered delivered when every handler and subscriber succeeds
        for sub in _get_matching_subs(db, evt.topic):
            ok, err = await _deliver_one(client, sub, evt)
            if ok:
                sub.last_error = None
                sub.failure_count = 0
                sub.last_delivered_at = utc_now()
            else:
                last_err = err
                sub.last_error = err
                sub.failure_count = (sub.failure_count or 0) + 1
                logger.warning("webhook_delivery_failed", topic=evt.topic, event_id=evt.id, subscription=sub.name, error=err)

        if last_err is None:
            evt.delivered = True
            evt.delivered_at = utc_now()
            evt.last_error = None
            continue

        evt.attempt_count = (evt.attempt_count or 0) + 1
        evt.last_error = last_err
        if evt.attempt_count >= max_attempts:
            evt.abandoned = True
            logger.error("outbox_event_abandoned", topic=evt.topic, event_id=evt.id, attempts=evt.attempt_count, error=last_err)
        else:
            evt.available_at = _schedule_next(evt.attempt_count)

    db.commit()
    return len(events)


async def run_dispatcher_forever(*, poll_interval_seconds: float = 1.0, session_factory: sessionmaker = SessionLocal) -> None:
    """Background worker that drains the outbox.

    Runs registered in-process handlers (label prepurchase) and webhook
    deliveries. Failures are logged and retried with backoff; they never reach
    the request that produced the event.
    """
    logger.info("outbox_dispatcher_started", poll_interval_seconds=poll_interval_seconds)
    async with httpx.AsyncClient() as client:
        while True:
            db = session_factory()
            try:
                await dispatch_pending(db, client)
            except asyncio.CancelledError:
                raise
            except Exception:
                db.rollback()
                logger.exception("outbox_dispatch_failed")
            finally:
                db.close()
            await asyncio.sleep(poll_interval_seconds)
