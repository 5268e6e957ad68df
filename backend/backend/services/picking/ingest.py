"""Order ingestion.

Inbound order documents arrive as a single object, an array, or an
``{"orders": [...]}`` envelope, with a handful of alternative field names
depending on the channel. They are normalized here into one canonical shape
before anything else sees them.
"""
from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import ValidationFailed
from app.db.models.picking import ORDER_AWAITING_SHIPMENT, Order
from app.db.session import atomic
from services.picking.classifier import reclassify_pool
from services.picking.signature import line_quantity

logger = structlog.get_logger(__name__)

ORDER_NUMBER_KEYS = ("order_number", "orderNumber", "order_id", "orderId", "id", "number")
PERSONALIZATION_KEYS = ("isPersonalized", "is_personalized", "personalized", "customization", "engravingText")
KNOWN_STATUSES = {"AWAITING_SHIPMENT", "ON_HOLD", "SHIPPED", "CANCELLED"}

# Wholesale orders are fulfilled outside the picking floor
WHOLESALE_PREFIX = "SO"


class OrderLine(BaseModel):
    sku: str = ""
    name: str | None = None
    quantity: int = Field(default=1, ge=1)


class OrderDocument(BaseModel):
    order_number: str
    status: str = ORDER_AWAITING_SHIPMENT
    customer_name: str | None = None
    is_personalized: bool = False
    items: list[OrderLine] = Field(default_factory=list)
    raw: dict = Field(default_factory=dict)


def _first(raw: dict, keys: tuple[str, ...]) -> Any:
    for k in keys:
        v = raw.get(k)
        if v not in (None, ""):
            return v
    return None


def _flagged(raw: dict) -> bool:
    return any(bool(raw.get(k)) for k in PERSONALIZATION_KEYS)


def _line(raw: dict) -> OrderLine:
    return OrderLine(
        sku=str(_first(raw, ("sku", "SKU", "itemNumber")) or "").strip(),
        name=_first(raw, ("name", "description")),
        quantity=line_quantity(_first(raw, ("quantity", "qty"))),
    )


def _customer(raw: dict) -> str | None:
    ship_to = raw.get("shipTo") or raw.get("ship_to") or {}
    if isinstance(ship_to, dict) and ship_to.get("name"):
        return str(ship_to["name"])
    name = _first(raw, ("customer_name", "customerName"))
    return str(name) if name else None


def normalize_order(raw: dict) -> OrderDocument:
    if not isinstance(raw, dict):
        raise ValidationFailed("Order document must be an object")
    number = _first(raw, ORDER_NUMBER_KEYS)
    if number is None:
        raise ValidationFailed("Order document has no order number", keys=sorted(raw.keys()))

    lines_raw = _first(raw, ("items", "lineItems", "line_items")) or []
    if not isinstance(lines_raw, list):
        raise ValidationFailed("Order items must be a list", order_number=str(number))
    lines = [ln for ln in lines_raw if isinstance(ln, dict)]

    status = str(_first(raw, ("orderStatus", "status")) or ORDER_AWAITING_SHIPMENT).upper()
    return OrderDocument(
        order_number=str(number).strip(),
        status=status if status in KNOWN_STATUSES else ORDER_AWAITING_SHIPMENT,
        customer_name=_customer(raw),
        is_personalized=_flagged(raw) or any(_flagged(ln) for ln in lines),
        items=[_line(ln) for ln in lines],
        raw=raw,
    )


def normalize_order_payload(body: Any) -> list[OrderDocument]:
    if isinstance(body, dict) and isinstance(body.get("orders"), list):
        body = body["orders"]
    if isinstance(body, dict):
        body = [body]
    if not isinstance(body, list):
        raise ValidationFailed("Payload must be an order object or a list of orders")
    return [normalize_order(raw) for raw in body]


def ingest_orders(db: Session, body: Any) -> dict:
    """Upsert inbound orders and reclassify the pool.

    Orders already batched or on a cart keep their lines; only their status
    is refreshed.
    """
    docs = normalize_order_payload(body)
    created = updated = 0
    skipped: list[str] = []
    seen: dict[str, Order] = {}

    with atomic(db):
        for doc in docs:
            if doc.order_number.upper().startswith(WHOLESALE_PREFIX):
                skipped.append(doc.order_number)
                continue
            items = [ln.model_dump() for ln in doc.items]
            order = seen.get(doc.order_number) or db.query(Order).filter(Order.order_number == doc.order_number).first()
            if order is None:
                order = Order(
                    order_number=doc.order_number,
                    status=doc.status,
                    customer_name=doc.customer_name,
                    items=items,
                    raw_payload=doc.raw,
                    is_personalized=doc.is_personalized,
                )
                db.add(order)
                seen[doc.order_number] = order
                created += 1
                continue
            seen[doc.order_number] = order
            order.status = doc.status
            order.raw_payload = doc.raw
            if order.batch_id is None and order.chunk_id is None:
                order.items = items
                order.customer_name = doc.customer_name
                order.is_personalized = doc.is_personalized
            updated += 1
        db.flush()
        classification = reclassify_pool(db)

    logger.info("orders_ingested", received=len(docs), created=created, updated=updated, skipped=len(skipped))
    return {
        "received": len(docs),
        "created": created,
        "updated": updated,
        "skipped_order_numbers": skipped,
        "classification": classification,
    }
