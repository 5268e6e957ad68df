"""Order classification.

    PERSONALIZED   personalization flag, overrides everything
    SINGLE         one physical line at quantity 1, never bulk
    BULK           2-4 units and at least ``bulk_threshold`` identical orders
    ORDER_BY_SIZE  everything else

Re-run over the whole pool whenever orders arrive: a group can cross the
bulk threshold once enough duplicates exist.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from typing import Iterable, Mapping, Protocol

import structlog
from sqlalchemy.orm import Session

from app.db.models.picking import (
    CLASS_BULK, CLASS_ORDER_BY_SIZE, CLASS_PERSONALIZED, CLASS_SINGLE,
    ORDER_AWAITING_SHIPMENT, Order,
)
from services.picking.settings import load_settings
from services.picking.signature import OrderSignature, compute_signature, line_quantity, physical_items

logger = structlog.get_logger(__name__)

BULK_MIN_ITEMS = 2
BULK_MAX_ITEMS = 4  # a bulk shelf row is 4 bins wide


class Classifiable(Protocol):
    order_number: str
    items: list
    is_personalized: bool


def classify_order_basic(items: Iterable[Mapping], is_personalized: bool) -> str:
    """Classification that needs no knowledge of other orders."""
    if is_personalized:
        return CLASS_PERSONALIZED
    real = physical_items(items)
    if len(real) == 1 and line_quantity(real[0].get("quantity")) == 1:
        return CLASS_SINGLE
    return CLASS_ORDER_BY_SIZE


def can_be_bulk(sig: OrderSignature) -> bool:
    return BULK_MIN_ITEMS <= sig.item_count <= BULK_MAX_ITEMS


def classify_orders(orders: Iterable[Classifiable], bulk_threshold: int = 4) -> dict[str, str]:
    result: dict[str, str] = {}
    groups: dict[str, list[str]] = defaultdict(list)
    sigs: dict[str, OrderSignature] = {}

    for o in orders:
        basic = classify_order_basic(o.items, o.is_personalized)
        if basic != CLASS_ORDER_BY_SIZE:
            result[o.order_number] = basic
            continue
        sig = compute_signature(o.items)
        sigs[sig.signature] = sig
        groups[sig.signature].append(o.order_number)

    for key, members in groups.items():
        bulk = can_be_bulk(sigs[key]) and len(members) >= bulk_threshold
        for number in members:
            result[number] = CLASS_BULK if bulk else CLASS_ORDER_BY_SIZE
    return result


def pooled_orders_query(db: Session):
    """Orders waiting to be batched: awaiting shipment, no batch, no chunk."""
    return (db.query(Order)
            .filter(Order.status == ORDER_AWAITING_SHIPMENT,
                    Order.batch_id.is_(None),
                    Order.chunk_id.is_(None)))


def reclassify_pool(db: Session, *, bulk_threshold: int | None = None) -> dict[str, int]:
    """Classify every pooled order and persist the tags. Caller commits."""
    if bulk_threshold is None:
        bulk_threshold = load_settings(db).bulk_threshold

    orders = pooled_orders_query(db).all()
    tags = classify_orders(orders, bulk_threshold=bulk_threshold)
    for o in orders:
        sig = compute_signature(o.items)
        o.classification = tags[o.order_number]
        o.signature = sig.signature
        o.item_count = sig.item_count
    db.flush()

    counts = dict(Counter(tags.values()))
    logger.info("pool_reclassified", orders=len(orders), bulk_threshold=bulk_threshold, **counts)
    return counts
