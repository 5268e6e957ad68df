"""Bulk runs: identical orders split into shelf-sized groups."""
from __future__ import annotations

import math
from collections import defaultdict
from typing import Iterable

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.models.common import as_utc
from app.db.models.picking import BulkBatch, Order, PickBatch
from services.picking.signature import compute_signature

logger = structlog.get_logger(__name__)


def split_bulk_group(total_orders: int, max_per_bin: int = 24) -> list[int]:
    """Balanced group sizes, never above ``max_per_bin``.

    50 -> [17, 17, 16], 72 -> [24, 24, 24], 20 -> [20].
    """
    if total_orders <= 0:
        return []
    if total_orders <= max_per_bin:
        return [total_orders]

    groups = math.ceil(total_orders / max_per_bin)
    per_group, remainder = divmod(total_orders, groups)
    return [per_group + 1 if i < remainder else per_group for i in range(groups)]


def build_sku_layout(items: Iterable[dict], order_count: int) -> list[dict]:
    """One shelf bin per unit of quantity; every bin holds one unit per order.

    1x RED, 1x WHITE, 2x GREEN -> [RED, WHITE, GREEN, GREEN].
    """
    layout = []
    unit = 0
    for item in items:
        for _ in range(int(item["quantity"])):
            layout.append({"sku": item["sku"], "bin_qty": order_count, "master_unit_index": unit})
            unit += 1
    return layout


def _sorted_fifo(orders: Iterable[Order]) -> list[Order]:
    return sorted(orders, key=lambda o: (as_utc(o.created_at), o.order_number))


def create_bulk_batches(db: Session, batch: PickBatch, orders: Iterable[Order], *, max_per_split: int = 24) -> list[BulkBatch]:
    """Group a BULK batch's orders by signature and persist one BulkBatch per split."""
    groups: dict[str, list[Order]] = defaultdict(list)
    for o in orders:
        groups[compute_signature(o.items).signature].append(o)

    created: list[BulkBatch] = []
    split_index = 0
    for signature in sorted(groups):
        members = _sorted_fifo(groups[signature])
        items = compute_signature(members[0].items).items
        sizes = split_bulk_group(len(members), max_per_split)
        start = 0
        for size in sizes:
            bb = BulkBatch(
                batch_id=batch.id,
                group_signature=signature,
                split_index=split_index,
                total_splits=len(sizes),
                order_count=size,
                sku_layout=build_sku_layout(items, size),
                status="PENDING",
            )
            db.add(bb)
            db.flush()
            for o in members[start:start + size]:
                o.bulk_batch_id = bb.id
            start += size
            split_index += 1
            created.append(bb)

    logger.info("bulk_batches_created", batch=batch.name, groups=len(groups), splits=len(created))
    return created


def requeue_bulk_orders(db: Session, orders: Iterable[Order]) -> list[BulkBatch]:
    """Move bulk orders released from a chunk into fresh PENDING splits.

    The split they came from keeps its remaining orders; its order count and
    layout quantities shrink accordingly.
    """
    by_source: dict[str, list[Order]] = defaultdict(list)
    for o in orders:
        if o.bulk_batch_id:
            by_source[o.bulk_batch_id].append(o)

    created: list[BulkBatch] = []
    for source_id, released in by_source.items():
        source = db.get(BulkBatch, source_id)
        if source is None:
            continue
        items = compute_signature(released[0].items).items
        remaining = max(0, source.order_count - len(released))
        source.order_count = remaining
        source.sku_layout = build_sku_layout(items, remaining)

        next_index = (db.query(func.max(BulkBatch.split_index))
                      .filter(BulkBatch.batch_id == source.batch_id)
                      .scalar())
        bb = BulkBatch(
            batch_id=source.batch_id,
            group_signature=source.group_signature,
            split_index=(next_index if next_index is not None else -1) + 1,
            total_splits=source.total_splits,
            order_count=len(released),
            sku_layout=build_sku_layout(items, len(released)),
            status="PENDING",
        )
        db.add(bb)
        db.flush()
        for o in released:
            o.bulk_batch_id = bb.id
        created.append(bb)
        logger.info("bulk_orders_requeued", source_bulk_batch=source_id, bulk_batch=bb.id, orders=len(released))
    return created
