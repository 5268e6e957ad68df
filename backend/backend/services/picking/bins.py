"""Cart bin numbering.

Orders are laid out on the cart in pick-path order (storage location
ascending) so the picker walks the aisles once. Bin numbers within a chunk
are always 1..N with no gaps.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.core.errors import ConcurrentClaim
from app.db.models.picking import (
    BATCH_BULK, BATCH_SINGLES, BulkBatch, Chunk, ChunkBulkBatchAssignment, Order, ProductSku,
)
from services.picking.signature import dominant_sku, first_physical_sku

logger = structlog.get_logger(__name__)

# Unresolved locations sort after every real location string.
UNKNOWN_LOCATION = "ZZZ"


class LocationResolver(Protocol):
    def resolve_bin_locations(self, skus: Iterable[str]) -> dict[str, str | None]:
        ...


class ProductSkuLocationResolver:
    """Looks locations up in the SKU master with one query per chunk."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_bin_locations(self, skus: Iterable[str]) -> dict[str, str | None]:
        wanted = sorted({s for s in skus if s})
        if not wanted:
            return {}
        rows = self.db.query(ProductSku.sku, ProductSku.bin_location).filter(ProductSku.sku.in_(wanted)).all()
        found = {sku.upper(): loc for sku, loc in rows}
        return {s: found.get(s) for s in wanted}


def _location(locations: dict[str, str | None], sku: str | None) -> str:
    if not sku:
        return UNKNOWN_LOCATION
    return locations.get(sku) or UNKNOWN_LOCATION


@dataclass
class BinPlan:
    bins: dict[str, int] = field(default_factory=dict)  # order id -> bin number
    shelves: list[tuple[str, int]] = field(default_factory=list)  # (bulk batch id, shelf number)

    @property
    def bin_count(self) -> int:
        return len(set(self.bins.values()))


def plan_singles_bins(orders: Sequence[Order], locations: dict[str, str | None]) -> BinPlan:
    """One bin per SKU; every order for that SKU shares it."""
    groups: dict[str, list[Order]] = defaultdict(list)
    for o in orders:
        groups[dominant_sku(o.items) or ""].append(o)

    plan = BinPlan()
    ordered = sorted(groups, key=lambda sku: (_location(locations, sku), sku))
    for bin_number, sku in enumerate(ordered, start=1):
        for o in groups[sku]:
            plan.bins[o.id] = bin_number
    return plan


def plan_bulk_bins(orders: Sequence[Order], bulk_batches: Sequence[BulkBatch]) -> BinPlan:
    """Shelves in split order; bin numbers keep counting across shelves."""
    by_split: dict[str, list[Order]] = defaultdict(list)
    for o in orders:
        by_split[o.bulk_batch_id].append(o)

    plan = BinPlan()
    counter = 0
    for shelf_number, bb in enumerate(sorted(bulk_batches, key=lambda b: b.split_index), start=1):
        plan.shelves.append((bb.id, shelf_number))
        for o in sorted(by_split.get(bb.id, []), key=lambda o: o.order_number):
            counter += 1
            plan.bins[o.id] = counter
    return plan


def plan_default_bins(orders: Sequence[Order], locations: dict[str, str | None]) -> BinPlan:
    """One order per bin, ordered by the location of its first physical SKU."""
    plan = BinPlan()
    ordered = sorted(orders, key=lambda o: (_location(locations, first_physical_sku(o.items)), o.order_number))
    for bin_number, o in enumerate(ordered, start=1):
        plan.bins[o.id] = bin_number
    return plan


def plan_bins(picking_mode: str, orders: Sequence[Order], *, resolver: LocationResolver,
              bulk_batches: Sequence[BulkBatch] = ()) -> BinPlan:
    if picking_mode == BATCH_BULK:
        return plan_bulk_bins(orders, bulk_batches)
    if picking_mode == BATCH_SINGLES:
        skus = [dominant_sku(o.items) for o in orders]
        return plan_singles_bins(orders, resolver.resolve_bin_locations(skus))
    skus = [first_physical_sku(o.items) for o in orders]
    return plan_default_bins(orders, resolver.resolve_bin_locations(skus))


def attach_orders(db: Session, chunk: Chunk, orders: Sequence[Order]) -> None:
    """Point every order at the chunk in one conditional UPDATE.

    Only rows that are still unassigned are touched; if any order was taken by
    a concurrent claim the row count comes up short and the claim is aborted.
    """
    ids = [o.id for o in orders]
    result = db.execute(
        update(Order)
        .where(Order.id.in_(ids), Order.chunk_id.is_(None))
        .values(chunk_id=chunk.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(ids):
        raise ConcurrentClaim(
            "Some orders were claimed by another picker",
            expected=len(ids), attached=result.rowcount,
        )
    for o in orders:
        set_committed_value(o, "chunk_id", chunk.id)


def _flip_bulk_batch(db: Session, bulk_batch_id: str) -> None:
    result = db.execute(
        update(BulkBatch)
        .where(BulkBatch.id == bulk_batch_id, BulkBatch.status == "PENDING")
        .values(status="ASSIGNED")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentClaim("Bulk batch was claimed by another picker", bulk_batch_id=bulk_batch_id)


def assign_bins(db: Session, chunk: Chunk, orders: Sequence[Order], *, resolver: LocationResolver,
                bulk_batches: Sequence[BulkBatch] = ()) -> BinPlan:
    """Attach orders to the chunk and write their bin numbers. Caller commits."""
    attach_orders(db, chunk, orders)

    plan = plan_bins(chunk.picking_mode, orders, resolver=resolver, bulk_batches=bulk_batches)

    by_bin: dict[int, list[str]] = defaultdict(list)
    for order_id, bin_number in plan.bins.items():
        by_bin[bin_number].append(order_id)
    for bin_number, order_ids in sorted(by_bin.items()):
        db.execute(
            update(Order)
            .where(Order.id.in_(order_ids))
            .values(bin_number=bin_number)
            .execution_options(synchronize_session=False)
        )
    for o in orders:
        set_committed_value(o, "bin_number", plan.bins.get(o.id))

    for bulk_batch_id, shelf_number in plan.shelves:
        _flip_bulk_batch(db, bulk_batch_id)
        db.add(ChunkBulkBatchAssignment(chunk_id=chunk.id, bulk_batch_id=bulk_batch_id, shelf_number=shelf_number))
    for bb in bulk_batches:
        set_committed_value(bb, "status", "ASSIGNED")

    logger.info("bins_assigned", chunk_id=chunk.id, mode=chunk.picking_mode, orders=len(orders), bins=plan.bin_count)
    return plan
