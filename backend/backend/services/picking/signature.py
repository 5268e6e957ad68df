"""Order composition fingerprints.

Two orders with the same signature hold the same physical items in the same
quantities and can be picked together as a bulk run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

NON_PHYSICAL_SKUS = {"99998", "99999"}


@dataclass(frozen=True)
class OrderSignature:
    signature: str
    item_count: int
    items: list[dict] = field(default_factory=list)  # [{sku, quantity}] sorted by sku


def line_quantity(raw) -> int:
    try:
        q = int(raw or 0)
    except (TypeError, ValueError):
        q = 0
    return q if q > 0 else 1


def is_non_physical(sku: str | None, name: str | None = None) -> bool:
    """Shipping insurance / protection lines never go on a cart."""
    upper_sku = (sku or "").upper().strip()
    upper_name = (name or "").upper()
    if "INSURANCE" in upper_sku or "SHIP" in upper_sku or upper_sku in NON_PHYSICAL_SKUS:
        return True
    return "INSURANCE" in upper_name or "SHIPPING PROTECTION" in upper_name


def physical_items(items: Iterable[Mapping]) -> list[Mapping]:
    return [it for it in items or [] if not is_non_physical(it.get("sku"), it.get("name"))]


def compute_signature(items: Iterable[Mapping]) -> OrderSignature:
    merged: dict[str, int] = {}
    for it in physical_items(items):
        sku = str(it.get("sku") or "").upper().strip()
        merged[sku] = merged.get(sku, 0) + line_quantity(it.get("quantity"))

    normalized = [{"sku": sku, "quantity": merged[sku]} for sku in sorted(merged)]
    return OrderSignature(
        signature="|".join(f"{i['sku']}:{i['quantity']}" for i in normalized),
        item_count=sum(i["quantity"] for i in normalized),
        items=normalized,
    )


def dominant_sku(items: Iterable[Mapping]) -> str | None:
    """SKU with the largest quantity; ties go to the alphabetically first SKU."""
    sig = compute_signature(items)
    if not sig.items:
        return None
    best = sorted(sig.items, key=lambda i: (-i["quantity"], i["sku"]))[0]
    return best["sku"]


def first_physical_sku(items: Iterable[Mapping]) -> str | None:
    for it in physical_items(items):
        sku = str(it.get("sku") or "").upper().strip()
        if sku:
            return sku
    return None
