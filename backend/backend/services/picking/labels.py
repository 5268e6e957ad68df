"""Label prepurchase after a chunk is picked.

Runs in the outbox dispatcher, after the completing transaction has
committed. A failure here only delays labels; it never reopens the chunk.
"""
from __future__ import annotations

import os

import httpx
import structlog

from app.events.handlers import handles

logger = structlog.get_logger(__name__)

LABEL_PREPURCHASE_URL = os.getenv("LABEL_PREPURCHASE_URL", "")
LABEL_PREPURCHASE_TIMEOUT_SECONDS = float(os.getenv("LABEL_PREPURCHASE_TIMEOUT_SECONDS", "30"))


async def request_prepurchase(client: httpx.AsyncClient, url: str, chunk_id: str) -> dict:
    resp = await client.post(url, json={"chunkId": chunk_id}, timeout=LABEL_PREPURCHASE_TIMEOUT_SECONDS)
    resp.raise_for_status()
    body = resp.json() if resp.content else {}
    return {
        "total": int(body.get("total") or 0),
        "succeeded": int(body.get("succeeded") or 0),
        "failed": int(body.get("failed") or 0),
    }


@handles("picking.chunk.picked")
async def prepurchase_chunk_labels(client: httpx.AsyncClient, payload: dict) -> None:
    chunk_id = payload.get("chunk_id")
    if not LABEL_PREPURCHASE_URL:
        logger.debug("label_prepurchase_disabled", chunk_id=chunk_id)
        return
    if not chunk_id:
        logger.warning("label_prepurchase_skipped", reason="missing chunk_id")
        return

    counts = await request_prepurchase(client, LABEL_PREPURCHASE_URL, chunk_id)
    if counts["failed"]:
        logger.warning("labels_prepurchased_with_failures", chunk_id=chunk_id, **counts)
    else:
        logger.info("labels_prepurchased", chunk_id=chunk_id, **counts)
