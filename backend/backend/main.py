from __future__ import annotations

import asyncio
import os

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.errors import PickingError
from app.core.logging import clear_context, configure_logging
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

# Register outbox handlers
from services.picking import labels  # noqa: F401

from services.admin.events_api import router as events_admin_router
from services.picking.api import batches_router, orders_router, router as picking_router

logger = structlog.get_logger(__name__)

RUN_OUTBOX_DISPATCHER = os.getenv("RUN_OUTBOX_DISPATCHER", "1") not in ("0", "false", "False")
OUTBOX_POLL_INTERVAL_SECONDS = float(os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "1.0"))


app = FastAPI(title="Picking Control Plane")


@app.exception_handler(PickingError)
async def _picking_error(request: Request, exc: PickingError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, message=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.middleware("http")
async def _clear_log_context(request: Request, call_next):
    clear_context()
    return await call_next(request)


@app.on_event("startup")
async def _startup():
    configure_logging()

    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    # Outbox delivery runs in-process; label prepurchase and webhooks never block a request.
    if RUN_OUTBOX_DISPATCHER:
        from app.events.dispatcher import run_dispatcher_forever

        asyncio.create_task(run_dispatcher_forever(poll_interval_seconds=OUTBOX_POLL_INTERVAL_SECONDS))


app.include_router(picking_router)
app.include_router(batches_router)
app.include_router(orders_router)
app.include_router(events_admin_router)


@app.get("/health")
def health():
    return {"ok": True}
