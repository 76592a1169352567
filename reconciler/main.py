import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from reconciler.config import settings
from reconciler.db import close_pool, get_pool, init_schema
from reconciler.dispatcher import QueueDispatcher
from reconciler.engine import ReconciliationEngine
from reconciler.ledger import PostgresLedger
from reconciler.metrics import (
    billing_pending_reservations,
    get_metrics_bytes,
    get_metrics_content_type,
    status_change_queue_messages_waiting,
)
from reconciler.queue import STATUS_CHANGE_QUEUE_KEY
from reconciler.redis_client import close_redis, get_redis, queue_length
from reconciler.routes import admin, webhooks
from reconciler.sqs_client import get_queue_depth
from reconciler.store import PostgresBillingStore

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SEC = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool = await get_pool()
    await init_schema(pool)
    if not settings.sqs_queue_url:
        await get_redis()
    app.state.ledger = PostgresLedger(pool)
    app.state.store = PostgresBillingStore(pool)
    app.state.engine = ReconciliationEngine(app.state.ledger, app.state.store, QueueDispatcher())
    yield
    await app.state.engine.drain(timeout=SHUTDOWN_DRAIN_SEC)
    await close_redis()
    await close_pool()


app = FastAPI(title="Billing Reconciler", lifespan=lifespan)
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: event outcomes, transitions, reservation backlog, status-change queue depth."""
    try:
        if settings.sqs_queue_url:
            status_change_queue_messages_waiting.set(await get_queue_depth())
        else:
            status_change_queue_messages_waiting.set(await queue_length(STATUS_CHANGE_QUEUE_KEY))
        billing_pending_reservations.set(await app.state.ledger.count_pending())
    except Exception as e:
        logger.debug("Skipping backlog gauges: %s", e)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
