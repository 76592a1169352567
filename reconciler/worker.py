"""
Worker: periodically sweep the idempotency ledger for abandoned PENDING reservations and
re-evaluate them through the reconciliation engine.
- One sweep per SWEEP_INTERVAL_SECONDS; several workers may run, reclaim is single-winner.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM: finish the current sweep, drain notifications.
Run: python -m reconciler.worker
"""
import asyncio
import logging
import signal
import sys
import threading

from reconciler.config import settings
from reconciler.db import TransientStorageError, close_pool, get_pool, init_schema
from reconciler.dispatcher import QueueDispatcher
from reconciler.engine import ReconciliationEngine
from reconciler.ledger import PostgresLedger
from reconciler.redis_client import close_redis
from reconciler.store import PostgresBillingStore
from reconciler.sweep import recover_stale_reservations

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    ledger = PostgresLedger(pool)
    engine = ReconciliationEngine(ledger, PostgresBillingStore(pool), QueueDispatcher())
    logger.info(
        "Schema ready. Sweeping every %ds (stale after %ds, batch=%d) ...",
        settings.sweep_interval_seconds,
        settings.sweep_stale_after_seconds,
        settings.sweep_batch_size,
    )
    try:
        while not shutdown_event.is_set():
            try:
                await recover_stale_reservations(
                    engine,
                    ledger,
                    stale_after_seconds=settings.sweep_stale_after_seconds,
                    batch_size=settings.sweep_batch_size,
                )
            except TransientStorageError as e:
                logger.warning("Sweep aborted, storage unavailable: %s", e)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=settings.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        if engine.pending_notifications:
            logger.info(
                "Graceful shutdown: waiting for %d notification(s) (max %ds) ...",
                engine.pending_notifications,
                GRACEFUL_SHUTDOWN_WAIT_SEC,
            )
        await engine.drain(timeout=GRACEFUL_SHUTDOWN_WAIT_SEC)
        await close_redis()
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
