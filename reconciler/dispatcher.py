"""
Side-effect dispatcher: told about committed status changes so service access can be
toggled downstream. Fire-and-forget from the engine's point of view.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from reconciler.billing_state import BillingStatus
from reconciler.config import Settings, settings as default_settings
from reconciler.queue import make_body, push_status_change

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Notification could not be delivered after the dispatcher's own retries."""


class StatusChangeDispatcher(Protocol):
    async def on_billing_status_changed(
        self,
        tenant_id: str,
        old_status: BillingStatus,
        new_status: BillingStatus,
    ) -> None:
        ...


class QueueDispatcher:
    """
    Publishes each status change to the status-change queue (Redis or SQS), retrying
    with exponential backoff. Consumers dedupe on change_key, so redelivery is safe.
    """

    def __init__(
        self,
        push: Callable[[dict], Awaitable[None]] = push_status_change,
        settings: Settings = default_settings,
    ) -> None:
        self._push = push
        self._max_retries = settings.dispatcher_max_retries
        self._backoff = settings.dispatcher_backoff_seconds

    async def on_billing_status_changed(
        self,
        tenant_id: str,
        old_status: BillingStatus,
        new_status: BillingStatus,
    ) -> None:
        attempts = 0
        while True:
            body = make_body(tenant_id, old_status.value, new_status.value, attempts)
            try:
                await self._push(body)
                logger.info("Queued status change tenant=%s %s -> %s", tenant_id, old_status.value, new_status.value)
                return
            except Exception as e:
                attempts += 1
                if attempts > self._max_retries:
                    raise DispatchError(
                        f"status change for tenant={tenant_id} not queued after {attempts} attempts: {e}"
                    ) from e
                backoff_sec = self._backoff * 2 ** (attempts - 1)
                logger.warning(
                    "Queueing status change for tenant=%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    tenant_id,
                    attempts,
                    self._max_retries + 1,
                    backoff_sec,
                    e,
                )
                await asyncio.sleep(backoff_sec)
