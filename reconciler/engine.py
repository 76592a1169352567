"""
Reconciliation engine: turns at-least-once provider notifications into one consistent
billing status per tenant.

Flow per delivery: ledger claim -> guard pipeline -> conditional atomic apply ->
best-effort status-change notification.
- Only the claimer of an event id ever touches the billing record for it.
- The engine writes only the fields it owns; a concurrent change to status, payment
  authority or subscription ref is a conflict, never overwritten.
- A lost conditional write is re-evaluated from fresh state (conflict_retries times),
  which may turn into a veto; after that the delivery fails as TRANSIENT.
- TRANSIENT failures release the reservation so the provider's redelivery can claim it.
"""
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from reconciler.billing_state import ACTIVATION_STATUSES, BillingStatus, EventOutcome
from reconciler.config import Settings, settings as default_settings
from reconciler.db import ConcurrentUpdateError, TransientStorageError
from reconciler.dispatcher import StatusChangeDispatcher
from reconciler.guards import GuardContext, Veto, run_guards
from reconciler.metrics import (
    billing_event_outcomes_total,
    billing_events_received_total,
    billing_metadata_mismatch_total,
    billing_transition_conflicts_total,
    billing_transitions_total,
    billing_untrusted_events_total,
    dispatcher_failures_total,
)
from reconciler.models import MAX_EVENT_ID_LENGTH, BillingEvent, BillingRecord, ReconcileResult
from reconciler.repository import BillingRecordStore, IdempotencyLedger
from reconciler.store import ResourceRefInUse

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_transition(
    record: BillingRecord,
    event: BillingEvent,
    target: BillingStatus,
    now: datetime,
    trial_duration: timedelta,
) -> BillingRecord:
    """New record state for an already-validated transition. Self-transitions only touch bookkeeping."""
    current = record.status
    updated = replace(record, last_event_type=event.event_type, last_event_at=now)
    if current == target:
        return updated

    updated.status = target
    if target in ACTIVATION_STATUSES:
        if event.customer_ref:
            updated.external_customer_ref = event.customer_ref
        if event.subscription_ref:
            updated.external_subscription_ref = event.subscription_ref

    if target == BillingStatus.TRIAL_ACTIVE:
        updated.trial_started_at = now
        updated.trial_ends_at = now + trial_duration
    elif target == BillingStatus.ACTIVE and current != BillingStatus.PAST_DUE:
        updated.subscription_started_at = now
    elif target == BillingStatus.CANCELED:
        updated.canceled_at = now
    return updated


class ReconciliationEngine:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        store: BillingRecordStore,
        dispatcher: StatusChangeDispatcher,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock
        self._dedup_window = timedelta(seconds=settings.dedup_window_seconds)
        self._trial_duration = timedelta(days=settings.trial_duration_days)
        self._notifications: set[asyncio.Task] = set()

    async def process(self, event: BillingEvent) -> ReconcileResult:
        """
        Handle one delivery attempt. Returns the recorded outcome; raises
        TransientStorageError when the provider must redeliver.
        """
        billing_events_received_total.labels(event_type=event.event_type).inc()
        claimed = await self._ledger.claim(event)
        if not claimed:
            logger.info("Duplicate external_event_id=%s (already claimed), skipped", event.external_event_id)
            return self._done(
                ReconcileResult(
                    outcome=EventOutcome.IGNORED_DUPLICATE,
                    external_event_id=event.external_event_id,
                    reason="event id already claimed",
                )
            )

        try:
            return await self._reconcile(event)
        except TransientStorageError as e:
            logger.warning("Transient failure on external_event_id=%s, releasing reservation: %s", event.external_event_id, e)
            try:
                await self._ledger.release(event.external_event_id)
            except TransientStorageError:
                logger.exception(
                    "Could not release reservation for external_event_id=%s; left PENDING for the sweep",
                    event.external_event_id,
                )
            raise

    async def reject_unparseable(self, payload: Any, reason: str) -> ReconcileResult:
        """
        Acknowledge a delivery that is not a valid billing event. Recorded as
        REJECTED_MALFORMED when it names a usable event id, so redeliveries dedupe.
        """
        fields = payload if isinstance(payload, dict) else {}
        event_id = fields.get("external_event_id")
        event_type = fields.get("event_type")
        event_type = event_type[:100] if isinstance(event_type, str) and event_type else "unknown"
        billing_events_received_total.labels(event_type=event_type).inc()

        if not isinstance(event_id, str) or not 0 < len(event_id) <= MAX_EVENT_ID_LENGTH:
            logger.warning("Rejected %s delivery without usable external_event_id as malformed: %s", event_type, reason)
            return self._done(ReconcileResult(outcome=EventOutcome.REJECTED_MALFORMED, external_event_id=None, reason=reason))

        recorded = await self._ledger.record_rejected(event_id, event_type, fields, EventOutcome.REJECTED_MALFORMED)
        if not recorded:
            logger.info("Duplicate external_event_id=%s (already recorded), skipped", event_id)
            return self._done(
                ReconcileResult(
                    outcome=EventOutcome.IGNORED_DUPLICATE,
                    external_event_id=event_id,
                    reason="event id already recorded",
                )
            )
        logger.warning("Rejected %s external_event_id=%s as malformed: %s", event_type, event_id, reason)
        return self._done(ReconcileResult(outcome=EventOutcome.REJECTED_MALFORMED, external_event_id=event_id, reason=reason))

    async def reevaluate(self, event: BillingEvent) -> ReconcileResult:
        """Re-run an event whose reservation the caller already holds (sweep path, no new claim)."""
        return await self._reconcile(event)

    async def _reconcile(self, event: BillingEvent) -> ReconcileResult:
        attempts = 1 + max(self._settings.conflict_retries, 0)
        for attempt in range(1, attempts + 1):
            now = self._clock()
            record = await self._store.resolve(event.customer_ref, event.subscription_ref)
            self._check_metadata_hint(event, record)

            ctx = GuardContext(event=event, record=record, now=now, dedup_window=self._dedup_window)
            veto = run_guards(ctx)
            if veto is not None:
                return await self._record_veto(event, record, veto)

            target = ctx.target
            updated = apply_transition(record, event, target, now, self._trial_duration)
            try:
                committed = await self._store.commit_transition(record, updated, event.external_event_id)
            except ResourceRefInUse as e:
                veto = Veto(EventOutcome.REJECTED_UNTRUSTED, "resource_identity", f"resource ref owned by another tenant: {e}")
                return await self._record_veto(event, record, veto)

            if committed:
                return self._applied(event, record, updated)

            billing_transition_conflicts_total.inc()
            logger.info(
                "Conflict writing tenant=%s for external_event_id=%s (record read as %s changed since), attempt %d/%d",
                record.tenant_id,
                event.external_event_id,
                record.status.value,
                attempt,
                attempts,
            )

        raise ConcurrentUpdateError(
            f"external_event_id={event.external_event_id} lost {attempts} conditional writes"
        )

    async def _record_veto(self, event: BillingEvent, record: BillingRecord | None, veto: Veto) -> ReconcileResult:
        tenant_id = record.tenant_id if record else None
        await self._ledger.finalize(event.external_event_id, veto.outcome, tenant_id)

        if veto.outcome == EventOutcome.REJECTED_UNTRUSTED:
            billing_untrusted_events_total.labels(event_type=event.event_type).inc()
            logger.error(
                "UNTRUSTED %s external_event_id=%s tenant=%s blocked by %s guard: %s",
                event.event_type,
                event.external_event_id,
                tenant_id,
                veto.guard,
                veto.reason,
            )
        elif veto.outcome == EventOutcome.REJECTED_MALFORMED:
            logger.warning(
                "Rejected %s external_event_id=%s as malformed: %s",
                event.event_type,
                event.external_event_id,
                veto.reason,
            )
        else:
            logger.info(
                "%s %s external_event_id=%s tenant=%s (%s guard): %s",
                veto.outcome.value,
                event.event_type,
                event.external_event_id,
                tenant_id,
                veto.guard,
                veto.reason,
            )

        status = record.status if record else None
        return self._done(
            ReconcileResult(
                outcome=veto.outcome,
                external_event_id=event.external_event_id,
                tenant_id=tenant_id,
                old_status=status,
                new_status=status,
                reason=veto.reason,
            )
        )

    def _applied(self, event: BillingEvent, before: BillingRecord, after: BillingRecord) -> ReconcileResult:
        result = ReconcileResult(
            outcome=EventOutcome.APPLIED,
            external_event_id=event.external_event_id,
            tenant_id=after.tenant_id,
            old_status=before.status,
            new_status=after.status,
        )
        if result.status_changed:
            billing_transitions_total.labels(from_status=before.status.value, to_status=after.status.value).inc()
            logger.info(
                "Applied %s external_event_id=%s tenant=%s: %s -> %s",
                event.event_type,
                event.external_event_id,
                after.tenant_id,
                before.status.value,
                after.status.value,
            )
            self._notify(after.tenant_id, before.status, after.status)
        else:
            logger.info(
                "Applied %s external_event_id=%s tenant=%s: already %s (no-op)",
                event.event_type,
                event.external_event_id,
                after.tenant_id,
                after.status.value,
            )
        return self._done(result)

    def _check_metadata_hint(self, event: BillingEvent, record: BillingRecord | None) -> None:
        hint = event.metadata.get("tenant_id")
        if hint and record is not None and hint != record.tenant_id:
            billing_metadata_mismatch_total.inc()
            logger.warning(
                "external_event_id=%s metadata names tenant=%s but resources belong to tenant=%s; metadata ignored",
                event.external_event_id,
                hint,
                record.tenant_id,
            )

    def _done(self, result: ReconcileResult) -> ReconcileResult:
        billing_event_outcomes_total.labels(outcome=result.outcome.value).inc()
        return result

    # -- side effects -------------------------------------------------------

    def _notify(self, tenant_id: str, old_status: BillingStatus, new_status: BillingStatus) -> None:
        task = asyncio.create_task(self._dispatch(tenant_id, old_status, new_status))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _dispatch(self, tenant_id: str, old_status: BillingStatus, new_status: BillingStatus) -> None:
        try:
            await asyncio.wait_for(
                self._dispatcher.on_billing_status_changed(tenant_id, old_status, new_status),
                timeout=self._settings.dispatcher_timeout_seconds,
            )
        except Exception:
            # transition already committed; nothing to undo
            dispatcher_failures_total.inc()
            logger.exception(
                "Status change notification failed tenant=%s %s -> %s",
                tenant_id,
                old_status.value,
                new_status.value,
            )

    @property
    def pending_notifications(self) -> int:
        return len(self._notifications)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight notifications (graceful shutdown, tests)."""
        if not self._notifications:
            return
        _, pending = await asyncio.wait(set(self._notifications), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
