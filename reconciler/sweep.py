"""
Reservation sweep: re-evaluates ledger rows left PENDING by a claimer that crashed or
lost storage between claim and commit. Safe to run from several workers at once:
each reservation is taken over by a single conditional update.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from reconciler.billing_state import EventOutcome
from reconciler.db import TransientStorageError
from reconciler.engine import ReconciliationEngine
from reconciler.metrics import billing_pending_reservations, billing_reservations_recovered_total
from reconciler.models import BillingEvent
from reconciler.repository import IdempotencyLedger

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    recovered: int = 0
    skipped: int = 0  # taken over by another sweeper first
    failed: int = 0  # transient, left PENDING for the next sweep
    outcomes: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "recovered": self.recovered,
            "skipped": self.skipped,
            "failed": self.failed,
            "outcomes": dict(self.outcomes),
        }


async def recover_stale_reservations(
    engine: ReconciliationEngine,
    ledger: IdempotencyLedger,
    stale_after_seconds: float,
    batch_size: int = 100,
    now: datetime | None = None,
) -> SweepReport:
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=stale_after_seconds)
    report = SweepReport()
    reservations = await ledger.stale_reservations(cutoff, batch_size)
    for reservation in reservations:
        report.examined += 1
        event_id = reservation.external_event_id
        if not await ledger.reclaim(event_id, cutoff):
            report.skipped += 1
            continue

        try:
            event = BillingEvent.model_validate(reservation.payload)
        except ValidationError as e:
            logger.warning("Stored payload for external_event_id=%s is unreadable: %s", event_id, e)
            await ledger.finalize(event_id, EventOutcome.REJECTED_MALFORMED, reservation.tenant_id)
            report.recovered += 1
            report.outcomes[EventOutcome.REJECTED_MALFORMED.value] += 1
            continue

        try:
            result = await engine.reevaluate(event)
        except TransientStorageError as e:
            report.failed += 1
            logger.warning("Sweep could not re-evaluate external_event_id=%s, will retry: %s", event_id, e)
            continue

        report.recovered += 1
        report.outcomes[result.outcome.value] += 1
        billing_reservations_recovered_total.inc()
        logger.info("Recovered external_event_id=%s -> %s", event_id, result.outcome.value)

    billing_pending_reservations.set(await ledger.count_pending())
    if report.examined:
        logger.info("Sweep finished: %s", report.as_dict())
    return report
