"""
Storage contracts the engine is constructed with. Postgres implementations live in
reconciler.ledger and reconciler.store; tests inject in-memory doubles.
"""
from datetime import datetime
from typing import Protocol

from reconciler.billing_state import BillingStatus, EventOutcome, PaymentAuthority
from reconciler.models import BillingEvent, BillingRecord, ProcessedEvent


class IdempotencyLedger(Protocol):
    async def claim(self, event: BillingEvent) -> bool:
        """Reserve the event id. True only for the single winner; raises TransientStorageError."""
        ...

    async def finalize(self, external_event_id: str, outcome: EventOutcome, tenant_id: str | None) -> None:
        ...

    async def record_rejected(self, external_event_id: str, event_type: str, payload: dict, outcome: EventOutcome) -> bool:
        """Insert a terminal row for a delivery that never parsed. False if the id is already known."""
        ...

    async def release(self, external_event_id: str) -> None:
        """Drop a still-PENDING reservation so a redelivery can claim it again."""
        ...

    async def stale_reservations(self, older_than: datetime, limit: int) -> list[ProcessedEvent]:
        ...

    async def reclaim(self, external_event_id: str, older_than: datetime) -> bool:
        ...

    async def count_pending(self) -> int:
        ...


class BillingRecordStore(Protocol):
    async def get(self, tenant_id: str) -> BillingRecord | None:
        ...

    async def resolve(self, customer_ref: str | None, subscription_ref: str | None) -> BillingRecord | None:
        """Find the tenant owning these provider resources (subscription first, then customer)."""
        ...

    async def commit_transition(
        self,
        before: BillingRecord,
        after: BillingRecord,
        external_event_id: str,
    ) -> bool:
        """
        Write the engine-owned fields of `after` and mark the ledger row APPLIED in one
        transaction, only if status, payment authority and subscription ref still match
        `before`. False on conflict (nothing written).
        """
        ...

    async def provision(self, tenant_id: str) -> BillingRecord:
        ...

    async def update_if_unchanged(self, before: BillingRecord, after: BillingRecord) -> bool:
        """Conditional write used by administrative operations (no ledger row)."""
        ...

    async def set_payment_authority(self, tenant_id: str, authority: PaymentAuthority) -> bool:
        ...

    async def count_by_status(self) -> dict[BillingStatus, int]:
        ...

    async def list_records(self, limit: int = 500) -> list[BillingRecord]:
        ...
