"""
Billing record store on Postgres. Every write is conditional on the state the caller
validated against; there is no row lock held across guard evaluation.

Engine writes touch only engine-owned columns (status, lifecycle timestamps, refs on
activation, last-event bookkeeping) and require status, payment authority and the
subscription ref to be unchanged. Administrative writes own authority and refs and
require status, authority and last_event_at to be unchanged.
"""
import asyncpg
from asyncpg.exceptions import UniqueViolationError

from reconciler.billing_state import BillingStatus, EventOutcome, PaymentAuthority
from reconciler.db import affected_rows, storage_errors
from reconciler.models import BillingRecord

_SELECT_RECORD = """
    SELECT tenant_id, status, payment_authority, external_customer_ref, external_subscription_ref,
           trial_started_at, trial_ends_at, subscription_started_at, canceled_at,
           last_event_type, last_event_at
    FROM billing_records
"""

# NULL parameters leave the column as stored; the engine never clears a column.
_COMMIT_TRANSITION = """
    UPDATE billing_records SET
        status = $2,
        external_customer_ref = COALESCE($3, external_customer_ref),
        external_subscription_ref = COALESCE($4, external_subscription_ref),
        trial_started_at = COALESCE($5, trial_started_at),
        trial_ends_at = COALESCE($6, trial_ends_at),
        subscription_started_at = COALESCE($7, subscription_started_at),
        canceled_at = COALESCE($8, canceled_at),
        last_event_type = $9,
        last_event_at = $10,
        updated_at = NOW()
    WHERE tenant_id = $1
      AND status = $11
      AND payment_authority = $12
      AND external_subscription_ref IS NOT DISTINCT FROM $13;
"""

_ADMIN_UPDATE = """
    UPDATE billing_records SET
        status = $2,
        payment_authority = $3,
        external_customer_ref = $4,
        external_subscription_ref = $5,
        last_event_type = $6,
        last_event_at = $7,
        updated_at = NOW()
    WHERE tenant_id = $1
      AND status = $8
      AND payment_authority = $9
      AND last_event_at IS NOT DISTINCT FROM $10;
"""

_COUNT_BY_STATUS = "SELECT status, COUNT(*) AS n FROM billing_records GROUP BY status;"


class ResourceRefInUse(Exception):
    """A customer/subscription ref being written is already recorded for another tenant."""


class _StatusConflict(Exception):
    """Raised inside the transaction when the conditional write matched nothing. Rolls back."""


def _changed(before: BillingRecord, after: BillingRecord, attr: str):
    value = getattr(after, attr)
    return value if value != getattr(before, attr) else None


def _transition_args(before: BillingRecord, after: BillingRecord) -> tuple:
    return (
        after.tenant_id,
        after.status.value,
        _changed(before, after, "external_customer_ref"),
        _changed(before, after, "external_subscription_ref"),
        _changed(before, after, "trial_started_at"),
        _changed(before, after, "trial_ends_at"),
        _changed(before, after, "subscription_started_at"),
        _changed(before, after, "canceled_at"),
        after.last_event_type,
        after.last_event_at,
        before.status.value,
        before.payment_authority.value,
        before.external_subscription_ref,
    )


def _admin_args(before: BillingRecord, after: BillingRecord) -> tuple:
    return (
        after.tenant_id,
        after.status.value,
        after.payment_authority.value,
        after.external_customer_ref,
        after.external_subscription_ref,
        after.last_event_type,
        after.last_event_at,
        before.status.value,
        before.payment_authority.value,
        before.last_event_at,
    )


class PostgresBillingStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, tenant_id: str) -> BillingRecord | None:
        async with storage_errors("get"):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(_SELECT_RECORD + " WHERE tenant_id = $1;", tenant_id)
        return BillingRecord.from_row(row) if row else None

    async def resolve(self, customer_ref: str | None, subscription_ref: str | None) -> BillingRecord | None:
        async with storage_errors("resolve"):
            async with self._pool.acquire() as conn:
                row = None
                if subscription_ref:
                    row = await conn.fetchrow(
                        _SELECT_RECORD + " WHERE external_subscription_ref = $1;",
                        subscription_ref,
                    )
                if row is None and customer_ref:
                    row = await conn.fetchrow(
                        _SELECT_RECORD + " WHERE external_customer_ref = $1;",
                        customer_ref,
                    )
        return BillingRecord.from_row(row) if row else None

    async def commit_transition(
        self,
        before: BillingRecord,
        after: BillingRecord,
        external_event_id: str,
    ) -> bool:
        async with storage_errors("commit_transition"):
            async with self._pool.acquire() as conn:
                try:
                    async with conn.transaction():
                        status = await conn.execute(_COMMIT_TRANSITION, *_transition_args(before, after))
                        if affected_rows(status) != 1:
                            raise _StatusConflict()
                        await conn.execute(
                            """
                            UPDATE processed_events
                            SET outcome = $2, tenant_id = $3, completed_at = NOW()
                            WHERE external_event_id = $1 AND outcome = 'PENDING';
                            """,
                            external_event_id,
                            EventOutcome.APPLIED.value,
                            after.tenant_id,
                        )
                except _StatusConflict:
                    return False
                except UniqueViolationError as e:
                    raise ResourceRefInUse(str(e)) from e
        return True

    async def provision(self, tenant_id: str) -> BillingRecord:
        async with storage_errors("provision"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO billing_records (tenant_id, status, payment_authority)
                    VALUES ($1, 'NONE', 'NONE')
                    ON CONFLICT (tenant_id) DO NOTHING;
                    """,
                    tenant_id,
                )
                row = await conn.fetchrow(_SELECT_RECORD + " WHERE tenant_id = $1;", tenant_id)
        return BillingRecord.from_row(row)

    async def update_if_unchanged(self, before: BillingRecord, after: BillingRecord) -> bool:
        async with storage_errors("update_if_unchanged"):
            async with self._pool.acquire() as conn:
                try:
                    status = await conn.execute(_ADMIN_UPDATE, *_admin_args(before, after))
                except UniqueViolationError as e:
                    raise ResourceRefInUse(str(e)) from e
        return affected_rows(status) == 1

    async def set_payment_authority(self, tenant_id: str, authority: PaymentAuthority) -> bool:
        async with storage_errors("set_payment_authority"):
            async with self._pool.acquire() as conn:
                status = await conn.execute(
                    "UPDATE billing_records SET payment_authority = $2, updated_at = NOW() WHERE tenant_id = $1;",
                    tenant_id,
                    authority.value,
                )
        return affected_rows(status) == 1

    async def count_by_status(self) -> dict[BillingStatus, int]:
        async with storage_errors("count_by_status"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(_COUNT_BY_STATUS)
        counts = {s: 0 for s in BillingStatus}
        for r in rows:
            counts[BillingStatus(r["status"])] = int(r["n"])
        return counts

    async def list_records(self, limit: int = 500) -> list[BillingRecord]:
        async with storage_errors("list_records"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(_SELECT_RECORD + " ORDER BY tenant_id LIMIT $1;", limit)
        return [BillingRecord.from_row(r) for r in rows]
