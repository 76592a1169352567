"""
Idempotency ledger on Postgres. A PENDING row is the claiming caller's reservation;
only that caller moves it to a terminal outcome.
"""
import json
from datetime import datetime

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from reconciler.billing_state import EventOutcome
from reconciler.db import affected_rows, storage_errors
from reconciler.models import BillingEvent, ProcessedEvent


class PostgresLedger:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def claim(self, event: BillingEvent) -> bool:
        payload_json = event.model_dump_json()
        async with storage_errors("claim"):
            async with self._pool.acquire() as conn:
                try:
                    await conn.execute(
                        """
                        INSERT INTO processed_events (external_event_id, event_type, outcome, payload, received_at, claimed_at)
                        VALUES ($1, $2, $3, $4::jsonb, NOW(), NOW());
                        """,
                        event.external_event_id,
                        event.event_type,
                        EventOutcome.PENDING.value,
                        payload_json,
                    )
                except UniqueViolationError:
                    return False
        return True

    async def finalize(self, external_event_id: str, outcome: EventOutcome, tenant_id: str | None) -> None:
        async with storage_errors("finalize"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE processed_events
                    SET outcome = $2, tenant_id = COALESCE($3, tenant_id), completed_at = NOW()
                    WHERE external_event_id = $1 AND outcome = 'PENDING';
                    """,
                    external_event_id,
                    outcome.value,
                    tenant_id,
                )

    async def record_rejected(self, external_event_id: str, event_type: str, payload: dict, outcome: EventOutcome) -> bool:
        async with storage_errors("record_rejected"):
            async with self._pool.acquire() as conn:
                status = await conn.execute(
                    """
                    INSERT INTO processed_events (external_event_id, event_type, outcome, payload, received_at, completed_at)
                    VALUES ($1, $2, $3, $4::jsonb, NOW(), NOW())
                    ON CONFLICT (external_event_id) DO NOTHING;
                    """,
                    external_event_id,
                    event_type,
                    outcome.value,
                    json.dumps(payload, default=str),
                )
        return affected_rows(status) == 1

    async def release(self, external_event_id: str) -> None:
        async with storage_errors("release"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    "DELETE FROM processed_events WHERE external_event_id = $1 AND outcome = 'PENDING';",
                    external_event_id,
                )

    async def stale_reservations(self, older_than: datetime, limit: int) -> list[ProcessedEvent]:
        async with storage_errors("stale_reservations"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT external_event_id, event_type, tenant_id, outcome, payload,
                           received_at, claimed_at, completed_at
                    FROM processed_events
                    WHERE outcome = 'PENDING' AND claimed_at < $1
                    ORDER BY claimed_at ASC
                    LIMIT $2;
                    """,
                    older_than,
                    limit,
                )
        return [
            ProcessedEvent(
                external_event_id=r["external_event_id"],
                event_type=r["event_type"],
                received_at=r["received_at"],
                outcome=EventOutcome(r["outcome"]),
                tenant_id=r["tenant_id"],
                claimed_at=r["claimed_at"],
                completed_at=r["completed_at"],
                payload=json.loads(r["payload"]) if r["payload"] else {},
            )
            for r in rows
        ]

    async def reclaim(self, external_event_id: str, older_than: datetime) -> bool:
        """Take over an abandoned reservation. Only one sweeper wins the conditional update."""
        async with storage_errors("reclaim"):
            async with self._pool.acquire() as conn:
                status = await conn.execute(
                    """
                    UPDATE processed_events SET claimed_at = NOW()
                    WHERE external_event_id = $1 AND outcome = 'PENDING' AND claimed_at < $2;
                    """,
                    external_event_id,
                    older_than,
                )
        return affected_rows(status) == 1

    async def count_pending(self) -> int:
        async with storage_errors("count_pending"):
            async with self._pool.acquire() as conn:
                value = await conn.fetchval("SELECT COUNT(*) FROM processed_events WHERE outcome = 'PENDING';")
        return int(value or 0)
