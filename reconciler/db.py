"""
Async Postgres: processed_events (idempotency ledger) + billing_records (current state per tenant).
The ledger's UNIQUE(external_event_id) insert is the only serialization point; record
writes are conditional on the status they were validated against.
"""
import asyncio
from contextlib import asynccontextmanager

import asyncpg

from reconciler.config import settings

_pool: asyncpg.Pool | None = None


class TransientStorageError(Exception):
    """Storage unavailable or timed out. The caller must let the provider redeliver."""


class ConcurrentUpdateError(TransientStorageError):
    """The billing record kept changing under us after the allowed re-evaluations."""


# Errors that mean "try again later", never "this event is bad".
_TRANSIENT_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


@asynccontextmanager
async def storage_errors(operation: str):
    try:
        yield
    except TransientStorageError:
        raise
    except _TRANSIENT_ERRORS as e:
        raise TransientStorageError(f"{operation}: {e}") from e


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as 'UPDATE 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=10,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS billing_records (
                tenant_id VARCHAR(255) PRIMARY KEY,
                status VARCHAR(32) NOT NULL DEFAULT 'NONE',
                payment_authority VARCHAR(32) NOT NULL DEFAULT 'NONE',
                external_customer_ref VARCHAR(255),
                external_subscription_ref VARCHAR(255),
                trial_started_at TIMESTAMPTZ,
                trial_ends_at TIMESTAMPTZ,
                subscription_started_at TIMESTAMPTZ,
                canceled_at TIMESTAMPTZ,
                last_event_type VARCHAR(100),
                last_event_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_billing_records_subscription_ref
            ON billing_records(external_subscription_ref)
            WHERE external_subscription_ref IS NOT NULL;
        """)
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_billing_records_customer_ref
            ON billing_records(external_customer_ref)
            WHERE external_customer_ref IS NOT NULL;
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS processed_events (
                external_event_id VARCHAR(255) PRIMARY KEY,
                event_type VARCHAR(100) NOT NULL,
                tenant_id VARCHAR(255),
                outcome VARCHAR(32) NOT NULL DEFAULT 'PENDING',
                payload JSONB,
                received_at TIMESTAMPTZ DEFAULT NOW(),
                claimed_at TIMESTAMPTZ DEFAULT NOW(),
                completed_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_processed_events_pending
            ON processed_events(claimed_at)
            WHERE outcome = 'PENDING';
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_processed_events_tenant_id
            ON processed_events(tenant_id);
        """)
