"""
Server-initiated billing operations. These are the only writers besides the engine:
they set up the state (payment authority, resource refs, entry statuses) that later
provider events are checked against.
"""
import logging
import math
from dataclasses import replace
from datetime import datetime, timezone

from reconciler.billing_state import BillingStatus, PaymentAuthority, has_service_access
from reconciler.models import BillingRecord
from reconciler.repository import BillingRecordStore
from reconciler.store import ResourceRefInUse

logger = logging.getLogger(__name__)


class TenantNotFound(Exception):
    pass


class InvalidAdminTransition(Exception):
    """Precondition for an administrative operation does not hold (or changed concurrently)."""


async def _require(store: BillingRecordStore, tenant_id: str) -> BillingRecord:
    record = await store.get(tenant_id)
    if record is None:
        raise TenantNotFound(tenant_id)
    return record


async def _write(store: BillingRecordStore, before: BillingRecord, after: BillingRecord, action: str) -> BillingRecord:
    try:
        written = await store.update_if_unchanged(before, after)
    except ResourceRefInUse as e:
        raise InvalidAdminTransition(f"{action}: resource ref already belongs to another tenant") from e
    if not written:
        raise InvalidAdminTransition(f"{action}: tenant {before.tenant_id} changed concurrently, retry")
    logger.info("Admin %s tenant=%s status=%s authority=%s", action, after.tenant_id, after.status.value, after.payment_authority.value)
    return after


async def provision_tenant(store: BillingRecordStore, tenant_id: str) -> BillingRecord:
    """Create the NONE/NONE record for a new tenant. Idempotent."""
    return await store.provision(tenant_id)


async def start_trial_pending(store: BillingRecordStore, tenant_id: str) -> BillingRecord:
    record = await _require(store, tenant_id)
    if record.status == BillingStatus.TRIAL_PENDING:
        return record
    if record.status != BillingStatus.NONE:
        raise InvalidAdminTransition(f"start trial: tenant {tenant_id} is {record.status.value}, expected NONE")
    return await _write(store, record, replace(record, status=BillingStatus.TRIAL_PENDING), "start_trial_pending")


async def begin_checkout(
    store: BillingRecordStore,
    tenant_id: str,
    customer_ref: str,
    subscription_ref: str | None = None,
) -> BillingRecord:
    """
    Hand the tenant to the external processor before redirecting to checkout.
    Also the plan-change path: the new subscription ref replaces the old one, so
    the old subscription's deletion event no longer matches.
    """
    record = await _require(store, tenant_id)
    if record.status in (BillingStatus.NONE, BillingStatus.CANCELED):
        raise InvalidAdminTransition(f"begin checkout: tenant {tenant_id} is {record.status.value}")
    updated = replace(
        record,
        payment_authority=PaymentAuthority.EXTERNAL_PROCESSOR,
        external_customer_ref=customer_ref,
        external_subscription_ref=subscription_ref or record.external_subscription_ref,
    )
    return await _write(store, record, updated, "begin_checkout")


async def set_payment_authority(
    store: BillingRecordStore,
    tenant_id: str,
    authority: PaymentAuthority,
) -> BillingRecord:
    record = await _require(store, tenant_id)
    if not await store.set_payment_authority(tenant_id, authority):
        raise TenantNotFound(tenant_id)
    logger.info("Admin set_payment_authority tenant=%s %s -> %s", tenant_id, record.payment_authority.value, authority.value)
    return replace(record, payment_authority=authority)


async def reprovision_after_cancel(store: BillingRecordStore, tenant_id: str) -> BillingRecord:
    """Explicit re-entry after cancellation: back to TRIAL_PENDING with no provider identity."""
    record = await _require(store, tenant_id)
    if record.status != BillingStatus.CANCELED:
        raise InvalidAdminTransition(f"reprovision: tenant {tenant_id} is {record.status.value}, expected CANCELED")
    updated = replace(
        record,
        status=BillingStatus.TRIAL_PENDING,
        payment_authority=PaymentAuthority.NONE,
        external_customer_ref=None,
        external_subscription_ref=None,
        last_event_type=None,
        last_event_at=None,
    )
    return await _write(store, record, updated, "reprovision_after_cancel")


# -- read model -------------------------------------------------------------

STATUS_DISPLAY = {
    BillingStatus.NONE: "Not Provisioned",
    BillingStatus.TRIAL_PENDING: "Trial Pending (Onboarding Incomplete)",
    BillingStatus.TRIAL_ACTIVE: "Trial Active",
    BillingStatus.ACTIVE: "Active Subscription",
    BillingStatus.PAST_DUE: "Payment Failed (Grace Period)",
    BillingStatus.CANCELED: "Canceled",
}

# lower sorts first on the admin dashboard
_URGENCY = {
    BillingStatus.PAST_DUE: 2,
    BillingStatus.TRIAL_ACTIVE: 3,
    BillingStatus.TRIAL_PENDING: 5,
    BillingStatus.ACTIVE: 6,
    BillingStatus.CANCELED: 7,
    BillingStatus.NONE: 8,
}


def trial_days_remaining(record: BillingRecord, now: datetime) -> int | None:
    if record.trial_ends_at is None:
        return None
    seconds = (record.trial_ends_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def blocked_reasons(record: BillingRecord) -> list[str]:
    """Why the tenant has no service access; empty when it has."""
    if has_service_access(record.status):
        return []
    return [f"Billing status: {STATUS_DISPLAY[record.status]}"]


def recommended_action(record: BillingRecord, days_left: int | None, now: datetime) -> str:
    status = record.status
    if status == BillingStatus.NONE:
        return "Start a trial to begin onboarding"
    if status == BillingStatus.TRIAL_PENDING:
        return "Complete onboarding to start trial"
    if status == BillingStatus.TRIAL_ACTIVE:
        if days_left is None:
            return "Trial active"
        if days_left <= 1:
            return f"Trial expires in {days_left} day - add payment immediately"
        if days_left <= 3:
            return f"Trial expires in {days_left} days - add payment soon"
        return f"Trial active ({days_left} days remaining)"
    if status == BillingStatus.ACTIVE:
        return "Active subscription - no action needed"
    if status == BillingStatus.PAST_DUE:
        return "Payment failed - update payment method to avoid cancellation"
    if record.canceled_at is not None:
        days_ago = int((now - record.canceled_at).total_seconds() // 86400)
        return f"Canceled {days_ago} days ago - contact support to reactivate"
    return "Canceled - contact support to reactivate"


def billing_summary(record: BillingRecord, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    days_left = trial_days_remaining(record, now)

    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return {
        "tenant_id": record.tenant_id,
        "status": record.status.value,
        "status_display": STATUS_DISPLAY[record.status],
        "payment_authority": record.payment_authority.value,
        "has_service_access": has_service_access(record.status),
        "blocked_reasons": blocked_reasons(record),
        "recommended_action": recommended_action(record, days_left, now),
        "trial_days_remaining": days_left,
        "external_customer_ref": record.external_customer_ref,
        "external_subscription_ref": record.external_subscription_ref,
        "trial_started_at": _iso(record.trial_started_at),
        "trial_ends_at": _iso(record.trial_ends_at),
        "subscription_started_at": _iso(record.subscription_started_at),
        "canceled_at": _iso(record.canceled_at),
        "last_event": {"type": record.last_event_type, "at": _iso(record.last_event_at)},
    }


def _urgency(summary: dict) -> float:
    status = BillingStatus(summary["status"])
    days_left = summary["trial_days_remaining"]
    if status == BillingStatus.TRIAL_ACTIVE and days_left is not None:
        if days_left <= 1:
            return 1.5
        if days_left <= 3:
            return 2.5
    return _URGENCY[status]


async def all_billing_summaries(store: BillingRecordStore, limit: int = 500, now: datetime | None = None) -> list[dict]:
    """Summaries for the admin dashboard, most urgent first."""
    now = now or datetime.now(timezone.utc)
    summaries = [billing_summary(r, now) for r in await store.list_records(limit)]
    summaries.sort(key=_urgency)
    return summaries


async def billing_status_counts(store: BillingRecordStore) -> dict[str, int]:
    counts = await store.count_by_status()
    return {status.value: counts.get(status, 0) for status in BillingStatus}
