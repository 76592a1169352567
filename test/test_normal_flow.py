"""
Scenario: normal billing lifecycle, driven through the admin operations and the engine.

Tenant is provisioned, handed to the processor at checkout, activated, fails a payment,
recovers, and is canceled. Duplicate and superseded provider events along the way are
absorbed without touching the record.
"""
from datetime import timedelta

import pytest

from reconciler.billing_state import BillingStatus, EventOutcome, PaymentAuthority
from reconciler.provisioning import (
    begin_checkout,
    billing_summary,
    provision_tenant,
    reprovision_after_cancel,
    start_trial_pending,
)

from _helper import Harness, make_event


@pytest.mark.asyncio
async def test_checkout_then_first_invoice_then_superseded_deletion(harness: Harness) -> None:
    """
    TRIAL_PENDING tenant with customer cus_1 checks out on sub_1. The checkout applies,
    the first invoice 4s later is the same transaction, and a deletion for the plan
    the tenant already left is ignored.
    """
    harness.seed(customer_ref="cus_1", subscription_ref="sub_old", authority=PaymentAuthority.NONE)
    await begin_checkout(harness.store, "tenant-a", "cus_1", "sub_1")

    checkout = await harness.engine.process(make_event("checkout.session.completed", event_id="evt_A"))
    assert checkout.outcome == EventOutcome.APPLIED
    assert harness.status() == BillingStatus.ACTIVE

    harness.clock.advance(4)
    invoice = await harness.engine.process(make_event("invoice.paid", event_id="evt_B"))
    assert invoice.outcome == EventOutcome.IGNORED_DUPLICATE

    harness.clock.advance(60)
    stale_delete = await harness.engine.process(
        make_event("customer.subscription.deleted", event_id="evt_C", subscription_ref="sub_old", canceled=True)
    )
    # sub_old resolves nothing now, the customer still resolves the tenant
    assert stale_delete.outcome == EventOutcome.IGNORED_STALE
    assert harness.status() == BillingStatus.ACTIVE

    await harness.engine.drain()
    assert harness.dispatcher.calls == [("tenant-a", BillingStatus.TRIAL_PENDING, BillingStatus.ACTIVE)]
    assert {eid: harness.ledger.outcome(eid) for eid in ("evt_A", "evt_B", "evt_C")} == {
        "evt_A": EventOutcome.APPLIED,
        "evt_B": EventOutcome.IGNORED_DUPLICATE,
        "evt_C": EventOutcome.IGNORED_STALE,
    }


@pytest.mark.asyncio
async def test_full_lifecycle(harness: Harness) -> None:
    store, engine = harness.store, harness.engine

    await provision_tenant(store, "tenant-z")
    await start_trial_pending(store, "tenant-z")
    await begin_checkout(store, "tenant-z", "cus_z", "sub_z")

    steps = [
        ("checkout.session.completed", {"subscription_status": "trialing"}, BillingStatus.TRIAL_ACTIVE),
        ("invoice.paid", {}, BillingStatus.ACTIVE),
        ("invoice.payment_failed", {}, BillingStatus.PAST_DUE),
        ("invoice.payment_succeeded", {}, BillingStatus.ACTIVE),
        ("customer.subscription.deleted", {"subscription_status": "canceled"}, BillingStatus.CANCELED),
    ]
    for event_type, fields, expected in steps:
        harness.clock.advance(3600)
        result = await engine.process(
            make_event(event_type, customer_ref="cus_z", subscription_ref="sub_z", **fields)
        )
        assert result.outcome == EventOutcome.APPLIED, (event_type, result.reason)
        assert harness.status("tenant-z") == expected

    await engine.drain()
    assert [(old, new) for _, old, new in harness.dispatcher.calls] == [
        (BillingStatus.TRIAL_PENDING, BillingStatus.TRIAL_ACTIVE),
        (BillingStatus.TRIAL_ACTIVE, BillingStatus.ACTIVE),
        (BillingStatus.ACTIVE, BillingStatus.PAST_DUE),
        (BillingStatus.PAST_DUE, BillingStatus.ACTIVE),
        (BillingStatus.ACTIVE, BillingStatus.CANCELED),
    ]

    record = store.current("tenant-z")
    assert record.trial_ends_at - record.trial_started_at == timedelta(days=7)
    assert record.subscription_started_at is not None
    assert record.canceled_at == harness.clock()

    summary = billing_summary(record, now=harness.clock())
    assert summary["status"] == "CANCELED"
    assert summary["has_service_access"] is False
    assert summary["last_event"]["type"] == "customer.subscription.deleted"


@pytest.mark.asyncio
async def test_canceled_tenant_returns_only_through_reprovision(harness: Harness) -> None:
    harness.seed(status=BillingStatus.CANCELED, customer_ref="cus_1", subscription_ref="sub_1")

    late = await harness.engine.process(make_event("invoice.paid"))
    assert late.outcome == EventOutcome.IGNORED_STALE

    await reprovision_after_cancel(harness.store, "tenant-a")
    record = harness.store.current("tenant-a")
    assert record.status == BillingStatus.TRIAL_PENDING
    assert record.payment_authority == PaymentAuthority.NONE

    # old provider identity no longer resolves to the tenant
    orphan = await harness.engine.process(make_event("checkout.session.completed"))
    assert orphan.outcome == EventOutcome.REJECTED_MALFORMED

    await begin_checkout(harness.store, "tenant-a", "cus_2", "sub_2")
    back = await harness.engine.process(make_event(customer_ref="cus_2", subscription_ref="sub_2"))
    assert back.outcome == EventOutcome.APPLIED
    assert harness.status() == BillingStatus.ACTIVE
