"""Transition table, event -> target mapping, service access."""
import itertools

import pytest

from reconciler.billing_state import (
    BillingStatus,
    has_service_access,
    is_valid_transition,
    semantic_group,
    target_status,
)

ALLOWED_EDGES = {
    (BillingStatus.TRIAL_PENDING, BillingStatus.TRIAL_ACTIVE),
    (BillingStatus.TRIAL_ACTIVE, BillingStatus.ACTIVE),
    (BillingStatus.TRIAL_PENDING, BillingStatus.ACTIVE),
    (BillingStatus.ACTIVE, BillingStatus.PAST_DUE),
    (BillingStatus.PAST_DUE, BillingStatus.ACTIVE),
    (BillingStatus.ACTIVE, BillingStatus.CANCELED),
    (BillingStatus.PAST_DUE, BillingStatus.CANCELED),
}


@pytest.mark.parametrize("current,target", list(itertools.product(BillingStatus, BillingStatus)))
def test_transition_table(current: BillingStatus, target: BillingStatus) -> None:
    expected = current == target or (current, target) in ALLOWED_EDGES
    assert is_valid_transition(current, target) is expected


@pytest.mark.parametrize("current", list(BillingStatus))
def test_entry_states_are_never_targets(current: BillingStatus) -> None:
    for entry in (BillingStatus.NONE, BillingStatus.TRIAL_PENDING):
        if current != entry:
            assert not is_valid_transition(current, entry)


def test_canceled_is_terminal() -> None:
    for target in BillingStatus:
        if target != BillingStatus.CANCELED:
            assert not is_valid_transition(BillingStatus.CANCELED, target)


@pytest.mark.parametrize(
    "event_type,subscription_status,canceled,expected",
    [
        ("checkout.session.completed", None, False, BillingStatus.ACTIVE),
        ("checkout.session.completed", "trialing", False, BillingStatus.TRIAL_ACTIVE),
        ("customer.subscription.created", "trialing", False, BillingStatus.TRIAL_ACTIVE),
        ("customer.subscription.created", "active", False, BillingStatus.ACTIVE),
        ("customer.subscription.created", "incomplete", False, None),
        ("invoice.paid", None, False, BillingStatus.ACTIVE),
        ("invoice.payment_succeeded", None, False, BillingStatus.ACTIVE),
        ("invoice.payment_failed", None, False, BillingStatus.PAST_DUE),
        ("customer.subscription.deleted", "canceled", False, BillingStatus.CANCELED),
        ("customer.subscription.deleted", None, True, BillingStatus.CANCELED),
        ("customer.subscription.deleted", "active", False, None),
        ("charge.refunded", None, False, None),
    ],
)
def test_target_status(event_type, subscription_status, canceled, expected) -> None:
    assert target_status(event_type, subscription_status, canceled) == expected


def test_checkout_and_first_invoice_share_a_group() -> None:
    assert semantic_group("checkout.session.completed") == semantic_group("invoice.paid")
    assert semantic_group("invoice.payment_failed") != semantic_group("invoice.paid")
    assert semantic_group(None) is None
    assert semantic_group("charge.refunded") is None


def test_service_access() -> None:
    granted = {s for s in BillingStatus if has_service_access(s)}
    assert granted == {BillingStatus.TRIAL_ACTIVE, BillingStatus.ACTIVE}
