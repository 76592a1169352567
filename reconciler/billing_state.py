"""
Billing lifecycle state machine. Valid transitions enforce business rules.
"""
from enum import Enum


class BillingStatus(str, Enum):
    NONE = "NONE"
    TRIAL_PENDING = "TRIAL_PENDING"
    TRIAL_ACTIVE = "TRIAL_ACTIVE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class PaymentAuthority(str, Enum):
    NONE = "NONE"
    EXTERNAL_PROCESSOR = "EXTERNAL_PROCESSOR"
    MANUAL = "MANUAL"
    WAIVED = "WAIVED"


class EventOutcome(str, Enum):
    PENDING = "PENDING"  # reservation held by the claiming caller
    APPLIED = "APPLIED"
    IGNORED_STALE = "IGNORED_STALE"
    IGNORED_DUPLICATE = "IGNORED_DUPLICATE"
    REJECTED_UNTRUSTED = "REJECTED_UNTRUSTED"
    REJECTED_MALFORMED = "REJECTED_MALFORMED"


# Current status -> statuses an inbound event may move it to.
# NONE and TRIAL_PENDING are entered by provisioning only; CANCELED is terminal here.
VALID_TRANSITIONS: dict[BillingStatus, frozenset[BillingStatus]] = {
    BillingStatus.NONE: frozenset(),
    BillingStatus.TRIAL_PENDING: frozenset({BillingStatus.TRIAL_ACTIVE, BillingStatus.ACTIVE}),
    BillingStatus.TRIAL_ACTIVE: frozenset({BillingStatus.ACTIVE}),
    BillingStatus.ACTIVE: frozenset({BillingStatus.PAST_DUE, BillingStatus.CANCELED}),
    BillingStatus.PAST_DUE: frozenset({BillingStatus.ACTIVE, BillingStatus.CANCELED}),
    BillingStatus.CANCELED: frozenset(),
}

ACTIVATION_STATUSES = frozenset({BillingStatus.TRIAL_ACTIVE, BillingStatus.ACTIVE})
DESTRUCTIVE_STATUSES = frozenset({BillingStatus.CANCELED})
SERVICE_ACCESS_STATUSES = frozenset({BillingStatus.TRIAL_ACTIVE, BillingStatus.ACTIVE})

# Provider event type -> semantic group. Events in one group describe the same
# business transition when they arrive close together.
SEMANTIC_GROUPS: dict[str, str] = {
    "checkout.session.completed": "subscription_started",
    "customer.subscription.created": "subscription_started",
    "invoice.paid": "subscription_started",
    "invoice.payment_succeeded": "subscription_started",
    "invoice.payment_failed": "payment_failed",
    "customer.subscription.deleted": "subscription_ended",
}

KNOWN_EVENT_TYPES = frozenset(SEMANTIC_GROUPS)


def is_valid_transition(current: BillingStatus, target: BillingStatus) -> bool:
    """True if target is allowed after current. Self-transitions are benign no-ops."""
    if current == target:
        return True
    return target in VALID_TRANSITIONS.get(current, frozenset())


def semantic_group(event_type: str | None) -> str | None:
    if event_type is None:
        return None
    return SEMANTIC_GROUPS.get(event_type)


def target_status(
    event_type: str,
    subscription_status: str | None = None,
    canceled: bool = False,
) -> BillingStatus | None:
    """
    Status an event of this type asks for, or None when it drives no transition
    (unknown type, incomplete subscription, deletion that is not a real cancellation).
    """
    if event_type == "checkout.session.completed":
        if subscription_status == "trialing":
            return BillingStatus.TRIAL_ACTIVE
        return BillingStatus.ACTIVE
    if event_type == "customer.subscription.created":
        if subscription_status == "trialing":
            return BillingStatus.TRIAL_ACTIVE
        if subscription_status == "active":
            return BillingStatus.ACTIVE
        return None
    if event_type in ("invoice.paid", "invoice.payment_succeeded"):
        return BillingStatus.ACTIVE
    if event_type == "invoice.payment_failed":
        return BillingStatus.PAST_DUE
    if event_type == "customer.subscription.deleted":
        if canceled or subscription_status == "canceled":
            return BillingStatus.CANCELED
        return None
    return None


def has_service_access(status: BillingStatus) -> bool:
    return status in SERVICE_ACCESS_STATUSES
