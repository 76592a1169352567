"""
Guard pipeline: ordered pure predicates that may veto an event before any write.
The first veto wins and its outcome is recorded on the ledger row.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from reconciler.billing_state import (
    ACTIVATION_STATUSES,
    DESTRUCTIVE_STATUSES,
    KNOWN_EVENT_TYPES,
    BillingStatus,
    EventOutcome,
    PaymentAuthority,
    is_valid_transition,
    semantic_group,
    target_status,
)
from reconciler.models import BillingEvent, BillingRecord


@dataclass(frozen=True)
class GuardContext:
    event: BillingEvent
    record: BillingRecord | None
    now: datetime
    dedup_window: timedelta

    @property
    def target(self) -> BillingStatus | None:
        return target_status(
            self.event.event_type,
            subscription_status=self.event.subscription_status,
            canceled=self.event.canceled,
        )


@dataclass(frozen=True)
class Veto:
    outcome: EventOutcome
    guard: str
    reason: str


Guard = Callable[[GuardContext], Veto | None]


def resolution_guard(ctx: GuardContext) -> Veto | None:
    """Tenant comes from the provider's resource identity, never from metadata."""
    event = ctx.event
    if event.event_type not in KNOWN_EVENT_TYPES:
        return Veto(EventOutcome.REJECTED_MALFORMED, "resolution", f"unknown event type {event.event_type!r}")
    if not event.customer_ref and not event.subscription_ref:
        return Veto(EventOutcome.REJECTED_MALFORMED, "resolution", "event carries no resource identity")
    if ctx.record is None:
        return Veto(
            EventOutcome.REJECTED_MALFORMED,
            "resolution",
            f"no tenant owns customer={event.customer_ref} subscription={event.subscription_ref}",
        )
    return None


def authority_guard(ctx: GuardContext) -> Veto | None:
    """Activation only for tenants this system handed to the external processor at checkout."""
    target = ctx.target
    if target not in ACTIVATION_STATUSES:
        return None
    authority = ctx.record.payment_authority
    if authority != PaymentAuthority.EXTERNAL_PROCESSOR:
        return Veto(
            EventOutcome.REJECTED_UNTRUSTED,
            "authority",
            f"activation to {target.value} but payment authority is {authority.value}",
        )
    return None


def transition_guard(ctx: GuardContext) -> Veto | None:
    target = ctx.target
    current = ctx.record.status
    if target is None:
        return Veto(EventOutcome.IGNORED_STALE, "transition", f"{ctx.event.event_type} drives no transition")
    if not is_valid_transition(current, target):
        return Veto(
            EventOutcome.IGNORED_STALE,
            "transition",
            f"{current.value} -> {target.value} is not an allowed transition",
        )
    return None


def semantic_dedup_guard(ctx: GuardContext) -> Veto | None:
    """Two provider events for one real-world transaction (e.g. checkout + first invoice)."""
    record = ctx.record
    group = semantic_group(ctx.event.event_type)
    if group is None or record.last_event_at is None:
        return None
    if semantic_group(record.last_event_type) != group:
        return None
    elapsed = ctx.now - record.last_event_at
    if elapsed < ctx.dedup_window:
        return Veto(
            EventOutcome.IGNORED_DUPLICATE,
            "semantic_dedup",
            f"{ctx.event.event_type} {elapsed.total_seconds():.1f}s after {record.last_event_type} ({group})",
        )
    return None


def resource_identity_guard(ctx: GuardContext) -> Veto | None:
    """Destructive events must name the subscription currently on record."""
    if ctx.target not in DESTRUCTIVE_STATUSES:
        return None
    current_ref = ctx.record.external_subscription_ref
    event_ref = ctx.event.subscription_ref
    if not event_ref or event_ref != current_ref:
        return Veto(
            EventOutcome.IGNORED_STALE,
            "resource_identity",
            f"subscription {event_ref} is not the current subscription {current_ref}",
        )
    return None


GUARDS: tuple[Guard, ...] = (
    resolution_guard,
    authority_guard,
    transition_guard,
    semantic_dedup_guard,
    resource_identity_guard,
)


def run_guards(ctx: GuardContext, guards: tuple[Guard, ...] = GUARDS) -> Veto | None:
    for guard in guards:
        veto = guard(ctx)
        if veto is not None:
            return veto
    return None
