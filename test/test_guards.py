"""Each guard against a constructed record + event, then the pipeline order."""
from datetime import timedelta

from reconciler.billing_state import BillingStatus, EventOutcome, PaymentAuthority
from reconciler.guards import (
    GuardContext,
    authority_guard,
    resolution_guard,
    resource_identity_guard,
    run_guards,
    semantic_dedup_guard,
    transition_guard,
)

from _helper import T0, make_event, make_record

WINDOW = timedelta(seconds=60)


def _ctx(event, record, now=T0) -> GuardContext:
    return GuardContext(event=event, record=record, now=now, dedup_window=WINDOW)


class TestResolutionGuard:
    def test_passes_for_resolved_tenant(self) -> None:
        assert resolution_guard(_ctx(make_event(), make_record())) is None

    def test_no_tenant_is_malformed(self) -> None:
        veto = resolution_guard(_ctx(make_event(), None))
        assert veto.outcome == EventOutcome.REJECTED_MALFORMED
        assert veto.guard == "resolution"

    def test_unknown_event_type_is_malformed(self) -> None:
        veto = resolution_guard(_ctx(make_event("charge.refunded"), make_record()))
        assert veto.outcome == EventOutcome.REJECTED_MALFORMED

    def test_event_without_resource_identity_is_malformed(self) -> None:
        event = make_event(customer_ref=None, subscription_ref=None, metadata={"tenant_id": "tenant-a"})
        veto = resolution_guard(_ctx(event, make_record()))
        assert veto.outcome == EventOutcome.REJECTED_MALFORMED


class TestAuthorityGuard:
    def test_activation_requires_external_processor(self) -> None:
        for authority in (PaymentAuthority.NONE, PaymentAuthority.MANUAL, PaymentAuthority.WAIVED):
            veto = authority_guard(_ctx(make_event(), make_record(authority=authority)))
            assert veto is not None
            assert veto.outcome == EventOutcome.REJECTED_UNTRUSTED

    def test_trial_activation_also_gated(self) -> None:
        event = make_event(subscription_status="trialing")
        veto = authority_guard(_ctx(event, make_record(authority=PaymentAuthority.NONE)))
        assert veto.outcome == EventOutcome.REJECTED_UNTRUSTED

    def test_external_processor_passes(self) -> None:
        assert authority_guard(_ctx(make_event(), make_record())) is None

    def test_non_activation_events_not_gated(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE, authority=PaymentAuthority.MANUAL)
        assert authority_guard(_ctx(make_event("invoice.payment_failed"), record)) is None


class TestTransitionGuard:
    def test_valid_edge_passes(self) -> None:
        assert transition_guard(_ctx(make_event(), make_record(status=BillingStatus.TRIAL_PENDING))) is None

    def test_self_transition_passes(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE)
        assert transition_guard(_ctx(make_event("invoice.paid"), record)) is None

    def test_out_of_order_event_is_stale(self) -> None:
        # payment failure for a subscription that was already canceled
        record = make_record(status=BillingStatus.CANCELED)
        veto = transition_guard(_ctx(make_event("invoice.payment_failed"), record))
        assert veto.outcome == EventOutcome.IGNORED_STALE

    def test_event_without_target_is_stale(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE)
        event = make_event("customer.subscription.deleted", subscription_status="active")
        veto = transition_guard(_ctx(event, record))
        assert veto.outcome == EventOutcome.IGNORED_STALE


class TestSemanticDedupGuard:
    def test_related_event_inside_window_is_duplicate(self) -> None:
        record = make_record(
            status=BillingStatus.ACTIVE,
            last_event_type="checkout.session.completed",
            last_event_at=T0,
        )
        veto = semantic_dedup_guard(_ctx(make_event("invoice.paid"), record, now=T0 + timedelta(seconds=4)))
        assert veto.outcome == EventOutcome.IGNORED_DUPLICATE

    def test_related_event_after_window_passes(self) -> None:
        record = make_record(
            status=BillingStatus.ACTIVE,
            last_event_type="checkout.session.completed",
            last_event_at=T0,
        )
        assert semantic_dedup_guard(_ctx(make_event("invoice.paid"), record, now=T0 + timedelta(seconds=60))) is None

    def test_unrelated_event_inside_window_passes(self) -> None:
        record = make_record(
            status=BillingStatus.ACTIVE,
            last_event_type="checkout.session.completed",
            last_event_at=T0,
        )
        event = make_event("invoice.payment_failed")
        assert semantic_dedup_guard(_ctx(event, record, now=T0 + timedelta(seconds=1))) is None

    def test_no_previous_event_passes(self) -> None:
        assert semantic_dedup_guard(_ctx(make_event(), make_record())) is None


class TestResourceIdentityGuard:
    def test_cancellation_of_superseded_subscription_is_stale(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE, subscription_ref="sub_new")
        event = make_event("customer.subscription.deleted", subscription_ref="sub_old", subscription_status="canceled")
        veto = resource_identity_guard(_ctx(event, record))
        assert veto.outcome == EventOutcome.IGNORED_STALE

    def test_cancellation_without_subscription_ref_is_stale(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE)
        event = make_event("customer.subscription.deleted", subscription_ref=None, canceled=True)
        assert resource_identity_guard(_ctx(event, record)).outcome == EventOutcome.IGNORED_STALE

    def test_cancellation_of_current_subscription_passes(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE, subscription_ref="sub_1")
        event = make_event("customer.subscription.deleted", subscription_ref="sub_1", canceled=True)
        assert resource_identity_guard(_ctx(event, record)) is None

    def test_non_destructive_events_ignore_identity(self) -> None:
        record = make_record(status=BillingStatus.ACTIVE, subscription_ref="sub_new")
        event = make_event("invoice.payment_failed", subscription_ref="sub_old")
        assert resource_identity_guard(_ctx(event, record)) is None


class TestPipeline:
    def test_all_pass(self) -> None:
        assert run_guards(_ctx(make_event(), make_record())) is None

    def test_authority_vetoes_before_transition(self) -> None:
        # both the authority and the transition guard would veto; order decides
        record = make_record(status=BillingStatus.CANCELED, authority=PaymentAuthority.NONE)
        veto = run_guards(_ctx(make_event(), record))
        assert veto.guard == "authority"

    def test_transition_vetoes_before_dedup(self) -> None:
        record = make_record(
            status=BillingStatus.CANCELED,
            last_event_type="checkout.session.completed",
            last_event_at=T0,
        )
        veto = run_guards(_ctx(make_event("invoice.paid"), record, now=T0 + timedelta(seconds=1)))
        assert veto.guard == "transition"

    def test_short_circuits_on_first_veto(self) -> None:
        seen = []

        def first(ctx):
            seen.append("first")
            return resolution_guard(ctx)

        def second(ctx):
            seen.append("second")
            return None

        veto = run_guards(_ctx(make_event(), None), guards=(first, second))
        assert veto.outcome == EventOutcome.REJECTED_MALFORMED
        assert seen == ["first"]
