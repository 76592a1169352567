"""
Prometheus metrics: events received and their outcomes (engine), transitions applied,
dispatcher failures, reservation backlog and status-change queue depth.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Engine: inbound provider events (by provider event type)
billing_events_received_total = Counter(
    "billing_events_received_total",
    "Total provider billing events handed to the reconciliation engine",
    ["event_type"],
)
billing_event_outcomes_total = Counter(
    "billing_event_outcomes_total",
    "Total billing events by recorded outcome",
    ["outcome"],
)
billing_transitions_total = Counter(
    "billing_transitions_total",
    "Total committed billing status changes",
    ["from_status", "to_status"],
)
billing_untrusted_events_total = Counter(
    "billing_untrusted_events_total",
    "Total events rejected as untrusted (security signal, page on growth)",
    ["event_type"],
)
billing_metadata_mismatch_total = Counter(
    "billing_metadata_mismatch_total",
    "Total events whose free-text tenant hint disagreed with the resolved tenant",
)
billing_transition_conflicts_total = Counter(
    "billing_transition_conflicts_total",
    "Total conditional record writes that lost to a concurrent update",
)

# Side effects
dispatcher_failures_total = Counter(
    "dispatcher_failures_total",
    "Total status-change notifications that failed or timed out",
)

# Backlog
billing_pending_reservations = Gauge(
    "billing_pending_reservations",
    "Ledger rows still in PENDING (in flight or abandoned)",
)
billing_reservations_recovered_total = Counter(
    "billing_reservations_recovered_total",
    "Total abandoned reservations re-evaluated by the sweep",
)
status_change_queue_messages_waiting = Gauge(
    "status_change_queue_messages_waiting",
    "Approximate number of status-change notifications waiting in SQS",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
