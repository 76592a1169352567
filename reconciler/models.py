"""
Data types shared by the ledger, the record store and the engine.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from reconciler.billing_state import BillingStatus, EventOutcome, PaymentAuthority

MAX_EVENT_ID_LENGTH = 255


class BillingEvent(BaseModel):
    """Provider notification, already signature-verified and parsed upstream."""

    external_event_id: str = Field(..., min_length=1, max_length=MAX_EVENT_ID_LENGTH, description="Provider event id (idempotency key)")
    event_type: str = Field(..., min_length=1, max_length=100, description="Provider event type, e.g. invoice.paid")
    customer_ref: str | None = Field(default=None, max_length=255, description="Provider customer id")
    subscription_ref: str | None = Field(default=None, max_length=255, description="Provider subscription id")
    subscription_status: str | None = Field(default=None, description="Provider subscription status")
    canceled: bool = Field(default=False, description="Explicit cancellation flag")
    metadata: dict[str, str] = Field(default_factory=dict, description="Free-text hints, never trusted")
    occurred_at: datetime | None = Field(default=None, description="Provider creation time")


@dataclass
class BillingRecord:
    tenant_id: str
    status: BillingStatus = BillingStatus.NONE
    payment_authority: PaymentAuthority = PaymentAuthority.NONE
    external_customer_ref: str | None = None
    external_subscription_ref: str | None = None
    trial_started_at: datetime | None = None
    trial_ends_at: datetime | None = None
    subscription_started_at: datetime | None = None
    canceled_at: datetime | None = None
    last_event_type: str | None = None
    last_event_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "BillingRecord":
        return cls(
            tenant_id=row["tenant_id"],
            status=BillingStatus(row["status"]),
            payment_authority=PaymentAuthority(row["payment_authority"]),
            external_customer_ref=row["external_customer_ref"],
            external_subscription_ref=row["external_subscription_ref"],
            trial_started_at=row["trial_started_at"],
            trial_ends_at=row["trial_ends_at"],
            subscription_started_at=row["subscription_started_at"],
            canceled_at=row["canceled_at"],
            last_event_type=row["last_event_type"],
            last_event_at=row["last_event_at"],
        )


@dataclass
class ProcessedEvent:
    external_event_id: str
    event_type: str
    received_at: datetime
    outcome: EventOutcome = EventOutcome.PENDING
    tenant_id: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    """What the engine hands back to the webhook receiver."""

    outcome: EventOutcome
    external_event_id: str | None
    tenant_id: str | None = None
    old_status: BillingStatus | None = None
    new_status: BillingStatus | None = None
    reason: str | None = None

    @property
    def status_changed(self) -> bool:
        return (
            self.outcome == EventOutcome.APPLIED
            and self.old_status is not None
            and self.old_status != self.new_status
        )
