"""Result models returned by the lifecycle services.

These carry expected outcomes explicitly (including failure reasons) so the
HTTP layer can decide what the caller sees without inspecting exceptions.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from subscription_sync.models.mapping import CancelAttempt


class WebhookOutcome(BaseModel):
    """What the ingestion engine did with one payment notification."""

    payment_id: Optional[str] = None
    action: str = Field(
        default="ignored",
        description="ignored, not_paid, one_time, subscription_first, duplicate_ended, renewal, error",
    )
    subscription_id: Optional[str] = None
    subscription_reused: bool = False
    activated: Optional[bool] = None
    upgrade_canceled: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class CancelOutcome(BaseModel):
    """Result of one cancellation attempt for one customer."""

    email: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    ok: bool = True
    reason: Optional[str] = Field(None, description="Failure reason when ok is False")
    replayed: bool = Field(default=False, description="Single-use marker already present")
    cancel_at_date: Optional[date] = None
    primary_cancel_status: Optional[int] = None
    results: list[CancelAttempt] = Field(default_factory=list)
    store_updated: bool = False


class CancelAllOutcome(BaseModel):
    """Result of an operator cancel-all for one customer."""

    customer_id: str
    email: str
    message: str
    canceled_ids: list[str] = Field(default_factory=list)
    failures: list[CancelAttempt] = Field(default_factory=list)
    cancel_at_date: Optional[date] = None
    store_updated: bool = False

    @property
    def canceled_count(self) -> int:
        return len(self.canceled_ids)


class SweepItem(BaseModel):
    """Per-email outcome of a deactivation sweep."""

    email: str
    reason: str = Field(
        ...,
        description=(
            "no_data_for_key, not_pending, already_deactivated, no_cancel_at_date, "
            "not_due_yet, missing_deactivation_url, deactivated, deactivation_failed, store_error"
        ),
    )
    cancel_at_date: Optional[date] = None
    status_code: Optional[int] = None
    detail: Optional[str] = None


class SweepReport(BaseModel):
    """Summary of one deactivation sweep."""

    ok: bool = True
    today: date
    pending: int = 0
    processed: int = 0
    deactivated: int = 0
    items: list[SweepItem] = Field(default_factory=list)


class ImportSummary(BaseModel):
    """Counters from a mapping import run."""

    customers_processed: int = 0
    active_subs_seen: int = 0
    records_created: int = 0
    records_skipped_existing: int = 0
    records_skipped_no_email: int = 0
    customers_failed: int = 0
