"""Mapping record, cancellation attempt and audit models.

The mapping record is the local source of truth linking a customer email to
provider and access-platform identifiers. It is persisted as a flat string
hash, so every model here knows how to convert to and from that form.
"""

import json
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Iterable, Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(IntEnum):
    """Mirrored subscription status. Values order the allowed transitions."""

    NONE = 0  # No subscription yet (before first payment)
    ACTIVE = 1  # Subscription created at the provider
    CANCELED = 2  # Canceled, still entitled until cancel_at_date
    DEACTIVATED = 3  # Access revoked on the course platform

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionStatus":
        """Parse a stored status string; unknown values map to NONE."""
        if not value:
            return cls.NONE
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return cls.NONE

    @property
    def label(self) -> str:
        return self.name.lower()


class AuditSource(str, Enum):
    """Origin of a cancellation."""

    EMAIL_LINK = "email_link"
    OPERATOR_BULK = "operator_bulk"
    OPERATOR_CS = "operator_cs"


class CancelAttempt(BaseModel):
    """Outcome of one provider cancel call."""

    subscription_id: str
    http_status: int = Field(..., description="HTTP status, 0 for network errors or timeouts")

    @property
    def succeeded(self) -> bool:
        """True when the subscription no longer charges (2xx, 404 or 410)."""
        return 200 <= self.http_status < 300 or self.http_status in (404, 410)

    @property
    def confirmed(self) -> bool:
        """True when the provider canceled this exact subscription now (2xx)."""
        return 200 <= self.http_status < 300


def _to_str(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, SubscriptionStatus):
        return value.label
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return json.dumps([item.model_dump() for item in value])
    return str(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MappingRecord(BaseModel):
    """Per-customer mapping record, keyed by lowercase email."""

    email: str = Field(..., description="Lowercase customer email (primary key)")
    customer_id: Optional[str] = Field(None, description="Provider customer ID")
    subscription_id: Optional[str] = Field(None, description="Provider subscription ID, never cleared once set")
    offer_id: Optional[str] = Field(None, description="Offer identifier")
    status: SubscriptionStatus = Field(default=SubscriptionStatus.NONE)

    # Cancellation
    canceled_at: Optional[datetime] = None
    cancel_at_date: Optional[date] = Field(None, description="Entitlement end date")
    primary_cancel_status: Optional[int] = None
    last_cancel_results: list[CancelAttempt] = Field(default_factory=list)

    # Deferred deactivation
    deactivation_pending: bool = False
    deactivated_at: Optional[datetime] = None

    # Access platform overrides
    name: Optional[str] = None
    external_user_id: Optional[str] = None
    deactivation_url: Optional[str] = None

    updated_at: Optional[datetime] = None

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> bool:
        """Move the status forward and log the transition.

        Backward transitions are ignored.

        Returns:
            True if the status changed
        """
        from subscription_sync.state_logger import log_mapping_status_change, log_status_regression_ignored

        old_status = self.status
        if new_status == old_status:
            return False
        if new_status < old_status:
            log_status_regression_ignored(
                email=self.email,
                current_status=old_status.label,
                requested_status=new_status.label,
                reason=reason,
            )
            return False
        self.status = new_status
        log_mapping_status_change(
            email=self.email,
            old_status=old_status.label,
            new_status=new_status.label,
            reason=reason,
            subscription_id=self.subscription_id,
        )
        return True

    def attach_subscription(self, subscription_id: str, now: Optional[datetime] = None) -> bool:
        """Link a newly created provider subscription to this record.

        A different subscription arriving for a canceled or deactivated record
        starts a new lifecycle: status returns to active and the record leaves
        the deactivation queue.

        Returns:
            True if a previous lifecycle was restarted
        """
        from subscription_sync.state_logger import log_deactivation_change, log_mapping_status_change

        now = now or utcnow()
        restarted = self.status >= SubscriptionStatus.CANCELED and subscription_id != self.subscription_id
        if restarted:
            old_status = self.status
            self.status = SubscriptionStatus.ACTIVE
            self.cancel_at_date = None
            if self.deactivation_pending:
                log_deactivation_change(email=self.email, pending=False, reason="new subscription")
            self.deactivation_pending = False
            log_mapping_status_change(
                email=self.email,
                old_status=old_status.label,
                new_status=self.status.label,
                reason="new subscription",
                subscription_id=subscription_id,
                previous_subscription_id=self.subscription_id,
            )
        else:
            self.set_status(SubscriptionStatus.ACTIVE, reason="subscription created")
        self.subscription_id = subscription_id
        self.updated_at = now
        return restarted

    def mark_canceled(
        self,
        cancel_at: date,
        results: list[CancelAttempt],
        primary_status: Optional[int],
        now: Optional[datetime] = None,
    ) -> None:
        """Record a cancellation and queue the record for deferred deactivation."""
        from subscription_sync.state_logger import log_deactivation_change

        now = now or utcnow()
        self.canceled_at = now
        self.cancel_at_date = cancel_at
        self.last_cancel_results = results
        self.primary_cancel_status = primary_status
        self.set_status(SubscriptionStatus.CANCELED, reason="subscription canceled")
        if not self.deactivation_pending:
            log_deactivation_change(email=self.email, pending=True, cancel_at_date=cancel_at.isoformat())
        self.deactivation_pending = True
        self.deactivated_at = None
        self.updated_at = now

    def mark_deactivated(self, now: Optional[datetime] = None) -> None:
        """Record a successful access revocation."""
        from subscription_sync.state_logger import log_deactivation_change

        now = now or utcnow()
        self.deactivation_pending = False
        self.deactivated_at = now
        self.updated_at = now
        self.set_status(SubscriptionStatus.DEACTIVATED, reason="access revoked")
        log_deactivation_change(email=self.email, pending=False, deactivated_at=now.isoformat())

    def to_hash(self, fields: Optional[Iterable[str]] = None) -> dict[str, str]:
        """Serialize to a flat string hash.

        Args:
            fields: Field names to include (defaults to all except email)

        Returns:
            Mapping of field name to string value. None becomes "" so a write
            clears the stored value, except subscription_id which is omitted.
        """
        names = list(fields) if fields is not None else [n for n in type(self).model_fields if n != "email"]
        data: dict[str, str] = {}
        for name in names:
            value = getattr(self, name)
            if name == "subscription_id" and not value:
                continue
            data[name] = _to_str(value)
        return data

    @classmethod
    def from_hash(cls, email: str, data: dict[str, str]) -> "MappingRecord":
        """Build a record from a stored hash (empty strings read as missing)."""
        values = {k: v for k, v in data.items() if v not in (None, "") and k in cls.model_fields}
        values.pop("email", None)

        results_raw = values.pop("last_cancel_results", None)
        results: list[CancelAttempt] = []
        if results_raw:
            try:
                results = [CancelAttempt(**item) for item in json.loads(results_raw)]
            except (ValueError, TypeError):
                results = []

        pending = str(values.pop("deactivation_pending", "false")).lower() == "true"
        status = SubscriptionStatus.parse(values.pop("status", None))

        return cls(
            email=email,
            status=status,
            deactivation_pending=pending,
            last_cancel_results=results,
            **values,
        )


class AuditEntry(BaseModel):
    """Cancellation audit entry (one per email, last event wins)."""

    email: str
    customer_id: Optional[str] = None
    source: AuditSource
    ts: datetime = Field(default_factory=utcnow)
    results: list[CancelAttempt] = Field(default_factory=list)

    def to_hash(self) -> dict[str, str]:
        return {
            "ts": self.ts.isoformat(),
            "email": self.email,
            "customer_id": self.customer_id or "",
            "source": self.source.value,
            "results": json.dumps([r.model_dump() for r in self.results]),
        }
