"""
Base models for Intakeflow.

Shared enumerations and time helpers used by the flow, draft and case models.
"""

import enum
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class QuestionType(str, enum.Enum):
    """Supported questionnaire input types."""

    single_choice = "single_choice"
    multi_choice = "multi_choice"
    free_text = "free_text"
    date = "date"
    boolean = "boolean"
    numeric = "numeric"


class Severity(str, enum.Enum):
    """Safety flag severity, in escalating order."""

    info = "info"
    warning = "warning"
    knockout = "knockout"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.info: 0, Severity.warning: 1, Severity.knockout: 2}


class DraftOrigin(str, enum.Enum):
    """Where a draft snapshot was last written."""

    local = "local"
    server = "server"


class CaseStatus(str, enum.Enum):
    """Lifecycle status of a submitted case."""

    paid = "paid"
    in_review = "in_review"
    approved = "approved"
    declined = "declined"
    pending_info = "pending_info"
    escalated = "escalated"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"


class ActorRole(str, enum.Enum):
    """Role asserted by the caller of a case operation."""

    patient = "patient"
    doctor = "doctor"
    admin = "admin"
    system = "system"


class AuditAction(str, enum.Enum):
    """Action recorded in the audit log."""

    submitted = "submitted"
    claim = "claim"
    claim_renewed = "claim_renewed"
    claim_denied = "claim_denied"
    release = "release"
    claim_expired = "claim_expired"
    approve = "approve"
    decline = "decline"
    request_info = "request_info"
    info_provided = "info_provided"
    escalate = "escalate"
    complete = "complete"
    cancel = "cancel"
    expire = "expire"


class RefundStatus(str, enum.Enum):
    """Outcome of the refund attempted after a decline."""

    not_applicable = "not_applicable"
    succeeded = "succeeded"
    failed = "failed"


class NotificationStatus(str, enum.Enum):
    """Delivery state of the patient notification for an issued document."""

    pending = "pending"
    sent = "sent"
    failed = "failed"
