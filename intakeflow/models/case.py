"""
Case models for Intakeflow.

This module provides the case record table, the append-only audit log, the
issued document table and the typed results returned by case operations.
"""

from datetime import datetime
from typing import Self

from sqlalchemy import DateTime
from sqlmodel import JSON, Column, Field, SQLModel

from ..exceptions.domain import IssuanceError
from ..types import Answers, FlagList, JSONDict
from .base import (
    ActorRole,
    AuditAction,
    CaseStatus,
    NotificationStatus,
    RefundStatus,
    utcnow,
)

TERMINAL_STATUSES = frozenset({CaseStatus.completed, CaseStatus.cancelled, CaseStatus.expired})


class CaseRecordBase(SQLModel):
    """Base model for case record data."""

    session_id: str
    flow_id: str
    flow_version: int = 1
    patient_id: str | None = None
    service_type: str = "med_cert"
    payment_reference: str | None = None


class CaseRecord(CaseRecordBase, table=True):
    """A submitted intake moving through review.

    Status and claim fields are only written by the claim manager, the
    issuance coordinator and the intake service, each paired with an audit entry.
    """

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    answers: Answers = Field(default_factory=dict, sa_column=Column(JSON))
    flags: FlagList = Field(default_factory=list, sa_column=Column(JSON))

    status: CaseStatus = Field(default=CaseStatus.paid, index=True)
    claimed_by: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]

    outcome: str | None = None
    outcome_document_id: int | None = None
    decline_reason: str | None = None
    decline_reason_code: str | None = None
    refund_status: RefundStatus | None = None
    info_request: str | None = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    decided_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]


class CaseRead(CaseRecordBase):
    """Pydantic model for reading a case."""

    id: int
    answers: Answers
    flags: FlagList
    status: CaseStatus
    claimed_by: str | None
    claimed_at: datetime | None
    outcome: str | None
    outcome_document_id: int | None
    decline_reason: str | None
    refund_status: RefundStatus | None
    info_request: str | None
    created_at: datetime
    updated_at: datetime
    decided_at: datetime | None


class AuditEntry(SQLModel, table=True):
    """Immutable record of one action on a case.

    Every status change has exactly one entry. Denied and renewed claims are
    recorded too, with ``from_status == to_status``.
    """

    id: int | None = Field(default=None, primary_key=True)
    case_id: int = Field(foreign_key="caserecord.id", index=True)
    actor_id: str
    actor_role: ActorRole
    action: AuditAction
    from_status: CaseStatus | None = None
    to_status: CaseStatus | None = None
    timestamp: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    meta: JSONDict = Field(default_factory=dict, sa_column=Column("metadata", JSON))


class AuditEntryRead(SQLModel):
    id: int
    case_id: int
    actor_id: str
    actor_role: ActorRole
    action: AuditAction
    from_status: CaseStatus | None
    to_status: CaseStatus | None
    timestamp: datetime
    meta: JSONDict


class IssuedDocument(SQLModel, table=True):
    """Document issued on approval, with the data snapshots used to render it."""

    id: int | None = Field(default=None, primary_key=True)
    case_id: int = Field(foreign_key="caserecord.id", unique=True, index=True)
    certificate_number: str = Field(unique=True, index=True)
    verification_code: str = Field(index=True)
    idempotency_key: str = Field(unique=True)
    template_id: str
    template_snapshot: JSONDict = Field(default_factory=dict, sa_column=Column(JSON))
    identity_snapshot: JSONDict = Field(default_factory=dict, sa_column=Column(JSON))
    storage_path: str
    sha256: str
    size_bytes: int
    issued_by: str
    issued_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    notification_status: NotificationStatus = NotificationStatus.pending
    notification_attempts: int = 0
    last_notification_error: str | None = None


class DocumentInputs(SQLModel):
    """Reviewer-supplied inputs for an issued document."""

    template_id: str | None = None
    recipient: str | None = None
    patient_name: str | None = None
    patient_dob: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    reason: str | None = None
    reviewer_name: str | None = None
    extra: JSONDict = Field(default_factory=dict)


class ClaimResult(SQLModel):
    """Typed outcome of a claim attempt; denial is an expected result."""

    case_id: int
    granted: bool
    reviewer_id: str
    current_holder: str | None = None
    status: CaseStatus | None = None
    claimed_at: datetime | None = None
    renewed: bool = False
    reason: str | None = None


class ReleaseResult(SQLModel):
    case_id: int
    released: bool
    current_holder: str | None = None
    status: CaseStatus | None = None


class IssuanceResult(SQLModel):
    """Typed outcome of an issuance attempt.

    ``failure_kind`` distinguishes a retryable failure (``transient``) from
    one where the caller no longer holds a valid claim (``claim_invalid``)
    and from an unaudited write that needs manual reconciliation
    (``audit_failure``).
    """

    case_id: int
    issued: bool
    already_issued: bool = False
    certificate_id: int | None = None
    certificate_number: str | None = None
    verification_code: str | None = None
    status: CaseStatus | None = None
    notification_status: NotificationStatus | None = None
    failure_kind: str | None = None
    message: str | None = None

    def raise_for_failure(self) -> Self:
        if not self.issued:
            raise IssuanceError(self.message or "Issuance failed", kind=self.failure_kind or "transient")
        return self


class DeclineResult(SQLModel):
    case_id: int
    declined: bool
    already_declined: bool = False
    status: CaseStatus | None = None
    refund_status: RefundStatus | None = None
    notification_sent: bool = False


class DocumentVerification(SQLModel):
    """Public answer to a document verification request."""

    valid: bool
    certificate_number: str | None = None
    issued_at: datetime | None = None
    valid_from: str | None = None
    valid_to: str | None = None
    patient_name: str | None = None
    issued_by: str | None = None
    clinic_name: str | None = None


# Request bodies


class SubmitRequest(SQLModel):
    payment_reference: str | None = None


class ClaimRequest(SQLModel):
    force: bool = False


class DeclineRequest(SQLModel):
    reason: str
    reason_code: str | None = None


class NoteRequest(SQLModel):
    note: str


class ProvideInfoRequest(SQLModel):
    answers: Answers


class CancelRequest(SQLModel):
    reason: str | None = None


class SubmitResponse(SQLModel):
    case_id: int
    status: CaseStatus
    flags: FlagList
