"""
Intakeflow data models.

This package contains the flow definition models and the SQLModel-based
tables and schemas used by the case workflow.
"""

# Base models
from .base import (
    ActorRole,
    AuditAction,
    CaseStatus,
    DraftOrigin,
    NotificationStatus,
    QuestionType,
    RefundStatus,
    Severity,
    ensure_utc,
    utcnow,
)

# Case models
from .case import (
    TERMINAL_STATUSES,
    AuditEntry,
    AuditEntryRead,
    CaseRead,
    CancelRequest,
    CaseRecord,
    ClaimRequest,
    ClaimResult,
    DeclineRequest,
    DeclineResult,
    DocumentInputs,
    DocumentVerification,
    IssuanceResult,
    IssuedDocument,
    NoteRequest,
    ProvideInfoRequest,
    ReleaseResult,
    SubmitRequest,
    SubmitResponse,
)

# Draft models
from .draft import DraftRecord, DraftSnapshot, PersistOutcome

# Flow definition models
from .flow import (
    AllOf,
    AnswerIssue,
    AnyOf,
    Condition,
    Equals,
    EvaluateRequest,
    EvaluateResponse,
    Evaluation,
    FlagRule,
    FlowDefinition,
    FlowSummary,
    GreaterThan,
    Includes,
    IsEmpty,
    LessThan,
    NotEmpty,
    NotEquals,
    Question,
    QuestionValidation,
    SafetyFlag,
    Section,
)

__all__ = [
    "TERMINAL_STATUSES",
    "ActorRole",
    "AllOf",
    "AnswerIssue",
    "AnyOf",
    "AuditAction",
    "AuditEntry",
    "AuditEntryRead",
    "CancelRequest",
    "CaseRead",
    "CaseRecord",
    "CaseStatus",
    "ClaimRequest",
    "ClaimResult",
    "Condition",
    "DeclineRequest",
    "DeclineResult",
    "DocumentInputs",
    "DocumentVerification",
    "DraftOrigin",
    "DraftRecord",
    "DraftSnapshot",
    "Equals",
    "EvaluateRequest",
    "EvaluateResponse",
    "Evaluation",
    "FlagRule",
    "FlowDefinition",
    "FlowSummary",
    "GreaterThan",
    "Includes",
    "IsEmpty",
    "IssuanceResult",
    "IssuedDocument",
    "LessThan",
    "NotEmpty",
    "NotEquals",
    "NoteRequest",
    "NotificationStatus",
    "PersistOutcome",
    "ProvideInfoRequest",
    "Question",
    "QuestionType",
    "QuestionValidation",
    "RefundStatus",
    "ReleaseResult",
    "SafetyFlag",
    "Section",
    "Severity",
    "SubmitRequest",
    "SubmitResponse",
    "ensure_utc",
    "utcnow",
]
