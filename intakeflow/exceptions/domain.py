"""
Domain exceptions for business logic layer.

These exceptions are used in repositories and services to represent
business logic errors without coupling to HTTP status codes.
"""

from typing import Any, Self


class IntakeFlowError(Exception):
    """Base exception for all Intakeflow-specific errors."""

    def with_context(self, detail: str) -> Self:
        """Add context information to the exception.

        Args:
            detail: Additional details about the error

        Returns:
            Self with updated message
        """
        self.args = (detail,)
        return self


# Base domain exceptions
class EntityNotFoundError(IntakeFlowError):
    """Raised when an entity is not found in the database."""

    pass


class AuthorizationError(IntakeFlowError):
    """Raised when the asserted actor may not perform an action."""

    pass


class BusinessRuleViolationError(IntakeFlowError):
    """Raised when a business rule is violated."""

    pass


# Questionnaire exceptions
class ValidationError(IntakeFlowError):
    """Raised when answers are missing or invalid for the visible questions."""

    def __init__(self, message: str = "Answers failed validation", issues: list[Any] | None = None):
        super().__init__(message)
        self.issues = list(issues or [])


class KnockoutError(IntakeFlowError):
    """Raised when a knockout safety flag blocks submission."""

    def __init__(self, flags: list[Any]):
        self.flags = list(flags)
        super().__init__("; ".join(flag.message for flag in self.flags))

    @property
    def messages(self) -> list[str]:
        return [flag.message for flag in self.flags]


class AlreadySubmittedError(BusinessRuleViolationError):
    """Raised when editing a session or draft that has been submitted."""

    def __init__(self, session_id: str | None = None):
        if session_id:
            super().__init__(f"Session '{session_id}' has already been submitted")
        else:
            super().__init__("Session has already been submitted")


class FlowDefinitionError(IntakeFlowError):
    """Raised when a flow definition is malformed."""

    pass


class FlowDefinitionNotFoundError(EntityNotFoundError):
    """Raised when a flow definition is not in the catalog."""

    def __init__(self, flow_id: str, version: int | None = None):
        if version is None:
            super().__init__(f"Flow '{flow_id}' not found")
        else:
            super().__init__(f"Flow '{flow_id}' version {version} not found")


class InvalidSessionStateError(BusinessRuleViolationError):
    """Raised when a flow session operation is not valid in its current state."""

    pass


# Draft exceptions
class DraftNotFoundError(EntityNotFoundError):
    """Raised when no draft exists for a session."""

    def __init__(self, session_id: str):
        super().__init__(f"Draft for session '{session_id}' not found")


class DraftPersistError(IntakeFlowError):
    """Raised when a draft could not be written after retries."""

    pass


# Case exceptions
class CaseNotFoundError(EntityNotFoundError):
    """Raised when a case record is not found."""

    def __init__(self, case_id: int):
        super().__init__(f"Case with ID {case_id} not found")


class InvalidTransitionError(BusinessRuleViolationError):
    """Raised when a case status transition is not allowed."""

    def __init__(self, from_status: Any, to_status: Any):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")


class ClaimConflictError(BusinessRuleViolationError):
    """Raised when an operation needs a claim that another reviewer holds."""

    def __init__(self, case_id: int, current_holder: str | None = None):
        self.case_id = case_id
        self.current_holder = current_holder
        if current_holder:
            super().__init__(f"Case {case_id} is being reviewed by '{current_holder}'")
        else:
            super().__init__(f"Case {case_id} is not claimed by this reviewer")


class IssuanceError(IntakeFlowError):
    """Raised when an issuance attempt fails.

    ``kind`` is one of ``transient``, ``claim_invalid`` or ``audit_failure``.
    """

    def __init__(self, message: str, kind: str = "transient"):
        super().__init__(message)
        self.kind = kind


class AuditWriteFailure(IntakeFlowError):
    """Raised when an audit entry could not be written.

    The surrounding transaction is rolled back; the condition needs manual review.
    """

    pass


# Collaborator errors
class StorageError(IntakeFlowError):
    """Raised when blob storage operation fails."""

    pass


class RenderError(IntakeFlowError):
    """Raised when document rendering fails."""

    pass


class NotificationError(IntakeFlowError):
    """Raised when a notification could not be delivered."""

    pass


class RefundError(IntakeFlowError):
    """Raised when the payment gateway rejects a refund."""

    pass
