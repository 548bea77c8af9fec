"""
Flow session state machine.

A FlowSession holds one respondent's answers for one flow definition and
moves through ``collecting -> validating -> blocked | ready -> submitting ->
submitted``. Every edit re-runs the rule evaluator, bumps the local version
and marks the session dirty for the draft reconciler.
"""

import enum
from datetime import datetime
from typing import Any, Self
from uuid import uuid4

from ..exceptions.domain import (
    AlreadySubmittedError,
    FlowDefinitionError,
    InvalidSessionStateError,
    KnockoutError,
    ValidationError,
)
from ..models import (
    AnswerIssue,
    DraftOrigin,
    DraftSnapshot,
    Evaluation,
    FlowDefinition,
    SafetyFlag,
    Section,
    utcnow,
)
from ..models.flow import dump_answers
from ..types import Answers
from .rules import RuleEvaluator


class SessionState(str, enum.Enum):
    """States of a flow session."""

    collecting = "collecting"
    validating = "validating"
    blocked = "blocked"
    ready = "ready"
    submitting = "submitting"
    submitted = "submitted"


class FlowSession:
    """Client-held questionnaire session for one flow definition.

    Args:
        definition: Flow definition the session follows
        session_id: Stable session identifier, generated when omitted
        answers: Initial answers
        version: Local version of the answers
        step_pointer: Index into the visible sections
        draft_id: Identifier of the draft snapshot this session writes
    """

    def __init__(
        self,
        definition: FlowDefinition,
        session_id: str | None = None,
        answers: Answers | None = None,
        version: int = 0,
        step_pointer: int = 0,
        draft_id: str | None = None,
    ):
        self.definition = definition
        self.evaluator = RuleEvaluator(definition)
        self.session_id = session_id or uuid4().hex
        self.draft_id = draft_id or uuid4().hex
        self.version = version
        self.synced_version = 0
        self.step_pointer = step_pointer
        self.submitted_at: datetime | None = None
        self._answers: Answers = dump_answers(answers or {})
        self._dirty = False
        self.evaluation: Evaluation = self.evaluator.evaluate(self._answers)
        self.state = SessionState.blocked if self.evaluation.has_knockout else SessionState.collecting
        self._clamp_step()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def answers(self) -> Answers:
        return dump_answers(self._answers)

    @property
    def flags(self) -> tuple[SafetyFlag, ...]:
        return self.evaluation.flags

    @property
    def knockouts(self) -> tuple[SafetyFlag, ...]:
        return self.evaluation.knockouts

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def is_submitted(self) -> bool:
        return self.state == SessionState.submitted

    @property
    def visible_sections(self) -> list[Section]:
        visible = set(self.evaluation.visible_sections)
        return [section for section in self.definition.sections if section.id in visible]

    @property
    def current_section(self) -> Section | None:
        sections = self.visible_sections
        if not sections:
            return None
        return sections[self.step_pointer]

    def issues(self) -> list[AnswerIssue]:
        return self.evaluator.validate(self._answers, self.evaluation)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def _ensure_editable(self) -> None:
        if self.state == SessionState.submitted:
            raise AlreadySubmittedError(self.session_id)
        if self.state == SessionState.submitting:
            raise InvalidSessionStateError("Session is being submitted")

    def _touch(self) -> None:
        self.version += 1
        self._dirty = True

    def _clamp_step(self) -> None:
        last = max(len(self.evaluation.visible_sections) - 1, 0)
        self.step_pointer = min(max(self.step_pointer, 0), last)

    def answer(self, question_id: str, value: Any) -> Evaluation:
        """Record an answer and re-evaluate the flow.

        Args:
            question_id: Question being answered
            value: Answer value

        Returns:
            The new evaluation

        Raises:
            AlreadySubmittedError: If the session was submitted
            ValidationError: If the question is not part of the definition
        """
        self._ensure_editable()
        if not self.definition.has_question(question_id):
            raise ValidationError(
                f"Unknown question '{question_id}'",
                [
                    AnswerIssue(
                        question_id=question_id,
                        code="unknown_question",
                        message="Unknown question",
                    )
                ],
            )

        self._answers[question_id] = list(value) if isinstance(value, list | tuple) else value
        self._touch()
        self.evaluation = self.evaluator.evaluate(self._answers)
        self.state = SessionState.blocked if self.evaluation.has_knockout else SessionState.collecting
        self._clamp_step()
        return self.evaluation

    def next_step(self) -> Section | None:
        """Advance to the next visible section.

        Raises:
            KnockoutError: While a knockout flag is present
        """
        self._ensure_editable()
        if self.evaluation.has_knockout:
            raise KnockoutError(list(self.evaluation.knockouts))
        if self.step_pointer < len(self.evaluation.visible_sections) - 1:
            self.step_pointer += 1
            self._touch()
        return self.current_section

    def previous_step(self) -> Section | None:
        self._ensure_editable()
        if self.step_pointer > 0:
            self.step_pointer -= 1
            self._touch()
        return self.current_section

    # ------------------------------------------------------------------
    # Validation and submission
    # ------------------------------------------------------------------

    def validate(self) -> Evaluation:
        """Check the session can be submitted and move to ``ready``.

        Knockouts are reported before missing or invalid answers.

        Raises:
            KnockoutError: If a knockout flag is present (state ``blocked``)
            ValidationError: If a visible question is unanswered or invalid
        """
        self._ensure_editable()
        self.state = SessionState.validating

        if self.evaluation.has_knockout:
            self.state = SessionState.blocked
            raise KnockoutError(list(self.evaluation.knockouts))

        issues = self.issues()
        if issues:
            self.state = SessionState.collecting
            raise ValidationError(f"{len(issues)} answer(s) need attention", issues)

        self.state = SessionState.ready
        return self.evaluation

    def begin_submit(self) -> DraftSnapshot:
        """Enter ``submitting`` and return the snapshot to persist."""
        if self.state != SessionState.ready:
            self.validate()
        self.state = SessionState.submitting
        return self.snapshot()

    def mark_submitted(self) -> None:
        if self.state != SessionState.submitting:
            raise InvalidSessionStateError(f"Cannot finish submission from state {self.state.value}")
        self.state = SessionState.submitted
        self.submitted_at = utcnow()
        self._dirty = False

    def abort_submit(self) -> None:
        """Return to ``ready`` after a failed final persist."""
        if self.state == SessionState.submitting:
            self.state = SessionState.ready

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> DraftSnapshot:
        return DraftSnapshot(
            id=self.draft_id,
            session_id=self.session_id,
            flow_id=self.definition.id,
            flow_version=self.definition.version,
            step_pointer=self.step_pointer,
            answers=self.answers,
            version=self.version,
            updated_at=utcnow(),
            origin=DraftOrigin.local,
            submitted_at=self.submitted_at,
        )

    def mark_synced(self, version: int) -> None:
        """Record that the server holds ``version``; clears dirty if nothing newer exists."""
        self.synced_version = max(self.synced_version, version)
        if self.synced_version >= self.version:
            self._dirty = False

    @classmethod
    def restore(cls, definition: FlowDefinition, snapshot: DraftSnapshot) -> Self:
        """Rebuild a session from a draft snapshot.

        Raises:
            FlowDefinitionError: If the snapshot belongs to another flow
        """
        if (snapshot.flow_id, snapshot.flow_version) != definition.key:
            raise FlowDefinitionError(
                f"Snapshot is for flow '{snapshot.flow_id}' v{snapshot.flow_version}, "
                f"not '{definition.id}' v{definition.version}"
            )
        session = cls(
            definition,
            session_id=snapshot.session_id,
            answers=snapshot.answers,
            version=snapshot.version,
            step_pointer=snapshot.step_pointer,
            draft_id=snapshot.id,
        )
        if snapshot.origin == DraftOrigin.server:
            session.synced_version = snapshot.version
        if snapshot.submitted_at is not None:
            session.state = SessionState.submitted
            session.submitted_at = snapshot.submitted_at
        return session
