"""
Flow definition models.

A flow definition is an immutable questionnaire description: ordered sections
of ordered questions, visibility conditions and safety flag rules. Conditions
are a tagged union discriminated by ``op`` and may only reference questions
that come earlier in evaluation order, so a single pass always terminates.
"""

from collections.abc import Iterator
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base import QuestionType, Severity

Scalar = str | int | float | bool
AnswerValue = Scalar | list[Scalar] | None


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Equals(_Frozen):
    op: Literal["equals"] = "equals"
    question: str
    value: Scalar


class NotEquals(_Frozen):
    op: Literal["not_equals"] = "not_equals"
    question: str
    value: Scalar


class Includes(_Frozen):
    """True when a multi-select answer contains ``value``."""

    op: Literal["includes"] = "includes"
    question: str
    value: Scalar


class IsEmpty(_Frozen):
    op: Literal["is_empty"] = "is_empty"
    question: str


class NotEmpty(_Frozen):
    op: Literal["not_empty"] = "not_empty"
    question: str


class GreaterThan(_Frozen):
    op: Literal["gt"] = "gt"
    question: str
    value: float


class LessThan(_Frozen):
    op: Literal["lt"] = "lt"
    question: str
    value: float


class AllOf(_Frozen):
    op: Literal["all_of"] = "all_of"
    conditions: tuple["Condition", ...]


class AnyOf(_Frozen):
    op: Literal["any_of"] = "any_of"
    conditions: tuple["Condition", ...]


Condition = Annotated[
    Equals | NotEquals | Includes | IsEmpty | NotEmpty | GreaterThan | LessThan | AllOf | AnyOf,
    Field(discriminator="op"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()


def referenced_questions(condition: Condition) -> set[str]:
    """Collect the question ids a condition reads."""
    match condition:
        case AllOf(conditions=parts) | AnyOf(conditions=parts):
            refs: set[str] = set()
            for part in parts:
                refs |= referenced_questions(part)
            return refs
        case _:
            return {condition.question}


FlagOperator = Literal["equals", "not_equals", "includes", "is_empty", "not_empty", "gt", "lt"]


class FlagRule(_Frozen):
    """Safety rule bound to the answer of the question that owns it.

    A list ``value`` is a trigger set: ``equals`` and ``includes`` match when
    the answer hits any member.
    """

    id: str
    operator: FlagOperator = "equals"
    value: Scalar | tuple[Scalar, ...] | None = None
    severity: Severity
    message: str
    doctor_note: str | None = None


class QuestionValidation(_Frozen):
    min_selections: int | None = None
    max_selections: int | None = None
    pattern: str | None = None
    min_value: float | None = None
    max_value: float | None = None


class Question(_Frozen):
    id: str
    label: str
    type: QuestionType
    required: bool = True
    options: tuple[str, ...] = ()
    condition: Condition | None = None
    validation: QuestionValidation | None = None
    flags: tuple[FlagRule, ...] = ()
    help_text: str | None = None

    @model_validator(mode="after")
    def _check_options(self) -> Self:
        if self.type in (QuestionType.single_choice, QuestionType.multi_choice) and not self.options:
            raise ValueError(f"Choice question '{self.id}' needs options")
        return self


class Section(_Frozen):
    id: str
    title: str
    condition: Condition | None = None
    questions: tuple[Question, ...] = ()


class FlowDefinition(_Frozen):
    """Immutable questionnaire definition identified by ``(id, version)``."""

    id: str
    version: int = 1
    title: str
    service_type: str = "med_cert"
    sections: tuple[Section, ...]

    @model_validator(mode="after")
    def _check_references(self) -> Self:
        seen: set[str] = set()
        section_ids: set[str] = set()
        for section in self.sections:
            if section.id in section_ids:
                raise ValueError(f"Duplicate section id '{section.id}'")
            section_ids.add(section.id)

            if section.condition is not None:
                unknown = referenced_questions(section.condition) - seen
                if unknown:
                    raise ValueError(
                        f"Section '{section.id}' references questions not defined before it: "
                        f"{sorted(unknown)}"
                    )

            for question in section.questions:
                if question.id in seen:
                    raise ValueError(f"Duplicate question id '{question.id}'")
                if question.condition is not None:
                    unknown = referenced_questions(question.condition) - seen
                    if unknown:
                        raise ValueError(
                            f"Question '{question.id}' references questions not defined "
                            f"before it: {sorted(unknown)}"
                        )
                seen.add(question.id)
        return self

    @property
    def key(self) -> tuple[str, int]:
        return self.id, self.version

    def iter_questions(self) -> Iterator[tuple[Section, Question]]:
        for section in self.sections:
            for question in section.questions:
                yield section, question

    def question(self, question_id: str) -> Question | None:
        for _, question in self.iter_questions():
            if question.id == question_id:
                return question
        return None

    def has_question(self, question_id: str) -> bool:
        return self.question(question_id) is not None


class SafetyFlag(_Frozen):
    """Flag raised by a FlagRule against the current answers."""

    severity: Severity
    message: str
    source_question_id: str
    rule_id: str
    doctor_note: str | None = None


class AnswerIssue(_Frozen):
    """Problem with the answer to one visible question."""

    question_id: str
    code: str
    message: str


class Evaluation(_Frozen):
    """Result of evaluating a flow definition against a set of answers."""

    visible_sections: tuple[str, ...]
    visible_questions: tuple[str, ...]
    flags: tuple[SafetyFlag, ...]

    @property
    def knockouts(self) -> tuple[SafetyFlag, ...]:
        return tuple(flag for flag in self.flags if flag.severity == Severity.knockout)

    @property
    def has_knockout(self) -> bool:
        return bool(self.knockouts)

    def highest_severity(self) -> Severity | None:
        if not self.flags:
            return None
        return max((flag.severity for flag in self.flags), key=lambda s: s.rank)


def dump_answers(answers: dict[str, Any]) -> dict[str, Any]:
    """Copy an answers map with list values detached from the caller."""
    return {
        key: list(value) if isinstance(value, list | tuple) else value
        for key, value in answers.items()
    }


class FlowSummary(BaseModel):
    id: str
    version: int
    title: str
    service_type: str


class EvaluateRequest(BaseModel):
    answers: dict[str, Any] = Field(default_factory=dict)
    version: int | None = None


class EvaluateResponse(BaseModel):
    """Evaluation of a flow against answers, as shown to the patient and reviewer."""

    evaluation: Evaluation
    issues: list[AnswerIssue]
    summary: list[dict[str, Any]]
    can_submit: bool
