"""
Rule evaluation for flow definitions.

Every function here is pure: the same definition and answers always give the
same visible set, flags and validation issues. Conditions are interpreted by
``evaluate_condition``; flag rules are converted to conditions on their own
question and go through the same interpreter.
"""

import re
from datetime import date
from typing import Any

from ...models.flow import (
    AllOf,
    AnswerIssue,
    AnyOf,
    Condition,
    Equals,
    Evaluation,
    FlagRule,
    FlowDefinition,
    GreaterThan,
    Includes,
    IsEmpty,
    LessThan,
    NotEmpty,
    NotEquals,
    Question,
    SafetyFlag,
)
from ...models.base import QuestionType
from ...types import Answers


def is_empty_value(value: Any) -> bool:
    """None, blank strings and empty lists count as no answer."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list | tuple):
        return len(value) == 0
    return False


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    return None


def _same(left: Any, right: Any) -> bool:
    """Equality that does not confuse booleans with 0 and 1."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    left_num, right_num = _number(left), _number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return type(left) is type(right) and left == right


def evaluate_condition(condition: Condition, answers: Answers) -> bool:
    """Evaluate a condition against the current answers.

    A missing answer only satisfies ``is_empty``; every other comparator is
    false for it.

    Args:
        condition: Condition to evaluate
        answers: Answers keyed by question id

    Returns:
        Whether the condition holds
    """
    match condition:
        case AllOf(conditions=parts):
            return all(evaluate_condition(part, answers) for part in parts)
        case AnyOf(conditions=parts):
            return any(evaluate_condition(part, answers) for part in parts)
        case IsEmpty(question=question):
            return is_empty_value(answers.get(question))
        case NotEmpty(question=question):
            return not is_empty_value(answers.get(question))

    value = answers.get(condition.question)
    if is_empty_value(value):
        return False

    match condition:
        case Equals(value=expected):
            return not isinstance(value, list) and _same(value, expected)
        case NotEquals(value=expected):
            return isinstance(value, list) or not _same(value, expected)
        case Includes(value=expected):
            if isinstance(value, list):
                return any(_same(item, expected) for item in value)
            return _same(value, expected)
        case GreaterThan(value=threshold):
            number = _number(value)
            return number is not None and number > threshold
        case LessThan(value=threshold):
            number = _number(value)
            return number is not None and number < threshold
        case _:
            raise ValueError(f"Unknown condition: {condition!r}")


def flag_condition(rule: FlagRule, question_id: str) -> Condition:
    """Turn a flag rule into a condition on the question that owns it.

    A trigger set matches when any member matches, except for
    ``not_equals`` which requires the answer to differ from every member.
    """
    triggers = rule.value if isinstance(rule.value, tuple) else (rule.value,)

    match rule.operator:
        case "is_empty":
            return IsEmpty(question=question_id)
        case "not_empty":
            return NotEmpty(question=question_id)
        case "equals":
            return AnyOf(conditions=tuple(Equals(question=question_id, value=t) for t in triggers))
        case "includes":
            return AnyOf(
                conditions=tuple(Includes(question=question_id, value=t) for t in triggers)
            )
        case "not_equals":
            return AllOf(
                conditions=tuple(NotEquals(question=question_id, value=t) for t in triggers)
            )
        case "gt":
            return AnyOf(
                conditions=tuple(GreaterThan(question=question_id, value=t) for t in triggers)
            )
        case "lt":
            return AnyOf(
                conditions=tuple(LessThan(question=question_id, value=t) for t in triggers)
            )
        case _:
            raise ValueError(f"Unknown flag operator '{rule.operator}' in rule '{rule.id}'")


def evaluate(definition: FlowDefinition, answers: Answers) -> Evaluation:
    """Compute visible sections, visible questions and raised safety flags.

    Flags are computed for every answered question, visible or not, so an
    answer that raised a knockout keeps blocking until it is edited.

    Args:
        definition: Flow definition
        answers: Answers keyed by question id

    Returns:
        Evaluation of the definition against the answers
    """
    visible_sections: list[str] = []
    visible_questions: list[str] = []
    flags: list[SafetyFlag] = []

    for section in definition.sections:
        section_visible = section.condition is None or evaluate_condition(
            section.condition, answers
        )
        if section_visible:
            visible_sections.append(section.id)

        for question in section.questions:
            if section_visible and (
                question.condition is None or evaluate_condition(question.condition, answers)
            ):
                visible_questions.append(question.id)

            if question.id not in answers:
                continue
            for rule in question.flags:
                if evaluate_condition(flag_condition(rule, question.id), answers):
                    flags.append(
                        SafetyFlag(
                            severity=rule.severity,
                            message=rule.message,
                            source_question_id=question.id,
                            rule_id=rule.id,
                            doctor_note=rule.doctor_note,
                        )
                    )

    return Evaluation(
        visible_sections=tuple(visible_sections),
        visible_questions=tuple(visible_questions),
        flags=tuple(flags),
    )


def _check_answer(question: Question, value: Any) -> list[AnswerIssue]:
    def issue(code: str, message: str) -> list[AnswerIssue]:
        return [AnswerIssue(question_id=question.id, code=code, message=message)]

    rules = question.validation

    match question.type:
        case QuestionType.single_choice:
            if not isinstance(value, str) or value not in question.options:
                return issue("invalid_option", f"'{value}' is not an option for {question.label}")

        case QuestionType.multi_choice:
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                return issue("invalid_type", f"{question.label} expects a list of options")
            unknown = [v for v in value if v not in question.options]
            if unknown:
                return issue("invalid_option", f"Unknown options for {question.label}: {unknown}")
            if rules and rules.min_selections is not None and len(value) < rules.min_selections:
                return issue(
                    "too_few_selections", f"Select at least {rules.min_selections} options"
                )
            if rules and rules.max_selections is not None and len(value) > rules.max_selections:
                return issue(
                    "too_many_selections", f"Select at most {rules.max_selections} options"
                )

        case QuestionType.boolean:
            if not isinstance(value, bool):
                return issue("invalid_type", f"{question.label} expects yes or no")

        case QuestionType.numeric:
            number = _number(value)
            if number is None:
                return issue("invalid_type", f"{question.label} expects a number")
            if rules and rules.min_value is not None and number < rules.min_value:
                return issue("out_of_range", f"{question.label} must be at least {rules.min_value}")
            if rules and rules.max_value is not None and number > rules.max_value:
                return issue("out_of_range", f"{question.label} must be at most {rules.max_value}")

        case QuestionType.date:
            if not isinstance(value, str):
                return issue("invalid_date", f"{question.label} expects a date")
            try:
                date.fromisoformat(value)
            except ValueError:
                return issue("invalid_date", f"'{value}' is not a valid date")

        case QuestionType.free_text:
            if not isinstance(value, str):
                return issue("invalid_type", f"{question.label} expects text")

    if rules and rules.pattern and isinstance(value, str):
        if re.fullmatch(rules.pattern, value) is None:
            return issue("pattern_mismatch", f"{question.label} is not in the expected format")

    return []


def validate_answers(
    definition: FlowDefinition, answers: Answers, evaluation: Evaluation | None = None
) -> list[AnswerIssue]:
    """Check the answers to visible questions.

    Hidden questions are skipped even if they hold an invalid answer.

    Returns:
        Issues in definition order; empty when the answers are complete
    """
    evaluation = evaluation or evaluate(definition, answers)
    visible = set(evaluation.visible_questions)
    issues: list[AnswerIssue] = []

    for _, question in definition.iter_questions():
        if question.id not in visible:
            continue
        value = answers.get(question.id)
        if is_empty_value(value):
            if question.required:
                issues.append(
                    AnswerIssue(
                        question_id=question.id,
                        code="required",
                        message=f"{question.label} is required",
                    )
                )
            continue
        issues.extend(_check_answer(question, value))

    return issues


def visible_answers(
    definition: FlowDefinition, answers: Answers, evaluation: Evaluation | None = None
) -> Answers:
    """Answers to visible questions only, in definition order."""
    evaluation = evaluation or evaluate(definition, answers)
    visible = set(evaluation.visible_questions)
    return {
        question.id: answers[question.id]
        for _, question in definition.iter_questions()
        if question.id in visible and not is_empty_value(answers.get(question.id))
    }


def summarize(
    definition: FlowDefinition, answers: Answers, evaluation: Evaluation | None = None
) -> list[dict[str, Any]]:
    """Reviewer-facing summary of visible answered questions."""
    evaluation = evaluation or evaluate(definition, answers)
    kept = visible_answers(definition, answers, evaluation)
    return [
        {
            "section": section.title,
            "question_id": question.id,
            "label": question.label,
            "value": kept[question.id],
        }
        for section, question in definition.iter_questions()
        if question.id in kept
    ]


class RuleEvaluator:
    """Rule evaluation bound to one flow definition."""

    def __init__(self, definition: FlowDefinition):
        self.definition = definition

    def evaluate(self, answers: Answers) -> Evaluation:
        return evaluate(self.definition, answers)

    def validate(self, answers: Answers, evaluation: Evaluation | None = None) -> list[AnswerIssue]:
        return validate_answers(self.definition, answers, evaluation)

    def visible_answers(self, answers: Answers, evaluation: Evaluation | None = None) -> Answers:
        return visible_answers(self.definition, answers, evaluation)

    def summarize(self, answers: Answers) -> list[dict[str, Any]]:
        return summarize(self.definition, answers)
