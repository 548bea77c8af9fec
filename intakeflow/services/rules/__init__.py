"""
Rule evaluation for intake questionnaires.

Example usage:
    from intakeflow.services.rules import FlowCatalog, evaluate

    catalog = FlowCatalog.from_directory(settings.get_flows_dir())
    definition = catalog.get("med_cert")
    result = evaluate(definition, {"symptoms": ["chest_pain"]})
    result.has_knockout
"""

from .catalog import FlowCatalog
from .evaluator import (
    RuleEvaluator,
    evaluate,
    evaluate_condition,
    flag_condition,
    is_empty_value,
    summarize,
    validate_answers,
    visible_answers,
)

__all__ = [
    "FlowCatalog",
    "RuleEvaluator",
    "evaluate",
    "evaluate_condition",
    "flag_condition",
    "is_empty_value",
    "summarize",
    "validate_answers",
    "visible_answers",
]
