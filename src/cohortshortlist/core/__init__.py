"""Core shortlisting engine components."""

from __future__ import annotations

# NOTE: keep imports explicit for export clarity.
from .batching import AggregateCounts, BatchResult, BatchRunner, partition
from .field_values import FieldValueResolver, extract_typed_value, values_by_field_id
from .rules import (
    EvaluationResult,
    FailedCondition,
    FormRule,
    RuleCondition,
    RuleGroup,
    evaluate,
    evaluate_member,
    evaluate_with_failures,
    format_rejection_reason,
    has_rule_tree,
    normalize_values,
    parse_rule_tree,
    referenced_field_ids,
)
from .scanner import CohortScanner, EligibleCohort, parse_scheduled_date, schema_field_ids
from .updater import MemberStatusUpdater, StepResult, UpdateOutcome, within_deadline

__all__ = [
    "AggregateCounts",
    "BatchResult",
    "BatchRunner",
    "partition",
    "FieldValueResolver",
    "extract_typed_value",
    "values_by_field_id",
    "EvaluationResult",
    "FailedCondition",
    "FormRule",
    "RuleCondition",
    "RuleGroup",
    "evaluate",
    "evaluate_member",
    "evaluate_with_failures",
    "format_rejection_reason",
    "has_rule_tree",
    "normalize_values",
    "parse_rule_tree",
    "referenced_field_ids",
    "CohortScanner",
    "EligibleCohort",
    "parse_scheduled_date",
    "schema_field_ids",
    "MemberStatusUpdater",
    "StepResult",
    "UpdateOutcome",
    "within_deadline",
]
