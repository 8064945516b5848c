"""Boolean rule tree parsing and evaluation."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import MemberStatus

LogicType = Literal["AND", "OR"]

NOT_SUBMITTED = "Not submitted"
SHORTLISTED_REASON = "Eligibility criteria met"
REJECTED_PREFIX = "Eligibility criteria not met: "


class RuleCondition(BaseModel):
    """Leaf condition comparing one field against an expected value."""

    field_id: str = Field(alias="fieldId", min_length=1)
    field_name: str | None = Field(default=None, alias="fieldName")
    value: Any = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def label(self) -> str:
        return self.field_name or self.field_id


class RuleGroup(BaseModel):
    """AND/OR group over nested groups and leaf conditions."""

    logic: LogicType = "AND"
    conditions: list[Union["RuleGroup", RuleCondition]] = Field(default_factory=list)


RuleGroup.model_rebuild()

RuleNode = Union[RuleGroup, RuleCondition]


@dataclass(slots=True)
class FailedCondition:
    """Leaf condition that did not pass for a member."""

    field_id: str
    field_name: str
    expected: Any
    actual: Any


@dataclass(slots=True)
class FormRule:
    """Validated rule tree of one active form."""

    form_id: str
    tree: RuleGroup
    field_ids: frozenset[str] = frozenset()
    title: str = ""


@dataclass(slots=True)
class EvaluationResult:
    """Per-member outcome consumed by the status updater."""

    status: MemberStatus
    status_reason: str
    user_id: str
    cohort_id: str
    failures: list[FailedCondition] = field(default_factory=list)


def has_rule_tree(raw: Any) -> bool:
    """True when stored rules carry both ``logic`` and ``conditions``."""
    return isinstance(raw, Mapping) and "logic" in raw and "conditions" in raw


def parse_rule_tree(raw: Any) -> RuleGroup:
    """Convert stored JSON into the rule tree variant.

    Raises ValueError for shapes that are neither a group nor a leaf.
    """
    node = _parse_node(raw, path="rules")
    if isinstance(node, RuleCondition):
        return RuleGroup(logic="AND", conditions=[node])
    return node


def _parse_node(raw: Any, *, path: str) -> RuleNode:
    if not isinstance(raw, Mapping):
        raise ValueError(f"{path}: expected an object, got {type(raw).__name__}")
    if "conditions" in raw:
        children = raw.get("conditions")
        if children is None:
            children = []
        if not isinstance(children, list):
            raise ValueError(f"{path}.conditions: expected a list")
        logic = str(raw.get("logic") or "AND").upper()
        return RuleGroup(
            logic="OR" if logic == "OR" else "AND",
            conditions=[
                _parse_node(child, path=f"{path}.conditions[{idx}]")
                for idx, child in enumerate(children)
            ],
        )
    if raw.get("fieldId"):
        return RuleCondition.model_validate(raw)
    raise ValueError(f"{path}: node has neither 'conditions' nor 'fieldId'")


def referenced_field_ids(node: RuleNode) -> set[str]:
    """Collect every field id referenced anywhere in the tree."""
    if isinstance(node, RuleCondition):
        return {node.field_id}
    found: set[str] = set()
    for child in node.conditions:
        found |= referenced_field_ids(child)
    return found


def normalize_values(value: Any) -> frozenset[str]:
    """Normalize scalars, sequences and comma-joined strings to a case-folded set."""
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        parts: set[str] = set()
        for item in value:
            parts |= normalize_values(item)
        return frozenset(parts)
    if isinstance(value, bool):
        return frozenset({"true" if value else "false"})
    if isinstance(value, (int, float, Decimal)):
        return frozenset({_number_text(value)})
    return frozenset(
        part.strip().casefold() for part in str(value).split(",") if part.strip()
    )


def _number_text(value: int | float | Decimal) -> str:
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if not value.is_finite():
        return str(value)
    # Fixed-scale columns come back padded, e.g. Decimal("7.5000000000").
    return format(value.normalize(), "f")


def evaluate(node: RuleNode, values: Mapping[str, Any]) -> bool:
    """Evaluate a rule tree against a member's values keyed by field id."""
    passed, _ = evaluate_with_failures(node, values)
    return passed


def evaluate_with_failures(
    node: RuleNode, values: Mapping[str, Any]
) -> tuple[bool, list[FailedCondition]]:
    """Evaluate a rule tree and report the leaf conditions that caused failure."""
    if isinstance(node, RuleCondition):
        return _evaluate_condition(node, values)

    if not node.conditions:
        return True, []

    outcomes = [evaluate_with_failures(child, values) for child in node.conditions]
    if node.logic == "OR":
        passed = any(ok for ok, _ in outcomes)
    else:
        passed = all(ok for ok, _ in outcomes)
    if passed:
        return True, []
    return False, [failure for ok, failures in outcomes if not ok for failure in failures]


def _evaluate_condition(
    condition: RuleCondition, values: Mapping[str, Any]
) -> tuple[bool, list[FailedCondition]]:
    raw_actual = values.get(condition.field_id)
    actual = normalize_values(raw_actual)
    if not actual:
        return False, [
            FailedCondition(
                field_id=condition.field_id,
                field_name=condition.label,
                expected=condition.value,
                actual=NOT_SUBMITTED,
            )
        ]
    if actual & normalize_values(condition.value):
        return True, []
    return False, [
        FailedCondition(
            field_id=condition.field_id,
            field_name=condition.label,
            expected=condition.value,
            actual=raw_actual,
        )
    ]


def display_values(value: Any) -> list[str]:
    """Human-readable parts of a value, matching the comparison normalization."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        parts: list[str] = []
        for item in value:
            parts.extend(display_values(item))
        return parts
    if isinstance(value, bool):
        return ["true" if value else "false"]
    if isinstance(value, (int, float, Decimal)):
        return [_number_text(value)]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def format_rejection_reason(failures: Iterable[FailedCondition]) -> str:
    """Render failures as one reason string, merged per field."""
    merged: dict[str, dict[str, Any]] = {}
    for failure in failures:
        entry = merged.setdefault(
            failure.field_id,
            {"label": failure.field_name, "expected": [], "actual": failure.actual},
        )
        for part in display_values(failure.expected):
            if part.casefold() not in {seen.casefold() for seen in entry["expected"]}:
                entry["expected"].append(part)

    rendered = []
    for entry in merged.values():
        actual = entry["actual"]
        actual_text = actual if actual == NOT_SUBMITTED else ", ".join(display_values(actual))
        rendered.append(
            f"{entry['label']} (expected: {' or '.join(entry['expected'])}, actual: {actual_text})"
        )
    return REJECTED_PREFIX + "; ".join(rendered)


def evaluate_member(
    rule_set: Iterable[FormRule],
    values: Mapping[str, Any],
    *,
    user_id: str,
    cohort_id: str,
) -> EvaluationResult:
    """Shortlist when every form's rule tree passes, otherwise reject."""
    rejected = False
    failures: list[FailedCondition] = []
    for form_rule in rule_set:
        passed, form_failures = evaluate_with_failures(form_rule.tree, values)
        if not passed:
            rejected = True
            failures.extend(form_failures)

    if rejected:
        return EvaluationResult(
            status=MemberStatus.REJECTED,
            status_reason=format_rejection_reason(failures),
            user_id=user_id,
            cohort_id=cohort_id,
            failures=failures,
        )
    return EvaluationResult(
        status=MemberStatus.SHORTLISTED,
        status_reason=SHORTLISTED_REASON,
        user_id=user_id,
        cohort_id=cohort_id,
    )
