"""Composite (AND/OR) evaluation over several conditions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from auditcore.compliance.enums import Logic
from auditcore.compliance.evaluators import EvaluatorKind, EvaluatorRegistry, default_registry, parse_evaluator
from auditcore.compliance.paths import resolve_path
from auditcore.compliance.rules import Condition, RuleDefinition


class ConditionOutcome(BaseModel):
    """Result of one condition within a composite rule."""

    target_path: str
    evaluator: str
    result: bool
    found: bool
    """Whether the target path resolved to a non-null value."""

    evidence: str = ""

    def to_detail(self) -> dict[str, Any]:
        return {
            "targetPath": self.target_path,
            "evaluator": self.evaluator,
            "result": self.result,
            "evidence": self.evidence,
        }


class CompositeResult(BaseModel):
    """Combined outcome of a composite rule."""

    logic: Logic
    result: bool
    conditions: list[ConditionOutcome] = Field(default_factory=list)

    @property
    def evidence(self) -> str:
        passed = sum(1 for c in self.conditions if c.result)
        head = f"{self.logic.value}: {passed}/{len(self.conditions)} condition(s) met"
        parts = [
            f"[{'pass' if c.result else 'fail'}] {c.target_path} {c.evaluator}: {c.evidence}"
            for c in self.conditions
        ]
        return "; ".join([head] + parts)


def evaluate_condition(
    record: Any,
    condition: Condition,
    registry: EvaluatorRegistry | None = None,
) -> ConditionOutcome:
    """Resolve and evaluate a single condition against *record*.

    An absent target fails the condition unless the evaluator is
    ``exists``, which then reports the absence itself.
    """
    registry = registry or default_registry
    value = resolve_path(record, condition.target_path)
    parsed = parse_evaluator(condition.evaluator)

    if value is None and (parsed is None or parsed[0] is not EvaluatorKind.EXISTS):
        return ConditionOutcome(
            target_path=condition.target_path,
            evaluator=condition.evaluator,
            result=False,
            found=False,
            evidence="target not found",
        )

    outcome = registry.evaluate(
        value,
        condition.evaluator,
        condition.expected_value,
        condition.expected_type,
    )
    return ConditionOutcome(
        target_path=condition.target_path,
        evaluator=condition.evaluator,
        result=outcome.result,
        found=value is not None,
        evidence=outcome.evidence,
    )


def evaluate_composite(
    record: Any,
    rule: RuleDefinition,
    registry: EvaluatorRegistry | None = None,
) -> CompositeResult:
    """Evaluate every condition of a composite *rule*, then combine them.

    All conditions run, even after the outcome is decided, so the
    evidence covers each of them.
    """
    outcomes = [evaluate_condition(record, c, registry) for c in rule.conditions]
    flags = [o.result for o in outcomes]
    combined = all(flags) if rule.logic is Logic.AND else any(flags)
    return CompositeResult(logic=rule.logic, result=combined, conditions=outcomes)
