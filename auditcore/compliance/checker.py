"""Evaluate every rule of a rule set against one record."""

from __future__ import annotations

import logging
from typing import Any

from auditcore.compliance.composite import evaluate_composite
from auditcore.compliance.dependencies import unmet_dependencies
from auditcore.compliance.enums import FindingStatus, RuleShape
from auditcore.compliance.evaluators import (
    EvaluatorKind,
    EvaluatorRegistry,
    default_registry,
    describe,
    parse_evaluator,
)
from auditcore.compliance.paths import resolve_path
from auditcore.compliance.report import Finding
from auditcore.compliance.rules import RuleDefinition, RuleSet
from auditcore.compliance.sandbox import PredicateSandbox

logger = logging.getLogger(__name__)

# (status, evidence, detail) produced by one evaluation
_Outcome = tuple[FindingStatus, str, dict[str, Any]]


def _passed_or_failed(result: bool) -> FindingStatus:
    return FindingStatus.PASSED if result else FindingStatus.FAILED


class RuleExecutor:
    """Run a rule set against configuration records, one record at a time.

    Each call to :meth:`check_record` keeps its own ``rule id -> status``
    table, so dependency checks only ever see results for the same record.

    Parameters
    ----------
    rule_set:
        Validated rules, evaluated in rule-set order.
    registry:
        Evaluator registry for simple and composite rules.
    sandbox:
        Sandbox for custom predicates.
    """

    def __init__(
        self,
        rule_set: RuleSet,
        *,
        registry: EvaluatorRegistry | None = None,
        sandbox: PredicateSandbox | None = None,
    ) -> None:
        self.rule_set = rule_set
        self.registry = registry or default_registry
        self.sandbox = sandbox or PredicateSandbox()

    def check_record(self, record: Any, index: int = 0) -> list[Finding]:
        """Evaluate all rules against *record*.

        Parameters
        ----------
        record:
            One configuration record.  Never modified.
        index:
            Position of the record in the input, copied into each finding.

        Returns
        -------
        list[Finding]
            One finding per rule, in rule-set order.
        """
        results: dict[str, FindingStatus] = {}
        findings: list[Finding] = []

        for rule in self.rule_set:
            finding = self.check_rule(rule, record, results, index=index)
            findings.append(finding)
            results[rule.id] = finding.status

        return findings

    def check_rule(
        self,
        rule: RuleDefinition,
        record: Any,
        results: dict[str, FindingStatus],
        *,
        index: int = 0,
    ) -> Finding:
        """Gate, evaluate and classify a single rule for one record."""
        unmet = unmet_dependencies(rule.depends_on, results)
        if unmet:
            logger.debug("Record %d: rule %s skipped, unmet %s", index, rule.id, unmet)
            return self._finding(
                rule,
                FindingStatus.WARNING,
                f"dependency not satisfied: {', '.join(unmet)}",
                {"result": None, "skipped": True, "unmetDependencies": unmet},
                index,
            )

        try:
            status, evidence, detail = self._evaluate(rule, record)
        except Exception as exc:
            logger.debug("Record %d: rule %s raised", index, rule.id, exc_info=True)
            status = FindingStatus.FAILED
            evidence = f"evaluation error: {type(exc).__name__}: {exc}"
            detail = {"result": False, "error": str(exc)}

        if rule.evidence_path:
            extra = resolve_path(record, rule.evidence_path)
            evidence = f"{evidence}; evidence: {describe(extra)}"

        logger.debug("Record %d: rule %s -> %s", index, rule.id, status.value)
        return self._finding(rule, status, evidence, detail, index)

    def _evaluate(self, rule: RuleDefinition, record: Any) -> _Outcome:
        shape = rule.shape
        if shape is RuleShape.COMPOSITE:
            return self._evaluate_composite(rule, record)
        if shape is RuleShape.CUSTOM:
            return self._evaluate_custom(rule, record)
        return self._evaluate_simple(rule, record)

    def _evaluate_simple(self, rule: RuleDefinition, record: Any) -> _Outcome:
        detail: dict[str, Any] = {
            "targetPath": rule.target_path,
            "evaluator": rule.evaluator,
        }
        if rule.expected_value is not None:
            detail["expectedValue"] = rule.expected_value
        if rule.expected_type is not None:
            detail["expectedType"] = rule.expected_type

        value = resolve_path(record, rule.target_path)
        parsed = parse_evaluator(rule.evaluator)
        if value is None and (parsed is None or parsed[0] is not EvaluatorKind.EXISTS):
            # Not configured, as opposed to explicitly non-compliant.
            detail["result"] = None
            return FindingStatus.WARNING, f"{rule.target_path} not found", detail

        outcome = self.registry.evaluate(
            value, rule.evaluator, rule.expected_value, rule.expected_type,
        )
        detail["result"] = outcome.result
        return _passed_or_failed(outcome.result), outcome.evidence, detail

    def _evaluate_composite(self, rule: RuleDefinition, record: Any) -> _Outcome:
        combined = evaluate_composite(record, rule, self.registry)
        detail = {
            "logic": combined.logic.value,
            "result": combined.result,
            "conditions": [c.to_detail() for c in combined.conditions],
        }
        return _passed_or_failed(combined.result), combined.evidence, detail

    def _evaluate_custom(self, rule: RuleDefinition, record: Any) -> _Outcome:
        target = rule.target_path or "$"
        value = resolve_path(record, target)
        outcome = self.sandbox.evaluate(
            value, rule.custom_evaluator, expected_type=rule.expected_type,
        )
        detail = {
            "targetPath": target,
            "customEvaluator": rule.custom_evaluator,
            "result": outcome.result,
        }
        return _passed_or_failed(outcome.result), outcome.evidence, detail

    @staticmethod
    def _finding(
        rule: RuleDefinition,
        status: FindingStatus,
        evidence: str,
        detail: dict[str, Any],
        index: int,
    ) -> Finding:
        return Finding(
            rule_id=rule.id,
            title=rule.title,
            status=status,
            severity=rule.severity,
            evidence=evidence,
            remediation=rule.remediation,
            evaluation_detail={"recordIndex": index, **detail},
        )
