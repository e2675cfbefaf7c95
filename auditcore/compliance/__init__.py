"""Compliance rule engine — evaluate declarative rules against configuration records."""

from auditcore.compliance.checker import RuleExecutor
from auditcore.compliance.engine import ComplianceEngine, load_records
from auditcore.compliance.enums import FindingStatus, Logic, RuleShape, Severity
from auditcore.compliance.errors import RuleSetError
from auditcore.compliance.evaluators import EvaluationResult, EvaluatorKind, EvaluatorRegistry, evaluate
from auditcore.compliance.paths import resolve_path
from auditcore.compliance.report import Finding, SummaryReport, aggregate
from auditcore.compliance.rules import Condition, RuleDefinition, RuleSet, load_rule_set
from auditcore.compliance.sandbox import PredicateSandbox, evaluate_custom

__all__ = [
    "ComplianceEngine",
    "Condition",
    "EvaluationResult",
    "EvaluatorKind",
    "EvaluatorRegistry",
    "Finding",
    "FindingStatus",
    "Logic",
    "PredicateSandbox",
    "RuleDefinition",
    "RuleExecutor",
    "RuleSet",
    "RuleSetError",
    "RuleShape",
    "Severity",
    "SummaryReport",
    "aggregate",
    "evaluate",
    "evaluate_custom",
    "load_records",
    "load_rule_set",
    "resolve_path",
]
