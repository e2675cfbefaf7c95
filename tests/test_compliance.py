"""Tests for rule loading, dependency gating, rule execution and reporting.

All inputs are in-memory dicts or tmp_path files. No network access.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from auditcore.compliance import (
    ComplianceEngine,
    Finding,
    FindingStatus,
    Logic,
    RuleExecutor,
    RuleSetError,
    RuleShape,
    Severity,
    aggregate,
    load_records,
    load_rule_set,
)
from auditcore.compliance.dependencies import (
    DependencyGraph,
    check_dependencies,
    unmet_dependencies,
)
from auditcore.compliance.evaluators import EvaluatorRegistry
from auditcore.compliance.report import compliance_score
from auditcore.config import EngineSettings

FIXED_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)

MFA_RULE = {
    "id": "MFA-1",
    "title": "MFA enforced",
    "severity": "high",
    "remediation": "Enforce MFA for all users.",
    "targetPath": "$.State",
    "evaluator": "equals",
    "expectedValue": "Enforced",
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> EngineSettings:
    """Inline execution with a short custom-predicate deadline."""
    return EngineSettings(max_workers=1, custom_timeout=0.5)


@pytest.fixture
def dependent_rules() -> list[dict]:
    """MFA-1 followed by a rule gated on it."""
    return [
        MFA_RULE,
        {
            "id": "MFA-2",
            "title": "MFA methods registered",
            "severity": "medium",
            "targetPath": "$.Methods",
            "evaluator": "arrayLength>=1",
            "dependsOn": ["MFA-1"],
        },
    ]


def _executor(rules: list[dict], **kwargs) -> RuleExecutor:
    return RuleExecutor(load_rule_set(rules), **kwargs)


def _statuses(findings: list[Finding]) -> list[str]:
    return [f.status.value for f in findings]


def _by_id(rule_set) -> dict:
    return {r.id: r for r in rule_set}


# ---------------------------------------------------------------------------
# Rule set loading
# ---------------------------------------------------------------------------


class TestLoadRuleSet:
    def test_loads_in_input_order(self, dependent_rules: list[dict]) -> None:
        rule_set = load_rule_set(dependent_rules)
        assert len(rule_set) == 2
        assert [r.id for r in rule_set] == ["MFA-1", "MFA-2"]
        assert _by_id(rule_set)["MFA-2"].depends_on == ("MFA-1",)

    def test_shapes(self) -> None:
        rule_set = load_rule_set([
            {"id": "S", "targetPath": "$.a", "evaluator": "exists"},
            {"id": "C", "logic": "or", "conditions": [{"targetPath": "$.a", "evaluator": "exists"}]},
            {"id": "X", "customEvaluator": "value is not None"},
        ])
        assert [r.shape for r in rule_set] == [RuleShape.SIMPLE, RuleShape.COMPOSITE, RuleShape.CUSTOM]
        assert _by_id(rule_set)["C"].logic is Logic.OR

    def test_severity_normalised(self) -> None:
        rule = _by_id(load_rule_set([{**MFA_RULE, "severity": "High"}]))["MFA-1"]
        assert rule.severity is Severity.HIGH

    def test_severity_defaults_to_medium(self) -> None:
        rule = _by_id(load_rule_set([{"id": "A", "targetPath": "$.a", "evaluator": "exists"}]))["A"]
        assert rule.severity is Severity.MEDIUM

    def test_depends_on_accepts_single_id(self) -> None:
        rules = [MFA_RULE, {"id": "B", "targetPath": "$.b", "evaluator": "exists", "dependsOn": "MFA-1"}]
        assert _by_id(load_rule_set(rules))["B"].depends_on == ("MFA-1",)

    def test_missing_shape_rejected(self) -> None:
        with pytest.raises(RuleSetError, match="must declare one of"):
            load_rule_set([{"id": "A", "title": "No shape"}])

    def test_mixed_shapes_rejected(self) -> None:
        with pytest.raises(RuleSetError, match="mixes shapes"):
            load_rule_set([{"id": "A", "targetPath": "$.a", "evaluator": "exists", "customEvaluator": "True"}])

    def test_simple_rule_requires_target_path(self) -> None:
        with pytest.raises(RuleSetError, match="requires targetPath"):
            load_rule_set([{"id": "A", "evaluator": "exists"}])

    def test_composite_requires_conditions(self) -> None:
        with pytest.raises(RuleSetError, match="at least one condition"):
            load_rule_set([{"id": "A", "logic": "AND", "conditions": []}])

    def test_composite_requires_logic(self) -> None:
        with pytest.raises(RuleSetError, match="requires logic"):
            load_rule_set([{"id": "A", "conditions": [{"targetPath": "$.a", "evaluator": "exists"}]}])

    def test_invalid_logic_rejected(self) -> None:
        with pytest.raises(RuleSetError):
            load_rule_set([{"id": "A", "logic": "XOR", "conditions": [{"targetPath": "$.a", "evaluator": "exists"}]}])

    def test_invalid_severity_rejected(self) -> None:
        with pytest.raises(RuleSetError):
            load_rule_set([{**MFA_RULE, "severity": "urgent"}])

    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(RuleSetError) as exc_info:
            load_rule_set([MFA_RULE, MFA_RULE])
        assert exc_info.value.problems == ["rule MFA-1: duplicate id"]

    def test_all_problems_reported(self) -> None:
        with pytest.raises(RuleSetError) as exc_info:
            load_rule_set([{"id": "A"}, {"id": "B", "evaluator": "exists"}, "not a rule"])
        assert len(exc_info.value.problems) == 3

    def test_cycle_rejected(self) -> None:
        rules = [
            {"id": "A", "targetPath": "$.a", "evaluator": "exists", "dependsOn": ["B"]},
            {"id": "B", "targetPath": "$.b", "evaluator": "exists", "dependsOn": ["A"]},
        ]
        with pytest.raises(RuleSetError, match="dependency cycle: A -> B -> A"):
            load_rule_set(rules)

    def test_self_dependency_rejected(self) -> None:
        with pytest.raises(RuleSetError, match="dependency cycle"):
            load_rule_set([{"id": "A", "targetPath": "$.a", "evaluator": "exists", "dependsOn": ["A"]}])

    def test_dangling_reference_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            load_rule_set([{"id": "A", "targetPath": "$.a", "evaluator": "exists", "dependsOn": ["GHOST"]}])
        assert "unknown rule GHOST" in caplog.text

    def test_dependency_order_logged_at_debug(self, caplog: pytest.LogCaptureFixture) -> None:
        rules = [
            {"id": "C", "targetPath": "$.c", "evaluator": "exists", "dependsOn": ["A"]},
            {"id": "A", "targetPath": "$.a", "evaluator": "exists"},
            {"id": "B", "targetPath": "$.b", "evaluator": "exists", "dependsOn": ["C"]},
        ]
        with caplog.at_level(logging.DEBUG, logger="auditcore"):
            load_rule_set(rules)
        assert "Dependency order: A, C, B" in caplog.text

    def test_not_a_list(self) -> None:
        with pytest.raises(RuleSetError, match="must be a list"):
            load_rule_set({"id": "A"})

    def test_rules_mapping(self) -> None:
        assert len(load_rule_set({"rules": [MFA_RULE]})) == 1

    def test_json_file(self, tmp_path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([MFA_RULE]), encoding="utf-8")
        assert [r.id for r in load_rule_set(path)] == ["MFA-1"]

    def test_yaml_file(self, tmp_path) -> None:
        path = tmp_path / "rules.yaml"
        path.write_text(
            "- id: MFA-1\n"
            "  title: MFA enforced\n"
            "  targetPath: $.State\n"
            "  evaluator: equals\n"
            "  expectedValue: Enforced\n",
            encoding="utf-8",
        )
        rule = _by_id(load_rule_set(str(path)))["MFA-1"]
        assert rule.expected_value == "Enforced"

    def test_unsupported_file_type(self, tmp_path) -> None:
        path = tmp_path / "rules.txt"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(RuleSetError, match="Unsupported rule file type"):
            load_rule_set(path)

    def test_unparsable_file(self, tmp_path) -> None:
        path = tmp_path / "rules.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(RuleSetError, match="Cannot parse"):
            load_rule_set(path)

    def test_rules_are_immutable(self) -> None:
        rule = _by_id(load_rule_set([MFA_RULE]))["MFA-1"]
        with pytest.raises(Exception):
            rule.title = "changed"


# ---------------------------------------------------------------------------
# Dependency gate and graph
# ---------------------------------------------------------------------------


class TestDependencyGate:
    def test_empty_is_satisfied(self) -> None:
        assert check_dependencies([], {}) is True

    def test_passed_dependency(self) -> None:
        assert check_dependencies(["A"], {"A": FindingStatus.PASSED}) is True

    @pytest.mark.parametrize("status", [FindingStatus.FAILED, FindingStatus.WARNING])
    def test_non_passed_dependency(self, status: FindingStatus) -> None:
        assert check_dependencies(["A"], {"A": status}) is False

    def test_dangling_dependency(self) -> None:
        assert check_dependencies(["A"], {}) is False

    def test_unmet_in_declaration_order(self) -> None:
        results = {"A": FindingStatus.PASSED, "C": FindingStatus.FAILED}
        assert unmet_dependencies(["C", "A", "B"], results) == ["C", "B"]


class TestDependencyGraph:
    def test_find_cycle(self) -> None:
        graph = DependencyGraph({"A": ["B"], "B": ["C"], "C": ["A"]})
        assert graph.find_cycle() == ["A", "B", "C", "A"]

    def test_acyclic(self) -> None:
        graph = DependencyGraph({"A": [], "B": ["A"], "C": ["A", "B", "GHOST"]})
        assert graph.find_cycle() is None

    def test_topological_order(self) -> None:
        graph = DependencyGraph({"C": ["A"], "A": [], "B": ["C"]})
        assert graph.topological_order() == ["A", "C", "B"]

    def test_references(self) -> None:
        graph = DependencyGraph({"B": ["A", "X"], "A": []})
        assert graph.dangling_references() == [("B", "X")]
        assert graph.forward_references() == [("B", "A")]


# ---------------------------------------------------------------------------
# Rule execution
# ---------------------------------------------------------------------------


class TestRuleExecutor:
    def test_mfa_end_to_end(self) -> None:
        executor = _executor([MFA_RULE])
        assert _statuses(executor.check_record({"State": "Enabled"})) == ["failed"]
        assert _statuses(executor.check_record({"State": "Enforced"})) == ["passed"]
        assert _statuses(executor.check_record({})) == ["warning"]

    def test_warning_evidence_for_missing_target(self) -> None:
        finding = _executor([MFA_RULE]).check_record({})[0]
        assert finding.evidence == "$.State not found"
        assert finding.evaluation_detail["result"] is None

    def test_exists_on_missing_target_fails(self) -> None:
        finding = _executor([{"id": "E", "targetPath": "$.a", "evaluator": "exists"}]).check_record({})[0]
        assert finding.status is FindingStatus.FAILED

    def test_finding_fields(self) -> None:
        finding = _executor([MFA_RULE]).check_record({"State": "Enabled"}, index=3)[0]
        assert finding.rule_id == "MFA-1"
        assert finding.title == "MFA enforced"
        assert finding.severity is Severity.HIGH
        assert finding.remediation == "Enforce MFA for all users."
        assert finding.record_index == 3
        assert finding.evaluation_detail["targetPath"] == "$.State"

    def test_failed_dependency_skips_evaluation(self, dependent_rules: list[dict]) -> None:
        registry = Mock(wraps=EvaluatorRegistry())
        executor = _executor(dependent_rules, registry=registry)
        findings = executor.check_record({"State": "Enabled", "Methods": ["app"]})
        assert _statuses(findings) == ["failed", "warning"]
        assert findings[1].evidence == "dependency not satisfied: MFA-1"
        assert findings[1].evaluation_detail["skipped"] is True
        # Only MFA-1 reached the evaluator.
        assert registry.evaluate.call_count == 1

    def test_warning_dependency_is_unmet(self, dependent_rules: list[dict]) -> None:
        findings = _executor(dependent_rules).check_record({"Methods": ["app"]})
        assert _statuses(findings) == ["warning", "warning"]

    def test_passed_dependency_allows_evaluation(self, dependent_rules: list[dict]) -> None:
        findings = _executor(dependent_rules).check_record({"State": "Enforced", "Methods": ["app"]})
        assert _statuses(findings) == ["passed", "passed"]

    def test_forward_reference_is_unmet(self, dependent_rules: list[dict]) -> None:
        findings = _executor(list(reversed(dependent_rules))).check_record(
            {"State": "Enforced", "Methods": ["app"]},
        )
        assert _statuses(findings) == ["warning", "passed"]

    def test_composite_rule(self) -> None:
        rule = {
            "id": "CA-1",
            "logic": "AND",
            "conditions": [
                {"targetPath": "$.State", "evaluator": "equals", "expectedValue": "enabled"},
                {"targetPath": "$.Users", "evaluator": "contains", "expectedValue": "All"},
            ],
        }
        finding = _executor([rule]).check_record({"State": "enabled", "Users": ["Guests"]})[0]
        assert finding.status is FindingStatus.FAILED
        assert finding.evaluation_detail["logic"] == "AND"
        assert [c["result"] for c in finding.evaluation_detail["conditions"]] == [True, False]

    def test_composite_with_missing_targets_fails(self) -> None:
        rule = {"id": "CA-2", "logic": "OR", "conditions": [{"targetPath": "$.x", "evaluator": "equals", "expectedValue": 1}]}
        assert _executor([rule]).check_record({})[0].status is FindingStatus.FAILED

    def test_custom_rule(self) -> None:
        rule = {"id": "ADM-1", "targetPath": "$.Admins", "customEvaluator": "len(value) <= 2"}
        executor = _executor([rule])
        assert _statuses(executor.check_record({"Admins": ["a", "b"]})) == ["passed"]
        assert _statuses(executor.check_record({"Admins": ["a", "b", "c"]})) == ["failed"]

    def test_custom_rule_runs_on_absent_target(self) -> None:
        rule = {"id": "X", "targetPath": "$.Missing", "customEvaluator": "value is None"}
        assert _statuses(_executor([rule]).check_record({})) == ["passed"]

    def test_custom_rule_defaults_to_whole_record(self) -> None:
        rule = {"id": "X", "customEvaluator": "value.get('Enabled') == True"}
        finding = _executor([rule]).check_record({"Enabled": True})[0]
        assert finding.status is FindingStatus.PASSED
        assert finding.evaluation_detail["targetPath"] == "$"

    def test_custom_rule_error_is_failed(self) -> None:
        rule = {"id": "X", "customEvaluator": "value['nope'] > 1"}
        finding = _executor([rule]).check_record({})[0]
        assert finding.status is FindingStatus.FAILED
        assert "KeyError" in finding.evidence

    def test_evidence_path(self) -> None:
        rule = {**MFA_RULE, "evidencePath": "$.UserPrincipalName"}
        finding = _executor([rule]).check_record({"State": "Enabled", "UserPrincipalName": "a@x.com"})[0]
        assert finding.evidence.endswith('; evidence: "a@x.com"')

    def test_unknown_evaluator_on_present_value(self) -> None:
        rule = {"id": "U", "targetPath": "$.a", "evaluator": "regex", "expectedValue": ".*"}
        finding = _executor([rule]).check_record({"a": "x"})[0]
        assert finding.status is FindingStatus.FAILED
        assert "unknown evaluator" in finding.evidence

    def test_malformed_threshold_is_failed(self) -> None:
        rule = {"id": "L", "targetPath": "$.a", "evaluator": "arrayLength>=two"}
        finding = _executor([rule]).check_record({"a": [1, 2]})[0]
        assert finding.status is FindingStatus.FAILED
        assert "invalid threshold" in finding.evidence

    def test_evaluator_exception_is_recovered(self) -> None:
        registry = Mock()
        registry.evaluate.side_effect = RuntimeError("boom")
        executor = _executor([MFA_RULE, {"id": "X", "customEvaluator": "True"}], registry=registry)
        findings = executor.check_record({"State": "Enforced"})
        assert findings[0].status is FindingStatus.FAILED
        assert findings[0].evidence == "evaluation error: RuntimeError: boom"
        assert findings[1].status is FindingStatus.PASSED

    def test_record_not_mutated(self) -> None:
        record = {"State": "Enabled", "Users": [{"Email": "a@x.com"}]}
        snapshot = json.dumps(record, sort_keys=True)
        _executor([MFA_RULE, {"id": "P", "targetPath": "$.Users[*].Email", "evaluator": "arrayLength>=1"}]).check_record(record)
        assert json.dumps(record, sort_keys=True) == snapshot


# ---------------------------------------------------------------------------
# Aggregation and report
# ---------------------------------------------------------------------------


def _finding(status: FindingStatus) -> Finding:
    return Finding(rule_id="R", title="t", status=status, severity=Severity.LOW)


class TestAggregate:
    def test_empty(self) -> None:
        report = aggregate([], input_records=0, rules_evaluated=0, generated_at=FIXED_TIME)
        assert report.summary.total == 0
        assert report.summary.compliance_score == 0.0

    def test_counts_and_score(self) -> None:
        findings = [_finding(FindingStatus.PASSED)] * 2 + [_finding(FindingStatus.FAILED)]
        report = aggregate(findings, input_records=3, rules_evaluated=1, generated_at=FIXED_TIME)
        assert report.summary.passed == 2
        assert report.summary.failed == 1
        assert report.summary.warning == 0
        assert report.summary.compliance_score == 66.7

    def test_zero_passed(self) -> None:
        findings = [_finding(FindingStatus.WARNING), _finding(FindingStatus.FAILED)]
        report = aggregate(findings, input_records=1, rules_evaluated=2, generated_at=FIXED_TIME)
        assert report.summary.compliance_score == 0.0

    def test_tiny_pass_ratio_rounds_to_zero(self) -> None:
        assert compliance_score(1, 20000) == 0.0
        assert compliance_score(1, 1000) == 0.1

    def test_all_passed(self) -> None:
        report = aggregate([_finding(FindingStatus.PASSED)], input_records=1, rules_evaluated=1)
        assert report.summary.compliance_score == 100.0

    def test_generated_at_string(self) -> None:
        report = aggregate([], input_records=0, rules_evaluated=0, generated_at=FIXED_TIME)
        assert report.report.generated_at == "2026-01-01T00:00:00+00:00"

    def test_wire_format(self) -> None:
        findings = [_finding(FindingStatus.PASSED)]
        data = json.loads(
            aggregate(findings, input_records=1, rules_evaluated=1, generated_at="t").to_json()
        )
        assert data["report"] == {"generatedAt": "t", "inputRecords": 1, "rulesEvaluated": 1}
        assert data["summary"] == {
            "totalChecks": 1,
            "passed": 1,
            "failed": 0,
            "warning": 0,
            "complianceScore": 100.0,
        }
        assert list(data["findings"][0]) == [
            "ruleId",
            "title",
            "status",
            "severity",
            "evidence",
            "remediation",
            "evaluationResult",
        ]
        assert data["findings"][0]["status"] == "passed"
        assert data["findings"][0]["severity"] == "low"

    def test_save(self, tmp_path) -> None:
        report = aggregate([_finding(FindingStatus.PASSED)], input_records=1, rules_evaluated=1)
        out = report.save(tmp_path / "out" / "report.json")
        assert json.loads(out.read_text(encoding="utf-8"))["summary"]["passed"] == 1


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestComplianceEngine:
    def test_run(self, settings: EngineSettings, dependent_rules: list[dict]) -> None:
        records = [
            {"State": "Enforced", "Methods": ["app"]},
            {"State": "Enabled", "Methods": ["app"]},
            {},
        ]
        report = ComplianceEngine(dependent_rules, settings=settings).run(records, generated_at=FIXED_TIME)
        assert report.report.input_records == 3
        assert report.report.rules_evaluated == 2
        assert _statuses(report.findings) == ["passed", "passed", "failed", "warning", "warning", "warning"]
        assert [f.record_index for f in report.findings] == [0, 0, 1, 1, 2, 2]
        assert report.summary.compliance_score == 33.3

    def test_results_do_not_leak_between_records(self, settings: EngineSettings, dependent_rules: list[dict]) -> None:
        records = [{"State": "Enforced", "Methods": []}, {"Methods": ["app"]}]
        findings = ComplianceEngine(dependent_rules, settings=settings).evaluate(records)
        assert _statuses(findings) == ["passed", "failed", "warning", "warning"]

    def test_output_is_reproducible(self, dependent_rules: list[dict]) -> None:
        records = [{"State": s, "Methods": ["a"] * i} for i, s in enumerate(["Enforced", "Enabled"] * 10)]
        inline = ComplianceEngine(dependent_rules, settings=EngineSettings(max_workers=1))
        pooled = ComplianceEngine(dependent_rules, settings=EngineSettings(max_workers=4))
        first = inline.run(records, generated_at=FIXED_TIME).to_json()
        assert inline.run(records, generated_at=FIXED_TIME).to_json() == first
        assert pooled.run(records, generated_at=FIXED_TIME).to_json() == first

    def test_score_bounds(self, settings: EngineSettings) -> None:
        report = ComplianceEngine([MFA_RULE], settings=settings).run([{"State": "Enforced"}, {}])
        assert 0 <= report.summary.compliance_score <= 100
        assert report.summary.compliance_score == 50.0

    def test_no_records(self, settings: EngineSettings) -> None:
        report = ComplianceEngine([MFA_RULE], settings=settings).run([])
        assert report.findings == []
        assert report.summary.compliance_score == 0.0

    def test_malformed_rules_fail_before_records(self, settings: EngineSettings) -> None:
        with pytest.raises(RuleSetError):
            ComplianceEngine([{"id": "A"}], settings=settings)

    def test_custom_timeout_does_not_abort_batch(self) -> None:
        rules = [
            {"id": "SLOW", "targetPath": "$.items", "customEvaluator": "len([1 for a in value for b in value]) > 0"},
            {"id": "FAST", "targetPath": "$.items", "evaluator": "arrayLength>=1"},
        ]
        engine = ComplianceEngine(rules, settings=EngineSettings(max_workers=2, custom_timeout=0.05))
        findings = engine.evaluate([{"items": list(range(3000))}, {"items": [1]}])
        assert _statuses(findings) == ["failed", "passed", "passed", "passed"]
        assert "timed out" in findings[0].evidence

    def test_run_file(self, settings: EngineSettings, tmp_path) -> None:
        records_path = tmp_path / "records.json"
        records_path.write_text(json.dumps([{"State": "Enforced"}]), encoding="utf-8")
        out = tmp_path / "report.json"
        report = ComplianceEngine([MFA_RULE], settings=settings).run_file(records_path, out, generated_at=FIXED_TIME)
        assert report.summary.passed == 1
        assert json.loads(out.read_text(encoding="utf-8")) == report.to_dict()


class TestLoadRecords:
    def test_array(self, tmp_path) -> None:
        path = tmp_path / "records.json"
        path.write_text('[{"a": 1}, {"a": 2}]', encoding="utf-8")
        assert load_records(path) == [{"a": 1}, {"a": 2}]

    def test_single_object(self, tmp_path) -> None:
        path = tmp_path / "record.json"
        path.write_text('{"a": 1}', encoding="utf-8")
        assert load_records(path) == [{"a": 1}]

    def test_invalid_json(self, tmp_path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ValueError, match="Cannot load records"):
            load_records(path)
