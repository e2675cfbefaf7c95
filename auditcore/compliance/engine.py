"""ComplianceEngine — main entry point for rule-set evaluation.

Usage::

    from auditcore.compliance import ComplianceEngine

    engine = ComplianceEngine(rules)
    report = engine.run(records)
    print(report.to_json())
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from auditcore.compliance.checker import RuleExecutor
from auditcore.compliance.enums import FindingStatus
from auditcore.compliance.evaluators import EvaluatorRegistry
from auditcore.compliance.report import Finding, SummaryReport, aggregate
from auditcore.compliance.rules import load_rule_set
from auditcore.compliance.sandbox import PredicateSandbox
from auditcore.config import EngineSettings, load_settings

logger = logging.getLogger(__name__)


def load_records(path: str | Path) -> list[Any]:
    """Read configuration records from a JSON file.

    A top-level array is a list of records; any other JSON value is
    treated as a single record.
    """
    source = Path(path)
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise ValueError(f"Cannot load records from {source}: {exc}") from exc
    return data if isinstance(data, list) else [data]


class ComplianceEngine:
    """Evaluate a rule set against a batch of configuration records.

    Records are independent and are spread over a thread pool; rules within
    a record run sequentially in rule-set order.  Findings are buffered per
    record and merged in input order, so the output does not depend on
    scheduling.

    Parameters
    ----------
    rules:
        Anything :func:`~auditcore.compliance.rules.load_rule_set` accepts.
        Structural problems raise ``RuleSetError`` here, before any record
        is processed.
    settings:
        Engine settings.  Defaults to :func:`~auditcore.config.load_settings`.
    registry:
        Evaluator registry override.
    sandbox:
        Custom predicate sandbox override.
    """

    def __init__(
        self,
        rules: Any,
        *,
        settings: EngineSettings | None = None,
        registry: EvaluatorRegistry | None = None,
        sandbox: PredicateSandbox | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.rule_set = load_rule_set(rules)
        self.executor = RuleExecutor(
            self.rule_set,
            registry=registry,
            sandbox=sandbox or PredicateSandbox(self.settings.custom_timeout),
        )

    def evaluate(self, records: Iterable[Any]) -> list[Finding]:
        """Return every finding for *records*, grouped by record in input order."""
        batch = list(records)
        workers = min(self.settings.max_workers, len(batch))

        if workers <= 1:
            buffers = [self._check_record(i, rec) for i, rec in enumerate(batch)]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="auditcore") as pool:
                buffers = list(pool.map(self._check_record, range(len(batch)), batch))

        return [finding for buffer in buffers for finding in buffer]

    def run(
        self,
        records: Iterable[Any],
        *,
        generated_at: datetime | str | None = None,
    ) -> SummaryReport:
        """Evaluate *records* and aggregate the findings into a report.

        Parameters
        ----------
        records:
            Configuration records, already materialized.
        generated_at:
            Fixed report timestamp; defaults to now (UTC).

        Returns
        -------
        SummaryReport
        """
        batch = list(records)
        findings = self.evaluate(batch)
        report = aggregate(
            findings,
            input_records=len(batch),
            rules_evaluated=len(self.rule_set),
            generated_at=generated_at,
        )
        logger.info(
            "Evaluated %d rules against %d records: %d passed, %d failed, %d warning (score %.1f)",
            len(self.rule_set),
            len(batch),
            report.summary.passed,
            report.summary.failed,
            report.summary.warning,
            report.summary.compliance_score,
        )
        return report

    def run_file(
        self,
        records_path: str | Path,
        output_path: str | Path | None = None,
        *,
        generated_at: datetime | str | None = None,
    ) -> SummaryReport:
        """Load records from JSON, run, and optionally save the report."""
        report = self.run(load_records(records_path), generated_at=generated_at)
        if output_path is not None:
            saved = report.save(output_path)
            logger.info("Wrote compliance report to %s", saved)
        return report

    def _check_record(self, index: int, record: Any) -> list[Finding]:
        try:
            return self.executor.check_record(record, index)
        except Exception as exc:
            # Per-rule errors are handled by the executor; this covers the rest.
            logger.error("Record %d could not be evaluated: %s", index, exc, exc_info=True)
            return [
                Finding(
                    rule_id=rule.id,
                    title=rule.title,
                    status=FindingStatus.FAILED,
                    severity=rule.severity,
                    evidence=f"record evaluation error: {type(exc).__name__}: {exc}",
                    remediation=rule.remediation,
                    evaluation_detail={"recordIndex": index, "result": False},
                )
                for rule in self.rule_set
            ]
