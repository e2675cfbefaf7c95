"""Finding and SummaryReport models, and score aggregation."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from auditcore.compliance.enums import FindingStatus, Severity


class Finding(BaseModel):
    """Classified outcome of one rule against one configuration record."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    rule_id: str = Field(alias="ruleId")
    title: str = ""
    status: FindingStatus
    severity: Severity = Severity.MEDIUM
    evidence: str = ""
    remediation: str = ""
    evaluation_detail: dict[str, Any] = Field(default_factory=dict, alias="evaluationResult")
    """Structured detail: ``recordIndex``, ``result`` and shape-specific fields."""

    @property
    def record_index(self) -> int | None:
        return self.evaluation_detail.get("recordIndex")


class ReportInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    generated_at: str = Field(alias="generatedAt")
    input_records: int = Field(alias="inputRecords")
    rules_evaluated: int = Field(alias="rulesEvaluated")


class ReportSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int = Field(alias="totalChecks")
    passed: int = 0
    failed: int = 0
    warning: int = 0
    compliance_score: float = Field(default=0.0, alias="complianceScore")


class SummaryReport(BaseModel):
    """Terminal artifact of a run, consumed verbatim by report renderers."""

    report: ReportInfo
    summary: ReportSummary
    findings: list[Finding] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready dict, using the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        """Return the report as indented JSON."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def save(self, path: str | Path) -> Path:
        """Write :meth:`to_json` output to *path* and return the path."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(self.to_json() + "\n", encoding="utf-8")
        return out


def compliance_score(passed: int, total: int) -> float:
    """Percentage of passed findings, rounded to one decimal place.

    ``0.0`` when there are no findings.  Rounding also yields ``0.0`` when
    passes exist but are under 0.05% of the total, e.g. 1 of 20000, so a
    zero score does not by itself mean nothing passed.
    """
    if total <= 0:
        return 0.0
    return round(passed / total * 100, 1)


def aggregate(
    findings: list[Finding],
    *,
    input_records: int,
    rules_evaluated: int,
    generated_at: datetime | str | None = None,
) -> SummaryReport:
    """Reduce *findings* into totals and a compliance score.

    Parameters
    ----------
    findings:
        Every finding of the run, in output order.
    input_records:
        Number of configuration records evaluated.
    rules_evaluated:
        Number of rules in the rule set.
    generated_at:
        Report timestamp.  Defaults to the current UTC time; pass a fixed
        value for reproducible output.

    Returns
    -------
    SummaryReport
    """
    if generated_at is None:
        generated_at = datetime.now(timezone.utc)
    if isinstance(generated_at, datetime):
        generated_at = generated_at.isoformat()

    counts = {status: 0 for status in FindingStatus}
    for finding in findings:
        counts[finding.status] += 1
    total = len(findings)

    return SummaryReport(
        report=ReportInfo(
            generated_at=generated_at,
            input_records=input_records,
            rules_evaluated=rules_evaluated,
        ),
        summary=ReportSummary(
            total=total,
            passed=counts[FindingStatus.PASSED],
            failed=counts[FindingStatus.FAILED],
            warning=counts[FindingStatus.WARNING],
            compliance_score=compliance_score(counts[FindingStatus.PASSED], total),
        ),
        findings=list(findings),
    )
