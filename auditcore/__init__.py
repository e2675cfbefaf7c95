"""auditcore — rule evaluation engine for configuration compliance audits."""

__version__ = "1.0.0"

from auditcore.compliance.engine import ComplianceEngine
from auditcore.compliance.errors import RuleSetError
from auditcore.compliance.report import Finding, SummaryReport
from auditcore.compliance.rules import RuleDefinition, load_rule_set
from auditcore.config import EngineSettings, load_settings

__all__ = [
    "__version__",
    "ComplianceEngine",
    "EngineSettings",
    "Finding",
    "RuleDefinition",
    "RuleSetError",
    "SummaryReport",
    "load_rule_set",
    "load_settings",
]
