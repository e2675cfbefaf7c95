"""Enumerations shared by rule definitions, findings and reports."""

from enum import Enum


class Severity(str, Enum):
    """Rule severity as declared in the rule set."""

    INFORMATIONAL = "informational"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Logic(str, Enum):
    """Combination logic for composite rules."""

    AND = "AND"
    OR = "OR"


class RuleShape(str, Enum):
    """Which of the three mutually exclusive rule shapes a rule uses."""

    SIMPLE = "simple"
    COMPOSITE = "composite"
    CUSTOM = "custom"


class FindingStatus(str, Enum):
    """Classified outcome of one rule against one record."""

    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
