"""Rule definitions and rule-set loading."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from auditcore.compliance.dependencies import DependencyGraph
from auditcore.compliance.enums import Logic, RuleShape, Severity
from auditcore.compliance.errors import RuleSetError
from auditcore.config import RULE_FILE_SUFFIXES

logger = logging.getLogger(__name__)


class Condition(BaseModel):
    """One sub-check inside a composite rule."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    target_path: str = Field(alias="targetPath", min_length=1)
    """Path to the checked value, e.g. ``'$.Policies[0].State'``."""

    evaluator: str = Field(min_length=1)
    """Evaluator name: 'exists', 'type', 'equals', 'contains', 'arrayLength>=N', 'arrayLength<=N'."""

    expected_value: Any = Field(default=None, alias="expectedValue")
    expected_type: str | None = Field(default=None, alias="expectedType")


class RuleDefinition(BaseModel):
    """A single declarative compliance rule.

    Exactly one of three shapes applies:

    * simple: ``target_path`` + ``evaluator``
    * composite: ``logic`` + ``conditions``
    * custom: ``custom_evaluator`` (optionally ``target_path``, default ``$``)
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    title: str = ""
    severity: Severity = Severity.MEDIUM
    remediation: str = ""

    depends_on: tuple[str, ...] = Field(default=(), alias="dependsOn")
    """Ids of rules that must have passed for the same record."""

    evidence_path: str | None = Field(default=None, alias="evidencePath")
    """Path whose value is appended to the finding evidence."""

    # simple
    target_path: str | None = Field(default=None, alias="targetPath")
    evaluator: str | None = None
    expected_value: Any = Field(default=None, alias="expectedValue")
    expected_type: str | None = Field(default=None, alias="expectedType")

    # composite
    logic: Logic | None = None
    conditions: tuple[Condition, ...] = ()

    # custom
    custom_evaluator: str | None = Field(default=None, alias="customEvaluator")

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("logic", mode="before")
    @classmethod
    def _normalise_logic(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_depends_on(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return value

    @model_validator(mode="after")
    def _check_shape(self) -> RuleDefinition:
        has_simple = self.evaluator is not None
        has_composite = self.logic is not None or bool(self.conditions)
        has_custom = self.custom_evaluator is not None

        declared = [
            name
            for name, present in (
                ("simple", has_simple),
                ("composite", has_composite),
                ("custom", has_custom),
            )
            if present
        ]
        if not declared:
            raise ValueError(
                "rule must declare one of: targetPath+evaluator, logic+conditions, customEvaluator"
            )
        if len(declared) > 1:
            raise ValueError(f"rule mixes shapes: {', '.join(declared)}")

        if has_simple and not self.target_path:
            raise ValueError("simple rule requires targetPath")
        if has_composite:
            if self.logic is None:
                raise ValueError("composite rule requires logic (AND or OR)")
            if not self.conditions:
                raise ValueError("composite rule requires at least one condition")
        if has_custom and not self.custom_evaluator.strip():
            raise ValueError("customEvaluator must not be empty")
        return self

    @property
    def shape(self) -> RuleShape:
        if self.custom_evaluator is not None:
            return RuleShape.CUSTOM
        if self.logic is not None:
            return RuleShape.COMPOSITE
        return RuleShape.SIMPLE


class RuleSet:
    """An ordered, validated, immutable collection of rules.

    Iteration yields rules in rule-set input order, which is also the
    evaluation order within a record.
    """

    def __init__(self, rules: list[RuleDefinition], graph: DependencyGraph) -> None:
        self._rules = tuple(rules)
        self.graph = graph

    def __iter__(self) -> Iterator[RuleDefinition]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)


def _read_rule_file(path: Path) -> Any:
    if path.suffix.lower() not in RULE_FILE_SUFFIXES:
        raise RuleSetError(f"Unsupported rule file type: {path.suffix or path.name}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RuleSetError(f"Cannot read rule file {path}: {exc}") from exc
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            return yaml.safe_load(text)
        return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise RuleSetError(f"Cannot parse rule file {path}: {exc}") from exc


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def load_rule_set(source: Any) -> RuleSet:
    """Validate rules and build a :class:`RuleSet`.

    Parameters
    ----------
    source:
        A :class:`RuleSet` (returned as-is), a list of rule dicts or
        :class:`RuleDefinition` objects, a ``{"rules": [...]}`` mapping,
        or a path to a ``.json``/``.yaml``/``.yml`` file.

    Raises
    ------
    RuleSetError
        If any rule is malformed, ids are duplicated, or dependencies form
        a cycle.  All problems are collected before raising.
    """
    if isinstance(source, RuleSet):
        return source

    data = source
    if isinstance(source, (str, Path)):
        data = _read_rule_file(Path(source))
    if isinstance(data, dict) and "rules" in data:
        data = data["rules"]
    if not isinstance(data, (list, tuple)):
        raise RuleSetError("Rule set must be a list of rule definitions")

    problems: list[str] = []
    rules: list[RuleDefinition] = []
    seen: set[str] = set()

    for pos, raw in enumerate(data):
        if isinstance(raw, RuleDefinition):
            rule = raw
        elif isinstance(raw, dict):
            label = raw.get("id") or f"#{pos}"
            try:
                rule = RuleDefinition.model_validate(raw)
            except ValidationError as exc:
                problems.append(f"rule {label}: {_format_validation_error(exc)}")
                continue
        else:
            problems.append(f"rule #{pos}: expected an object, got {type(raw).__name__}")
            continue

        if rule.id in seen:
            problems.append(f"rule {rule.id}: duplicate id")
            continue
        seen.add(rule.id)
        rules.append(rule)

    graph = DependencyGraph.from_rules(rules)
    cycle = graph.find_cycle()
    if cycle:
        problems.append(f"dependency cycle: {' -> '.join(cycle)}")

    if problems:
        raise RuleSetError("Invalid rule set", problems)

    graph.log_reference_warnings()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Dependency order: %s", ", ".join(graph.topological_order()))
    logger.info("Loaded rule set with %d rules.", len(rules))
    return RuleSet(rules, graph)
