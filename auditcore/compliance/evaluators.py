"""Built-in evaluators: named boolean predicates over a resolved value."""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

_THRESHOLD_RE = re.compile(r"^\d+$")
_EVIDENCE_MAX_CHARS = 200


class EvaluatorKind(str, Enum):
    """Closed set of evaluator kinds understood by the registry."""

    EXISTS = "exists"
    TYPE = "type"
    EQUALS = "equals"
    CONTAINS = "contains"
    ARRAY_LENGTH_MIN = "arrayLength>="
    ARRAY_LENGTH_MAX = "arrayLength<="


class EvaluationResult(BaseModel):
    """Boolean outcome of one evaluation plus its human-readable evidence."""

    model_config = ConfigDict(frozen=True)

    result: bool
    evidence: str = ""


Handler = Callable[[Any, str, Any, Optional[str]], EvaluationResult]


def runtime_type(value: Any) -> str:
    """Return the JSON shape name of *value*.

    One of ``array``, ``object``, ``string``, ``boolean``, ``number``,
    ``null`` or ``unknown``.
    """
    if value is None:
        return "null"
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "unknown"


def describe(value: Any) -> str:
    """Render *value* as compact JSON for evidence strings."""
    try:
        text = json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    if len(text) > _EVIDENCE_MAX_CHARS:
        text = text[: _EVIDENCE_MAX_CHARS - 3] + "..."
    return text


def parse_evaluator(name: str) -> tuple[EvaluatorKind, str] | None:
    """Split an evaluator name into its kind and embedded argument.

    ``"arrayLength>=2"`` parses to ``(EvaluatorKind.ARRAY_LENGTH_MIN, "2")``.
    Returns ``None`` for unrecognised names.
    """
    if not isinstance(name, str):
        return None
    text = name.strip()
    for kind in (EvaluatorKind.ARRAY_LENGTH_MIN, EvaluatorKind.ARRAY_LENGTH_MAX):
        if text.startswith(kind.value):
            return kind, text[len(kind.value):].strip()
    try:
        return EvaluatorKind(text), ""
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def _is_structured(value: Any) -> bool:
    return isinstance(value, (list, tuple, dict))


def _scalar_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    return left == right


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _exists(value: Any, arg: str, expected_value: Any, expected_type: str | None) -> EvaluationResult:
    if value is None:
        return EvaluationResult(result=False, evidence="value is absent")
    if value == "":
        return EvaluationResult(result=False, evidence="value is an empty string")
    return EvaluationResult(result=True, evidence=f"value is present: {describe(value)}")


def _type(value: Any, arg: str, expected_value: Any, expected_type: str | None) -> EvaluationResult:
    wanted = expected_type if expected_type is not None else expected_value
    if not isinstance(wanted, str) or not wanted.strip():
        return EvaluationResult(
            result=False, evidence="type evaluator requires expectedType",
        )
    actual = runtime_type(value)
    if actual == wanted.strip().lower():
        return EvaluationResult(result=True, evidence=f"value is of type {actual}")
    return EvaluationResult(
        result=False, evidence=f"expected type {wanted.strip().lower()}, got {actual}",
    )


def _equals(value: Any, arg: str, expected_value: Any, expected_type: str | None) -> EvaluationResult:
    if _is_structured(value) or _is_structured(expected_value):
        return EvaluationResult(
            result=False,
            evidence="equals does not support array/object operands "
            f"(value is {runtime_type(value)}, expected {runtime_type(expected_value)})",
        )
    if _scalar_equal(value, expected_value):
        return EvaluationResult(result=True, evidence=f"value equals {describe(expected_value)}")
    return EvaluationResult(
        result=False,
        evidence=f"expected {describe(expected_value)}, got {describe(value)}",
    )


def _contains(value: Any, arg: str, expected_value: Any, expected_type: str | None) -> EvaluationResult:
    if expected_value is None:
        return EvaluationResult(result=False, evidence="contains requires expectedValue")

    if isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, str) and isinstance(expected_value, str):
                if item.casefold() == expected_value.casefold():
                    break
            elif not _is_structured(item) and _scalar_equal(item, expected_value):
                break
        else:
            return EvaluationResult(
                result=False,
                evidence=f"{describe(expected_value)} not found in array of {len(value)} item(s)",
            )
        return EvaluationResult(result=True, evidence=f"{describe(expected_value)} found in array")

    if isinstance(value, str):
        if _is_structured(expected_value):
            return EvaluationResult(
                result=False,
                evidence=f"cannot search a string for {runtime_type(expected_value)}",
            )
        needle = _as_text(expected_value)
        if needle.casefold() in value.casefold():
            return EvaluationResult(result=True, evidence=f"{describe(value)} contains {describe(needle)}")
        return EvaluationResult(
            result=False, evidence=f"{describe(value)} does not contain {describe(needle)}",
        )

    return EvaluationResult(
        result=False,
        evidence=f"contains requires an array or string value, got {runtime_type(value)}",
    )


def _array_length(kind: EvaluatorKind) -> Handler:
    def handler(value: Any, arg: str, expected_value: Any, expected_type: str | None) -> EvaluationResult:
        if not _THRESHOLD_RE.match(arg):
            return EvaluationResult(
                result=False, evidence=f"invalid threshold in evaluator '{kind.value}{arg}'",
            )
        threshold = int(arg)
        if not isinstance(value, (list, tuple)):
            return EvaluationResult(
                result=False,
                evidence=f"type mismatch: {kind.value} requires an array, got {runtime_type(value)}",
            )
        length = len(value)
        if kind is EvaluatorKind.ARRAY_LENGTH_MIN:
            ok = length >= threshold
        else:
            ok = length <= threshold
        op = kind.value[len("arrayLength"):]
        verdict = "satisfies" if ok else "does not satisfy"
        return EvaluationResult(
            result=ok, evidence=f"array length {length} {verdict} {op} {threshold}",
        )

    return handler


_HANDLERS: dict[EvaluatorKind, Handler] = {
    EvaluatorKind.EXISTS: _exists,
    EvaluatorKind.TYPE: _type,
    EvaluatorKind.EQUALS: _equals,
    EvaluatorKind.CONTAINS: _contains,
    EvaluatorKind.ARRAY_LENGTH_MIN: _array_length(EvaluatorKind.ARRAY_LENGTH_MIN),
    EvaluatorKind.ARRAY_LENGTH_MAX: _array_length(EvaluatorKind.ARRAY_LENGTH_MAX),
}


class EvaluatorRegistry:
    """Lookup table from :class:`EvaluatorKind` to its handler.

    Every kind in the enum has exactly one handler; the table is checked
    for completeness at construction.
    """

    def __init__(self, handlers: dict[EvaluatorKind, Handler] | None = None) -> None:
        self._handlers = dict(_HANDLERS if handlers is None else handlers)
        missing = [k.value for k in EvaluatorKind if k not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for evaluator(s): {', '.join(missing)}")

    def kinds(self) -> list[EvaluatorKind]:
        return list(self._handlers)

    def is_known(self, name: str) -> bool:
        return parse_evaluator(name) is not None

    def evaluate(
        self,
        value: Any,
        name: str,
        expected_value: Any = None,
        expected_type: str | None = None,
    ) -> EvaluationResult:
        """Run the evaluator *name* against *value*.

        Parameters
        ----------
        value:
            The resolved target value.
        name:
            Evaluator name, e.g. ``"equals"`` or ``"arrayLength>=2"``.
        expected_value:
            Comparison operand for ``equals``/``contains``.
        expected_type:
            If given, a type mismatch short-circuits to ``False`` before
            the named evaluator runs.

        Returns
        -------
        EvaluationResult
        """
        if expected_type is not None:
            actual = runtime_type(value)
            wanted = str(expected_type).strip().lower()
            if actual != wanted:
                return EvaluationResult(
                    result=False,
                    evidence=f"type mismatch: expected {wanted}, got {actual}",
                )

        parsed = parse_evaluator(name)
        if parsed is None:
            return EvaluationResult(result=False, evidence=f"unknown evaluator '{name}'")
        kind, arg = parsed
        return self._handlers[kind](value, arg, expected_value, expected_type)


default_registry = EvaluatorRegistry()


def evaluate(
    value: Any,
    name: str,
    expected_value: Any = None,
    expected_type: str | None = None,
) -> EvaluationResult:
    """Evaluate with the default registry."""
    return default_registry.evaluate(value, name, expected_value, expected_type)
