"""PredicateSandbox — evaluate user-supplied boolean expressions safely.

Custom rule expressions use Python expression syntax but are never handed
to :func:`eval`.  They are parsed with :func:`ast.parse`, checked against an
allow-list of node types, then walked by a small interpreter that only
knows about the resolved value (bound to the name ``value``), literals, and
a fixed set of builtins and string/dict methods.

Usage::

    from auditcore.compliance.sandbox import evaluate_custom

    evaluate_custom(["Global Admin", "Reader"], "len(value) <= 1")
"""

from __future__ import annotations

import ast
import logging
import operator
import time
from functools import lru_cache
from typing import Any, Callable

from auditcore.compliance.evaluators import EvaluationResult, describe, runtime_type

logger = logging.getLogger(__name__)

# Upper bound on the size of a sequence produced by ``*`` repetition,
# counting nested elements.
MAX_SEQUENCE_LENGTH = 100_000

# Upper bound on the elements one evaluation may build, and on the size of
# any container handed to a builtin or compared.
MAX_FOOTPRINT = 1_000_000

# Upper bound on the expression source length.
MAX_EXPRESSION_LENGTH = 4_000

# Builtins that run in constant time regardless of argument size.
_UNMETERED_FUNCTIONS = frozenset({"len", "bool"})

_CONTAINERS = (list, tuple, set, frozenset, dict)


class SandboxError(ValueError):
    """Raised when an expression uses syntax or names outside the sandbox."""


class SandboxTimeout(SandboxError):
    """Raised when evaluation runs past its deadline."""


def footprint(obj: Any, limit: int = MAX_FOOTPRINT, tick: Callable[[], None] | None = None) -> int:
    """Count the elements and string characters reachable from *obj*.

    Shared references are counted each time they are reached.  Counting
    stops as soon as the total exceeds *limit*.
    """
    total = 0
    stack = [obj]
    steps = 0
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            total += len(item)
        elif isinstance(item, dict):
            total += len(item)
            stack.extend(item.keys())
            stack.extend(item.values())
        elif isinstance(item, (list, tuple, set, frozenset)):
            total += len(item)
            stack.extend(item)
        if total > limit:
            break
        steps += 1
        if tick is not None and steps % 1024 == 0:
            tick()
    return total


def _safe_mult(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if footprint(seq, MAX_SEQUENCE_LENGTH) * max(count, 0) > MAX_SEQUENCE_LENGTH:
                raise SandboxError("sequence repetition exceeds sandbox limit")
    return operator.mul(left, right)


def _safe_mod(left: Any, right: Any) -> Any:
    if isinstance(left, str):
        raise SandboxError("string formatting is not allowed")
    return operator.mod(left, right)


_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _safe_mult,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: _safe_mod,
}

_CMP_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "sorted": sorted,
    "round": round,
}

_STR_METHODS = frozenset({"lower", "upper", "strip", "startswith", "endswith", "split"})
_DICT_METHODS = frozenset({"get", "keys", "values", "items"})

_ALLOWED_KEYWORDS = frozenset({"reverse", "default"})

_CONSTANT_NAMES: dict[str, Any] = {"true": True, "false": False, "null": None}

_ALLOWED_NODES: tuple[type, ...] = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Store,
    ast.List,
    ast.Tuple,
    ast.Set,
    ast.Dict,
    ast.Subscript,
    ast.Slice,
    ast.Attribute,
    ast.Call,
    ast.keyword,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.IfExp,
    ast.ListComp,
    ast.GeneratorExp,
    ast.comprehension,
    *_BIN_OPS,
    *_CMP_OPS,
    *_UNARY_OPS,
)


@lru_cache(maxsize=512)
def compile_expression(source: str) -> ast.Expression:
    """Parse and validate *source*, returning the checked AST.

    Raises
    ------
    SandboxError
        If the expression is empty, too long, not valid syntax, or uses a
        construct outside the allow-list.
    """
    if not isinstance(source, str) or not source.strip():
        raise SandboxError("custom evaluator expression is empty")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise SandboxError("custom evaluator expression is too long")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise SandboxError(f"invalid expression syntax: {exc.msg}") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise SandboxError(f"unsupported syntax: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise SandboxError(f"name '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute):
            if node.attr not in _STR_METHODS and node.attr not in _DICT_METHODS:
                raise SandboxError(f"attribute '{node.attr}' is not allowed")
        if isinstance(node, ast.Call):
            _check_call(node)
        if isinstance(node, ast.comprehension) and node.is_async:
            raise SandboxError("async comprehensions are not allowed")
    return tree


def _check_call(node: ast.Call) -> None:
    func = node.func
    if isinstance(func, ast.Name):
        if func.id not in _FUNCTIONS:
            raise SandboxError(f"function '{func.id}' is not allowed")
    elif not isinstance(func, ast.Attribute):
        raise SandboxError("only named functions and methods may be called")
    for kw in node.keywords:
        if kw.arg not in _ALLOWED_KEYWORDS:
            raise SandboxError(f"keyword argument '{kw.arg}' is not allowed")
    for arg in node.args:
        if isinstance(arg, ast.Starred):
            raise SandboxError("starred arguments are not allowed")


class _Interpreter:
    """Walk a validated expression tree against a fixed scope.

    Besides the deadline, the interpreter meters size: every container it
    builds is charged against ``MAX_FOOTPRINT``, and containers are measured
    before they reach a builtin or a comparison, both of which run without
    returning control to :meth:`_tick`.
    """

    def __init__(self, scope: dict[str, Any], deadline: float | None) -> None:
        self._scope = scope
        self._deadline = deadline
        self._built = 0

    def run(self, tree: ast.Expression) -> Any:
        return self.visit(tree.body, self._scope)

    def _tick(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise SandboxTimeout("deadline exceeded")

    def _charge(self, size: int) -> None:
        self._built += size
        if self._built > MAX_FOOTPRINT:
            raise SandboxError("expression builds more than the sandbox size limit")

    def _measure(self, obj: Any) -> None:
        if isinstance(obj, _CONTAINERS) and footprint(obj, MAX_FOOTPRINT, self._tick) > MAX_FOOTPRINT:
            raise SandboxError("operand exceeds sandbox size limit")

    def visit(self, node: ast.AST, scope: dict[str, Any]) -> Any:
        self._tick()
        method = getattr(self, f"_visit_{type(node).__name__}", None)
        if method is None:
            raise SandboxError(f"unsupported syntax: {type(node).__name__}")
        return method(node, scope)

    # Leaves

    def _visit_Constant(self, node: ast.Constant, scope: dict[str, Any]) -> Any:
        return node.value

    def _visit_Name(self, node: ast.Name, scope: dict[str, Any]) -> Any:
        if node.id in scope:
            return scope[node.id]
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        raise SandboxError(f"name '{node.id}' is not defined")

    # Containers

    def _visit_List(self, node: ast.List, scope: dict[str, Any]) -> list[Any]:
        self._charge(len(node.elts))
        return [self.visit(e, scope) for e in node.elts]

    def _visit_Tuple(self, node: ast.Tuple, scope: dict[str, Any]) -> tuple[Any, ...]:
        self._charge(len(node.elts))
        return tuple(self.visit(e, scope) for e in node.elts)

    def _visit_Set(self, node: ast.Set, scope: dict[str, Any]) -> set[Any]:
        self._charge(len(node.elts))
        return {self.visit(e, scope) for e in node.elts}

    def _visit_Dict(self, node: ast.Dict, scope: dict[str, Any]) -> dict[Any, Any]:
        if any(k is None for k in node.keys):
            raise SandboxError("dict unpacking is not allowed")
        self._charge(len(node.keys))
        return {
            self.visit(k, scope): self.visit(v, scope)
            for k, v in zip(node.keys, node.values)
        }

    def _visit_Subscript(self, node: ast.Subscript, scope: dict[str, Any]) -> Any:
        container = self.visit(node.value, scope)
        if isinstance(node.slice, ast.Slice):
            parts = [
                self.visit(p, scope) if p is not None else None
                for p in (node.slice.lower, node.slice.upper, node.slice.step)
            ]
            return container[slice(*parts)]
        return container[self.visit(node.slice, scope)]

    # Operators

    def _visit_BoolOp(self, node: ast.BoolOp, scope: dict[str, Any]) -> Any:
        result: Any = None
        if isinstance(node.op, ast.And):
            for operand in node.values:
                result = self.visit(operand, scope)
                if not result:
                    return result
            return result
        for operand in node.values:
            result = self.visit(operand, scope)
            if result:
                return result
        return result

    def _visit_UnaryOp(self, node: ast.UnaryOp, scope: dict[str, Any]) -> Any:
        return _UNARY_OPS[type(node.op)](self.visit(node.operand, scope))

    def _visit_BinOp(self, node: ast.BinOp, scope: dict[str, Any]) -> Any:
        left = self.visit(node.left, scope)
        right = self.visit(node.right, scope)
        result = _BIN_OPS[type(node.op)](left, right)
        if isinstance(result, (str, list, tuple)):
            self._charge(len(result))
        return result

    def _visit_Compare(self, node: ast.Compare, scope: dict[str, Any]) -> bool:
        left = self.visit(node.left, scope)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator, scope)
            if isinstance(left, _CONTAINERS) or isinstance(right, _CONTAINERS):
                self._measure(left)
                self._measure(right)
            if not _CMP_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def _visit_IfExp(self, node: ast.IfExp, scope: dict[str, Any]) -> Any:
        if self.visit(node.test, scope):
            return self.visit(node.body, scope)
        return self.visit(node.orelse, scope)

    # Calls

    def _visit_Call(self, node: ast.Call, scope: dict[str, Any]) -> Any:
        args = [self.visit(a, scope) for a in node.args]
        kwargs = {kw.arg: self.visit(kw.value, scope) for kw in node.keywords}

        if isinstance(node.func, ast.Name):
            name = node.func.id
            if name not in _UNMETERED_FUNCTIONS:
                for arg in [*args, *kwargs.values()]:
                    self._measure(arg)
            result = _FUNCTIONS[name](*args, **kwargs)
            if isinstance(result, _CONTAINERS):
                self._charge(len(result))
            return result

        attr = node.func.attr
        receiver = self.visit(node.func.value, scope)
        if isinstance(receiver, str) and attr in _STR_METHODS:
            result = getattr(receiver, attr)(*args, **kwargs)
        elif isinstance(receiver, dict) and attr in _DICT_METHODS:
            result = getattr(receiver, attr)(*args, **kwargs)
            if attr != "get":
                result = list(result)
        else:
            raise SandboxError(f"method '{attr}' is not available on {runtime_type(receiver)}")
        if isinstance(result, list):
            self._charge(len(result))
        return result

    # Comprehensions

    def _visit_ListComp(self, node: ast.ListComp, scope: dict[str, Any]) -> list[Any]:
        return list(self._comprehend(node.elt, node.generators, scope))

    def _visit_GeneratorExp(self, node: ast.GeneratorExp, scope: dict[str, Any]) -> list[Any]:
        # Evaluated eagerly; any()/all() receive a list.
        return list(self._comprehend(node.elt, node.generators, scope))

    def _comprehend(self, elt: ast.AST, generators: list[ast.comprehension], scope: dict[str, Any]):
        first, rest = generators[0], generators[1:]
        for item in self.visit(first.iter, scope):
            self._tick()
            inner = dict(scope)
            _bind(first.target, item, inner)
            if not all(self.visit(cond, inner) for cond in first.ifs):
                continue
            if rest:
                yield from self._comprehend(elt, rest, inner)
            else:
                self._charge(1)
                yield self.visit(elt, inner)


def _bind(target: ast.AST, item: Any, scope: dict[str, Any]) -> None:
    if isinstance(target, ast.Name):
        if target.id == "value":
            raise SandboxError("cannot rebind 'value'")
        scope[target.id] = item
        return
    if isinstance(target, ast.Tuple):
        items = list(item)
        if len(items) != len(target.elts):
            raise SandboxError("cannot unpack loop variable")
        for sub, sub_item in zip(target.elts, items):
            _bind(sub, sub_item, scope)
        return
    raise SandboxError("unsupported loop target")


class PredicateSandbox:
    """Evaluate custom predicates with an optional per-call timeout.

    Parameters
    ----------
    timeout:
        Default deadline in seconds for each evaluation.  ``None`` or
        ``0`` disables the deadline.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout or None

    def evaluate(
        self,
        value: Any,
        expression: str,
        *,
        expected_type: str | None = None,
        timeout: float | None = None,
    ) -> EvaluationResult:
        """Run *expression* with ``value`` bound to *value*.

        Never raises: errors and timeouts become a ``False`` result with
        the error text as evidence.
        """
        if expected_type is not None:
            actual = runtime_type(value)
            wanted = str(expected_type).strip().lower()
            if actual != wanted:
                return EvaluationResult(
                    result=False,
                    evidence=f"type mismatch: expected {wanted}, got {actual}",
                )

        limit = timeout if timeout is not None else self.timeout
        deadline = time.monotonic() + limit if limit else None

        try:
            tree = compile_expression(expression)
            raw = _Interpreter({"value": value}, deadline).run(tree)
        except SandboxTimeout:
            logger.debug("Custom evaluator timed out: %s", expression)
            return EvaluationResult(
                result=False, evidence=f"custom evaluator timed out after {limit:g}s",
            )
        except Exception as exc:
            logger.debug("Custom evaluator failed: %s", expression, exc_info=True)
            return EvaluationResult(
                result=False,
                evidence=f"custom evaluator error: {type(exc).__name__}: {exc}",
            )

        outcome = bool(raw)
        return EvaluationResult(
            result=outcome,
            evidence=f"custom evaluator returned {describe(raw)}",
        )


def evaluate_custom(
    value: Any,
    expression: str,
    timeout: float | None = None,
    *,
    expected_type: str | None = None,
) -> EvaluationResult:
    """Evaluate *expression* against *value* in a fresh sandbox."""
    return PredicateSandbox(timeout).evaluate(value, expression, expected_type=expected_type)
