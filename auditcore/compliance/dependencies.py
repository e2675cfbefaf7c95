"""Rule-to-rule dependency gating and load-time graph checks."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from auditcore.compliance.enums import FindingStatus

logger = logging.getLogger(__name__)


def unmet_dependencies(
    depends_on: Sequence[str],
    results: Mapping[str, Any],
) -> list[str]:
    """Return the ids in *depends_on* that have not passed for this record.

    A dependency is met only when *results* holds it with status exactly
    ``passed``.  Ids absent from *results* (dangling, or not yet evaluated
    in this record's pass) are unmet.
    """
    return [dep for dep in depends_on if results.get(dep) != FindingStatus.PASSED]


def check_dependencies(depends_on: Sequence[str], results: Mapping[str, Any]) -> bool:
    """Return True if every dependency passed.  Empty *depends_on* is satisfied."""
    return not unmet_dependencies(depends_on, results)


class DependencyGraph:
    """Directed graph of ``rule id -> ids it depends on``.

    Parameters
    ----------
    edges:
        Mapping from rule id to its declared dependencies, in rule-set order.
    """

    def __init__(self, edges: Mapping[str, Sequence[str]]) -> None:
        self._edges: dict[str, tuple[str, ...]] = {k: tuple(v) for k, v in edges.items()}
        self._position = {rule_id: i for i, rule_id in enumerate(self._edges)}

    @classmethod
    def from_rules(cls, rules: Iterable[Any]) -> DependencyGraph:
        """Build a graph from objects exposing ``id`` and ``depends_on``."""
        return cls({rule.id: tuple(rule.depends_on) for rule in rules})

    def dangling_references(self) -> list[tuple[str, str]]:
        """Return ``(rule_id, missing_id)`` pairs for unknown dependencies."""
        return [
            (rid, dep)
            for rid, deps in self._edges.items()
            for dep in deps
            if dep not in self._edges
        ]

    def forward_references(self) -> list[tuple[str, str]]:
        """Return ``(rule_id, dep_id)`` pairs where the dependency is declared later."""
        return [
            (rid, dep)
            for rid, deps in self._edges.items()
            for dep in deps
            if dep in self._position and self._position[dep] >= self._position[rid]
        ]

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle as a closed path, or None.

        The path starts and ends with the same id, e.g. ``["A", "B", "A"]``.
        Dangling references are ignored.
        """
        white, grey, black = 0, 1, 2
        colour = dict.fromkeys(self._edges, white)

        for start in self._edges:
            if colour[start] != white:
                continue
            stack: list[tuple[str, int]] = [(start, 0)]
            path: list[str] = [start]
            colour[start] = grey
            while stack:
                node, idx = stack[-1]
                deps = [d for d in self._edges[node] if d in self._edges]
                if idx < len(deps):
                    stack[-1] = (node, idx + 1)
                    nxt = deps[idx]
                    if colour[nxt] == grey:
                        return path[path.index(nxt):] + [nxt]
                    if colour[nxt] == white:
                        colour[nxt] = grey
                        stack.append((nxt, 0))
                        path.append(nxt)
                else:
                    colour[node] = black
                    stack.pop()
                    path.pop()
        return None

    def topological_order(self) -> list[str]:
        """Return rule ids with every dependency before its dependents.

        Ties keep rule-set order.  Raises ValueError if the graph has a cycle.
        """
        pending = {
            rid: {d for d in deps if d in self._edges}
            for rid, deps in self._edges.items()
        }
        order: list[str] = []
        while pending:
            ready = [rid for rid in pending if not pending[rid]]
            if not ready:
                raise ValueError("dependency graph contains a cycle")
            ready.sort(key=self._position.__getitem__)
            for rid in ready:
                order.append(rid)
                del pending[rid]
            for deps in pending.values():
                deps.difference_update(ready)
        return order

    def log_reference_warnings(self) -> None:
        """Log dangling and forward references; both evaluate as unmet."""
        for rule_id, missing in self.dangling_references():
            logger.warning(
                "Rule %s depends on unknown rule %s; the dependency will never be met",
                rule_id,
                missing,
            )
        for rule_id, dep in self.forward_references():
            logger.warning(
                "Rule %s depends on %s, which is declared later; "
                "the dependency will be treated as unmet",
                rule_id,
                dep,
            )
