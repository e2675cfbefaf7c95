"""JSONPath-like resolution against nested configuration records.

Supported syntax::

    $                   the record itself
    $.a.b               dict key descent
    $.a[0]              list indexing
    $.a[*].b            projection of ``b`` over every element of ``a``
    $.a.b[0].c[*].d     any left-to-right combination of the above

Resolution never raises: a missing key, an out-of-range index or a type
mismatch along the way yields ``None``.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

_SEGMENT_RE = re.compile(r"^([^\[\]]*)((?:\[(?:\d+|\*)\])*)$")
_BRACKET_RE = re.compile(r"\[(\d+|\*)\]")

# Step kinds
_KEY = "key"
_INDEX = "index"
_WILDCARD = "wildcard"

Step = tuple[str, Any]


@lru_cache(maxsize=1024)
def parse_path(path: str) -> tuple[Step, ...] | None:
    """Parse *path* into a tuple of resolution steps.

    Returns ``None`` for an empty or malformed path.  ``$`` alone parses to
    an empty tuple (the identity path).
    """
    if not isinstance(path, str):
        return None
    text = path.strip()
    if not text:
        return None

    if text == "$":
        return ()
    if text.startswith("$."):
        text = text[2:]
    elif text.startswith("$["):
        text = text[1:]
    elif text.startswith("$"):
        return None

    steps: list[Step] = []
    for segment in text.split("."):
        match = _SEGMENT_RE.match(segment)
        if match is None:
            return None
        name, brackets = match.group(1), match.group(2)
        if not name and not brackets:
            # Empty segment, e.g. "a..b" or a trailing dot.
            return None
        if name:
            steps.append((_KEY, name))
        for token in _BRACKET_RE.findall(brackets):
            if token == "*":
                steps.append((_WILDCARD, None))
            else:
                steps.append((_INDEX, int(token)))
    return tuple(steps)


def resolve_path(root: Any, path: str) -> Any:
    """Resolve *path* against *root*.

    Parameters
    ----------
    root:
        A JSON-like value tree (dicts, lists, scalars).
    path:
        Path expression, e.g. ``"$.Users[0].Roles[*].Name"``.

    Returns
    -------
    Any
        The resolved value, a list for ``[*]`` projections, or ``None``
        when any part of the path is absent.
    """
    steps = parse_path(path)
    if steps is None:
        return None
    return _walk(root, steps)


def _walk(current: Any, steps: tuple[Step, ...]) -> Any:
    for pos, (kind, arg) in enumerate(steps):
        if current is None:
            return None

        if kind == _KEY:
            current = current.get(arg) if isinstance(current, dict) else None
        elif kind == _INDEX:
            if isinstance(current, list) and 0 <= arg < len(current):
                current = current[arg]
            else:
                return None
        else:
            if not isinstance(current, list):
                return None
            rest = steps[pos + 1:]
            # Elements missing the projected property map to None so the
            # projection keeps the source list length.
            return [_walk(item, rest) for item in current]

    return current
