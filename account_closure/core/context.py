"""Path lookup and copy helpers for the execution context.

The context is a JSON-like tree of dicts, lists, and scalars.  Nodes
address into it with a small JSONPath subset:

- ``$``               — the whole context
- ``$.Payload.a.b``   — dotted key lookup
- ``$.items[0].name`` — list indexing

Lookups never raise for absent data; they return the ``MISSING``
sentinel so Choice predicates can treat an absent field as "not equal".
"""

from __future__ import annotations

import copy
import re
from typing import Any

from account_closure.core.exceptions import ContractError

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def parse_path(path: str) -> tuple[str | int, ...]:
    """Split a ``$``-rooted path into key and index segments.

    Raises:
        ContractError: If *path* does not start with ``$`` or contains
            an unparseable segment.
    """
    if not path.startswith("$"):
        msg = f"Context path must start with '$': {path!r}"
        raise ContractError(msg, stage="context", code="INVALID_PATH")

    rest = path[1:]
    segments: list[str | int] = []
    pos = 0
    while pos < len(rest):
        if rest[pos] == ".":
            pos += 1
        match = _SEGMENT_RE.match(rest, pos)
        if match is None:
            msg = f"Invalid context path segment at {pos + 1} in {path!r}"
            raise ContractError(msg, stage="context", code="INVALID_PATH")
        key, index = match.groups()
        segments.append(int(index) if index is not None else key)
        pos = match.end()
    return tuple(segments)


def read_path(context: Any, path: str) -> Any:
    """Return the value at *path*, or ``MISSING`` if any segment is absent."""
    current = context
    for segment in parse_path(path):
        if isinstance(segment, int):
            if not isinstance(current, list) or segment >= len(current):
                return MISSING
            current = current[segment]
        else:
            if not isinstance(current, dict) or segment not in current:
                return MISSING
            current = current[segment]
    return current


def write_path(context: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    """Return a deep copy of *context* with *value* stored at *path*.

    Intermediate dicts are created as needed.  List indices are not
    supported for writes.

    Raises:
        ContractError: If the path is the root, uses an index, or
            traverses a non-dict value.
    """
    segments = parse_path(path)
    if not segments:
        msg = "Cannot write to the context root"
        raise ContractError(msg, stage="context", code="INVALID_PATH")

    updated = snapshot(context)
    current: Any = updated
    for segment in segments[:-1]:
        if isinstance(segment, int):
            msg = f"List indices are not writable: {path!r}"
            raise ContractError(msg, stage="context", code="INVALID_PATH")
        nxt = current.get(segment)
        if nxt is None:
            nxt = {}
            current[segment] = nxt
        elif not isinstance(nxt, dict):
            msg = f"Cannot write through non-object at {segment!r} in {path!r}"
            raise ContractError(msg, stage="context", code="INVALID_PATH")
        current = nxt

    last = segments[-1]
    if isinstance(last, int):
        msg = f"List indices are not writable: {path!r}"
        raise ContractError(msg, stage="context", code="INVALID_PATH")
    current[last] = value
    return updated


def select_input(context: dict[str, Any], path: str) -> Any:
    """Return an independent copy of the sub-view at *path*.

    Unlike ``read_path`` a missing input path is a contract violation:
    a task cannot run without the data it declares.

    Raises:
        ContractError: If the path does not resolve.
    """
    value = read_path(context, path)
    if value is MISSING:
        msg = f"Input path {path!r} not found in context"
        raise ContractError(msg, code="INPUT_PATH_MISSING")
    return snapshot(value)


def snapshot(value: Any) -> Any:
    """Return a deep copy so no two nodes share mutable structure."""
    return copy.deepcopy(value)
