"""
Dotted-path access into records.

A record is a nested tree of dicts, lists and scalars. Every stage and rule
addresses fields through these helpers, so ``"customer.address.city"`` and
``"items.0.sku"`` resolve the same way everywhere.

Path rules:
    - Segments are separated by ``.``.
    - A segment is first looked up as a mapping key.
    - On a list, a segment that parses as an integer is an index
      (negative indexes allowed).
    - A path of ``""`` addresses the record itself.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, MutableMapping
from typing import Any

from mapspine.core.errors import StageError

Record = Any


class _Missing:
    """Sentinel for an absent field (distinct from an explicit ``None``)."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def split_path(path: str) -> list[str]:
    return [segment for segment in path.split(".") if segment != ""] if path else []


def _step(node: Any, segment: str) -> Any:
    if isinstance(node, Mapping):
        return node.get(segment, MISSING)
    if isinstance(node, list | tuple):
        try:
            return node[int(segment)]
        except (ValueError, IndexError):
            return MISSING
    return MISSING


def get_path(record: Record, path: str, default: Any = MISSING) -> Any:
    """Return the value at ``path`` or ``default`` when any segment is absent."""
    node = record
    for segment in split_path(path):
        node = _step(node, segment)
        if node is MISSING:
            return default
    return node


def has_path(record: Record, path: str) -> bool:
    return get_path(record, path) is not MISSING


def set_path(record: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate dicts as needed."""
    segments = split_path(path)
    if not segments:
        raise ValueError("Cannot set an empty path")

    node: Any = record
    for segment in segments[:-1]:
        child = _step(node, segment)
        if child is MISSING or not isinstance(child, MutableMapping | list):
            if not isinstance(node, MutableMapping):
                raise StageError(
                    f"Cannot set {path}: cannot descend into {type(node).__name__} at {segment!r}",
                    details={"path": path},
                )
            child = {}
            node[segment] = child
        node = child

    last = segments[-1]
    if isinstance(node, list):
        try:
            node[int(last)] = value
        except (ValueError, IndexError) as e:
            raise StageError(
                f"Cannot set {path}: {last!r} is not a valid index for a list of {len(node)}",
                details={"path": path},
                cause=e,
            ) from e
    else:
        node[last] = value


def delete_path(record: MutableMapping[str, Any], path: str) -> bool:
    """Remove the field at ``path``. Returns False if it was absent."""
    segments = split_path(path)
    if not segments:
        return False
    parent = get_path(record, ".".join(segments[:-1])) if len(segments) > 1 else record
    if isinstance(parent, MutableMapping) and segments[-1] in parent:
        del parent[segments[-1]]
        return True
    return False


def copy_record(record: Record) -> Record:
    """Deep copy so stages never mutate their caller's input."""
    return copy.deepcopy(record)
