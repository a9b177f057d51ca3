"""Dotted-path traversal and value coercion over JSON document trees.

A document is a plain JSON value. Objects are the only containers a path can
descend through; arrays, scalars and null are leaves. Writing through a leaf
replaces it with an empty object.
"""
from __future__ import annotations

import json
import math
import re
from typing import Any, TypeAlias

from relay.errors import ValidationFailed

JsonValue: TypeAlias = "dict[str, JsonValue] | list[JsonValue] | str | int | float | bool | None"

# ASCII digits only; \d would also accept other scripts' digits.
_NUMBER_RE = re.compile(r"^[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+)([eE][+-]?[0-9]+)?$")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def split_path(path: str | None) -> list[str]:
    p = (path or "").strip()
    if not p:
        return []
    return p.split(".")


def get_path(tree: JsonValue, path: str | None) -> Any:
    """Value at `path`, the whole tree for an empty path, or MISSING."""

    node: Any = tree
    for key in split_path(path):
        if not isinstance(node, dict) or key not in node:
            return MISSING
        node = node[key]
    return node


def set_path(tree: dict[str, JsonValue], path: str | None, value: JsonValue) -> None:
    keys = split_path(path)
    if not keys:
        raise ValidationFailed("path-required")

    node = tree
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_finite_number(value: object) -> bool:
    # Python ints are exact at any size; only floats can be inf/nan.
    return is_number(value) and (isinstance(value, int) or math.isfinite(value))  # type: ignore[arg-type]


def coerce_scalar(raw: str) -> JsonValue:
    """Raw query text becomes an int or float when it looks like a finite number."""

    s = raw.strip()
    if not _NUMBER_RE.match(s):
        return raw
    if "." not in s and "e" not in s.lower():
        try:
            return int(s)
        except ValueError:
            # Past the interpreter's int-string digit limit.
            return raw
    f = float(s)
    if not math.isfinite(f):
        return raw
    return f


def parse_structured(raw: str) -> JsonValue:
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise ValidationFailed("invalid-value") from e
    _reject_non_finite(value)
    return value


def _reject_non_finite(value: Any) -> None:
    # json.loads accepts NaN/Infinity; they can't be written back out as JSON.
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationFailed("invalid-value")
    if isinstance(value, dict):
        for v in value.values():
            _reject_non_finite(v)
    elif isinstance(value, list):
        for v in value:
            _reject_non_finite(v)


def parse_delta(raw: object) -> int | float:
    if is_number(raw):
        delta = raw
    else:
        s = str(raw if raw is not None else "").strip()
        if not _NUMBER_RE.match(s):
            raise ValidationFailed("invalid-delta")
        delta = coerce_scalar(s)
    if not is_finite_number(delta):
        raise ValidationFailed("invalid-delta")
    return delta  # type: ignore[return-value]


def add_numbers(current: Any, delta: int | float) -> int | float:
    base = current if is_finite_number(current) else 0
    try:
        total = base + delta
    except OverflowError as e:
        raise ValidationFailed("invalid-delta") from e
    if not is_finite_number(total):
        raise ValidationFailed("invalid-delta")
    return total
