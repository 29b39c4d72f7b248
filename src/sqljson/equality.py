"""Structural comparison of two JSON documents.

``deep_equal`` answers "did the meaning of this document change", which is
different from comparing stored bytes: key order and whitespace do not
matter, numbers compare by value.
"""

from __future__ import annotations

import json
import math
from typing import Any


def deep_equal(a: bytes | str, b: bytes | str) -> bool:
    """Compare two JSON object documents at the decoded level.

    Returns False when either side is not valid JSON or does not decode to
    a JSON object.  ``NaN``/``Infinity`` tokens and numbers outside the
    double range count as invalid JSON.

    >>> deep_equal(b'{"x": 1, "y": 2}', b'{\\n\\t"y": 2,\\n\\t"x": 1\\n}')
    True
    >>> deep_equal(b'{"x": 1}', b'{"x": 2}')
    False
    """
    try:
        left = _loads(a)
        right = _loads(b)
    except (TypeError, ValueError):
        return False
    if not isinstance(left, dict) or not isinstance(right, dict):
        return False
    return _equal(left, right)


def _loads(raw: bytes | str) -> Any:
    return json.loads(
        raw,
        parse_int=_parse_int,
        parse_float=_parse_float,
        parse_constant=_reject_constant,
    )


def _parse_int(token: str) -> int:
    value = int(token)
    try:
        float(value)
    except OverflowError as e:
        raise ValueError(f"number out of range: {token[:32]}...") from e
    return value


def _parse_float(token: str) -> float:
    value = float(token)
    if math.isinf(value):
        raise ValueError(f"number out of range: {token[:32]}")
    return value


def _reject_constant(token: str) -> Any:
    raise ValueError(f"not a JSON value: {token}")


def _equal(left: Any, right: Any) -> bool:
    # bool is an int subclass; true must not equal 1
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return float(left) == float(right)
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(_equal(value, right[name]) for name, value in left.items())
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(_equal(x, y) for x, y in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right
