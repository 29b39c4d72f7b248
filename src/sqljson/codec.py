"""JSON encode/decode for stored payloads.

Payloads are written as tab-indented JSON with sorted object keys, so the
same value always yields the same bytes and therefore the same digest.
``pydantic_core.to_jsonable_python`` turns models, dataclasses, datetimes,
UUIDs, sets and the like into plain JSON values first; decoding into a
caller type goes through a cached ``pydantic.TypeAdapter``.
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from .errors import SerializationError


def encode(value: Any) -> bytes:
    """Serialize *value* to deterministic, tab-indented UTF-8 JSON."""
    try:
        plain = to_jsonable_python(value)
        text = json.dumps(plain, indent="\t", sort_keys=True, ensure_ascii=False, allow_nan=False)
    except (PydanticSerializationError, TypeError, ValueError) as e:
        raise SerializationError(
            f"Cannot serialize {type(value).__name__} to JSON: {e}",
            cause=e,
        ) from e
    return text.encode("utf-8")


@lru_cache(maxsize=256)
def _adapter(target: Any) -> TypeAdapter:
    return TypeAdapter(target)


def _type_adapter(target: Any) -> TypeAdapter:
    try:
        hash(target)
    except TypeError:
        # Unhashable targets (e.g. Annotated with dict metadata) skip the cache
        return TypeAdapter(target)
    return _adapter(target)


def decode(raw: bytes | str, target: Any = None) -> Any:
    """Decode stored JSON.

    With ``target=None`` the plain JSON value is returned (dicts, lists,
    strings, numbers, booleans, None).  Otherwise the JSON is validated into
    *target* by pydantic (a model class, dataclass, ``dict[str, int]``, ...).

    A *target* pydantic cannot build a schema for is a caller error and
    raises pydantic's own exception, not ``SerializationError``.

    Raises:
        SerializationError: invalid JSON or a shape that does not fit *target*
    """
    adapter = _type_adapter(target) if target is not None else None
    try:
        if adapter is None:
            return json.loads(raw)
        return adapter.validate_json(raw)
    except (PydanticValidationError, ValueError, TypeError) as e:
        raise SerializationError(
            f"Cannot decode document into {getattr(target, '__name__', target) or 'JSON'}: {e}",
            cause=e,
        ) from e
