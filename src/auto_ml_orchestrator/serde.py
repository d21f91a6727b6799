"""Dataclass <-> JSON-friendly dict conversion for persisted records.

Records are plain dataclasses; these helpers turn them into dicts that
``json.dumps`` accepts (enums by value, datetimes as ISO-8601 strings,
timedeltas as seconds) and rebuild them from such dicts using the
dataclass type hints.
"""

from __future__ import annotations

import dataclasses
import types
import typing
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")

_HINTS_CACHE: dict[type, dict[str, Any]] = {}


def to_jsonable(value: Any) -> Any:
    """Recursively convert *value* into JSON-serializable primitives."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    # numpy scalars expose .item()
    if hasattr(value, "item") and callable(value.item) and not isinstance(value, (str, bytes)):
        try:
            return value.item()
        except (TypeError, ValueError):
            pass
    return value


def from_jsonable(cls: type[T], data: Any) -> T:
    """Rebuild an instance of dataclass *cls* from :func:`to_jsonable` output.

    Unknown keys are ignored and missing keys fall back to field defaults,
    so older records load into newer dataclasses.
    """
    return _convert(cls, data)


def _type_hints(cls: type) -> dict[str, Any]:
    hints = _HINTS_CACHE.get(cls)
    if hints is None:
        hints = typing.get_type_hints(cls)
        _HINTS_CACHE[cls] = hints
    return hints


def _convert(tp: Any, data: Any) -> Any:
    if data is None:
        return None
    if tp is Any:
        return data

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin is typing.Union or origin is types.UnionType:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _convert(non_none[0], data)
        return data
    if origin in (list, tuple, set, frozenset):
        item_tp = args[0] if args else Any
        items = [_convert(item_tp, v) for v in data]
        return origin(items) if origin is not list else items
    if origin is dict:
        val_tp = args[1] if len(args) == 2 else Any
        return {k: _convert(val_tp, v) for k, v in data.items()}

    if isinstance(tp, type):
        if dataclasses.is_dataclass(tp):
            hints = _type_hints(tp)
            kwargs = {}
            for f in dataclasses.fields(tp):
                if not f.init or f.name not in data:
                    continue
                kwargs[f.name] = _convert(hints[f.name], data[f.name])
            return tp(**kwargs)
        if issubclass(tp, Enum):
            return tp(data)
        if tp is datetime:
            return datetime.fromisoformat(data)
        if tp is timedelta:
            return timedelta(seconds=float(data))
        if tp is float and isinstance(data, int):
            return float(data)
    return data
