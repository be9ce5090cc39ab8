"""
Rendering -- Convert statement documents into JSON-ready primitives.

The presentation layer consumes camelCase keys (``currentPeriodValue``,
``isValid``).  Decimals are rendered as strings to preserve precision.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from enum import Enum


def camel_case(name: str) -> str:
    """``current_period_value`` -> ``currentPeriodValue``."""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def render_to_dict(
    obj: object, camel: bool = True
) -> dict | list | str | int | float | bool | None:
    """
    Convert any statement dataclass to plain JSON-serializable data.

    Handles:
    - Decimal -> str (preserving precision)
    - date / datetime -> ISO format string
    - Enum -> .value
    - Nested frozen dataclasses -> nested dicts (camelCase keys when ``camel``)
    - Tuples -> lists
    - Mapping keys -> str
    - None preserved
    """
    if obj is None:
        return None
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [render_to_dict(item, camel) for item in obj]
    if isinstance(obj, Mapping):
        return {str(k): render_to_dict(v, camel) for k, v in obj.items()}
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            (camel_case(f.name) if camel else f.name): render_to_dict(
                getattr(obj, f.name), camel
            )
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, (str, int, float, bool)):
        return obj
    return str(obj)
