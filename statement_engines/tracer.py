"""
statement_engines.tracer -- ``STATEMENT_ENGINE_TRACE`` records for engine calls.

Each decorated engine call logs its name, version, duration and a
fingerprint of the chosen arguments.  Identical arguments always give the
same fingerprint, so two statement runs can be compared engine by engine.
Only ``time.monotonic`` is read; results and inputs pass through untouched.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import json
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from enum import Enum
from typing import Any

from statement_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value.normalize()) if value.is_finite() else str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def input_fingerprint(arguments: Mapping[str, Any], fields: tuple[str, ...]) -> str:
    """First 16 hex chars of the SHA-256 of the selected arguments; absent ones are null."""
    payload = json.dumps(
        {name: _canonical(arguments.get(name)) for name in fields}, sort_keys=True
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """
    Decorate a pure engine callable.

    ``fingerprint_fields`` names parameters of the callable, passed
    positionally or by keyword.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                arguments = signature.bind_partial(*args, **kwargs).arguments
                fingerprint = input_fingerprint(arguments, fingerprint_fields)

            started = time.monotonic()
            result = func(*args, **kwargs)
            logger.info(
                "STATEMENT_ENGINE_TRACE",
                extra={
                    "trace_type": "STATEMENT_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fingerprint,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
