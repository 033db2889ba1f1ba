"""Coerce payloads into wire-safe JSON values."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

# Largest integer a JSON consumer using IEEE doubles can represent exactly.
MAX_SAFE_INTEGER = 2**53 - 1


def json_safe(value: Any) -> Any:
    """Return ``value`` with every nested item converted to a JSON-safe form.

    Integers outside the double-precision safe range become strings, as do
    decimals, UUIDs and enums; datetimes become ISO-8601 strings.
    """
    if isinstance(value, BaseModel):
        return json_safe(value.model_dump())
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return value if abs(value) <= MAX_SAFE_INTEGER else str(value)
    if isinstance(value, (float, str)):
        return value
    if isinstance(value, enum.Enum):
        return json_safe(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return str(value)
