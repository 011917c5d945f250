"""Value helpers shared by the comparators.

SAP OData v2 payloads carry numbers as strings ("18.00") and fields may be
absent altogether. These helpers keep absence distinct from ``None`` and give
numbers the same textual form the reports have always shown.
"""

import json
import math
import re
from typing import Any, Mapping, Optional


class _Missing:
    """Sentinel for a key absent from a payload."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

_FLOAT_PREFIX = re.compile(
    r"^[+-]?(?:Infinity|\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)"
)


def lookup(record: Optional[Mapping[str, Any]], key: str) -> Any:
    """Get ``record[key]`` or ``MISSING``."""
    if not isinstance(record, Mapping):
        return MISSING
    return record.get(key, MISSING)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(a: Any, b: Any) -> bool:
    """Equality without coercion: ``"100.00" != "100"``, ``1 != "1"``, ``True != 1``.

    Absent equals absent only; absent never equals a present value, ``None``
    included.
    """
    if a is MISSING or b is MISSING:
        return a is b
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b):
        return False
    return a == b


def parse_number(value: Any) -> Optional[float]:
    """Parse the leading numeric prefix of ``value``; ``None`` when there is none."""
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if _is_number(value):
        number = float(value)
        return None if math.isnan(number) else number
    match = _FLOAT_PREFIX.match(str(value).strip())
    if not match:
        return None
    return float(match.group(0).replace("Infinity", "inf"))


def format_number(value: Optional[float]) -> str:
    """Render a number the way the audit strings show it (18.0 -> "18")."""
    if value is None:
        return "0"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def stringify(value: Any) -> str:
    """Text form of a compared value for flattened storage rows."""
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return format_number(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def public_value(value: Any) -> Any:
    """Value as exposed in results: absent becomes ``None``."""
    return None if value is MISSING else value
