"""
Helpers for provider payloads where any scalar may arrive either bare or
wrapped as {"value": x, "source": "..."}.
"""

import math
import re
from collections.abc import Mapping

# Leading float, the way a lenient numeric parser reads "83.9 mpg"
_LEADING_FLOAT = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def unwrap(value):
    """Return value["value"] for an envelope, the value itself otherwise."""
    if value is None:
        return None
    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


def extract_number(value) -> float | int | None:
    value = unwrap(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value
    if isinstance(value, str):
        match = _LEADING_FLOAT.match(value)
        if not match:
            return None
        number = float(match.group(1))
        return number if math.isfinite(number) else None
    return None


def extract_string(value) -> str | None:
    value = unwrap(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    return None


def best_of(*candidates):
    """First candidate whose unwrapped value is not None."""
    for candidate in candidates:
        value = unwrap(candidate)
        if value is not None:
            return value
    return None


def deep_unwrap(data):
    """Unwrap envelopes throughout nested mappings. Lists are returned as-is."""
    if not isinstance(data, Mapping):
        return data
    if "value" in data:
        return deep_unwrap(data["value"])
    return {key: deep_unwrap(item) for key, item in data.items()}


def get_path(data, path: str, default=None):
    """Safe dotted lookup: get_path(payload, "VehicleRegistration.Make")."""
    current = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return default if current is None else current
