# =============================================
# File: app/utils/numeric.py
# Purpose: JSON safety for result rows (big ints, Decimals, non-finite floats, binary)
# =============================================
from __future__ import annotations

import base64
import math
from decimal import Decimal
from typing import Any

# Largest integer a double (JS Number) round-trips exactly.
MAX_SAFE_INTEGER = 2 ** 53 - 1


def is_unsafe_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return abs(value) > MAX_SAFE_INTEGER
    if isinstance(value, float):
        return not math.isfinite(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return True
        return value == value.to_integral_value() and abs(value) > MAX_SAFE_INTEGER
    return False


def make_json_safe(data: Any) -> Any:
    """Recursively stringify values that would lose precision in a JSON client."""
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray, memoryview)):
        # raw bytes are not valid JSON text; clients get base64
        return base64.b64encode(bytes(data)).decode("ascii")
    if is_unsafe_number(data):
        return str(data)
    if isinstance(data, dict):
        return {k: make_json_safe(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [make_json_safe(v) for v in data]
    return data
