"""
JSON Serialization Utilities
Converts Decimal, datetime and Enum values so they can be stored in JSON columns and returned by the API
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


def ensure_json_safe(data: Any) -> Any:
    """
    Recursively convert values to JSON-safe equivalents.

    Decimal becomes a string so no precision is lost, datetimes become ISO
    strings and Enum members become their value.
    """
    if data is None or isinstance(data, (bool, int, str)):
        return data

    if isinstance(data, Decimal):
        return str(data)

    if isinstance(data, Enum):
        return data.value

    if isinstance(data, (datetime, date)):
        return data.isoformat()

    if isinstance(data, dict):
        return {str(key): ensure_json_safe(value) for key, value in data.items()}

    if isinstance(data, (list, tuple, set, frozenset)):
        return [ensure_json_safe(item) for item in data]

    if isinstance(data, float):
        return data

    return str(data)


def sanitize_for_json_column(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Sanitize a dictionary for storage in a JSON column"""
    if not data:
        return {}
    return ensure_json_safe(data)


def money_str(amount: Optional[Decimal]) -> Optional[str]:
    """Cent-precision string for API payloads, ``None`` passes through"""
    if amount is None:
        return None
    return f"{Decimal(amount):.2f}"
