"""
Value coercion between JSON values and declared schema types.
"""

import math
import re
from datetime import date, datetime, time, timezone
from typing import Any, Optional, Union

from .models import PropertyType


class CoercionError(ValueError):
    """A value cannot be interpreted as the requested type."""


_INT_RE = re.compile(r"^[+-]?\d+$")
_LEGACY_DATE_FORMATS = ("%d-%b-%Y", "%d-%b-%Y %H:%M")

Temporal = Union[datetime, date, time]


def to_number(value: Any) -> Union[int, float]:
    """Coerce a JSON scalar to int/float; booleans are not numbers."""
    if isinstance(value, bool) or value is None:
        raise CoercionError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise CoercionError(f"not a finite number: {value!r}")
        return value
    if isinstance(value, str):
        text = value.strip()
        if _INT_RE.match(text):
            return int(text)
        try:
            number = float(text)
        except ValueError:
            raise CoercionError(f"not a number: {value!r}") from None
        if not math.isfinite(number):
            raise CoercionError(f"not a finite number: {value!r}")
        return number
    raise CoercionError(f"not a number: {value!r}")


def to_integer(value: Any) -> int:
    number = to_number(value)
    if isinstance(number, float):
        if not number.is_integer():
            raise CoercionError(f"not an integer: {value!r}")
        return int(number)
    return number


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text == "true":
            return True
        if text == "false":
            return False
    raise CoercionError(f"not a boolean: {value!r}")


def to_text(value: Any) -> str:
    """Render a scalar as the string it is compared as."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise CoercionError(f"not a string: {value!r}")


def parse_temporal(value: Any, fmt: Optional[str] = None) -> Temporal:
    """Parse an ISO date, date-time or time string according to a schema format."""
    if isinstance(value, datetime):
        return _as_utc(value) if fmt != "date" else value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise CoercionError(f"not a temporal value: {value!r}")

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    try:
        if fmt == "time":
            return time.fromisoformat(text)
        if fmt == "date":
            if "T" in text or " " in text:
                return datetime.fromisoformat(text).date()
            return date.fromisoformat(text)
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        pass

    for legacy in _LEGACY_DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, legacy)
        except ValueError:
            continue
        return parsed.date() if fmt == "date" else _as_utc(parsed)

    raise CoercionError(f"not a {fmt or 'date-time'} value: {value!r}")


def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps are taken as UTC so they compare with offset-aware ones
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def format_temporal(value: Temporal) -> str:
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    return value.isoformat()


def coerce(value: Any, property_type: PropertyType, fmt: Optional[str] = None,
           item_type: Optional[PropertyType] = None) -> Any:
    """Coerce a literal to a declared property type."""
    if value is None:
        return None
    if property_type == PropertyType.INTEGER:
        return to_integer(value)
    if property_type == PropertyType.NUMBER:
        return to_number(value)
    if property_type == PropertyType.BOOLEAN:
        return to_bool(value)
    if property_type == PropertyType.STRING:
        text = to_text(value)
        if fmt in ("date", "date-time", "time"):
            parse_temporal(text, fmt)
        return text
    if property_type == PropertyType.ARRAY:
        if not isinstance(value, list):
            raise CoercionError(f"not an array: {value!r}")
        if item_type is None or item_type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return list(value)
        return [coerce(item, item_type) for item in value]
    if property_type == PropertyType.OBJECT:
        if not isinstance(value, dict):
            raise CoercionError(f"not an object: {value!r}")
        return value
    return value


def infer_type(value: Any) -> Optional[PropertyType]:
    """Property type of a runtime JSON value."""
    if isinstance(value, bool):
        return PropertyType.BOOLEAN
    if isinstance(value, int):
        return PropertyType.INTEGER
    if isinstance(value, float):
        return PropertyType.NUMBER
    if isinstance(value, str):
        return PropertyType.STRING
    if isinstance(value, list):
        return PropertyType.ARRAY
    if isinstance(value, dict):
        return PropertyType.OBJECT
    return None
