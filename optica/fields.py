"""
Converters for incoming JSON attributes.

Each converter takes the raw value and returns the typed value, raising
ValueError with a short message when it cannot. Blank strings become None.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

TRUE_VALUES = {"1", "true", "t", "yes", "on"}
FALSE_VALUES = {"0", "false", "f", "no", "off"}


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_str(value) -> Optional[str]:
    if _blank(value):
        return None
    return str(value).strip()


def to_decimal(value) -> Optional[Decimal]:
    if _blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError("is not a number")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError("is not a number")
    # NaN and Infinity parse but cannot be compared or stored
    if not number.is_finite():
        raise ValueError("is not a number")
    return number


def to_int(value) -> Optional[int]:
    if _blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError("is not an integer")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError("is not an integer")
    if not number.is_finite() or number != number.to_integral_value():
        raise ValueError("is not an integer")
    return int(number)


def to_date(value) -> Optional[date]:
    if _blank(value):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValueError("is not a valid date (YYYY-MM-DD)")


def to_bool(value) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError("is not a boolean")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(EMAIL_RE.match(email))


def humanize(name: str) -> str:
    return name.replace("_", " ").capitalize()


def parse_attributes(
    attrs: Dict[str, Any],
    converters: Dict[str, Callable[[Any], Any]],
    errors: List[str],
    prefix: str = "",
) -> Dict[str, Any]:
    """Convert every key of *attrs* that has a converter.

    Unknown keys are ignored. Conversion failures are appended to *errors*
    as "<Field> <message>" and the key is left out of the result.
    """
    parsed = {}
    for key, converter in converters.items():
        if key not in attrs:
            continue
        try:
            parsed[key] = converter(attrs[key])
        except ValueError as e:
            errors.append(f"{prefix}{humanize(key)} {e}")
    return parsed
