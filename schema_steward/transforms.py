"""Value transforms applied while consolidating legacy columns.

Every transform is pure and total: it takes any legacy value and returns a
normalized value or ``None``. None of them raise. The consolidator treats a
``None`` for a populated input as "unparsed" and keeps the raw value.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

Transform = Callable[[Any], Any]

_NON_DIGITS = re.compile(r"[^0-9]")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Day-first formats seen in the payroll exports, tried after ISO parsing
_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y%m%d", "%Y/%m/%d")


def is_populated(value: Any) -> bool:
    """A value counts as legacy data when non-null and, for strings, non-blank."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, dict | list | tuple | set):
        return len(value) > 0
    return True


def strip_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool | dict | list):
        return None
    return str(value).strip() or None


def to_string(value: Any) -> str | None:
    """Scalars to their trimmed string form. Integral floats lose the ``.0``."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return strip_text(value)


def to_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = strip_text(value)
    if text is None:
        return None
    try:
        return int(text.replace(",", ""))
    except ValueError:
        return None


def to_decimal_string(value: Any) -> str | None:
    """Numeric values as a plain decimal string (``"1,200.50"`` -> ``"1200.50"``)."""
    if isinstance(value, bool) or value is None:
        return None
    text = strip_text(value)
    if text is None:
        return None
    try:
        number = Decimal(text.replace(",", ""))
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return format(number, "f")


def normalize_phone(value: Any) -> str | None:
    """Normalize a Malaysian phone number to international digits.

    ``"012-3456789"`` -> ``"60123456789"``. Any number not already starting
    with ``6`` gets a ``6`` prefix, so a local ``0`` prefix is kept after the
    country code. Results outside 10–13 digits are rejected.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    digits = _NON_DIGITS.sub("", value)
    if not digits:
        return None
    if not digits.startswith("6"):
        digits = "6" + digits
    if len(digits) < 10 or len(digits) > 13:
        return None
    return digits


def normalize_email(value: Any) -> str | None:
    text = strip_text(value)
    if text is None:
        return None
    text = text.lower()
    return text if _EMAIL.match(text) else None


def parse_date(value: Any) -> str | None:
    """Parse a legacy date into ``YYYY-MM-DD``."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = strip_text(value)
    if text is None or isinstance(value, int | float):
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    # ISO date prefix followed by junk, e.g. "2021-03-04 00:00:00.000 +0800"
    if len(text) >= 10:
        try:
            return date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


TRANSFORMS: dict[str, Transform] = {
    "strip_text": strip_text,
    "to_string": to_string,
    "to_int": to_int,
    "to_decimal_string": to_decimal_string,
    "normalize_phone": normalize_phone,
    "normalize_email": normalize_email,
    "parse_date": parse_date,
}


def get_transform(name: str | None) -> Transform:
    """Look up a transform by name. ``None`` means plain trimming.

    Raises KeyError for unknown names so bad group definitions fail when the
    group is loaded, not halfway through a sweep.
    """
    if name is None:
        return _identity
    if name not in TRANSFORMS:
        raise KeyError(f"Unknown transform: {name}")
    return TRANSFORMS[name]


def _identity(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    return value
