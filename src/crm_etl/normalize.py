"""Normalization functions for CRM import reconciliation.

All functions accept raw cell values as they arrive from parsed exports or
from the store (str, int, float, Decimal, date, datetime or None).
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

_ISO_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ][0-9:.]+(?:Z|[+-]\d{2}(?::?\d{2})?)?)?$")
_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: is_blank
# ---------------------------------------------------------------------------

def is_blank(value: Any) -> bool:
    """True for None, empty strings and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


# ---------------------------------------------------------------------------
# Rule 4: canonical_key  (identifier matching)
# ---------------------------------------------------------------------------

def canonical_key(value: Any) -> str | None:
    """Return the string form used to match identifiers, or None if blank.

    Integral numbers are rendered without a fractional part so that a jobsite
    id parsed as ``9906807`` (int) or ``9906807.0`` (float from a workbook)
    matches the ``"9906807"`` stored in a text column.
    """
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(int(value))
    return str(value).strip()


# ---------------------------------------------------------------------------
# Rule 5: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number from a string, returning None on failure.

    Accepts thousands separators and a leading currency sign, as exported
    price columns carry them ("$1,250.00").
    """
    v = trim(value)
    if v is None:
        return None
    v = v.replace(",", "").lstrip("$")
    if not _NUMERIC_RE.match(v):
        return None
    try:
        return Decimal(v)
    except InvalidOperation:
        return None


# ---------------------------------------------------------------------------
# Rule 6: to_day_string
# ---------------------------------------------------------------------------

def to_day_string(value: date | datetime | str | None) -> str | None:
    """Return the calendar day ('YYYY-MM-DD') of a date, datetime or ISO string.

    Aware datetimes are converted to UTC first. Strings that do not start
    with an ISO date return None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    v = trim(value)
    if v is None:
        return None
    m = _ISO_DATE_RE.match(v)
    if not m:
        return None
    if "T" in v or " " in v:
        parsed = parse_timestamp(v)
        if parsed is not None:
            return to_day_string(parsed)
    return m.group(1)


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive results are treated as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        ts = datetime(value.year, value.month, value.day)
    else:
        v = trim(value)
        if v is None:
            return None
        if v.endswith("Z"):
            v = v[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(v)
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Rule 7: normalize_for_compare / values_equal
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def normalize_for_compare(value: Any) -> str | Decimal | bool:
    """Normalize one business value for field-level comparison.

    - None / "" / whitespace → ""
    - numbers → Decimal
    - dates, datetimes and ISO date strings → 'YYYY-MM-DD'
    - other strings → trimmed, internal whitespace collapsed, case-folded
    """
    if is_blank(value):
        return ""
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return Decimal(str(value)).normalize()
    if isinstance(value, (date, datetime)):
        return to_day_string(value) or ""
    text = normalize_space(str(value)) or ""
    if _ISO_DATE_RE.match(text):
        day = to_day_string(text)
        if day is not None:
            return day
    return text.casefold()


def values_equal(left: Any, right: Any) -> bool:
    """True if two raw values are equal after normalization.

    A number is compared numerically against another number or a numeric
    string ("1250.00" == 1250); two strings are never coerced to numbers, so
    a postal code "02134" still differs from "2134".
    """
    if _is_number(left) and isinstance(right, str):
        num = parse_numeric(right)
        if num is not None:
            return Decimal(str(left)) == num
    if _is_number(right) and isinstance(left, str):
        num = parse_numeric(left)
        if num is not None:
            return Decimal(str(right)) == num
    return normalize_for_compare(left) == normalize_for_compare(right)


# ---------------------------------------------------------------------------
# Rule 8: same_stored_value  (write-path change detection)
# ---------------------------------------------------------------------------

def same_stored_value(candidate: Any, stored: Any) -> bool:
    """True if writing candidate over stored would not change the row.

    Stricter than values_equal: case and inner whitespace matter. Blanks
    equal None, numbers compare numerically, and an ISO string equals the
    date or timestamp the store returned for it.
    """
    if is_blank(candidate) and is_blank(stored):
        return True
    if is_blank(candidate) or is_blank(stored):
        return False
    if _is_number(candidate) or _is_number(stored):
        left = candidate if _is_number(candidate) else parse_numeric(str(candidate))
        right = stored if _is_number(stored) else parse_numeric(str(stored))
        if left is None or right is None:
            return False
        return Decimal(str(left)) == Decimal(str(right))
    if isinstance(stored, datetime) or isinstance(candidate, datetime):
        return parse_timestamp(candidate) == parse_timestamp(stored)
    if isinstance(stored, date) or isinstance(candidate, date):
        return to_day_string(candidate) == to_day_string(stored)
    if isinstance(candidate, str) and isinstance(stored, str):
        return candidate.strip() == stored.strip()
    return candidate == stored
