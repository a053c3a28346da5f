"""
Field-level helpers for reading loosely-typed spreadsheet records.

Settlement exports change header casing and separators between versions, and
cells arrive as strings, floats, NaN, or None depending on the reader. Every
monetary and quantity value is read through ``safe_number`` so a single bad
cell never turns a sum into NaN.
"""

import math
import re
from typing import Any, Iterable, Mapping, Optional

import pandas as pd

from settlement_config import UNKNOWN_MONTH


class _Missing:
    """Sentinel for 'no matching column', distinct from falsy cell values."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()

SKU_TOKEN_RE = re.compile(r"[A-Z0-9_\-]{3,}")


def is_blank(value: Any) -> bool:
    """True for None, NaN, and empty/whitespace-only strings."""
    if value is None or value is MISSING:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def safe_number(value: Any) -> float:
    """Parse a number; anything unparsable or non-finite becomes 0.0."""
    if is_blank(value):
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, str) and "_" in value:
        # "1_000" is a Python literal, not a spreadsheet number
        return 0.0
    try:
        number = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def clean_text(value: Any) -> str:
    """Trimmed string form of an identifier cell (SKU, order id).

    Readers turn numeric ids like ``1234`` into ``1234.0``; integral floats are
    written back without the fraction so both sides of a lookup agree.
    """
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def resolve_field(
    record: Mapping[str, Any],
    candidates: Iterable[str],
    default: Any = MISSING,
    skip_blank: bool = False,
) -> Any:
    """Find a value by candidate column names, case-insensitive and trimmed.

    Candidates are tried in the caller's priority order and the first one that
    matches a key wins. With ``skip_blank`` a matched but blank cell does not
    count and the next candidate is tried. Returns ``default`` when nothing
    matches.
    """
    if not isinstance(record, Mapping):
        return default
    keys = {}
    for key in record:
        keys.setdefault(str(key).lower().strip(), key)
    for candidate in candidates:
        key = keys.get(str(candidate).lower().strip())
        if key is None:
            continue
        value = record[key]
        if skip_blank and is_blank(value):
            continue
        return value
    return default


def extract_sku_from_text(text: Any) -> str:
    """First SKU-shaped token (3+ of A-Z, 0-9, '-', '_') in a free-text cell."""
    if is_blank(text):
        return ""
    match = SKU_TOKEN_RE.search(str(text))
    return match.group(0) if match else ""


def parse_timestamp(value: Any) -> Optional[pd.Timestamp]:
    """Parse a date cell into a UTC timestamp, or None."""
    if is_blank(value) or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            ts = pd.to_datetime(value, unit="ms", utc=True, errors="coerce")
        else:
            ts = pd.to_datetime(value, utc=True, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    if ts is None or pd.isna(ts):
        return None
    return ts


def format_timestamp(ts: pd.Timestamp) -> str:
    """ISO-8601 instant with millisecond precision, e.g. 2024-01-05T00:00:00.000Z."""
    return ts.strftime("%Y-%m-%dT%H:%M:%S") + f".{ts.microsecond // 1000:03d}Z"


def month_key(value: Any) -> str:
    """Calendar month ``YYYY-MM`` of a date cell, or ``Unknown``."""
    ts = parse_timestamp(value)
    if ts is None:
        return UNKNOWN_MONTH
    return ts.strftime("%Y-%m")
