"""Normalization functions for match-import payloads.

All text functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

_PLAY_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


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
# Rule 2: normalize_title  (for game / extension / player / location matching)
# ---------------------------------------------------------------------------

def normalize_title(value: str | None) -> str:
    """Lowercase and trim.  None and blank both become ''.

    Matching compares these keys with ==, so two titles that differ only in
    case or outer whitespace are the same entity.
    """
    if value is None:
        return ""
    return value.strip().lower()


# ---------------------------------------------------------------------------
# Rule 3: title_tokens
# ---------------------------------------------------------------------------

def title_tokens(value: str | None, min_length: int = 3) -> list[str]:
    """Split a normalized title on non-alphanumeric runs.

    Tokens shorter than min_length are dropped, so at the default of 3
    'of' is ignored but 'the' counts.  Order and duplicates are preserved.
    """
    norm = normalize_title(value)
    return [t for t in _TOKEN_SPLIT.split(norm) if len(t) >= min_length]


# ---------------------------------------------------------------------------
# Rule 4: parse_play_date
# ---------------------------------------------------------------------------

def parse_play_date(value: Any) -> date | None:
    """Parse a third-party play date ('2024-03-01 19:30:00', ISO, ...).

    Returns None when the value is absent or in no known format.
    """
    if not isinstance(value, str):
        return None
    v = trim(value)
    if v is None:
        return None
    for fmt in _PLAY_DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(v).date()
    except ValueError:
        return None


def format_play_date(value: Any, date_format: str = "%Y-%m-%d") -> str:
    """Return the formatted play date, the raw string if unparseable, or ''."""
    parsed = parse_play_date(value)
    if parsed is not None:
        return parsed.strftime(date_format)
    if value is None:
        return ""
    return str(value)


# ---------------------------------------------------------------------------
# Rule 5: format_duration
# ---------------------------------------------------------------------------

def format_duration(minutes: Any) -> str | None:
    """Minutes → 'H:MM:00'.  Falsy or non-numeric input → None."""
    if not minutes or isinstance(minutes, bool):
        return None
    try:
        total = int(minutes)
    except (TypeError, ValueError):
        return None
    if total <= 0:
        return None
    hours, mins = divmod(total, 60)
    return f"{hours}:{mins:02d}:00"


# ---------------------------------------------------------------------------
# Rule 6: parse_score
# ---------------------------------------------------------------------------

def parse_score(value: Any) -> int | float:
    """Coerce a foreign score to a number; anything unreadable becomes 0.

    Integral values come back as int so 42.0 and "42" both give 42.
    """
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        num = Decimal(str(value))
    else:
        v = trim(str(value))
        if v is None:
            return 0
        try:
            num = Decimal(v)
        except InvalidOperation:
            return 0
    if not num.is_finite():
        return 0
    if num == num.to_integral_value():
        return int(num)
    return float(num)


# ---------------------------------------------------------------------------
# Helper: foreign ids
# ---------------------------------------------------------------------------

def foreign_id(prefix: str, raw_id: Any) -> str:
    """Namespace a third-party id so it never collides with a native id."""
    return f"{prefix}{raw_id}"
