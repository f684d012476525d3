"""Shared value parsing utilities for statement decoding.

Centralises the permissive number parsing and the date grammars used by
the activity statement: option expiries (``09JAN26``) and trade
timestamps (``2026-02-02, 09:47:04``).
"""

import html
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

# English month abbreviations used in option codes (e.g. 03FEB26)
EN_MONTH_ABBREVIATIONS = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4,
    "MAY": 5, "JUN": 6, "JUL": 7, "AUG": 8,
    "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}

_EXPIRY_RE = re.compile(r"^(\d{2})([A-Z]{3})(\d{2})$")
_TIMESTAMP_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})(?:,\s*(\d{2}):(\d{2}):(\d{2}))?"
)
_TAG_RE = re.compile(r"<[^>]+>")


def clean_cell(value: str) -> str:
    """Strip markup, entities and surrounding whitespace from a table cell."""
    text = _TAG_RE.sub("", value)
    text = html.unescape(text).replace("\xa0", " ")
    return text.strip()


def parse_number(value) -> Decimal:
    """Parse a statement number, returning ``Decimal("0")`` on garbage.

    Thousands separators, ``&nbsp;`` and surrounding whitespace are
    stripped, so ``"-70,031.84"`` becomes ``Decimal("-70031.84")``.
    Unparseable text is never an error.
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    cleaned = clean_cell(str(value)).replace(",", "").replace(" ", "")
    if not cleaned:
        return Decimal("0")
    try:
        result = Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")
    if not result.is_finite():
        return Decimal("0")
    return result


def parse_expiry(value: str) -> date | None:
    """Parse an option expiry token such as ``09JAN26``.

    Returns:
        The expiry date, or None if the token doesn't follow the
        ``DD`` + month abbreviation + ``YY`` grammar.
    """
    match = _EXPIRY_RE.match(value.strip().upper())
    if not match:
        return None
    month = EN_MONTH_ABBREVIATIONS.get(match.group(2))
    if month is None:
        return None
    try:
        return date(2000 + int(match.group(3)), month, int(match.group(1)))
    except ValueError:
        return None


def parse_trade_timestamp(value: str) -> datetime | None:
    """Parse a trade timestamp with an optional time-of-day component.

    ``"2026-02-02, 09:47:04"`` and ``"2026-02-02"`` are both accepted; a
    missing time means midnight. Returns a naive datetime, or None.
    """
    match = _TIMESTAMP_RE.search(value)
    if not match:
        return None
    parts = [int(p) if p is not None else 0 for p in match.groups()]
    try:
        return datetime(*parts)
    except ValueError:
        return None
