"""
Cell value parsing shared by every broker grammar.

Broker exports disagree on almost everything:
- Amounts use "$" prefixes, thousands separators and parentheses for negatives
- Quantities may be signed, fractional or padded with quotes
- Dates come as MM/DD/YYYY, M/D/YY, YYYY-MM-DD, YYYYMMDD;HHMMSS and more
- Some rows carry UTC offsets, most are broker-local wall clock

Unparseable values never raise; they come back as a default or None.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional

import pandas as pd

MIN_YEAR = 1900
MAX_YEAR = 2100
MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)

# Values past this are corrupt cells, not amounts
_MAX_ABS_NUMBER = 1e15

_QUOTE_CHARS = "\"'“”‘’"

# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(
    r"^\s*"
    r"(?P<neg>\(?)?\s*"              # optional opening paren for negative
    r"(?P<sign>[+-])?\s*"
    r"\$?\s*"                         # optional dollar sign
    r"(?P<num>\d[\d,]*\.?\d*|\.\d+)"  # digits with commas and optional decimal
    r"\s*(?P<neg2>\)?)?"
    r"\s*$"
)
_CURRENCY_PREFIX = re.compile(r"^[A-Z]{3}\s+")


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return not str(value).strip()


def clean_text(value: Any) -> str:
    """Stringify a cell and strip whitespace plus straight or curly quotes."""
    if is_blank(value):
        return ""
    return str(value).strip().strip(_QUOTE_CHARS).strip()


def parse_number(value: Any, default: float = 0.0) -> float:
    """Parse '$1,234.56', '(12.50)', '-3', 'USD 4.00' into a float."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        if math.isnan(number) or abs(number) > _MAX_ABS_NUMBER:
            return default
        return number

    text = clean_text(value)
    if not text:
        return default
    text = _CURRENCY_PREFIX.sub("", text.upper())

    m = _NUMBER_RE.match(text)
    if not m:
        return default
    try:
        number = float(m.group("num").replace(",", ""))
    except ValueError:
        return default

    if m.group("sign") == "-":
        number = -number
    if m.group("neg") == "(" or m.group("neg2") == ")":
        number = -abs(number)
    if abs(number) > _MAX_ABS_NUMBER:
        return default
    return number


def parse_quantity(value: Any) -> int:
    """Absolute whole-unit quantity; fractional fills round to the nearest unit."""
    return int(round(abs(parse_number(value))))


# ---------------------------------------------------------------------------
# Dates and times
# ---------------------------------------------------------------------------

_US_DATE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})$")
_ISO_DATE = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")
_TIME = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?(?:\.(\d{1,6}))?\s*([AaPp][Mm])?$")
_OFFSET = re.compile(r"^(Z|[+-]\d{2}:?\d{2})$")

# Split a date-time string into date, time and zone chunks
_DATETIME_SPLIT = re.compile(
    r"^(?P<date>\d{1,4}[/-]\d{1,2}[/-]\d{2,4}|\d{8})"
    r"(?:[\sT,;]+(?P<time>\d{1,2}:?\d{2}(?::?\d{2})?(?:\.\d{1,6})?(?:\s*[AaPp][Mm])?))?"
    r"\s*(?P<zone>Z|[+-]\d{2}:?\d{2}|[A-Z]{2,4})?$"
)


def expand_two_digit_year(year: int) -> int:
    """00-49 -> 2000s, 50-99 -> 1900s."""
    if year >= 100:
        return year
    return year + (2000 if year < 50 else 1900)


def _bounded_date(year: int, month: int, day: int) -> Optional[date]:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date; None when unparseable or outside 1900-2100."""
    text = clean_text(value)
    if not text:
        return None
    # "10/21/2024 as of 10/18/2024" -> first date wins
    text = text.split(" as of ")[0].strip()
    token = text.split()[0] if " " in text else text

    m = _US_DATE.match(token)
    if m:
        month, day, year = (int(g) for g in m.groups())
        return _bounded_date(expand_two_digit_year(year), month, day)

    m = _ISO_DATE.match(token)
    if m:
        year, month, day = (int(g) for g in m.groups())
        return _bounded_date(year, month, day)

    return _pandas_fallback_date(text)


def _pandas_fallback_date(text: str) -> Optional[date]:
    parsed = pd.to_datetime(text, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return None
    if not MIN_YEAR <= parsed.year <= MAX_YEAR:
        return None
    return parsed.date()


def parse_time(value: Any) -> Optional[time]:
    """Parse 'HH:MM', 'HH:MM:SS', 'HHMMSS' and 12-hour variants."""
    text = clean_text(value)
    if not text:
        return None
    if text.isdigit() and len(text) in (4, 6):
        text = ":".join(text[i:i + 2] for i in range(0, len(text), 2))
    m = _TIME.match(text)
    if not m:
        return None
    hour, minute = int(m.group(1)), int(m.group(2))
    second = int(m.group(3) or 0)
    micro = int((m.group(4) or "0").ljust(6, "0"))
    meridian = (m.group(5) or "").upper()
    if meridian == "PM" and hour < 12:
        hour += 12
    elif meridian == "AM" and hour == 12:
        hour = 0
    try:
        return time(hour, minute, second, micro)
    except ValueError:
        return None


def _parse_offset(zone: str) -> Optional[tzinfo]:
    if zone == "Z":
        return timezone.utc
    if not _OFFSET.match(zone):
        # Named zones (EST, ET, CT) are treated as broker-local wall clock
        return None
    sign = -1 if zone[0] == "-" else 1
    digits = zone[1:].replace(":", "")
    delta = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
    return timezone(sign * delta)


def parse_datetime(value: Any, default_time: time = MARKET_OPEN) -> Optional[datetime]:
    """Parse a date-time cell.

    Date-only values get ``default_time``. Offsets such as ``+02:00`` are
    kept on the result; everything else is returned naive (broker-local).
    """
    text = clean_text(value)
    if not text:
        return None
    text = re.sub(r"\s+", " ", text)

    m = _DATETIME_SPLIT.match(text)
    if m:
        day = parse_date(m.group("date"))
        if day is None:
            return None
        clock = parse_time(m.group("time")) if m.group("time") else default_time
        if clock is None:
            return None
        result = datetime.combine(day, clock)
        zone = m.group("zone")
        if zone:
            tz = _parse_offset(zone)
            if tz is not None:
                result = result.replace(tzinfo=tz)
        return result

    parsed = pd.to_datetime(text, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return None
    if not MIN_YEAR <= parsed.year <= MAX_YEAR:
        return None
    return parsed.to_pydatetime()


def combine_date_time(
    date_value: Any,
    time_value: Any = None,
    default_time: time = MARKET_OPEN,
) -> Optional[datetime]:
    """Join separate date and time columns into one datetime."""
    day = parse_date(date_value)
    if day is None:
        return None
    clock = parse_time(time_value) if not is_blank(time_value) else None
    return datetime.combine(day, clock or default_time)


def to_utc(value: Optional[datetime], local_tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Resolve a parsed datetime to a UTC instant.

    Naive values are interpreted in ``local_tz`` when given, otherwise their
    wall clock is taken as UTC so the same export always maps to the same
    instant.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=local_tz or timezone.utc)
    return value.astimezone(timezone.utc)


def as_instant(value: Any) -> Optional[datetime]:
    """Coerce a datetime, ISO string or epoch millis to a UTC instant (or None)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isnan(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = clean_text(value)
    if not text:
        return None
    try:
        return to_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return to_utc(parse_datetime(text))
