"""
Instrument classifier for broker symbol text.

Classification hierarchy (highest priority first):
1. Readable options   - "DIA 10OCT25 466 PUT", also without spaces
2. IBKR padded OCC    - "SEDG  250801P00025000"
3. Compact OCC        - "AAPL230120C00150000"
4. Futures            - "ESM4", "NQU24", "/ESM24"
5. Exchange futures   - "CME_MINI:MNQ1!" (continuous contract)
6. Stocks             - everything else

The multiplier only turns price x quantity into dollar notional. Contract
counts reported by the broker are never rescaled.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Optional

OPTION_MULTIPLIER = 100
DEFAULT_POINT_VALUE = 50.0


@dataclass(frozen=True)
class InstrumentInfo:
    """Economics of the instrument behind a symbol."""

    instrument_type: str = "stock"  # stock | option | future
    underlying: Optional[str] = None
    strike: Optional[float] = None
    expiry: Optional[date] = None
    option_type: Optional[str] = None  # call | put
    multiplier: float = 1.0
    contract_month: Optional[int] = None
    contract_year: Optional[int] = None
    exchange: Optional[str] = None

    @property
    def is_option(self) -> bool:
        return self.instrument_type == "option"

    @property
    def is_future(self) -> bool:
        return self.instrument_type == "future"

    @property
    def point_value(self) -> Optional[float]:
        return self.multiplier if self.is_future else None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.expiry is not None:
            data["expiry"] = self.expiry.isoformat()
        return data


STOCK = InstrumentInfo()

# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------

# Dollar value of one full point, keyed by futures root
FUTURES_POINT_VALUES: dict[str, float] = {
    # Equity index
    "ES": 50.0, "NQ": 20.0, "YM": 5.0, "RTY": 50.0,
    # Micros
    "MES": 5.0, "MNQ": 2.0, "MYM": 0.5, "M2K": 5.0,
    # Energy
    "CL": 1000.0, "NG": 10000.0, "QG": 2500.0,
    # Metals
    "GC": 100.0, "SI": 5000.0, "HG": 12500.0,
    # Treasuries
    "ZB": 1000.0, "ZN": 1000.0, "ZF": 1000.0, "ZT": 2000.0,
}

FUTURES_MONTH_CODES: dict[str, int] = {
    "F": 1, "G": 2, "H": 3, "J": 4, "K": 5, "M": 6,
    "N": 7, "Q": 8, "U": 9, "V": 10, "X": 11, "Z": 12,
}

_MONTH_ABBR: dict[str, int] = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}

# ---------------------------------------------------------------------------
# Pattern matchers (compiled once)
# ---------------------------------------------------------------------------

_READABLE_OPTION = re.compile(
    r"^([A-Z]+)\s*(\d{1,2})([A-Z]{3})(\d{2})\s*(\d+(?:\.\d+)?)\s*(PUT|CALL)$"
)
_IBKR_PADDED_OCC = re.compile(r"^([A-Z]+)\s+(\d{6})([CP])(\d{8})$")
_COMPACT_OCC = re.compile(r"^([A-Z]{1,6})(\d{6})([CP])(\d{8})$")
_FUTURES = re.compile(r"^/?([A-Z]{1,3})([FGHJKMNQUVXZ])(\d{1,2})$")
_EXCHANGE_FUTURES = re.compile(r"^([A-Z_]+):([A-Z0-9]+)!$")
_CONTINUOUS_ROOT = re.compile(r"^([A-Z0-9]*?[A-Z])(\d*)$")
_CUSIP = re.compile(r"^[0-9A-Z]{8}[0-9]$")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify(symbol: Optional[str]) -> InstrumentInfo:
    """
    Classify a symbol as stock, option or future.

    Args:
        symbol: Raw symbol text from the broker export

    Returns:
        InstrumentInfo with type, underlying and notional multiplier
    """
    if not symbol:
        return STOCK
    sym = re.sub(r"\s+", " ", symbol.strip().upper())

    # ----- 1. Readable options -----
    m = _READABLE_OPTION.match(sym)
    if m:
        underlying, day, month_abbr, year, strike, kind = m.groups()
        month = _MONTH_ABBR.get(month_abbr)
        if month is not None:
            expiry = _safe_date(2000 + int(year), month, int(day))
            return _option(underlying, float(strike), expiry, kind.lower())

    # ----- 2/3. OCC style codes -----
    m = _IBKR_PADDED_OCC.match(sym) or _COMPACT_OCC.match(sym)
    if m:
        underlying, yymmdd, kind, strike_digits = m.groups()
        expiry = _safe_date(
            2000 + int(yymmdd[:2]), int(yymmdd[2:4]), int(yymmdd[4:6])
        )
        return _option(
            underlying,
            int(strike_digits) / 1000,
            expiry,
            "call" if kind == "C" else "put",
        )

    # ----- 4. Futures root + month + year -----
    m = _FUTURES.match(sym)
    if m:
        root, month_code, year_digits = m.groups()
        return InstrumentInfo(
            instrument_type="future",
            underlying=root,
            multiplier=futures_point_value(root),
            contract_month=FUTURES_MONTH_CODES[month_code],
            contract_year=futures_contract_year(year_digits),
        )

    # ----- 5. Exchange-prefixed continuous contract -----
    m = _EXCHANGE_FUTURES.match(sym)
    if m:
        exchange, contract = m.groups()
        root_match = _CONTINUOUS_ROOT.match(contract)
        root = root_match.group(1) if root_match else contract
        return InstrumentInfo(
            instrument_type="future",
            underlying=root,
            multiplier=futures_point_value(root),
            exchange=exchange,
        )

    return STOCK


def futures_point_value(root: str) -> float:
    """Dollar value per point for a futures root, 50 when unknown."""
    return FUTURES_POINT_VALUES.get(root.upper(), DEFAULT_POINT_VALUE)


def futures_contract_year(digits: str, today: Optional[date] = None) -> int:
    """Expand a one or two digit futures year.

    One digit means that year within the current decade; two digits use
    00-49 -> 2000s and 50-99 -> 1900s.
    """
    year = int(digits)
    if len(digits) == 1:
        today = today or date.today()
        return (today.year // 10) * 10 + year
    return year + (2000 if year < 50 else 1900)


def option_from_columns(
    underlying: str,
    strike: Any,
    expiry: Optional[date],
    put_call: str,
    multiplier: Any = None,
) -> InstrumentInfo:
    """Build option economics from dedicated columns instead of symbol text."""
    kind = (put_call or "").strip().upper()
    try:
        mult = float(multiplier) if multiplier not in (None, "") else OPTION_MULTIPLIER
    except (TypeError, ValueError):
        mult = OPTION_MULTIPLIER
    try:
        strike_value: Optional[float] = float(strike)
    except (TypeError, ValueError):
        strike_value = None
    return InstrumentInfo(
        instrument_type="option",
        underlying=underlying.strip().upper() or None,
        strike=strike_value,
        expiry=expiry,
        option_type="call" if kind.startswith("C") else "put",
        multiplier=mult or OPTION_MULTIPLIER,
    )


def looks_like_cusip(code: Optional[str]) -> bool:
    """Nine character CUSIP shape: eight alphanumerics and a check digit."""
    if not code:
        return False
    return bool(_CUSIP.match(code.strip().upper()))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _option(
    underlying: str, strike: float, expiry: Optional[date], option_type: str
) -> InstrumentInfo:
    return InstrumentInfo(
        instrument_type="option",
        underlying=underlying,
        strike=strike,
        expiry=expiry,
        option_type=option_type,
        multiplier=OPTION_MULTIPLIER,
    )


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None
