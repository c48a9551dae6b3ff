"""
Per-broker row grammars.

Every format tag maps to one function with the same contract:

    parse_<tag>_row(record, ctx) -> Transaction | Trade | None

Fill-level formats return a Transaction with a positive quantity and a
buy/sell action. Formats that only report finished round trips (Schwab
gain/loss, ProjectX) return an already-closed Trade that skips position
tracking. A row that cannot be used raises RowSkipped internally; the
dispatcher records the reason and moves on, so one bad row never aborts a
batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional, Union

from ..models import SkippedRow, Trade, Transaction
from ..schemas import CustomColumnMapping
from .instrument_classifier import (
    InstrumentInfo,
    classify,
    looks_like_cusip,
    option_from_columns,
)
from .loader import LoadedRecords, RawRecord
from .values import (
    MARKET_CLOSE,
    clean_text,
    combine_date_time,
    parse_date,
    parse_datetime,
    parse_number,
    parse_quantity,
    parse_time,
    to_utc,
)

logger = logging.getLogger(__name__)

RowOutcome = Union[Transaction, Trade]


class RowSkipped(Exception):
    """Raised inside a row grammar when the row cannot become a trade."""


@dataclass
class RowContext:
    """Per-import settings the row grammars need."""

    broker: str = "generic"
    row_number: int = 0
    custom_mapping: Optional[CustomColumnMapping] = None
    lightspeed_tz: Optional[tzinfo] = None
    currency_column: Optional[str] = None
    imported_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _field(record: RawRecord, *names: str) -> str:
    """First non-empty value among ``names`` (exact, then case-insensitive)."""
    if not isinstance(record, dict):
        return ""
    for name in names:
        value = record.get(name)
        if value:
            return clean_text(value)
    lowered = {k.lower().lstrip("\ufeff"): v for k, v in record.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return clean_text(value)
    return ""


def _at(record: RawRecord, index: int) -> str:
    if isinstance(record, list) and index < len(record):
        return clean_text(record[index])
    return ""


def _skip(reason: str) -> None:
    raise RowSkipped(reason)


def _transaction(
    ctx: RowContext,
    *,
    symbol: str,
    action: Optional[str],
    quantity: int,
    price: float,
    timestamp: Optional[datetime],
    fees: float = 0.0,
    fill_id: Optional[str] = None,
    settlement_code: Optional[str] = None,
    identifier: Optional[str] = None,
    instrument: Optional[InstrumentInfo] = None,
    description: str = "",
) -> Transaction:
    """Validate and build a Transaction (symbol, time, price > 0, qty > 0)."""
    symbol = symbol.strip().upper()
    if not symbol:
        _skip("missing symbol")
    if action not in ("buy", "sell"):
        _skip("could not determine buy/sell side")
    if timestamp is None:
        _skip("missing or unparseable date")
    if price <= 0:
        _skip("price must be positive")
    if quantity <= 0:
        _skip("quantity must be positive")
    if identifier is None and looks_like_cusip(symbol):
        identifier = symbol
    return Transaction(
        symbol=symbol,
        action=action,
        quantity=quantity,
        price=price,
        timestamp=timestamp,
        fees=abs(fees),
        fill_id=fill_id or None,
        settlement_code=settlement_code,
        identifier=identifier,
        instrument=instrument or classify(symbol),
        broker=ctx.broker,
        row_number=ctx.row_number,
        description=description,
    )


def _completed_trade(
    ctx: RowContext,
    *,
    symbol: str,
    side: str,
    quantity: int,
    entry_price: float,
    exit_price: float,
    entry_time: Optional[datetime],
    exit_time: Optional[datetime],
    fees: float = 0.0,
    pnl: Optional[float] = None,
    fill_id: Optional[str] = None,
    notes: str = "",
) -> Trade:
    """A round trip the broker already closed, with two synthetic legs."""
    symbol = symbol.strip().upper()
    if not symbol:
        _skip("missing symbol")
    if entry_time is None or exit_time is None:
        _skip("missing entry or exit date")
    if entry_price <= 0 or exit_price <= 0:
        _skip("entry and exit prices must be positive")
    if quantity <= 0:
        _skip("quantity must be positive")

    instrument = classify(symbol)
    mult = instrument.multiplier
    entry_value = quantity * entry_price * mult
    exit_value = quantity * exit_price * mult
    if pnl is None:
        gross = exit_value - entry_value if side == "long" else entry_value - exit_value
        pnl = gross - fees

    open_action, close_action = ("buy", "sell") if side == "long" else ("sell", "buy")
    legs = [
        Transaction(
            symbol=symbol, action=open_action, quantity=quantity, price=entry_price,
            timestamp=entry_time, fees=abs(fees), fill_id=fill_id, instrument=instrument,
            broker=ctx.broker, row_number=ctx.row_number, settlement_code="open",
        ),
        Transaction(
            symbol=symbol, action=close_action, quantity=quantity, price=exit_price,
            timestamp=exit_time, fees=0.0,
            fill_id=f"{fill_id}:exit" if fill_id else None, instrument=instrument,
            broker=ctx.broker, row_number=ctx.row_number, settlement_code="close",
        ),
    ]
    return Trade(
        symbol=symbol,
        side=side,
        entry_time=entry_time,
        exit_time=exit_time,
        quantity=quantity,
        entry_price=entry_price,
        exit_price=exit_price,
        fees=abs(fees),
        pnl=pnl,
        pnl_percent=(pnl / entry_value * 100) if entry_value else None,
        entry_value=entry_value,
        exit_value=exit_value,
        executions=legs,
        instrument=instrument,
        broker=ctx.broker,
        notes=notes,
    )


def _side_from_text(text: str) -> Optional[str]:
    """buy/purchase/bot/long -> buy, sell/sold/sld/short -> sell."""
    t = text.strip().lower()
    if not t:
        return None
    if "cover" in t:
        return "buy"
    if any(k in t for k in ("sell", "sold", "sld", "short")):
        return "sell"
    if any(k in t for k in ("buy", "bought", "purchase", "bot", "long")) or t == "b":
        return "buy"
    if t == "s":
        return "sell"
    return None


def _settlement_from_code(code: str) -> Optional[str]:
    """IBKR Code column: O open, P partial, C close (codes are ';' separated)."""
    parts = {p.strip() for p in code.upper().split(";") if p.strip()}
    if "P" in parts:
        return "partial"
    if "C" in parts and "O" not in parts:
        return "close"
    if "O" in parts:
        return "open"
    return None


# ---------------------------------------------------------------------------
# thinkorswim
# ---------------------------------------------------------------------------

_TOS_TRADE = re.compile(r"(BOT|SOLD)\s+([+-]?[\d,]+)\s+(\S+)\s+@([\d.]+)")


def parse_thinkorswim_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    kind = _field(record, "TYPE").upper()
    if kind != "TRD":
        _skip(f"not a trade row (TYPE={kind or 'blank'})")

    description = _field(record, "DESCRIPTION")
    m = _TOS_TRADE.search(description)
    if not m:
        _skip(f"unrecognised trade description: {description[:60]}")
    verb, qty_text, symbol, price_text = m.groups()

    fees = abs(parse_number(_field(record, "Misc Fees"))) + abs(
        parse_number(_field(record, "Commissions & Fees"))
    )
    return _transaction(
        ctx,
        symbol=symbol,
        action="buy" if verb == "BOT" else "sell",
        quantity=parse_quantity(qty_text),
        price=parse_number(price_text),
        timestamp=to_utc(combine_date_time(_field(record, "DATE"), _field(record, "TIME"))),
        fees=fees,
        fill_id=_field(record, "REF #") or None,
        description=description,
    )


def merge_by_reference(transactions: list[Transaction]) -> list[Transaction]:
    """Collapse fills sharing one reference number into one weighted-average fill."""
    merged: dict[tuple, Transaction] = {}
    order: list[tuple] = []
    for txn in transactions:
        if not txn.fill_id:
            key: tuple = ("row", txn.row_number, len(order))
        else:
            key = (txn.fill_id, txn.symbol, txn.action)
        existing = merged.get(key)
        if existing is None:
            merged[key] = txn
            order.append(key)
            continue
        quantity = existing.quantity + txn.quantity
        price = (existing.price * existing.quantity + txn.price * txn.quantity) / quantity
        merged[key] = replace(
            existing,
            quantity=quantity,
            price=price,
            fees=existing.fees + txn.fees,
            timestamp=min(existing.timestamp, txn.timestamp),
        )
    if len(order) < len(transactions):
        logger.info(
            "[thinkorswim] Merged %d fills into %d by reference number",
            len(transactions), len(order),
        )
    return [merged[k] for k in order]


# ---------------------------------------------------------------------------
# Lightspeed
# ---------------------------------------------------------------------------

_LIGHTSPEED_FEE_COLUMNS = (
    "FeeSEC", "FeeMF", "Fee1", "Fee2", "Fee3", "FeeStamp", "FeeTAF", "Fee4",
)


def _lightspeed_side(record: RawRecord) -> str:
    # 1. explicit B/S code
    code = _field(record, "Side").upper()
    if code in ("S", "SS", "SELL", "SHORT"):
        return "sell"
    if code in ("B", "BC", "BUY"):
        return "buy"
    # 2. explicitly signed quantity; a bare number says nothing about the side
    qty_text = _field(record, "Qty", "Quantity")
    if qty_text.startswith("-") or (qty_text.startswith("(") and qty_text.endswith(")")):
        return "sell"
    if qty_text.startswith("+"):
        return "buy"
    # 3. free text Buy/Sell column ("Long Buy", "Short Sell")
    text = _field(record, "Buy/Sell").lower()
    if "sell" in text:
        return "sell"
    return "buy"


def parse_lightspeed_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    fees = abs(parse_number(_field(record, "Commission Amount")))
    for column in _LIGHTSPEED_FEE_COLUMNS:
        fees += abs(parse_number(_field(record, column)))

    local = combine_date_time(
        _field(record, "Trade Date"),
        _field(record, "Execution Time", "Raw Exec. Time", "Raw Exec Time"),
    )
    cusip = _field(record, "CUSIP").upper()
    return _transaction(
        ctx,
        symbol=_field(record, "Symbol") or cusip,
        action=_lightspeed_side(record),
        quantity=parse_quantity(_field(record, "Qty", "Quantity")),
        price=parse_number(_field(record, "Price")),
        timestamp=to_utc(local, ctx.lightspeed_tz),
        fees=fees,
        fill_id=_field(record, "Trade Number", "Sequence Number") or None,
        identifier=cusip if looks_like_cusip(cusip) else None,
        description=_field(record, "Security Type"),
    )


# ---------------------------------------------------------------------------
# Interactive Brokers
# ---------------------------------------------------------------------------

def parse_ibkr_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    signed = parse_number(_field(record, "Quantity"))
    if signed == 0:
        _skip("zero quantity")

    raw_time = _field(record, "DateTime", "Date/Time")
    return _transaction(
        ctx,
        symbol=_field(record, "Symbol"),
        action="buy" if signed > 0 else "sell",
        # options are already in contracts
        quantity=int(round(abs(signed))),
        price=parse_number(_field(record, "Price", "T. Price", "TradePrice")),
        timestamp=to_utc(parse_datetime(raw_time)),
        fees=abs(parse_number(_field(record, "Commission", "Comm/Fee", "IBCommission"))),
        fill_id=_field(record, "TradeID", "Trade ID", "IBExecID", "ExecID") or None,
        settlement_code=_settlement_from_code(_field(record, "Code")),
    )


def parse_ibkr_trade_confirmation_row(
    record: RawRecord, ctx: RowContext
) -> Optional[RowOutcome]:
    symbol = _field(record, "Symbol")
    side = _field(record, "Buy/Sell").upper()
    if "BUY" in side:
        action = "buy"
    elif "SELL" in side:
        action = "sell"
    else:
        action = None

    # Date/Time packed as YYYYMMDD;HHMMSS
    packed = _field(record, "Date/Time", "DateTime", "TradeDate")
    date_part, _, time_part = packed.partition(";")
    timestamp = combine_date_time(date_part, time_part or "093000")

    put_call = _field(record, "Put/Call").upper()
    instrument = None
    if put_call in ("C", "P", "CALL", "PUT"):
        underlying = _field(record, "UnderlyingSymbol")
        if not underlying and symbol:
            underlying = symbol.split()[0]
        instrument = option_from_columns(
            underlying,
            parse_number(_field(record, "Strike"), default=None),
            parse_date(_field(record, "Expiry")),
            put_call,
            _field(record, "Multiplier"),
        )

    return _transaction(
        ctx,
        symbol=symbol,
        action=action,
        quantity=parse_quantity(_field(record, "Quantity")),
        price=parse_number(_field(record, "Price", "TradePrice")),
        timestamp=to_utc(timestamp),
        fees=abs(parse_number(_field(record, "Commission", "IBCommission"))),
        fill_id=_field(record, "TradeID", "ExecID", "IBExecID") or None,
        settlement_code=_settlement_from_code(_field(record, "Code", "Open/CloseIndicator")),
        instrument=instrument,
    )


# ---------------------------------------------------------------------------
# Charles Schwab
# ---------------------------------------------------------------------------

# Column positions in header-less realized gain/loss exports
_SCHWAB_POSITIONS = {
    "symbol": 0,
    "closed": 2,
    "opened": 3,
    "quantity": 4,
    "proceeds_per_share": 5,
    "cost_per_share": 6,
    "gain_loss": 9,
    "gain_loss_pct": 10,
    "term": 13,
    "wash_sale": 15,
}


def _schwab_cells(record: RawRecord) -> dict[str, str]:
    if isinstance(record, list):
        return {key: _at(record, idx) for key, idx in _SCHWAB_POSITIONS.items()}
    return {
        "symbol": _field(record, "Symbol"),
        "closed": _field(record, "Closed Date", "Date Sold"),
        "opened": _field(record, "Opened Date", "Date Acquired"),
        "quantity": _field(record, "Quantity"),
        "proceeds_per_share": _field(record, "Proceeds Per Share"),
        "cost_per_share": _field(record, "Cost Per Share"),
        "gain_loss": _field(record, "Gain/Loss ($)", "Gain/Loss"),
        "gain_loss_pct": _field(record, "Gain/Loss (%)"),
        "term": _field(record, "Term"),
        "wash_sale": _field(record, "Wash Sale?", "Wash Sale"),
    }


def parse_schwab_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    cells = _schwab_cells(record)
    cost = parse_number(cells["cost_per_share"])
    proceeds = parse_number(cells["proceeds_per_share"])
    gain = parse_number(cells["gain_loss"])

    # A gain while paying more than received only happens on a short sale;
    # cost is then the opening sale and proceeds the cover
    is_short = cost > proceeds and gain > 0

    notes = []
    if cells["term"]:
        notes.append(f"Term: {cells['term']}")
    if cells["wash_sale"] and cells["wash_sale"].lower() not in ("no", "n", "false"):
        notes.append(f"Wash Sale: {cells['wash_sale']}")

    # Schwab gain/loss exports carry no commission data
    return _completed_trade(
        ctx,
        symbol=cells["symbol"],
        side="short" if is_short else "long",
        quantity=parse_quantity(cells["quantity"]),
        entry_price=cost,
        exit_price=proceeds,
        entry_time=to_utc(combine_date_time(cells["opened"])),
        exit_time=to_utc(combine_date_time(cells["closed"], default_time=MARKET_CLOSE)),
        fees=0.0,
        pnl=gain if cells["gain_loss"] else None,
        notes="; ".join(notes),
    )


def parse_schwab_transactions_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    action_text = _field(record, "Action").lower()
    description = _field(record, "Description")
    if "buy" not in action_text and "sell" not in action_text:
        _skip(f"non-trade action: {action_text or 'blank'}")

    is_short = "short" in action_text or "short" in description.lower()
    if "buy" in action_text:
        action = "buy"
        if is_short or "cover" in action_text or "to close" in action_text:
            settlement = "close"
        elif "to open" in action_text:
            settlement = "open"
        else:
            settlement = None
    else:
        action = "sell"
        if is_short or "to open" in action_text:
            settlement = "open"
        elif "to close" in action_text:
            settlement = "close"
        else:
            settlement = None

    return _transaction(
        ctx,
        symbol=_field(record, "Symbol"),
        action=action,
        quantity=parse_quantity(_field(record, "Quantity")),
        price=parse_number(_field(record, "Price")),
        timestamp=to_utc(combine_date_time(_field(record, "Date"))),
        fees=abs(parse_number(_field(record, "Fees & Comm"))),
        settlement_code=settlement,
        description=description,
    )


# ---------------------------------------------------------------------------
# thinkorswim PaperMoney
# ---------------------------------------------------------------------------

_PAPERMONEY_EARLIEST = datetime(2000, 1, 1, tzinfo=timezone.utc)


def parse_papermoney_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    exec_time = _field(record, "Exec Time")
    if not exec_time:
        _skip("no exec time (spread leg continuation)")

    timestamp = to_utc(parse_datetime(exec_time))
    if timestamp is None:
        _skip(f"unparseable exec time: {exec_time}")
    if timestamp < _PAPERMONEY_EARLIEST or timestamp > ctx.imported_at + timedelta(days=1):
        _skip(f"implausible exec time: {exec_time}")

    symbol = _field(record, "Symbol").upper()
    kind = _field(record, "Type").upper()
    if kind in ("CALL", "PUT"):
        expiry = _field(record, "Exp").replace(" ", "").upper()
        strike = _field(record, "Strike")
        if expiry and strike:
            symbol = f"{symbol} {expiry} {strike} {kind}"

    pos_effect = _field(record, "Pos Effect").upper()
    settlement = "open" if "OPEN" in pos_effect else "close" if "CLOSE" in pos_effect else None

    price = parse_number(_field(record, "Price"))
    if price <= 0:
        price = abs(parse_number(_field(record, "Net Price")))

    return _transaction(
        ctx,
        symbol=symbol,
        action=_side_from_text(_field(record, "Side")),
        quantity=parse_quantity(_field(record, "Qty")),
        price=price,
        timestamp=timestamp,
        settlement_code=settlement,
    )


# ---------------------------------------------------------------------------
# TradingView
# ---------------------------------------------------------------------------

def parse_tradingview_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    status = _field(record, "Status")
    if status.lower() != "filled":
        _skip(f"order not filled (status={status or 'blank'})")

    side = _field(record, "Side").lower()
    return _transaction(
        ctx,
        symbol=_field(record, "Symbol"),
        action=side if side in ("buy", "sell") else None,
        quantity=parse_quantity(_field(record, "Qty")),
        price=parse_number(_field(record, "Fill Price")),
        timestamp=to_utc(parse_datetime(_field(record, "Closing Time", "Placing Time"))),
        fees=abs(parse_number(_field(record, "Commission"))),
        fill_id=_field(record, "Order ID") or None,
        description=_field(record, "Type"),
    )


# ---------------------------------------------------------------------------
# ProjectX
# ---------------------------------------------------------------------------

def parse_projectx_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    exited_at = _field(record, "ExitedAt")
    exit_price = parse_number(_field(record, "ExitPrice"))
    if not exited_at or exit_price <= 0:
        _skip("trade not completed")

    trade_id = _field(record, "Id")
    fees = abs(parse_number(_field(record, "Fees"))) + abs(
        parse_number(_field(record, "Commissions"))
    )
    pnl_text = _field(record, "PnL")
    duration = _field(record, "TradeDuration")
    return _completed_trade(
        ctx,
        symbol=_field(record, "ContractName"),
        side="long" if _field(record, "Type").lower() == "long" else "short",
        quantity=parse_quantity(_field(record, "Size")),
        entry_price=parse_number(_field(record, "EntryPrice")),
        exit_price=exit_price,
        entry_time=to_utc(parse_datetime(_field(record, "EnteredAt"))),
        exit_time=to_utc(parse_datetime(exited_at)),
        fees=fees,
        # PnL column is gross of fees
        pnl=parse_number(pnl_text) - fees if pnl_text else None,
        fill_id=trade_id or None,
        notes=f"Trade #{trade_id} - Duration: {duration}" if trade_id else "",
    )


# ---------------------------------------------------------------------------
# E*TRADE
# ---------------------------------------------------------------------------

def parse_etrade_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    kind = _field(record, "Transaction Type")
    action = _side_from_text(kind)
    if action is None:
        _skip(f"non-trade transaction type: {kind or 'blank'}")
    fees = abs(parse_number(_field(record, "Commission"))) + abs(
        parse_number(_field(record, "Fees"))
    )
    return _transaction(
        ctx,
        symbol=_field(record, "Symbol"),
        action=action,
        quantity=parse_quantity(_field(record, "Quantity")),
        price=parse_number(_field(record, "Price")),
        timestamp=to_utc(combine_date_time(_field(record, "Transaction Date"))),
        fees=fees,
        description=_field(record, "Description"),
    )


# ---------------------------------------------------------------------------
# Generic and custom-mapped CSV
# ---------------------------------------------------------------------------

def _generic_timestamp(date_text: str, time_text: str) -> Optional[datetime]:
    if time_text and parse_time(time_text) is not None:
        return combine_date_time(date_text, time_text)
    if time_text:
        full = parse_datetime(time_text)
        if full is not None:
            return full
    return parse_datetime(date_text) if date_text else None


def parse_generic_row(record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    mapping = ctx.custom_mapping
    if mapping is not None:
        symbol = _field(record, mapping.symbol_column)
        qty_text = _field(record, mapping.quantity_column)
        price = parse_number(_field(record, mapping.entry_price_column))
        side_text = _field(record, mapping.side_column) if mapping.side_column else ""
        fees = parse_number(_field(record, mapping.fees_column)) if mapping.fees_column else 0.0
        date_text = _field(record, mapping.entry_date_column) if mapping.entry_date_column else ""
        time_text = _field(record, mapping.entry_time_column) if mapping.entry_time_column else ""
        if mapping.entry_date_column:
            timestamp = _generic_timestamp(date_text, time_text)
        else:
            timestamp = ctx.imported_at
        fill_id = None
    else:
        symbol = _field(record, "Symbol")
        qty_text = _field(record, "Quantity", "Shares", "Size", "Qty")
        price = parse_number(_field(record, "Price", "Entry Price", "Buy Price"))
        side_text = _field(record, "Side", "Direction", "Action", "Type")
        fees = abs(parse_number(_field(record, "Commission"))) + abs(
            parse_number(_field(record, "Fees"))
        )
        timestamp = _generic_timestamp(
            _field(record, "Trade Date", "Date"), _field(record, "Entry Time", "Time")
        )
        fill_id = _field(record, "Trade ID", "Order ID", "Execution ID") or None

    signed = parse_number(qty_text)
    action = _side_from_text(side_text)
    if action is None and signed != 0:
        # No usable side column: the sign of the quantity decides
        action = "sell" if signed < 0 else "buy"

    return _transaction(
        ctx,
        symbol=symbol,
        action=action,
        quantity=int(round(abs(signed))),
        price=price,
        timestamp=to_utc(timestamp),
        fees=fees,
        fill_id=fill_id,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

RowParser = Callable[[RawRecord, RowContext], Optional[RowOutcome]]

ROW_PARSERS: dict[str, RowParser] = {
    "generic": parse_generic_row,
    "lightspeed": parse_lightspeed_row,
    "thinkorswim": parse_thinkorswim_row,
    "tradingview": parse_tradingview_row,
    "schwab": parse_schwab_row,
    "schwab_transactions": parse_schwab_transactions_row,
    "ibkr": parse_ibkr_row,
    "ibkr_trade_confirmation": parse_ibkr_trade_confirmation_row,
    "etrade": parse_etrade_row,
    "papermoney": parse_papermoney_row,
    "projectx": parse_projectx_row,
}


@dataclass
class ParsedRows:
    transactions: list[Transaction] = field(default_factory=list)
    completed: list[Trade] = field(default_factory=list)
    skipped: list[SkippedRow] = field(default_factory=list)
    total_rows: int = 0


def _row_currency(record: RawRecord, column: Optional[str]) -> Optional[str]:
    if not column:
        return None
    value = _field(record, column).upper()
    return value or None


def parse_row(broker: str, record: RawRecord, ctx: RowContext) -> Optional[RowOutcome]:
    """Run one row through its grammar; None when the row is skipped."""
    try:
        return ROW_PARSERS[broker](record, ctx)
    except RowSkipped:
        return None


def parse_rows(loaded: LoadedRecords, broker: str, ctx: RowContext) -> ParsedRows:
    """Parse every loaded record with the grammar for ``broker``."""
    parser = ROW_PARSERS.get(broker, parse_generic_row)
    parsed = ParsedRows(total_rows=len(loaded))

    for row_number, record in loaded:
        row_ctx = replace(ctx, broker=broker, row_number=row_number)
        try:
            outcome = parser(record, row_ctx)
        except RowSkipped as e:
            parsed.skipped.append(SkippedRow(row_number, str(e)))
            logger.debug("[%s] Skipping row %d: %s", broker, row_number, e)
            continue
        except (ValueError, TypeError, KeyError, IndexError) as e:
            parsed.skipped.append(SkippedRow(row_number, f"unparseable row: {e}"))
            logger.warning("[%s] Could not parse row %d: %s", broker, row_number, e)
            continue
        if outcome is None:
            parsed.skipped.append(SkippedRow(row_number, "no trade data"))
            continue

        currency = _row_currency(record, ctx.currency_column)
        if isinstance(outcome, Trade):
            outcome.currency = currency
            parsed.completed.append(outcome)
        else:
            if currency:
                outcome = replace(outcome, currency=currency)
            parsed.transactions.append(outcome)

    if broker == "thinkorswim":
        parsed.transactions = merge_by_reference(parsed.transactions)

    logger.info(
        "[%s] Parsed %d fills and %d completed trades from %d rows (%d skipped)",
        broker, len(parsed.transactions), len(parsed.completed),
        parsed.total_rows, len(parsed.skipped),
    )
    return parsed
