"""
Import pipeline: raw export -> reconstructed Trades.

    detect format -> load records -> parse rows -> async lookups (CUSIP, FX)
    -> position tracking -> completed-trade dedupe -> grouping -> sort

``import_trades`` is the async entry point; everything after the lookup
pre-pass lives in ``reconcile``, which is synchronous and pure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .collaborators import (
    BASE_CURRENCY,
    CurrencyConverter,
    IdentifierResolver,
    ResolutionQueue,
    ResolvedLookups,
    currency_pairs,
    detect_currency_column,
    resolve_lookups,
)
from .config import Settings, load_settings
from .errors import (
    CurrencyConversionError,
    CurrencyEntitlementRequired,
    ImportStructureError,
    TradeImportError,
)
from .models import ImportResult, Trade, Transaction
from .parsers.broker_rows import ParsedRows, RowContext, parse_rows
from .parsers.format_detector import FORMAT_TAGS, decode_export, detect
from .parsers.instrument_classifier import classify
from .parsers.loader import load_records
from .reconcile.duplicates import is_duplicate
from .reconcile.grouping import apply_trade_grouping
from .reconcile.position_tracker import PositionTracker
from .schemas import ImportContext

logger = logging.getLogger(__name__)


def _coerce_context(context: Union[ImportContext, dict, None]) -> ImportContext:
    if context is None:
        return ImportContext()
    if isinstance(context, ImportContext):
        return context
    return ImportContext.model_validate(context)


def _lightspeed_zone(name: str) -> Optional[tzinfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown Lightspeed timezone %r, treating execution times as UTC", name)
        return None


def _resolve_broker(text: str, broker: Optional[str], settings: Settings) -> str:
    if not broker or broker == "auto":
        return detect(text, settings.detect_scan_lines).broker
    if broker not in FORMAT_TAGS:
        raise TradeImportError(f"Unknown broker format: {broker}")
    return broker


# ---------------------------------------------------------------------------
# Applying lookups
# ---------------------------------------------------------------------------

def _localize_transaction(txn: Transaction, lookups: ResolvedLookups) -> Transaction:
    changes: dict[str, Any] = {}
    ticker = lookups.symbols.get(txn.identifier) if txn.identifier else None
    if ticker and ticker != txn.symbol:
        changes["symbol"] = ticker
        if txn.instrument.instrument_type == "stock":
            changes["instrument"] = classify(ticker)

    if txn.currency and txn.currency != BASE_CURRENCY:
        rate = lookups.rates[(txn.currency, txn.timestamp.date())]
        changes["price"] = txn.price * rate
        changes["fees"] = txn.fees * rate
    return replace(txn, **changes) if changes else txn


def _localize_completed(trade: Trade, lookups: ResolvedLookups) -> Trade:
    ticker = lookups.symbols.get(trade.symbol)
    if ticker:
        trade.symbol = ticker
        trade.instrument = classify(ticker)
        trade.executions = [
            replace(e, symbol=ticker, identifier=e.identifier or e.symbol, instrument=trade.instrument)
            for e in trade.executions
        ]

    if trade.currency and trade.currency != BASE_CURRENCY:
        rate = lookups.rates[(trade.currency, trade.entry_time.date())]
        trade.entry_price *= rate
        trade.exit_price = trade.exit_price * rate if trade.exit_price is not None else None
        trade.fees *= rate
        trade.pnl = trade.pnl * rate if trade.pnl is not None else None
        trade.entry_value *= rate
        trade.exit_value *= rate
        trade.exchange_rate = rate
        trade.executions = [
            replace(e, price=e.price * rate, fees=e.fees * rate) for e in trade.executions
        ]
    return trade


def _stamp_exchange_rate(trade: Trade, lookups: ResolvedLookups) -> None:
    if not trade.currency or trade.currency == BASE_CURRENCY or trade.exchange_rate:
        return
    for execution in trade.executions:
        rate = lookups.rates.get((trade.currency, execution.timestamp.date()))
        if rate is not None:
            trade.exchange_rate = rate
            return


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def _require_rates(
    parsed: ParsedRows, context: ImportContext, lookups: ResolvedLookups, broker: str
) -> None:
    """Raise unless every non-USD (currency, date) in ``parsed`` has a rate."""
    missing = [
        pair for pair in currency_pairs(parsed.transactions, parsed.completed)
        if pair not in lookups.rates
    ]
    if not missing:
        return
    currencies = [currency for currency, _ in missing]
    if not context.currency_conversion_entitled:
        raise CurrencyEntitlementRequired(currencies, broker=broker)
    currency, day = missing[0]
    raise CurrencyConversionError(
        f"No exchange rate for {currency} on {day.isoformat()} "
        f"({len(missing)} rate(s) missing)",
        broker=broker,
    )


def _dedupe_completed(
    completed: list[Trade], context: ImportContext, settings: Settings
) -> tuple[list[Trade], int]:
    """Drop broker-closed trades whose opening leg was already recorded."""
    kept: list[Trade] = []
    accepted: list[Transaction] = []
    duplicates = 0
    for trade in completed:
        opening = trade.executions[0]
        if is_duplicate(
            opening, trade.symbol, context.history_for(trade.symbol),
            window_ms=settings.duplicate_window_ms,
            price_tolerance=settings.duplicate_price_tolerance,
        ) or is_duplicate(opening, trade.symbol, accepted, fuzzy=False):
            duplicates += 1
            logger.info(
                "[Tracker] Skipping duplicate completed %s trade entered %s",
                trade.symbol, trade.entry_time,
            )
            continue
        accepted.append(opening)
        kept.append(trade)
    return kept, duplicates


def reconcile(
    parsed: ParsedRows,
    context: Union[ImportContext, dict, None] = None,
    lookups: Optional[ResolvedLookups] = None,
    *,
    broker: str = "generic",
    settings: Optional[Settings] = None,
) -> ImportResult:
    """Turn parsed rows into the final, ordered list of Trades."""
    context = _coerce_context(context)
    settings = settings or load_settings()
    lookups = lookups or ResolvedLookups()
    _require_rates(parsed, context, lookups, broker)

    transactions = [_localize_transaction(t, lookups) for t in parsed.transactions]
    completed = [_localize_completed(t, lookups) for t in parsed.completed]

    tracker = PositionTracker(
        window_ms=settings.duplicate_window_ms,
        price_tolerance=settings.duplicate_price_tolerance,
    )
    trades = tracker.process(transactions, context)
    for trade in trades:
        _stamp_exchange_rate(trade, lookups)

    completed, completed_dupes = _dedupe_completed(completed, context, settings)
    trades.extend(completed)

    trades = apply_trade_grouping(trades, context.trade_grouping_settings)

    result = ImportResult(
        broker=broker,
        trades=trades,
        total_rows=parsed.total_rows,
        skipped_rows=list(parsed.skipped),
        duplicate_count=tracker.duplicate_count + completed_dupes,
        unresolved_identifiers=list(lookups.unresolved),
    )
    logger.info("[Import] %s: %s", broker, tracker.stats)
    return result


async def import_trades(
    data: Union[bytes, str],
    context: Union[ImportContext, dict, None] = None,
    broker: Optional[str] = "auto",
    resolver: Optional[IdentifierResolver] = None,
    converter: Optional[CurrencyConverter] = None,
    queue: Optional[ResolutionQueue] = None,
    settings: Optional[Settings] = None,
) -> ImportResult:
    """Import one broker export.

    Raises ImportStructureError when the file lacks the section its format
    requires, and the currency / identifier errors from the lookup pre-pass.
    Unusable rows never raise; they come back in ``skipped_rows``.
    """
    context = _coerce_context(context)
    settings = settings or load_settings()
    text = decode_export(data)
    tag = _resolve_broker(text, broker, settings)

    try:
        loaded = load_records(text, tag, settings.detect_scan_lines)
    except ImportStructureError as e:
        e.broker = e.broker or tag
        logger.error("[Import] %s file structure invalid: %s", tag, e)
        raise

    row_ctx = RowContext(
        broker=tag,
        custom_mapping=context.custom_mapping,
        lightspeed_tz=_lightspeed_zone(settings.lightspeed_timezone),
        currency_column=detect_currency_column(loaded.columns, loaded.records),
        imported_at=context.imported_at or datetime.now(timezone.utc),
    )
    parsed = parse_rows(loaded, tag, row_ctx)

    lookups = await resolve_lookups(
        parsed.transactions,
        parsed.completed,
        user_id=context.user_id,
        currency_entitled=context.currency_conversion_entitled,
        resolver=resolver,
        converter=converter,
        queue=queue,
        broker=tag,
    )
    result = reconcile(parsed, context, lookups, broker=tag, settings=settings)
    logger.info("[Import] Summary: %s", result.summary())
    return result


def import_trades_sync(
    data: Union[bytes, str],
    context: Union[ImportContext, dict, None] = None,
    broker: Optional[str] = "auto",
    **kwargs: Any,
) -> ImportResult:
    """Blocking wrapper around ``import_trades`` for scripts and tests."""
    return asyncio.run(import_trades(data, context, broker, **kwargs))
