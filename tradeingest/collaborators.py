"""Injected lookup services and the one async pre-pass that calls them.

Security-code resolution and currency conversion are the only I/O an import
performs. Both are collected up front: every distinct code and every distinct
(currency, trade date) pair is requested once, concurrently, before any
position tracking starts. Everything after the pre-pass is synchronous.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Optional, Protocol

from .errors import (
    CurrencyConversionError,
    CurrencyEntitlementRequired,
    IdentifierResolutionError,
)
from .models import Trade, Transaction
from .parsers.instrument_classifier import looks_like_cusip
from .parsers.values import clean_text

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
_CURRENCY_COLUMN = re.compile(r"currency|curr|ccy", re.IGNORECASE)


class IdentifierResolver(Protocol):
    async def resolve(self, code: str, user_id: Optional[str]) -> Optional[str]:
        """Ticker for a CUSIP-like ``code``, or None when unknown."""


class CurrencyConverter(Protocol):
    async def convert_to_usd(self, amount: float, from_currency: str, as_of: date) -> float:
        """``amount`` of ``from_currency`` expressed in USD on ``as_of``."""


class ResolutionQueue(Protocol):
    def enqueue(self, codes: list[str], priority: str) -> Any:
        """Hand unresolved codes to a background resolver."""


@dataclass
class ResolvedLookups:
    symbols: dict[str, str] = field(default_factory=dict)  # code -> ticker
    rates: dict[tuple[str, date], float] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)


def detect_currency_column(columns: Iterable[str], records: Iterable[Any]) -> Optional[str]:
    """First currency-like column holding a non-USD value, if any."""
    candidates = [c for c in columns if _CURRENCY_COLUMN.search(c)]
    if not candidates:
        return None
    rows = [r for r in records if isinstance(r, dict)]
    for column in candidates:
        for row in rows:
            value = clean_text(row.get(column)).upper()
            if value and value != BASE_CURRENCY:
                logger.info("[CURRENCY] Column %r carries non-USD values (e.g. %s)", column, value)
                return column
    return None


def identifiers_needing_lookup(
    transactions: Iterable[Transaction], completed: Iterable[Trade] = ()
) -> list[str]:
    # Only rows whose symbol is the raw code need a ticker
    codes = {t.identifier for t in transactions if t.identifier and t.identifier == t.symbol}
    codes.update(t.symbol for t in completed if looks_like_cusip(t.symbol))
    return sorted(codes)


def currency_pairs(
    transactions: Iterable[Transaction], completed: Iterable[Trade] = ()
) -> list[tuple[str, date]]:
    pairs = {
        (t.currency, t.timestamp.date())
        for t in transactions
        if t.currency and t.currency != BASE_CURRENCY
    }
    pairs.update(
        (t.currency, t.entry_time.date())
        for t in completed
        if t.currency and t.currency != BASE_CURRENCY
    )
    return sorted(pairs)


async def _resolve_identifiers(
    codes: list[str],
    resolver: Optional[IdentifierResolver],
    user_id: Optional[str],
) -> tuple[dict[str, str], list[str]]:
    if not codes:
        return {}, []
    if resolver is None:
        logger.warning("[CUSIP] No resolver configured; %d codes stay unresolved", len(codes))
        return {}, list(codes)

    results = await asyncio.gather(
        *(resolver.resolve(code, user_id) for code in codes), return_exceptions=True
    )
    symbols: dict[str, str] = {}
    unresolved: list[str] = []
    for code, result in zip(codes, results):
        if isinstance(result, BaseException):
            logger.error("[CUSIP] Resolver failed for %s: %s", code, result)
            raise IdentifierResolutionError(f"Failed to resolve {code}: {result}") from result
        ticker = clean_text(result).upper() if result else ""
        if ticker:
            symbols[code] = ticker
        else:
            unresolved.append(code)
    logger.info("[CUSIP] Resolved %d of %d codes", len(symbols), len(codes))
    return symbols, unresolved


async def _fetch_rates(
    pairs: list[tuple[str, date]], converter: CurrencyConverter
) -> dict[tuple[str, date], float]:
    results = await asyncio.gather(
        *(converter.convert_to_usd(1.0, currency, day) for currency, day in pairs),
        return_exceptions=True,
    )
    rates: dict[tuple[str, date], float] = {}
    for pair, result in zip(pairs, results):
        if isinstance(result, BaseException):
            logger.error("[CURRENCY] Conversion failed for %s on %s: %s", pair[0], pair[1], result)
            raise CurrencyConversionError(
                f"Could not convert {pair[0]} on {pair[1].isoformat()}: {result}"
            ) from result
        rate = float(result)
        if rate <= 0:
            raise CurrencyConversionError(
                f"Converter returned a non-positive rate for {pair[0]} on {pair[1].isoformat()}"
            )
        rates[pair] = rate
    logger.info("[CURRENCY] Fetched %d exchange rates", len(rates))
    return rates


async def resolve_lookups(
    transactions: list[Transaction],
    completed: list[Trade],
    *,
    user_id: Optional[str] = None,
    currency_entitled: bool = False,
    resolver: Optional[IdentifierResolver] = None,
    converter: Optional[CurrencyConverter] = None,
    queue: Optional[ResolutionQueue] = None,
    broker: Optional[str] = None,
) -> ResolvedLookups:
    """Batch every external lookup the parsed rows need.

    Raises CurrencyEntitlementRequired when non-USD rows appear and the caller
    is not entitled, CurrencyConversionError when no converter is supplied or
    it fails, and IdentifierResolutionError when the resolver raises. A code
    the resolver simply does not know is not an error: it keeps its raw value
    as the symbol and is handed to ``queue``.
    """
    pairs = currency_pairs(transactions, completed)
    if pairs:
        currencies = [currency for currency, _ in pairs]
        if not currency_entitled:
            logger.error("[CURRENCY] Non-USD rows without conversion entitlement: %s",
                         ", ".join(sorted(set(currencies))))
            raise CurrencyEntitlementRequired(currencies, broker=broker)
        if converter is None:
            raise CurrencyConversionError(
                "Non-USD rows found but no currency converter was supplied", broker=broker
            )

    codes = identifiers_needing_lookup(transactions, completed)
    if pairs:
        (symbols, unresolved), rates = await asyncio.gather(
            _resolve_identifiers(codes, resolver, user_id),
            _fetch_rates(pairs, converter),
        )
    else:
        symbols, unresolved = await _resolve_identifiers(codes, resolver, user_id)
        rates = {}

    if unresolved and queue is not None:
        logger.info("[CUSIP] Queueing %d unresolved codes for background lookup", len(unresolved))
        queued = queue.enqueue(unresolved, "high")
        if inspect.isawaitable(queued):
            await queued

    return ResolvedLookups(symbols=symbols, rates=rates, unresolved=unresolved)
