"""Position tracker: rebuild round-trip Trades from per-fill Transactions.

Walks each symbol's fills in time order with a signed running position.
A trade opens when the position leaves zero and closes when it returns to
exactly zero. Leftover size at the end of the stream is emitted as an open
trade that a later import can extend through ``existing_positions``.

Two behaviours are fixed here:

* A fill already present in the caller's history is dropped completely. It
  is not appended, it does not move the position and it never opens a
  trade, so re-importing a file leaves seeded positions untouched.
* A fill that would carry the position through zero is split at zero. The
  closing leg finishes the current trade and the remainder opens a new trade
  on the other side, with fees pro-rated by quantity.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable, Optional

from ..config import DEFAULT_DUPLICATE_PRICE_TOLERANCE, DEFAULT_DUPLICATE_WINDOW_MS
from ..models import Trade, Transaction
from ..parsers.instrument_classifier import InstrumentInfo
from ..schemas import ExecutionRecord, ImportContext, SeedPosition
from .duplicates import is_duplicate

logger = logging.getLogger(__name__)


@dataclass
class _WorkingTrade:
    """A trade still receiving fills."""

    trade: Trade
    total_quantity: int = 0  # entry-side quantity, seed included
    new_executions: int = 0
    seeded: bool = False

    @property
    def opening_action(self) -> str:
        return "buy" if self.trade.side == "long" else "sell"


def split_at_zero(fill: Transaction, position: int) -> list[Transaction]:
    """Split ``fill`` where it would flip ``position`` through zero."""
    if position == 0 or (position > 0) == (fill.action == "buy"):
        return [fill]
    closing_qty = abs(position)
    if fill.quantity <= closing_qty:
        return [fill]

    # Both legs remember the reported size so a re-import still matches them
    reported = fill.fill_quantity or fill.quantity
    closing_fees = fill.fees * closing_qty / fill.quantity
    closing = replace(fill, quantity=closing_qty, fees=closing_fees, fill_quantity=reported)
    opening = replace(
        fill,
        quantity=fill.quantity - closing_qty,
        fees=fill.fees - closing_fees,
        settlement_code="open",
        fill_quantity=reported,
    )
    logger.info(
        "[Tracker] %s %s %d crosses zero from %+d: split into %d closing + %d opening",
        fill.symbol, fill.action, fill.quantity, position, closing.quantity, opening.quantity,
    )
    return [closing, opening]


class PositionTracker:
    """Turn ordered fills into closed and open Trades, one symbol at a time.

    Usage::

        tracker = PositionTracker()
        trades = tracker.process(transactions, context)
        tracker.stats  # counts of trades, duplicates, splits
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_DUPLICATE_WINDOW_MS,
        price_tolerance: float = DEFAULT_DUPLICATE_PRICE_TOLERANCE,
    ) -> None:
        self.window_ms = window_ms
        self.price_tolerance = price_tolerance
        self.duplicate_count = 0
        self.split_count = 0
        self._symbols: set[str] = set()
        self._closed = 0
        self._open = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, transactions: Iterable[Transaction], context: ImportContext) -> list[Trade]:
        """Build trades for every symbol in ``transactions``."""
        by_symbol: dict[str, list[Transaction]] = defaultdict(list)
        for txn in transactions:
            by_symbol[txn.symbol].append(txn)

        used_seeds: set[int] = set()
        trades: list[Trade] = []
        for symbol, fills in by_symbol.items():
            seed = context.find_seed(symbol, fills[0].instrument)
            if seed is not None and id(seed) in used_seeds:
                seed = None
            if seed is not None:
                used_seeds.add(id(seed))
            trades.extend(
                self.build_trades(symbol, fills, seed=seed, history=context.history_for(symbol))
            )
        return trades

    def build_trades(
        self,
        symbol: str,
        transactions: Iterable[Transaction],
        seed: Optional[SeedPosition] = None,
        history: Iterable[Any] = (),
    ) -> list[Trade]:
        """Replay one symbol's fills against an optional seed position."""
        fills = sorted(transactions, key=lambda t: t.timestamp)
        self._symbols.add(symbol)
        if not fills:
            return []

        instrument = fills[0].instrument
        recorded: list[Any] = list(history)
        accepted: list[Transaction] = []
        trades: list[Trade] = []
        position = 0
        current: Optional[_WorkingTrade] = None

        if seed is not None and seed.quantity > 0:
            current = self._hydrate(seed, symbol, instrument, fills[0])
            position = current.total_quantity if seed.side == "long" else -current.total_quantity
            recorded.extend(seed.executions)
            logger.info(
                "[Tracker] %s seeded from existing %s position of %d (trade %s)",
                symbol, seed.side, current.total_quantity, seed.id,
            )

        for fill in fills:
            if self._is_duplicate(fill, symbol, recorded, accepted):
                self.duplicate_count += 1
                logger.info(
                    "[Tracker] Skipping duplicate %s %s %d @ %.4f (%s)",
                    symbol, fill.action, fill.quantity, fill.price, fill.fill_id or fill.timestamp,
                )
                continue
            accepted.append(fill)

            legs = split_at_zero(fill, position)
            if len(legs) > 1:
                self.split_count += 1
            for leg in legs:
                if current is None:
                    current = self._open_trade(leg, instrument)
                self._apply(current, leg)
                position += leg.signed_quantity
                if position == 0:
                    closed = self._finalize(current)
                    if closed is not None:
                        trades.append(closed)
                    current = None

        if current is not None:
            left_open = self._leave_open(current, position)
            if left_open is not None:
                trades.append(left_open)
        return trades

    @property
    def stats(self) -> dict[str, int]:
        return {
            "symbols": len(self._symbols),
            "closed_trades": self._closed,
            "open_trades": self._open,
            "duplicates": self.duplicate_count,
            "zero_crossing_splits": self.split_count,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_duplicate(
        self,
        fill: Transaction,
        symbol: str,
        recorded: list[Any],
        accepted: list[Transaction],
    ) -> bool:
        if is_duplicate(
            fill, symbol, recorded,
            window_ms=self.window_ms, price_tolerance=self.price_tolerance,
        ):
            return True
        # Within one file only a repeated broker id counts; identical partial
        # fills in the same second are legitimate
        return is_duplicate(fill, symbol, accepted, fuzzy=False)

    def _hydrate(
        self,
        seed: SeedPosition,
        symbol: str,
        instrument: InstrumentInfo,
        first_fill: Transaction,
    ) -> _WorkingTrade:
        quantity = int(round(seed.quantity))
        entry_time = seed.entry_time or first_fill.timestamp
        executions = [
            self._seed_execution(record, seed, symbol, instrument, entry_time)
            for record in seed.executions
        ]
        trade = Trade(
            symbol=symbol,
            side=seed.side,
            entry_time=entry_time,
            quantity=quantity,
            entry_price=seed.entry_price,
            fees=seed.fees,
            entry_value=quantity * seed.entry_price * instrument.multiplier,
            executions=executions,
            instrument=instrument,
            is_update=True,
            existing_trade_id=seed.id,
            broker=seed.broker or first_fill.broker,
        )
        return _WorkingTrade(trade=trade, total_quantity=quantity, seeded=True)

    @staticmethod
    def _seed_execution(
        record: ExecutionRecord,
        seed: SeedPosition,
        symbol: str,
        instrument: InstrumentInfo,
        fallback_time: datetime,
    ) -> Transaction:
        action = (record.action or "").lower()
        if action not in ("buy", "sell"):
            action = "buy" if seed.side == "long" else "sell"
        return Transaction(
            symbol=symbol,
            action=action,
            quantity=int(round(record.quantity)),
            price=record.price,
            timestamp=record.timestamp or fallback_time,
            fees=record.fees,
            fill_id=record.fill_id,
            instrument=instrument,
            broker=seed.broker or "generic",
            fill_quantity=int(round(record.fill_quantity)) if record.fill_quantity else None,
        )

    @staticmethod
    def _open_trade(leg: Transaction, instrument: InstrumentInfo) -> _WorkingTrade:
        if leg.settlement_code == "close":
            logger.warning(
                "[Tracker] %s closing fill at %s opens a new position; "
                "the opening fills were probably in an earlier import",
                leg.symbol, leg.timestamp,
            )
        trade = Trade(
            symbol=leg.symbol,
            side="long" if leg.action == "buy" else "short",
            entry_time=leg.timestamp,
            instrument=instrument,
            broker=leg.broker,
            currency=leg.currency,
        )
        return _WorkingTrade(trade=trade)

    @staticmethod
    def _apply(working: _WorkingTrade, leg: Transaction) -> None:
        trade = working.trade
        trade.executions.append(leg)
        trade.fees += leg.fees
        working.new_executions += 1

        notional = leg.quantity * leg.price * trade.multiplier
        if leg.action == working.opening_action:
            trade.entry_value += notional
            working.total_quantity += leg.quantity
        else:
            trade.exit_value += notional

    @staticmethod
    def _execution_window(trade: Trade) -> tuple[datetime, datetime]:
        times = [e.timestamp for e in trade.executions if e.timestamp is not None]
        times.append(trade.entry_time)
        return min(times), max(times)

    def _finalize(self, working: _WorkingTrade) -> Optional[Trade]:
        trade = working.trade
        if not trade.executions or working.total_quantity == 0:
            return None

        divisor = working.total_quantity * trade.multiplier
        trade.quantity = working.total_quantity
        trade.entry_price = trade.entry_value / divisor
        trade.exit_price = trade.exit_value / divisor
        if trade.side == "long":
            trade.pnl = trade.exit_value - trade.entry_value - trade.fees
        else:
            trade.pnl = trade.entry_value - trade.exit_value - trade.fees
        trade.pnl_percent = trade.pnl / trade.entry_value * 100 if trade.entry_value else None
        trade.entry_time, trade.exit_time = self._execution_window(trade)
        trade.is_update = working.seeded and working.new_executions > 0

        self._closed += 1
        logger.debug(
            "[Tracker] Closed %s %s %d: entry %.4f exit %.4f pnl %.2f",
            trade.side, trade.symbol, trade.quantity,
            trade.entry_price, trade.exit_price, trade.pnl,
        )
        return trade

    def _leave_open(self, working: _WorkingTrade, position: int) -> Optional[Trade]:
        trade = working.trade
        if working.seeded and working.new_executions == 0:
            # Nothing new for this position
            return None
        if working.total_quantity == 0:
            return None

        trade.quantity = abs(position)
        trade.entry_price = trade.entry_value / (working.total_quantity * trade.multiplier)
        trade.exit_price = None
        trade.exit_time = None
        trade.pnl = None
        trade.pnl_percent = None
        trade.entry_time = self._execution_window(trade)[0]

        self._open += 1
        logger.debug(
            "[Tracker] Leaving %s %s open with %d (entry %.4f)",
            trade.side, trade.symbol, trade.quantity, trade.entry_price,
        )
        return trade
