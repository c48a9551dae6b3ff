"""Merge closed trades entered close together into one logical position.

Scaling into a position usually shows up in an export as several round trips a
few minutes apart. When grouping is enabled, consecutive trades on the same
symbol and side whose entries fall within ``time_gap_minutes`` of the group's
most recent entry are combined.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Optional

from ..models import Trade
from ..schemas import TradeGroupingSettings

logger = logging.getLogger(__name__)


def _eligible(trade: Trade) -> bool:
    # Open positions and updates to stored trades keep their identity
    return not trade.is_open and not trade.is_update


def _merge_into(group: Trade, trade: Trade) -> None:
    total_qty = group.quantity + trade.quantity
    if total_qty > 0:
        group.entry_price = (
            group.entry_price * group.quantity + trade.entry_price * trade.quantity
        ) / total_qty
        if group.exit_price is not None and trade.exit_price is not None:
            group.exit_price = (
                group.exit_price * group.quantity + trade.exit_price * trade.quantity
            ) / total_qty

    group.quantity = total_qty
    group.fees += trade.fees
    group.pnl = (group.pnl or 0.0) + (trade.pnl or 0.0)
    group.entry_value += trade.entry_value
    group.exit_value += trade.exit_value
    if trade.exit_time is not None and (group.exit_time is None or trade.exit_time > group.exit_time):
        group.exit_time = trade.exit_time
    group.executions = group.executions + trade.executions
    group.group_count += trade.group_count
    group.pnl_percent = group.pnl / group.entry_value * 100 if group.entry_value else None
    if trade.notes and trade.notes not in group.notes:
        group.notes = f"{group.notes}; {trade.notes}" if group.notes else trade.notes


def apply_trade_grouping(
    trades: list[Trade], settings: Optional[TradeGroupingSettings] = None
) -> list[Trade]:
    """Group trades per symbol by side and entry-time gap.

    Returns a new list ordered by entry time then symbol. Trades that are not
    eligible for grouping pass through unchanged and do not break a group.
    """
    if settings is None:
        settings = TradeGroupingSettings()
    if not settings.enabled:
        return sorted(trades, key=lambda t: (t.entry_time, t.symbol))

    gap = timedelta(minutes=settings.time_gap_minutes)
    by_symbol: dict[str, list[Trade]] = defaultdict(list)
    for trade in trades:
        by_symbol[trade.symbol].append(trade)

    result: list[Trade] = []
    merged = 0
    for symbol_trades in by_symbol.values():
        group: Optional[Trade] = None
        last_entry = None
        for trade in sorted(symbol_trades, key=lambda t: t.entry_time):
            if not _eligible(trade):
                result.append(trade)
                continue
            if (
                group is not None
                and trade.side == group.side
                and trade.entry_time - last_entry <= gap
            ):
                _merge_into(group, trade)
                last_entry = trade.entry_time
                merged += 1
                continue
            group = trade
            last_entry = trade.entry_time
            result.append(group)

    if merged:
        logger.info(
            "[Grouping] Folded %d trades into existing groups (gap %d min), %d trades remain",
            merged, settings.time_gap_minutes, len(result),
        )
    return sorted(result, key=lambda t: (t.entry_time, t.symbol))
