"""Recognise fills that an earlier import already recorded.

History entries may be Transactions from this batch, ExecutionRecords from the
caller, or raw dicts straight from storage. Matching never raises: anything
that cannot be compared simply does not match.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, NamedTuple, Optional

from ..config import DEFAULT_DUPLICATE_PRICE_TOLERANCE, DEFAULT_DUPLICATE_WINDOW_MS
from ..models import Transaction
from ..parsers.values import as_instant, clean_text, parse_number
from ..schemas import ExecutionRecord

logger = logging.getLogger(__name__)

_ID_KEYS = (
    "fill_id", "fillId", "tradeNumber", "trade_number",
    "sequenceNumber", "sequence_number", "orderId", "order_id",
)
_TIME_KEYS = ("timestamp", "datetime", "time", "entryTime")


class Fingerprint(NamedTuple):
    fill_id: Optional[str]
    timestamp: Optional[datetime]
    quantity: float  # as the broker reported it, before any zero-crossing split
    price: float


def fingerprint(entry: Any) -> Fingerprint:
    """Comparable view of a fill in any of the supported shapes."""
    if isinstance(entry, Transaction):
        return Fingerprint(
            entry.fill_id, entry.timestamp, float(entry.fill_quantity or entry.quantity), entry.price
        )
    if isinstance(entry, ExecutionRecord):
        return Fingerprint(
            entry.fill_id, entry.timestamp, entry.fill_quantity or entry.quantity, entry.price
        )
    if isinstance(entry, dict):
        fill_id = next((clean_text(entry[k]) for k in _ID_KEYS if entry.get(k) not in (None, "")), "")
        raw_time = next((entry[k] for k in _TIME_KEYS if entry.get(k) not in (None, "")), None)
        return Fingerprint(
            fill_id or None,
            as_instant(raw_time),
            abs(parse_number(entry.get("fill_quantity") or entry.get("fillQuantity")))
            or abs(parse_number(entry.get("quantity"))),
            parse_number(entry.get("price")),
        )
    return Fingerprint(None, None, 0.0, 0.0)


def is_duplicate(
    fill: Any,
    symbol: str,
    history: Iterable[Any],
    *,
    window_ms: int = DEFAULT_DUPLICATE_WINDOW_MS,
    price_tolerance: float = DEFAULT_DUPLICATE_PRICE_TOLERANCE,
    fuzzy: bool = True,
) -> bool:
    """True when ``fill`` already appears in ``history`` for ``symbol``.

    Matching priority per history entry:
    1. both sides carry a broker id -> the ids decide
    2. otherwise timestamps within ``window_ms``, identical quantity and a
       price difference below ``price_tolerance``

    Missing or unparseable timestamps on either side never match.
    """
    candidate = fingerprint(fill)
    for entry in history:
        seen = fingerprint(entry)
        if candidate.fill_id and seen.fill_id:
            if candidate.fill_id == seen.fill_id:
                logger.debug("[Duplicates] %s fill id %s already recorded", symbol, seen.fill_id)
                return True
            continue
        if not fuzzy:
            continue
        if candidate.timestamp is None or seen.timestamp is None:
            continue
        gap_ms = abs((candidate.timestamp - seen.timestamp).total_seconds()) * 1000
        if (
            gap_ms <= window_ms
            and candidate.quantity == seen.quantity
            and abs(candidate.price - seen.price) < price_tolerance
        ):
            logger.debug(
                "[Duplicates] %s fill at %s matches recorded fill at %s",
                symbol, candidate.timestamp, seen.timestamp,
            )
            return True
    return False
