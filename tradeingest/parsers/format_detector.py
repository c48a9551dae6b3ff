"""Format detection for uploaded brokerage trade exports.

Checks the first non-empty lines of a file against a priority-ordered table of
header signatures. Every signature needs all of its tokens on the same line,
so at most one broker claims a given header. Unknown layouts fall back to the
generic parser.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..config import DEFAULT_DETECT_SCAN_LINES

logger = logging.getLogger(__name__)

FORMAT_TAGS = (
    "generic",
    "lightspeed",
    "thinkorswim",
    "tradingview",
    "schwab",
    "schwab_transactions",
    "ibkr",
    "ibkr_trade_confirmation",
    "etrade",
    "papermoney",
    "projectx",
)


@dataclass
class FormatMatch:
    broker: str
    line_index: Optional[int]  # None for the generic fallback
    header_line: str = ""


# ---------------------------------------------------------------------------
# Signatures (checked top to bottom)
# ---------------------------------------------------------------------------
#
# all_of:     every token must appear on the line
# any_groups: each group needs at least one token on the line
# none_of:    no token may appear on the line
# any_of_alternatives: matches when every token of one alternative appears
#                      on the line
# window_any: at least one token anywhere in the scanned lines

_SIGNATURES: list[tuple[str, dict[str, Any]]] = [
    ("thinkorswim", {"all_of": ["date", "time", "type", "ref #", "description"]}),
    ("tradingview", {
        "all_of": ["symbol", "side", "fill price", "status", "order id", "leverage"],
    }),
    ("lightspeed", {
        "any_groups": [
            ["trade number", "sequence number"],
            ["execution time", "raw exec"],
            ["commission amount", "feesec"],
        ],
    }),
    ("papermoney", {"all_of": ["exec time", "pos effect", "spread"]}),
    ("schwab", {
        "any_of_alternatives": [
            ["opened date", "closed date", "gain/loss"],
            ["symbol", "quantity", "cost per share", "proceeds per share"],
        ],
    }),
    ("schwab_transactions", {
        "all_of": ["action", "fees & comm", "date", "symbol", "description"],
    }),
    ("ibkr_trade_confirmation", {
        "all_of": ["underlyingsymbol", "strike", "expiry", "put/call", "multiplier", "buy/sell"],
    }),
    ("ibkr", {
        "all_of": ["symbol", "quantity", "price"],
        "any_groups": [["date/time", "datetime"]],
        "none_of": ["action"],
    }),
    ("etrade", {
        "all_of": ["transaction date", "transaction type"],
        "window_any": ["buy", "sell", "bought", "sold"],
    }),
    ("projectx", {
        "all_of": ["contractname", "enteredat", "exitedat", "pnl", "tradeduration"],
    }),
]


def _line_matches(line: str, rules: dict[str, Any], window: str) -> bool:
    alternatives = rules.get("any_of_alternatives")
    if alternatives is not None:
        return any(all(tok in line for tok in alt) for alt in alternatives)
    if not all(tok in line for tok in rules.get("all_of", [])):
        return False
    for group in rules.get("any_groups", []):
        if not any(tok in line for tok in group):
            return False
    if any(tok in line for tok in rules.get("none_of", [])):
        return False
    window_any = rules.get("window_any")
    if window_any and not any(tok in window for tok in window_any):
        return False
    return True


def decode_export(data: Union[bytes, str]) -> str:
    """Bytes to text: UTF-8 (BOM tolerant) with a Latin-1 fallback."""
    if isinstance(data, str):
        return data.lstrip("\ufeff")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _candidate_lines(text: str, scan_lines: int) -> list[tuple[int, str]]:
    candidates: list[tuple[int, str]] = []
    for idx, raw in enumerate(text.splitlines()):
        stripped = raw.strip().lstrip("\ufeff")
        if stripped:
            candidates.append((idx, stripped))
        if len(candidates) >= scan_lines:
            break
    return candidates


def detect(
    data: Union[bytes, str],
    scan_lines: int = DEFAULT_DETECT_SCAN_LINES,
) -> FormatMatch:
    """Detect the broker format of a CSV/TSV export.

    1. Take the first ``scan_lines`` non-empty lines
    2. Walk the signatures in priority order
    3. Fall back to generic when nothing matches

    Never raises.
    """
    candidates = _candidate_lines(decode_export(data), scan_lines)
    window = "\n".join(line.lower() for _, line in candidates)

    for broker, rules in _SIGNATURES:
        for idx, line in candidates:
            if _line_matches(line.lower(), rules, window):
                logger.info(
                    "[FormatDetector] Detected %s (header on line %d): %s",
                    broker, idx + 1, line[:200],
                )
                return FormatMatch(broker=broker, line_index=idx, header_line=line)

    logger.info("[FormatDetector] No signature matched, using generic parser")
    return FormatMatch(broker="generic", line_index=None)


def find_header_line(
    text: str,
    broker: str,
    scan_lines: int = DEFAULT_DETECT_SCAN_LINES,
) -> Optional[int]:
    """Line index of ``broker``'s header row, or None when it is not near the top."""
    rules = dict(_SIGNATURES).get(broker)
    if rules is None:
        return None
    candidates = _candidate_lines(text, scan_lines)
    window = "\n".join(line.lower() for _, line in candidates)
    for idx, line in candidates:
        if _line_matches(line.lower(), rules, window):
            return idx
    return None


def detect_broker_format(data: Union[bytes, str], scan_lines: int = DEFAULT_DETECT_SCAN_LINES) -> str:
    """Return only the format tag for ``data``."""
    return detect(data, scan_lines).broker
