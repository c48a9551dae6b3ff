"""Import a broker export from the command line and print the trades as JSON."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from .config import LOG_FORMAT, load_settings
from .errors import TradeImportError
from .parsers.format_detector import FORMAT_TAGS
from .pipeline import import_trades_sync

logger = logging.getLogger(__name__)


def _read_json(path: Optional[str]) -> Any:
    if not path:
        return None
    with open(path) as f:
        return json.load(f)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradeingest",
        description="Reconstruct trades from a brokerage execution export.",
    )
    parser.add_argument("file", help="CSV/TSV export to import")
    parser.add_argument(
        "--broker", default="auto", choices=("auto",) + FORMAT_TAGS,
        help="Format tag, or auto to detect it (default: auto)",
    )
    parser.add_argument(
        "--positions", type=str, default=None,
        help="JSON file with open positions from earlier imports",
    )
    parser.add_argument(
        "--executions", type=str, default=None,
        help="JSON file mapping symbol -> recorded executions",
    )
    parser.add_argument(
        "--mapping", type=str, default=None,
        help="JSON file with a custom column mapping for generic files",
    )
    parser.add_argument(
        "--no-grouping", action="store_true",
        help="Keep every round trip separate",
    )
    parser.add_argument(
        "--gap-minutes", type=int, default=None,
        help="Grouping window in minutes (default: 60)",
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Logging level (default: TRADEINGEST_LOG_LEVEL or INFO)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )

    grouping = {
        "enabled": settings.grouping_enabled and not args.no_grouping,
        "time_gap_minutes": (
            args.gap_minutes if args.gap_minutes is not None else settings.grouping_gap_minutes
        ),
    }
    context = {
        "existing_positions": _read_json(args.positions) or {},
        "existing_executions": _read_json(args.executions) or {},
        "custom_mapping": _read_json(args.mapping),
        "trade_grouping_settings": grouping,
    }

    data = Path(args.file).read_bytes()
    try:
        result = import_trades_sync(data, context, args.broker, settings=settings)
    except TradeImportError as e:
        logger.error("Import failed: %s", e)
        print(json.dumps({"error": e.to_dict()}, indent=2))
        return 1

    output = {
        "summary": result.summary(),
        "trades": [t.to_dict() for t in result.trades],
        "skipped_rows": [
            {"row": s.row_number, "reason": s.reason} for s in result.skipped_rows
        ],
    }
    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
