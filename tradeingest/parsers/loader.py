"""
Turn export text into raw row records for the row parsers.

Exports rarely start at their header row:
- Lightspeed puts a title line above the header
- thinkorswim account statements hold several sections; only the one under
  "DATE,TIME,TYPE" carries trades
- PaperMoney files contain Working, Filled and Canceled order sections and
  only "Filled Orders" is relevant
- Schwab ledgers may be tab separated, or lack the header row entirely

Missing sections are structural failures and abort the import.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import pandas as pd

from ..config import DEFAULT_DETECT_SCAN_LINES
from ..errors import ImportStructureError
from .format_detector import find_header_line
from .values import clean_text

logger = logging.getLogger(__name__)

# A header-less Schwab export starts with a data row this wide
_HEADERLESS_MIN_FIELDS = 20

_PAPERMONEY_SECTION_ENDS = ("canceled orders", "cancelled orders", "rolling strategies")

RawRecord = Union[dict[str, str], list[str]]


@dataclass
class LoadedRecords:
    records: list[RawRecord] = field(default_factory=list)
    row_numbers: list[int] = field(default_factory=list)  # 1-based file line numbers
    columns: list[str] = field(default_factory=list)
    positional: bool = False

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(zip(self.row_numbers, self.records))


def _first_line(lines: list[str], start: int = 0) -> Optional[int]:
    for idx in range(start, len(lines)):
        if lines[idx].strip():
            return idx
    return None


def _slice_thinkorswim(lines: list[str]) -> tuple[int, int]:
    for idx, line in enumerate(lines):
        if "DATE,TIME,TYPE" in line.upper():
            end = idx + 1
            while end < len(lines) and lines[end].strip():
                end += 1
            return idx, end
    logger.error("[Loader] thinkorswim statement has no DATE,TIME,TYPE section")
    raise ImportStructureError(
        'Could not find the "DATE,TIME,TYPE" trade section in thinkorswim statement',
        broker="thinkorswim",
    )


def _slice_papermoney(lines: list[str]) -> tuple[int, int]:
    title = next(
        (i for i, line in enumerate(lines) if "filled orders" in line.lower()), None
    )
    if title is None:
        logger.error("[Loader] PaperMoney export has no Filled Orders section")
        raise ImportStructureError(
            'Could not find "Filled Orders" section in PaperMoney export', broker="papermoney"
        )

    header = None
    for idx in range(title + 1, len(lines)):
        lower = lines[idx].lower()
        if "exec time" in lower and "side" in lower and "qty" in lower:
            header = idx
            break
    if header is None:
        logger.error("[Loader] PaperMoney Filled Orders section has no header row")
        raise ImportStructureError(
            "PaperMoney Filled Orders section has no Exec Time/Side/Qty header",
            broker="papermoney",
        )

    end = header + 1
    while end < len(lines):
        lower = lines[end].strip().lower()
        if not lower or any(marker in lower for marker in _PAPERMONEY_SECTION_ENDS):
            break
        end += 1
    return header, end


def _section_bounds(
    lines: list[str], broker: str, scan_lines: int
) -> tuple[Optional[int], int]:
    """Header line index and exclusive end line for ``broker``."""
    if broker == "thinkorswim":
        return _slice_thinkorswim(lines)
    if broker == "papermoney":
        return _slice_papermoney(lines)

    start = _first_line(lines)
    if start is None:
        return None, 0

    if broker != "generic":
        header = find_header_line("\n".join(lines), broker, scan_lines)
        if header is not None:
            start = header
        elif broker == "lightspeed" and "," not in lines[start]:
            # Title row without delimiters above the header
            nxt = _first_line(lines, start + 1)
            start = nxt if nxt is not None else start
    return start, len(lines)


def _detect_separator(header_line: str) -> str:
    if "\t" in header_line and "," not in header_line:
        return "\t"
    return ","


def _read_frame(text: str, sep: str, headerless: bool) -> pd.DataFrame:
    try:
        return pd.read_csv(
            io.StringIO(text),
            sep=sep,
            header=None if headerless else 0,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
            skipinitialspace=True,
            engine="python",
            on_bad_lines="skip",
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except pd.errors.ParserError as e:
        raise ImportStructureError(f"Unreadable CSV content: {e}") from e


def load_records(
    text: str,
    broker: str,
    scan_lines: int = DEFAULT_DETECT_SCAN_LINES,
) -> LoadedRecords:
    """Slice the relevant section of ``text`` and read it into raw records.

    Records are dicts keyed by cleaned header names, or plain lists for
    header-less Schwab files.
    """
    lines = text.splitlines()
    start, end = _section_bounds(lines, broker, scan_lines)
    if start is None:
        return LoadedRecords()

    section = lines[start:end]
    sep = _detect_separator(section[0])
    first_fields = section[0].split(sep)
    headerless = (
        broker == "schwab"
        and len(first_fields) > _HEADERLESS_MIN_FIELDS
        and "symbol" not in section[0].lower()
    )
    if headerless:
        logger.info("[Loader] %s file is missing its header row, using column positions", broker)
    if sep == "\t":
        logger.info("[Loader] Detected tab-separated %s file", broker)

    df = _read_frame("\n".join(section), sep, headerless)
    if df.empty:
        return LoadedRecords(positional=headerless)

    df = df.fillna("")
    first_data_line = start + (1 if not headerless else 0) + 1

    loaded = LoadedRecords(positional=headerless)
    if headerless:
        for offset, values in enumerate(df.itertuples(index=False, name=None)):
            cells = [clean_text(v) for v in values]
            if any(cells):
                loaded.records.append(cells)
                loaded.row_numbers.append(first_data_line + offset)
        return loaded

    loaded.columns = [clean_text(c).lstrip("\ufeff") for c in df.columns]
    df.columns = loaded.columns
    for offset, row in enumerate(df.to_dict("records")):
        record: dict[str, Any] = {k: clean_text(v) for k, v in row.items()}
        if any(record.values()):
            loaded.records.append(record)
            loaded.row_numbers.append(first_data_line + offset)

    logger.info(
        "[Loader] Read %d %s rows (columns: %s)", len(loaded), broker, loaded.columns
    )
    return loaded
