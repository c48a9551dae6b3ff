"""Tests for broker format detection and record loading."""

import pytest

from tradeingest.errors import ImportStructureError
from tradeingest.parsers.format_detector import (
    decode_export,
    detect,
    detect_broker_format,
    find_header_line,
)
from tradeingest.parsers.loader import load_records

THINKORSWIM = """Account Statement for 12345 since 1/1/24 through 1/31/24

Cash Balance
DATE,TIME,TYPE,REF #,DESCRIPTION,Misc Fees,Commissions & Fees,AMOUNT,BALANCE
1/15/24,09:35:00,TRD,1001,BOT +100 AAPL @150.25,-0.01,-1.00,"-15,026.01","84,973.99"
1/15/24,10:10:00,TRD,1002,SOLD -100 AAPL @151.00,-0.02,-1.00,"15,098.98","100,072.97"
1/16/24,00:00:00,BAL,,Cash balance,,,,"100,072.97"

Futures Statements
DATE,TIME,TYPE,REF #,DESCRIPTION
"""

LIGHTSPEED = """Lightspeed Trade Report
Trade Date,Symbol,Side,Qty,Price,Trade Number,Execution Time,Commission Amount,FeeSEC,FeeTAF
01/15/2024,AAPL,B,100,150.00,T1,09:30:00,1.00,0.00,0.01
"""

TRADINGVIEW = (
    "Symbol,Side,Type,Qty,Limit Price,Stop Price,Fill Price,Status,Commission,"
    "Leverage,Margin,Placing Time,Closing Time,Order ID\n"
    "NASDAQ:AAPL,Buy,Market,10,,,150.00,Filled,0,,,2024-01-15 14:30:00,2024-01-15 14:30:01,9001\n"
)

PAPERMONEY = """Today's Trade Activity for 123PAPER

Working Orders
,,Time Placed,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,PRICE,,TIF,Status

Filled Orders
,,Exec Time,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,Price,Net Price,Price Improvement,Order Type
,,1/15/24 10:05:32,STOCK,BUY,+100,TO OPEN,AAPL,,,STOCK,150.00,150.00,,MKT

Canceled Orders
,,Time Canceled,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,PRICE,,TIF,Status
"""

SCHWAB_GAIN_LOSS = (
    "Symbol,Name,Closed Date,Opened Date,Quantity,Proceeds Per Share,Cost Per Share,"
    "Proceeds,Cost Basis (CB),Gain/Loss ($),Gain/Loss (%),Term,Wash Sale?\n"
    "AAPL,APPLE INC,01/10/2024,01/02/2024,10,$190.00,$185.00,$1900.00,$1850.00,$50.00,2.7%,Short Term,No\n"
)

SCHWAB_TRANSACTIONS = (
    "Date,Action,Symbol,Description,Quantity,Price,Fees & Comm,Amount\n"
    "01/16/2024,Buy,AAPL,APPLE INC,10,$185.00,$0.00,-$1850.00\n"
)

IBKR = (
    "Symbol,Date/Time,Quantity,T. Price,Comm/Fee,Code\n"
    '"AAPL","2024-01-15, 10:30:00",100,185.50,-1.00,O\n'
)

IBKR_CONFIRMATION = (
    "Symbol,UnderlyingSymbol,Strike,Expiry,Put/Call,Multiplier,Buy/Sell,Quantity,Price,"
    "Date/Time,Commission,TradeID\n"
    "AAPL  240119C00150000,AAPL,150,20240119,C,100,BUY,2,3.50,20240115;103000,-1.30,55\n"
)

ETRADE = (
    "Transaction Date,Transaction Type,Symbol,Quantity,Price,Commission,Fees,Description\n"
    "01/15/2024,Bought,AAPL,10,150.00,0,0,APPLE INC\n"
)

PROJECTX = (
    "\ufeffId,ContractName,EnteredAt,ExitedAt,EntryPrice,ExitPrice,Fees,PnL,Size,Type,"
    "TradeDay,TradeDuration,Commissions\n"
    "777,MNQZ4,2024-12-02T14:30:00+00:00,2024-12-02T14:45:00+00:00,21000,21010,0.74,40,2,Long,"
    "2024-12-02,00:15:00,0.50\n"
)

GENERIC = "Symbol,Date,Side,Quantity,Price\nAAPL,2024-01-15,Buy,10,150\n"


@pytest.mark.parametrize("text,expected", [
    (THINKORSWIM, "thinkorswim"),
    (LIGHTSPEED, "lightspeed"),
    (TRADINGVIEW, "tradingview"),
    (PAPERMONEY, "papermoney"),
    (SCHWAB_GAIN_LOSS, "schwab"),
    (SCHWAB_TRANSACTIONS, "schwab_transactions"),
    (IBKR, "ibkr"),
    (IBKR_CONFIRMATION, "ibkr_trade_confirmation"),
    (ETRADE, "etrade"),
    (PROJECTX, "projectx"),
    (GENERIC, "generic"),
])
def test_detects_each_format(text, expected):
    assert detect_broker_format(text) == expected


def test_bytes_with_bom():
    assert detect_broker_format(PROJECTX.encode("utf-8")) == "projectx"


def test_match_reports_header_line():
    match = detect(LIGHTSPEED)
    assert match.broker == "lightspeed"
    assert match.line_index == 1
    assert match.header_line.startswith("Trade Date")


def test_undecodable_or_empty_input_is_generic():
    assert detect_broker_format(b"") == "generic"
    assert detect_broker_format(b"\xff\xfe\x00garbage\x81") == "generic"


def test_header_beyond_scan_window_is_not_seen():
    padding = "\n".join(f"note {i}" for i in range(12))
    assert detect_broker_format(padding + "\n" + LIGHTSPEED, scan_lines=10) == "generic"


def test_etrade_needs_trade_words():
    header_only = "Transaction Date,Transaction Type,Symbol,Quantity,Price\n01/15/2024,Dividend,AAPL,0,0\n"
    assert detect_broker_format(header_only) == "generic"


def test_decode_latin1_fallback():
    assert decode_export("Café".encode("latin-1")) == "Café"


def test_find_header_line():
    assert find_header_line(LIGHTSPEED, "lightspeed") == 1
    assert find_header_line(GENERIC, "lightspeed") is None


class TestLoader:
    def test_thinkorswim_section_only(self):
        loaded = load_records(THINKORSWIM, "thinkorswim")
        assert len(loaded) == 3
        assert loaded.records[0]["DESCRIPTION"] == "BOT +100 AAPL @150.25"
        assert loaded.row_numbers[0] == 5

    def test_thinkorswim_missing_section(self):
        with pytest.raises(ImportStructureError):
            load_records("Account Statement\nnothing here\n", "thinkorswim")

    def test_papermoney_filled_orders_only(self):
        loaded = load_records(PAPERMONEY, "papermoney")
        assert len(loaded) == 1
        assert loaded.records[0]["Exec Time"] == "1/15/24 10:05:32"
        assert loaded.records[0]["Pos Effect"] == "TO OPEN"

    def test_papermoney_missing_section(self):
        with pytest.raises(ImportStructureError) as exc:
            load_records("Working Orders\n,,Time Placed,Side\n", "papermoney")
        assert exc.value.code == "INVALID_FILE_STRUCTURE"

    def test_lightspeed_title_row_skipped(self):
        loaded = load_records(LIGHTSPEED, "lightspeed")
        assert loaded.columns[0] == "Trade Date"
        assert loaded.records[0]["Trade Number"] == "T1"

    def test_tab_separated(self):
        text = SCHWAB_TRANSACTIONS.replace(",", "\t")
        loaded = load_records(text, "schwab_transactions")
        assert loaded.records[0]["Fees & Comm"] == "$0.00"

    def test_headerless_schwab_uses_positions(self):
        row = ",".join(
            ["AAPL", "APPLE INC", "01/10/2024", "01/02/2024", "10", "190.00", "185.00",
             "1900.00", "1850.00", "50.00", "2.7", "", "", "Short Term", "", "No"]
            + [""] * 6
        )
        loaded = load_records(row + "\n", "schwab")
        assert loaded.positional
        assert loaded.records[0][0] == "AAPL"
        assert loaded.records[0][9] == "50.00"

    def test_empty_text(self):
        assert len(load_records("", "generic")) == 0
