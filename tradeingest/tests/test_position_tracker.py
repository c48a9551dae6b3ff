"""Tests for round-trip reconstruction in the position tracker."""

from datetime import date, datetime, timedelta, timezone

import pytest

from tradeingest.models import Transaction
from tradeingest.parsers.instrument_classifier import classify
from tradeingest.reconcile.position_tracker import PositionTracker, split_at_zero
from tradeingest.schemas import ImportContext, SeedPosition

T0 = datetime(2024, 1, 15, 14, 30, tzinfo=timezone.utc)


def fill(action, quantity, price, minutes=0, symbol="AAPL", fees=0.0, fill_id=None, **extra):
    return Transaction(
        symbol=symbol,
        action=action,
        quantity=quantity,
        price=price,
        timestamp=T0 + timedelta(minutes=minutes),
        fees=fees,
        fill_id=fill_id,
        instrument=classify(symbol),
        **extra,
    )


def build(fills, **kwargs):
    return PositionTracker().build_trades(fills[0].symbol, fills, **kwargs)


# ── Scenarios ──────────────────────────────────────────────────────────────

def test_simple_long_round_trip():
    trades = build([fill("buy", 100, 10.0), fill("sell", 100, 12.0, minutes=5)])
    assert len(trades) == 1
    trade = trades[0]
    assert trade.side == "long"
    assert trade.quantity == 100
    assert trade.entry_price == pytest.approx(10.0)
    assert trade.exit_price == pytest.approx(12.0)
    assert trade.pnl == pytest.approx(200.0)
    assert trade.pnl_percent == pytest.approx(20.0)
    assert trade.entry_time == T0
    assert trade.exit_time == T0 + timedelta(minutes=5)
    assert trade.is_new_trade


def test_seeded_position_closes_as_update():
    seed = SeedPosition(id="trade-1", symbol="AAPL", side="long", quantity=50, entry_price=10.0,
                        entry_time=T0 - timedelta(days=1))
    trades = build([fill("sell", 50, 11.0)], seed=seed)
    assert len(trades) == 1
    trade = trades[0]
    assert trade.is_update
    assert trade.existing_trade_id == "trade-1"
    assert trade.quantity == 50
    assert trade.entry_price == pytest.approx(10.0)
    assert trade.exit_price == pytest.approx(11.0)
    assert trade.pnl == pytest.approx(50.0)
    assert trade.entry_time == T0 - timedelta(days=1)


def test_option_round_trip_uses_contract_multiplier():
    trades = build([
        fill("buy", 2, 3.0, symbol="AAPL230120C00150000"),
        fill("sell", 2, 5.0, minutes=30, symbol="AAPL230120C00150000"),
    ])
    trade = trades[0]
    assert trade.instrument.is_option
    assert trade.instrument.strike == 150.0
    assert trade.instrument.expiry == date(2023, 1, 20)
    assert trade.instrument.option_type == "call"
    assert trade.quantity == 2
    assert trade.entry_value == pytest.approx(600.0)
    assert trade.exit_value == pytest.approx(1000.0)
    assert trade.pnl == pytest.approx(400.0)


def test_same_fill_id_in_second_file_changes_nothing():
    first = build([fill("buy", 100, 10.0, fill_id="A1")])
    assert first[0].is_open

    seed = SeedPosition.model_validate(first[0].to_seed())
    again = build([fill("buy", 100, 10.0, fill_id="A1")], seed=seed)
    assert again == []


def test_short_round_trip_with_fees():
    trades = build([
        fill("sell", 10, 50.0, fees=1.0),
        fill("buy", 10, 45.0, minutes=3, fees=1.0),
    ])
    trade = trades[0]
    assert trade.side == "short"
    assert trade.fees == pytest.approx(2.0)
    assert trade.pnl == pytest.approx(48.0)


def test_futures_point_value():
    trades = build([
        fill("buy", 1, 5000.0, symbol="ESM4"),
        fill("sell", 1, 5002.0, minutes=1, symbol="ESM4"),
    ])
    assert trades[0].pnl == pytest.approx(100.0)
    assert trades[0].quantity == 1


def test_scaling_in_and_out():
    trades = build([
        fill("buy", 100, 10.0),
        fill("buy", 100, 12.0, minutes=1),
        fill("sell", 50, 13.0, minutes=2),
        fill("sell", 150, 14.0, minutes=3),
    ])
    trade = trades[0]
    assert trade.quantity == 200
    assert trade.entry_price == pytest.approx(11.0)
    assert trade.exit_price == pytest.approx((50 * 13 + 150 * 14) / 200)
    assert len(trade.executions) == 4


def test_open_position_left_at_end():
    trades = build([fill("buy", 100, 10.0), fill("sell", 40, 11.0, minutes=1)])
    trade = trades[0]
    assert trade.is_open
    assert trade.quantity == 60
    assert trade.exit_time is None
    assert trade.pnl is None
    assert trade.pnl_percent is None
    assert trade.entry_price == pytest.approx(10.0)


def test_out_of_order_fills_are_sorted():
    trades = build([fill("sell", 100, 12.0, minutes=5), fill("buy", 100, 10.0)])
    assert len(trades) == 1
    assert trades[0].side == "long"


def test_consecutive_round_trips():
    trades = build([
        fill("buy", 10, 10.0),
        fill("sell", 10, 11.0, minutes=1),
        fill("sell", 5, 12.0, minutes=2),
        fill("buy", 5, 11.0, minutes=3),
    ])
    assert [t.side for t in trades] == ["long", "short"]
    assert all(not t.is_open for t in trades)


# ── Zero-crossing split ────────────────────────────────────────────────────

class TestZeroCrossing:
    def test_flip_is_split_into_two_trades(self):
        trades = build([
            fill("buy", 100, 10.0, fees=1.0, fill_id="B1"),
            fill("sell", 150, 11.0, minutes=1, fees=3.0, fill_id="S1"),
        ])
        assert len(trades) == 2
        closed, opened = trades
        assert closed.side == "long"
        assert closed.quantity == 100
        assert closed.exit_price == pytest.approx(11.0)
        assert closed.fees == pytest.approx(1.0 + 2.0)
        assert closed.pnl == pytest.approx(100.0 - 3.0)

        assert opened.side == "short"
        assert opened.is_open
        assert opened.quantity == 50
        assert opened.entry_price == pytest.approx(11.0)
        assert opened.fees == pytest.approx(1.0)
        assert opened.executions[0].fill_id == "S1"
        assert opened.executions[0].settlement_code == "open"

    def test_split_at_zero_helper(self):
        legs = split_at_zero(fill("sell", 150, 11.0, fees=3.0), position=100)
        assert [leg.quantity for leg in legs] == [100, 50]
        assert [leg.fill_quantity for leg in legs] == [150, 150]
        assert sum(leg.fees for leg in legs) == pytest.approx(3.0)

    def test_no_split_when_not_crossing(self):
        assert len(split_at_zero(fill("sell", 100, 11.0), position=100)) == 1
        assert len(split_at_zero(fill("buy", 100, 11.0), position=100)) == 1
        assert len(split_at_zero(fill("sell", 100, 11.0), position=0)) == 1

    def test_split_counted_in_stats(self):
        tracker = PositionTracker()
        tracker.build_trades("AAPL", [fill("buy", 10, 1.0), fill("sell", 20, 1.0, minutes=1)])
        assert tracker.stats["zero_crossing_splits"] == 1


# ── Duplicates vs. position arithmetic ─────────────────────────────────────

class TestDuplicateArithmetic:
    def test_duplicate_does_not_move_position(self):
        history = [{"fill_id": "S1", "quantity": 50, "price": 11.0}]
        tracker = PositionTracker()
        trades = tracker.build_trades(
            "AAPL",
            [fill("buy", 100, 10.0, fill_id="B1"), fill("sell", 50, 11.0, minutes=1, fill_id="S1")],
            history=history,
        )
        assert tracker.duplicate_count == 1
        assert len(trades) == 1
        assert trades[0].is_open
        assert trades[0].quantity == 100
        assert [e.fill_id for e in trades[0].executions] == ["B1"]

    def test_duplicate_never_opens_a_trade(self):
        history = [{"fill_id": "B1"}]
        trades = build([fill("buy", 100, 10.0, fill_id="B1")], history=history)
        assert trades == []

    def test_seed_quantity_survives_reimport(self):
        seed = SeedPosition(
            id="t-9", symbol="AAPL", side="long", quantity=100, entry_price=10.0,
            executions=[{"fill_id": "B1", "action": "buy", "quantity": 100, "price": 10.0,
                         "datetime": T0.isoformat()}],
        )
        tracker = PositionTracker()
        trades = tracker.build_trades(
            "AAPL",
            [fill("buy", 100, 10.0, fill_id="B1"), fill("sell", 100, 12.0, minutes=10, fill_id="S1")],
            seed=seed,
        )
        assert tracker.duplicate_count == 1
        assert len(trades) == 1
        trade = trades[0]
        assert trade.is_update
        assert trade.quantity == 100
        assert trade.pnl == pytest.approx(200.0)

    def test_repeated_id_within_one_file(self):
        tracker = PositionTracker()
        trades = tracker.build_trades(
            "AAPL",
            [fill("buy", 10, 10.0, fill_id="X"), fill("buy", 10, 10.0, fill_id="X")],
        )
        assert tracker.duplicate_count == 1
        assert trades[0].quantity == 10

    def test_identical_partial_fills_without_ids_are_kept(self):
        tracker = PositionTracker()
        trades = tracker.build_trades(
            "AAPL",
            [fill("buy", 10, 10.0), fill("buy", 10, 10.0), fill("sell", 20, 11.0, minutes=1)],
        )
        assert tracker.duplicate_count == 0
        assert trades[0].quantity == 20
        assert not trades[0].is_open


# ── Seeds ──────────────────────────────────────────────────────────────────

def test_untouched_seed_is_not_emitted():
    seed = SeedPosition(id="t-1", symbol="AAPL", side="long", quantity=50, entry_price=10.0,
                        executions=[{"fill_id": "B1", "quantity": 50, "price": 10.0}])
    trades = build([fill("buy", 50, 10.0, fill_id="B1")], seed=seed)
    assert trades == []


def test_seed_extended_but_still_open():
    seed = SeedPosition(id="t-1", symbol="AAPL", side="long", quantity=50, entry_price=10.0,
                        entry_time=T0 - timedelta(days=2))
    trades = build([fill("buy", 50, 12.0)], seed=seed)
    trade = trades[0]
    assert trade.is_open
    assert trade.is_update
    assert trade.quantity == 100
    assert trade.entry_price == pytest.approx(11.0)
    assert trade.entry_time == T0 - timedelta(days=2)


def test_short_seed():
    seed = SeedPosition(symbol="TSLA", side="short", quantity=10, entry_price=200.0)
    trades = build([fill("buy", 10, 190.0, symbol="TSLA")], seed=seed)
    assert trades[0].side == "short"
    assert trades[0].pnl == pytest.approx(100.0)


def test_process_looks_up_option_seed_by_underlying():
    option = "AAPL230120C00150000"
    context = ImportContext(existing_positions={
        "AAPL": {"id": "opt-1", "symbol": option, "side": "long", "quantity": 2, "entry_price": 3.0},
    })
    trades = PositionTracker().process([fill("sell", 2, 5.0, symbol=option)], context)
    assert len(trades) == 1
    assert trades[0].existing_trade_id == "opt-1"
    assert trades[0].pnl == pytest.approx(400.0)


def test_stock_seed_is_not_used_for_option_fills():
    option = "AAPL230120C00150000"
    context = ImportContext(existing_positions={
        "AAPL": {"symbol": "AAPL", "side": "long", "quantity": 100, "entry_price": 150.0},
    })
    trades = PositionTracker().process([fill("buy", 2, 5.0, symbol=option)], context)
    assert trades[0].is_new_trade
    assert trades[0].quantity == 2


@pytest.mark.parametrize("stored", [
    "AAPL230120P00150000",  # put against a call
    "AAPL230120C00160000",  # other strike
    "AAPL230217C00150000",  # other expiry
])
def test_other_contract_on_same_underlying_is_not_used(stored):
    option = "AAPL230120C00150000"
    context = ImportContext(existing_positions={
        "AAPL": {"id": "opt-2", "symbol": stored, "side": "long", "quantity": 2, "entry_price": 3.0},
    })
    trades = PositionTracker().process([fill("sell", 2, 5.0, symbol=option)], context)
    assert len(trades) == 1
    assert trades[0].is_new_trade
    assert trades[0].side == "short"
    assert trades[0].existing_trade_id is None


def test_close_hint_opening_a_trade_is_logged(caplog):
    with caplog.at_level("WARNING"):
        build([fill("sell", 10, 10.0, settlement_code="close")])
    assert any("closing fill" in r.message for r in caplog.records)


# ── Properties ─────────────────────────────────────────────────────────────

_MIXED_STREAM = [
    ("buy", 100, 10.0), ("buy", 50, 10.5), ("sell", 120, 11.0), ("sell", 80, 11.5),
    ("buy", 30, 11.2), ("sell", 10, 11.0), ("buy", 60, 10.8), ("sell", 40, 10.9),
]


def _mixed_trades(symbol="AAPL"):
    fills = [fill(a, q, p, minutes=i, symbol=symbol) for i, (a, q, p) in enumerate(_MIXED_STREAM)]
    return build(fills)


@pytest.mark.parametrize("symbol", ["AAPL", "AAPL230120C00150000", "NQU24"])
def test_value_consistency(symbol):
    for trade in _mixed_trades(symbol):
        mult = trade.instrument.multiplier
        if trade.is_open:
            continue
        assert trade.quantity * mult * trade.entry_price == pytest.approx(trade.entry_value)
        assert trade.quantity * mult * trade.exit_price == pytest.approx(trade.exit_value)


def test_position_continuity():
    for trade in _mixed_trades():
        position = 0
        for execution in trade.executions:
            before = position
            position += execution.signed_quantity
            # a trade's running position never changes sign
            assert before * position >= 0
            if trade.side == "long":
                assert position >= 0
            else:
                assert position <= 0
        if not trade.is_open:
            assert position == 0
