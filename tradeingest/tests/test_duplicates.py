"""Tests for cross-import duplicate fill detection."""

from datetime import datetime, timedelta, timezone

from tradeingest.models import Transaction
from tradeingest.reconcile.duplicates import fingerprint, is_duplicate
from tradeingest.schemas import ExecutionRecord

T0 = datetime(2024, 1, 15, 14, 30, tzinfo=timezone.utc)


def _fill(**overrides) -> Transaction:
    values = dict(symbol="AAPL", action="buy", quantity=100, price=150.0, timestamp=T0)
    values.update(overrides)
    return Transaction(**values)


class TestFillIds:
    def test_same_id_is_duplicate(self):
        history = [{"fill_id": "T1", "quantity": 5, "price": 1.0, "datetime": "2020-01-01T00:00:00Z"}]
        assert is_duplicate(_fill(fill_id="T1"), "AAPL", history)

    def test_different_ids_never_match_even_if_identical(self):
        history = [_fill(fill_id="T2")]
        assert not is_duplicate(_fill(fill_id="T1"), "AAPL", history)

    def test_camel_case_keys(self):
        history = [{"tradeNumber": 42, "quantity": "100", "price": "150"}]
        assert is_duplicate(_fill(fill_id="42"), "AAPL", history)


class TestFuzzyMatch:
    def test_within_window(self):
        history = [ExecutionRecord(quantity=100, price=150.005, timestamp=T0 + timedelta(milliseconds=800))]
        assert is_duplicate(_fill(), "AAPL", history)

    def test_outside_window(self):
        history = [ExecutionRecord(quantity=100, price=150.0, timestamp=T0 + timedelta(seconds=2))]
        assert not is_duplicate(_fill(), "AAPL", history)

    def test_quantity_must_match(self):
        history = [ExecutionRecord(quantity=99, price=150.0, timestamp=T0)]
        assert not is_duplicate(_fill(), "AAPL", history)

    def test_price_tolerance(self):
        history = [ExecutionRecord(quantity=100, price=150.02, timestamp=T0)]
        assert not is_duplicate(_fill(), "AAPL", history)

    def test_missing_timestamp_never_matches(self):
        history = [{"quantity": 100, "price": 150.0, "datetime": "not a date"}]
        assert not is_duplicate(_fill(), "AAPL", history)

    def test_one_sided_id_falls_back_to_fuzzy(self):
        history = [{"quantity": 100, "price": 150.0, "datetime": T0.isoformat()}]
        assert is_duplicate(_fill(fill_id="T9"), "AAPL", history)

    def test_fuzzy_disabled(self):
        history = [_fill()]
        assert not is_duplicate(_fill(), "AAPL", history, fuzzy=False)


def test_fingerprint_of_unknown_shape():
    fp = fingerprint(object())
    assert fp.fill_id is None
    assert fp.timestamp is None


def test_empty_history():
    assert not is_duplicate(_fill(), "AAPL", [])


class TestSplitLegs:
    def test_reported_size_matches_split_leg(self):
        history = [
            {"quantity": 100, "fill_quantity": 150, "price": 11.0, "datetime": T0.isoformat()},
            {"quantity": 50, "fill_quantity": 150, "price": 11.0, "datetime": T0.isoformat()},
        ]
        assert is_duplicate(_fill(action="sell", quantity=150, price=11.0), "AAPL", history)

    def test_leg_size_alone_is_not_the_fill(self):
        history = [ExecutionRecord(quantity=100, fill_quantity=150, price=11.0, timestamp=T0)]
        assert not is_duplicate(_fill(action="sell", quantity=100, price=11.0), "AAPL", history)

    def test_split_transaction_fingerprint(self):
        leg = _fill(quantity=50, fill_quantity=150)
        assert fingerprint(leg).quantity == 150.0
