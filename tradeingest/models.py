"""Internal data model: per-fill Transactions and reconstructed Trades."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .parsers.instrument_classifier import InstrumentInfo


@dataclass(frozen=True)
class Transaction:
    """A single normalized broker fill."""

    symbol: str
    action: str  # buy | sell
    quantity: int  # always positive
    price: float
    timestamp: datetime  # UTC instant
    fees: float = 0.0
    fill_id: Optional[str] = None  # trade number, sequence number, order id, ref #
    settlement_code: Optional[str] = None  # open | partial | close
    identifier: Optional[str] = None  # raw security code (CUSIP) seen on the row
    currency: Optional[str] = None
    instrument: InstrumentInfo = field(default_factory=InstrumentInfo)
    broker: str = "generic"
    row_number: Optional[int] = None
    description: str = ""
    fill_quantity: Optional[int] = None  # broker-reported size when this is a split leg

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.action == "buy" else -self.quantity

    @property
    def multiplier(self) -> float:
        return self.instrument.multiplier

    @property
    def notional(self) -> float:
        return self.quantity * self.price * self.instrument.multiplier

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "price": self.price,
            "fees": self.fees,
            "datetime": self.timestamp.isoformat(),
            "fill_id": self.fill_id,
            "settlement_code": self.settlement_code,
            "fill_quantity": self.fill_quantity,
            "broker": self.broker,
        }


@dataclass
class Trade:
    """A reconstructed round trip, or a position that is still open."""

    symbol: str
    side: str  # long | short
    entry_time: datetime
    quantity: int = 0
    entry_price: float = 0.0
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    fees: float = 0.0
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    entry_value: float = 0.0
    exit_value: float = 0.0
    executions: list[Transaction] = field(default_factory=list)
    instrument: InstrumentInfo = field(default_factory=InstrumentInfo)
    group_count: int = 1
    is_update: bool = False
    existing_trade_id: Optional[str] = None
    broker: str = "generic"
    notes: str = ""
    currency: Optional[str] = None
    exchange_rate: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.exit_price is None

    @property
    def is_new_trade(self) -> bool:
        return not self.is_update

    @property
    def multiplier(self) -> float:
        return self.instrument.multiplier

    def to_seed(self) -> dict[str, Any]:
        """Shape an open trade the way a later import expects it back."""
        return {
            "id": self.existing_trade_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time.isoformat(),
            "fees": self.fees,
            "broker": self.broker,
            "executions": [e.to_dict() for e in self.executions],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "fees": self.fees,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "entry_value": self.entry_value,
            "exit_value": self.exit_value,
            "instrument": self.instrument.to_dict(),
            "group_count": self.group_count,
            "is_new_trade": self.is_new_trade,
            "is_update": self.is_update,
            "existing_trade_id": self.existing_trade_id,
            "broker": self.broker,
            "notes": self.notes,
            "currency": self.currency,
            "exchange_rate": self.exchange_rate,
            "executions": [e.to_dict() for e in self.executions],
        }


@dataclass
class SkippedRow:
    row_number: int
    reason: str


@dataclass
class ImportResult:
    """Everything one import produced."""

    broker: str
    trades: list[Trade] = field(default_factory=list)
    total_rows: int = 0
    skipped_rows: list[SkippedRow] = field(default_factory=list)
    duplicate_count: int = 0
    unresolved_identifiers: list[str] = field(default_factory=list)

    @property
    def new_trades(self) -> list[Trade]:
        return [t for t in self.trades if t.is_new_trade]

    @property
    def updated_trades(self) -> list[Trade]:
        return [t for t in self.trades if t.is_update]

    def summary(self) -> dict[str, Any]:
        return {
            "broker": self.broker,
            "total_rows": self.total_rows,
            "trades": len(self.trades),
            "new_trades": len(self.new_trades),
            "updated_trades": len(self.updated_trades),
            "open_trades": sum(1 for t in self.trades if t.is_open),
            "skipped_rows": len(self.skipped_rows),
            "duplicates": self.duplicate_count,
            "unresolved_identifiers": list(self.unresolved_identifiers),
        }
