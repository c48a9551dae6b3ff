"""Brokerage execution import and trade reconstruction."""

from .errors import (
    CurrencyConversionError,
    CurrencyEntitlementRequired,
    IdentifierResolutionError,
    ImportStructureError,
    TradeImportError,
)
from .models import ImportResult, SkippedRow, Trade, Transaction
from .pipeline import import_trades, import_trades_sync, reconcile
from .schemas import (
    CustomColumnMapping,
    ExecutionRecord,
    ImportContext,
    SeedPosition,
    TradeGroupingSettings,
)

__version__ = "0.1.0"

__all__ = [
    "import_trades",
    "import_trades_sync",
    "reconcile",
    "ImportContext",
    "SeedPosition",
    "ExecutionRecord",
    "CustomColumnMapping",
    "TradeGroupingSettings",
    "Trade",
    "Transaction",
    "ImportResult",
    "SkippedRow",
    "TradeImportError",
    "ImportStructureError",
    "CurrencyEntitlementRequired",
    "CurrencyConversionError",
    "IdentifierResolutionError",
]
