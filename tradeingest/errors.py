"""Typed failures surfaced to the caller of an import.

Row-level problems never raise; they are recorded as skipped rows. Everything
here aborts the whole import so no partial results reach the caller.
"""

from __future__ import annotations

from typing import Optional


class TradeImportError(Exception):
    """Base class for import failures the caller must handle."""

    code = "IMPORT_FAILED"

    def __init__(self, message: str, *, broker: Optional[str] = None) -> None:
        super().__init__(message)
        self.broker = broker

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"code": self.code, "message": str(self), "broker": self.broker}


class ImportStructureError(TradeImportError):
    """An expected section or header row is missing from the file."""

    code = "INVALID_FILE_STRUCTURE"


class CurrencyEntitlementRequired(TradeImportError):
    """The file carries non-USD amounts and the caller is not entitled to conversion."""

    code = "CURRENCY_REQUIRES_PRO"

    def __init__(self, currencies: list[str], *, broker: Optional[str] = None) -> None:
        self.currencies = sorted(set(currencies))
        super().__init__(
            "Non-USD currency detected (%s). Currency conversion requires an upgraded plan."
            % ", ".join(self.currencies),
            broker=broker,
        )


class CurrencyConversionError(TradeImportError):
    """No converter was supplied, or the converter failed."""

    code = "CURRENCY_CONVERSION_FAILED"


class IdentifierResolutionError(TradeImportError):
    """The identifier resolver raised while mapping security codes to tickers."""

    code = "IDENTIFIER_RESOLUTION_FAILED"
