"""Request models for what the caller hands to an import.

Seeds and execution history usually come straight out of a database as JSON,
so the models accept both snake_case and the camelCase keys older records use.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import load_settings
from .parsers.instrument_classifier import InstrumentInfo, classify
from .parsers.values import as_instant, clean_text, parse_number


class _CallerModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _optional_id(value: Any) -> Optional[str]:
    text = clean_text(value)
    return text or None


class ExecutionRecord(_CallerModel):
    """A fill that was recorded by an earlier import."""

    action: Optional[str] = Field(None, validation_alias=AliasChoices("action", "side"))
    quantity: float = 0.0
    price: float = 0.0
    timestamp: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("timestamp", "datetime", "time", "entryTime")
    )
    fees: float = Field(0.0, validation_alias=AliasChoices("fees", "commission"))
    fill_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "fill_id", "fillId", "tradeNumber", "trade_number",
            "sequenceNumber", "sequence_number", "orderId", "order_id",
        ),
    )
    fill_quantity: Optional[float] = Field(
        None, validation_alias=AliasChoices("fill_quantity", "fillQuantity")
    )

    @field_validator("timestamp", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value: Any) -> Optional[datetime]:
        # Bad timestamps are kept as None; the duplicate check treats them as no match
        return as_instant(value)

    @field_validator("quantity", "price", "fees", mode="before")
    @classmethod
    def _lenient_number(cls, value: Any) -> float:
        return abs(parse_number(value))

    @field_validator("fill_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Optional[str]:
        return _optional_id(value)

    @field_validator("fill_quantity", mode="before")
    @classmethod
    def _lenient_fill_quantity(cls, value: Any) -> Optional[float]:
        number = parse_number(value, default=None)
        return abs(number) if number else None


class SeedPosition(_CallerModel):
    """An open position left over from a previous import."""

    id: Optional[str] = Field(None, validation_alias=AliasChoices("id", "trade_id", "tradeId"))
    symbol: str
    side: str = "long"
    quantity: float
    entry_price: float = Field(validation_alias=AliasChoices("entry_price", "entryPrice"))
    entry_time: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("entry_time", "entryTime")
    )
    fees: float = Field(0.0, validation_alias=AliasChoices("fees", "commission"))
    broker: Optional[str] = None
    executions: list[ExecutionRecord] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Optional[str]:
        return _optional_id(value)

    @field_validator("symbol", mode="before")
    @classmethod
    def _upper_symbol(cls, value: Any) -> str:
        return clean_text(value).upper()

    @field_validator("side", mode="before")
    @classmethod
    def _normalize_side(cls, value: Any) -> str:
        text = clean_text(value).lower()
        return "short" if text in ("short", "sell") else "long"

    @field_validator("quantity", "entry_price", "fees", mode="before")
    @classmethod
    def _lenient_number(cls, value: Any) -> float:
        return abs(parse_number(value))

    @field_validator("entry_time", mode="before")
    @classmethod
    def _lenient_entry_time(cls, value: Any) -> Optional[datetime]:
        return as_instant(value)


class CustomColumnMapping(_CallerModel):
    """User-defined column names for the generic parser."""

    mapping_name: Optional[str] = None
    symbol_column: str
    quantity_column: str
    entry_price_column: str
    side_column: Optional[str] = None
    entry_date_column: Optional[str] = None
    entry_time_column: Optional[str] = None
    fees_column: Optional[str] = None


class TradeGroupingSettings(_CallerModel):
    enabled: bool = True
    time_gap_minutes: int = Field(
        60, ge=0, validation_alias=AliasChoices("time_gap_minutes", "timeGapMinutes")
    )


def default_grouping_settings() -> TradeGroupingSettings:
    settings = load_settings()
    return TradeGroupingSettings(
        enabled=settings.grouping_enabled,
        time_gap_minutes=max(settings.grouping_gap_minutes, 0),
    )


class ImportContext(_CallerModel):
    """Caller-supplied state for one import."""

    existing_positions: dict[str, SeedPosition] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("existing_positions", "existingPositions"),
    )
    existing_executions: dict[str, list[ExecutionRecord]] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("existing_executions", "existingExecutions"),
    )
    custom_mapping: Optional[CustomColumnMapping] = Field(
        None, validation_alias=AliasChoices("custom_mapping", "customColumnMapping")
    )
    trade_grouping_settings: TradeGroupingSettings = Field(
        default_factory=default_grouping_settings,
        validation_alias=AliasChoices("trade_grouping_settings", "tradeGroupingSettings"),
    )
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))
    currency_conversion_entitled: bool = False
    imported_at: Optional[datetime] = None

    @field_validator("existing_positions", mode="before")
    @classmethod
    def _key_positions(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list):
            return {
                clean_text(p["symbol"] if isinstance(p, dict) else p.symbol).upper(): p
                for p in value
            }
        return {clean_text(k).upper(): v for k, v in value.items()}

    @field_validator("existing_executions", mode="before")
    @classmethod
    def _key_executions(cls, value: Any) -> Any:
        if value is None:
            return {}
        return {clean_text(k).upper(): v for k, v in value.items()}

    @field_validator("imported_at", mode="before")
    @classmethod
    def _utc_imported_at(cls, value: Any) -> Optional[datetime]:
        return as_instant(value)

    def find_seed(
        self, symbol: str, instrument: Optional[InstrumentInfo] = None
    ) -> Optional[SeedPosition]:
        """Seed for ``symbol``; options fall back to their underlying symbol.

        The fallback only accepts a seed for the same contract: strike,
        expiry and call/put must all agree.
        """
        seed = self.existing_positions.get(symbol.upper())
        if seed is not None or instrument is None or not instrument.is_option:
            return seed
        if not instrument.underlying:
            return None
        seed = self.existing_positions.get(instrument.underlying.upper())
        if seed is None:
            return None
        contract = classify(seed.symbol)
        if (
            not contract.is_option
            or contract.strike != instrument.strike
            or contract.expiry != instrument.expiry
            or contract.option_type != instrument.option_type
        ):
            return None
        return seed

    def history_for(self, symbol: str) -> list[ExecutionRecord]:
        return list(self.existing_executions.get(symbol.upper(), []))
