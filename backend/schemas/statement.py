"""Pydantic schemas for statement import responses.

Serialized with camelCase keys (``positionsSync``, ``closedSkipped``).
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RowIssueResponse(CamelModel):
    section: str
    row: str
    reason: str


class NetEquityRecordResponse(CamelModel):
    """An existing daily NAV row the import would overwrite."""

    record_date: date
    net_equity: Decimal
    cash_balance: Decimal
    interest: Decimal
    deposit: Decimal
    management_fee: Decimal


class StockPositionAction(CamelModel):
    action: str
    symbol: str
    quantity: Decimal
    cost_price: Decimal
    source: str | None = None


class OptionContractFields(CamelModel):
    underlying: str
    option_type: str
    strike_price: Decimal
    expiry_date: date


class OptionPositionAction(OptionContractFields):
    action: str
    quantity: Decimal
    cost_price: Decimal
    premium: Decimal


class LotAllocationResponse(CamelModel):
    """The part of a closing trade applied to one open lot."""

    lot_id: str | None = None
    lot_code: str | None = None
    consumed: Decimal
    remaining: Decimal
    premium: Decimal
    profit: Decimal
    profit_percent: Decimal
    days_held: int
    partial: bool


class OptionTradeAction(OptionContractFields):
    action: str
    trade_action: str
    trade_time: datetime
    quantity: Decimal
    premium: Decimal
    realized_pnl: Decimal
    matched_quantity: Decimal = Decimal("0")
    unmatched_quantity: Decimal = Decimal("0")
    allocations: list[LotAllocationResponse] = []


class StockAllocationResponse(CamelModel):
    """The shares of a stock sale taken from one open lot."""

    lot_id: str | None = None
    lot_code: str | None = None
    consumed: Decimal
    remaining: Decimal
    close_price: Decimal
    partial: bool


class StockTradeAction(CamelModel):
    action: str
    trade_action: str
    symbol: str
    trade_time: datetime
    quantity: Decimal
    trade_price: Decimal
    realized_pnl: Decimal
    source: str | None = None
    matched_quantity: Decimal = Decimal("0")
    unmatched_quantity: Decimal = Decimal("0")
    allocations: list[StockAllocationResponse] = []


class StatementPreviewResponse(CamelModel):
    """Parsed header fields plus one planned action per statement record."""

    mode: str = "preview"
    statement_date: date
    date_str: str
    year: int
    alias: str
    owner_id: str
    owner_name: str
    is_year_start: bool
    cash_balance: Decimal
    accrued_interest: Decimal
    net_equity: Decimal
    management_fee: Decimal
    net_deposit: Decimal
    existing_record: NetEquityRecordResponse | None = None
    latest_record_date: date | None = None
    positions: list[StockPositionAction] = []
    open_options: list[OptionPositionAction] = []
    option_trades: list[OptionTradeAction] = []
    stock_trades: list[StockTradeAction] = []
    anomalies: list[RowIssueResponse] = []


class SyncCountsResponse(CamelModel):
    added: int
    skipped: int


class TradeSyncCountsResponse(SyncCountsResponse):
    closed: int
    closed_skipped: int


class StatementConfirmResponse(CamelModel):
    """Per-category counters of what a confirmed import wrote."""

    mode: str = "confirm"
    action: str
    statement_date: date
    date_str: str
    alias: str
    owner_id: str
    positions_sync: SyncCountsResponse
    open_options_sync: SyncCountsResponse
    options_sync: TradeSyncCountsResponse
    stock_trades_sync: TradeSyncCountsResponse
    anomalies: list[RowIssueResponse] = []
    orphans: list[OptionTradeAction] = []
    stock_orphans: list[StockTradeAction] = []
