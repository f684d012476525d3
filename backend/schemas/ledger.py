"""Pydantic schemas for ledger reads."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class StockLotResponse(BaseModel):
    """Schema for StockLot API response."""

    id: str
    owner_id: str
    year: int
    symbol: str
    status: str
    open_date: date
    open_price: Decimal
    quantity: Decimal
    code: str
    source: str | None = None
    close_date: date | None = None
    close_price: Decimal | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OptionLotResponse(BaseModel):
    """Schema for OptionLot API response."""

    id: str
    owner_id: str
    year: int
    operation: str
    underlying: str
    option_type: str
    strike_price: Decimal
    expiry_date: date
    open_date: datetime
    settlement_date: date | None = None
    days_held: int | None = None
    quantity: Decimal
    premium: Decimal
    final_profit: Decimal | None = None
    profit_percent: Decimal | None = None
    code: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
