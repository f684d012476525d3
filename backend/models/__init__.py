"""SQLAlchemy ORM models."""

from .daily_net_equity import DailyNetEquity
from .option_lot import OptionLot
from .owner import Owner
from .stock_lot import StockLot
from .utils import generate_uuid

__all__ = ["DailyNetEquity", "OptionLot", "Owner", "StockLot", "generate_uuid"]
