"""Interactive Brokers HTML activity statement parsing."""

from integrations.ib_statement.parser import parse_statement
from integrations.ib_statement.types import (
    ContractKey,
    OpenOptionPosition,
    OpenPosition,
    OptionKind,
    OptionTradeEvent,
    ParsedStatement,
    RowIssue,
    StockTradeEvent,
    TradeAction,
)

__all__ = [
    "ContractKey",
    "OpenOptionPosition",
    "OpenPosition",
    "OptionKind",
    "OptionTradeEvent",
    "ParsedStatement",
    "RowIssue",
    "StockTradeEvent",
    "TradeAction",
    "parse_statement",
]
