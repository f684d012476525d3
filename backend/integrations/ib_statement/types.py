"""Typed records extracted from an activity statement."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class OptionKind(str, Enum):
    CALL = "CALL"
    PUT = "PUT"

    @classmethod
    def from_code(cls, code: str) -> "OptionKind | None":
        """Map the trailing ``C``/``P`` of an option identifier."""
        return {"C": cls.CALL, "P": cls.PUT}.get(code.strip().upper())


class TradeAction(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    ASSIGN = "ASSIGN"
    EXPIRE = "EXPIRE"


@dataclass(frozen=True)
class ContractKey:
    """Identifies one option contract within an owner's ledger."""

    underlying: str
    strike: Decimal
    expiry: date
    kind: OptionKind

    def __str__(self) -> str:
        return f"{self.underlying} {self.expiry:%d%b%y} {self.strike.normalize():f} {self.kind.value[0]}".upper()


@dataclass(frozen=True)
class OpenPosition:
    """An open stock position row."""

    symbol: str
    quantity: Decimal
    cost_price: Decimal


@dataclass(frozen=True)
class OpenOptionPosition:
    """An open option position row."""

    key: ContractKey
    quantity: Decimal
    cost_price: Decimal
    premium: Decimal


@dataclass(frozen=True)
class OptionTradeEvent:
    """One option trade row from the transactions section."""

    key: ContractKey
    trade_time: datetime
    quantity: Decimal
    premium: Decimal
    realized_pnl: Decimal
    action: TradeAction
    action_code: str = ""


@dataclass(frozen=True)
class StockTradeEvent:
    """One stock trade row from the transactions section.

    ``action`` is OPEN for a buy that opens a position and CLOSE for a sale
    that closes one.
    """

    symbol: str
    trade_time: datetime
    quantity: Decimal
    trade_price: Decimal
    close_price: Decimal
    realized_pnl: Decimal
    action: TradeAction
    action_code: str = ""


@dataclass(frozen=True)
class RowIssue:
    """A statement row that was dropped during parsing."""

    section: str
    row: str
    reason: str


@dataclass
class ParsedStatement:
    """Everything extracted from one activity statement."""

    statement_date: date
    account_alias: str
    cash_balance: Decimal = Decimal("0")
    accrued_interest: Decimal = Decimal("0")
    net_equity: Decimal = Decimal("0")
    management_fee: Decimal = Decimal("0")
    net_deposit: Decimal = Decimal("0")
    open_positions: list[OpenPosition] = field(default_factory=list)
    open_option_positions: list[OpenOptionPosition] = field(default_factory=list)
    option_trades: list[OptionTradeEvent] = field(default_factory=list)
    stock_trades: list[StockTradeEvent] = field(default_factory=list)
    anomalies: list[RowIssue] = field(default_factory=list)

    @property
    def year(self) -> int:
        return self.statement_date.year

    @property
    def is_year_start(self) -> bool:
        """True for a January 1st statement, which carries opening balances."""
        return self.statement_date.month == 1 and self.statement_date.day == 1

    @property
    def date_str(self) -> str:
        """Display date in ``YY-MM-DD`` form."""
        return self.statement_date.strftime("%y-%m-%d")
