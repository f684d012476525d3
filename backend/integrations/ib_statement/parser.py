"""Interactive Brokers HTML activity statement parser.

Turns a raw statement document into a :class:`ParsedStatement`. Only a
missing date, account alias or NAV block is fatal; numeric garbage parses
as zero and malformed position/trade rows are dropped and recorded on
``ParsedStatement.anomalies``.

Labels are matched in both the Traditional Chinese wording of the venue's
zh-TW statements and the English wording.
"""

import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation

from integrations.exceptions import RowAnomaly, StructuralParseError
from integrations.ib_statement.sections import (
    NAV,
    OPEN_POSITIONS,
    TRANSACTIONS,
    Section,
    SectionScanner,
)
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
from integrations.parsing_utils import parse_expiry, parse_number, parse_trade_timestamp

logger = logging.getLogger(__name__)

MONTH_NAMES = {
    # Chinese month names used in statement titles
    "一月": 1, "二月": 2, "三月": 3, "四月": 4,
    "五月": 5, "六月": 6, "七月": 7, "八月": 8,
    "九月": 9, "十月": 10, "十一月": 11, "十二月": 12,
    # English
    "january": 1, "february": 2, "march": 3, "april": 4,
    "may": 5, "june": 6, "july": 7, "august": 8,
    "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7,
    "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

_TITLE_DATE_RE = re.compile(
    r"(?:活動賬單|Activity Statement)\s+(\S+?)\.?\s+(\d{1,2}),\s*(\d{4})"
)

ALIAS_LABELS = ("賬戶化名", "Account Alias")
MANAGEMENT_FEE_LABELS = ("顧問費用", "Advisor Fees")
DEPOSIT_LABELS = ("存款和取款", "Deposits &amp; Withdrawals", "Deposits & Withdrawals")

NAV_CASH_LABELS = frozenset({"現金", "Cash"})
NAV_INTEREST_LABELS = frozenset({"應計利息", "Accrued Interest"})
NAV_TOTAL_LABELS = frozenset({"總數", "Total"})

STOCK_ASSET_LABELS = ("股票", "Stocks")
OPTION_ASSET_LABELS = ("股票和指數期權", "Equity and Index Options")

_HEADER_CELLS = frozenset({"代碼", "Symbol"})
_SUBTOTAL_PREFIXES = ("總數", "Total")

# Trailing trade codes; anything unlisted is CLOSE when it carries a "C" part, else OPEN
ACTION_CODES = {
    "O": TradeAction.OPEN,
    "C": TradeAction.CLOSE,
    "A;C": TradeAction.ASSIGN,
    "C;Ep": TradeAction.EXPIRE,
    "Ep;C": TradeAction.EXPIRE,
}

NAV_ROW_CELLS = 6
STOCK_ROW_CELLS = 4
OPTION_POSITION_ROW_CELLS = 8
OPTION_TRADE_ROW_CELLS = 11
STOCK_TRADE_ROW_CELLS = 11

# Currency sub-header rows inside the stock trades block
_CURRENCY_ROWS = frozenset({"USD"})


def parse_statement(document: str) -> ParsedStatement:
    """Parse an activity statement document.

    Args:
        document: Raw statement HTML.

    Returns:
        The typed statement contents.

    Raises:
        StructuralParseError: If the report date, account alias or NAV
            section cannot be located.
    """
    scanner = SectionScanner(document)

    statement = ParsedStatement(
        statement_date=_parse_statement_date(scanner),
        account_alias=_parse_alias(scanner),
    )

    nav = scanner.section(NAV)
    if nav is None:
        raise StructuralParseError("nav", "Statement has no net asset value section")
    _apply_nav_rows(statement, nav)

    # These sit in the NAV change panel, which may fall outside the NAV body
    statement.management_fee = parse_number(scanner.labeled_value(MANAGEMENT_FEE_LABELS))
    statement.net_deposit = parse_number(scanner.labeled_value(DEPOSIT_LABELS))

    positions = scanner.section(OPEN_POSITIONS)
    if positions is not None:
        stock_block = positions.asset_block(STOCK_ASSET_LABELS)
        if stock_block is not None:
            statement.open_positions = _parse_stock_positions(stock_block)
        option_block = positions.asset_block(OPTION_ASSET_LABELS)
        if option_block is not None:
            statement.open_option_positions = _parse_option_positions(
                option_block, statement.anomalies
            )

    transactions = scanner.section(TRANSACTIONS)
    if transactions is not None:
        stock_block = transactions.asset_block(STOCK_ASSET_LABELS)
        if stock_block is not None:
            statement.stock_trades = _parse_stock_trades(stock_block, statement.anomalies)
        option_block = transactions.asset_block(OPTION_ASSET_LABELS, stop_at_table_end=False)
        if option_block is not None:
            statement.option_trades = _parse_option_trades(option_block, statement.anomalies)

    logger.info(
        "Parsed statement %s for %s: %d stock positions, %d option positions, "
        "%d option trades, %d stock trades, %d dropped rows",
        statement.statement_date,
        statement.account_alias,
        len(statement.open_positions),
        len(statement.open_option_positions),
        len(statement.option_trades),
        len(statement.stock_trades),
        len(statement.anomalies),
    )
    return statement


# --- Header fields ---


def _parse_statement_date(scanner: SectionScanner) -> date:
    title = scanner.title()
    if not title:
        raise StructuralParseError("date", "Statement has no title to read the report date from")
    match = _TITLE_DATE_RE.search(title)
    if not match:
        raise StructuralParseError("date", f"Cannot read the report date from title: {title!r}")

    month_name, day, year = match.groups()
    month = MONTH_NAMES.get(month_name.lower())
    if month is None:
        raise StructuralParseError("date", f"Unrecognised month name: {month_name!r}")
    try:
        return date(int(year), month, int(day))
    except ValueError as e:
        raise StructuralParseError("date", f"Invalid report date in title: {title!r}") from e


def _parse_alias(scanner: SectionScanner) -> str:
    alias = scanner.labeled_value(ALIAS_LABELS)
    if not alias:
        raise StructuralParseError("alias", "Statement has no account alias")
    return alias


def _apply_nav_rows(statement: ParsedStatement, nav: Section) -> None:
    """Copy cash, accrued interest and total from the NAV table.

    Each data row is LABEL | prior total | long | short | current total |
    change. Later rows with the same label override earlier ones.
    """
    for cells in nav.rows(min_cells=NAV_ROW_CELLS):
        if len(cells) != NAV_ROW_CELLS:
            continue
        label, current_total = cells[0], cells[4]
        if label in NAV_CASH_LABELS:
            statement.cash_balance = parse_number(current_total)
        elif label in NAV_INTEREST_LABELS:
            statement.accrued_interest = parse_number(current_total)
        elif label in NAV_TOTAL_LABELS:
            statement.net_equity = parse_number(current_total)


# --- Rows ---


def _is_header_or_subtotal(first_cell: str) -> bool:
    return (
        not first_cell
        or first_cell in _HEADER_CELLS
        or first_cell.startswith(_SUBTOTAL_PREFIXES)
    )


def _parse_stock_positions(block: Section) -> list[OpenPosition]:
    """Open stock rows: Symbol | Quantity | Multiplier | Cost Price | ..."""
    positions = []
    for cells in block.rows(min_cells=STOCK_ROW_CELLS):
        symbol = cells[0]
        if _is_header_or_subtotal(symbol):
            continue
        quantity = parse_number(cells[1])
        cost_price = parse_number(cells[3])
        if quantity <= 0 or cost_price <= 0:
            continue
        positions.append(OpenPosition(symbol=symbol, quantity=quantity, cost_price=cost_price))
    return positions


def decode_option_identifier(code: str) -> ContractKey:
    """Decode ``"GOOGL 09JAN26 302.5 P"`` into a contract key.

    Raises:
        RowAnomaly: If the identifier doesn't follow the
            ``SYMBOL EXPIRY STRIKE KIND`` grammar.
    """
    parts = code.split()
    if len(parts) < 4:
        raise RowAnomaly(f"Option identifier has {len(parts)} parts, expected 4", row=code)
    underlying, expiry_token, strike_token, kind_token = parts[:4]

    expiry = parse_expiry(expiry_token)
    if expiry is None:
        raise RowAnomaly(f"Unrecognised option expiry: {expiry_token!r}", row=code)
    try:
        strike = Decimal(strike_token.replace(",", ""))
    except InvalidOperation:
        raise RowAnomaly(f"Unrecognised strike price: {strike_token!r}", row=code)
    if not strike.is_finite() or strike <= 0:
        raise RowAnomaly(f"Unrecognised strike price: {strike_token!r}", row=code)
    kind = OptionKind.from_code(kind_token)
    if kind is None:
        raise RowAnomaly(f"Unrecognised option kind: {kind_token!r}", row=code)

    return ContractKey(underlying=underlying, strike=strike, expiry=expiry, kind=kind)


def classify_action(code: str) -> TradeAction:
    """Map a trade row's trailing code to the trade action."""
    normalized = code.strip()
    if normalized in ACTION_CODES:
        return ACTION_CODES[normalized]
    parts = {part.strip() for part in normalized.split(";")}
    return TradeAction.CLOSE if "C" in parts else TradeAction.OPEN


def _parse_option_positions(block: Section, anomalies: list[RowIssue]) -> list[OpenOptionPosition]:
    """Open option rows: Symbol | Quantity | Mult | Cost Price | Cost Basis | Close | Value | Unrealized P/L"""
    positions = []
    for cells in block.rows(min_cells=OPTION_POSITION_ROW_CELLS):
        code = cells[0]
        if _is_header_or_subtotal(code):
            continue
        try:
            key = decode_option_identifier(code)
        except RowAnomaly as e:
            logger.warning("Dropped option position row %r: %s", code, e)
            anomalies.append(RowIssue(section="open_option_positions", row=code, reason=str(e)))
            continue

        quantity = abs(parse_number(cells[1]))
        if quantity <= 0:
            continue
        positions.append(
            OpenOptionPosition(
                key=key,
                quantity=quantity,
                cost_price=parse_number(cells[3]),
                premium=abs(parse_number(cells[4])),
            )
        )
    return positions


def _parse_option_trades(block: Section, anomalies: list[RowIssue]) -> list[OptionTradeEvent]:
    """Option trade rows.

    Symbol | Date/Time | Quantity | T. Price | C. Price | Proceeds |
    Comm/Tax | Basis | Realized P/L | MTM P/L | Code
    """
    trades = []
    for cells in block.rows(min_cells=OPTION_TRADE_ROW_CELLS):
        code, timestamp_text = cells[0], cells[1]
        if _is_header_or_subtotal(code) or not timestamp_text:
            continue
        try:
            key = decode_option_identifier(code)
            trade_time = parse_trade_timestamp(timestamp_text)
            if trade_time is None:
                raise RowAnomaly(f"Unrecognised trade timestamp: {timestamp_text!r}", row=code)
            quantity = abs(parse_number(cells[2]))
            if quantity <= 0:
                raise RowAnomaly("Trade quantity is zero", row=code)
        except RowAnomaly as e:
            logger.warning("Dropped option trade row %r: %s", code, e)
            anomalies.append(RowIssue(section="option_trades", row=code, reason=str(e)))
            continue

        trades.append(
            OptionTradeEvent(
                key=key,
                trade_time=trade_time,
                quantity=quantity,
                premium=abs(parse_number(cells[7])),
                realized_pnl=parse_number(cells[8]),
                action=classify_action(cells[10]),
                action_code=cells[10],
            )
        )
    return trades


def classify_stock_action(code: str) -> TradeAction | None:
    """OPEN for codes with an ``O`` part, CLOSE for a ``C`` part; a close wins."""
    parts = {part.strip() for part in code.split(";")}
    if "C" in parts:
        return TradeAction.CLOSE
    if "O" in parts:
        return TradeAction.OPEN
    return None


def _parse_stock_trades(block: Section, anomalies: list[RowIssue]) -> list[StockTradeEvent]:
    """Stock trade rows, same columns as option trades.

    Symbol | Date/Time | Quantity | T. Price | C. Price | Proceeds |
    Comm/Fee | Basis | Realized P/L | MTM P/L | Code
    """
    trades = []
    for cells in block.rows(min_cells=STOCK_TRADE_ROW_CELLS):
        symbol, timestamp_text = cells[0], cells[1]
        if _is_header_or_subtotal(symbol) or symbol in _CURRENCY_ROWS or not timestamp_text:
            continue
        try:
            trade_time = parse_trade_timestamp(timestamp_text)
            if trade_time is None:
                raise RowAnomaly(f"Unrecognised trade timestamp: {timestamp_text!r}", row=symbol)
            quantity = abs(parse_number(cells[2]))
            if quantity <= 0:
                raise RowAnomaly("Trade quantity is zero", row=symbol)
            action = classify_stock_action(cells[10])
            if action is None:
                raise RowAnomaly(f"Trade code {cells[10]!r} neither opens nor closes", row=symbol)
        except RowAnomaly as e:
            logger.warning("Dropped stock trade row %r: %s", symbol, e)
            anomalies.append(RowIssue(section="stock_trades", row=symbol, reason=str(e)))
            continue

        trades.append(
            StockTradeEvent(
                symbol=symbol,
                trade_time=trade_time,
                quantity=quantity,
                trade_price=parse_number(cells[3]),
                close_price=parse_number(cells[4]),
                realized_pnl=parse_number(cells[8]),
                action=action,
                action_code=cells[10],
            )
        )
    return trades
