"""Reconciliation planner - decides how each statement record affects the ledger.

Planning is read-only. It walks the statement in a fixed order (stock
positions, option positions, option trades, stock trades) and emits one
:class:`Action` per record with a verdict. Closing trades (close / assign
/ expire) are matched against open lots of the same contract key
oldest-first (FIFO), including lots that earlier rows of the same
statement decided to add. Stock sales are matched the same way against
open lots of the same symbol.

In-pass effects are tracked in an immutable :class:`SimulationContext`
that every planning step receives and returns, so Preview and Confirm
run exactly the same logic: Preview discards the plan, Confirm applies
it.
"""

import hashlib
import logging
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from types import MappingProxyType
from typing import Protocol

from integrations.ib_statement.types import (
    ContractKey,
    OpenOptionPosition,
    OpenPosition,
    OptionTradeEvent,
    ParsedStatement,
    StockTradeEvent,
    TradeAction,
)
from models.option_lot import OPTION_ASSIGNED, OPTION_CLOSED, OPTION_EXPIRED
from models.stock_lot import SOURCE_ASSIGNED

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
RATIO_PLACES = Decimal("0.0001")
PRICE_PLACES = Decimal("0.000001")
ZERO = Decimal("0")


class Verdict(str, Enum):
    SYNC_ADD = "sync_add"
    ADD = "add"
    SKIP_EXISTS = "skip_exists"
    SKIP_COVERED = "skip_covered"
    SKIP_APPLIED = "skip_applied"
    CLOSE = "close"
    ASSIGN = "assign"
    EXPIRE = "expire"
    CLOSE_ORPHAN = "close_orphan"
    ASSIGN_ORPHAN = "assign_orphan"
    EXPIRE_ORPHAN = "expire_orphan"

    @property
    def is_addition(self) -> bool:
        return self in (Verdict.SYNC_ADD, Verdict.ADD)

    @property
    def is_orphan(self) -> bool:
        return self in (Verdict.CLOSE_ORPHAN, Verdict.ASSIGN_ORPHAN, Verdict.EXPIRE_ORPHAN)


_MATCHED_VERDICTS = {
    TradeAction.CLOSE: Verdict.CLOSE,
    TradeAction.ASSIGN: Verdict.ASSIGN,
    TradeAction.EXPIRE: Verdict.EXPIRE,
}
_ORPHAN_VERDICTS = {
    TradeAction.CLOSE: Verdict.CLOSE_ORPHAN,
    TradeAction.ASSIGN: Verdict.ASSIGN_ORPHAN,
    TradeAction.EXPIRE: Verdict.EXPIRE_ORPHAN,
}
TERMINAL_OPERATIONS = {
    TradeAction.CLOSE: OPTION_CLOSED,
    TradeAction.ASSIGN: OPTION_ASSIGNED,
    TradeAction.EXPIRE: OPTION_EXPIRED,
}

STOCK_POSITION = "stock_position"
OPTION_POSITION = "option_position"
OPTION_TRADE = "option_trade"
STOCK_TRADE = "stock_trade"


@dataclass(frozen=True)
class LotRef:
    """Points at a persisted lot (by id) or a lot added earlier in this pass."""

    lot_id: str | None = None
    pending_index: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.pending_index is not None


@dataclass(frozen=True)
class OpenLotView:
    """What the planner knows about one open option lot."""

    ref: LotRef
    key: ContractKey
    open_date: datetime
    quantity: Decimal
    premium: Decimal
    code: str | None = None


@dataclass(frozen=True)
class LotAllocation:
    """The share of a closing trade assigned to one open lot."""

    ref: LotRef
    lot_quantity: Decimal
    lot_premium: Decimal
    consumed: Decimal
    premium_portion: Decimal
    profit: Decimal
    profit_percent: Decimal
    settlement_date: date
    days_held: int

    @property
    def is_partial(self) -> bool:
        return self.consumed < self.lot_quantity

    @property
    def remaining_quantity(self) -> Decimal:
        return self.lot_quantity - self.consumed

    @property
    def remaining_premium(self) -> Decimal:
        return self.lot_premium - self.premium_portion


@dataclass(frozen=True)
class StockLotView:
    """What the planner knows about one open stock lot."""

    ref: LotRef
    symbol: str
    open_date: date
    quantity: Decimal
    open_price: Decimal
    code: str | None = None


@dataclass(frozen=True)
class StockAllocation:
    """The shares of a stock sale taken from one open lot."""

    ref: LotRef
    lot_quantity: Decimal
    consumed: Decimal
    close_price: Decimal
    close_date: date

    @property
    def is_partial(self) -> bool:
        return self.consumed < self.lot_quantity

    @property
    def remaining_quantity(self) -> Decimal:
        return self.lot_quantity - self.consumed


@dataclass(frozen=True)
class Action:
    """A planned ledger effect for one parsed statement record."""

    category: str
    verdict: Verdict
    record: OpenPosition | OpenOptionPosition | OptionTradeEvent | StockTradeEvent
    allocations: tuple[LotAllocation, ...] | tuple[StockAllocation, ...] = ()
    unmatched_quantity: Decimal = ZERO
    new_lot: OpenLotView | StockLotView | None = None
    close_ref: str | None = None
    source: str | None = None

    @property
    def matched_quantity(self) -> Decimal:
        return sum((a.consumed for a in self.allocations), ZERO)

    @property
    def terminal_operation(self) -> str | None:
        if isinstance(self.record, OptionTradeEvent):
            return TERMINAL_OPERATIONS.get(self.record.action)
        return None


class LedgerReader(Protocol):
    """Read access to one owner's ledger, as needed for planning."""

    def has_open_stock_lot(self, symbol: str, year: int) -> bool: ...

    def stock_held_on(self, symbol: str, year: int, on: date) -> bool: ...

    def has_stock_opened_on(self, symbol: str, year: int, open_date: date) -> bool: ...

    def open_stock_lots(self, symbol: str, year: int) -> list[StockLotView]: ...

    def has_open_option_lot(self, key: ContractKey) -> bool: ...

    def option_held_on(self, key: ContractKey, on: date) -> bool: ...

    def has_option_opened_at(self, key: ContractKey, open_date: datetime, year: int) -> bool: ...

    def open_option_lots(self, key: ContractKey) -> list[OpenLotView]: ...

    def close_applied(self, close_ref: str) -> bool: ...


@dataclass(frozen=True)
class SimulationContext:
    """Immutable view of the ledger as planning has changed it so far.

    Combines the persisted open lots read per contract key, the lots this
    pass has decided to add (``pending``), and the remaining quantity and
    premium of every lot a closing trade has already consumed from. The
    ``stock_*`` fields hold the same state for stock lots, keyed by symbol;
    pending indexes of the two ledgers are independent.
    """

    persisted: Mapping[ContractKey, tuple[OpenLotView, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    pending: tuple[OpenLotView, ...] = ()
    remaining: Mapping[LotRef, tuple[Decimal, Decimal]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    stock_persisted: Mapping[str, tuple[StockLotView, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    stock_pending: tuple[StockLotView, ...] = ()
    stock_remaining: Mapping[LotRef, Decimal] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def with_persisted(self, key: ContractKey, ledger: LedgerReader) -> "SimulationContext":
        """Read the persisted open lots for ``key`` once per pass."""
        if key in self.persisted:
            return self
        lots = tuple(ledger.open_option_lots(key))
        return replace(self, persisted=MappingProxyType({**self.persisted, key: lots}))

    def with_pending(self, lot: OpenLotView) -> tuple["SimulationContext", OpenLotView]:
        """Register a lot this pass adds; returns the lot with its pending ref."""
        pending_lot = replace(lot, ref=LotRef(pending_index=len(self.pending)))
        return replace(self, pending=self.pending + (pending_lot,)), pending_lot

    def with_allocation(self, allocation: LotAllocation) -> "SimulationContext":
        state = (allocation.remaining_quantity, allocation.remaining_premium)
        return replace(
            self, remaining=MappingProxyType({**self.remaining, allocation.ref: state})
        )

    def current(self, lot: OpenLotView) -> OpenLotView | None:
        """The lot as it stands after this pass's allocations, or None once fully consumed."""
        if lot.ref not in self.remaining:
            return lot
        quantity, premium = self.remaining[lot.ref]
        if quantity <= 0:
            return None
        return replace(lot, quantity=quantity, premium=premium)

    def candidates(self, key: ContractKey) -> list[OpenLotView]:
        """Open lots for ``key`` in FIFO order: persisted by open date, then pending in add order."""
        ordered = list(self.persisted.get(key, ()))
        ordered.extend(lot for lot in self.pending if lot.key == key)
        return [lot for lot in (self.current(lot) for lot in ordered) if lot is not None]

    def with_stock_persisted(
        self, symbol: str, year: int, ledger: LedgerReader
    ) -> "SimulationContext":
        if symbol in self.stock_persisted:
            return self
        lots = tuple(ledger.open_stock_lots(symbol, year))
        return replace(
            self, stock_persisted=MappingProxyType({**self.stock_persisted, symbol: lots})
        )

    def with_stock_pending(self, lot: StockLotView) -> tuple["SimulationContext", StockLotView]:
        pending_lot = replace(lot, ref=LotRef(pending_index=len(self.stock_pending)))
        return replace(self, stock_pending=self.stock_pending + (pending_lot,)), pending_lot

    def with_stock_allocation(self, allocation: StockAllocation) -> "SimulationContext":
        return replace(
            self,
            stock_remaining=MappingProxyType(
                {**self.stock_remaining, allocation.ref: allocation.remaining_quantity}
            ),
        )

    def stock_candidates(self, symbol: str) -> list[StockLotView]:
        """Open stock lots for ``symbol`` in FIFO order, with this pass's sales taken out."""
        ordered = list(self.stock_persisted.get(symbol, ()))
        ordered.extend(lot for lot in self.stock_pending if lot.symbol == symbol)
        lots = []
        for lot in ordered:
            quantity = self.stock_remaining.get(lot.ref, lot.quantity)
            if quantity > 0:
                lots.append(replace(lot, quantity=quantity))
        return lots


@dataclass
class StatementPlan:
    """Ordered actions for one statement."""

    stock_actions: list[Action]
    option_position_actions: list[Action]
    trade_actions: list[Action]
    context: SimulationContext
    stock_trade_actions: list[Action] = field(default_factory=list)

    @property
    def orphans(self) -> list[Action]:
        return [a for a in self.trade_actions if a.verdict.is_orphan]

    @property
    def stock_orphans(self) -> list[Action]:
        return [a for a in self.stock_trade_actions if a.verdict.is_orphan]


def plan_statement(
    statement: ParsedStatement,
    ledger: LedgerReader,
    context: SimulationContext | None = None,
) -> StatementPlan:
    """Plan the ledger effects of a parsed statement.

    Records are planned strictly in statement order; later trade rows
    depend on the lots earlier rows add or consume.

    Args:
        statement: Parsed statement
        ledger: Read access to the owner's ledger
        context: Starting simulation state (empty by default)

    Returns:
        A StatementPlan whose action lists mirror the statement's record lists.
    """
    context = context or SimulationContext()
    statement_date = statement.statement_date

    assigned_symbols = {
        t.key.underlying for t in statement.option_trades if t.action is TradeAction.ASSIGN
    }
    stock_trades = merge_stock_opens(statement.stock_trades)
    bought_symbols = {t.symbol for t in stock_trades if t.action is TradeAction.OPEN}
    stock_actions = [
        _plan_stock_position(
            position, statement.year, statement_date, ledger, assigned_symbols, bought_symbols
        )
        for position in statement.open_positions
    ]

    opened_keys = {t.key for t in statement.option_trades if t.action is TradeAction.OPEN}
    position_open_date = datetime.combine(statement_date, time())
    option_position_actions = []
    for position in statement.open_option_positions:
        action, context = _plan_option_position(
            position, position_open_date, statement.year, ledger, opened_keys, context
        )
        option_position_actions.append(action)

    trade_actions = []
    occurrences: Counter[str] = Counter()
    for event in statement.option_trades:
        if event.action is TradeAction.OPEN:
            action, context = _plan_open_event(event, statement.year, ledger, context)
        else:
            identity = _event_identity(event)
            close_ref = _fingerprint(identity, occurrences[identity])
            occurrences[identity] += 1
            action, context = _plan_closing_event(event, close_ref, ledger, context)
        trade_actions.append(action)

    stock_trade_actions = []
    for trade in stock_trades:
        if trade.action is TradeAction.OPEN:
            action, context = _plan_stock_buy(
                trade, statement.year, statement_date, ledger, assigned_symbols, context
            )
        else:
            identity = _stock_trade_identity(trade)
            close_ref = _fingerprint(identity, occurrences[identity])
            occurrences[identity] += 1
            action, context = _plan_stock_sale(
                trade, statement.year, statement_date, close_ref, ledger, context
            )
        stock_trade_actions.append(action)

    return StatementPlan(
        stock_actions=stock_actions,
        option_position_actions=option_position_actions,
        trade_actions=trade_actions,
        context=context,
        stock_trade_actions=stock_trade_actions,
    )


def merge_stock_opens(trades: list[StockTradeEvent]) -> list[StockTradeEvent]:
    """Fold each symbol's buys into one trade at the weighted-average price.

    The merged buy takes the place of the symbol's first buy; sales keep
    their order.
    """
    merged: list[StockTradeEvent] = []
    first_buy: dict[str, int] = {}
    for trade in trades:
        if trade.action is not TradeAction.OPEN:
            merged.append(trade)
            continue
        index = first_buy.get(trade.symbol)
        if index is None:
            first_buy[trade.symbol] = len(merged)
            merged.append(trade)
            continue
        earlier = merged[index]
        quantity = earlier.quantity + trade.quantity
        cost = earlier.trade_price * earlier.quantity + trade.trade_price * trade.quantity
        merged[index] = replace(
            earlier,
            quantity=quantity,
            trade_price=(cost / quantity).quantize(PRICE_PLACES, rounding=ROUND_HALF_UP),
            realized_pnl=earlier.realized_pnl + trade.realized_pnl,
        )
    return merged


def _plan_stock_position(
    position: OpenPosition,
    year: int,
    statement_date: date,
    ledger: LedgerReader,
    assigned_symbols: set[str],
    bought_symbols: set[str],
) -> Action:
    if position.symbol in bought_symbols:
        # The same-statement buy opens the lot at its traded price
        return Action(STOCK_POSITION, Verdict.SKIP_COVERED, position)
    # Add-only: an existing Open lot is never rewritten from a snapshot row
    if ledger.has_open_stock_lot(position.symbol, year) or ledger.stock_held_on(
        position.symbol, year, statement_date
    ):
        return Action(STOCK_POSITION, Verdict.SKIP_EXISTS, position)
    source = SOURCE_ASSIGNED if position.symbol in assigned_symbols else None
    return Action(STOCK_POSITION, Verdict.SYNC_ADD, position, source=source)


def _plan_option_position(
    position: OpenOptionPosition,
    open_date: datetime,
    year: int,
    ledger: LedgerReader,
    opened_keys: set[ContractKey],
    context: SimulationContext,
) -> tuple[Action, SimulationContext]:
    if position.key in opened_keys:
        # The same-statement OPEN trade carries the real open date and premium
        return Action(OPTION_POSITION, Verdict.SKIP_COVERED, position), context
    if (
        ledger.has_open_option_lot(position.key)
        or ledger.option_held_on(position.key, open_date.date())
        or ledger.has_option_opened_at(position.key, open_date, year)
    ):
        # Held at this statement date, even if closed by a later statement
        return Action(OPTION_POSITION, Verdict.SKIP_EXISTS, position), context

    context, lot = context.with_pending(
        OpenLotView(
            ref=LotRef(),
            key=position.key,
            open_date=open_date,
            quantity=position.quantity,
            premium=position.premium,
        )
    )
    return Action(OPTION_POSITION, Verdict.SYNC_ADD, position, new_lot=lot), context


def _plan_open_event(
    event: OptionTradeEvent,
    year: int,
    ledger: LedgerReader,
    context: SimulationContext,
) -> tuple[Action, SimulationContext]:
    if ledger.has_option_opened_at(event.key, event.trade_time, year):
        return Action(OPTION_TRADE, Verdict.SKIP_EXISTS, event), context

    context, lot = context.with_pending(
        OpenLotView(
            ref=LotRef(),
            key=event.key,
            open_date=event.trade_time,
            quantity=event.quantity,
            premium=event.premium,
        )
    )
    return Action(OPTION_TRADE, Verdict.ADD, event, new_lot=lot), context


def _plan_closing_event(
    event: OptionTradeEvent,
    close_ref: str,
    ledger: LedgerReader,
    context: SimulationContext,
) -> tuple[Action, SimulationContext]:
    """FIFO-match a close / assign / expire trade against open lots."""
    if ledger.close_applied(close_ref):
        return Action(OPTION_TRADE, Verdict.SKIP_APPLIED, event, close_ref=close_ref), context

    context = context.with_persisted(event.key, ledger)

    consumptions: list[tuple[OpenLotView, Decimal]] = []
    outstanding = event.quantity
    for lot in context.candidates(event.key):
        if outstanding <= 0:
            break
        take = min(lot.quantity, outstanding)
        consumptions.append((lot, take))
        outstanding -= take

    allocations = allocate_event(event, consumptions)
    for allocation in allocations:
        context = context.with_allocation(allocation)

    if outstanding > 0:
        verdict = _ORPHAN_VERDICTS[event.action]
        logger.warning(
            "%s %s of %s: %s of %s contracts have no open lot",
            event.action.value, event.key, event.trade_time,
            outstanding, event.quantity,
        )
    else:
        verdict = _MATCHED_VERDICTS[event.action]

    action = Action(
        OPTION_TRADE,
        verdict,
        event,
        allocations=tuple(allocations),
        unmatched_quantity=outstanding,
        close_ref=close_ref,
    )
    return action, context


def _plan_stock_buy(
    trade: StockTradeEvent,
    year: int,
    statement_date: date,
    ledger: LedgerReader,
    assigned_symbols: set[str],
    context: SimulationContext,
) -> tuple[Action, SimulationContext]:
    if ledger.has_stock_opened_on(trade.symbol, year, statement_date):
        return Action(STOCK_TRADE, Verdict.SKIP_EXISTS, trade), context

    source = SOURCE_ASSIGNED if trade.symbol in assigned_symbols else None
    context, lot = context.with_stock_pending(
        StockLotView(
            ref=LotRef(),
            symbol=trade.symbol,
            open_date=statement_date,
            quantity=trade.quantity,
            open_price=trade.trade_price,
        )
    )
    return Action(STOCK_TRADE, Verdict.ADD, trade, new_lot=lot, source=source), context


def _plan_stock_sale(
    trade: StockTradeEvent,
    year: int,
    statement_date: date,
    close_ref: str,
    ledger: LedgerReader,
    context: SimulationContext,
) -> tuple[Action, SimulationContext]:
    """FIFO-match a stock sale against the symbol's open lots."""
    if ledger.close_applied(close_ref):
        return Action(STOCK_TRADE, Verdict.SKIP_APPLIED, trade, close_ref=close_ref), context

    context = context.with_stock_persisted(trade.symbol, year, ledger)

    allocations = []
    outstanding = trade.quantity
    for lot in context.stock_candidates(trade.symbol):
        if outstanding <= 0:
            break
        take = min(lot.quantity, outstanding)
        allocation = StockAllocation(
            ref=lot.ref,
            lot_quantity=lot.quantity,
            consumed=take,
            close_price=trade.trade_price,
            close_date=statement_date,
        )
        allocations.append(allocation)
        context = context.with_stock_allocation(allocation)
        outstanding -= take

    if outstanding > 0:
        verdict = Verdict.CLOSE_ORPHAN
        if allocations:
            logger.warning(
                "%s: open lots hold %s shares, not enough to close %s",
                trade.symbol, trade.quantity - outstanding, trade.quantity,
            )
        else:
            logger.warning(
                "%s: no open lot to close %s shares sold %s",
                trade.symbol, trade.quantity, trade.trade_time,
            )
    else:
        verdict = Verdict.CLOSE

    action = Action(
        STOCK_TRADE,
        verdict,
        trade,
        allocations=tuple(allocations),
        unmatched_quantity=outstanding,
        close_ref=close_ref,
    )
    return action, context


def allocate_event(
    event: OptionTradeEvent,
    consumptions: list[tuple[OpenLotView, Decimal]],
) -> list[LotAllocation]:
    """Split a closing trade's premium and realized P&L across the lots it consumes.

    Each lot's profit is its consumed share of the trade's realized P&L,
    rounded to cents; the last lot absorbs the rounding residual so the
    allocations sum to the matched share of the trade's P&L. For an
    assignment reported with zero P&L, each lot's profit is its own
    pro-rated premium instead.
    """
    if not consumptions:
        return []

    settlement_date = event.trade_time.date()
    premium_override = event.action is TradeAction.ASSIGN and event.realized_pnl == 0
    matched = sum((take for _, take in consumptions), ZERO)
    matched_pnl = _money(event.realized_pnl * matched / event.quantity)

    allocations = []
    allocated = ZERO
    last_index = len(consumptions) - 1
    for index, (lot, take) in enumerate(consumptions):
        if take == lot.quantity:
            premium_portion = lot.premium
        else:
            premium_portion = _money(lot.premium * take / lot.quantity)

        if premium_override:
            profit = premium_portion
        elif index == last_index:
            profit = matched_pnl - allocated
        else:
            profit = _money(event.realized_pnl * take / event.quantity)
        allocated += profit

        allocations.append(
            LotAllocation(
                ref=lot.ref,
                lot_quantity=lot.quantity,
                lot_premium=lot.premium,
                consumed=take,
                premium_portion=premium_portion,
                profit=profit,
                profit_percent=_profit_ratio(profit, premium_portion),
                settlement_date=settlement_date,
                days_held=(settlement_date - lot.open_date.date()).days,
            )
        )
    return allocations


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _profit_ratio(profit: Decimal, premium: Decimal) -> Decimal:
    """Profit as a fraction of premium (0.75 for 75%)."""
    if premium == 0:
        return ZERO
    return (profit / premium).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)


def _event_identity(event: OptionTradeEvent) -> str:
    key = event.key
    return "|".join(
        (
            key.underlying,
            format(key.strike.normalize(), "f"),
            key.expiry.isoformat(),
            key.kind.value,
            event.trade_time.isoformat(),
            event.action.value,
            format(event.quantity.normalize(), "f"),
        )
    )


def _stock_trade_identity(trade: StockTradeEvent) -> str:
    return "|".join(
        (
            "STK",
            trade.symbol,
            trade.trade_time.isoformat(),
            trade.action.value,
            format(trade.quantity.normalize(), "f"),
        )
    )


def _fingerprint(identity: str, occurrence: int) -> str:
    """Stable id for the n-th identical closing trade row of a statement."""
    return hashlib.sha256(f"{identity}#{occurrence}".encode()).hexdigest()
