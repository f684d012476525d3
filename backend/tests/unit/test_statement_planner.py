"""Tests for the statement reconciliation planner.

The planner is exercised against an in-memory ledger so every verdict
and allocation can be checked without a database.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from integrations.ib_statement.types import (
    OpenOptionPosition,
    OpenPosition,
    OptionTradeEvent,
    ParsedStatement,
    StockTradeEvent,
    TradeAction,
)
from services.statement_planner import (
    LotRef,
    OpenLotView,
    SimulationContext,
    StockLotView,
    Verdict,
    allocate_event,
    merge_stock_opens,
    plan_statement,
)
from tests.fixtures import contract

KEY = contract()


class FakeLedger:
    """LedgerReader over plain Python collections."""

    def __init__(
        self,
        option_lots=(),
        stock_symbols=(),
        opened_at=(),
        applied=(),
        held=(),
        stock_lots=(),
        stock_held=(),
        stock_opened=(),
    ):
        self.option_lots = list(option_lots)
        self.stock_symbols = set(stock_symbols)
        self.opened_at = set(opened_at)
        self.applied = set(applied)
        self.held = set(held)
        self.stock_lots = list(stock_lots)
        self.stock_held = set(stock_held)
        self.stock_opened = set(stock_opened)
        self.open_lot_reads = 0

    def has_open_stock_lot(self, symbol, year):
        return symbol in self.stock_symbols or any(lot.symbol == symbol for lot in self.stock_lots)

    def stock_held_on(self, symbol, year, on):
        return (symbol, on) in self.stock_held

    def has_stock_opened_on(self, symbol, year, open_date):
        return (symbol, open_date) in self.stock_opened

    def open_stock_lots(self, symbol, year):
        return sorted((lot for lot in self.stock_lots if lot.symbol == symbol), key=lambda lot: lot.open_date)

    def has_open_option_lot(self, key):
        return any(lot.key == key for lot in self.option_lots)

    def option_held_on(self, key, on):
        return (key, on) in self.held

    def has_option_opened_at(self, key, open_date, year):
        return (key, open_date) in self.opened_at

    def open_option_lots(self, key):
        self.open_lot_reads += 1
        return sorted((lot for lot in self.option_lots if lot.key == key), key=lambda lot: lot.open_date)

    def close_applied(self, close_ref):
        return close_ref in self.applied


def lot(lot_id, quantity, premium, opened=datetime(2026, 1, 5, 10, 0), key=KEY):
    return OpenLotView(
        ref=LotRef(lot_id=lot_id),
        key=key,
        open_date=opened,
        quantity=Decimal(quantity),
        premium=Decimal(premium),
    )


def trade(action, quantity, realized="0", premium="0", when=datetime(2026, 2, 2, 10, 0), key=KEY):
    return OptionTradeEvent(
        key=key,
        trade_time=when,
        quantity=Decimal(quantity),
        premium=Decimal(premium),
        realized_pnl=Decimal(realized),
        action=action,
    )


def stock_lot(lot_id, quantity, price="100", opened=date(2026, 1, 5), symbol="AAPL"):
    return StockLotView(
        ref=LotRef(lot_id=lot_id),
        symbol=symbol,
        open_date=opened,
        quantity=Decimal(quantity),
        open_price=Decimal(price),
    )


def stock_trade(action, quantity, price, realized="0", when=datetime(2026, 2, 2, 9, 30), symbol="AAPL"):
    return StockTradeEvent(
        symbol=symbol,
        trade_time=when,
        quantity=Decimal(quantity),
        trade_price=Decimal(price),
        close_price=Decimal(price),
        realized_pnl=Decimal(realized),
        action=action,
    )


def statement(**kwargs):
    return ParsedStatement(statement_date=date(2026, 2, 2), account_alias="U123", **kwargs)


class TestStockPositions:
    def test_new_symbol_is_sync_add(self):
        plan = plan_statement(
            statement(open_positions=[OpenPosition("AAPL", Decimal("100"), Decimal("150.00"))]),
            FakeLedger(),
        )
        [action] = plan.stock_actions
        assert action.verdict is Verdict.SYNC_ADD
        assert action.record.symbol == "AAPL"
        assert action.source is None

    def test_existing_open_lot_is_skipped(self):
        plan = plan_statement(
            statement(open_positions=[OpenPosition("AAPL", Decimal("100"), Decimal("150.00"))]),
            FakeLedger(stock_symbols={"AAPL"}),
        )
        assert plan.stock_actions[0].verdict is Verdict.SKIP_EXISTS

    def test_assignment_in_statement_marks_source(self):
        assigned_key = contract(underlying="AAPL", strike="150")
        plan = plan_statement(
            statement(
                open_positions=[OpenPosition("AAPL", Decimal("100"), Decimal("150.00"))],
                option_trades=[trade(TradeAction.ASSIGN, "1", key=assigned_key)],
            ),
            FakeLedger(),
        )
        assert plan.stock_actions[0].source == "assigned"

    def test_held_at_statement_date_is_skipped(self):
        plan = plan_statement(
            statement(open_positions=[OpenPosition("AAPL", Decimal("100"), Decimal("150.00"))]),
            FakeLedger(stock_held={("AAPL", date(2026, 2, 2))}),
        )
        assert plan.stock_actions[0].verdict is Verdict.SKIP_EXISTS

    def test_same_statement_buy_covers_position(self):
        plan = plan_statement(
            statement(
                open_positions=[OpenPosition("AAPL", Decimal("100"), Decimal("150.00"))],
                stock_trades=[stock_trade(TradeAction.OPEN, "100", "150")],
            ),
            FakeLedger(),
        )
        assert plan.stock_actions[0].verdict is Verdict.SKIP_COVERED
        assert plan.stock_trade_actions[0].verdict is Verdict.ADD


class TestOptionPositions:
    def position(self, quantity="2", premium="400"):
        return OpenOptionPosition(KEY, Decimal(quantity), Decimal("2.00"), Decimal(premium))

    def test_new_position_is_sync_add(self):
        plan = plan_statement(statement(open_option_positions=[self.position()]), FakeLedger())
        [action] = plan.option_position_actions
        assert action.verdict is Verdict.SYNC_ADD
        assert action.new_lot.open_date == datetime(2026, 2, 2)
        assert action.new_lot.ref.is_pending

    def test_existing_open_lot_is_skipped(self):
        plan = plan_statement(
            statement(open_option_positions=[self.position()]),
            FakeLedger(option_lots=[lot("L1", "2", "400")]),
        )
        assert plan.option_position_actions[0].verdict is Verdict.SKIP_EXISTS

    def test_held_at_statement_date_is_skipped(self):
        # Closed by a later statement, but still held on this one's date
        plan = plan_statement(
            statement(open_option_positions=[self.position()]),
            FakeLedger(held={(KEY, date(2026, 2, 2))}),
        )
        assert plan.option_position_actions[0].verdict is Verdict.SKIP_EXISTS
        assert plan.context.pending == ()

    def test_same_statement_open_trade_covers_position(self):
        plan = plan_statement(
            statement(
                open_option_positions=[self.position()],
                option_trades=[trade(TradeAction.OPEN, "2", premium="400")],
            ),
            FakeLedger(),
        )
        assert plan.option_position_actions[0].verdict is Verdict.SKIP_COVERED
        assert plan.trade_actions[0].verdict is Verdict.ADD


class TestOpenEvents:
    def test_new_open_is_add(self):
        plan = plan_statement(statement(option_trades=[trade(TradeAction.OPEN, "3", premium="450")]), FakeLedger())
        action = plan.trade_actions[0]
        assert action.verdict is Verdict.ADD
        assert action.new_lot.quantity == Decimal("3")
        assert action.new_lot.premium == Decimal("450")

    def test_already_opened_is_skipped(self):
        event = trade(TradeAction.OPEN, "3", premium="450")
        plan = plan_statement(
            statement(option_trades=[event]),
            FakeLedger(opened_at={(KEY, event.trade_time)}),
        )
        assert plan.trade_actions[0].verdict is Verdict.SKIP_EXISTS


class TestFifoMatching:
    def test_close_consumes_oldest_first(self):
        ledger = FakeLedger(option_lots=[
            lot("DAY2", "5", "500", opened=datetime(2026, 1, 2, 9, 30)),
            lot("DAY1", "3", "300", opened=datetime(2026, 1, 1, 9, 30)),
        ])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "4", realized="400")]), ledger)

        action = plan.trade_actions[0]
        assert action.verdict is Verdict.CLOSE
        first, second = action.allocations
        assert first.ref.lot_id == "DAY1"
        assert first.consumed == Decimal("3")
        assert first.is_partial is False
        assert second.ref.lot_id == "DAY2"
        assert second.consumed == Decimal("1")
        assert second.is_partial is True
        assert second.remaining_quantity == Decimal("4")

    def test_quantity_and_premium_conserved_on_split(self):
        ledger = FakeLedger(option_lots=[lot("L1", "3", "100.00")])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "1", realized="10")]), ledger)

        [allocation] = plan.trade_actions[0].allocations
        assert allocation.consumed + allocation.remaining_quantity == Decimal("3")
        assert allocation.premium_portion == Decimal("33.33")
        assert allocation.premium_portion + allocation.remaining_premium == Decimal("100.00")

    def test_proportional_profit(self):
        ledger = FakeLedger(option_lots=[
            lot("L2", "2", "100", opened=datetime(2026, 1, 1)),
            lot("L3", "3", "150", opened=datetime(2026, 1, 2)),
        ])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "5", realized="500")]), ledger)

        profits = [a.profit for a in plan.trade_actions[0].allocations]
        assert profits == [Decimal("200.00"), Decimal("300.00")]

    def test_rounding_residual_goes_to_last_lot(self):
        ledger = FakeLedger(option_lots=[
            lot("A", "1", "10", opened=datetime(2026, 1, 1)),
            lot("B", "1", "10", opened=datetime(2026, 1, 2)),
            lot("C", "1", "10", opened=datetime(2026, 1, 3)),
        ])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "3", realized="100")]), ledger)

        profits = [a.profit for a in plan.trade_actions[0].allocations]
        assert profits == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert sum(profits) == Decimal("100")

    def test_assignment_with_zero_pnl_uses_premium(self):
        ledger = FakeLedger(option_lots=[lot("L1", "1", "150")])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.ASSIGN, "1", realized="0")]), ledger)

        action = plan.trade_actions[0]
        assert action.verdict is Verdict.ASSIGN
        [allocation] = action.allocations
        assert allocation.profit == Decimal("150")
        assert allocation.profit_percent == Decimal("1.0000")

    def test_expire_verdict(self):
        ledger = FakeLedger(option_lots=[lot("L1", "1", "80")])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.EXPIRE, "1", realized="80")]), ledger)
        assert plan.trade_actions[0].verdict is Verdict.EXPIRE
        assert plan.trade_actions[0].terminal_operation == "Expired"

    def test_days_held_and_settlement(self):
        ledger = FakeLedger(option_lots=[lot("L1", "1", "80", opened=datetime(2026, 1, 20, 15, 0))])
        plan = plan_statement(
            statement(option_trades=[trade(TradeAction.CLOSE, "1", realized="40", when=datetime(2026, 2, 2, 9, 0))]),
            ledger,
        )
        [allocation] = plan.trade_actions[0].allocations
        assert allocation.settlement_date == date(2026, 2, 2)
        assert allocation.days_held == 13
        assert allocation.profit_percent == Decimal("0.5000")

    def test_profit_percent_is_ratio_of_premium(self):
        ledger = FakeLedger(option_lots=[lot("L1", "1", "200")])
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "1", realized="150")]), ledger)

        [allocation] = plan.trade_actions[0].allocations
        assert allocation.profit == Decimal("150.00")
        assert allocation.profit_percent == Decimal("0.7500")

    def test_persisted_lots_read_once_per_key(self):
        ledger = FakeLedger(option_lots=[lot("L1", "5", "500")])
        plan_statement(
            statement(option_trades=[
                trade(TradeAction.CLOSE, "1", realized="10", when=datetime(2026, 2, 2, 10, 0)),
                trade(TradeAction.CLOSE, "1", realized="10", when=datetime(2026, 2, 2, 11, 0)),
            ]),
            ledger,
        )
        assert ledger.open_lot_reads == 1

    def test_consecutive_closes_see_earlier_consumption(self):
        ledger = FakeLedger(option_lots=[lot("L1", "3", "300")])
        plan = plan_statement(
            statement(option_trades=[
                trade(TradeAction.CLOSE, "2", realized="20", when=datetime(2026, 2, 2, 10, 0)),
                trade(TradeAction.CLOSE, "2", realized="20", when=datetime(2026, 2, 2, 11, 0)),
            ]),
            ledger,
        )
        first, second = plan.trade_actions
        assert first.verdict is Verdict.CLOSE
        assert second.verdict is Verdict.CLOSE_ORPHAN
        assert second.allocations[0].lot_quantity == Decimal("1")
        assert second.allocations[0].lot_premium == Decimal("100.00")
        assert second.unmatched_quantity == Decimal("1")


class TestSameStatementOpenThenClose:
    def test_close_matches_pending_open(self):
        plan = plan_statement(
            statement(option_trades=[
                trade(TradeAction.OPEN, "2", premium="200", when=datetime(2026, 2, 2, 9, 30)),
                trade(TradeAction.CLOSE, "2", realized="150", when=datetime(2026, 2, 2, 15, 0)),
            ]),
            FakeLedger(),
        )
        opened, closed = plan.trade_actions
        assert opened.verdict is Verdict.ADD
        assert closed.verdict is Verdict.CLOSE
        assert closed.allocations[0].ref == opened.new_lot.ref
        assert closed.allocations[0].days_held == 0

    def test_persisted_lots_precede_pending(self):
        plan = plan_statement(
            statement(option_trades=[
                trade(TradeAction.OPEN, "2", premium="200", when=datetime(2026, 2, 2, 9, 30)),
                trade(TradeAction.CLOSE, "3", realized="300", when=datetime(2026, 2, 2, 15, 0)),
            ]),
            FakeLedger(option_lots=[lot("OLD", "2", "100")]),
        )
        closed = plan.trade_actions[1]
        assert [a.ref.lot_id for a in closed.allocations] == ["OLD", None]
        assert closed.allocations[1].ref.pending_index == 0

    def test_synced_position_can_be_closed(self):
        plan = plan_statement(
            statement(
                open_option_positions=[OpenOptionPosition(KEY, Decimal("1"), Decimal("1"), Decimal("100"))],
                option_trades=[trade(TradeAction.CLOSE, "1", realized="50")],
            ),
            FakeLedger(),
        )
        assert plan.trade_actions[0].verdict is Verdict.CLOSE


class TestOrphans:
    def test_close_without_open_lot(self):
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "1", realized="50")]), FakeLedger())
        action = plan.trade_actions[0]
        assert action.verdict is Verdict.CLOSE_ORPHAN
        assert action.allocations == ()
        assert action.unmatched_quantity == Decimal("1")
        assert plan.orphans == [action]

    @pytest.mark.parametrize(
        ("action", "verdict"),
        [(TradeAction.ASSIGN, Verdict.ASSIGN_ORPHAN), (TradeAction.EXPIRE, Verdict.EXPIRE_ORPHAN)],
    )
    def test_orphan_verdict_per_action(self, action, verdict):
        plan = plan_statement(statement(option_trades=[trade(action, "1")]), FakeLedger())
        assert plan.trade_actions[0].verdict is verdict

    def test_other_contract_does_not_match(self):
        other = lot("L1", "1", "100", key=contract(strike="620"))
        plan = plan_statement(statement(option_trades=[trade(TradeAction.CLOSE, "1")]), FakeLedger(option_lots=[other]))
        assert plan.trade_actions[0].verdict is Verdict.CLOSE_ORPHAN


class TestAppliedCloses:
    def test_applied_close_is_skipped(self):
        event = trade(TradeAction.CLOSE, "1", realized="50")
        first = plan_statement(statement(option_trades=[event]), FakeLedger(option_lots=[lot("L1", "1", "100")]))
        close_ref = first.trade_actions[0].close_ref

        second = plan_statement(statement(option_trades=[event]), FakeLedger(applied={close_ref}))
        assert second.trade_actions[0].verdict is Verdict.SKIP_APPLIED

    def test_identical_rows_get_distinct_refs(self):
        event = trade(TradeAction.CLOSE, "1", realized="50")
        plan = plan_statement(statement(option_trades=[event, event]), FakeLedger())
        refs = [a.close_ref for a in plan.trade_actions]
        assert refs[0] != refs[1]
        assert all(len(ref) == 64 for ref in refs)


class TestSimulationContext:
    def test_with_pending_does_not_mutate(self):
        context = SimulationContext()
        new_context, pending = context.with_pending(lot(None, "1", "10"))
        assert context.pending == ()
        assert new_context.pending == (pending,)
        assert pending.ref == LotRef(pending_index=0)

    def test_fully_consumed_lot_disappears(self):
        context, pending = SimulationContext().with_pending(lot(None, "1", "10"))
        [allocation] = allocate_event(trade(TradeAction.CLOSE, "1", realized="5"), [(pending, Decimal("1"))])
        context = context.with_allocation(allocation)
        assert context.candidates(KEY) == []

    def test_allocate_event_without_lots(self):
        assert allocate_event(trade(TradeAction.CLOSE, "1"), []) == []


class TestMergeStockOpens:
    def test_same_symbol_buys_merge_at_weighted_average(self):
        merged = merge_stock_opens([
            stock_trade(TradeAction.OPEN, "100", "10.00"),
            stock_trade(TradeAction.OPEN, "50", "13.00", when=datetime(2026, 2, 2, 11, 0)),
        ])
        [buy] = merged
        assert buy.quantity == Decimal("150")
        assert buy.trade_price == Decimal("11.000000")
        assert buy.trade_time == datetime(2026, 2, 2, 9, 30)

    def test_average_price_rounded_to_six_places(self):
        [buy] = merge_stock_opens([
            stock_trade(TradeAction.OPEN, "1", "10"),
            stock_trade(TradeAction.OPEN, "2", "11"),
        ])
        assert buy.trade_price == Decimal("10.666667")

    def test_symbols_and_sales_kept_apart(self):
        merged = merge_stock_opens([
            stock_trade(TradeAction.OPEN, "10", "100"),
            stock_trade(TradeAction.CLOSE, "5", "101"),
            stock_trade(TradeAction.OPEN, "20", "50", symbol="MSFT"),
            stock_trade(TradeAction.OPEN, "10", "102"),
        ])
        assert [(t.symbol, t.action, t.quantity) for t in merged] == [
            ("AAPL", TradeAction.OPEN, Decimal("20")),
            ("AAPL", TradeAction.CLOSE, Decimal("5")),
            ("MSFT", TradeAction.OPEN, Decimal("20")),
        ]


class TestStockTrades:
    def test_buy_is_add_at_statement_date(self):
        plan = plan_statement(statement(stock_trades=[stock_trade(TradeAction.OPEN, "100", "150.25")]), FakeLedger())
        [action] = plan.stock_trade_actions
        assert action.verdict is Verdict.ADD
        assert action.new_lot.open_date == date(2026, 2, 2)
        assert action.new_lot.open_price == Decimal("150.25")
        assert action.new_lot.ref == LotRef(pending_index=0)

    def test_buy_already_opened_that_day_is_skipped(self):
        plan = plan_statement(
            statement(stock_trades=[stock_trade(TradeAction.OPEN, "100", "150")]),
            FakeLedger(stock_opened={("AAPL", date(2026, 2, 2))}),
        )
        assert plan.stock_trade_actions[0].verdict is Verdict.SKIP_EXISTS

    def test_buy_after_assignment_is_marked_assigned(self):
        plan = plan_statement(
            statement(
                stock_trades=[stock_trade(TradeAction.OPEN, "100", "150")],
                option_trades=[trade(TradeAction.ASSIGN, "1", key=contract(underlying="AAPL", strike="150"))],
            ),
            FakeLedger(),
        )
        assert plan.stock_trade_actions[0].source == "assigned"

    def test_sale_closes_oldest_lot_first(self):
        ledger = FakeLedger(stock_lots=[
            stock_lot("NEW", "50", opened=date(2026, 1, 20)),
            stock_lot("OLD", "30", opened=date(2026, 1, 10)),
        ])
        plan = plan_statement(statement(stock_trades=[stock_trade(TradeAction.CLOSE, "60", "170")]), ledger)

        action = plan.stock_trade_actions[0]
        assert action.verdict is Verdict.CLOSE
        first, second = action.allocations
        assert (first.ref.lot_id, first.consumed, first.is_partial) == ("OLD", Decimal("30"), False)
        assert (second.ref.lot_id, second.consumed, second.is_partial) == ("NEW", Decimal("30"), True)
        assert second.remaining_quantity == Decimal("20")
        assert second.close_price == Decimal("170")
        assert second.close_date == date(2026, 2, 2)

    def test_sale_without_lots_is_orphan(self):
        plan = plan_statement(statement(stock_trades=[stock_trade(TradeAction.CLOSE, "10", "170")]), FakeLedger())
        action = plan.stock_trade_actions[0]
        assert action.verdict is Verdict.CLOSE_ORPHAN
        assert action.unmatched_quantity == Decimal("10")
        assert plan.stock_orphans == [action]
        assert plan.orphans == []

    def test_sale_larger_than_holdings_closes_what_exists(self):
        ledger = FakeLedger(stock_lots=[stock_lot("L1", "30")])
        plan = plan_statement(statement(stock_trades=[stock_trade(TradeAction.CLOSE, "50", "170")]), ledger)
        action = plan.stock_trade_actions[0]
        assert action.verdict is Verdict.CLOSE_ORPHAN
        assert action.matched_quantity == Decimal("30")
        assert action.unmatched_quantity == Decimal("20")

    def test_sale_matches_same_statement_buy(self):
        plan = plan_statement(
            statement(stock_trades=[
                stock_trade(TradeAction.OPEN, "100", "150"),
                stock_trade(TradeAction.CLOSE, "40", "155", when=datetime(2026, 2, 2, 14, 0)),
            ]),
            FakeLedger(),
        )
        [allocation] = plan.stock_trade_actions[1].allocations
        assert allocation.ref == LotRef(pending_index=0)
        assert allocation.remaining_quantity == Decimal("60")

    def test_consecutive_sales_see_earlier_consumption(self):
        ledger = FakeLedger(stock_lots=[stock_lot("L1", "10")])
        plan = plan_statement(
            statement(stock_trades=[
                stock_trade(TradeAction.CLOSE, "6", "170"),
                stock_trade(TradeAction.CLOSE, "6", "171", when=datetime(2026, 2, 2, 15, 0)),
            ]),
            ledger,
        )
        first, second = plan.stock_trade_actions
        assert first.verdict is Verdict.CLOSE
        assert second.verdict is Verdict.CLOSE_ORPHAN
        assert second.allocations[0].lot_quantity == Decimal("4")

    def test_applied_sale_is_skipped(self):
        sale = stock_trade(TradeAction.CLOSE, "10", "170")
        first = plan_statement(statement(stock_trades=[sale]), FakeLedger(stock_lots=[stock_lot("L1", "10")]))
        close_ref = first.stock_trade_actions[0].close_ref

        second = plan_statement(statement(stock_trades=[sale]), FakeLedger(applied={close_ref}))
        assert second.stock_trade_actions[0].verdict is Verdict.SKIP_APPLIED
        assert second.stock_trade_actions[0].allocations == ()

    def test_stock_and_option_pending_indexes_independent(self):
        plan = plan_statement(
            statement(
                option_trades=[trade(TradeAction.OPEN, "1", premium="100")],
                stock_trades=[stock_trade(TradeAction.OPEN, "100", "150")],
            ),
            FakeLedger(),
        )
        assert plan.trade_actions[0].new_lot.ref == LotRef(pending_index=0)
        assert plan.stock_trade_actions[0].new_lot.ref == LotRef(pending_index=0)
