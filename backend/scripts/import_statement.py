#!/usr/bin/env python
"""Preview or import an Interactive Brokers HTML activity statement.

Without --confirm the statement is only planned and the planned actions
are printed. With --confirm the plan is applied and committed.

Usage:
    cd backend
    uv run python -m scripts.import_statement statement.html [--confirm] [--register-owner]
"""

import argparse
import sys

from database import get_session_local, init_db
from integrations.exceptions import OwnerNotFound, StructuralParseError
from integrations.ib_statement import parse_statement
from services.owner_service import OwnerService
from services.statement_import_service import ImportResult, StatementImportService, StatementPreview
from services.statement_planner import Action, StockAllocation


def _allocation_text(allocation) -> str:
    text = f"{allocation.consumed}{' (partial)' if allocation.is_partial else ''}"
    if isinstance(allocation, StockAllocation):
        return f"{text} at {allocation.close_price}"
    return f"{text} profit {allocation.profit}"


def _describe(action: Action) -> str:
    record = action.record
    label = getattr(record, "symbol", None) or str(record.key)
    line = f"  [{action.verdict.value}] {label} qty {record.quantity}"
    if action.allocations:
        parts = ", ".join(_allocation_text(a) for a in action.allocations)
        line += f" -> {parts}"
    if action.unmatched_quantity:
        line += f" ({action.unmatched_quantity} unmatched)"
    return line


def print_preview(preview: StatementPreview) -> None:
    statement = preview.statement
    print(f"Statement: {statement.statement_date} ({statement.account_alias})")
    print(f"Owner: {preview.owner.display_name}")
    print(f"Net equity: {statement.net_equity}  cash: {statement.cash_balance}  "
          f"interest: {statement.accrued_interest}")
    print(f"Management fee: {statement.management_fee}  net deposit: {statement.net_deposit}")
    if statement.is_year_start:
        print("Year start: opening balances will be set")
    elif preview.existing_net_equity is not None:
        print(f"Existing NAV row for {statement.statement_date} will be overwritten")
    if preview.latest_record_date:
        print(f"Latest NAV row: {preview.latest_record_date}")

    plan = preview.plan
    for title, actions in (
        ("Stock positions", plan.stock_actions),
        ("Option positions", plan.option_position_actions),
        ("Option trades", plan.trade_actions),
        ("Stock trades", plan.stock_trade_actions),
    ):
        print(f"\n{title}: {len(actions)}")
        for action in actions:
            print(_describe(action))

    if statement.anomalies:
        print(f"\nDropped rows: {len(statement.anomalies)}")
        for issue in statement.anomalies:
            print(f"  {issue.section}: {issue.row} ({issue.reason})")


def print_result(result: ImportResult) -> None:
    print(f"Imported {result.statement.statement_date} for {result.owner.display_name}: {result.action}")
    print(f"  Stock positions:  added {result.positions_sync.added}, skipped {result.positions_sync.skipped}")
    print(f"  Option positions: added {result.open_options_sync.added}, "
          f"skipped {result.open_options_sync.skipped}")
    counts = result.options_sync
    print(f"  Option trades:    added {counts.added}, skipped {counts.skipped}, "
          f"closed {counts.closed}, closed skipped {counts.closed_skipped}")
    counts = result.stock_trades_sync
    print(f"  Stock trades:     added {counts.added}, skipped {counts.skipped}, "
          f"closed {counts.closed}, closed skipped {counts.closed_skipped}")
    for action in result.orphans + result.stock_orphans:
        print(_describe(action))


def import_statement(path: str, confirm: bool = False, register_owner: bool = False) -> int:
    """Run a preview or confirm for one statement file; returns the exit code."""
    with open(path, encoding="utf-8", errors="replace") as f:
        document = f.read()

    init_db()
    SessionLocal = get_session_local()
    db = SessionLocal()
    service = StatementImportService()

    try:
        if register_owner:
            statement = parse_statement(document)
            try:
                OwnerService.resolve(db, statement.account_alias, statement.year)
            except OwnerNotFound:
                OwnerService.create_owner(db, statement.account_alias, statement.year)
                db.commit()
                print(f"Registered owner {statement.account_alias} ({statement.year})")

        if confirm:
            print_result(service.confirm(db, document))
        else:
            print_preview(service.preview(db, document))
    except (StructuralParseError, OwnerNotFound) as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        db.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Preview or import an activity statement")
    parser.add_argument("statement", help="Path to the statement HTML file")
    parser.add_argument(
        "--confirm", action="store_true",
        help="Apply the plan to the ledger instead of only previewing it",
    )
    parser.add_argument(
        "--register-owner", action="store_true",
        help="Create the owner for the statement's alias and year if it doesn't exist",
    )
    args = parser.parse_args()
    sys.exit(import_statement(args.statement, confirm=args.confirm, register_owner=args.register_owner))


if __name__ == "__main__":
    main()
