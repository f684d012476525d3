"""Statement import service - previews and applies an activity statement.

Both modes parse the statement, resolve the owner and build the same
reconciliation plan. Preview reports the plan without writing. Confirm
writes the NAV figures and applies the plan in order inside one
transaction, then invalidates the response cache.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.orm import Session

from integrations.ib_statement import ParsedStatement, parse_statement
from models import DailyNetEquity, OptionLot, Owner, StockLot
from services.lot_ledger_service import LedgerView, LotLedgerService
from services.owner_service import OwnerService
from services.response_cache import clear_cache
from services.statement_planner import Action, LotRef, StatementPlan, Verdict, plan_statement

logger = logging.getLogger(__name__)

NAV_YEAR_START = "year_start"
NAV_UPDATED = "updated"
NAV_CREATED = "created"


@dataclass
class SyncCounts:
    added: int = 0
    skipped: int = 0


@dataclass
class TradeSyncCounts(SyncCounts):
    closed: int = 0
    closed_skipped: int = 0


@dataclass
class StatementPreview:
    """What a confirm would do, computed without writing."""

    statement: ParsedStatement
    owner: Owner
    plan: StatementPlan
    existing_net_equity: DailyNetEquity | None
    latest_record_date: date | None


@dataclass
class ImportResult:
    """What a confirm wrote."""

    statement: ParsedStatement
    owner: Owner
    action: str
    positions_sync: SyncCounts = field(default_factory=SyncCounts)
    open_options_sync: SyncCounts = field(default_factory=SyncCounts)
    options_sync: TradeSyncCounts = field(default_factory=TradeSyncCounts)
    stock_trades_sync: TradeSyncCounts = field(default_factory=TradeSyncCounts)
    orphans: list[Action] = field(default_factory=list)
    stock_orphans: list[Action] = field(default_factory=list)


class StatementImportService:
    """Imports activity statements into the owner ledgers."""

    # Confirms are serialized per process; the planner's reads must not
    # interleave with another import's writes.
    _import_lock = threading.Lock()

    def __init__(self, invalidate_cache: Callable[[], None] | None = None):
        """Initialize with an optional cache invalidation hook.

        Args:
            invalidate_cache: Called after a successful confirm. Defaults
                to clearing the shared response cache.
        """
        self._invalidate_cache = invalidate_cache or clear_cache

    @classmethod
    def is_import_in_progress(cls) -> bool:
        acquired = cls._import_lock.acquire(blocking=False)
        if acquired:
            cls._import_lock.release()
            return False
        return True

    def preview(self, db: Session, document: str) -> StatementPreview:
        """Parse and plan a statement without modifying the ledger.

        Raises:
            StructuralParseError: If the statement can't be parsed.
            OwnerNotFound: If no owner matches the statement's alias and year.
        """
        statement = parse_statement(document)
        owner = OwnerService.resolve(db, statement.account_alias, statement.year)
        plan = plan_statement(statement, LedgerView(db, owner.id))
        logger.info(
            "Previewed statement %s for %s: %d orphaned closes, %d orphaned stock sales",
            statement.statement_date, owner.alias, len(plan.orphans), len(plan.stock_orphans),
        )
        return StatementPreview(
            statement=statement,
            owner=owner,
            plan=plan,
            existing_net_equity=OwnerService.get_net_equity(db, owner.id, statement.statement_date),
            latest_record_date=OwnerService.latest_record_date(db, owner.id),
        )

    def confirm(self, db: Session, document: str) -> ImportResult:
        """Parse, plan and apply a statement in one transaction.

        Commits on success and rolls back on any failure, so a failed
        import leaves the ledger untouched.

        Raises:
            StructuralParseError: If the statement can't be parsed.
            OwnerNotFound: If no owner matches the statement's alias and year.
        """
        statement = parse_statement(document)
        with self._import_lock:
            try:
                owner = OwnerService.resolve(db, statement.account_alias, statement.year)
                plan = plan_statement(statement, LedgerView(db, owner.id))
                result = ImportResult(
                    statement=statement,
                    owner=owner,
                    action=self._record_net_equity(db, owner, statement),
                    orphans=plan.orphans,
                    stock_orphans=plan.stock_orphans,
                )
                self._apply_plan(db, owner, statement, plan, result)
                db.commit()
            except Exception:
                db.rollback()
                raise

        self._invalidate_cache()
        logger.info(
            "Imported statement %s for %s (%s): stocks %s, option positions %s, trades %s, stock trades %s",
            statement.statement_date, owner.alias, result.action,
            result.positions_sync, result.open_options_sync, result.options_sync,
            result.stock_trades_sync,
        )
        return result

    @staticmethod
    def _record_net_equity(db: Session, owner: Owner, statement: ParsedStatement) -> str:
        """Write the statement's NAV figures; returns the NAV outcome."""
        if statement.is_year_start:
            owner.set_opening_balances(
                net_equity=statement.net_equity,
                cash=statement.cash_balance,
                management_fee=statement.management_fee,
                interest=statement.accrued_interest,
            )
            db.flush()
            return NAV_YEAR_START

        _, created = OwnerService.upsert_net_equity(
            db,
            owner.id,
            statement.statement_date,
            net_equity=statement.net_equity,
            cash_balance=statement.cash_balance,
            interest=statement.accrued_interest,
            deposit=statement.net_deposit,
            management_fee=statement.management_fee,
        )
        return NAV_CREATED if created else NAV_UPDATED

    @staticmethod
    def _apply_plan(
        db: Session,
        owner: Owner,
        statement: ParsedStatement,
        plan: StatementPlan,
        result: ImportResult,
    ) -> None:
        """Apply planned actions in statement order."""
        inserted: dict[int, OptionLot] = {}

        for action in plan.stock_actions:
            if action.verdict is not Verdict.SYNC_ADD:
                result.positions_sync.skipped += 1
                continue
            position = action.record
            LotLedgerService.create_stock_lot(
                db,
                owner.id,
                statement.year,
                symbol=position.symbol,
                open_date=statement.statement_date,
                open_price=position.cost_price,
                quantity=position.quantity,
                source=action.source,
            )
            result.positions_sync.added += 1

        for action in plan.option_position_actions:
            if action.verdict is not Verdict.SYNC_ADD:
                result.open_options_sync.skipped += 1
                continue
            _insert_planned_lot(db, owner, statement.year, action, inserted)
            result.open_options_sync.added += 1

        counts = result.options_sync
        for action in plan.trade_actions:
            if action.verdict is Verdict.ADD:
                _insert_planned_lot(db, owner, statement.year, action, inserted)
                counts.added += 1
            elif action.verdict is Verdict.SKIP_EXISTS:
                counts.skipped += 1
            elif action.allocations:
                for allocation in action.allocations:
                    lot = _resolve_lot(db, allocation.ref, inserted)
                    LotLedgerService.close_option_lot(
                        db, lot, action.terminal_operation, allocation, action.close_ref
                    )
                counts.closed += 1
            else:
                counts.closed_skipped += 1

        stock_inserted: dict[int, StockLot] = {}
        counts = result.stock_trades_sync
        for action in plan.stock_trade_actions:
            if action.verdict is Verdict.ADD:
                planned = action.new_lot
                stock_inserted[planned.ref.pending_index] = LotLedgerService.create_stock_lot(
                    db,
                    owner.id,
                    statement.year,
                    symbol=planned.symbol,
                    open_date=planned.open_date,
                    open_price=planned.open_price,
                    quantity=planned.quantity,
                    source=action.source,
                )
                counts.added += 1
            elif action.verdict is Verdict.SKIP_EXISTS:
                counts.skipped += 1
            elif action.allocations:
                for allocation in action.allocations:
                    lot = _resolve_stock_lot(db, allocation.ref, stock_inserted)
                    LotLedgerService.close_stock_lot(db, lot, allocation, action.close_ref)
                counts.closed += 1
            else:
                counts.closed_skipped += 1


def _insert_planned_lot(
    db: Session,
    owner: Owner,
    year: int,
    action: Action,
    inserted: dict[int, OptionLot],
) -> None:
    planned = action.new_lot
    lot = LotLedgerService.create_option_lot(
        db,
        owner.id,
        year,
        key=planned.key,
        open_date=planned.open_date,
        quantity=planned.quantity,
        premium=planned.premium,
    )
    inserted[planned.ref.pending_index] = lot


def _resolve_lot(db: Session, ref: LotRef, inserted: dict[int, OptionLot]) -> OptionLot:
    if ref.is_pending:
        return inserted[ref.pending_index]
    lot = db.get(OptionLot, ref.lot_id)
    if lot is None:
        raise ValueError(f"Option lot {ref.lot_id} disappeared during import")
    return lot


def _resolve_stock_lot(db: Session, ref: LotRef, inserted: dict[int, StockLot]) -> StockLot:
    if ref.is_pending:
        return inserted[ref.pending_index]
    lot = db.get(StockLot, ref.lot_id)
    if lot is None:
        raise ValueError(f"Stock lot {ref.lot_id} disappeared during import")
    return lot
