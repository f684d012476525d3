"""Statement import API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from integrations.exceptions import OwnerNotFound, StructuralParseError
from integrations.ib_statement.types import (
    OpenOptionPosition,
    OpenPosition,
    OptionTradeEvent,
    RowIssue,
    StockTradeEvent,
)
from schemas.statement import (
    LotAllocationResponse,
    NetEquityRecordResponse,
    OptionPositionAction,
    OptionTradeAction,
    RowIssueResponse,
    StatementConfirmResponse,
    StatementPreviewResponse,
    StockAllocationResponse,
    StockPositionAction,
    StockTradeAction,
    SyncCountsResponse,
    TradeSyncCountsResponse,
)
from services.statement_import_service import ImportResult, StatementImportService, StatementPreview
from services.statement_planner import Action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/statements", tags=["statements"])

# Dependency injection for testing
_import_service_override: Optional[StatementImportService] = None


def get_import_service() -> StatementImportService:
    """Get StatementImportService instance, allowing for test overrides."""
    if _import_service_override is not None:
        return _import_service_override
    return StatementImportService()


def set_import_service_override(service: Optional[StatementImportService]) -> None:
    """Set a StatementImportService override for testing."""
    global _import_service_override
    _import_service_override = service


@router.post("/import", response_model=StatementPreviewResponse | StatementConfirmResponse)
def import_statement(
    file: UploadFile = File(...),
    confirm: bool = Form(False),
    db: Session = Depends(get_db),
    import_service: StatementImportService = Depends(get_import_service),
):
    """Preview or confirm an uploaded activity statement.

    With ``confirm`` unset the statement is parsed and planned without
    touching the ledger; with it set the plan is applied and committed.

    Raises:
        HTTPException:
            - 404 Not Found: No owner registered for the statement's alias and year
            - 409 Conflict: Another import is being confirmed
            - 413 Payload Too Large: Statement exceeds MAX_STATEMENT_BYTES
            - 422 Unprocessable Entity: Statement is missing a required section
    """
    raw = file.file.read(settings.MAX_STATEMENT_BYTES + 1)
    if len(raw) > settings.MAX_STATEMENT_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"Statement exceeds {settings.MAX_STATEMENT_BYTES} bytes",
        )
    document = raw.decode("utf-8", errors="replace")

    if confirm and import_service.is_import_in_progress():
        raise HTTPException(
            status_code=409,
            detail="Import already in progress. Please wait for it to complete.",
        )

    try:
        if confirm:
            return _confirm_response(import_service.confirm(db, document))
        return _preview_response(import_service.preview(db, document))
    except StructuralParseError as e:
        logger.warning("Rejected statement %s: %s", file.filename, e)
        raise HTTPException(status_code=422, detail=str(e))
    except OwnerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# --- Response builders ---


def _issue(issue: RowIssue) -> RowIssueResponse:
    return RowIssueResponse(section=issue.section, row=issue.row, reason=issue.reason)


def _stock_action(action: Action) -> StockPositionAction:
    position: OpenPosition = action.record
    return StockPositionAction(
        action=action.verdict.value,
        symbol=position.symbol,
        quantity=position.quantity,
        cost_price=position.cost_price,
        source=action.source,
    )


def _option_position_action(action: Action) -> OptionPositionAction:
    position: OpenOptionPosition = action.record
    return OptionPositionAction(
        action=action.verdict.value,
        underlying=position.key.underlying,
        option_type=position.key.kind.value,
        strike_price=position.key.strike,
        expiry_date=position.key.expiry,
        quantity=position.quantity,
        cost_price=position.cost_price,
        premium=position.premium,
    )


def _trade_action(action: Action, lot_codes: dict[str, str]) -> OptionTradeAction:
    event: OptionTradeEvent = action.record
    return OptionTradeAction(
        action=action.verdict.value,
        trade_action=event.action.value,
        underlying=event.key.underlying,
        option_type=event.key.kind.value,
        strike_price=event.key.strike,
        expiry_date=event.key.expiry,
        trade_time=event.trade_time,
        quantity=event.quantity,
        premium=event.premium,
        realized_pnl=event.realized_pnl,
        matched_quantity=action.matched_quantity,
        unmatched_quantity=action.unmatched_quantity,
        allocations=[
            LotAllocationResponse(
                lot_id=a.ref.lot_id,
                lot_code=lot_codes.get(a.ref.lot_id),
                consumed=a.consumed,
                remaining=a.remaining_quantity,
                premium=a.premium_portion,
                profit=a.profit,
                profit_percent=a.profit_percent,
                days_held=a.days_held,
                partial=a.is_partial,
            )
            for a in action.allocations
        ],
    )


def _stock_trade_action(action: Action, lot_codes: dict[str, str]) -> StockTradeAction:
    trade: StockTradeEvent = action.record
    return StockTradeAction(
        action=action.verdict.value,
        trade_action=trade.action.value,
        symbol=trade.symbol,
        trade_time=trade.trade_time,
        quantity=trade.quantity,
        trade_price=trade.trade_price,
        realized_pnl=trade.realized_pnl,
        source=action.source,
        matched_quantity=action.matched_quantity,
        unmatched_quantity=action.unmatched_quantity,
        allocations=[
            StockAllocationResponse(
                lot_id=a.ref.lot_id,
                lot_code=lot_codes.get(a.ref.lot_id),
                consumed=a.consumed,
                remaining=a.remaining_quantity,
                close_price=a.close_price,
                partial=a.is_partial,
            )
            for a in action.allocations
        ],
    )


def _preview_response(
preview: StatementPreview) -> StatementPreviewResponse:
    statement = preview.statement
    plan = preview.plan
    lot_codes = {
        lot.ref.lot_id: lot.code
        for lots in plan.context.persisted.values()
        for lot in lots
    }
    stock_lot_codes = {
        lot.ref.lot_id: lot.code
        for lots in plan.context.stock_persisted.values()
        for lot in lots
    }
    existing = preview.existing_net_equity
    return StatementPreviewResponse(
        statement_date=statement.statement_date,
        date_str=statement.date_str,
        year=statement.year,
        alias=statement.account_alias,
        owner_id=preview.owner.id,
        owner_name=preview.owner.display_name,
        is_year_start=statement.is_year_start,
        cash_balance=statement.cash_balance,
        accrued_interest=statement.accrued_interest,
        net_equity=statement.net_equity,
        management_fee=statement.management_fee,
        net_deposit=statement.net_deposit,
        existing_record=(
            NetEquityRecordResponse(
                record_date=existing.date,
                net_equity=existing.net_equity,
                cash_balance=existing.cash_balance,
                interest=existing.interest,
                deposit=existing.deposit,
                management_fee=existing.management_fee,
            )
            if existing is not None
            else None
        ),
        latest_record_date=preview.latest_record_date,
        positions=[_stock_action(a) for a in plan.stock_actions],
        open_options=[_option_position_action(a) for a in plan.option_position_actions],
        option_trades=[_trade_action(a, lot_codes) for a in plan.trade_actions],
        stock_trades=[_stock_trade_action(a, stock_lot_codes) for a in plan.stock_trade_actions],
        anomalies=[_issue(i) for i in statement.anomalies],
    )


def _confirm_response(result: ImportResult) -> StatementConfirmResponse:
    statement = result.statement
    return StatementConfirmResponse(
        action=result.action,
        statement_date=statement.statement_date,
        date_str=statement.date_str,
        alias=statement.account_alias,
        owner_id=result.owner.id,
        positions_sync=SyncCountsResponse(
            added=result.positions_sync.added, skipped=result.positions_sync.skipped
        ),
        open_options_sync=SyncCountsResponse(
            added=result.open_options_sync.added, skipped=result.open_options_sync.skipped
        ),
        options_sync=TradeSyncCountsResponse(
            added=result.options_sync.added,
            skipped=result.options_sync.skipped,
            closed=result.options_sync.closed,
            closed_skipped=result.options_sync.closed_skipped,
        ),
        stock_trades_sync=TradeSyncCountsResponse(
            added=result.stock_trades_sync.added,
            skipped=result.stock_trades_sync.skipped,
            closed=result.stock_trades_sync.closed,
            closed_skipped=result.stock_trades_sync.closed_skipped,
        ),
        anomalies=[_issue(i) for i in statement.anomalies],
        orphans=[_trade_action(a, {}) for a in result.orphans],
        stock_orphans=[_stock_trade_action(a, {}) for a in result.stock_orphans],
    )
