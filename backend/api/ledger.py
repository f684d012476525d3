"""Owner ledger API endpoints."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.helpers import cache_key, get_or_404
from database import get_db
from models import Owner
from schemas.ledger import OptionLotResponse, StockLotResponse
from services.lot_ledger_service import LotLedgerService
from services.response_cache import response_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/owners", tags=["ledger"])


@router.get("/{owner_id}/stock-lots", response_model=list[StockLotResponse])
def list_stock_lots(
    owner_id: str,
    status: str | None = Query(None, description="Filter by status (Open / Closed)"),
    db: Session = Depends(get_db),
):
    """List an owner's stock lots, oldest first."""
    key = cache_key("stock-lots", owner_id, status)
    cached = response_cache.get(key)
    if cached is not None:
        return cached

    get_or_404(db, Owner, owner_id, "Owner not found")
    lots = LotLedgerService.get_stock_lots(db, owner_id, status=status)
    result = [StockLotResponse.model_validate(lot) for lot in lots]
    response_cache.set(key, result)
    return result


@router.get("/{owner_id}/option-lots", response_model=list[OptionLotResponse])
def list_option_lots(
    owner_id: str,
    operation: str | None = Query(
        None, description="Filter by operation (Open / Closed / Assigned / Expired)"
    ),
    db: Session = Depends(get_db),
):
    """List an owner's option lots, oldest first."""
    key = cache_key("option-lots", owner_id, operation)
    cached = response_cache.get(key)
    if cached is not None:
        return cached

    get_or_404(db, Owner, owner_id, "Owner not found")
    lots = LotLedgerService.get_option_lots(db, owner_id, operation=operation)
    result = [OptionLotResponse.model_validate(lot) for lot in lots]
    response_cache.set(key, result)
    return result
