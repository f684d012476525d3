"""Service for the per-owner stock and option lot ledgers.

Pure data layer for inserts, closes, partial-close splits and queries of
StockLot and OptionLot records. Knows nothing about statements; which
lots to touch is decided by the statement planner.
"""

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.orm import Session

from integrations.ib_statement.types import ContractKey
from models import OptionLot, StockLot
from models.option_lot import OPTION_OPEN
from models.stock_lot import STOCK_CLOSED, STOCK_OPEN
from services.code_generator import generate_unique_code
from services.statement_planner import (
    LotAllocation,
    LotRef,
    OpenLotView,
    StockAllocation,
    StockLotView,
)

logger = logging.getLogger(__name__)


class LotLedgerService:
    """Manages lot inserts, closes, splits, and queries."""

    # --- Stock lots ---

    @staticmethod
    def create_stock_lot(
        db: Session,
        owner_id: str,
        year: int,
        symbol: str,
        open_date: date,
        open_price: Decimal,
        quantity: Decimal,
        source: str | None = None,
    ) -> StockLot:
        """Insert an Open stock lot with a fresh code."""
        lot = StockLot(
            owner_id=owner_id,
            year=year,
            symbol=symbol,
            status=STOCK_OPEN,
            open_date=open_date,
            open_price=open_price,
            quantity=quantity,
            code=generate_unique_code(db),
            source=source,
        )
        db.add(lot)
        db.flush()
        logger.info(
            "Created stock lot %s: %s shares of %s at %s for owner %s",
            lot.code, quantity, symbol, open_price, owner_id,
        )
        return lot

    @staticmethod
    def find_open_stock_lot(
        db: Session, owner_id: str, symbol: str, year: int
    ) -> StockLot | None:
        return (
            db.query(StockLot)
            .filter_by(owner_id=owner_id, symbol=symbol, year=year, status=STOCK_OPEN)
            .first()
        )

    @staticmethod
    def get_stock_lots(
        db: Session, owner_id: str, status: str | None = None
    ) -> list[StockLot]:
        """Get an owner's stock lots, oldest first, optionally filtered by status."""
        query = db.query(StockLot).filter_by(owner_id=owner_id)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(StockLot.open_date.asc(), StockLot.created_at.asc()).all()

    @staticmethod
    def get_open_stock_lots(
        db: Session, owner_id: str, symbol: str, year: int
    ) -> list[StockLot]:
        """Open lots for a symbol in FIFO order (open date, then insertion)."""
        return (
            db.query(StockLot)
            .filter_by(owner_id=owner_id, symbol=symbol, year=year, status=STOCK_OPEN)
            .order_by(StockLot.open_date.asc(), StockLot.created_at.asc())
            .all()
        )

    @staticmethod
    def has_stock_opened_on(
        db: Session, owner_id: str, symbol: str, year: int, open_date: date
    ) -> bool:
        """Whether a lot of any status was already opened on this date."""
        return (
            db.query(StockLot.id)
            .filter_by(owner_id=owner_id, symbol=symbol, year=year, open_date=open_date)
            .first()
            is not None
        )

    @staticmethod
    def stock_held_on(
        db: Session, owner_id: str, symbol: str, year: int, on: date
    ) -> bool:
        """Whether the ledger shows shares of ``symbol`` held at the end of ``on``.

        A lot counts when it was opened on or before that day and is still
        Open or was closed after it.
        """
        return (
            db.query(StockLot.id)
            .filter(
                StockLot.owner_id == owner_id,
                StockLot.symbol == symbol,
                StockLot.year == year,
                StockLot.open_date <= on,
                or_(StockLot.status == STOCK_OPEN, StockLot.close_date > on),
            )
            .first()
            is not None
        )

    # --- Option lots ---

    @staticmethod
    def create_option_lot(
        db: Session,
        owner_id: str,
        year: int,
        key: ContractKey,
        open_date: datetime,
        quantity: Decimal,
        premium: Decimal,
    ) -> OptionLot:
        """Insert an Open option lot.

        ``final_profit`` starts at the full premium, the profit of a short
        contract that is never bought back.
        """
        lot = OptionLot(
            owner_id=owner_id,
            year=year,
            operation=OPTION_OPEN,
            underlying=key.underlying,
            option_type=key.kind.value,
            strike_price=key.strike,
            expiry_date=key.expiry,
            open_date=open_date,
            quantity=quantity,
            premium=premium,
            final_profit=premium,
            code=generate_unique_code(db),
        )
        db.add(lot)
        db.flush()
        logger.info(
            "Created option lot %s: %s x %s opened %s for owner %s",
            lot.code, quantity, key, open_date, owner_id,
        )
        return lot

    @staticmethod
    def _open_option_query(db: Session, owner_id: str, key: ContractKey):
        return db.query(OptionLot).filter_by(
            owner_id=owner_id,
            operation=OPTION_OPEN,
            underlying=key.underlying,
            option_type=key.kind.value,
            strike_price=key.strike,
            expiry_date=key.expiry,
        )

    @staticmethod
    def get_open_option_lots(db: Session, owner_id: str, key: ContractKey) -> list[OptionLot]:
        """Open lots for a contract key in FIFO order (open date, then insertion)."""
        return (
            LotLedgerService._open_option_query(db, owner_id, key)
            .order_by(OptionLot.open_date.asc(), OptionLot.created_at.asc())
            .all()
        )

    @staticmethod
    def has_open_option_lot(db: Session, owner_id: str, key: ContractKey) -> bool:
        return LotLedgerService._open_option_query(db, owner_id, key).first() is not None

    @staticmethod
    def has_option_opened_at(
        db: Session, owner_id: str, key: ContractKey, open_date: datetime, year: int
    ) -> bool:
        """Whether a lot of any status was already opened at exactly this time."""
        return (
            db.query(OptionLot.id)
            .filter_by(
                owner_id=owner_id,
                year=year,
                underlying=key.underlying,
                option_type=key.kind.value,
                strike_price=key.strike,
                expiry_date=key.expiry,
                open_date=open_date,
            )
            .first()
            is not None
        )

    @staticmethod
    def option_held_on(db: Session, owner_id: str, key: ContractKey, on: date) -> bool:
        """Whether the ledger shows the contract held at the end of ``on``.

        A lot of any status counts when it was opened on or before that day
        and is still Open or was settled after it.
        """
        next_day = datetime.combine(on + timedelta(days=1), time())
        return (
            db.query(OptionLot.id)
            .filter(
                OptionLot.owner_id == owner_id,
                OptionLot.underlying == key.underlying,
                OptionLot.option_type == key.kind.value,
                OptionLot.strike_price == key.strike,
                OptionLot.expiry_date == key.expiry,
                OptionLot.open_date < next_day,
                or_(OptionLot.operation == OPTION_OPEN, OptionLot.settlement_date > on),
            )
            .first()
            is not None
        )

    @staticmethod
    def close_applied(db: Session, owner_id: str, close_ref: str) -> bool:
        """Whether a closing trade with this fingerprint already touched either ledger."""
        for model in (OptionLot, StockLot):
            found = (
                db.query(model.id)
                .filter_by(owner_id=owner_id, close_ref=close_ref)
                .first()
            )
            if found is not None:
                return True
        return False

    @staticmethod
    def get_option_lots(
        db: Session, owner_id: str, operation: str | None = None
    ) -> list[OptionLot]:
        """Get an owner's option lots, oldest first, optionally filtered by operation."""
        query = db.query(OptionLot).filter_by(owner_id=owner_id)
        if operation:
            query = query.filter_by(operation=operation)
        return query.order_by(OptionLot.open_date.asc(), OptionLot.created_at.asc()).all()

    # --- Closing ---

    @staticmethod
    def close_option_lot(
        db: Session,
        lot: OptionLot,
        operation: str,
        allocation: LotAllocation,
        close_ref: str,
    ) -> OptionLot:
        """Apply an allocation to a lot, closing it fully or splitting off the closed part.

        A full close rewrites the lot in place. A partial close leaves the
        lot Open with its quantity and premium reduced and inserts a new
        row, under a new code, for the closed portion.

        Returns:
            The row that now records the closed contracts.

        Raises:
            ValueError: If the lot no longer matches the state it was planned against.
        """
        if lot.operation != OPTION_OPEN or lot.quantity != allocation.lot_quantity:
            raise ValueError(
                f"Option lot {lot.code} changed since planning: "
                f"{lot.operation} {lot.quantity}, expected Open {allocation.lot_quantity}"
            )

        if not allocation.is_partial:
            lot.operation = operation
            _record_close(lot, allocation, close_ref)
            db.flush()
            logger.info(
                "%s option lot %s: %s contracts, profit %s",
                operation, lot.code, allocation.consumed, allocation.profit,
            )
            return lot

        closed = OptionLot(
            owner_id=lot.owner_id,
            year=lot.year,
            operation=operation,
            underlying=lot.underlying,
            option_type=lot.option_type,
            strike_price=lot.strike_price,
            expiry_date=lot.expiry_date,
            open_date=lot.open_date,
            quantity=allocation.consumed,
            premium=allocation.premium_portion,
            code=generate_unique_code(db),
        )
        _record_close(closed, allocation, close_ref)
        lot.quantity = allocation.remaining_quantity
        lot.premium = allocation.remaining_premium
        lot.final_profit = allocation.remaining_premium
        db.add(closed)
        db.flush()
        logger.info(
            "Split option lot %s: %s contracts %s as %s, %s remain open",
            lot.code, allocation.consumed, operation, closed.code, lot.quantity,
        )
        return closed

    @staticmethod
    def close_stock_lot(
        db: Session,
        lot: StockLot,
        allocation: StockAllocation,
        close_ref: str,
    ) -> StockLot:
        """Close a stock lot fully, or split off the sold shares as a Closed row.

        The split row keeps the lot's open date and open price; the Open
        lot keeps its code with the quantity reduced.

        Raises:
            ValueError: If the lot no longer matches the state it was planned against.
        """
        if lot.status != STOCK_OPEN or lot.quantity != allocation.lot_quantity:
            raise ValueError(
                f"Stock lot {lot.code} changed since planning: "
                f"{lot.status} {lot.quantity}, expected Open {allocation.lot_quantity}"
            )

        if not allocation.is_partial:
            lot.status = STOCK_CLOSED
            lot.close_date = allocation.close_date
            lot.close_price = allocation.close_price
            lot.close_ref = close_ref
            db.flush()
            logger.info(
                "Closed stock lot %s: %s shares of %s at %s",
                lot.code, allocation.consumed, lot.symbol, allocation.close_price,
            )
            return lot

        closed = StockLot(
            owner_id=lot.owner_id,
            year=lot.year,
            symbol=lot.symbol,
            status=STOCK_CLOSED,
            open_date=lot.open_date,
            open_price=lot.open_price,
            quantity=allocation.consumed,
            code=generate_unique_code(db),
            source=lot.source,
            close_date=allocation.close_date,
            close_price=allocation.close_price,
            close_ref=close_ref,
        )
        lot.quantity = allocation.remaining_quantity
        db.add(closed)
        db.flush()
        logger.info(
            "Split stock lot %s: %s shares closed as %s, %s remain open",
            lot.code, allocation.consumed, closed.code, lot.quantity,
        )
        return closed


def _record_close(lot: OptionLot, allocation: LotAllocation, close_ref: str) -> None:
    lot.settlement_date = allocation.settlement_date
    lot.days_held = allocation.days_held
    lot.final_profit = allocation.profit
    lot.profit_percent = allocation.profit_percent
    lot.close_ref = close_ref


class LedgerView:
    """One owner's ledger, read the way the statement planner needs it."""

    def __init__(self, db: Session, owner_id: str):
        self.db = db
        self.owner_id = owner_id

    def has_open_stock_lot(self, symbol: str, year: int) -> bool:
        return LotLedgerService.find_open_stock_lot(self.db, self.owner_id, symbol, year) is not None

    def stock_held_on(self, symbol: str, year: int, on: date) -> bool:
        return LotLedgerService.stock_held_on(self.db, self.owner_id, symbol, year, on)

    def has_stock_opened_on(self, symbol: str, year: int, open_date: date) -> bool:
        return LotLedgerService.has_stock_opened_on(self.db, self.owner_id, symbol, year, open_date)

    def open_stock_lots(self, symbol: str, year: int) -> list[StockLotView]:
        return [
            StockLotView(
                ref=LotRef(lot_id=lot.id),
                symbol=symbol,
                open_date=lot.open_date,
                quantity=lot.quantity,
                open_price=lot.open_price,
                code=lot.code,
            )
            for lot in LotLedgerService.get_open_stock_lots(self.db, self.owner_id, symbol, year)
        ]

    def has_open_option_lot(self, key: ContractKey) -> bool:
        return LotLedgerService.has_open_option_lot(self.db, self.owner_id, key)

    def option_held_on(self, key: ContractKey, on: date) -> bool:
        return LotLedgerService.option_held_on(self.db, self.owner_id, key, on)

    def has_option_opened_at(self, key: ContractKey, open_date: datetime, year: int) -> bool:
        return LotLedgerService.has_option_opened_at(self.db, self.owner_id, key, open_date, year)

    def open_option_lots(self, key: ContractKey) -> list[OpenLotView]:
        return [
            OpenLotView(
                ref=LotRef(lot_id=lot.id),
                key=key,
                open_date=lot.open_date,
                quantity=lot.quantity,
                premium=lot.premium,
                code=lot.code,
            )
            for lot in LotLedgerService.get_open_option_lots(self.db, self.owner_id, key)
        ]

    def close_applied(self, close_ref: str) -> bool:
        return LotLedgerService.close_applied(self.db, self.owner_id, close_ref)
