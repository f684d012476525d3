"""Test fixtures and sample data."""
import pytest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from integrations.ib_statement.types import ContractKey, OptionKind
from models import OptionLot, Owner, StockLot
from models.option_lot import OPTION_OPEN
from models.stock_lot import STOCK_OPEN

_code_counter = iter(range(1, 1_000_000))


def next_code(prefix: str = "T") -> str:
    """Deterministic lot code for rows created directly by tests."""
    return f"{prefix}{next(_code_counter):04d}"


def contract(
    underlying: str = "QQQ",
    strike: str = "618",
    expiry: date = date(2026, 2, 3),
    kind: OptionKind = OptionKind.PUT,
) -> ContractKey:
    return ContractKey(underlying=underlying, strike=Decimal(strike), expiry=expiry, kind=kind)


def create_option_lot(
    db: Session,
    owner: Owner,
    key: ContractKey,
    open_date: datetime,
    quantity: str | Decimal,
    premium: str | Decimal,
    operation: str = OPTION_OPEN,
    year: int | None = None,
) -> OptionLot:
    """Insert an option lot row directly, bypassing the import pipeline."""
    lot = OptionLot(
        owner_id=owner.id,
        year=year or owner.year,
        operation=operation,
        underlying=key.underlying,
        option_type=key.kind.value,
        strike_price=key.strike,
        expiry_date=key.expiry,
        open_date=open_date,
        quantity=Decimal(quantity),
        premium=Decimal(premium),
        final_profit=Decimal(premium),
        code=next_code("O"),
    )
    db.add(lot)
    db.flush()
    return lot


def create_stock_lot(
    db: Session,
    owner: Owner,
    symbol: str,
    quantity: str | Decimal = "100",
    open_price: str | Decimal = "150.00",
    status: str = STOCK_OPEN,
    open_date: date = date(2026, 1, 15),
) -> StockLot:
    """Insert a stock lot row directly, bypassing the import pipeline."""
    lot = StockLot(
        owner_id=owner.id,
        year=owner.year,
        symbol=symbol,
        status=status,
        open_date=open_date,
        open_price=Decimal(open_price),
        quantity=Decimal(quantity),
        code=next_code("S"),
    )
    db.add(lot)
    db.flush()
    return lot


@pytest.fixture
def owner(db: Session) -> Owner:
    """Owner registered for the default test statement alias and year."""
    owner = Owner(alias="U123", year=2026, name="Test Owner")
    db.add(owner)
    db.commit()
    db.refresh(owner)
    return owner


@pytest.fixture
def other_owner(db: Session) -> Owner:
    """A second owner, used to check ledger isolation."""
    owner = Owner(alias="U999", year=2026, name="Other Owner")
    db.add(owner)
    db.commit()
    db.refresh(owner)
    return owner
