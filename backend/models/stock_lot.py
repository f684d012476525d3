"""StockLot model - persistent ledger record for a stock position."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid

STOCK_OPEN = "Open"
STOCK_CLOSED = "Closed"

SOURCE_ASSIGNED = "assigned"


class StockLot(Base):
    """A quantity of shares held by an owner, opened at one price and date.

    Position snapshots only ever add stock lots; existing lots are never
    rewritten from a snapshot. Stock trades open lots and close them
    oldest-first. A partial close shrinks the Open lot and adds a Closed
    row for the sold shares, stamped with the closing trade's fingerprint
    in ``close_ref``.
    """

    __tablename__ = "stock_lots"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_lot_quantity_positive"),
        CheckConstraint("open_price >= 0", name="ck_stock_lot_open_price_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), ForeignKey("owners.id"), nullable=False, index=True)
    year = Column(Integer, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=STOCK_OPEN, index=True)  # "Open" / "Closed"
    open_date = Column(Date, nullable=False)
    open_price = Column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    quantity = Column(Numeric(18, 8), nullable=False)
    code = Column(String(16), nullable=False, unique=True)
    source = Column(String, nullable=True)  # None / "assigned"
    close_date = Column(Date, nullable=True)
    close_price = Column(Numeric(18, 6), nullable=True)
    close_ref = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    owner = relationship("Owner", back_populates="stock_lots")
