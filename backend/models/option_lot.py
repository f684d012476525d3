"""OptionLot model - persistent ledger record for an option contract lot."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid

OPTION_OPEN = "Open"
OPTION_CLOSED = "Closed"
OPTION_ASSIGNED = "Assigned"
OPTION_EXPIRED = "Expired"


class OptionLot(Base):
    """Option contracts opened together, tracked until closed, assigned or expired.

    A partial close never removes the open row: its quantity and premium
    shrink by the consumed amount and a separate row records the closed
    portion. ``close_ref`` carries the fingerprint of the statement event
    that closed the row (or produced the closed-portion row), which lets a
    re-imported statement recognise closes it has already applied.
    """

    __tablename__ = "option_lots"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_option_lot_quantity_positive"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), ForeignKey("owners.id"), nullable=False, index=True)
    year = Column(Integer, nullable=False, index=True)
    operation = Column(String, nullable=False, default=OPTION_OPEN, index=True)
    underlying = Column(String, nullable=False, index=True)
    option_type = Column(String, nullable=False)  # "CALL" / "PUT"
    strike_price = Column(Numeric(18, 4), nullable=False)
    expiry_date = Column(Date, nullable=False)
    open_date = Column(DateTime, nullable=False)
    settlement_date = Column(Date, nullable=True)
    days_held = Column(Integer, nullable=True)
    quantity = Column(Numeric(18, 8), nullable=False)
    premium = Column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    final_profit = Column(Numeric(18, 6), nullable=True)
    profit_percent = Column(Numeric(18, 4), nullable=True)
    code = Column(String(16), nullable=False, unique=True)
    close_ref = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    owner = relationship("Owner", back_populates="option_lots")
