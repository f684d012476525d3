"""DailyNetEquity model - one NAV row per owner per statement date."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class DailyNetEquity(Base):
    """Net asset value figures copied from a dated activity statement."""

    __tablename__ = "daily_net_equity"
    __table_args__ = (
        UniqueConstraint("owner_id", "date", name="uix_daily_net_equity_owner_date"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), ForeignKey("owners.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    year = Column(Integer, nullable=False)
    net_equity = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    cash_balance = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    interest = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    deposit = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    management_fee = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    owner = relationship("Owner", back_populates="daily_net_equity")
