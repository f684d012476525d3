"""Owner model - a statement account holder for one ledger year."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class Owner(Base):
    """A ledger owner, identified by the statement's account alias and year.

    The same alias is registered once per year, so the (alias, year) pair
    resolves the internal owner identity an imported statement belongs to.
    The ``initial_*`` columns hold the year-opening balances written by a
    January 1st statement.
    """

    __tablename__ = "owners"
    __table_args__ = (
        UniqueConstraint("alias", "year", name="uix_owner_alias_year"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    alias = Column(String, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    name = Column(String, nullable=True)
    initial_cost = Column(Numeric(18, 2), nullable=True)
    initial_cash = Column(Numeric(18, 2), nullable=True)
    initial_management_fee = Column(Numeric(18, 2), nullable=True)
    initial_interest = Column(Numeric(18, 2), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    stock_lots = relationship("StockLot", back_populates="owner")
    option_lots = relationship("OptionLot", back_populates="owner")
    daily_net_equity = relationship("DailyNetEquity", back_populates="owner")

    @property
    def display_name(self) -> str:
        """Owner name, falling back to the alias."""
        return self.name or self.alias

    def set_opening_balances(
        self,
        net_equity: Decimal,
        cash: Decimal,
        management_fee: Decimal,
        interest: Decimal,
    ) -> None:
        self.initial_cost = net_equity
        self.initial_cash = cash
        self.initial_management_fee = management_fee
        self.initial_interest = interest
