"""Owner directory and daily net equity records."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from integrations.exceptions import OwnerNotFound
from models import DailyNetEquity, Owner

logger = logging.getLogger(__name__)


class OwnerService:
    """Resolves statement aliases to owners and keeps their NAV history."""

    @staticmethod
    def resolve(db: Session, alias: str, year: int) -> Owner:
        """Find the owner registered under ``alias`` for ``year``.

        Raises:
            OwnerNotFound: If no owner matches.
        """
        owner = db.query(Owner).filter_by(alias=alias, year=year).first()
        if owner is None:
            raise OwnerNotFound(alias, year)
        return owner

    @staticmethod
    def create_owner(db: Session, alias: str, year: int, name: str | None = None) -> Owner:
        owner = Owner(alias=alias, year=year, name=name)
        db.add(owner)
        db.flush()
        logger.info("Created owner %s (%d)", alias, year)
        return owner

    @staticmethod
    def get_net_equity(db: Session, owner_id: str, on: date) -> DailyNetEquity | None:
        return db.query(DailyNetEquity).filter_by(owner_id=owner_id, date=on).first()

    @staticmethod
    def latest_record_date(db: Session, owner_id: str) -> date | None:
        """Date of the owner's most recent daily net equity row."""
        return (
            db.query(func.max(DailyNetEquity.date))
            .filter(DailyNetEquity.owner_id == owner_id)
            .scalar()
        )

    @staticmethod
    def upsert_net_equity(
        db: Session,
        owner_id: str,
        on: date,
        net_equity: Decimal,
        cash_balance: Decimal,
        interest: Decimal,
        deposit: Decimal,
        management_fee: Decimal,
    ) -> tuple[DailyNetEquity, bool]:
        """Create or overwrite the owner's NAV row for ``on``.

        Returns:
            The row and whether it was newly created.
        """
        row = OwnerService.get_net_equity(db, owner_id, on)
        created = row is None
        if created:
            row = DailyNetEquity(owner_id=owner_id, date=on, year=on.year)
            db.add(row)
        row.net_equity = net_equity
        row.cash_balance = cash_balance
        row.interest = interest
        row.deposit = deposit
        row.management_fee = management_fee
        db.flush()
        logger.info(
            "%s net equity for owner %s on %s: %s",
            "Created" if created else "Updated", owner_id, on, net_equity,
        )
        return row, created
