"""Short lot codes shared by the stock and option ledgers.

Codes are drawn from a restricted alphabet and must be unique across both
``stock_lots`` and ``option_lots``. Uniqueness is best-effort: after the
configured number of collisions the last candidate is accepted.
"""

import logging
import secrets
from collections.abc import Callable

from sqlalchemy.orm import Session

from config import settings
from integrations.exceptions import CodeCollisionExhausted
from models import OptionLot, StockLot

logger = logging.getLogger(__name__)


def generate_code(length: int | None = None, alphabet: str | None = None) -> str:
    """Return a random code of ``length`` characters from ``alphabet``."""
    length = length or settings.LOT_CODE_LENGTH
    alphabet = alphabet or settings.LOT_CODE_ALPHABET
    return "".join(secrets.choice(alphabet) for _ in range(length))


def code_in_use(db: Session, code: str) -> bool:
    """Check both ledger tables for an existing lot with this code."""
    if db.query(StockLot.id).filter(StockLot.code == code).first() is not None:
        return True
    return db.query(OptionLot.id).filter(OptionLot.code == code).first() is not None


def generate_unique_code(
    db: Session,
    max_attempts: int | None = None,
    generator: Callable[[], str] = generate_code,
    strict: bool = False,
) -> str:
    """Generate a lot code that no stock or option lot is using yet.

    Lots added earlier in the same unit of work must already be flushed
    for their codes to count.

    Args:
        db: Database session
        max_attempts: Candidates to try (defaults to LOT_CODE_MAX_ATTEMPTS)
        generator: Candidate source
        strict: Raise instead of accepting a colliding code

    Returns:
        A code, unique unless every attempt collided.

    Raises:
        CodeCollisionExhausted: Only when ``strict`` is set.
    """
    max_attempts = max_attempts or settings.LOT_CODE_MAX_ATTEMPTS
    candidate = generator()
    for _ in range(max_attempts):
        if not code_in_use(db, candidate):
            return candidate
        candidate = generator()

    exhausted = CodeCollisionExhausted(max_attempts, candidate)
    if strict:
        raise exhausted
    logger.warning("%s; using it anyway", exhausted)
    return candidate
