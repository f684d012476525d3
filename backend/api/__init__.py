"""API route handlers."""
from . import ledger, statements

__all__ = ["ledger", "statements"]
