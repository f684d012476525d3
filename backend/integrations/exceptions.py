"""Typed exception hierarchy for statement import errors.

Fatal errors (missing statement structure, unknown owner) abort an import
before anything is written. Row-level problems are recorded instead of
raised past the row that caused them.
"""


class StatementImportError(Exception):
    """Base exception for all statement import errors."""

    pass


class StructuralParseError(StatementImportError):
    """A required part of the statement (date, alias, NAV block) is missing."""

    def __init__(self, section: str, message: str | None = None):
        self.section = section
        super().__init__(message or f"Statement is missing required section: {section}")


class OwnerNotFound(StatementImportError):
    """No owner is registered for the statement's alias in its year."""

    def __init__(self, alias: str, year: int):
        self.alias = alias
        self.year = year
        super().__init__(f'No owner found for alias "{alias}" ({year})')


class RowAnomaly(StatementImportError):
    """A single statement row could not be decoded or applied.

    Non-fatal: the row is dropped (or reported with an orphan verdict) and
    the rest of the statement is processed.
    """

    def __init__(self, message: str, row: str = "", section: str = ""):
        self.row = row
        self.section = section
        super().__init__(message)


class CodeCollisionExhausted(StatementImportError):
    """Every generated lot code collided with an existing one."""

    def __init__(self, attempts: int, last_candidate: str):
        self.attempts = attempts
        self.last_candidate = last_candidate
        super().__init__(
            f"Lot code still collides after {attempts} attempts (last: {last_candidate})"
        )
