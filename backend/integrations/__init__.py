"""External document integrations.

This package contains:
- ib_statement: parser for Interactive Brokers HTML activity statements
- parsing_utils: permissive number and date grammars shared by parsers
- exceptions: typed errors raised while importing a statement
"""

from integrations.exceptions import (
    CodeCollisionExhausted,
    OwnerNotFound,
    RowAnomaly,
    StatementImportError,
    StructuralParseError,
)

__all__ = [
    "CodeCollisionExhausted",
    "OwnerNotFound",
    "RowAnomaly",
    "StatementImportError",
    "StructuralParseError",
]
