"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the ledger models used by ``statement_ingest``.
"""

from .ledger import (
    Base,
    CategorizationRuleRow,
    Category,
    LedgerTransaction,
    Upload,
    UserTenant,
)

__all__ = [
    "Base",
    "CategorizationRuleRow",
    "Category",
    "LedgerTransaction",
    "Upload",
    "UserTenant",
]
