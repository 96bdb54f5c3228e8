"""Shared SQLAlchemy models registry for the ledger database.

Currently includes the ledger and import staging models used by ``bank_import``.
"""

from .ledger import Base, ImportBatch, LedgerEntry, MatchRuleRow, StagedTransaction

__all__ = [
    "Base",
    "ImportBatch",
    "LedgerEntry",
    "MatchRuleRow",
    "StagedTransaction",
]
