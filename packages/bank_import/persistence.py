# ruff: noqa: I001
"""Persistence integration for bank_import.

Functions here read and write the shared ledger database owned by
``libs/db``. They rely on SQLAlchemy ORM models defined in
``ledger_db.models.ledger``; the caller provides the session and owns the
transaction scope (nothing here commits).

Scope:
- Build the ledger and staged lookup maps used by the duplicate classifier.
- Convert ORM rows to the in-memory types in :mod:`bank_import.models`.
- Load match rules and write back their usage counters.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ledger_db.models.ledger import ImportBatch, LedgerEntry, MatchRuleRow, StagedTransaction
from .duplicates import build_index
from .models import BatchState, DuplicateStatus, IndexedRecord, MatchRule, StagedCandidate


def new_key() -> str:
    return str(uuid.uuid4())


def to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(str(raw)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


# ---------------------------
# Row -> domain conversions
# ---------------------------


def staged_from_row(row: StagedTransaction) -> StagedCandidate:
    return StagedCandidate(
        key=row.key,
        batch_key=row.batch_key,
        tenant_id=row.tenant_id,
        date=row.date,
        amount=row.amount,
        payee=row.payee,
        memo=row.memo,
        external_id=row.external_id,
        source=row.source,
        duplicate_status=DuplicateStatus(row.duplicate_status),
        duplicate_of_key=row.duplicate_of_key,
        suggested_category=row.suggested_category,
        is_selected=bool(row.is_selected),
    )


def rule_from_row(row: MatchRuleRow) -> MatchRule:
    return MatchRule(
        pattern=row.pattern,
        is_regex=bool(row.is_regex),
        category=row.category,
        key=row.key,
        created_at=row.created_at,
        modified_at=row.modified_at,
        last_used_at=row.last_used_at,
        match_count=row.match_count or 0,
    )


# ---------------------------
# Lookup maps
# ---------------------------


def load_ledger_index(session: Session, *, tenant_id: str) -> dict[str, IndexedRecord]:
    """Return ``{normalized_external_id: IndexedRecord}`` for the tenant's ledger."""

    stmt = (
        select(
            LedgerEntry.key,
            LedgerEntry.external_id,
            LedgerEntry.date,
            LedgerEntry.amount,
            LedgerEntry.payee,
        )
        .where(LedgerEntry.tenant_id == tenant_id, LedgerEntry.external_id.is_not(None))
        .order_by(LedgerEntry.date, LedgerEntry.created_at, LedgerEntry.key)
    )
    return build_index(session.execute(stmt).all())


def load_staged_index(
    session: Session,
    *,
    tenant_id: str,
    exclude_batch_key: str | None = None,
) -> dict[str, IndexedRecord]:
    """Return the lookup map over pending (not yet committed) staged rows.

    ``exclude_batch_key`` leaves one batch out so it is never compared with
    itself when reclassified.
    """

    stmt = (
        select(
            StagedTransaction.key,
            StagedTransaction.external_id,
            StagedTransaction.date,
            StagedTransaction.amount,
            StagedTransaction.payee,
        )
        .join(ImportBatch, ImportBatch.key == StagedTransaction.batch_key)
        .where(
            StagedTransaction.tenant_id == tenant_id,
            StagedTransaction.external_id.is_not(None),
            ImportBatch.state != BatchState.COMMITTED.value,
        )
        .order_by(StagedTransaction.date, StagedTransaction.created_at, StagedTransaction.key)
    )
    if exclude_batch_key is not None:
        stmt = stmt.where(StagedTransaction.batch_key != exclude_batch_key)
    return build_index(session.execute(stmt).all())


# ---------------------------
# Match rules
# ---------------------------


def load_match_rules(session: Session, *, tenant_id: str) -> list[MatchRule]:
    """Return the tenant's rules, most recently modified first."""

    rows = (
        session.execute(
            select(MatchRuleRow)
            .where(MatchRuleRow.tenant_id == tenant_id)
            .order_by(MatchRuleRow.modified_at.desc(), MatchRuleRow.key)
        )
        .scalars()
        .all()
    )
    return [rule_from_row(r) for r in rows]


def record_rule_usage(session: Session, rules: Iterable[MatchRule]) -> int:
    """Write ``match_count``/``last_used_at`` back for rules used in a batch.

    Only rules with a ``key`` and a ``last_used_at`` are written. Returns the
    number of rows updated.
    """

    updated = 0
    for rule in rules:
        if rule.key is None or rule.last_used_at is None:
            continue
        session.execute(
            update(MatchRuleRow)
            .where(MatchRuleRow.key == rule.key)
            .values(match_count=rule.match_count, last_used_at=rule.last_used_at)
        )
        updated += 1
    return updated


__all__ = [
    "load_ledger_index",
    "load_match_rules",
    "load_staged_index",
    "new_key",
    "record_rule_usage",
    "rule_from_row",
    "staged_from_row",
    "to_decimal_2",
]
