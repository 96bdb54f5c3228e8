"""Duplicate classification of parsed candidates against two lookup maps.

Public surface:
- ``normalize_external_id``: the case-insensitive lookup key for a bank
  identifier (FITID).
- ``build_index``: build a ``{normalized_id: IndexedRecord}`` map from ledger
  entries or staged rows. Records without an identifier never participate.
- ``classify``: return a :class:`~bank_import.models.Classification` for one
  candidate. The ledger map is consulted before the staged map.
- ``MissingExternalIdError``: raised when a candidate without an identifier
  reaches ``classify``; upstream filtering is expected to drop those.

The maps are plain dictionaries built once per batch, so classification does
no IO and is deterministic for an unchanged snapshot.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Protocol

from .models import Classification, DuplicateStatus, IndexedRecord, ParsedCandidate, RecordIndex


class MissingExternalIdError(ValueError):
    """A candidate without an external identifier was passed to ``classify``."""


class _Indexable(Protocol):
    key: str
    external_id: str | None
    date: date
    amount: Decimal
    payee: str | None


def normalize_external_id(value: str | None) -> str | None:
    if value is None:
        return None
    key = value.strip().casefold()
    return key or None


def build_index(records: Iterable[_Indexable]) -> dict[str, IndexedRecord]:
    """Index records by normalized external id.

    When several records share an identifier the one with the latest ``date``
    wins; equal dates keep the record seen last.
    """

    index: dict[str, IndexedRecord] = {}
    for rec in records:
        norm = normalize_external_id(rec.external_id)
        if norm is None:
            continue
        current = index.get(norm)
        if current is None or rec.date >= current.date:
            index[norm] = IndexedRecord(
                key=rec.key, date=rec.date, amount=rec.amount, payee=rec.payee
            )
    return index


def _is_exact(candidate: ParsedCandidate, record: IndexedRecord) -> bool:
    return (
        candidate.date == record.date
        and candidate.amount == record.amount
        and (candidate.payee or None) == (record.payee or None)
    )


def classify(
    candidate: ParsedCandidate,
    ledger_index: RecordIndex,
    staged_index: RecordIndex,
) -> Classification:
    """Classify ``candidate`` as new, an exact duplicate or a potential duplicate.

    Raises ``MissingExternalIdError`` when the candidate has no identifier.
    """

    norm = normalize_external_id(candidate.external_id)
    if norm is None:
        raise MissingExternalIdError(
            "candidate has no external_id; identifier-less candidates must be filtered "
            "out before classification"
        )

    for index in (ledger_index, staged_index):
        record = index.get(norm)
        if record is None:
            continue
        status = (
            DuplicateStatus.EXACT_DUPLICATE
            if _is_exact(candidate, record)
            else DuplicateStatus.POTENTIAL_DUPLICATE
        )
        return Classification.duplicate(status, record.key)
    return Classification.new()


def summarize(classifications: Iterable[Classification]) -> Counter[DuplicateStatus]:
    """Count classifications per status (every status present, possibly zero)."""

    counts: Counter[DuplicateStatus] = Counter({status: 0 for status in DuplicateStatus})
    counts.update(c.status for c in classifications)
    return counts


__all__ = [
    "MissingExternalIdError",
    "build_index",
    "classify",
    "normalize_external_id",
    "summarize",
]
