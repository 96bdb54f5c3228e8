"""Data models and type aliases for ``bank_import``.

The types here are the in-memory vocabulary shared by the parser, the
duplicate classifier, the pattern matching engine and the staging
orchestrator. ORM rows live in ``ledger_db``; :mod:`bank_import.persistence`
converts between the two.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import NamedTuple, TypeAlias

# ---------------------------------------------------------------------------
# Parser output
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ParsedCandidate:
    """One transaction line extracted from a statement file.

    ``amount`` is signed (debits negative). ``source`` identifies the
    statement block the line came from, e.g. ``"Big Bank - Checking (1234)"``.
    """

    date: date
    amount: Decimal
    payee: str | None
    memo: str | None
    external_id: str | None
    source: str


@dataclass(frozen=True, slots=True)
class ParseError:
    """A non-fatal problem found while parsing a statement file."""

    message: str
    file_name: str | None = None
    code: str | None = None


@dataclass(frozen=True, slots=True)
class ParseResult:
    candidates: tuple[ParsedCandidate, ...] = ()
    errors: tuple[ParseError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class DuplicateStatus(StrEnum):
    NEW = "new"
    EXACT_DUPLICATE = "exact_duplicate"
    POTENTIAL_DUPLICATE = "potential_duplicate"

    @property
    def is_duplicate(self) -> bool:
        return self is not DuplicateStatus.NEW


class Classification(NamedTuple):
    """Outcome of classifying one candidate.

    ``duplicate_of_key`` is set if and only if ``status`` is a duplicate
    status. Use :meth:`new` / :meth:`duplicate` rather than constructing the
    tuple directly.
    """

    status: DuplicateStatus
    duplicate_of_key: str | None = None

    @classmethod
    def new(cls) -> Classification:
        return cls(DuplicateStatus.NEW, None)

    @classmethod
    def duplicate(cls, status: DuplicateStatus, key: str) -> Classification:
        if not status.is_duplicate:
            raise ValueError(f"not a duplicate status: {status!r}")
        if not key:
            raise ValueError("duplicate classification requires the matched record key")
        return cls(status, key)


@dataclass(frozen=True, slots=True)
class IndexedRecord:
    """A ledger entry or staged row as seen by the classifier."""

    key: str
    date: date
    amount: Decimal
    payee: str | None


# Lookup map keyed by the normalized external identifier.
RecordIndex: TypeAlias = Mapping[str, IndexedRecord]


# ---------------------------------------------------------------------------
# Category rules
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class MatchRule:
    """A user-authored category assignment rule.

    ``pattern`` is a literal substring unless ``is_regex`` is set. The usage
    counters (``match_count``, ``last_used_at``) are the only fields the
    matching engine mutates.
    """

    pattern: str
    is_regex: bool
    category: str
    key: str | None = None
    created_at: datetime | None = None
    modified_at: datetime | None = None
    last_used_at: datetime | None = None
    match_count: int = 0


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


class BatchState(StrEnum):
    IMPORTED = "imported"
    UNDER_REVIEW = "under_review"
    COMMITTED = "committed"


@dataclass(frozen=True, slots=True)
class StagedCandidate:
    """A parsed candidate enriched with classification and review state."""

    key: str
    batch_key: str
    tenant_id: str
    date: date
    amount: Decimal
    payee: str | None
    memo: str | None
    external_id: str | None
    source: str | None
    duplicate_status: DuplicateStatus
    duplicate_of_key: str | None
    suggested_category: str | None
    is_selected: bool

    @property
    def classification(self) -> Classification:
        return Classification(self.duplicate_status, self.duplicate_of_key)


__all__ = [
    "BatchState",
    "Classification",
    "DuplicateStatus",
    "IndexedRecord",
    "MatchRule",
    "ParseError",
    "ParseResult",
    "ParsedCandidate",
    "RecordIndex",
    "StagedCandidate",
]
