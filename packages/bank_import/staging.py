"""Staging and review of imported statement lines.

A statement import becomes one ``import_batches`` row plus one
``staged_transactions`` row per eligible line. Batches move through
``imported`` -> ``under_review`` -> ``committed``; review actions on a
committed batch raise :class:`InvalidBatchStateError`.

All functions take a SQLAlchemy session and never commit: the caller owns
the transaction scope (see :mod:`bank_import.workflows.review_flow`, which
runs each operation in ``session_scope`` so a failed commit leaves nothing
behind).
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import IO, Any

from ledger_db.models.ledger import ImportBatch, LedgerEntry, StagedTransaction
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from . import ofx
from .categories import sanitize_category
from .duplicates import classify, normalize_external_id, summarize
from .logging_setup import get_logger
from .matching import MatchDiagnostic, PatternMatcher
from .models import (
    BatchState,
    Classification,
    DuplicateStatus,
    MatchRule,
    ParsedCandidate,
    ParseError,
    StagedCandidate,
)
from .persistence import (
    load_ledger_index,
    load_match_rules,
    load_staged_index,
    new_key,
    record_rule_usage,
    staged_from_row,
    to_decimal_2,
)

_logger = get_logger("bank_import.staging")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000
_PAGE_SIZE_ENV = "BANK_IMPORT_PAGE_SIZE"


class InvalidBatchStateError(RuntimeError):
    """A review action targeted a batch that no longer accepts it."""


class StagedRowNotFoundError(LookupError):
    """One or more staged keys do not exist for the tenant."""


class BatchNotFoundError(LookupError):
    pass


class CommitError(RuntimeError):
    """Committing reviewed rows failed; no ledger rows were written."""


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


# ---------------------------
# Result shapes
# ---------------------------


@dataclass(frozen=True, slots=True)
class ImportOutcome:
    batch_key: str | None
    imported: int
    new: int
    exact_duplicate: int
    potential_duplicate: int
    errors: tuple[ParseError, ...]
    staged: tuple[StagedCandidate, ...]
    diagnostics: tuple[MatchDiagnostic, ...]


@dataclass(frozen=True, slots=True)
class ReviewPage:
    items: tuple[StagedCandidate, ...]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return (self.total_count + self.page_size - 1) // self.page_size

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True, slots=True)
class ReviewSummary:
    total: int
    selected: int
    new: int
    exact_duplicate: int
    potential_duplicate: int


@dataclass(frozen=True, slots=True)
class CompleteReviewResult:
    accepted: int
    rejected: int
    ledger_keys: tuple[str, ...]


# ---------------------------
# Helpers
# ---------------------------


def resolve_page_size(page_size: int | None = None) -> int:
    """Resolve the review page size (explicit, then ``BANK_IMPORT_PAGE_SIZE``, then 50).

    Capped at 1000 and never below 1.
    """

    if page_size is None:
        env_val = os.getenv(_PAGE_SIZE_ENV)
        try:
            page_size = int(env_val) if env_val else None
        except ValueError:
            page_size = None
    if page_size is None or page_size < 1:
        return DEFAULT_PAGE_SIZE
    return min(page_size, MAX_PAGE_SIZE)


def _pending_batch_keys(tenant_id: str):
    return select(ImportBatch.key).where(
        ImportBatch.tenant_id == tenant_id,
        ImportBatch.state != BatchState.COMMITTED.value,
    )


def _pending_rows(tenant_id: str):
    return select(StagedTransaction).where(
        StagedTransaction.tenant_id == tenant_id,
        StagedTransaction.batch_key.in_(_pending_batch_keys(tenant_id)),
    )


def _mark_under_review(session: Session, batch_keys: Iterable[str], now: datetime) -> None:
    keys = sorted(set(batch_keys))
    if not keys:
        return
    session.execute(
        update(ImportBatch)
        .where(
            ImportBatch.key.in_(keys),
            ImportBatch.state.in_([BatchState.IMPORTED.value, BatchState.UNDER_REVIEW.value]),
        )
        .values(state=BatchState.UNDER_REVIEW.value, updated_at=now)
    )


def _load_rows_for_update(
    session: Session, *, tenant_id: str, keys: Sequence[str]
) -> list[StagedTransaction]:
    wanted = set(keys)
    rows = (
        session.execute(
            select(StagedTransaction).where(
                StagedTransaction.tenant_id == tenant_id,
                StagedTransaction.key.in_(wanted),
            )
        )
        .scalars()
        .all()
    )
    missing = wanted - {r.key for r in rows}
    if missing:
        raise StagedRowNotFoundError(f"Staged rows not found: {sorted(missing)}")
    for row in rows:
        if row.batch.state == BatchState.COMMITTED.value:
            raise InvalidBatchStateError(
                f"Batch {row.batch_key} is committed; its rows can no longer be reviewed"
            )
    return list(rows)


def _count_rows(session: Session, batch_keys: Sequence[str]) -> int:
    # Counted up front; rowcount is unreliable for bulk DML that uses RETURNING.
    return session.execute(
        select(func.count())
        .select_from(StagedTransaction)
        .where(StagedTransaction.batch_key.in_(batch_keys))
    ).scalar_one()


def _row_candidate(row: StagedTransaction) -> ParsedCandidate:
    return ParsedCandidate(
        date=row.date,
        amount=row.amount,
        payee=row.payee,
        memo=row.memo,
        external_id=row.external_id,
        source=row.source or "",
    )


# ---------------------------
# Import
# ---------------------------


def import_statement(
    session: Session,
    stream: IO[bytes] | bytes | str | None,
    file_name: str | None,
    *,
    tenant_id: str,
    rules: Sequence[MatchRule] | None = None,
    budget_ms: float | None = None,
    now: datetime | None = None,
) -> ImportOutcome:
    """Parse, classify, categorize and stage one statement file.

    Lines without a bank identifier cannot be checked for duplicates; they
    are dropped here and reported as errors. Duplicate lookup uses snapshots
    of the ledger and of pending staged rows taken once, before any row of
    this file is written. When ``rules`` is ``None`` the tenant's stored rules
    are used and their usage counters are written back.
    """

    stamp = now or datetime.now(UTC)
    parsed = ofx.parse(stream, file_name)
    errors: list[ParseError] = list(parsed.errors)

    eligible: list[ParsedCandidate] = []
    for cand in parsed.candidates:
        if normalize_external_id(cand.external_id) is None:
            # The parser already reports lines lacking both payee and FITID.
            if cand.payee is not None:
                errors.append(
                    ParseError(
                        f"Transaction on {cand.date:%Y-%m-%d} ({cand.payee}) has no FITID and "
                        "was skipped",
                        file_name,
                        ofx.ERR_MISSING_IDENTIFIER,
                    )
                )
            continue
        amount = to_decimal_2(cand.amount)
        eligible.append(replace(cand, amount=amount) if amount is not None else cand)

    if not eligible:
        _logger.info(
            "staging:import_empty tenant=%s file=%s errors=%d", tenant_id, file_name, len(errors)
        )
        return ImportOutcome(
            batch_key=None,
            imported=0,
            new=0,
            exact_duplicate=0,
            potential_duplicate=0,
            errors=tuple(errors),
            staged=(),
            diagnostics=(),
        )

    ledger_index = load_ledger_index(session, tenant_id=tenant_id)
    staged_index = load_staged_index(session, tenant_id=tenant_id)
    classifications = [classify(c, ledger_index, staged_index) for c in eligible]

    stored_rules = rules is None
    rule_set = load_match_rules(session, tenant_id=tenant_id) if rules is None else list(rules)
    matcher = PatternMatcher(rule_set, budget_ms=budget_ms)
    suggestions = matcher.match_batch(eligible, now=stamp)
    if stored_rules:
        record_rule_usage(session, (r for r in rule_set if r.last_used_at == stamp))

    batch = ImportBatch(
        key=new_key(),
        tenant_id=tenant_id,
        file_name=file_name,
        state=BatchState.IMPORTED.value,
        created_at=stamp,
        updated_at=stamp,
    )
    session.add(batch)
    rows: list[StagedTransaction] = []
    for line_no, (cand, cls, category) in enumerate(
        zip(eligible, classifications, suggestions, strict=True)
    ):
        rows.append(
            StagedTransaction(
                key=new_key(),
                tenant_id=tenant_id,
                batch_key=batch.key,
                line_no=line_no,
                date=cand.date,
                amount=cand.amount,
                payee=cand.payee,
                memo=cand.memo,
                external_id=cand.external_id,
                source=cand.source,
                duplicate_status=cls.status.value,
                duplicate_of_key=cls.duplicate_of_key,
                suggested_category=category,
                is_selected=cls.status is DuplicateStatus.NEW,
                created_at=stamp,
            )
        )
    session.add_all(rows)
    session.flush()

    counts = summarize(classifications)
    _logger.info(
        (
            "staging:import_done tenant=%s batch=%s imported=%d new=%d exact=%d potential=%d "
            "errors=%d diagnostics=%d"
        ),
        tenant_id,
        batch.key,
        len(rows),
        counts[DuplicateStatus.NEW],
        counts[DuplicateStatus.EXACT_DUPLICATE],
        counts[DuplicateStatus.POTENTIAL_DUPLICATE],
        len(errors),
        len(matcher.diagnostics),
    )
    return ImportOutcome(
        batch_key=batch.key,
        imported=len(rows),
        new=counts[DuplicateStatus.NEW],
        exact_duplicate=counts[DuplicateStatus.EXACT_DUPLICATE],
        potential_duplicate=counts[DuplicateStatus.POTENTIAL_DUPLICATE],
        errors=tuple(errors),
        staged=tuple(staged_from_row(r) for r in rows),
        diagnostics=tuple(matcher.diagnostics),
    )


# ---------------------------
# Review
# ---------------------------


def get_pending_review(
    session: Session,
    *,
    tenant_id: str,
    page: int = 1,
    page_size: int | None = None,
) -> ReviewPage:
    """Return one page of pending staged rows (date desc, payee asc, key desc)."""

    size = resolve_page_size(page_size)
    page = max(page, 1)
    base = _pending_rows(tenant_id)
    total = session.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    rows = (
        session.execute(
            base.order_by(
                StagedTransaction.date.desc(),
                StagedTransaction.payee.asc(),
                StagedTransaction.key.desc(),
            )
            .offset((page - 1) * size)
            .limit(size)
        )
        .scalars()
        .all()
    )
    return ReviewPage(
        items=tuple(staged_from_row(r) for r in rows),
        page=page,
        page_size=size,
        total_count=total,
    )


def set_selection(
    session: Session,
    *,
    tenant_id: str,
    keys: Sequence[str],
    is_selected: bool,
    now: datetime | None = None,
) -> int:
    """Select or deselect specific staged rows; returns the number of rows touched."""

    if not keys:
        return 0
    rows = _load_rows_for_update(session, tenant_id=tenant_id, keys=keys)
    for row in rows:
        row.is_selected = is_selected
    _mark_under_review(session, (r.batch_key for r in rows), now or datetime.now(UTC))
    session.flush()
    return len(rows)


def _select_all(session: Session, *, tenant_id: str, is_selected: bool, now: datetime) -> int:
    batch_keys = list(session.execute(_pending_batch_keys(tenant_id)).scalars().all())
    if not batch_keys:
        return 0
    count = _count_rows(session, batch_keys)
    session.execute(
        update(StagedTransaction)
        .where(
            StagedTransaction.tenant_id == tenant_id,
            StagedTransaction.batch_key.in_(batch_keys),
        )
        .values(is_selected=is_selected)
        .execution_options(synchronize_session="fetch")
    )
    _mark_under_review(session, batch_keys, now)
    return count


def select_all(session: Session, *, tenant_id: str, now: datetime | None = None) -> int:
    return _select_all(session, tenant_id=tenant_id, is_selected=True, now=now or datetime.now(UTC))


def deselect_all(session: Session, *, tenant_id: str, now: datetime | None = None) -> int:
    return _select_all(
        session, tenant_id=tenant_id, is_selected=False, now=now or datetime.now(UTC)
    )


def edit_staged(
    session: Session,
    *,
    tenant_id: str,
    key: str,
    suggested_category: str | None = UNSET,
    memo: str | None = UNSET,
    now: datetime | None = None,
) -> StagedCandidate:
    """Edit the category and/or memo of one staged row.

    Categories are sanitized; a blank category clears the suggestion.
    """

    (row,) = _load_rows_for_update(session, tenant_id=tenant_id, keys=[key])
    if suggested_category is not UNSET:
        row.suggested_category = sanitize_category(suggested_category) or None
    if memo is not UNSET:
        row.memo = (memo.strip() or None) if memo is not None else None
    _mark_under_review(session, [row.batch_key], now or datetime.now(UTC))
    session.flush()
    return staged_from_row(row)


def get_summary(session: Session, *, tenant_id: str) -> ReviewSummary:
    """Counts over pending staged rows: total, selected and per duplicate status."""

    stmt = (
        select(
            StagedTransaction.duplicate_status,
            func.count(),
            func.sum(case((StagedTransaction.is_selected.is_(True), 1), else_=0)),
        )
        .where(
            StagedTransaction.tenant_id == tenant_id,
            StagedTransaction.batch_key.in_(_pending_batch_keys(tenant_id)),
        )
        .group_by(StagedTransaction.duplicate_status)
    )
    per_status: dict[str, int] = {}
    selected = 0
    for status, count, n_selected in session.execute(stmt).all():
        per_status[status] = int(count)
        selected += int(n_selected or 0)
    return ReviewSummary(
        total=sum(per_status.values()),
        selected=selected,
        new=per_status.get(DuplicateStatus.NEW.value, 0),
        exact_duplicate=per_status.get(DuplicateStatus.EXACT_DUPLICATE.value, 0),
        potential_duplicate=per_status.get(DuplicateStatus.POTENTIAL_DUPLICATE.value, 0),
    )


# ---------------------------
# Terminal actions
# ---------------------------


def complete_review(
    session: Session,
    *,
    tenant_id: str,
    retain_rejected: bool = False,
    now: datetime | None = None,
) -> CompleteReviewResult:
    """Copy selected pending rows into the ledger and close their batches.

    With ``retain_rejected`` the staged rows (selected and not) are kept on
    their committed batches for audit; otherwise rows and batches are deleted.
    Everything happens in the caller's transaction, so a failed commit leaves
    both the ledger and the staged rows untouched.
    """

    stamp = now or datetime.now(UTC)
    batch_keys = list(session.execute(_pending_batch_keys(tenant_id)).scalars().all())
    if not batch_keys:
        return CompleteReviewResult(accepted=0, rejected=0, ledger_keys=())

    rows = (
        session.execute(
            _pending_rows(tenant_id).order_by(
                StagedTransaction.batch_key, StagedTransaction.line_no
            )
        )
        .scalars()
        .all()
    )
    entries: list[LedgerEntry] = []
    rejected = 0
    for row in rows:
        if not row.is_selected:
            rejected += 1
            continue
        entries.append(
            LedgerEntry(
                key=new_key(),
                tenant_id=tenant_id,
                date=row.date,
                amount=row.amount,
                payee=row.payee,
                memo=row.memo,
                category=row.suggested_category,
                external_id=row.external_id,
                source=row.source,
                import_batch_key=row.batch_key,
                created_at=stamp,
            )
        )
    session.add_all(entries)

    if retain_rejected:
        session.execute(
            update(ImportBatch)
            .where(ImportBatch.key.in_(batch_keys))
            .values(state=BatchState.COMMITTED.value, updated_at=stamp, committed_at=stamp)
            .execution_options(synchronize_session="fetch")
        )
    else:
        _delete_batches(session, batch_keys)
    session.flush()

    _logger.info(
        "staging:commit_done tenant=%s batches=%d accepted=%d rejected=%d retained=%s",
        tenant_id,
        len(batch_keys),
        len(entries),
        rejected,
        retain_rejected,
    )
    return CompleteReviewResult(
        accepted=len(entries),
        rejected=rejected,
        ledger_keys=tuple(e.key for e in entries),
    )


def _delete_batches(session: Session, batch_keys: Sequence[str]) -> int:
    count = _count_rows(session, batch_keys)
    session.execute(
        delete(StagedTransaction)
        .where(StagedTransaction.batch_key.in_(batch_keys))
        .execution_options(synchronize_session="fetch")
    )
    session.execute(
        delete(ImportBatch)
        .where(ImportBatch.key.in_(batch_keys))
        .execution_options(synchronize_session="fetch")
    )
    return count


def discard_all(session: Session, *, tenant_id: str) -> int:
    """Delete every pending staged row (and its batch); returns the row count."""

    batch_keys = list(session.execute(_pending_batch_keys(tenant_id)).scalars().all())
    if not batch_keys:
        return 0
    deleted = _delete_batches(session, batch_keys)
    session.flush()
    _logger.info(
        "staging:discard_done tenant=%s batches=%d rows=%d", tenant_id, len(batch_keys), deleted
    )
    return deleted


def reclassify_batch(session: Session, *, tenant_id: str, batch_key: str) -> list[Classification]:
    """Classify a batch's rows again against the current ledger and other pending rows.

    Rows are never compared with their own batch. Pending batches get their
    stored status updated; committed (audit-retained) batches are only
    reported. Running it twice without intervening changes yields the same
    result.
    """

    batch = session.get(ImportBatch, batch_key)
    if batch is None or batch.tenant_id != tenant_id:
        raise BatchNotFoundError(f"Import batch not found: {batch_key!r}")

    rows = (
        session.execute(
            select(StagedTransaction)
            .where(StagedTransaction.batch_key == batch_key)
            .order_by(StagedTransaction.line_no)
        )
        .scalars()
        .all()
    )
    ledger_index = load_ledger_index(session, tenant_id=tenant_id)
    staged_index = load_staged_index(session, tenant_id=tenant_id, exclude_batch_key=batch_key)
    results = [classify(_row_candidate(r), ledger_index, staged_index) for r in rows]

    if batch.state != BatchState.COMMITTED.value:
        for row, result in zip(rows, results, strict=True):
            row.duplicate_status = result.status.value
            row.duplicate_of_key = result.duplicate_of_key
        session.flush()
    return results


__all__ = [
    "BatchNotFoundError",
    "CommitError",
    "CompleteReviewResult",
    "DEFAULT_PAGE_SIZE",
    "ImportOutcome",
    "InvalidBatchStateError",
    "MAX_PAGE_SIZE",
    "ReviewPage",
    "ReviewSummary",
    "StagedRowNotFoundError",
    "UNSET",
    "complete_review",
    "deselect_all",
    "discard_all",
    "edit_staged",
    "get_pending_review",
    "get_summary",
    "import_statement",
    "reclassify_batch",
    "resolve_page_size",
    "select_all",
    "set_selection",
]
