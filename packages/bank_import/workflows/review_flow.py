# ruff: noqa: I001
"""Workflow orchestrators for the statement import and review lifecycle.

Each function here runs one staging operation inside its own
``session_scope`` (one database transaction) and returns JSON-ready pydantic
DTOs. Keeping this code out of ``api.py`` maintains a light import surface
while allowing ``api`` to re-export stable entry points.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from os import PathLike
from pathlib import Path
from typing import IO

from ledger_db.client import session_scope
from sqlalchemy.exc import SQLAlchemyError

from .. import staging
from ..categories import (
    CreateRuleResult,
    RuleDict,
    create_rule,
    delete_rule,
    list_rules,
    update_rule,
)
from ..logging_setup import get_logger
from ..models import Classification
from ..schemas import (
    CompleteReviewDto,
    ImportResultDto,
    MatchRuleEdit,
    ReviewPageDto,
    ReviewSummaryDto,
    StagedCandidateDto,
)

_logger = get_logger("bank_import.workflows.review_flow")


def import_statement_stream(
    stream: IO[bytes] | bytes | None,
    file_name: str | None,
    *,
    tenant_id: str,
    database_url: str | None = None,
    budget_ms: float | None = None,
) -> ImportResultDto:
    """Stage one uploaded statement for review and return the staged batch."""

    with session_scope(database_url=database_url) as session:
        outcome = staging.import_statement(
            session, stream, file_name, tenant_id=tenant_id, budget_ms=budget_ms
        )
    return ImportResultDto.model_validate(outcome)


def import_statement_file(
    path: str | PathLike[str],
    *,
    tenant_id: str,
    database_url: str | None = None,
    budget_ms: float | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> ImportResultDto:
    """End-to-end: statement file → parse → classify → categorize → staged batch.

    Parameters
    ----------
    path:
        Path to an OFX/QFX download.
    database_url:
        Optional DB URL override. Falls back to ``DATABASE_URL`` when ``None``.
    on_progress:
        Optional callable to receive short status lines (e.g., ``print``).
    """

    p = Path(path)
    with p.open("rb") as f:
        result = import_statement_stream(
            f, p.name, tenant_id=tenant_id, database_url=database_url, budget_ms=budget_ms
        )
    if on_progress:
        if result.imported:
            on_progress(
                f"Staged {result.imported} transaction(s): {result.new} new, "
                f"{result.exact_duplicate} exact duplicate(s), "
                f"{result.potential_duplicate} potential duplicate(s)."
            )
        else:
            on_progress("No transactions to review.")
        if result.errors:
            on_progress(f"{len(result.errors)} line(s) could not be imported.")
    return result


def pending_review(
    *,
    tenant_id: str,
    page: int = 1,
    page_size: int | None = None,
    database_url: str | None = None,
) -> ReviewPageDto:
    with session_scope(database_url=database_url) as session:
        review_page = staging.get_pending_review(
            session, tenant_id=tenant_id, page=page, page_size=page_size
        )
    return ReviewPageDto.model_validate(review_page)


def review_summary(*, tenant_id: str, database_url: str | None = None) -> ReviewSummaryDto:
    with session_scope(database_url=database_url) as session:
        summary = staging.get_summary(session, tenant_id=tenant_id)
    return ReviewSummaryDto.model_validate(summary)


def select_rows(
    keys: Sequence[str],
    *,
    tenant_id: str,
    is_selected: bool = True,
    database_url: str | None = None,
) -> int:
    with session_scope(database_url=database_url) as session:
        return staging.set_selection(
            session, tenant_id=tenant_id, keys=keys, is_selected=is_selected
        )


def select_all_rows(
    *, tenant_id: str, is_selected: bool = True, database_url: str | None = None
) -> int:
    with session_scope(database_url=database_url) as session:
        if is_selected:
            return staging.select_all(session, tenant_id=tenant_id)
        return staging.deselect_all(session, tenant_id=tenant_id)


def edit_row(
    key: str,
    *,
    tenant_id: str,
    suggested_category: str | None = staging.UNSET,
    memo: str | None = staging.UNSET,
    database_url: str | None = None,
) -> StagedCandidateDto:
    with session_scope(database_url=database_url) as session:
        staged = staging.edit_staged(
            session,
            tenant_id=tenant_id,
            key=key,
            suggested_category=suggested_category,
            memo=memo,
        )
    return StagedCandidateDto.model_validate(staged)


def commit_review(
    *,
    tenant_id: str,
    retain_rejected: bool = False,
    database_url: str | None = None,
) -> CompleteReviewDto:
    """Commit the selected rows into the ledger as one transaction.

    Database failures surface as :class:`~bank_import.staging.CommitError`
    after the transaction is rolled back; the caller may retry the whole
    commit.
    """

    try:
        with session_scope(database_url=database_url) as session:
            result = staging.complete_review(
                session, tenant_id=tenant_id, retain_rejected=retain_rejected
            )
    except SQLAlchemyError as exc:
        _logger.error(
            "review_flow:commit_failed tenant=%s error=%s", tenant_id, exc.__class__.__name__
        )
        raise staging.CommitError(f"Commit failed; no rows were written: {exc}") from exc
    return CompleteReviewDto.model_validate(result)


def discard_review(*, tenant_id: str, database_url: str | None = None) -> int:
    with session_scope(database_url=database_url) as session:
        return staging.discard_all(session, tenant_id=tenant_id)


def reclassify(
    batch_key: str, *, tenant_id: str, database_url: str | None = None
) -> list[Classification]:
    with session_scope(database_url=database_url) as session:
        return staging.reclassify_batch(session, tenant_id=tenant_id, batch_key=batch_key)


def add_rule(
    edit: MatchRuleEdit, *, tenant_id: str, database_url: str | None = None
) -> CreateRuleResult:
    with session_scope(database_url=database_url) as session:
        return create_rule(
            session,
            tenant_id=tenant_id,
            pattern=edit.pattern,
            category=edit.category,
            is_regex=edit.is_regex,
        )


def change_rule(
    key: str, edit: MatchRuleEdit, *, tenant_id: str, database_url: str | None = None
) -> RuleDict:
    with session_scope(database_url=database_url) as session:
        return update_rule(
            session,
            tenant_id=tenant_id,
            key=key,
            pattern=edit.pattern,
            category=edit.category,
            is_regex=edit.is_regex,
        )


def remove_rule(key: str, *, tenant_id: str, database_url: str | None = None) -> None:
    with session_scope(database_url=database_url) as session:
        delete_rule(session, tenant_id=tenant_id, key=key)


def rules(*, tenant_id: str, database_url: str | None = None) -> list[RuleDict]:
    with session_scope(database_url=database_url) as session:
        return list_rules(session, tenant_id=tenant_id)


__all__ = [
    "add_rule",
    "change_rule",
    "commit_review",
    "discard_review",
    "edit_row",
    "import_statement_file",
    "import_statement_stream",
    "pending_review",
    "reclassify",
    "remove_rule",
    "review_summary",
    "rules",
    "select_all_rows",
    "select_rows",
]
