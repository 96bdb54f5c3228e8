from __future__ import annotations

import io
import json
from datetime import date
from decimal import Decimal

import pytest
from ledger_db.client import session_scope
from ledger_db.models.ledger import ImportBatch, LedgerEntry, MatchRuleRow, StagedTransaction
from sqlalchemy import select

from bank_import import DuplicateStatus, MatchRule, upload_statement
from bank_import import staging
from bank_import.models import BatchState
from bank_import.ofx import ERR_MISSING_IDENTIFIER, ERR_TRANSACTION
from bank_import.persistence import to_decimal_2
from bank_import.workflows import review_flow
from tests.helpers.db import count_rows, seed_ledger_entry, seed_rule
from tests.helpers.ofx_builder import Statement, Txn, build_ofx

TENANT = "t1"


def _statement() -> bytes:
    return build_ofx(
        [
            Statement(
                transactions=[
                    Txn(fitid="F1", posted="20231101", amount="-4.50", name="Corner Coffee"),
                    Txn(fitid="F2", posted="20231103", amount="-80.00", name="Big Grocer"),
                    Txn(fitid="F3", posted="20231103", amount="2500.00", name="Acme Payroll"),
                ]
            )
        ]
    )


def _import(db_url: str, raw: bytes | None = None, *, tenant: str = TENANT, **kw):
    with session_scope(database_url=db_url) as s:
        return staging.import_statement(
            s,
            io.BytesIO(raw if raw is not None else _statement()),
            "nov.ofx",
            tenant_id=tenant,
            **kw,
        )


def test_import_stages_new_rows_selected(db_url: str):
    outcome = _import(db_url)

    assert outcome.batch_key is not None
    assert (outcome.imported, outcome.new) == (3, 3)
    assert (outcome.exact_duplicate, outcome.potential_duplicate) == (0, 0)
    assert outcome.errors == ()
    assert all(row.is_selected for row in outcome.staged)
    assert [row.external_id for row in outcome.staged] == ["F1", "F2", "F3"]

    with session_scope(database_url=db_url) as s:
        batch = s.get(ImportBatch, outcome.batch_key)
        assert batch.state == BatchState.IMPORTED.value
        assert batch.file_name == "nov.ofx"
        line_nos = s.execute(
            select(StagedTransaction.line_no).order_by(StagedTransaction.line_no)
        ).scalars()
        assert list(line_nos) == [0, 1, 2]


def test_reimport_flags_pending_rows_as_exact_duplicates(db_url: str):
    first = _import(db_url)
    second = _import(db_url)

    assert second.exact_duplicate == 3
    assert second.new == 0
    assert not any(row.is_selected for row in second.staged)
    first_keys = {row.external_id: row.key for row in first.staged}
    assert {row.duplicate_of_key for row in second.staged} == set(first_keys.values())
    for row in second.staged:
        assert row.duplicate_of_key == first_keys[row.external_id]


def test_changed_line_is_a_potential_duplicate_of_the_ledger(db_url: str):
    ledger_key = seed_ledger_entry(
        database_url=db_url,
        tenant_id=TENANT,
        external_id="f2",
        on=date(2023, 11, 3),
        amount="-79.00",
        payee="Big Grocer",
    )
    outcome = _import(db_url)

    by_id = {row.external_id: row for row in outcome.staged}
    assert by_id["F2"].duplicate_status is DuplicateStatus.POTENTIAL_DUPLICATE
    assert by_id["F2"].duplicate_of_key == ledger_key
    assert by_id["F2"].is_selected is False
    assert by_id["F1"].duplicate_status is DuplicateStatus.NEW


def test_other_tenants_are_invisible(db_url: str):
    seed_ledger_entry(
        database_url=db_url,
        tenant_id="other",
        external_id="F1",
        on=date(2023, 11, 1),
        amount="-4.50",
        payee="Corner Coffee",
    )
    _import(db_url, tenant="other")
    outcome = _import(db_url)
    assert outcome.new == 3


def test_lines_without_identifier_are_dropped_with_errors(db_url: str):
    raw = build_ofx(
        [
            Statement(
                transactions=[
                    Txn(fitid="K1", amount="-12.345"),
                    Txn(fitid=None, name="Cash Withdrawal"),
                    Txn(fitid=None, name=None),
                ]
            )
        ]
    )
    outcome = _import(db_url, raw)

    assert outcome.imported == 1
    assert outcome.staged[0].amount == Decimal("-12.35")
    assert [e.code for e in outcome.errors] == [ERR_MISSING_IDENTIFIER] * 2


def test_oversized_amount_fails_only_its_line(db_url: str):
    raw = build_ofx(
        [
            Statement(
                transactions=[
                    Txn(fitid="BIG", amount="99999999999999999999999999999"),
                    Txn(fitid="OK", amount="-1.00"),
                ]
            )
        ]
    )
    outcome = _import(db_url, raw)

    assert outcome.batch_key is not None
    assert [row.external_id for row in outcome.staged] == ["OK"]
    assert [e.code for e in outcome.errors] == [ERR_TRANSACTION]
    assert count_rows(db_url, StagedTransaction) == 1


def test_to_decimal_2_rejects_values_beyond_decimal_precision():
    assert to_decimal_2("-12.345") == Decimal("-12.35")
    assert to_decimal_2("9" * 29) is None
    assert to_decimal_2("n/a") is None


def test_nothing_eligible_creates_no_batch(db_url: str):
    outcome = _import(db_url, b"not an ofx file")

    assert outcome.batch_key is None
    assert outcome.imported == 0
    assert len(outcome.errors) == 1
    assert count_rows(db_url, ImportBatch) == 0


def test_import_suggests_categories_and_records_rule_usage(db_url: str):
    coffee = seed_rule(database_url=db_url, pattern="coffee", category="Food:Coffee")
    payroll = seed_rule(database_url=db_url, pattern=r"payroll$", category="Income", is_regex=True)
    unused = seed_rule(database_url=db_url, pattern="airline", category="Travel")

    outcome = _import(db_url)
    suggestions = {row.external_id: row.suggested_category for row in outcome.staged}
    assert suggestions == {"F1": "Food:Coffee", "F2": None, "F3": "Income"}
    assert outcome.diagnostics == ()

    with session_scope(database_url=db_url) as s:
        assert s.get(MatchRuleRow, coffee).match_count == 1
        assert s.get(MatchRuleRow, coffee).last_used_at is not None
        assert s.get(MatchRuleRow, payroll).match_count == 1
        assert s.get(MatchRuleRow, unused).match_count == 0
        assert s.get(MatchRuleRow, unused).last_used_at is None


def test_explicit_rules_are_not_persisted(db_url: str):
    rule = MatchRule(pattern="grocer", is_regex=False, category="Groceries")
    outcome = _import(db_url, rules=[rule])

    assert {row.suggested_category for row in outcome.staged} == {None, "Groceries"}
    assert rule.match_count == 1
    assert count_rows(db_url, MatchRuleRow) == 0


def test_invalid_stored_rule_yields_diagnostic(db_url: str):
    seed_rule(database_url=db_url, pattern="(broken", category="Misc", is_regex=True)
    outcome = _import(db_url)

    assert outcome.imported == 3
    assert [d.kind for d in outcome.diagnostics] == ["invalid_pattern"]


def test_pending_review_pages_in_display_order(db_url: str):
    _import(db_url)

    with session_scope(database_url=db_url) as s:
        first = staging.get_pending_review(s, tenant_id=TENANT, page=1, page_size=2)
        second = staging.get_pending_review(s, tenant_id=TENANT, page=2, page_size=2)

    assert first.total_count == 3
    assert first.total_pages == 2
    assert (first.has_previous, first.has_next) == (False, True)
    assert (second.has_previous, second.has_next) == (True, False)
    # Date descending, then payee ascending.
    assert [r.payee for r in first.items + second.items] == [
        "Acme Payroll",
        "Big Grocer",
        "Corner Coffee",
    ]


def test_page_size_resolution(monkeypatch: pytest.MonkeyPatch):
    assert staging.resolve_page_size() == staging.DEFAULT_PAGE_SIZE
    assert staging.resolve_page_size(5000) == staging.MAX_PAGE_SIZE
    assert staging.resolve_page_size(0) == staging.DEFAULT_PAGE_SIZE
    monkeypatch.setenv("BANK_IMPORT_PAGE_SIZE", "10")
    assert staging.resolve_page_size() == 10


def test_selection_and_summary(db_url: str):
    outcome = _import(db_url)
    keys = [row.key for row in outcome.staged]

    with session_scope(database_url=db_url) as s:
        assert staging.set_selection(s, tenant_id=TENANT, keys=keys[:2], is_selected=False) == 2
        summary = staging.get_summary(s, tenant_id=TENANT)
        assert (summary.total, summary.selected, summary.new) == (3, 1, 3)
        assert s.get(ImportBatch, outcome.batch_key).state == BatchState.UNDER_REVIEW.value

    with session_scope(database_url=db_url) as s:
        assert staging.select_all(s, tenant_id=TENANT) == 3
        assert staging.get_summary(s, tenant_id=TENANT).selected == 3
        assert staging.deselect_all(s, tenant_id=TENANT) == 3
        assert staging.get_summary(s, tenant_id=TENANT).selected == 0


def test_selecting_unknown_rows_fails(db_url: str):
    outcome = _import(db_url)

    with session_scope(database_url=db_url) as s:
        with pytest.raises(staging.StagedRowNotFoundError):
            staging.set_selection(
                s, tenant_id=TENANT, keys=[outcome.staged[0].key, "missing"], is_selected=True
            )
        with pytest.raises(staging.StagedRowNotFoundError):
            staging.set_selection(
                s, tenant_id="other", keys=[outcome.staged[0].key], is_selected=True
            )


def test_edit_staged_sanitizes_category_and_memo(db_url: str):
    key = _import(db_url).staged[0].key

    with session_scope(database_url=db_url) as s:
        edited = staging.edit_staged(
            s, tenant_id=TENANT, key=key, suggested_category=" food :  coffee ", memo="  latte "
        )
    assert edited.suggested_category == "Food:Coffee"
    assert edited.memo == "latte"

    with session_scope(database_url=db_url) as s:
        cleared = staging.edit_staged(s, tenant_id=TENANT, key=key, suggested_category="  ")
    assert cleared.suggested_category is None
    assert cleared.memo == "latte"


def test_complete_review_moves_selected_rows_to_ledger(db_url: str):
    outcome = _import(db_url)
    rejected_key = outcome.staged[1].key

    with session_scope(database_url=db_url) as s:
        staging.edit_staged(
            s, tenant_id=TENANT, key=outcome.staged[0].key, suggested_category="food"
        )
        staging.set_selection(s, tenant_id=TENANT, keys=[rejected_key], is_selected=False)

    with session_scope(database_url=db_url) as s:
        result = staging.complete_review(s, tenant_id=TENANT)
    assert (result.accepted, result.rejected) == (2, 1)

    with session_scope(database_url=db_url) as s:
        entries = s.execute(select(LedgerEntry).order_by(LedgerEntry.date)).scalars().all()
        assert [e.external_id for e in entries] == ["F1", "F3"]
        assert entries[0].category == "Food"
        assert entries[0].import_batch_key == outcome.batch_key
        assert {e.key for e in entries} == set(result.ledger_keys)
    assert count_rows(db_url, StagedTransaction) == 0
    assert count_rows(db_url, ImportBatch) == 0

    # A later import of the same file is now checked against the ledger.
    again = _import(db_url)
    by_id = {row.external_id: row.duplicate_status for row in again.staged}
    assert by_id == {
        "F1": DuplicateStatus.EXACT_DUPLICATE,
        "F2": DuplicateStatus.NEW,
        "F3": DuplicateStatus.EXACT_DUPLICATE,
    }


def test_complete_review_with_nothing_pending(db_url: str):
    with session_scope(database_url=db_url) as s:
        result = staging.complete_review(s, tenant_id=TENANT)
    assert (result.accepted, result.rejected, result.ledger_keys) == (0, 0, ())


def test_retained_batches_are_committed_and_reclassify_reports_ledger_hits(db_url: str):
    outcome = _import(db_url)

    with session_scope(database_url=db_url) as s:
        staging.set_selection(
            s, tenant_id=TENANT, keys=[outcome.staged[1].key], is_selected=False
        )
    with session_scope(database_url=db_url) as s:
        staging.complete_review(s, tenant_id=TENANT, retain_rejected=True)

    with session_scope(database_url=db_url) as s:
        batch = s.get(ImportBatch, outcome.batch_key)
        assert batch.state == BatchState.COMMITTED.value
        assert batch.committed_at is not None
        assert staging.get_pending_review(s, tenant_id=TENANT).total_count == 0
        assert staging.get_summary(s, tenant_id=TENANT).total == 0
    assert count_rows(db_url, StagedTransaction) == 3

    with session_scope(database_url=db_url) as s:
        first = staging.reclassify_batch(s, tenant_id=TENANT, batch_key=outcome.batch_key)
    with session_scope(database_url=db_url) as s:
        second = staging.reclassify_batch(s, tenant_id=TENANT, batch_key=outcome.batch_key)
        stored = s.execute(
            select(StagedTransaction.duplicate_status).where(
                StagedTransaction.batch_key == outcome.batch_key
            )
        ).scalars()
        # Committed batches are reported on, never rewritten.
        assert set(stored) == {DuplicateStatus.NEW.value}

    assert first == second
    assert [c.status for c in first] == [
        DuplicateStatus.EXACT_DUPLICATE,
        DuplicateStatus.NEW,
        DuplicateStatus.EXACT_DUPLICATE,
    ]

    with session_scope(database_url=db_url) as s:
        with pytest.raises(staging.InvalidBatchStateError):
            staging.set_selection(
                s, tenant_id=TENANT, keys=[outcome.staged[0].key], is_selected=False
            )


def test_reclassify_pending_batch_ignores_itself(db_url: str):
    first = _import(db_url)
    second = _import(db_url)

    with session_scope(database_url=db_url) as s:
        results = staging.reclassify_batch(s, tenant_id=TENANT, batch_key=first.batch_key)
    # The first batch only sees the second one, which mirrors it exactly.
    assert {r.status for r in results} == {DuplicateStatus.EXACT_DUPLICATE}
    assert {r.duplicate_of_key for r in results} == {row.key for row in second.staged}

    with session_scope(database_url=db_url) as s:
        with pytest.raises(staging.BatchNotFoundError):
            staging.reclassify_batch(s, tenant_id=TENANT, batch_key="missing")


def test_discard_all_removes_pending_rows_only(db_url: str):
    _import(db_url)
    seed_ledger_entry(
        database_url=db_url,
        tenant_id=TENANT,
        external_id="KEEP",
        on=date(2023, 1, 1),
        amount="1.00",
        payee="Kept",
    )

    with session_scope(database_url=db_url) as s:
        assert staging.discard_all(s, tenant_id=TENANT) == 3
        assert staging.discard_all(s, tenant_id=TENANT) == 0
    assert count_rows(db_url, StagedTransaction) == 0
    assert count_rows(db_url, ImportBatch) == 0
    assert count_rows(db_url, LedgerEntry) == 1


def test_failed_commit_leaves_ledger_and_staging_untouched(
    db_url: str, monkeypatch: pytest.MonkeyPatch
):
    taken = seed_ledger_entry(
        database_url=db_url,
        tenant_id=TENANT,
        external_id="UNRELATED",
        on=date(2023, 1, 1),
        amount="1.00",
        payee="Seed",
    )
    _import(db_url, build_ofx([Statement(transactions=[Txn(fitid="ONLY")])]))
    # Force a primary key clash on the ledger insert.
    monkeypatch.setattr(staging, "new_key", lambda: taken)

    with pytest.raises(staging.CommitError, match="no rows were written"):
        review_flow.commit_review(tenant_id=TENANT, database_url=db_url)

    assert count_rows(db_url, LedgerEntry) == 1
    summary = review_flow.review_summary(tenant_id=TENANT, database_url=db_url)
    assert (summary.total, summary.selected) == (1, 1)


def test_upload_statement_returns_json_ready_result(db_url: str):
    result = upload_statement(
        io.BytesIO(_statement()), "nov.ofx", tenant_id=TENANT, database_url=db_url
    )
    payload = result.model_dump(mode="json", by_alias=True)

    assert payload["imported"] == 3
    assert payload["batchKey"] == result.batch_key
    assert payload["staged"][0]["duplicateStatus"] == "new"
    assert payload["staged"][0]["isSelected"] is True
    assert payload["staged"][0]["amount"] == "-4.50"
    json.dumps(payload)


def test_workflow_round_trip_via_environment(db_url: str, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DATABASE_URL", db_url)

    imported = review_flow.import_statement_stream(
        io.BytesIO(_statement()), "nov.ofx", tenant_id=TENANT
    )
    page = review_flow.pending_review(tenant_id=TENANT, page_size=10)
    assert page.total_count == imported.imported == 3

    assert review_flow.select_rows([page.items[0].key], tenant_id=TENANT, is_selected=False) == 1
    assert review_flow.select_all_rows(tenant_id=TENANT, is_selected=True) == 3
    edited = review_flow.edit_row(page.items[0].key, tenant_id=TENANT, suggested_category="pay")
    assert edited.suggested_category == "Pay"

    done = review_flow.commit_review(tenant_id=TENANT)
    assert done.accepted == 3
    assert review_flow.review_summary(tenant_id=TENANT).total == 0
