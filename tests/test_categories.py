from __future__ import annotations

import pytest
from ledger_db.client import session_scope
from pydantic import ValidationError

from bank_import.categories import (
    create_rule,
    delete_rule,
    list_rules,
    sanitize_category,
    update_rule,
    validate_rule,
)
from bank_import.schemas import MatchRuleEdit


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (" home :: garden  tools ", "Home:Garden Tools"),
        ("food:coffee", "Food:Coffee"),
        ("Travel", "Travel"),
        ("eBay purchases", "EBay Purchases"),
        ("   ", ""),
        (None, ""),
        (":::", ""),
    ],
)
def test_sanitize_category(raw, expected):
    assert sanitize_category(raw) == expected


@pytest.mark.parametrize(
    ("pattern", "category", "is_regex", "reason"),
    [
        ("", "Food", False, "Payee pattern is required"),
        ("x" * 201, "Food", False, "Payee pattern cannot exceed 200 characters"),
        ("coffee", "", False, "Category is required"),
        ("coffee", "   ", False, "Category cannot be whitespace only"),
        ("coffee", "c" * 201, False, "Category cannot exceed 200 characters"),
    ],
)
def test_validate_rule_rejections(pattern, category, is_regex, reason):
    result = validate_rule(pattern, category, is_regex=is_regex)
    assert not result.ok
    assert result.reason == reason


def test_validate_rule_checks_regex_only_when_flagged():
    assert validate_rule("(unclosed", "Misc", is_regex=False).ok
    bad = validate_rule("(unclosed", "Misc", is_regex=True)
    assert not bad.ok
    assert bad.reason.startswith("Invalid regex pattern:")
    assert validate_rule("x" * 200, "c" * 200, is_regex=False).ok


def test_match_rule_edit_sanitizes_category():
    edit = MatchRuleEdit(pattern="coffee", category=" food :  coffee shops ")
    assert edit.category == "Food:Coffee Shops"
    assert edit.is_regex is False


def test_match_rule_edit_rejects_invalid_input():
    with pytest.raises(ValidationError, match="Category cannot be whitespace only"):
        MatchRuleEdit(pattern="coffee", category="   ")
    with pytest.raises(ValidationError, match="not supported"):
        MatchRuleEdit(pattern=r"(a)\1", category="Misc", is_regex=True)
    with pytest.raises(ValidationError):
        MatchRuleEdit(pattern="coffee", category="Food", unexpected=True)


def test_create_rule_is_idempotent_per_pattern_and_kind(db_url: str):
    with session_scope(database_url=db_url) as s:
        first = create_rule(s, tenant_id="t1", pattern="Starbucks", category="food:coffee")
        again = create_rule(s, tenant_id="t1", pattern="STARBUCKS", category="Food:Coffee")
        as_regex = create_rule(
            s, tenant_id="t1", pattern="Starbucks", category="Food", is_regex=True
        )
        other_tenant = create_rule(s, tenant_id="t2", pattern="Starbucks", category="Food")

    assert first["created"] is True
    assert first["rule"]["category"] == "Food:Coffee"
    assert again["created"] is False
    assert again["rule"]["key"] == first["rule"]["key"]
    assert as_regex["created"] is True
    assert other_tenant["created"] is True

    with session_scope(database_url=db_url) as s:
        assert len(list_rules(s, tenant_id="t1")) == 2
        assert len(list_rules(s, tenant_id="t2")) == 1


def test_create_rule_updates_category_of_existing(db_url: str):
    with session_scope(database_url=db_url) as s:
        first = create_rule(s, tenant_id="t1", pattern="shell", category="Fuel")
        updated = create_rule(s, tenant_id="t1", pattern="Shell", category="auto: fuel")

    assert updated["created"] is False
    assert updated["rule"]["key"] == first["rule"]["key"]
    assert updated["rule"]["category"] == "Auto:Fuel"


def test_create_rule_rejects_invalid(db_url: str):
    with session_scope(database_url=db_url) as s:
        with pytest.raises(ValueError, match="Invalid rule: Category is required"):
            create_rule(s, tenant_id="t1", pattern="x", category="")


def test_update_and_delete_rule(db_url: str):
    with session_scope(database_url=db_url) as s:
        key = create_rule(s, tenant_id="t1", pattern="gym", category="Health")["rule"]["key"]

    with session_scope(database_url=db_url) as s:
        rule = update_rule(
            s, tenant_id="t1", key=key, pattern="^gym", category="health:fitness", is_regex=True
        )
        assert rule["pattern"] == "^gym"
        assert rule["is_regex"] is True
        assert rule["category"] == "Health:Fitness"

    with session_scope(database_url=db_url) as s:
        with pytest.raises(LookupError):
            delete_rule(s, tenant_id="t2", key=key)
        delete_rule(s, tenant_id="t1", key=key)
        assert list_rules(s, tenant_id="t1") == []
