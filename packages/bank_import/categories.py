"""Category text helpers and match-rule service operations.

Exports
-------
- ``sanitize_category(...)``: canonical form of a ``Parent:Child`` category
  path. Applied to rule categories and to categories edited during review.
- ``validate_rule(...)``: authoritative validation of a rule's pattern and
  category before it is stored.
- ``create_rule`` / ``update_rule`` / ``delete_rule`` / ``list_rules``:
  session-level operations on the ``match_rules`` table (callers own the
  transaction scope).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypedDict

from ledger_db.models.ledger import RULE_TEXT_MAX, MatchRuleRow
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .logging_setup import get_logger
from .matching import validate_regex
from .persistence import new_key

_logger = get_logger("bank_import.categories")

_MULTI_SPACE_RE = re.compile(r"\s{2,}")

# ---------------------------
# Category text
# ---------------------------


def _capitalize_words(text: str) -> str:
    # Upper-case the first letter of each word; the rest keeps its casing.
    return " ".join(w[:1].upper() + w[1:] for w in text.split(" "))


def sanitize_category(category: str | None) -> str:
    """Return the canonical form of a category path.

    Each ``:``-separated term is trimmed, runs of whitespace collapse to a
    single space and every word is capitalized. Empty terms are dropped, so
    ``" home :: garden  tools "`` becomes ``"Home:Garden Tools"``. Blank input
    returns ``""``.
    """

    if category is None or not category.strip():
        return ""
    terms: list[str] = []
    for term in category.split(":"):
        trimmed = term.strip()
        if not trimmed:
            continue
        terms.append(_capitalize_words(_MULTI_SPACE_RE.sub(" ", trimmed)))
    return ":".join(terms)


# ---------------------------
# Rule validation
# ---------------------------


@dataclass(frozen=True, slots=True)
class RuleValidation:
    ok: bool
    reason: str | None = None


def validate_rule(pattern: str | None, category: str | None, *, is_regex: bool) -> RuleValidation:
    """Validate a rule before storage.

    Rules
    -----
    - ``pattern`` is required and at most 200 characters.
    - ``category`` is required, not whitespace only, at most 200 characters.
    - Regex patterns must compile under the linear-time engine.
    """

    if not pattern:
        return RuleValidation(False, "Payee pattern is required")
    if len(pattern) > RULE_TEXT_MAX:
        return RuleValidation(False, f"Payee pattern cannot exceed {RULE_TEXT_MAX} characters")
    if not category:
        return RuleValidation(False, "Category is required")
    if not category.strip():
        return RuleValidation(False, "Category cannot be whitespace only")
    if len(category) > RULE_TEXT_MAX:
        return RuleValidation(False, f"Category cannot exceed {RULE_TEXT_MAX} characters")
    if is_regex:
        rv = validate_regex(pattern)
        if not rv.ok:
            return RuleValidation(False, rv.reason or "Invalid regex pattern")
    return RuleValidation(True, None)


# ---------------------------
# Service operations
# ---------------------------


class RuleDict(TypedDict):
    key: str
    pattern: str
    is_regex: bool
    category: str
    match_count: int
    last_used_at: str | None


def _row_to_dict(row: MatchRuleRow) -> RuleDict:
    return {
        "key": row.key,
        "pattern": row.pattern,
        "is_regex": bool(row.is_regex),
        "category": row.category,
        "match_count": row.match_count or 0,
        "last_used_at": row.last_used_at.isoformat() if row.last_used_at else None,
    }


class CreateRuleResult(TypedDict):
    rule: RuleDict
    created: bool


def create_rule(
    session: Session,
    *,
    tenant_id: str,
    pattern: str,
    category: str,
    is_regex: bool = False,
) -> CreateRuleResult:
    """Create a rule unless an identical one exists.

    A rule with the same pattern (case-insensitive) and the same ``is_regex``
    flag is treated as the existing rule: its category is updated when it
    differs and ``created=False`` is returned.

    Raises ``ValueError`` when validation fails.
    """

    v = validate_rule(pattern, category, is_regex=is_regex)
    if not v.ok:
        raise ValueError(f"Invalid rule: {v.reason}")
    category_n = sanitize_category(category)
    now = datetime.now(UTC)

    existing = (
        session.execute(
            select(MatchRuleRow).where(
                MatchRuleRow.tenant_id == tenant_id,
                MatchRuleRow.is_regex == is_regex,
                func.lower(MatchRuleRow.pattern) == pattern.lower(),
            )
        )
        .scalars()
        .first()
    )
    if existing is not None:
        if existing.category != category_n:
            existing.category = category_n
            existing.modified_at = now
            session.flush()
        return {"rule": _row_to_dict(existing), "created": False}

    row = MatchRuleRow(
        key=new_key(),
        tenant_id=tenant_id,
        pattern=pattern,
        is_regex=is_regex,
        category=category_n,
        created_at=now,
        modified_at=now,
        match_count=0,
    )
    session.add(row)
    session.flush()
    _logger.info("categories:rule_created key=%s is_regex=%s", row.key, is_regex)
    return {"rule": _row_to_dict(row), "created": True}


def update_rule(
    session: Session,
    *,
    tenant_id: str,
    key: str,
    pattern: str,
    category: str,
    is_regex: bool,
) -> RuleDict:
    """Replace a rule's pattern/category and bump ``modified_at``."""

    row = _get_rule(session, tenant_id=tenant_id, key=key)
    v = validate_rule(pattern, category, is_regex=is_regex)
    if not v.ok:
        raise ValueError(f"Invalid rule: {v.reason}")
    row.pattern = pattern
    row.is_regex = is_regex
    row.category = sanitize_category(category)
    row.modified_at = datetime.now(UTC)
    session.flush()
    return _row_to_dict(row)


def delete_rule(session: Session, *, tenant_id: str, key: str) -> None:
    session.delete(_get_rule(session, tenant_id=tenant_id, key=key))
    session.flush()


def list_rules(session: Session, *, tenant_id: str) -> list[RuleDict]:
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
    return [_row_to_dict(r) for r in rows]


def _get_rule(session: Session, *, tenant_id: str, key: str) -> MatchRuleRow:
    row = session.get(MatchRuleRow, key)
    if row is None or row.tenant_id != tenant_id:
        raise LookupError(f"Match rule not found: {key!r}")
    return row


__all__ = [
    "CreateRuleResult",
    "RuleDict",
    "RuleValidation",
    "create_rule",
    "delete_rule",
    "list_rules",
    "sanitize_category",
    "update_rule",
    "validate_rule",
]
