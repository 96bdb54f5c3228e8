"""Pydantic models for data crossing the package boundary.

Output DTOs are built from the in-memory dataclasses with
``model_validate(obj)`` (attribute access) and serialize to camelCase JSON via
``model_dump(mode="json", by_alias=True)``. ``MatchRuleEdit`` validates rule
input before it reaches the database.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .categories import sanitize_category, validate_rule
from .models import DuplicateStatus


class _Dto(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ParsedCandidateDto(_Dto):
    date: dt.date
    amount: Decimal
    payee: str | None = None
    memo: str | None = None
    external_id: str | None = None
    source: str


class ParseErrorDto(_Dto):
    message: str
    file_name: str | None = None
    code: str | None = None


class ParseResultDto(_Dto):
    candidates: tuple[ParsedCandidateDto, ...] = ()
    errors: tuple[ParseErrorDto, ...] = ()


class StagedCandidateDto(_Dto):
    key: str
    batch_key: str
    tenant_id: str
    date: dt.date
    amount: Decimal
    payee: str | None = None
    memo: str | None = None
    external_id: str | None = None
    source: str | None = None
    duplicate_status: DuplicateStatus
    duplicate_of_key: str | None = None
    suggested_category: str | None = None
    is_selected: bool


class MatchDiagnosticDto(_Dto):
    kind: str
    pattern: str
    rule_key: str | None = None
    payee: str | None = None
    elapsed_ms: float | None = None
    message: str | None = None


class ImportResultDto(_Dto):
    batch_key: str | None = None
    imported: int
    new: int
    exact_duplicate: int
    potential_duplicate: int
    errors: tuple[ParseErrorDto, ...] = ()
    staged: tuple[StagedCandidateDto, ...] = ()
    diagnostics: tuple[MatchDiagnosticDto, ...] = ()


class ReviewPageDto(_Dto):
    items: tuple[StagedCandidateDto, ...] = ()
    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_previous: bool
    has_next: bool


class ReviewSummaryDto(_Dto):
    total: int
    selected: int
    new: int
    exact_duplicate: int
    potential_duplicate: int


class CompleteReviewDto(_Dto):
    accepted: int
    rejected: int
    ledger_keys: tuple[str, ...] = ()


class MatchRuleEdit(BaseModel):
    """Validated rule input (pattern, regex flag, category).

    The category is returned sanitized; a regex pattern must compile under the
    linear-time engine.
    """

    model_config = ConfigDict(extra="forbid")

    pattern: str
    is_regex: bool = False
    category: str

    @field_validator("category")
    @classmethod
    def _category_sanitized(cls, v: str) -> str:
        return v if not v.strip() else sanitize_category(v)

    @model_validator(mode="after")
    def _rule_valid(self) -> MatchRuleEdit:
        result = validate_rule(self.pattern, self.category, is_regex=self.is_regex)
        if not result.ok:
            raise ValueError(result.reason or "invalid rule")
        return self


__all__ = [
    "CompleteReviewDto",
    "ImportResultDto",
    "MatchDiagnosticDto",
    "MatchRuleEdit",
    "ParseErrorDto",
    "ParseResultDto",
    "ParsedCandidateDto",
    "ReviewPageDto",
    "ReviewSummaryDto",
    "StagedCandidateDto",
]
