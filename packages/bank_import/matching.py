"""Category suggestion from user-authored payee rules.

Rules are either literal substrings or regular expressions, both matched
case-insensitively against a candidate's payee. Regular expressions are
compiled with RE2 (google-re2), whose matching time is linear in the input,
so a hostile pattern such as ``(a+)+$`` cannot backtrack catastrophically.
Every evaluation is additionally timed against a per-evaluation budget; an
evaluation that overruns is treated as a non-match and recorded in
``PatternMatcher.diagnostics``. Nothing here raises into the caller for a bad
rule.

Precedence when several rules match one payee:
1. regular-expression rules before substring rules;
2. longer pattern text before shorter;
3. more recently modified (``modified_at``) before older;
4. earlier position in the supplied rule sequence.

Rules are always passed in explicitly; there is no module-level registry.
"""

from __future__ import annotations

import os
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import re2

from .logging_setup import get_logger
from .models import MatchRule

_logger = get_logger("bank_import.matching")

DEFAULT_BUDGET_MS = 100.0
_BUDGET_ENV = "BANK_IMPORT_MATCH_BUDGET_MS"

DIAG_TIMEOUT = "timeout"
DIAG_INVALID_PATTERN = "invalid_pattern"

# Constructs RE2 rejects because they require backtracking.
_UNSUPPORTED_RE = re.compile(r"\\[1-9]|\\k<|\(\?<?[=!]")


def resolve_budget_ms(budget_ms: float | None = None) -> float:
    """Resolve the per-evaluation budget in milliseconds.

    Honors ``BANK_IMPORT_MATCH_BUDGET_MS`` when no explicit value is given.
    Non-positive or unparseable values fall back to the default.
    """

    if budget_ms is not None and budget_ms > 0:
        return float(budget_ms)
    env_val = os.getenv(_BUDGET_ENV)
    try:
        parsed = float(env_val) if env_val else None
    except ValueError:
        parsed = None
    if parsed is not None and parsed > 0:
        return parsed
    return DEFAULT_BUDGET_MS


# ---------------------------
# Pattern compilation/validation
# ---------------------------


@dataclass(frozen=True, slots=True)
class RegexValidation:
    ok: bool
    reason: str | None = None


def compile_pattern(pattern: str) -> Any:
    """Compile ``pattern`` case-insensitively with RE2; raises ``re2.error``."""

    return re2.compile("(?i)" + pattern)


def validate_regex(pattern: str | None) -> RegexValidation:
    """Check that ``pattern`` is a usable regular expression for a rule."""

    if pattern is None or not pattern.strip():
        return RegexValidation(False, "Pattern cannot be empty or whitespace.")
    try:
        compile_pattern(pattern)
    except re2.error as exc:
        if _UNSUPPORTED_RE.search(pattern):
            return RegexValidation(
                False,
                "Pattern uses features not supported by the linear-time regex engine "
                f"(backreferences, lookahead, or lookbehind are not allowed). {exc}",
            )
        return RegexValidation(False, f"Invalid regex pattern: {exc}")
    return RegexValidation(True, None)


# ---------------------------
# Matching
# ---------------------------


@dataclass(frozen=True, slots=True)
class MatchDiagnostic:
    """A rule evaluation that was abandoned (timeout) or never possible (bad pattern)."""

    kind: str
    pattern: str
    rule_key: str | None = None
    payee: str | None = None
    elapsed_ms: float | None = None
    message: str | None = None


class _HasPayee(Protocol):
    payee: str | None


def _recency(rule: MatchRule) -> float:
    ts = rule.modified_at or rule.created_at
    if ts is None:
        return float("-inf")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.timestamp()


class PatternMatcher:
    """Evaluate an ordered rule set against payees within a time budget.

    ``clock`` returns seconds (``time.perf_counter`` by default) and exists so
    tests can simulate slow evaluations.
    """

    def __init__(
        self,
        rules: Sequence[MatchRule],
        *,
        budget_ms: float | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._rules = list(rules)
        self.budget_ms = resolve_budget_ms(budget_ms)
        self._clock = clock
        self.diagnostics: list[MatchDiagnostic] = []
        self._compiled: dict[int, Any] = {}
        self._folded: dict[int, str] = {}

        usable: list[int] = []
        for idx, rule in enumerate(self._rules):
            if not rule.pattern or not rule.pattern.strip():
                self._record(DIAG_INVALID_PATTERN, rule, message="empty pattern")
                continue
            if rule.is_regex:
                try:
                    self._compiled[idx] = compile_pattern(rule.pattern)
                except re2.error as exc:
                    self._record(DIAG_INVALID_PATTERN, rule, message=str(exc))
                    continue
            else:
                self._folded[idx] = rule.pattern.casefold()
            usable.append(idx)

        self._order = sorted(
            usable,
            key=lambda i: (
                0 if self._rules[i].is_regex else 1,
                -len(self._rules[i].pattern),
                -_recency(self._rules[i]),
                i,
            ),
        )

    def _record(
        self,
        kind: str,
        rule: MatchRule,
        *,
        payee: str | None = None,
        elapsed_ms: float | None = None,
        message: str | None = None,
    ) -> None:
        self.diagnostics.append(
            MatchDiagnostic(
                kind=kind,
                pattern=rule.pattern,
                rule_key=rule.key,
                payee=payee,
                elapsed_ms=elapsed_ms,
                message=message,
            )
        )
        if kind == DIAG_TIMEOUT:
            _logger.warning(
                "matching:timeout rule=%s elapsed_ms=%.2f budget_ms=%.2f payee_len=%d",
                rule.key,
                elapsed_ms or 0.0,
                self.budget_ms,
                len(payee or ""),
            )
        else:
            _logger.warning(
                "matching:invalid_pattern rule=%s is_regex=%s error=%s",
                rule.key,
                rule.is_regex,
                message,
            )

    def _evaluate(self, idx: int, payee: str, folded: str) -> bool:
        rule = self._rules[idx]
        start = self._clock()
        if rule.is_regex:
            hit = self._compiled[idx].search(payee) is not None
        else:
            hit = self._folded[idx] in folded
        elapsed_ms = (self._clock() - start) * 1000.0
        if elapsed_ms > self.budget_ms:
            self._record(DIAG_TIMEOUT, rule, payee=payee, elapsed_ms=elapsed_ms)
            return False
        return hit

    def best_match(self, payee: str | None) -> MatchRule | None:
        """Return the highest-precedence rule matching ``payee`` (no side effects on rules)."""

        if payee is None or not payee.strip():
            return None
        folded = payee.casefold()
        for idx in self._order:
            if self._evaluate(idx, payee, folded):
                return self._rules[idx]
        return None

    def match_batch(
        self,
        candidates: Iterable[_HasPayee],
        *,
        now: datetime | None = None,
    ) -> list[str | None]:
        """Suggest a category per candidate, in input order.

        Each distinct payee is evaluated once. For every candidate that gets a
        suggestion, the winning rule's ``match_count`` is incremented and its
        ``last_used_at`` set to ``now``.
        """

        stamp = now or datetime.now(UTC)
        cache: dict[str | None, MatchRule | None] = {}
        out: list[str | None] = []
        for cand in candidates:
            payee = cand.payee
            if payee not in cache:
                cache[payee] = self.best_match(payee)
            rule = cache[payee]
            if rule is None:
                out.append(None)
                continue
            rule.match_count += 1
            rule.last_used_at = stamp
            out.append(rule.category)

        _logger.info(
            "matching:batch_done candidates=%d distinct_payees=%d matched=%d diagnostics=%d",
            len(out),
            len(cache),
            sum(1 for c in out if c is not None),
            len(self.diagnostics),
        )
        return out


def match_batch(
    candidates: Iterable[_HasPayee],
    rules: Sequence[MatchRule],
    *,
    budget_ms: float | None = None,
    now: datetime | None = None,
) -> list[str | None]:
    """Functional form of :meth:`PatternMatcher.match_batch`."""

    return PatternMatcher(rules, budget_ms=budget_ms).match_batch(candidates, now=now)


__all__ = [
    "DEFAULT_BUDGET_MS",
    "DIAG_INVALID_PATTERN",
    "DIAG_TIMEOUT",
    "MatchDiagnostic",
    "PatternMatcher",
    "RegexValidation",
    "compile_pattern",
    "match_batch",
    "resolve_budget_ms",
    "validate_regex",
]
