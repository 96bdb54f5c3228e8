"""Public interface for the ``bank_import`` package.

This module exposes the package's API functions and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .api import parse_statement, upload_statement
from .duplicates import MissingExternalIdError, classify
from .matching import MatchDiagnostic, PatternMatcher, match_batch
from .models import (
    Classification,
    DuplicateStatus,
    IndexedRecord,
    MatchRule,
    ParsedCandidate,
    ParseError,
    ParseResult,
    StagedCandidate,
)
from .ofx import parse

__all__ = [
    # API
    "classify",
    "match_batch",
    "parse",
    "parse_statement",
    "upload_statement",
    # Engines / errors
    "MatchDiagnostic",
    "MissingExternalIdError",
    "PatternMatcher",
    # Models / types
    "Classification",
    "DuplicateStatus",
    "IndexedRecord",
    "MatchRule",
    "ParseError",
    "ParseResult",
    "ParsedCandidate",
    "StagedCandidate",
]
