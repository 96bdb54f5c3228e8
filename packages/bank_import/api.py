"""Public API entry points for the ``bank_import`` package.

This module provides the upload boundary (:func:`upload_statement`) and the
diagnostic parse (:func:`parse_statement`). Database-backed steps delegate to
:mod:`bank_import.workflows.review_flow`, imported lazily so that parsing a
file never pulls in the database stack.
"""

from __future__ import annotations

from typing import IO

from .ofx import parse
from .schemas import ImportResultDto, ParseResultDto


def parse_statement(
    stream: IO[bytes] | bytes | str | None, file_name: str | None = None
) -> ParseResultDto:
    """Parse a statement without touching the database.

    Output
    ------
    A :class:`~bank_import.schemas.ParseResultDto` holding every candidate and
    every collected error. Malformed input never raises; it produces errors.
    """

    return ParseResultDto.model_validate(parse(stream, file_name))


def upload_statement(
    stream: IO[bytes] | bytes | None,
    file_name: str | None,
    *,
    tenant_id: str,
    database_url: str | None = None,
    budget_ms: float | None = None,
) -> ImportResultDto:
    """Stage an uploaded OFX/QFX statement for the given workspace.

    Input
    -----
    stream:
        Raw statement bytes or a binary file object. ``None``/empty stages
        nothing.
    tenant_id:
        Destination workspace; duplicate lookups and rules are scoped to it.

    Output
    ------
    The staged batch as an :class:`~bank_import.schemas.ImportResultDto`:
    counts per duplicate status, every staged row with its classification and
    suggested category, parse errors and match diagnostics.
    ``result.model_dump(mode="json", by_alias=True)`` is JSON-serializable.
    """

    from .workflows.review_flow import import_statement_stream

    return import_statement_stream(
        stream,
        file_name,
        tenant_id=tenant_id,
        database_url=database_url,
        budget_ms=budget_ms,
    )


__all__ = ["parse_statement", "upload_statement"]
