# ruff: noqa: I001
"""CLI for the ``bank_import`` package.

This module exposes callable command handlers (e.g., ``cmd_dump``,
``cmd_import``) and a Typer-based console interface (``bank-import``).
Environment variables (notably ``DATABASE_URL``) are loaded from a local
``.env`` using ``python-dotenv`` before delegating to command logic. Business
logic lives in ``bank_import.api`` and ``bank_import.workflows``.

``ofx-dump`` is a separate, argument-light diagnostic entry point
(:func:`dump_main`) with fixed exit codes: ``0`` parsed cleanly, ``1`` usage
error / missing file / unexpected failure, ``2`` parsed with errors.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import BaseModel
from typer.models import ArgumentInfo, OptionInfo

from .logging_setup import configure_logging

_DUMP_USAGE = "Usage: ofx-dump <path-to-ofx-file>"


# ---- Small module-level helpers used by CLI commands -------------------------


def _resolve_tenant(tenant: str | None) -> str:
    """Return the tenant for a command: explicit value, ``BANK_IMPORT_TENANT``, or ``default``."""

    import os  # defer import to keep module import surface minimal

    if tenant and tenant.strip():
        return tenant.strip()
    env_val = os.getenv("BANK_IMPORT_TENANT")
    return env_val.strip() if env_val and env_val.strip() else "default"


def _emit(payload: BaseModel | Any, out: IO[str] | None = None) -> None:
    stream = out or sys.stdout
    if isinstance(payload, BaseModel):
        print(payload.model_dump_json(indent=2, by_alias=True), file=stream)
    else:
        print(json.dumps(payload, indent=2, default=str), file=stream)


# ---- Command handlers --------------------------------------------------------


def cmd_dump(path: str, *, out: IO[str] | None = None) -> int:
    """Parse a statement file and print the parse result as indented JSON.

    Behavior
    --------
    - Missing file: prints ``Error: File not found`` to stderr and returns 1.
    - Unexpected exception: prints the traceback to stderr and returns 1.
    - Otherwise prints ``{"candidates": [...], "errors": [...]}`` and returns
      2 when the parse produced any error, else 0.
    """

    import traceback

    from .api import parse_statement

    p = Path(path)
    if not p.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        return 1
    try:
        with p.open("rb") as f:
            result = parse_statement(f, p.name)
        _emit(result, out)
    except Exception as e:  # noqa: BLE001
        print(f"Error: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        return 1
    return 2 if result.errors else 0


def cmd_import(
    path: str,
    *,
    tenant_id: str,
    database_url: str | None = None,
    budget_ms: float | None = None,
) -> int:
    """Stage a statement file for review and print the staged batch."""

    from .workflows.review_flow import import_statement_file

    try:
        result = import_statement_file(
            path,
            tenant_id=tenant_id,
            database_url=database_url,
            budget_ms=budget_ms,
            on_progress=lambda msg: print(msg, file=sys.stderr),
        )
    except FileNotFoundError:
        print(f"Error: File not found: {path}", file=sys.stderr)
        return 1
    except PermissionError:
        print(f"Error: Permission denied: {path}", file=sys.stderr)
        return 1
    except Exception as e:  # noqa: BLE001
        print(f"Error: import failed: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_review(
    *,
    tenant_id: str,
    page: int = 1,
    page_size: int | None = None,
    database_url: str | None = None,
) -> int:
    from .workflows.review_flow import pending_review

    try:
        result = pending_review(
            tenant_id=tenant_id, page=page, page_size=page_size, database_url=database_url
        )
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to load pending review: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_summary(*, tenant_id: str, database_url: str | None = None) -> int:
    from .workflows.review_flow import review_summary

    try:
        result = review_summary(tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to load summary: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_select(
    keys: Sequence[str],
    *,
    tenant_id: str,
    is_selected: bool,
    all_rows: bool = False,
    database_url: str | None = None,
) -> int:
    """Select/deselect staged rows by key, or every pending row with ``all_rows``."""

    from .workflows.review_flow import select_all_rows, select_rows

    if not all_rows and not keys:
        print("Error: provide one or more row keys or --all", file=sys.stderr)
        return 1
    try:
        if all_rows:
            count = select_all_rows(
                tenant_id=tenant_id, is_selected=is_selected, database_url=database_url
            )
        else:
            count = select_rows(
                list(keys), tenant_id=tenant_id, is_selected=is_selected, database_url=database_url
            )
    except LookupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:  # noqa: BLE001
        print(f"Error: selection failed: {e}", file=sys.stderr)
        return 1
    _emit({"updated": count, "isSelected": is_selected})
    return 0


def cmd_edit(
    key: str,
    *,
    tenant_id: str,
    category: str | None = None,
    memo: str | None = None,
    database_url: str | None = None,
) -> int:
    from .staging import UNSET
    from .workflows.review_flow import edit_row

    if category is None and memo is None:
        print("Error: provide --category and/or --memo", file=sys.stderr)
        return 1
    try:
        result = edit_row(
            key,
            tenant_id=tenant_id,
            suggested_category=category if category is not None else UNSET,
            memo=memo if memo is not None else UNSET,
            database_url=database_url,
        )
    except Exception as e:  # noqa: BLE001
        print(f"Error: edit failed: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_commit(
    *, tenant_id: str, retain_rejected: bool = False, database_url: str | None = None
) -> int:
    from .staging import CommitError
    from .workflows.review_flow import commit_review

    try:
        result = commit_review(
            tenant_id=tenant_id, retain_rejected=retain_rejected, database_url=database_url
        )
    except CommitError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:  # noqa: BLE001
        print(f"Error: commit failed: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_discard(*, tenant_id: str, database_url: str | None = None) -> int:
    from .workflows.review_flow import discard_review

    try:
        deleted = discard_review(tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: discard failed: {e}", file=sys.stderr)
        return 1
    _emit({"discarded": deleted})
    return 0


def cmd_reclassify(batch_key: str, *, tenant_id: str, database_url: str | None = None) -> int:
    from .workflows.review_flow import reclassify

    try:
        results = reclassify(batch_key, tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: reclassify failed: {e}", file=sys.stderr)
        return 1
    _emit(
        [
            {"duplicateStatus": r.status.value, "duplicateOfKey": r.duplicate_of_key}
            for r in results
        ]
    )
    return 0


def cmd_add_rule(
    pattern: str,
    category: str,
    *,
    tenant_id: str,
    is_regex: bool = False,
    database_url: str | None = None,
) -> int:
    """Validate and store a payee rule; prints the stored rule."""

    from pydantic import ValidationError

    from .schemas import MatchRuleEdit
    from .workflows.review_flow import add_rule

    try:
        edit = MatchRuleEdit(pattern=pattern, category=category, is_regex=is_regex)
    except ValidationError as e:
        reasons = "; ".join(str(err.get("msg", "")) for err in e.errors())
        print(f"Error: invalid rule: {reasons}", file=sys.stderr)
        return 1
    try:
        result = add_rule(edit, tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to store rule: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_update_rule(
    key: str,
    pattern: str,
    category: str,
    *,
    tenant_id: str,
    is_regex: bool = False,
    database_url: str | None = None,
) -> int:
    """Replace a stored rule's pattern and category; prints the updated rule."""

    from pydantic import ValidationError

    from .schemas import MatchRuleEdit
    from .workflows.review_flow import change_rule

    try:
        edit = MatchRuleEdit(pattern=pattern, category=category, is_regex=is_regex)
    except ValidationError as e:
        reasons = "; ".join(str(err.get("msg", "")) for err in e.errors())
        print(f"Error: invalid rule: {reasons}", file=sys.stderr)
        return 1
    try:
        result = change_rule(key, edit, tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to update rule: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


def cmd_delete_rule(key: str, *, tenant_id: str, database_url: str | None = None) -> int:
    from .workflows.review_flow import remove_rule

    try:
        remove_rule(key, tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to delete rule: {e}", file=sys.stderr)
        return 1
    _emit({"deleted": key})
    return 0


def cmd_rules(*, tenant_id: str, database_url: str | None = None) -> int:
    from .workflows.review_flow import rules

    try:
        result = rules(tenant_id=tenant_id, database_url=database_url)
    except Exception as e:  # noqa: BLE001
        print(f"Error: failed to list rules: {e}", file=sys.stderr)
        return 1
    _emit(result)
    return 0


# ---- ofx-dump entry point ----------------------------------------------------


def dump_main(argv: list[str] | None = None) -> int:
    """Entry point for ``ofx-dump <file>``; returns the process exit code."""

    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or args[0] in {"-h", "--help"}:
        print(_DUMP_USAGE, file=sys.stderr)
        return 1
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()
    return cmd_dump(args[0])


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Import OFX/QFX bank statements into a review staging area, then commit "
        "the selected rows to the ledger. Loads DATABASE_URL from a local .env."
    ),
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults). Typer will inspect these when used as default values below.
FILE_ARGUMENT: ArgumentInfo = typer.Argument(
    ...,
    help="Path to an OFX/QFX statement file",
    dir_okay=False,
    file_okay=True,
    exists=False,  # allow non-existent here; the handler will report nice errors
)
TENANT_OPTION: OptionInfo = typer.Option(
    ..., "--tenant", help="Workspace identifier (falls back to BANK_IMPORT_TENANT)."
)
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    ..., "--database-url", help="Override DATABASE_URL (falls back to env var)."
)


def _exit(code: int) -> None:
    if code:
        raise typer.Exit(code)


@app.command("dump")
def dump_cmd(path: Annotated[Path, FILE_ARGUMENT]) -> None:
    """Parse a statement and print candidates and errors as JSON (exit 2 on errors)."""

    _exit(cmd_dump(str(path)))


@app.command("import")
def import_cmd(
    path: Annotated[Path, FILE_ARGUMENT],
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    budget_ms: float | None = typer.Option(
        None, help="Per-evaluation regex budget in ms (falls back to BANK_IMPORT_MATCH_BUDGET_MS)."
    ),
) -> None:
    """Parse, de-duplicate and categorize a statement into a staged batch."""

    _exit(
        cmd_import(
            str(path),
            tenant_id=_resolve_tenant(tenant),
            database_url=database_url,
            budget_ms=budget_ms,
        )
    )


@app.command("review")
def review_cmd(
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    page: int = typer.Option(1, min=1, help="Page number (1-based)."),
    page_size: int | None = typer.Option(
        None, min=1, help="Rows per page (default 50, max 1000)."
    ),
) -> None:
    """Print one page of pending staged rows."""

    _exit(
        cmd_review(
            tenant_id=_resolve_tenant(tenant),
            page=page,
            page_size=page_size,
            database_url=database_url,
        )
    )


@app.command("summary")
def summary_cmd(
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Print counts of pending rows by status and selection."""

    _exit(cmd_summary(tenant_id=_resolve_tenant(tenant), database_url=database_url))


@app.command("select")
def select_cmd(
    keys: list[str] | None = typer.Argument(None, help="Staged row keys."),
    *,
    all_rows: bool = typer.Option(False, "--all", help="Select every pending row."),
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Mark staged rows for import."""

    _exit(
        cmd_select(
            keys or [],
            tenant_id=_resolve_tenant(tenant),
            is_selected=True,
            all_rows=all_rows,
            database_url=database_url,
        )
    )


@app.command("deselect")
def deselect_cmd(
    keys: list[str] | None = typer.Argument(None, help="Staged row keys."),
    *,
    all_rows: bool = typer.Option(False, "--all", help="Deselect every pending row."),
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Exclude staged rows from import."""

    _exit(
        cmd_select(
            keys or [],
            tenant_id=_resolve_tenant(tenant),
            is_selected=False,
            all_rows=all_rows,
            database_url=database_url,
        )
    )


@app.command("edit")
def edit_cmd(
    key: str = typer.Argument(..., help="Staged row key."),
    *,
    category: str | None = typer.Option(None, help="New category (blank clears it)."),
    memo: str | None = typer.Option(None, help="New memo (blank clears it)."),
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Edit the category and/or memo of a staged row."""

    _exit(
        cmd_edit(
            key,
            tenant_id=_resolve_tenant(tenant),
            category=category,
            memo=memo,
            database_url=database_url,
        )
    )


@app.command("commit")
def commit_cmd(
    *,
    retain_rejected: bool = typer.Option(
        False, help="Keep staged rows (including rejected ones) for audit after commit."
    ),
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Copy selected rows into the ledger in a single transaction."""

    _exit(
        cmd_commit(
            tenant_id=_resolve_tenant(tenant),
            retain_rejected=retain_rejected,
            database_url=database_url,
        )
    )


@app.command("discard")
def discard_cmd(
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Delete every pending staged row without importing anything."""

    _exit(cmd_discard(tenant_id=_resolve_tenant(tenant), database_url=database_url))


@app.command("reclassify")
def reclassify_cmd(
    batch_key: str = typer.Argument(..., help="Import batch key."),
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Re-run duplicate classification for one batch."""

    _exit(cmd_reclassify(batch_key, tenant_id=_resolve_tenant(tenant), database_url=database_url))


@app.command("add-rule")
def add_rule_cmd(
    pattern: str = typer.Argument(..., help="Payee substring or regular expression."),
    category: str = typer.Argument(..., help="Category to assign, e.g. 'Home:Garden'."),
    *,
    regex: bool = typer.Option(False, "--regex", help="Treat the pattern as a regex."),
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Store a payee matching rule."""

    _exit(
        cmd_add_rule(
            pattern,
            category,
            tenant_id=_resolve_tenant(tenant),
            is_regex=regex,
            database_url=database_url,
        )
    )


@app.command("update-rule")
def update_rule_cmd(
    key: str = typer.Argument(..., help="Rule key."),
    pattern: str = typer.Argument(..., help="Payee substring or regular expression."),
    category: str = typer.Argument(..., help="Category to assign."),
    *,
    regex: bool = typer.Option(False, "--regex", help="Treat the pattern as a regex."),
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Replace the pattern and category of a stored rule."""

    _exit(
        cmd_update_rule(
            key,
            pattern,
            category,
            tenant_id=_resolve_tenant(tenant),
            is_regex=regex,
            database_url=database_url,
        )
    )


@app.command("delete-rule")
def delete_rule_cmd(
    key: str = typer.Argument(..., help="Rule key."),
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Delete a stored rule."""

    _exit(cmd_delete_rule(key, tenant_id=_resolve_tenant(tenant), database_url=database_url))


@app.command("rules")
def rules_cmd(
    *,
    tenant: Annotated[str | None, TENANT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """List payee matching rules, most recently modified first."""

    _exit(cmd_rules(tenant_id=_resolve_tenant(tenant), database_url=database_url))


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    # Running as a module: `python -m bank_import.cli`
    app()
