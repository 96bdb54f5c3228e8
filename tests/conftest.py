"""Pytest configuration for test isolation.

The package reads several settings from the environment (``DATABASE_URL``,
``BANK_IMPORT_*``) and the CLI entry points attach a logging handler to the
package logger. Either can leak between tests, so an autouse fixture clears
the environment overrides and detaches the handler around every test.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from ledger_db.client import dispose_engines

from bank_import.logging_setup import reset_logging
from tests.helpers.db import bootstrap_sqlite_db

_ENV_VARS = (
    "DATABASE_URL",
    "BANK_IMPORT_LOG_LEVEL",
    "BANK_IMPORT_MATCH_BUDGET_MS",
    "BANK_IMPORT_PAGE_SIZE",
    "BANK_IMPORT_TENANT",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of CLI tests.
    monkeypatch.setattr("bank_import.cli.load_dotenv", lambda *a, **k: False)
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def db_url(tmp_path: Path) -> Iterator[str]:
    """A file-backed SQLite database with the full schema."""

    url = bootstrap_sqlite_db(tmp_path / "ledger.db")
    yield url
    dispose_engines()
