# ruff: noqa: I001
"""Ledger, import staging and match rule tables.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # ledger_entries
    op.create_table(
        "ledger_entries",
        sa.Column("key", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("payee", sa.Text(), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("category", sa.String(200), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("import_batch_key", sa.String(36), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_ledger_entries_tenant_external_id",
        "ledger_entries",
        ["tenant_id", "external_id"],
        unique=False,
    )

    # import_batches
    op.create_table(
        "import_batches",
        sa.Column("key", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=True),
        sa.Column(
            "state",
            sa.String(32),
            nullable=False,
            server_default=sa.text("'imported'"),
        ),
        _created_at(),
        _created_at("updated_at"),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "state in ('imported','under_review','committed')",
            name="ck_import_batches_state",
        ),
    )
    op.create_index(
        "ix_import_batches_tenant_state", "import_batches", ["tenant_id", "state"], unique=False
    )

    # staged_transactions
    op.create_table(
        "staged_transactions",
        sa.Column("key", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("batch_key", sa.String(36), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("payee", sa.Text(), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("duplicate_status", sa.String(32), nullable=False),
        sa.Column("duplicate_of_key", sa.String(36), nullable=True),
        sa.Column("suggested_category", sa.String(200), nullable=True),
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(
            ["batch_key"],
            ["import_batches.key"],
            name="fk_staged_tx_batch",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "duplicate_status in ('new','exact_duplicate','potential_duplicate')",
            name="ck_staged_tx_duplicate_status",
        ),
        sa.CheckConstraint(
            (
                "(duplicate_status = 'new' AND duplicate_of_key IS NULL) OR "
                "(duplicate_status <> 'new' AND duplicate_of_key IS NOT NULL)"
            ),
            name="ck_staged_tx_duplicate_of_key",
        ),
    )
    op.create_index(
        "ix_staged_tx_tenant_external_id",
        "staged_transactions",
        ["tenant_id", "external_id"],
        unique=False,
    )
    op.create_index("ix_staged_tx_batch_key", "staged_transactions", ["batch_key"], unique=False)

    # match_rules
    op.create_table(
        "match_rules",
        sa.Column("key", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("pattern", sa.String(200), nullable=False),
        sa.Column("is_regex", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("category", sa.String(200), nullable=False),
        _created_at(),
        _created_at("modified_at"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("match_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_index("ix_match_rules_tenant", "match_rules", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_match_rules_tenant", table_name="match_rules")
    op.drop_table("match_rules")
    op.drop_index("ix_staged_tx_batch_key", table_name="staged_transactions")
    op.drop_index("ix_staged_tx_tenant_external_id", table_name="staged_transactions")
    op.drop_table("staged_transactions")
    op.drop_index("ix_import_batches_tenant_state", table_name="import_batches")
    op.drop_table("import_batches")
    op.drop_index("ix_ledger_entries_tenant_external_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
