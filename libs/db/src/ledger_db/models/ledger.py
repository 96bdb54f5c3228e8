from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    false,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Keys are uuid4 strings generated in the service layer.
KEY_LENGTH = 36
# Maximum stored length for user-authored rule patterns and category paths.
RULE_TEXT_MAX = 200


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: ledger_entries
# ---------------------------


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    key: Mapped[str] = mapped_column(String(KEY_LENGTH), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payee: Mapped[str | None] = mapped_column(Text, nullable=True)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(RULE_TEXT_MAX), nullable=True)
    # Bank-assigned identifier (FITID). Entries without one never take part in
    # duplicate matching.
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Batch the entry was committed from; plain reference so discarding
    # batches never touches the ledger.
    import_batch_key: Mapped[str | None] = mapped_column(String(KEY_LENGTH), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_ledger_entries_tenant_external_id", "tenant_id", "external_id"),
    )


# ---------------------------
# Staging: import_batches
# ---------------------------


class ImportBatch(Base):
    __tablename__ = "import_batches"

    key: Mapped[str] = mapped_column(String(KEY_LENGTH), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=text("'imported'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rows: Mapped[list[StagedTransaction]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "state in ('imported','under_review','committed')",
            name="ck_import_batches_state",
        ),
        Index("ix_import_batches_tenant_state", "tenant_id", "state"),
    )


# ---------------------------
# Staging: staged_transactions
# ---------------------------


class StagedTransaction(Base):
    __tablename__ = "staged_transactions"

    key: Mapped[str] = mapped_column(String(KEY_LENGTH), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    batch_key: Mapped[str] = mapped_column(
        String(KEY_LENGTH),
        ForeignKey("import_batches.key", ondelete="CASCADE"),
        nullable=False,
    )
    # Position of the line within the imported file (0-based).
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payee: Mapped[str | None] = mapped_column(Text, nullable=True)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    duplicate_status: Mapped[str] = mapped_column(String(32), nullable=False)
    # Points at a ledger entry or another staged row; set only for duplicates.
    duplicate_of_key: Mapped[str | None] = mapped_column(String(KEY_LENGTH), nullable=True)
    suggested_category: Mapped[str | None] = mapped_column(String(RULE_TEXT_MAX), nullable=True)
    is_selected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    batch: Mapped[ImportBatch] = relationship(back_populates="rows")

    __table_args__ = (
        CheckConstraint(
            "duplicate_status in ('new','exact_duplicate','potential_duplicate')",
            name="ck_staged_tx_duplicate_status",
        ),
        CheckConstraint(
            (
                "(duplicate_status = 'new' AND duplicate_of_key IS NULL) OR "
                "(duplicate_status <> 'new' AND duplicate_of_key IS NOT NULL)"
            ),
            name="ck_staged_tx_duplicate_of_key",
        ),
        Index("ix_staged_tx_tenant_external_id", "tenant_id", "external_id"),
        Index("ix_staged_tx_batch_key", "batch_key"),
    )


# ---------------------------
# Rules: match_rules
# ---------------------------


class MatchRuleRow(Base):
    __tablename__ = "match_rules"

    key: Mapped[str] = mapped_column(String(KEY_LENGTH), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    pattern: Mapped[str] = mapped_column(String(RULE_TEXT_MAX), nullable=False)
    is_regex: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    category: Mapped[str] = mapped_column(String(RULE_TEXT_MAX), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    modified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    match_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))

    __table_args__ = (Index("ix_match_rules_tenant", "tenant_id"),)


__all__ = [
    "Base",
    "ImportBatch",
    "KEY_LENGTH",
    "LedgerEntry",
    "MatchRuleRow",
    "RULE_TEXT_MAX",
    "StagedTransaction",
]
