# ruff: noqa: I001
"""Tenancy, uploads, categories, rules and transactions.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-09-14
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # user_tenant
    op.create_table(
        "user_tenant",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False, unique=True),
        sa.Column("user_id_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("user_id_encrypted", sa.Text(), nullable=False),
        sa.Column("dek_encrypted", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )

    # upload
    op.create_table(
        "upload",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(36),
            sa.ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text("'queued'")),
        sa.Column("encrypted_password", sa.Text(), nullable=True),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        sa.Column("page_count", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.CheckConstraint(
            "status in ('queued','processing','completed','failed','cancelled',"
            "'waiting_for_password')",
            name="ck_upload_status",
        ),
    )
    op.create_index("ix_upload_tenant_id", "upload", ["tenant_id"])

    # category
    op.create_table(
        "category",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(36),
            sa.ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )
    op.create_index("ix_category_tenant_id", "category", ["tenant_id"])

    # categorization_rule
    op.create_table(
        "categorization_rule",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(36),
            sa.ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("logic_operator", sa.String(3), nullable=False, server_default=sa.text("'and'")),
        sa.Column("conditions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("actions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.CheckConstraint("logic_operator in ('and','or')", name="ck_rule_logic_operator"),
        sa.CheckConstraint("priority >= 0 AND priority <= 1000", name="ck_rule_priority"),
    )
    op.create_index(
        "ix_categorization_rule_tenant_id", "categorization_rule", ["tenant_id"]
    )

    # transaction
    op.create_table(
        "transaction",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "upload_id",
            sa.String(36),
            sa.ForeignKey("upload.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "tenant_id",
            sa.String(36),
            sa.ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.String(36),
            sa.ForeignKey("category.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("merchant_name", sa.Text(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 100", name="ck_transaction_confidence"
        ),
    )
    op.create_index("ix_transaction_tenant_id", "transaction", ["tenant_id"])
    op.create_index("ix_transaction_upload_id", "transaction", ["upload_id"])
    # Partial unique index targeted by the insert-ignore in persistence.py
    op.create_index(
        "uq_transaction_tenant_fingerprint",
        "transaction",
        ["tenant_id", "fingerprint"],
        unique=True,
        postgresql_where=sa.text("NOT deleted"),
    )


def downgrade() -> None:
    op.drop_index("uq_transaction_tenant_fingerprint", table_name="transaction")
    op.drop_index("ix_transaction_upload_id", table_name="transaction")
    op.drop_index("ix_transaction_tenant_id", table_name="transaction")
    op.drop_table("transaction")
    op.drop_index("ix_categorization_rule_tenant_id", table_name="categorization_rule")
    op.drop_table("categorization_rule")
    op.drop_index("ix_category_tenant_id", table_name="category")
    op.drop_table("category")
    op.drop_index("ix_upload_tenant_id", table_name="upload")
    op.drop_table("upload")
    op.drop_table("user_tenant")
