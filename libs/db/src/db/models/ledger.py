from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


# JSONB on Postgres (matches the migration), plain JSON elsewhere.
_JSON_DOCUMENT = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------
# Tenancy: user_tenant
# ---------------------------


class UserTenant(Base):
    __tablename__ = "user_tenant"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # Opaque handle used by every tenant-scoped table. Never the user id.
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    # HMAC of the user id under the KEK; equality lookup without cleartext ids.
    user_id_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    dek_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Uploads
# ---------------------------

UPLOAD_STATUSES: tuple[str, ...] = (
    "queued",
    "processing",
    "completed",
    "failed",
    "cancelled",
    "waiting_for_password",
)


class Upload(Base):
    __tablename__ = "upload"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=text("'queued'")
    )
    # Envelope under the upload-password key; cleared once the PDF is decrypted.
    encrypted_password: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('queued','processing','completed','failed','cancelled',"
            "'waiting_for_password')",
            name="ck_upload_status",
        ),
        Index("ix_upload_tenant_id", "tenant_id"),
    )


# ---------------------------
# Categories
# ---------------------------


class Category(Base):
    __tablename__ = "category"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_category_tenant_id", "tenant_id"),)


# ---------------------------
# Categorization rules
# ---------------------------


class CategorizationRuleRow(Base):
    __tablename__ = "categorization_rule"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    logic_operator: Mapped[str] = mapped_column(
        String(3), nullable=False, server_default=text("'and'")
    )
    # Stored as JSON lists of {field, operator, value} and {type, value?}.
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(_JSON_DOCUMENT, nullable=False)
    actions: Mapped[list[dict[str, Any]]] = mapped_column(_JSON_DOCUMENT, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("logic_operator in ('and','or')", name="ck_rule_logic_operator"),
        CheckConstraint("priority >= 0 AND priority <= 1000", name="ck_rule_priority"),
        Index("ix_categorization_rule_tenant_id", "tenant_id"),
    )


# ---------------------------
# Transactions
# ---------------------------


class LedgerTransaction(Base):
    __tablename__ = "transaction"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    upload_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("upload.id", ondelete="SET NULL"), nullable=True
    )
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("user_tenant.tenant_id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("category.id", ondelete="SET NULL"), nullable=True
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant_name: Mapped[str] = mapped_column(Text, nullable=False)
    # Signed minor currency units (cents).
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("100"))
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 100", name="ck_transaction_confidence"
        ),
        Index("ix_transaction_tenant_id", "tenant_id"),
        Index("ix_transaction_upload_id", "upload_id"),
        # At most one live row per fingerprint per tenant; target of insert-ignore.
        Index(
            "uq_transaction_tenant_fingerprint",
            "tenant_id",
            "fingerprint",
            unique=True,
            postgresql_where=text("NOT deleted"),
            sqlite_where=text("deleted = 0"),
        ),
    )


__all__ = [
    "Base",
    "UPLOAD_STATUSES",
    "UserTenant",
    "Upload",
    "Category",
    "CategorizationRuleRow",
    "LedgerTransaction",
]
