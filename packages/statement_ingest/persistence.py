# ruff: noqa: I001
"""Persistence integration for statement_ingest.

Functions here read and write the tenant-scoped ledger tables owned by
``libs/db``. They take a caller-owned SQLAlchemy ``Session`` and never commit.

Scope:
- Rule management: validate and create rules, load the active rule list.
- Categories: resolve names to ids, creating missing ones.
- Transactions: fingerprint-keyed insert-ignore (at most one live row per
  fingerprint per tenant).
- Uploads: status transitions and encrypted password storage.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal

from db.models.ledger import CategorizationRuleRow, Category, LedgerTransaction, Upload
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import Insert, insert, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .crypto import KeyCodec
from .logging_setup import get_logger
from .rules import (
    NUMERIC_OPERATORS,
    SIGN_VALUES,
    STRING_OPERATORS,
    CategorizationRule,
    parse_rule,
    to_number,
)

_logger = get_logger("statement_ingest.persistence")


# ---------------------------------------------------------------------------
# Rule management
# ---------------------------------------------------------------------------


class RuleConditionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: Literal["merchant_name", "amount"]
    operator: Literal["eq", "neq", "contains", "gt", "lt", "gte", "lte"]
    value: str | int | float

    @model_validator(mode="after")
    def _operator_fits_field(self) -> RuleConditionIn:
        allowed = STRING_OPERATORS if self.field == "merchant_name" else NUMERIC_OPERATORS
        if self.operator not in allowed:
            raise ValueError(
                f"operator {self.operator!r} is not supported for field {self.field!r}"
            )
        if self.field == "amount" and to_number(self.value) != to_number(self.value):
            raise ValueError("amount conditions need a numeric value")
        if self.field == "merchant_name" and not str(self.value).strip():
            raise ValueError("merchant_name conditions need a non-empty value")
        return self


class RuleActionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["ignore", "set_sign", "set_category"]
    value: str | None = None

    @model_validator(mode="after")
    def _value_fits_type(self) -> RuleActionIn:
        if self.type == "set_sign" and self.value not in SIGN_VALUES:
            raise ValueError("set_sign needs value 'positive' or 'negative'")
        if self.type == "set_category" and not (self.value and self.value.strip()):
            raise ValueError("set_category needs a category id")
        return self


class RuleDefinition(BaseModel):
    """Validated input for creating a categorization rule.

    Evaluation tolerates misconfigured rules by treating them as non-matches;
    this model is where such mistakes are reported to the user instead.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    priority: int = Field(default=0, ge=0, le=1000)
    logic_operator: Literal["and", "or"] = Field(default="and", alias="logicOperator")
    conditions: list[RuleConditionIn] = Field(min_length=1)
    actions: list[RuleActionIn] = Field(min_length=1)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _collapse_whitespace(cls, v: str) -> str:
        return " ".join(v.split())


def create_rule(session: Session, tenant_id: str, definition: RuleDefinition) -> str:
    """Insert a rule for ``tenant_id`` and return its id."""

    row = CategorizationRuleRow(
        tenant_id=tenant_id,
        name=definition.name,
        priority=definition.priority,
        logic_operator=definition.logic_operator,
        conditions=[c.model_dump() for c in definition.conditions],
        actions=[a.model_dump(exclude_none=True) for a in definition.actions],
        enabled=definition.enabled,
    )
    session.add(row)
    session.flush()
    _logger.info("Created rule %s for tenant %s", row.id, tenant_id)
    return row.id


def load_active_rules(session: Session, tenant_id: str) -> list[CategorizationRule]:
    """Enabled, non-deleted rules in evaluation order (priority desc, oldest first)."""

    rows = session.execute(
        select(CategorizationRuleRow)
        .where(
            CategorizationRuleRow.tenant_id == tenant_id,
            CategorizationRuleRow.deleted.is_(False),
            CategorizationRuleRow.enabled.is_(True),
        )
        .order_by(CategorizationRuleRow.priority.desc(), CategorizationRuleRow.created_at)
    ).scalars()
    return [
        parse_rule(
            {
                "id": r.id,
                "name": r.name,
                "logic_operator": r.logic_operator,
                "conditions": r.conditions,
                "actions": r.actions,
                "enabled": r.enabled,
            }
        )
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def ensure_categories(
    session: Session, tenant_id: str, names: Iterable[str]
) -> tuple[dict[str, str], int]:
    """Map category names to ids, creating the missing ones.

    Returns ``(name_to_id, created_count)``. Matching is exact on the name, as
    categories are user-visible labels.
    """

    wanted = sorted({n for n in names if n})
    if not wanted:
        return {}, 0

    existing = session.execute(
        select(Category.name, Category.id).where(
            Category.tenant_id == tenant_id,
            Category.deleted.is_(False),
            Category.name.in_(wanted),
        )
    ).all()
    name_to_id = {name: cid for name, cid in existing}

    created = 0
    for name in wanted:
        if name in name_to_id:
            continue
        row = Category(tenant_id=tenant_id, name=name)
        session.add(row)
        session.flush()
        name_to_id[name] = row.id
        created += 1
    if created:
        _logger.info("Inserted %d new categories for tenant %s", created, tenant_id)
    return name_to_id, created


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PreparedTransaction:
    """A transaction ready to persist: rules applied, fingerprint computed."""

    fingerprint: str
    date: date
    merchant_name: str
    amount: int
    currency: str
    confidence: int
    category_id: str | None = None


def existing_fingerprints(
    session: Session, tenant_id: str, fingerprints: Sequence[str]
) -> set[str]:
    if not fingerprints:
        return set()
    rows = session.execute(
        select(LedgerTransaction.fingerprint).where(
            LedgerTransaction.tenant_id == tenant_id,
            LedgerTransaction.deleted.is_(False),
            LedgerTransaction.fingerprint.in_(list(fingerprints)),
        )
    ).scalars()
    return set(rows)


def _insert_ignore(session: Session, rows: list[dict[str, Any]]) -> Insert:
    # Conflict targets repeat the partial index predicate verbatim so both
    # backends can match the index.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(LedgerTransaction).values(rows).on_conflict_do_nothing(
            index_elements=[LedgerTransaction.tenant_id, LedgerTransaction.fingerprint],
            index_where=text("NOT deleted"),
        )
    if dialect == "sqlite":
        return sqlite_insert(LedgerTransaction).values(rows).on_conflict_do_nothing(
            index_elements=[LedgerTransaction.tenant_id, LedgerTransaction.fingerprint],
            index_where=text("deleted = 0"),
        )
    return insert(LedgerTransaction).values(rows)


def select_new_transactions(
    session: Session, tenant_id: str, transactions: Iterable[PreparedTransaction]
) -> list[PreparedTransaction]:
    """Drop candidates already stored for the tenant or repeated in the batch.

    The first occurrence of a fingerprint within the batch wins.
    """

    items = list(transactions)
    seen = existing_fingerprints(session, tenant_id, [t.fingerprint for t in items])
    fresh: list[PreparedTransaction] = []
    for t in items:
        if t.fingerprint in seen:
            continue
        seen.add(t.fingerprint)
        fresh.append(t)
    return fresh


def insert_new_transactions(
    session: Session,
    tenant_id: str,
    upload_id: str | None,
    transactions: Iterable[PreparedTransaction],
) -> tuple[int, int]:
    """Persist transactions whose fingerprint the tenant does not have yet.

    Rows that lose a race with a concurrent writer are ignored by the unique
    index. Returns ``(inserted, duplicates)``.
    """

    items = list(transactions)
    rows: list[dict[str, Any]] = []
    for t in select_new_transactions(session, tenant_id, items):
        rows.append(
            {
                "id": str(uuid.uuid4()),
                "upload_id": upload_id,
                "tenant_id": tenant_id,
                "category_id": t.category_id,
                "date": t.date,
                "merchant_name": t.merchant_name,
                "amount": t.amount,
                "currency": t.currency,
                "confidence": t.confidence,
                "fingerprint": t.fingerprint,
            }
        )

    inserted = 0
    if rows:
        stmt = _insert_ignore(session, rows).returning(LedgerTransaction.id)
        inserted = len(session.execute(stmt).all())

    duplicates = len(items) - inserted
    if duplicates:
        _logger.info("Skipped %d duplicate transactions for tenant %s", duplicates, tenant_id)
    return inserted, duplicates


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


def get_upload(session: Session, tenant_id: str, upload_id: str) -> Upload | None:
    return session.execute(
        select(Upload).where(
            Upload.id == upload_id,
            Upload.tenant_id == tenant_id,
            Upload.deleted.is_(False),
        )
    ).scalar_one_or_none()


def set_upload_status(
    session: Session,
    upload_id: str,
    status: str,
    *,
    failed_reason: str | None = None,
    clear_password: bool = False,
    page_count: int | None = None,
) -> None:
    values: dict[str, Any] = {"status": status, "failed_reason": failed_reason}
    if clear_password:
        values["encrypted_password"] = None
    if page_count is not None:
        values["page_count"] = page_count
    stmt = update(Upload).where(Upload.id == upload_id)
    if status == "failed":
        # A user cancellation must not be overwritten by a late failure.
        stmt = stmt.where(Upload.status != "cancelled")
    session.execute(stmt.values(**values))


def store_upload_password(
    session: Session,
    tenant_id: str,
    upload_id: str,
    password: str,
    codec: KeyCodec,
) -> None:
    """Encrypt and store a user-supplied PDF password, re-queueing the upload."""

    upload = get_upload(session, tenant_id, upload_id)
    if upload is None:
        raise LookupError(f"Upload {upload_id} not found")
    upload.encrypted_password = codec.encrypt(password)
    if upload.status == "waiting_for_password":
        upload.status = "queued"
        upload.failed_reason = None
    session.flush()
    _logger.info("Stored password for upload %s", upload_id)


__all__ = [
    "PreparedTransaction",
    "RuleActionIn",
    "RuleConditionIn",
    "RuleDefinition",
    "create_rule",
    "ensure_categories",
    "existing_fingerprints",
    "get_upload",
    "insert_new_transactions",
    "load_active_rules",
    "select_new_transactions",
    "set_upload_status",
    "store_upload_password",
]
