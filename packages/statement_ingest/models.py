"""Data models shared across the ingestion pipeline.

Two kinds of models live here:

- frozen dataclasses for values the pipeline passes between its own stages
  (``TransactionInput``, ``TenantContext``);
- pydantic models for data that crosses the extraction boundary
  (``ExtractedTransaction``, ``ExtractionResult``), which must be validated
  before anything downstream trusts it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .crypto import KeyCodec

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


# ---------------------------------------------------------------------------
# Pipeline values
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransactionInput:
    """A candidate transaction as seen by the rule engine.

    ``amount`` is a signed integer in minor currency units. Instances are never
    mutated; the rule engine reports changes as a separate override value.
    """

    date: date | str
    merchant_name: str
    amount: int
    currency: str
    category: str | None = None


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Resolved tenant handle plus its plaintext data-encryption key (hex)."""

    tenant_id: str
    dek: str

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self.tenant_id!r}, dek=<redacted>)"

    def cipher(self) -> KeyCodec:
        """Codec bound to this tenant's DEK for tenant-scoped secrets."""

        return KeyCodec.from_hex(self.dek, name="tenant DEK")


# ---------------------------------------------------------------------------
# Extraction boundary
# ---------------------------------------------------------------------------


class ExtractedTransaction(BaseModel):
    """One transaction as returned by the extraction collaborator.

    Accepts both ``merchant_name`` and the collaborator's ``merchantName``.
    ``confidence`` is the collaborator's category confidence in ``[0, 100]``.
    """

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, str_strip_whitespace=True, frozen=True
    )

    date: date
    merchant_name: str = Field(alias="merchantName", min_length=1)
    amount: int
    currency: str
    description: str | None = None
    category: str | None = None
    confidence: float | None = Field(default=None, ge=0, le=100)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_is_integral(cls, v: object) -> object:
        # Minor units only; 10.5 cents is an extraction bug, not something to round.
        if isinstance(v, bool):
            raise ValueError("amount must be an integer number of minor units")
        if isinstance(v, float):
            if not v.is_integer():
                raise ValueError("amount must be an integer number of minor units")
            return int(v)
        return v

    @field_validator("currency")
    @classmethod
    def _currency_is_iso(cls, v: str) -> str:
        code = v.upper()
        if not _CURRENCY_RE.fullmatch(code):
            raise ValueError("currency must be a 3-letter ISO 4217 code")
        return code

    @field_validator("category")
    @classmethod
    def _blank_category_is_none(cls, v: str | None) -> str | None:
        return v or None

    def to_input(self) -> TransactionInput:
        return TransactionInput(
            date=self.date,
            merchant_name=self.merchant_name,
            amount=self.amount,
            currency=self.currency,
            category=self.category,
        )


class ExtractionResult(BaseModel):
    """Full extraction payload: transactions plus statement-level facts."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    transactions: list[ExtractedTransaction]
    statement_currency: str | None = Field(default=None, alias="statementCurrency")
    opening_balance: int | None = Field(default=None, alias="openingBalance")
    closing_balance: int | None = Field(default=None, alias="closingBalance")


__all__ = [
    "ExtractedTransaction",
    "ExtractionResult",
    "TenantContext",
    "TransactionInput",
]
