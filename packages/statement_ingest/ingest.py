# ruff: noqa: I001
"""Upload ingestion: gate, extract, apply rules, deduplicate, persist.

``UploadIngestor.run`` processes one stored upload end to end:

1. resolve (or provision) the owner's tenant and load the upload row;
2. pass PDF documents through the :class:`~statement_ingest.pdf.PdfAccessGate`
   using the stored upload password, parking the upload in
   ``waiting_for_password`` when one is needed or wrong (text and CSV
   statements go straight to extraction);
3. extract transactions with the injected extractor and validate them;
4. apply the tenant's active rules, resolve categories and fingerprints;
5. insert the new transactions and mark the upload ``completed``.

Steps 3 to 5 run in a single database transaction. Terminal failures (bad
document, invalid extraction, undecryptable secrets) roll it back and mark the
upload ``failed`` with a generic, user-safe message; the underlying error is
logged. Anything else propagates to the caller (the job runner decides whether
to retry).
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from db.client import session_scope
from pdfminer.psparser import PSException
from pydantic import ValidationError
from pypdf.errors import PyPdfError
from sqlalchemy.orm import Session

from .crypto import KeyCodec
from .errors import IntegrityError, PdfIncorrectPasswordError
from .fingerprint import compute_fingerprint
from .logging_setup import get_logger
from .models import ExtractedTransaction, ExtractionResult
from .pdf import PdfAccessGate, PdfCheckResult, count_pages, is_pdf
from .persistence import (
    PreparedTransaction,
    ensure_categories,
    get_upload,
    insert_new_transactions,
    load_active_rules,
    select_new_transactions,
    set_upload_status,
)
from .rules import RuleOverrides, apply_rules
from .settings import DEFAULT_CONFIDENCE_THRESHOLD
from .tenant import TenantKeyManager

_logger = get_logger("statement_ingest.ingest")

GENERIC_FAILURE_MESSAGE = "We could not process this document."
INCORRECT_PASSWORD_REASON = "incorrect_password"
DEFAULT_EXTRACTION_CONFIDENCE = 50

_TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    IntegrityError,
    PSException,
    PyPdfError,
    ValidationError,
)


class TransactionExtractor(Protocol):
    def extract(self, document: bytes) -> ExtractionResult | Mapping[str, Any]:
        """Return the transactions found in an unencrypted document."""
        ...


class JsonFileExtractor:
    """Extractor that replays a previously captured extraction payload."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def extract(self, document: bytes) -> Mapping[str, Any]:
        with self.path.open("r", encoding="utf-8") as f:
            return json.load(f)


@dataclass(frozen=True, slots=True)
class IngestOutcome:
    status: str
    imported: int = 0
    duplicates: int = 0
    ignored: int = 0
    rules_applied: int = 0
    categories_created: int = 0
    low_confidence_count: int = 0
    failure_reason: str | None = None
    # Unencrypted copy of a password-protected document, for the caller to store.
    decrypted_document: bytes | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "ignored": self.ignored,
            "rulesApplied": self.rules_applied,
            "categoriesCreated": self.categories_created,
            "lowConfidenceCount": self.low_confidence_count,
            "failureReason": self.failure_reason,
            "decrypted": self.decrypted_document is not None,
        }


class UploadIngestor:
    """Process stored uploads for one database."""

    def __init__(
        self,
        tenants: TenantKeyManager,
        gate: PdfAccessGate,
        extractor: TransactionExtractor,
        password_codec: KeyCodec,
        *,
        database_url: str | None = None,
        confidence_threshold: int = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._tenants = tenants
        self._gate = gate
        self._extractor = extractor
        self._password_codec = password_codec
        self._database_url = database_url
        self._confidence_threshold = confidence_threshold

    def run(self, document: bytes, *, user_id: str, upload_id: str) -> IngestOutcome:
        """Ingest ``document`` as the content of upload ``upload_id``.

        Raises ``LookupError`` when the upload does not belong to the user.
        """

        decrypted: bytes | None = None
        try:
            with session_scope(database_url=self._database_url) as session:
                tenant = self._tenants.resolve_or_create(session, user_id)
                upload = get_upload(session, tenant.tenant_id, upload_id)
                if upload is None:
                    raise LookupError(f"Upload {upload_id} not found")
                if upload.status in ("cancelled", "completed"):
                    _logger.warning(
                        "Upload %s is %s; not reprocessing", upload_id, upload.status
                    )
                    return IngestOutcome(status=upload.status)

                plaintext = document
                if is_pdf(document):
                    password = (
                        self._password_codec.decrypt(upload.encrypted_password)
                        if upload.encrypted_password
                        else None
                    )
                    try:
                        check = self._gate.check_password(document, password)
                        if check is PdfCheckResult.VALIDATED:
                            assert password is not None
                            # Both engines must accept the password.
                            plaintext = self._gate.decrypt(document, password)
                            decrypted = plaintext
                    except PdfIncorrectPasswordError:
                        _logger.info("Incorrect password for upload %s", upload_id)
                        set_upload_status(
                            session,
                            upload_id,
                            "waiting_for_password",
                            failed_reason=INCORRECT_PASSWORD_REASON,
                            clear_password=True,
                        )
                        return IngestOutcome(
                            status="waiting_for_password",
                            failure_reason=INCORRECT_PASSWORD_REASON,
                        )

                    if check is PdfCheckResult.NEEDS_PASSWORD:
                        _logger.info("Upload %s needs a password", upload_id)
                        set_upload_status(session, upload_id, "waiting_for_password")
                        return IngestOutcome(status="waiting_for_password")
                else:
                    _logger.info("Upload %s is a text statement; no password gate", upload_id)

                return self._import(
                    session,
                    plaintext,
                    user_id=user_id,
                    tenant_id=tenant.tenant_id,
                    upload_id=upload_id,
                    decrypted=decrypted,
                )
        except _TERMINAL_ERRORS as e:
            _logger.error("Failed to process upload %s: %s", upload_id, e)
            with session_scope(database_url=self._database_url) as session:
                set_upload_status(
                    session,
                    upload_id,
                    "failed",
                    failed_reason=GENERIC_FAILURE_MESSAGE,
                    clear_password=decrypted is not None,
                )
            return IngestOutcome(
                status="failed",
                failure_reason=GENERIC_FAILURE_MESSAGE,
                decrypted_document=decrypted,
            )

    def _import(
        self,
        session: Session,
        plaintext: bytes,
        *,
        user_id: str,
        tenant_id: str,
        upload_id: str,
        decrypted: bytes | None,
    ) -> IngestOutcome:
        raw = self._extractor.extract(plaintext)
        extraction = (
            raw if isinstance(raw, ExtractionResult) else ExtractionResult.model_validate(raw)
        )
        _logger.info(
            "Extracted %d transactions from upload %s", len(extraction.transactions), upload_id
        )

        rules = load_active_rules(session, tenant_id)
        _logger.info("Found %d categorization rules", len(rules))

        kept: list[tuple[ExtractedTransaction, RuleOverrides]] = []
        ignored = 0
        rules_applied = 0
        for tx in extraction.transactions:
            result = apply_rules(tx.to_input(), rules)
            rules_applied += result.rules_applied
            if result.skip:
                ignored += 1
                continue
            kept.append((tx, result.overrides))

        name_to_id, categories_created = ensure_categories(
            session,
            tenant_id,
            (tx.category for tx, ov in kept if ov.category_id is None and tx.category),
        )

        prepared: list[PreparedTransaction] = []
        for tx, ov in kept:
            amount = ov.amount if ov.amount is not None else tx.amount
            if ov.category_id is not None:
                category_id: str | None = ov.category_id
                confidence = 100
            else:
                category_id = name_to_id.get(tx.category) if tx.category else None
                raw_confidence = (
                    tx.confidence if tx.confidence is not None else DEFAULT_EXTRACTION_CONFIDENCE
                )
                confidence = int(min(100, max(0, raw_confidence)))
            prepared.append(
                PreparedTransaction(
                    fingerprint=compute_fingerprint(
                        user_id=user_id,
                        date=tx.date,
                        merchant_name=tx.merchant_name,
                        amount=amount,
                        currency=tx.currency,
                    ),
                    date=tx.date,
                    merchant_name=tx.merchant_name,
                    amount=amount,
                    currency=tx.currency,
                    confidence=confidence,
                    category_id=category_id,
                )
            )

        fresh = select_new_transactions(session, tenant_id, prepared)
        imported, _ = insert_new_transactions(session, tenant_id, upload_id, fresh)
        low_confidence = sum(1 for t in fresh if t.confidence < self._confidence_threshold)

        set_upload_status(
            session,
            upload_id,
            "completed",
            clear_password=decrypted is not None,
            page_count=count_pages(plaintext) if is_pdf(plaintext) else None,
        )
        _logger.info(
            "Imported %d transactions for upload %s (%d duplicates, %d ignored)",
            imported,
            upload_id,
            len(prepared) - imported,
            ignored,
        )
        return IngestOutcome(
            status="completed",
            imported=imported,
            duplicates=len(prepared) - imported,
            ignored=ignored,
            rules_applied=rules_applied,
            categories_created=categories_created,
            low_confidence_count=low_confidence,
            decrypted_document=decrypted,
        )


__all__ = [
    "DEFAULT_EXTRACTION_CONFIDENCE",
    "GENERIC_FAILURE_MESSAGE",
    "INCORRECT_PASSWORD_REASON",
    "IngestOutcome",
    "JsonFileExtractor",
    "TransactionExtractor",
    "UploadIngestor",
]
