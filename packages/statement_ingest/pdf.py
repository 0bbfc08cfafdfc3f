"""PDF access gate: detect, require and validate passwords before extraction.

The gate is a small state machine over a document::

    unknown -> NOT_ENCRYPTED | NEEDS_PASSWORD | VALIDATED

It relies on two collaborators with deliberately different engines:

- a :class:`PasswordValidator` (default: pdfminer.six) that opens the document
  and distinguishes "no password needed", "password required" and "wrong
  password";
- a :class:`StructuralDecrypter` (default: pypdf) that rewrites an already
  unlocked document without its encryption dictionary so downstream extraction
  gets a plain copy.

pdfminer validates every standard security handler revision but cannot write
documents; pypdf writes documents but its verdict alone is not trusted. The
decrypter re-checks the password too, so both engines must agree before the
plaintext copy is produced. Parse failures that are not password related
(truncated files, garbage bytes) propagate unchanged from the engine that hit
them.
"""

from __future__ import annotations

import enum
import io
from typing import Protocol

from pdfminer.pdfdocument import PDFDocument, PDFPasswordIncorrect
from pdfminer.pdfparser import PDFParser
from pypdf import PasswordType, PdfReader, PdfWriter

from .errors import PdfIncorrectPasswordError, PdfPasswordRequiredError
from .logging_setup import get_logger

_logger = get_logger("statement_ingest.pdf")


class PdfCheckResult(enum.Enum):
    """Exhaustive outcome of a password check."""

    NOT_ENCRYPTED = "not_encrypted"
    NEEDS_PASSWORD = "needs_password"
    VALIDATED = "validated"

    @property
    def encrypted(self) -> bool:
        return self is not PdfCheckResult.NOT_ENCRYPTED

    @property
    def needs_password(self) -> bool:
        return self is PdfCheckResult.NEEDS_PASSWORD

    def as_dict(self) -> dict[str, bool]:
        if self is PdfCheckResult.NOT_ENCRYPTED:
            return {"encrypted": False}
        return {"encrypted": True, "needsPassword": self.needs_password}


class PasswordValidator(Protocol):
    def check(self, data: bytes, password: str | None = None) -> PdfCheckResult:
        """Return the check outcome; raise ``PdfIncorrectPasswordError`` on a wrong password."""
        ...


class StructuralDecrypter(Protocol):
    def strip_encryption(self, data: bytes, password: str) -> bytes:
        """Return an unencrypted copy; raise ``PdfIncorrectPasswordError`` on a wrong password."""
        ...


# ---------------------------------------------------------------------------
# Default collaborators
# ---------------------------------------------------------------------------


class PdfminerPasswordValidator:
    """Password validation backed by pdfminer.six."""

    @staticmethod
    def _open(data: bytes, password: str) -> PDFDocument:
        # PDFDocument runs the security handler during construction.
        return PDFDocument(PDFParser(io.BytesIO(data)), password=password)

    def check(self, data: bytes, password: str | None = None) -> PdfCheckResult:
        try:
            self._open(data, "")
        except PDFPasswordIncorrect:
            pass
        else:
            # Covers owner-password-only files: they open without user input.
            return PdfCheckResult.NOT_ENCRYPTED

        if not password:
            return PdfCheckResult.NEEDS_PASSWORD

        try:
            self._open(data, password)
        except (PDFPasswordIncorrect, UnicodeEncodeError) as e:
            # Older handlers only accept latin-1 passwords.
            raise PdfIncorrectPasswordError() from e
        return PdfCheckResult.VALIDATED


class PypdfStructuralDecrypter:
    """Rewrite an unlocked document with pypdf, keeping its full structure."""

    def strip_encryption(self, data: bytes, password: str) -> bytes:
        reader = PdfReader(io.BytesIO(data))
        if not reader.is_encrypted:
            return data
        if reader.decrypt(password) == PasswordType.NOT_DECRYPTED:
            raise PdfIncorrectPasswordError()

        # Clone the whole catalog (outlines, forms, names); the writer has no
        # encryption configured so the copy is written in the clear.
        writer = PdfWriter(clone_from=reader)
        out = io.BytesIO()
        writer.write(out)
        return out.getvalue()


def is_pdf(data: bytes) -> bool:
    """True when ``data`` carries a PDF header near the start of the file."""

    # Readers tolerate leading junk before the header within the first KiB.
    return b"%PDF-" in data[:1024]


def count_pages(data: bytes) -> int:
    """Page count of an unencrypted (or empty-user-password) document."""

    return len(PdfReader(io.BytesIO(data)).pages)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class PdfAccessGate:
    """Checkpoint that must pass before a document reaches extraction."""

    def __init__(
        self,
        validator: PasswordValidator | None = None,
        decrypter: StructuralDecrypter | None = None,
    ) -> None:
        self._validator = validator or PdfminerPasswordValidator()
        self._decrypter = decrypter or PypdfStructuralDecrypter()

    def check_password(self, data: bytes, password: str | None = None) -> PdfCheckResult:
        """Classify ``data``; raises ``PdfIncorrectPasswordError`` for a wrong password."""

        result = self._validator.check(data, password)
        _logger.debug("PDF password check: %s", result.value)
        return result

    def decrypt(self, data: bytes, password: str) -> bytes:
        """Validate ``password`` and return an unencrypted copy of ``data``."""

        result = self.check_password(data, password)
        if result is PdfCheckResult.NOT_ENCRYPTED:
            return data
        if result is PdfCheckResult.NEEDS_PASSWORD:
            raise PdfPasswordRequiredError()
        plain = self._decrypter.strip_encryption(data, password)
        _logger.info("Stripped PDF encryption (%d -> %d bytes)", len(data), len(plain))
        return plain

    def require_plaintext(self, data: bytes, password: str | None = None) -> bytes:
        """Return bytes ready for extraction or raise a password error."""

        result = self.check_password(data, password)
        if result is PdfCheckResult.NOT_ENCRYPTED:
            return data
        if result is PdfCheckResult.NEEDS_PASSWORD or not password:
            raise PdfPasswordRequiredError()
        return self._decrypter.strip_encryption(data, password)


__all__ = [
    "PasswordValidator",
    "PdfAccessGate",
    "PdfCheckResult",
    "PdfminerPasswordValidator",
    "PypdfStructuralDecrypter",
    "StructuralDecrypter",
    "count_pages",
    "is_pdf",
]
