"""Exception taxonomy for ``statement_ingest``.

Password problems are recoverable by asking the end user; integrity and key
material problems are not. Malformed-document errors are not wrapped: the
parsing library's own exception propagates so callers can tell a bad file from
a password issue.
"""

from __future__ import annotations


class StatementIngestError(Exception):
    """Base class for errors raised by this package."""


class KeyMaterialError(StatementIngestError, ValueError):
    """Configured key material is missing or not 32 bytes of hex."""


class IntegrityError(StatementIngestError):
    """An envelope failed authentication (tampered data or wrong key)."""


class MalformedEnvelopeError(IntegrityError):
    """An envelope is not three base64 segments separated by ``:``."""


class PdfAccessError(StatementIngestError):
    """Base class for password-related PDF gate failures."""


class PdfPasswordRequiredError(PdfAccessError):
    def __init__(self, message: str = "PDF is password protected") -> None:
        super().__init__(message)


class PdfIncorrectPasswordError(PdfAccessError):
    def __init__(self, message: str = "Incorrect PDF password") -> None:
        super().__init__(message)


__all__ = [
    "IntegrityError",
    "KeyMaterialError",
    "MalformedEnvelopeError",
    "PdfAccessError",
    "PdfIncorrectPasswordError",
    "PdfPasswordRequiredError",
    "StatementIngestError",
]
