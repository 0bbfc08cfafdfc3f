"""Transaction fingerprints for idempotent re-ingestion.

A fingerprint is the SHA-256 hex digest of::

    user_id | YYYY-MM-DD | lower(trim(merchant)) | amount | UPPER(trim(currency))

Two candidates with the same fingerprint are the same logical event for the
same owner, whichever upload produced them. The digest is a natural key for
deduplication, not a secret.
"""

from __future__ import annotations

import hashlib
from datetime import date, datetime

FINGERPRINT_SEPARATOR: str = "|"


def normalize_merchant(name: str) -> str:
    return name.lower().strip()


def _canonical_date(value: date | str) -> str:
    # datetime is a date subclass; a timestamp would smuggle a time component in.
    if isinstance(value, datetime):
        raise ValueError("fingerprint date must be a calendar date, not a datetime")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        s = value.strip()
        try:
            parsed = date.fromisoformat(s)
        except ValueError as e:
            raise ValueError(f"fingerprint date must be YYYY-MM-DD, got {value!r}") from e
        # fromisoformat also accepts compact forms like 20250115
        if parsed.isoformat() != s:
            raise ValueError(f"fingerprint date must be YYYY-MM-DD, got {value!r}")
        return s
    raise ValueError(f"Unsupported fingerprint date type: {type(value).__name__}")


def _canonical_amount(value: int) -> str:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("fingerprint amount must be an integer number of minor units")
    return str(value)


def compute_fingerprint(
    *,
    user_id: str,
    date: date | str,
    merchant_name: str,
    amount: int,
    currency: str,
) -> str:
    """Return the 64-char lowercase hex fingerprint of a transaction."""

    payload = FINGERPRINT_SEPARATOR.join(
        (
            user_id,
            _canonical_date(date),
            normalize_merchant(merchant_name),
            _canonical_amount(amount),
            currency.strip().upper(),
        )
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


__all__ = ["compute_fingerprint", "normalize_merchant"]
