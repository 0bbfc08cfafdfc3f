from __future__ import annotations

import hashlib
from datetime import date, datetime

import pytest

from statement_ingest.fingerprint import compute_fingerprint


def _fp(**overrides) -> str:
    fields = {
        "user_id": "user-1",
        "date": "2025-01-15",
        "merchant_name": "Coffee Shop",
        "amount": -450,
        "currency": "EUR",
    }
    fields.update(overrides)
    return compute_fingerprint(**fields)


def test_matches_canonical_digest() -> None:
    expected = hashlib.sha256(b"user-1|2025-01-15|coffee shop|-450|EUR").hexdigest()
    assert _fp() == expected


def test_merchant_and_currency_are_normalized() -> None:
    base = _fp()
    assert _fp(merchant_name="  COFFEE shop ") == base
    assert _fp(currency=" eur") == base


def test_date_object_and_string_agree() -> None:
    assert _fp(date=date(2025, 1, 15)) == _fp(date="2025-01-15")


@pytest.mark.parametrize(
    "change",
    [
        {"user_id": "user-2"},
        {"date": "2025-01-16"},
        {"merchant_name": "Coffee Shop 2"},
        {"amount": 450},
        {"currency": "USD"},
    ],
)
def test_each_field_changes_the_fingerprint(change: dict) -> None:
    assert _fp(**change) != _fp()


def test_internal_whitespace_is_significant() -> None:
    assert _fp(merchant_name="Coffee  Shop") != _fp()


@pytest.mark.parametrize("bad", ["15/01/2025", "20250115", "2025-1-5", ""])
def test_rejects_non_iso_date_strings(bad: str) -> None:
    with pytest.raises(ValueError):
        _fp(date=bad)


def test_rejects_datetimes() -> None:
    with pytest.raises(ValueError):
        _fp(date=datetime(2025, 1, 15, 12, 0))


@pytest.mark.parametrize("bad", [4.5, True, "450"])
def test_rejects_non_integer_amounts(bad: object) -> None:
    with pytest.raises(TypeError):
        _fp(amount=bad)
