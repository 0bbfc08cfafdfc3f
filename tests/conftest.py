"""Pytest configuration shared by the statement_ingest tests.

Puts the workspace packages on ``sys.path``, gives every test its own SQLite
database and key material, and generates small PDFs with pypdf so no binary
fixtures live in the repo.
"""

from __future__ import annotations

import io
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
# Local packages first so they resolve ahead of any installed copy.
sys.path[:0] = [
    p
    for p in [str(_ROOT / "packages"), str(_ROOT / "libs/db/src"), str(_ROOT)]
    if p not in sys.path
]

from db.client import dispose_engines  # noqa: E402
from pypdf import PdfWriter  # noqa: E402

from statement_ingest.crypto import KeyCodec  # noqa: E402
from statement_ingest.tenant import TenantKeyManager  # noqa: E402
from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402
from tests.helpers.keys import KEK_HEX, PASSWORD_KEY_HEX, PDF_PASSWORD  # noqa: E402


def _make_pdf(*, user_password: str | None = None, owner_password: str | None = None) -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    writer.add_blank_page(width=200, height=200)
    if user_password is not None or owner_password is not None:
        writer.encrypt(
            user_password=user_password or "",
            owner_password=owner_password,
            algorithm="RC4-128",
        )
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep a developer's shell or .env from leaking into tests."""

    for name in (
        "DATABASE_URL",
        "DATA_ENCRYPTION_KEK",
        "UPLOAD_PASSWORD_ENCRYPTION_KEY",
        "STATEMENT_INGEST_CONFIDENCE_THRESHOLD",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    dispose_engines()


@pytest.fixture
def kek() -> KeyCodec:
    return KeyCodec.from_hex(KEK_HEX)


@pytest.fixture
def password_codec() -> KeyCodec:
    return KeyCodec.from_hex(PASSWORD_KEY_HEX)


@pytest.fixture
def tenants(kek: KeyCodec) -> TenantKeyManager:
    return TenantKeyManager(kek)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "ledger.db")


@pytest.fixture
def configured_env(monkeypatch: pytest.MonkeyPatch, db_url: str, tmp_path: Path) -> str:
    """Environment as the CLI sees it in production; returns the database URL."""

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("DATA_ENCRYPTION_KEK", KEK_HEX)
    monkeypatch.setenv("UPLOAD_PASSWORD_ENCRYPTION_KEY", PASSWORD_KEY_HEX)
    return db_url


@pytest.fixture(scope="session")
def plain_pdf() -> bytes:
    return _make_pdf()


@pytest.fixture(scope="session")
def encrypted_pdf() -> bytes:
    return _make_pdf(user_password=PDF_PASSWORD, owner_password="owner-secret")


@pytest.fixture(scope="session")
def owner_only_pdf() -> bytes:
    """Permissions-only encryption: opens without a user password."""

    return _make_pdf(user_password="", owner_password="owner-secret")
