"""Runtime configuration loaded from the environment.

Values come from process environment variables, with a local ``.env`` loaded
first (without overriding variables that are already set). Key material is
validated while loading so a malformed key stops the process at startup
instead of failing on the first upload.

Environment
-----------
- ``DATABASE_URL``: SQLAlchemy URL of the ledger database.
- ``DATA_ENCRYPTION_KEK``: 64 hex chars; root key wrapping tenant DEKs.
- ``UPLOAD_PASSWORD_ENCRYPTION_KEY``: 64 hex chars; protects stored PDF passwords.
- ``STATEMENT_INGEST_CONFIDENCE_THRESHOLD``: 0..100, default 70.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from .crypto import KeyCodec, parse_hex_key

DEFAULT_CONFIDENCE_THRESHOLD: int = 70


class IngestSettings(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    database_url: str | None = None
    data_encryption_kek: str = Field(repr=False)
    upload_password_encryption_key: str = Field(repr=False)
    confidence_threshold: int = Field(default=DEFAULT_CONFIDENCE_THRESHOLD, ge=0, le=100)

    @field_validator("data_encryption_kek", "upload_password_encryption_key")
    @classmethod
    def _valid_key(cls, v: str, info: ValidationInfo) -> str:
        parse_hex_key(v, name=info.field_name.upper())
        return v.lower()

    def kek_codec(self) -> KeyCodec:
        return KeyCodec.from_hex(self.data_encryption_kek, name="DATA_ENCRYPTION_KEK")

    def password_codec(self) -> KeyCodec:
        return KeyCodec.from_hex(
            self.upload_password_encryption_key, name="UPLOAD_PASSWORD_ENCRYPTION_KEY"
        )


def load_settings(
    env: Mapping[str, str] | None = None,
    *,
    dotenv_path: str | os.PathLike[str] | None = None,
) -> IngestSettings:
    """Build :class:`IngestSettings` from ``env`` (default: ``os.environ``).

    Raises ``pydantic.ValidationError`` when a key is missing or malformed or
    the threshold is out of range.
    """

    if env is None:
        load_dotenv(dotenv_path=dotenv_path or Path.cwd() / ".env", override=False)
        env = os.environ

    threshold_raw = env.get("STATEMENT_INGEST_CONFIDENCE_THRESHOLD")
    return IngestSettings(
        database_url=env.get("DATABASE_URL") or None,
        data_encryption_kek=env.get("DATA_ENCRYPTION_KEK", ""),
        upload_password_encryption_key=env.get("UPLOAD_PASSWORD_ENCRYPTION_KEY", ""),
        confidence_threshold=(
            int(threshold_raw) if threshold_raw else DEFAULT_CONFIDENCE_THRESHOLD
        ),
    )


__all__ = ["DEFAULT_CONFIDENCE_THRESHOLD", "IngestSettings", "load_settings"]
