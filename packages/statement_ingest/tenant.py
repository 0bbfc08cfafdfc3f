"""Per-user tenant resolution and data-encryption key management.

Each user owns exactly one tenant record in ``user_tenant``:

- ``user_id_hash``: HMAC-SHA256 of the user id under the KEK, used for
  equality lookups so the user id is never stored in cleartext;
- ``user_id_encrypted``: the user id under the KEK, for privileged reverse
  lookups;
- ``dek_encrypted``: the tenant's random 256-bit DEK under the KEK. Rotating
  the KEK only means re-wrapping these, not re-encrypting tenant data.

Records are created lazily on first access. Concurrent first accesses for the
same user race on the unique ``user_id_hash``; the loser's insert is ignored
and it re-reads the winner's row.

All functions take a caller-owned ``Session``; none of them commit.
"""

from __future__ import annotations

import uuid

from db.models.ledger import UserTenant
from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session

from .crypto import KeyCodec, generate_key_hex
from .logging_setup import get_logger
from .models import TenantContext

_logger = get_logger("statement_ingest.tenant")


class TenantKeyManager:
    """Resolve or provision tenants, wrapping their DEKs with the root KEK."""

    def __init__(self, kek: KeyCodec) -> None:
        self._kek = kek

    def user_id_hash(self, user_id: str) -> str:
        return self._kek.keyed_hash(user_id)

    # ---- Reads ---------------------------------------------------------------

    def _row_by_hash(self, session: Session, user_id_hash: str) -> UserTenant | None:
        return session.execute(
            select(UserTenant).where(UserTenant.user_id_hash == user_id_hash).limit(1)
        ).scalar_one_or_none()

    def _context(self, row: UserTenant) -> TenantContext:
        return TenantContext(tenant_id=row.tenant_id, dek=self._kek.decrypt(row.dek_encrypted))

    def resolve_by_user_id(self, session: Session, user_id: str) -> TenantContext | None:
        """Return the user's tenant context, or ``None`` when none exists yet."""

        row = self._row_by_hash(session, self.user_id_hash(user_id))
        return self._context(row) if row is not None else None

    def reverse_lookup(self, session: Session, tenant_id: str) -> str | None:
        """Return the user id owning ``tenant_id``.

        Internal use only (e.g. notifying the owner of an upload); never
        expose the result to end users.
        """

        encrypted = session.execute(
            select(UserTenant.user_id_encrypted).where(UserTenant.tenant_id == tenant_id).limit(1)
        ).scalar_one_or_none()
        if encrypted is None:
            return None
        return self._kek.decrypt(encrypted)

    # ---- Provisioning ----------------------------------------------------------

    def resolve_or_create(self, session: Session, user_id: str) -> TenantContext:
        """Return the user's tenant context, creating the tenant on first use."""

        user_id_hash = self.user_id_hash(user_id)
        row = self._row_by_hash(session, user_id_hash)
        if row is not None:
            return self._context(row)

        values = {
            "id": str(uuid.uuid4()),
            "tenant_id": str(uuid.uuid4()),
            "user_id_hash": user_id_hash,
            "user_id_encrypted": self._kek.encrypt(user_id),
            "dek_encrypted": self._kek.encrypt(generate_key_hex()),
        }
        self._insert_ignoring_conflict(session, values)

        row = self._row_by_hash(session, user_id_hash)
        if row is None:
            raise RuntimeError("Failed to create or retrieve tenant")
        if row.tenant_id == values["tenant_id"]:
            _logger.info("Provisioned tenant %s", row.tenant_id)
        else:
            _logger.info("Tenant %s was created concurrently; reusing it", row.tenant_id)
        return self._context(row)

    def _insert_ignoring_conflict(self, session: Session, values: dict[str, str]) -> None:
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(UserTenant).values(values)
            session.execute(stmt.on_conflict_do_nothing(index_elements=[UserTenant.user_id_hash]))
            return
        if dialect == "sqlite":
            stmt = sqlite_insert(UserTenant).values(values)
            session.execute(stmt.on_conflict_do_nothing(index_elements=[UserTenant.user_id_hash]))
            return
        # Other backends: a unique violation means another writer won.
        try:
            with session.begin_nested():
                session.execute(insert(UserTenant).values(values))
        except SAIntegrityError:
            _logger.debug("Tenant insert lost a uniqueness race; re-reading")


__all__ = ["TenantKeyManager"]
