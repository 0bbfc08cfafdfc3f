from __future__ import annotations

import threading

from db.client import session_scope
from db.models.ledger import UserTenant
from sqlalchemy import func, select

from statement_ingest.crypto import KeyCodec, parse_hex_key
from statement_ingest.models import TenantContext
from statement_ingest.tenant import TenantKeyManager


def _tenant_rows(db_url: str) -> list[UserTenant]:
    with session_scope(database_url=db_url) as session:
        return list(session.execute(select(UserTenant)).scalars())


def test_first_resolution_provisions_a_tenant(db_url: str, tenants: TenantKeyManager) -> None:
    with session_scope(database_url=db_url) as session:
        ctx = tenants.resolve_or_create(session, "user-1")

    assert isinstance(ctx, TenantContext)
    assert len(parse_hex_key(ctx.dek)) == 32
    assert "dek=<redacted>" in repr(ctx)

    (row,) = _tenant_rows(db_url)
    assert row.tenant_id == ctx.tenant_id
    assert "user-1" not in (row.user_id_hash, row.user_id_encrypted)
    assert ctx.dek not in row.dek_encrypted


def test_resolution_is_stable(db_url: str, tenants: TenantKeyManager) -> None:
    with session_scope(database_url=db_url) as session:
        first = tenants.resolve_or_create(session, "user-1")
    with session_scope(database_url=db_url) as session:
        again = tenants.resolve_or_create(session, "user-1")
        looked_up = tenants.resolve_by_user_id(session, "user-1")

    assert again == first
    assert looked_up == first


def test_distinct_users_get_distinct_tenants(db_url: str, tenants: TenantKeyManager) -> None:
    with session_scope(database_url=db_url) as session:
        a = tenants.resolve_or_create(session, "user-a")
        b = tenants.resolve_or_create(session, "user-b")

    assert a.tenant_id != b.tenant_id
    assert a.dek != b.dek


def test_lookup_without_tenant_returns_none(db_url: str, tenants: TenantKeyManager) -> None:
    with session_scope(database_url=db_url) as session:
        assert tenants.resolve_by_user_id(session, "nobody") is None
        assert tenants.reverse_lookup(session, "no-such-tenant") is None
    assert _tenant_rows(db_url) == []


def test_reverse_lookup_recovers_user_id(db_url: str, tenants: TenantKeyManager) -> None:
    with session_scope(database_url=db_url) as session:
        ctx = tenants.resolve_or_create(session, "user-42")
    with session_scope(database_url=db_url) as session:
        assert tenants.reverse_lookup(session, ctx.tenant_id) == "user-42"


def test_tenant_cipher_round_trips(db_url: str, tenants: TenantKeyManager) -> None:
    with session_scope(database_url=db_url) as session:
        ctx = tenants.resolve_or_create(session, "user-1")
    cipher = ctx.cipher()
    assert isinstance(cipher, KeyCodec)
    assert cipher.decrypt(cipher.encrypt("note")) == "note"


def test_concurrent_first_access_yields_one_tenant(
    db_url: str, tenants: TenantKeyManager
) -> None:
    workers = 4
    barrier = threading.Barrier(workers)
    results: list[TenantContext] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def resolve() -> None:
        try:
            barrier.wait(timeout=5)
            with session_scope(database_url=db_url) as session:
                ctx = tenants.resolve_or_create(session, "racer")
            with lock:
                results.append(ctx)
        except BaseException as e:  # surfaced below
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=resolve) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert len(results) == workers
    assert len({r.tenant_id for r in results}) == 1
    assert len({r.dek for r in results}) == 1
    with session_scope(database_url=db_url) as session:
        assert session.execute(select(func.count()).select_from(UserTenant)).scalar_one() == 1
