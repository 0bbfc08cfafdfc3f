from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from db.client import session_scope
from db.models.ledger import Category, LedgerTransaction, Upload
from pydantic import ValidationError
from sqlalchemy import select, update

from statement_ingest.crypto import KeyCodec
from statement_ingest.persistence import (
    PreparedTransaction,
    RuleDefinition,
    create_rule,
    ensure_categories,
    insert_new_transactions,
    load_active_rules,
    select_new_transactions,
    set_upload_status,
    store_upload_password,
)
from statement_ingest.rules import IgnoreAction, SetCategoryAction
from statement_ingest.tenant import TenantKeyManager
from tests.helpers.db import add_rule_row, create_upload, get_upload_row


@pytest.fixture
def tenant_id(db_url: str, tenants: TenantKeyManager) -> str:
    with session_scope(database_url=db_url) as session:
        return tenants.resolve_or_create(session, "user-1").tenant_id


def _prepared(fp: str, *, amount: int = -100, confidence: int = 90) -> PreparedTransaction:
    return PreparedTransaction(
        fingerprint=fp,
        date=date(2025, 1, 15),
        merchant_name=f"Merchant {fp}",
        amount=amount,
        currency="EUR",
        confidence=confidence,
    )


# ---- RuleDefinition ---------------------------------------------------------------


def _definition(**overrides) -> dict:
    payload = {
        "name": "Coffee",
        "priority": 10,
        "logicOperator": "or",
        "conditions": [{"field": "merchant_name", "operator": "contains", "value": "coffee"}],
        "actions": [{"type": "set_category", "value": "cat-coffee"}],
    }
    payload.update(overrides)
    return payload


def test_rule_definition_accepts_valid_payload() -> None:
    definition = RuleDefinition.model_validate(_definition(name="  Morning   coffee "))
    assert definition.name == "Morning coffee"
    assert definition.logic_operator == "or"
    assert definition.enabled is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": ""},
        {"name": "x" * 256},
        {"priority": -1},
        {"priority": 1001},
        {"logicOperator": "xor"},
        {"conditions": []},
        {"actions": []},
        {"conditions": [{"field": "merchant_name", "operator": "gt", "value": "a"}]},
        {"conditions": [{"field": "amount", "operator": "contains", "value": "1"}]},
        {"conditions": [{"field": "amount", "operator": "gt", "value": "ten"}]},
        {"conditions": [{"field": "currency", "operator": "eq", "value": "EUR"}]},
        {"actions": [{"type": "set_sign", "value": "flip"}]},
        {"actions": [{"type": "set_category"}]},
        {"actions": [{"type": "notify"}]},
    ],
)
def test_rule_definition_rejects_invalid_payloads(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        RuleDefinition.model_validate(_definition(**overrides))


# ---- Rules ------------------------------------------------------------------------


def test_create_rule_round_trips_through_load(db_url: str, tenant_id: str) -> None:
    definition = RuleDefinition.model_validate(
        _definition(actions=[{"type": "ignore"}, {"type": "set_category", "value": "cat-1"}])
    )
    with session_scope(database_url=db_url) as session:
        rule_id = create_rule(session, tenant_id, definition)
    with session_scope(database_url=db_url) as session:
        (rule,) = load_active_rules(session, tenant_id)

    assert rule.id == rule_id
    assert rule.name == "Coffee"
    assert rule.logic_operator == "or"
    assert rule.actions == (IgnoreAction(), SetCategoryAction(value="cat-1"))


def test_load_active_rules_order_and_filters(
    db_url: str, tenant_id: str, tenants: TenantKeyManager
) -> None:
    cond = [{"field": "amount", "operator": "lt", "value": 0}]
    act = [{"type": "ignore"}]
    t0 = datetime(2025, 1, 1, tzinfo=UTC)
    t1 = datetime(2025, 2, 1, tzinfo=UTC)

    add_rule_row(db_url, tenant_id, name="low-new", priority=1, conditions=cond, actions=act,
                 created_at=t1)
    add_rule_row(db_url, tenant_id, name="high", priority=5, conditions=cond, actions=act,
                 created_at=t1)
    add_rule_row(db_url, tenant_id, name="low-old", priority=1, conditions=cond, actions=act,
                 created_at=t0)
    add_rule_row(db_url, tenant_id, name="disabled", priority=9, conditions=cond, actions=act,
                 enabled=False)
    add_rule_row(db_url, tenant_id, name="deleted", priority=9, conditions=cond, actions=act,
                 deleted=True)
    with session_scope(database_url=db_url) as session:
        other = tenants.resolve_or_create(session, "user-2").tenant_id
    add_rule_row(db_url, other, name="foreign", priority=9, conditions=cond, actions=act)

    with session_scope(database_url=db_url) as session:
        names = [r.name for r in load_active_rules(session, tenant_id)]

    assert names == ["high", "low-old", "low-new"]


# ---- Categories -------------------------------------------------------------------


def test_ensure_categories_creates_only_missing(db_url: str, tenant_id: str) -> None:
    with session_scope(database_url=db_url) as session:
        first, created_first = ensure_categories(session, tenant_id, ["Groceries", "Dining"])
    with session_scope(database_url=db_url) as session:
        second, created_second = ensure_categories(
            session, tenant_id, ["Dining", "Travel", "Dining", ""]
        )
        count = len(list(session.execute(select(Category.id)).scalars()))

    assert created_first == 2
    assert created_second == 1
    assert second["Dining"] == first["Dining"]
    assert set(second) == {"Dining", "Travel"}
    assert count == 3


def test_ensure_categories_empty_input(db_url: str, tenant_id: str) -> None:
    with session_scope(database_url=db_url) as session:
        assert ensure_categories(session, tenant_id, []) == ({}, 0)


# ---- Transactions -----------------------------------------------------------------


def test_insert_new_transactions_deduplicates(db_url: str, tenant_id: str) -> None:
    with session_scope(database_url=db_url) as session:
        inserted, duplicates = insert_new_transactions(
            session, tenant_id, None, [_prepared("a"), _prepared("b"), _prepared("a", amount=1)]
        )
    assert (inserted, duplicates) == (2, 1)

    with session_scope(database_url=db_url) as session:
        inserted, duplicates = insert_new_transactions(
            session, tenant_id, None, [_prepared("b"), _prepared("c")]
        )
        rows = list(session.execute(select(LedgerTransaction)).scalars())

    assert (inserted, duplicates) == (1, 1)
    assert sorted(r.fingerprint for r in rows) == ["a", "b", "c"]
    # First occurrence in a batch wins.
    assert next(r for r in rows if r.fingerprint == "a").amount == -100


def test_fingerprints_are_scoped_per_tenant(
    db_url: str, tenant_id: str, tenants: TenantKeyManager
) -> None:
    with session_scope(database_url=db_url) as session:
        other = tenants.resolve_or_create(session, "user-2").tenant_id
        insert_new_transactions(session, tenant_id, None, [_prepared("a")])
        inserted, _ = insert_new_transactions(session, other, None, [_prepared("a")])
    assert inserted == 1


def test_deleted_rows_do_not_block_reimport(db_url: str, tenant_id: str) -> None:
    with session_scope(database_url=db_url) as session:
        insert_new_transactions(session, tenant_id, None, [_prepared("a")])
        session.execute(update(LedgerTransaction).values(deleted=True))
    with session_scope(database_url=db_url) as session:
        assert select_new_transactions(session, tenant_id, [_prepared("a")]) != []
        inserted, _ = insert_new_transactions(session, tenant_id, None, [_prepared("a")])
    assert inserted == 1


# ---- Uploads ----------------------------------------------------------------------


def test_store_upload_password_requeues(
    db_url: str, tenant_id: str, password_codec: KeyCodec
) -> None:
    upload_id = create_upload(db_url, tenant_id, status="waiting_for_password")
    with session_scope(database_url=db_url) as session:
        store_upload_password(session, tenant_id, upload_id, "hunter2", password_codec)

    row = get_upload_row(db_url, upload_id)
    assert row.status == "queued"
    assert row.encrypted_password is not None
    assert "hunter2" not in row.encrypted_password
    assert password_codec.decrypt(row.encrypted_password) == "hunter2"


def test_store_upload_password_unknown_upload(
    db_url: str, tenant_id: str, password_codec: KeyCodec
) -> None:
    with session_scope(database_url=db_url) as session:
        with pytest.raises(LookupError):
            store_upload_password(session, tenant_id, "missing", "pw", password_codec)


def test_failed_status_never_overwrites_cancelled(db_url: str, tenant_id: str) -> None:
    upload_id = create_upload(db_url, tenant_id, status="cancelled")
    with session_scope(database_url=db_url) as session:
        set_upload_status(session, upload_id, "failed", failed_reason="boom")
    assert get_upload_row(db_url, upload_id).status == "cancelled"


def test_status_update_can_clear_password(
    db_url: str, tenant_id: str, password_codec: KeyCodec
) -> None:
    upload_id = create_upload(
        db_url, tenant_id, encrypted_password=password_codec.encrypt("pw")
    )
    with session_scope(database_url=db_url) as session:
        set_upload_status(session, upload_id, "completed", clear_password=True, page_count=3)
        row = session.execute(select(Upload).where(Upload.id == upload_id)).scalar_one()
        assert (row.status, row.encrypted_password, row.page_count) == ("completed", None, 3)
