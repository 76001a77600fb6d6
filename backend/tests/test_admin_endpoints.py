import json
from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import auth as auth_router
from backend.app.routers import categories as categories_router
from backend.app.routers import clients as clients_router
from backend.app.routers import discount_rules as discount_rules_router
from backend.app.routers import products as products_router
from backend.app.routers import raw_materials as raw_materials_router
from backend.app.routers import refunds as refunds_router
from backend.app.routers import variant_attributes as variant_attributes_router
from backend.app.security import hash_password, hash_session_token

CLIENT = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
OTHER_CLIENT = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"


class _ScriptedCursor:
    def __init__(self, script=None):
        self.script = list((script or {}).items())
        self.executed = []
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, tuple(params or ())))
        self.rows = []
        for fragment, rows in self.script:
            if fragment in text:
                self.rows = list(rows)
                return

    def fetchall(self):
        return list(self.rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def ran(self, fragment):
        return [params for text, params in self.executed if fragment in text]


class _DummyConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur


def _patch_db(monkeypatch, module, script=None):
    cur = _ScriptedCursor(script)
    monkeypatch.setattr(module, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(module, "set_client_context", lambda *_args, **_kwargs: None)
    return cur


def _patch_admin_db(monkeypatch, module, script=None):
    cur = _ScriptedCursor(script)
    monkeypatch.setattr(module, "get_admin_conn", lambda: _DummyConn(cur))
    return cur


def _user(role, client_id=CLIENT):
    return {"user_id": "u1", "email": "u@example.com", "name": "U", "role": role, "client_id": client_id, "permissions": {}}


# raw materials


def test_list_raw_materials_searches_name_and_sku(monkeypatch):
    cur = _patch_db(monkeypatch, raw_materials_router, {"from raw_materials": [{"id": "rm1", "name": "Milk"}]})

    out = raw_materials_router.list_raw_materials(q=" mil ", client_id=CLIENT)

    assert out == {"raw_materials": [{"id": "rm1", "name": "Milk"}]}
    assert cur.executed[0][1] == (CLIENT, "mil", "%mil%", "%mil%")


def test_create_raw_material_cleans_optional_text(monkeypatch):
    cur = _patch_db(monkeypatch, raw_materials_router, {"insert into raw_materials": [{"id": "rm1"}]})

    out = raw_materials_router.create_raw_material(
        raw_materials_router.RawMaterialIn(name=" Milk ", sku="  ", unit=" ml ", stock=Decimal("2.5"), is_unlimited=True),
        client_id=CLIENT,
    )

    assert out == {"id": "rm1"}
    assert cur.ran("insert into raw_materials")[0] == (CLIENT, "Milk", None, "ml", Decimal("2.5"), True, None)


def test_create_raw_material_requires_name(monkeypatch):
    _patch_db(monkeypatch, raw_materials_router)
    with pytest.raises(HTTPException) as e:
        raw_materials_router.create_raw_material(raw_materials_router.RawMaterialIn(name="  "), client_id=CLIENT)
    assert e.value.status_code == 400


def test_update_raw_material_sets_only_sent_fields(monkeypatch):
    cur = _patch_db(monkeypatch, raw_materials_router, {"update raw_materials": [{"id": "rm1"}]})

    raw_materials_router.update_raw_material(
        "rm1", raw_materials_router.RawMaterialUpdate(name=" Oat milk ", stock=Decimal("4")), client_id=CLIENT
    )

    text, params = cur.executed[0]
    assert "set name = %s, stock = %s, updated_at = now()" in text
    assert params == ("Oat milk", Decimal("4"), CLIENT, "rm1")


def test_update_and_delete_raw_material_missing_is_404(monkeypatch):
    _patch_db(monkeypatch, raw_materials_router)

    with pytest.raises(HTTPException) as e:
        raw_materials_router.update_raw_material("rm-x", raw_materials_router.RawMaterialUpdate(unit="kg"), client_id=CLIENT)
    assert e.value.status_code == 404

    with pytest.raises(HTTPException) as e:
        raw_materials_router.delete_raw_material("rm-x", client_id=CLIENT)
    assert e.value.status_code == 404


# clients


def test_get_client_other_tenant_is_forbidden(monkeypatch):
    def _no_db():
        raise AssertionError("database should not be touched")

    monkeypatch.setattr(clients_router, "get_admin_conn", _no_db)

    with pytest.raises(HTTPException) as e:
        clients_router.get_client(OTHER_CLIENT, user=_user("ADMIN"))
    assert e.value.status_code == 403


def test_get_client_own_tenant_and_super_admin(monkeypatch):
    _patch_admin_db(monkeypatch, clients_router, {"from clients c": [{"id": CLIENT, "name": "Cafe"}]})

    assert clients_router.get_client(CLIENT, user=_user("CASHIER"))["client"]["name"] == "Cafe"
    assert clients_router.get_client(CLIENT, user=_user("SUPER_ADMIN", client_id=None))["client"]["id"] == CLIENT


def test_deactivating_client_stamps_inactive_date(monkeypatch):
    cur = _patch_admin_db(monkeypatch, clients_router, {"update clients": [{"id": CLIENT}]})

    clients_router.update_client(CLIENT, clients_router.ClientUpdate(is_active=False))

    text, params = cur.executed[0]
    assert "set is_active = %s, inactive_date = %s" in text
    assert params[0] is False
    assert isinstance(params[1], datetime)
    assert params[2] == CLIENT


def test_deactivating_client_keeps_explicit_inactive_date(monkeypatch):
    cur = _patch_admin_db(monkeypatch, clients_router, {"update clients": [{"id": CLIENT}]})
    when = datetime(2026, 5, 1, 12, 0)

    clients_router.update_client(CLIENT, clients_router.ClientUpdate(is_active=False, inactive_date=when))

    assert cur.executed[0][1] == (False, when, CLIENT)


def test_list_clients_includes_counts(monkeypatch):
    cur = _patch_admin_db(monkeypatch, clients_router, {"from clients c": [{"id": CLIENT, "user_count": 3}]})

    out = clients_router.list_clients()

    assert out["clients"][0]["user_count"] == 3
    assert "as sale_count" in cur.executed[0][0]


# refunds


def test_list_refunds_applies_filters_and_attaches_items(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        refunds_router,
        {
            "from refunds r": [{"id": "r1", "sale_id": "s1"}, {"id": "r2", "sale_id": "s1"}],
            "from refund_items ri": [{"id": "ri1", "refund_id": "r2"}],
        },
    )

    out = refunds_router.list_refunds(
        client_id=CLIENT, start_date=date(2026, 2, 1), end_date=date(2026, 2, 28), sale_id="s1"
    )

    assert [len(r["items"]) for r in out["refunds"]] == [0, 1]
    text, params = cur.executed[0]
    assert "r.created_at::date >= %s" in text and "r.created_at::date <= %s" in text
    assert params == (CLIENT, date(2026, 2, 1), date(2026, 2, 28), "s1")


def test_list_refunds_empty(monkeypatch):
    cur = _patch_db(monkeypatch, refunds_router)

    assert refunds_router.list_refunds(client_id=CLIENT, start_date=None, end_date=None, sale_id=None) == {"refunds": []}
    assert len(cur.executed) == 1


# discount rules


def test_list_discount_rules(monkeypatch):
    cur = _patch_db(monkeypatch, discount_rules_router, {"from discount_rules": [{"id": "d1"}]})

    assert discount_rules_router.list_discount_rules(client_id=CLIENT) == {"rules": [{"id": "d1"}]}
    assert "is_active = true" in cur.executed[0][0]


def test_create_discount_rule_normalizes_codes(monkeypatch):
    cur = _patch_db(monkeypatch, discount_rules_router, {"insert into discount_rules": [{"id": "d1"}]})

    discount_rules_router.create_discount_rule(
        discount_rules_router.DiscountRuleIn(name=" Happy hour ", scope="cart", type="percent", value=Decimal("15")),
        client_id=CLIENT,
    )

    assert cur.ran("insert into discount_rules")[0] == (CLIENT, "Happy hour", "CART", "PERCENT", Decimal("15"), True)


def test_create_discount_rule_rejects_percent_over_100(monkeypatch):
    _patch_db(monkeypatch, discount_rules_router)
    with pytest.raises(HTTPException) as e:
        discount_rules_router.create_discount_rule(
            discount_rules_router.DiscountRuleIn(name="Too much", type="PERCENT", value=Decimal("120")), client_id=CLIENT
        )
    assert e.value.status_code == 400


# variant attributes


def test_create_variant_attribute_rejects_duplicate_name(monkeypatch):
    cur = _patch_db(monkeypatch, variant_attributes_router, {"lower(name) = lower(%s)": [{"?column?": 1}]})

    with pytest.raises(HTTPException) as e:
        variant_attributes_router.create_variant_attribute(
            variant_attributes_router.VariantAttributeIn(name="size", values=["S"]), client_id=CLIENT
        )
    assert e.value.status_code == 409
    assert cur.ran("insert into variant_attributes") == []


def test_create_variant_attribute_needs_values(monkeypatch):
    _patch_db(monkeypatch, variant_attributes_router)
    with pytest.raises(HTTPException) as e:
        variant_attributes_router.create_variant_attribute(
            variant_attributes_router.VariantAttributeIn(name="Size", values=[" ", ""]), client_id=CLIENT
        )
    assert e.value.status_code == 400


def test_create_variant_attribute_stores_clean_values(monkeypatch):
    cur = _patch_db(monkeypatch, variant_attributes_router, {"insert into variant_attributes": [{"id": "va1", "name": "Size"}]})

    out = variant_attributes_router.create_variant_attribute(
        variant_attributes_router.VariantAttributeIn(name=" Size ", values=[" S", "M", "S", ""]), client_id=CLIENT
    )

    assert out["attribute"]["id"] == "va1"
    params = cur.ran("insert into variant_attributes")[0]
    assert params[1] == "Size"
    assert json.loads(params[2]) == ["S", "M"]


def test_rename_variant_attribute_checks_other_rows_only(monkeypatch):
    cur = _patch_db(monkeypatch, variant_attributes_router, {"update variant_attributes": [{"id": "va1", "name": "Colour"}]})

    out = variant_attributes_router.update_variant_attribute(
        "va1", variant_attributes_router.VariantAttributeUpdate(name="Colour"), client_id=CLIENT
    )

    assert out["attribute"]["name"] == "Colour"
    assert cur.ran("lower(name) = lower(%s)") == [(CLIENT, "Colour", "va1", "va1")]


def test_delete_variant_attribute_missing_is_404(monkeypatch):
    _patch_db(monkeypatch, variant_attributes_router)
    with pytest.raises(HTTPException) as e:
        variant_attributes_router.delete_variant_attribute("va-x", client_id=CLIENT)
    assert e.value.status_code == 404


# bulk deletes


def test_bulk_delete_categories(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        categories_router,
        {
            "select id, is_default from categories": [{"id": "c1", "is_default": False}, {"id": "c2", "is_default": False}],
            "from products where": [{"n": 0}],
            "delete from categories": [{"id": "c1"}, {"id": "c2"}],
        },
    )

    out = categories_router.bulk_delete_categories(
        categories_router.CategoryBulkDeleteIn(category_ids=["c1", "c2", "c1"]), client_id=CLIENT
    )

    assert out == {"deleted": 2}
    assert cur.ran("delete from categories") == [(CLIENT, ["c1", "c2"])]


@pytest.mark.parametrize(
    "script",
    [
        {"select id, is_default from categories": [{"id": "c1", "is_default": False}]},
        {"select id, is_default from categories": [{"id": "c1", "is_default": False}, {"id": "c2", "is_default": True}]},
        {
            "select id, is_default from categories": [{"id": "c1", "is_default": False}, {"id": "c2", "is_default": False}],
            "from products where": [{"n": 4}],
        },
    ],
)
def test_bulk_delete_categories_rejections(monkeypatch, script):
    cur = _patch_db(monkeypatch, categories_router, script)

    with pytest.raises(HTTPException) as e:
        categories_router.bulk_delete_categories(
            categories_router.CategoryBulkDeleteIn(category_ids=["c1", "c2"]), client_id=CLIENT
        )
    assert e.value.status_code == 400
    assert cur.ran("delete from categories") == []


def test_bulk_delete_products_skips_products_with_history(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        products_router,
        {
            "delete from products": [{"id": "p1"}],
            "from products p": [{"id": "p1", "has_history": False}, {"id": "p2", "has_history": True}],
        },
    )

    out = products_router.bulk_delete_products(
        products_router.ProductBulkDeleteIn(product_ids=["p1", "p2", "p-foreign"]), client_id=CLIENT
    )

    assert out == {"deleted": 1, "skipped": 2}
    assert cur.ran("delete from products") == [(CLIENT, ["p1"])]


def test_bulk_delete_products_nothing_deletable(monkeypatch):
    cur = _patch_db(monkeypatch, products_router, {"from products p": [{"id": "p2", "has_history": True}]})

    with pytest.raises(HTTPException) as e:
        products_router.bulk_delete_products(products_router.ProductBulkDeleteIn(product_ids=["p2"]), client_id=CLIENT)
    assert e.value.status_code == 400
    assert cur.ran("delete from products") == []

    with pytest.raises(HTTPException) as e:
        products_router.bulk_delete_products(products_router.ProductBulkDeleteIn(product_ids=[]), client_id=CLIENT)
    assert e.value.status_code == 400


# auth


def _login_row(**overrides):
    row = {
        "id": "u1",
        "email": "cashier@example.com",
        "name": "Cashier",
        "role": "CASHIER",
        "client_id": CLIENT,
        "permissions": None,
        "hashed_password": hash_password("secret1"),
        "is_active": True,
        "client_active": True,
    }
    row.update(overrides)
    return row


def test_login_rejects_inactive_user(monkeypatch):
    cur = _patch_admin_db(monkeypatch, auth_router, {"from users u": [_login_row(is_active=False)]})

    with pytest.raises(HTTPException) as e:
        auth_router.login(auth_router.LoginIn(email="cashier@example.com", password="secret1"))
    assert e.value.status_code == 401
    assert cur.ran("insert into auth_sessions") == []


def test_login_rejects_inactive_client(monkeypatch):
    cur = _patch_admin_db(monkeypatch, auth_router, {"from users u": [_login_row(client_active=False)]})

    with pytest.raises(HTTPException) as e:
        auth_router.login(auth_router.LoginIn(email="cashier@example.com", password="secret1"))
    assert e.value.status_code == 403
    assert cur.ran("insert into auth_sessions") == []


def test_login_stores_hashed_session_and_sets_cookie(monkeypatch):
    cur = _patch_admin_db(monkeypatch, auth_router, {"from users u": [_login_row()]})

    resp = auth_router.login(auth_router.LoginIn(email=" Cashier@Example.com ", password="secret1"))

    body = json.loads(resp.body)
    assert body["user"]["role"] == "CASHIER"
    assert cur.executed[0][1] == ("cashier@example.com",)
    stored = cur.ran("insert into auth_sessions")[0]
    assert stored[1] == hash_session_token(body["token"])
    assert "amanatpos_session=" in resp.headers["set-cookie"]


def test_change_password_revokes_other_sessions(monkeypatch):
    cur = _patch_admin_db(monkeypatch, auth_router, {"select hashed_password from users": [{"hashed_password": hash_password("oldpass1")}]})
    session = {"user_id": "u1", "session_id": "s1"}

    auth_router.change_password(auth_router.ChangePasswordIn(current_password="oldpass1", new_password="newpass1"), session=session)

    assert cur.ran("update auth_sessions set is_active = false") == [("u1", "s1")]
    assert len(cur.ran("update users set hashed_password")) == 1


def test_change_password_wrong_current_changes_nothing(monkeypatch):
    cur = _patch_admin_db(monkeypatch, auth_router, {"select hashed_password from users": [{"hashed_password": hash_password("oldpass1")}]})

    with pytest.raises(HTTPException) as e:
        auth_router.change_password(
            auth_router.ChangePasswordIn(current_password="guess", new_password="newpass1"),
            session={"user_id": "u1", "session_id": "s1"},
        )
    assert e.value.status_code == 400
    assert cur.ran("update auth_sessions") == []
