import json
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException, Response

from backend.app.routers import dashboard as dashboard_router
from backend.app.routers import held_bills as held_bills_router
from backend.app.routers import kitchen as kitchen_router
from backend.app.routers import sales as sales_router
from backend.app.routers import users as users_router

CLIENT = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
CASHIER = {"user_id": "u-cashier", "email": "c@example.com", "name": "C", "role": "CASHIER", "client_id": CLIENT, "permissions": {}}
ADMIN = {**CASHIER, "user_id": "u-admin", "role": "ADMIN"}


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


def test_checkout_rejects_unknown_payment_method(monkeypatch):
    def _no_db():
        raise AssertionError("database should not be touched")

    monkeypatch.setattr(sales_router, "get_conn", _no_db)
    data = sales_router.SaleIn(items=[{"product_id": "p1", "quantity": 1}], payment_method="cheque")

    with pytest.raises(HTTPException) as e:
        sales_router.checkout(data, client_id=CLIENT, user=CASHIER)
    assert e.value.status_code == 400


def test_checkout_rejects_empty_cart(monkeypatch):
    with pytest.raises(HTTPException) as e:
        sales_router.checkout(sales_router.SaleIn(items=[]), client_id=CLIENT, user=CASHIER)
    assert e.value.status_code == 400


def test_checkout_hands_normalized_payload_to_transaction(monkeypatch):
    _patch_db(monkeypatch, sales_router)
    seen = {}

    def _fake_create_sale(cur, client_id, cashier_id, payload):
        seen.update(client_id=client_id, cashier_id=cashier_id, payload=payload)
        return {"sale": {"id": "s1"}, "totals": {}}

    monkeypatch.setattr(sales_router, "create_sale", _fake_create_sale)
    data = sales_router.SaleIn(
        items=[{"product_id": "p1", "quantity": 2, "discount_type": "percent", "discount_value": "5"}],
        payment_method=" card ",
        tax_id="none",
    )

    out = sales_router.checkout(data, client_id=CLIENT, user=CASHIER)

    assert out["sale"]["id"] == "s1"
    assert seen["cashier_id"] == "u-cashier"
    assert seen["payload"]["payment_method"] == "CARD"
    assert seen["payload"]["tax_id"] == "none"
    assert seen["payload"]["items"][0]["discount_type"] == "PERCENT"
    assert seen["payload"]["items"][0]["discount_value"] == Decimal("5")


def test_list_sales_applies_filters_and_attaches_children(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        sales_router,
        {
            "from sales s left join users": [{"id": "s1", "order_id": "20260101-AAAAA"}, {"id": "s2", "order_id": "20260101-BBBBB"}],
            "from sale_items si": [{"id": "i1", "sale_id": "s1"}, {"id": "i2", "sale_id": "s2"}, {"id": "i3", "sale_id": "s2"}],
            "from refunds": [{"id": "r1", "sale_id": "s2"}],
        },
    )

    out = sales_router.list_sales(
        client_id=CLIENT,
        start_date=date(2026, 1, 1),
        end_date=date(2026, 1, 31),
        cashier_id=None,
        order_id=" aaa ",
    )

    assert [len(s["items"]) for s in out["sales"]] == [1, 2]
    assert [len(s["refunds"]) for s in out["sales"]] == [0, 1]
    text, params = cur.executed[0]
    assert "order by s.created_at desc limit %s" in text
    assert params == (CLIENT, date(2026, 1, 1), date(2026, 1, 31), "%aaa%", 1000)


def test_print_sale_returns_html(monkeypatch):
    _patch_db(
        monkeypatch,
        sales_router,
        {
            "from sales s left join users": [{"id": "s1", "order_id": "20260101-AAAAA", "subtotal": Decimal("10"), "discount": Decimal("0"), "tax": Decimal("0"), "total": Decimal("10"), "payment_method": "CASH", "cashier_name": "C"}],
            "from invoice_settings": [{"footer_text": "Come again", "show_cashier": False}],
        },
    )

    out = sales_router.print_sale("s1", client_id=CLIENT)

    assert "20260101-AAAAA" in out["html"]
    assert "Come again" in out["html"]
    assert "Cashier:" not in out["html"]


def test_get_sale_missing_is_404(monkeypatch):
    _patch_db(monkeypatch, sales_router)
    with pytest.raises(HTTPException) as e:
        sales_router.get_sale("nope", client_id=CLIENT)
    assert e.value.status_code == 404


def test_held_bill_requires_data(monkeypatch):
    _patch_db(monkeypatch, held_bills_router)
    with pytest.raises(HTTPException) as e:
        held_bills_router.save_held_bill(held_bills_router.HeldBillIn(), Response(), client_id=CLIENT, user=CASHIER)
    assert e.value.status_code == 400


def test_held_bill_update_is_scoped_to_cashier(monkeypatch):
    cur = _patch_db(monkeypatch, held_bills_router)

    with pytest.raises(HTTPException) as e:
        held_bills_router.save_held_bill(
            held_bills_router.HeldBillIn(id="hb1", data={"cart": []}), Response(), client_id=CLIENT, user=CASHIER
        )
    assert e.value.status_code == 404
    assert cur.ran("update held_bills")[0][1:] == (CLIENT, "u-cashier", "hb1")


def test_held_bill_create(monkeypatch):
    cur = _patch_db(monkeypatch, held_bills_router, {"insert into held_bills": [{"id": "hb1"}]})

    out = held_bills_router.save_held_bill(
        held_bills_router.HeldBillIn(data={"cart": [], "table": "7"}), Response(), client_id=CLIENT, user=CASHIER
    )

    assert out == {"held_bill": {"id": "hb1"}}
    assert json.loads(cur.ran("insert into held_bills")[0][2]) == {"cart": [], "table": "7"}


def test_held_bill_create_answers_201_and_update_200(monkeypatch):
    route = next(r for r in held_bills_router.router.routes if r.path == "/held-bills" and "POST" in r.methods)
    assert route.status_code == 201

    _patch_db(monkeypatch, held_bills_router, {"update held_bills": [{"id": "hb1"}], "insert into held_bills": [{"id": "hb2"}]})

    created = Response(status_code=201)
    held_bills_router.save_held_bill(held_bills_router.HeldBillIn(data={"cart": []}), created, client_id=CLIENT, user=CASHIER)
    assert created.status_code == 201

    updated = Response(status_code=201)
    out = held_bills_router.save_held_bill(
        held_bills_router.HeldBillIn(id="hb1", data={"cart": []}), updated, client_id=CLIENT, user=CASHIER
    )
    assert out == {"held_bill": {"id": "hb1"}}
    assert updated.status_code == 200


def test_kitchen_orders_hide_finished_bills(monkeypatch):
    _patch_db(
        monkeypatch,
        kitchen_router,
        {
            "from held_bills": [
                {"id": "hb1", "data": {"cart": [{"product": {"id": "p1"}, "status": "SERVED"}]}},
                {"id": "hb2", "data": {"cart": [{"product": {"id": "p1"}}]}},
            ]
        },
    )

    out = kitchen_router.list_kitchen_orders(client_id=CLIENT)

    assert [o["id"] for o in out["orders"]] == ["hb2"]


def test_kitchen_item_update_persists_new_cart(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        kitchen_router,
        {
            "for update": [{"id": "hb1", "data": {"cart": [{"product": {"id": "p1"}}, {"product": {"id": "p2"}, "status": "READY"}]}}],
            "update held_bills": [{"id": "hb1"}],
        },
    )

    kitchen_router.update_kitchen_order(
        kitchen_router.KitchenUpdateIn(id="hb1", product_id="p1", item_status="ready"), client_id=CLIENT
    )

    saved = json.loads(cur.ran("update held_bills")[0][0])
    assert [i.get("status") for i in saved["cart"]] == ["READY", "READY"]
    assert saved["orderStatus"] == "READY"


def test_kitchen_update_needs_something_to_change(monkeypatch):
    _patch_db(monkeypatch, kitchen_router)
    with pytest.raises(HTTPException) as e:
        kitchen_router.update_kitchen_order(kitchen_router.KitchenUpdateIn(id="hb1"), client_id=CLIENT)
    assert e.value.status_code == 400


def test_kitchen_update_unknown_bill_is_404(monkeypatch):
    _patch_db(monkeypatch, kitchen_router)
    with pytest.raises(HTTPException) as e:
        kitchen_router.update_kitchen_order(kitchen_router.KitchenUpdateIn(id="hb1", status="PREPARING"), client_id=CLIENT)
    assert e.value.status_code == 404


def test_admin_cannot_delete_self_or_change_own_role(monkeypatch):
    _patch_db(monkeypatch, users_router)

    with pytest.raises(HTTPException) as e:
        users_router.delete_user("u-admin", client_id=CLIENT, user=ADMIN)
    assert e.value.status_code == 400

    with pytest.raises(HTTPException) as e:
        users_router.update_user("u-admin", users_router.UserUpdate(role="CASHIER"), client_id=CLIENT, user=ADMIN)
    assert e.value.status_code == 400


def test_create_user_checks_password_and_scrubs_permissions(monkeypatch):
    cur = _patch_db(monkeypatch, users_router, {"insert into users": [{"id": "u2"}]})

    with pytest.raises(HTTPException) as e:
        users_router.create_user(
            users_router.UserIn(email="m@example.com", name="M", password="123", role="MANAGER"), client_id=CLIENT
        )
    assert e.value.status_code == 400

    users_router.create_user(
        users_router.UserIn(
            email=" M@Example.com ",
            name="M",
            password="123456",
            role="manager",
            permissions={"view_reports": True, "launch_rockets": True},
        ),
        client_id=CLIENT,
    )
    params = cur.ran("insert into users")[0]
    assert params[1] == "m@example.com"
    assert params[4] == "MANAGER"
    perms = json.loads(params[5])
    assert perms["view_reports"] is True
    assert perms["manage_products"] is False
    assert "launch_rockets" not in perms


def test_dashboard_stats_shape(monkeypatch):
    _patch_db(
        monkeypatch,
        dashboard_router,
        {
            "count(distinct cashier_id)": [
                {"total_orders": 5, "total_sales": Decimal("500"), "today_orders": 2, "today_sales": Decimal("120"), "cashier_count": 2}
            ],
            "from products": [{"n": 4}],
            "limit 10": [{"id": "s1"}],
        },
    )

    out = dashboard_router.dashboard_stats(client_id=CLIENT)

    assert out["total_sales"] == Decimal("500")
    assert out["today_orders"] == 2
    assert out["low_stock_count"] == 4
    assert out["cashier_count"] == 2
    assert out["recent_orders"] == [{"id": "s1"}]
