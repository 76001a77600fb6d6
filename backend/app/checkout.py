"""
Sale, refund and exchange transaction bodies.

Every function here takes an open cursor and runs inside the caller's
transaction (`with get_conn() as conn`), so raising HTTPException rolls back
every row written so far.
"""
import json
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from .logs import json_log
from .pricing import (
    ZERO,
    Coupon,
    DiscountRule,
    LineInput,
    TAX_EXCLUSIVE,
    TAX_INCLUSIVE,
    apportion_refund,
    calculate_totals,
    to_decimal,
)
from .stock import deduct_stock, restore_stock

_ID_ALPHABET = string.ascii_uppercase + string.digits


def _random_suffix(n: int = 5) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(n))


def generate_order_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d}-{_random_suffix()}"


def generate_refund_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"REF-{now:%Y%m%d}-{_random_suffix()}"


def variant_display_name(variant: Optional[dict]) -> Optional[str]:
    if not variant:
        return None
    if variant.get("name"):
        return variant["name"]
    attrs = variant.get("attributes") or {}
    if isinstance(attrs, str):
        attrs = json.loads(attrs)
    values = [str(v) for v in attrs.values() if v]
    return " ".join(values) or None


def coupon_problem(coupon: Optional[dict], now: Optional[datetime] = None) -> Optional[str]:
    """Why `coupon` can't be used right now, or None when it can."""
    if not coupon:
        return "invalid coupon code"
    now = now or datetime.now(timezone.utc)
    if not coupon.get("is_active"):
        return "this coupon code is not active"
    if coupon.get("starts_at") and coupon["starts_at"] > now:
        return "this coupon code is not yet valid"
    if coupon.get("ends_at") and coupon["ends_at"] < now:
        return "this coupon code has expired"
    return None


def discount_rule_from(discount_type: Optional[str], discount_value, scope: str) -> Optional[DiscountRule]:
    if not discount_type or discount_value is None:
        return None
    return DiscountRule(type=discount_type, value=to_decimal(discount_value), scope=scope)


def find_coupon(cur, client_id: str, code: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, code, type, value, is_active, starts_at, ends_at
        FROM coupons
        WHERE client_id = %s AND code = %s
        """,
        (client_id, (code or "").strip().upper()),
    )
    return cur.fetchone()


def load_tax_mode(cur, client_id: str) -> str:
    cur.execute("SELECT tax_mode FROM invoice_settings WHERE client_id = %s", (client_id,))
    row = cur.fetchone()
    mode = (row or {}).get("tax_mode") or TAX_EXCLUSIVE
    return TAX_INCLUSIVE if mode == TAX_INCLUSIVE else TAX_EXCLUSIVE


def load_default_tax(cur, client_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name, percent
        FROM tax_settings
        WHERE client_id = %s AND is_default = true
        LIMIT 1
        """,
        (client_id,),
    )
    return cur.fetchone()


def resolve_cart_tax(cur, client_id: str, tax_id: Optional[str], default_tax: Optional[dict]) -> Optional[dict]:
    # "none" explicitly opts out of cart tax; an unknown id falls back to the default slab.
    if tax_id == "none":
        return None
    if tax_id:
        cur.execute(
            "SELECT id, name, percent FROM tax_settings WHERE client_id = %s AND id = %s",
            (client_id, tax_id),
        )
        row = cur.fetchone()
        if row:
            return row
    return default_tax


def resolve_line_tax_percent(tax_mode: str, tax_id: Optional[str], default_tax: Optional[dict], product: dict) -> Optional[Decimal]:
    explicit = bool(tax_id) and tax_id != "none"
    if tax_mode == TAX_INCLUSIVE:
        # Inclusive prices always carry the default slab unless a slab was picked.
        if explicit or not default_tax:
            return None
        return to_decimal(default_tax["percent"])
    if explicit:
        return None
    if product.get("default_tax_id"):
        return to_decimal(product.get("default_tax_percent"))
    return ZERO


def load_products(cur, client_id: str, product_ids: list) -> dict:
    """
    Products keyed by id, with `variants` and `materials` attached.

    Unknown ids are a 400; products of another tenant are a 403.
    """
    ids = sorted({str(pid) for pid in product_ids if pid})
    if not ids:
        return {}
    cur.execute(
        """
        SELECT p.id, p.client_id, p.name, p.sku, p.type, p.price, p.default_tax_id,
               t.percent AS default_tax_percent
        FROM products p
        LEFT JOIN tax_settings t ON t.id = p.default_tax_id
        WHERE p.id = ANY(%s::uuid[])
        """,
        (ids,),
    )
    products = {}
    for row in cur.fetchall():
        if str(row["client_id"]) != str(client_id):
            raise HTTPException(status_code=403, detail="product belongs to another client")
        products[str(row["id"])] = {**row, "variants": [], "materials": []}
    missing = [pid for pid in ids if pid not in products]
    if missing:
        raise HTTPException(status_code=400, detail=f"product not found: {missing[0]}")

    cur.execute(
        """
        SELECT id, product_id, name, sku, price, attributes
        FROM product_variants
        WHERE client_id = %s AND product_id = ANY(%s::uuid[])
        """,
        (client_id, ids),
    )
    for row in cur.fetchall():
        products[str(row["product_id"])]["variants"].append(row)

    cur.execute(
        """
        SELECT pm.product_id, pm.raw_material_id, pm.quantity, rm.is_unlimited
        FROM product_materials pm
        JOIN raw_materials rm ON rm.id = pm.raw_material_id
        WHERE pm.client_id = %s AND pm.product_id = ANY(%s::uuid[])
        """,
        (client_id, ids),
    )
    for row in cur.fetchall():
        products[str(row["product_id"])]["materials"].append(row)
    return products


def build_line(item: dict, product: dict, tax_percent: Optional[Decimal] = None) -> LineInput:
    variant_id = item.get("variant_id")
    variant = None
    if variant_id:
        variant = next((v for v in product["variants"] if str(v["id"]) == str(variant_id)), None)
        if variant is None:
            raise HTTPException(status_code=400, detail=f"variant not found for product: {product['id']}")
    elif product.get("type") == "VARIANT":
        raise HTTPException(status_code=400, detail=f"variant is required for product: {product['id']}")
    return LineInput(
        product_id=str(product["id"]),
        product_name=product["name"],
        unit_price=to_decimal(variant["price"] if variant else product["price"]),
        quantity=int(item.get("quantity") or 1),
        discount_rule=discount_rule_from(item.get("discount_type"), item.get("discount_value"), "ITEM"),
        variant_id=str(variant["id"]) if variant else None,
        variant_name=variant_display_name(variant),
        tax_percent=tax_percent,
    )


def _insert_sale(
    cur,
    client_id: str,
    cashier_id,
    totals: dict,
    *,
    coupon_code: Optional[str] = None,
    payment_method: Optional[str] = "CASH",
    sale_type: str = "SALE",
    exchanged_from_sale_id=None,
) -> str:
    cur.execute(
        """
        INSERT INTO sales
          (id, client_id, cashier_id, order_id, type, exchanged_from_sale_id,
           subtotal, discount, coupon_code, coupon_value, tax_percent, tax, total, payment_method)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            client_id,
            cashier_id,
            generate_order_id(),
            sale_type,
            exchanged_from_sale_id,
            totals["subtotal"],
            totals["discount_total"],
            coupon_code,
            totals["coupon_value"] if coupon_code else None,
            totals["tax_percent"],
            totals["tax_amount"],
            totals["total"],
            payment_method,
        ),
    )
    return cur.fetchone()["id"]


def _write_sale_items(cur, client_id: str, sale_id, per_item: list, products: dict) -> None:
    for line_no, line in enumerate(per_item, start=1):
        cur.execute(
            """
            INSERT INTO sale_items
              (id, client_id, sale_id, line_no, product_id, variant_id, quantity, price, discount, tax, total)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                client_id,
                sale_id,
                line_no,
                line["product_id"],
                line["variant_id"],
                line["quantity"],
                line["price"],
                line["discount"],
                line["tax"],
                line["total"],
            ),
        )
        deduct_stock(cur, client_id, products[line["product_id"]], line["variant_id"], line["quantity"])


def fetch_sale(cur, client_id: str, sale_id) -> Optional[dict]:
    cur.execute(
        """
        SELECT s.id, s.order_id, s.type, s.exchanged_from_sale_id,
               s.subtotal, s.discount, s.coupon_code, s.coupon_value,
               s.tax_percent, s.tax, s.total, s.payment_method, s.created_at,
               s.cashier_id, u.name AS cashier_name, u.email AS cashier_email
        FROM sales s
        LEFT JOIN users u ON u.id = s.cashier_id
        WHERE s.client_id = %s AND s.id = %s
        """,
        (client_id, sale_id),
    )
    sale = cur.fetchone()
    if not sale:
        return None
    cur.execute(
        """
        SELECT si.id, si.line_no, si.product_id, p.name AS product_name, p.sku AS product_sku,
               si.variant_id, v.name AS variant_name, v.sku AS variant_sku, v.attributes AS variant_attributes,
               si.quantity, si.returned_quantity, si.price, si.discount, si.tax, si.total
        FROM sale_items si
        JOIN products p ON p.id = si.product_id
        LEFT JOIN product_variants v ON v.id = si.variant_id
        WHERE si.client_id = %s AND si.sale_id = %s
        ORDER BY si.line_no
        """,
        (client_id, sale_id),
    )
    return {**sale, "items": cur.fetchall()}


def create_sale(cur, client_id: str, cashier_id, payload: dict) -> dict:
    items = payload.get("items") or []
    if not items:
        raise HTTPException(status_code=400, detail="no items")

    products = load_products(cur, client_id, [i.get("product_id") for i in items])

    coupon = None
    code = (payload.get("coupon_code") or "").strip().upper()
    if code:
        row = find_coupon(cur, client_id, code)
        problem = coupon_problem(row)
        if problem:
            raise HTTPException(status_code=400, detail=problem)
        coupon = Coupon(code=row["code"], type=row["type"], value=to_decimal(row["value"]))

    tax_mode = load_tax_mode(cur, client_id)
    default_tax = load_default_tax(cur, client_id)
    tax_id = payload.get("tax_id")
    cart_tax = resolve_cart_tax(cur, client_id, tax_id, default_tax)

    lines = []
    for item in items:
        product = products[str(item["product_id"])]
        lines.append(build_line(item, product, resolve_line_tax_percent(tax_mode, tax_id, default_tax, product)))

    totals = calculate_totals(
        lines,
        cart_rule=discount_rule_from(payload.get("cart_discount_type"), payload.get("cart_discount_value"), "CART"),
        coupon=coupon,
        tax_percent=to_decimal(cart_tax["percent"]) if cart_tax else None,
        tax_mode=tax_mode,
    )

    sale_id = _insert_sale(
        cur,
        client_id,
        cashier_id,
        totals,
        coupon_code=coupon.code if coupon else None,
        payment_method=payload.get("payment_method") or "CASH",
    )
    _write_sale_items(cur, client_id, sale_id, totals["per_item"], products)

    if payload.get("held_bill_id"):
        # The parked cart is done; a bill deleted in the meantime is fine.
        cur.execute(
            "DELETE FROM held_bills WHERE client_id = %s AND id = %s",
            (client_id, payload["held_bill_id"]),
        )

    sale = fetch_sale(cur, client_id, sale_id)
    json_log(
        "info",
        "sale.completed",
        client_id=client_id,
        sale_id=sale_id,
        order_id=sale["order_id"] if sale else None,
        total=totals["total"],
        lines=len(lines),
    )
    return {"sale": sale, "totals": totals}


def _lock_sale(cur, client_id: str, sale_id) -> dict:
    cur.execute(
        """
        SELECT id, total, tax_percent, payment_method
        FROM sales
        WHERE client_id = %s AND id = %s
        FOR UPDATE
        """,
        (client_id, sale_id),
    )
    sale = cur.fetchone()
    if not sale:
        raise HTTPException(status_code=404, detail="sale not found")
    cur.execute(
        """
        SELECT id, product_id, variant_id, quantity, returned_quantity, total, discount
        FROM sale_items
        WHERE client_id = %s AND sale_id = %s
        ORDER BY line_no
        FOR UPDATE
        """,
        (client_id, sale_id),
    )
    return {**sale, "items": cur.fetchall()}


def _refunded_total(cur, client_id: str, sale_id) -> Decimal:
    cur.execute(
        "SELECT COALESCE(SUM(total), 0) AS total FROM refunds WHERE client_id = %s AND sale_id = %s",
        (client_id, sale_id),
    )
    return to_decimal((cur.fetchone() or {}).get("total"))


def _return_items(cur, client_id: str, returned: list) -> dict:
    products = load_products(cur, client_id, [l["item"]["product_id"] for l in returned])
    for line in returned:
        item = line["item"]
        cur.execute(
            """
            UPDATE sale_items
            SET returned_quantity = returned_quantity + %s
            WHERE client_id = %s AND id = %s
            """,
            (line["quantity"], client_id, item["id"]),
        )
        restore_stock(cur, client_id, products[str(item["product_id"])], item["variant_id"], line["quantity"])
    return products


def fetch_refund(cur, client_id: str, refund_pk) -> Optional[dict]:
    cur.execute(
        """
        SELECT r.id, r.refund_id, r.sale_id, s.order_id, r.total, r.reason, r.created_at,
               r.cashier_id, u.name AS cashier_name, u.email AS cashier_email
        FROM refunds r
        JOIN sales s ON s.id = r.sale_id
        LEFT JOIN users u ON u.id = r.cashier_id
        WHERE r.client_id = %s AND r.id = %s
        """,
        (client_id, refund_pk),
    )
    refund = cur.fetchone()
    if not refund:
        return None
    cur.execute(
        """
        SELECT ri.id, ri.sale_item_id, ri.product_id, p.name AS product_name, p.sku AS product_sku,
               ri.variant_id, v.name AS variant_name, ri.quantity, ri.refund_amount
        FROM refund_items ri
        JOIN products p ON p.id = ri.product_id
        LEFT JOIN product_variants v ON v.id = ri.variant_id
        WHERE ri.client_id = %s AND ri.refund_id = %s
        ORDER BY ri.created_at, ri.id
        """,
        (client_id, refund_pk),
    )
    return {**refund, "items": cur.fetchall()}


def create_refund(cur, client_id: str, cashier_id, payload: dict) -> dict:
    sale_id = payload.get("sale_id")
    requests = [(i.get("sale_item_id"), i.get("quantity")) for i in payload.get("items") or []]
    if not sale_id or not requests:
        raise HTTPException(status_code=400, detail="sale_id and items are required")

    sale = _lock_sale(cur, client_id, sale_id)
    lines, refund_total = apportion_refund(
        sale["total"],
        sale["items"],
        requests,
        already_refunded=_refunded_total(cur, client_id, sale_id),
    )
    if not lines:
        raise HTTPException(status_code=400, detail="nothing left to refund on the requested items")

    cur.execute(
        """
        INSERT INTO refunds (id, client_id, sale_id, cashier_id, refund_id, total, reason)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (client_id, sale_id, cashier_id, generate_refund_id(), refund_total, payload.get("reason") or None),
    )
    refund_pk = cur.fetchone()["id"]
    for line in lines:
        item = line["item"]
        cur.execute(
            """
            INSERT INTO refund_items
              (id, client_id, refund_id, sale_item_id, product_id, variant_id, quantity, refund_amount)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
            """,
            (client_id, refund_pk, item["id"], item["product_id"], item["variant_id"], line["quantity"], line["amount"]),
        )
    _return_items(cur, client_id, lines)

    json_log("info", "refund.created", client_id=client_id, sale_id=sale_id, refund_id=refund_pk, total=refund_total)
    return fetch_refund(cur, client_id, refund_pk)


def resolve_exchange_tax(cur, client_id: str, sale_tax_percent) -> Optional[Decimal]:
    """Replacements are taxed like the original sale: same slab if still active, else the default."""
    percent = to_decimal(sale_tax_percent)
    if percent <= 0:
        return None
    cur.execute(
        """
        SELECT percent
        FROM tax_settings
        WHERE client_id = %s AND percent = %s AND is_active = true
        ORDER BY is_default DESC, name
        LIMIT 1
        """,
        (client_id, percent),
    )
    row = cur.fetchone() or load_default_tax(cur, client_id)
    return to_decimal(row["percent"]) if row else None


def create_exchange(cur, client_id: str, cashier_id, sale_id, payload: dict) -> dict:
    replacement_items = payload.get("replacement_items") or []
    if not replacement_items:
        raise HTTPException(status_code=400, detail="replacement_items are required; use refunds for plain returns")

    sale = _lock_sale(cur, client_id, sale_id)
    return_requests = [
        (r.get("sale_item_id"), r.get("return_quantity"))
        for r in payload.get("return_items") or []
        if int(r.get("return_quantity") or 0) > 0
    ]
    returned, returned_value = apportion_refund(
        sale["total"],
        sale["items"],
        return_requests,
        already_refunded=_refunded_total(cur, client_id, sale_id),
    )
    if return_requests and not returned:
        raise HTTPException(status_code=400, detail="nothing left to return on the requested items")

    products = load_products(cur, client_id, [r.get("product_id") for r in replacement_items])
    lines = [build_line(r, products[str(r["product_id"])]) for r in replacement_items]
    totals = calculate_totals(
        lines,
        tax_percent=resolve_exchange_tax(cur, client_id, sale["tax_percent"]),
        tax_mode=load_tax_mode(cur, client_id),
    )

    if returned_value > 0:
        if totals["total"] < returned_value:
            raise HTTPException(
                status_code=400,
                detail=f"exchange not allowed: replacement total ({totals['total']}) must be at least the returned value ({returned_value})",
            )
    elif totals["total"] < to_decimal(sale["total"]):
        raise HTTPException(
            status_code=400,
            detail=f"exchange not allowed: replacement total ({totals['total']}) must be at least the original total ({sale['total']})",
        )

    if returned:
        _return_items(cur, client_id, returned)

    new_sale_id = _insert_sale(
        cur,
        client_id,
        cashier_id,
        totals,
        payment_method=payload.get("payment_method") or sale.get("payment_method") or "CASH",
        sale_type="EXCHANGE",
        exchanged_from_sale_id=sale["id"],
    )
    _write_sale_items(cur, client_id, new_sale_id, totals["per_item"], products)

    json_log(
        "info",
        "sale.exchanged",
        client_id=client_id,
        sale_id=sale["id"],
        new_sale_id=new_sale_id,
        returned_value=returned_value,
        replacement_total=totals["total"],
    )
    return {
        "original_sale": fetch_sale(cur, client_id, sale["id"]),
        "new_sale": fetch_sale(cur, client_id, new_sale_id),
        "returned_value": returned_value,
        "amount_due": totals["total"] - returned_value,
    }
