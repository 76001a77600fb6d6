from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date
from decimal import Decimal

from ..checkout import create_exchange, create_sale, fetch_sale
from ..db import get_conn, set_client_context
from ..deps import get_client_id, get_current_user, require_permission, require_roles, COUNTER_ROLES
from ..receipts import render_receipt
from ..validation import DiscountType, PaymentMethod

router = APIRouter(prefix="/sales", tags=["sales"])

MAX_SALES_LIST = 1000
PAYMENT_METHODS = ("CASH", "CARD")


class SaleItemIn(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = Field(default=None, ge=0)


class SaleIn(BaseModel):
    items: List[SaleItemIn] = Field(default_factory=list)
    cart_discount_type: Optional[DiscountType] = None
    cart_discount_value: Optional[Decimal] = Field(default=None, ge=0)
    coupon_code: Optional[str] = None
    # A tax slab id, or "none" to sell without cart tax.
    tax_id: Optional[str] = None
    held_bill_id: Optional[str] = None
    payment_method: Optional[str] = "CASH"


class ReturnItemIn(BaseModel):
    sale_item_id: str
    return_quantity: int = Field(ge=0)


class ExchangeIn(BaseModel):
    return_items: List[ReturnItemIn] = Field(default_factory=list)
    replacement_items: List[SaleItemIn] = Field(default_factory=list)
    payment_method: Optional[PaymentMethod] = None


@router.get("", dependencies=[Depends(require_permission("view_orders", roles=COUNTER_ROLES))])
def list_sales(
    client_id: str = Depends(get_client_id),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    cashier_id: Optional[str] = None,
    order_id: Optional[str] = None,
):
    sql = """
        SELECT s.id, s.order_id, s.type, s.exchanged_from_sale_id,
               s.subtotal, s.discount, s.coupon_code, s.coupon_value,
               s.tax_percent, s.tax, s.total, s.payment_method, s.created_at,
               s.cashier_id, u.name AS cashier_name, u.email AS cashier_email
        FROM sales s
        LEFT JOIN users u ON u.id = s.cashier_id
        WHERE s.client_id = %s
    """
    params: list = [client_id]
    if start_date:
        sql += " AND s.created_at::date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND s.created_at::date <= %s"
        params.append(end_date)
    if cashier_id:
        sql += " AND s.cashier_id = %s"
        params.append(cashier_id)
    if order_id and order_id.strip():
        sql += " AND s.order_id ILIKE %s"
        params.append(f"%{order_id.strip()}%")
    sql += " ORDER BY s.created_at DESC LIMIT %s"
    params.append(MAX_SALES_LIST)

    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            sales = cur.fetchall()
            if not sales:
                return {"sales": []}
            ids = [str(s["id"]) for s in sales]
            cur.execute(
                """
                SELECT si.id, si.sale_id, si.line_no, si.product_id, p.name AS product_name,
                       si.variant_id, v.name AS variant_name, si.quantity, si.returned_quantity,
                       si.price, si.discount, si.tax, si.total
                FROM sale_items si
                JOIN products p ON p.id = si.product_id
                LEFT JOIN product_variants v ON v.id = si.variant_id
                WHERE si.client_id = %s AND si.sale_id = ANY(%s::uuid[])
                ORDER BY si.sale_id, si.line_no
                """,
                (client_id, ids),
            )
            items = cur.fetchall()
            cur.execute(
                """
                SELECT id, refund_id, sale_id, total, reason, created_at
                FROM refunds
                WHERE client_id = %s AND sale_id = ANY(%s::uuid[])
                ORDER BY created_at
                """,
                (client_id, ids),
            )
            refunds = cur.fetchall()

    out = []
    for s in sales:
        sid = str(s["id"])
        out.append(
            {
                **s,
                "items": [i for i in items if str(i["sale_id"]) == sid],
                "refunds": [r for r in refunds if str(r["sale_id"]) == sid],
            }
        )
    return {"sales": out}


@router.get("/{sale_id}", dependencies=[Depends(require_permission("view_orders", roles=COUNTER_ROLES))])
def get_sale(sale_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            sale = fetch_sale(cur, client_id, sale_id)
            if not sale:
                raise HTTPException(status_code=404, detail="sale not found")
            return {"sale": sale}


@router.post("", status_code=201, dependencies=[Depends(require_roles(*COUNTER_ROLES))])
def checkout(data: SaleIn, client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    if not data.items:
        raise HTTPException(status_code=400, detail="no items")
    payment_method = (data.payment_method or "CASH").strip().upper()
    if payment_method not in PAYMENT_METHODS:
        raise HTTPException(status_code=400, detail="payment_method must be CASH or CARD")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            return create_sale(cur, client_id, user["user_id"], {**data.model_dump(), "payment_method": payment_method})


@router.get("/{sale_id}/print", dependencies=[Depends(require_permission("view_orders", roles=COUNTER_ROLES))])
def print_sale(sale_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            sale = fetch_sale(cur, client_id, sale_id)
            if not sale:
                raise HTTPException(status_code=404, detail="sale not found")
            cur.execute(
                """
                SELECT header_text, footer_text, logo_url, show_cashier, show_discount, show_tax, custom_fields
                FROM invoice_settings
                WHERE client_id = %s
                """,
                (client_id,),
            )
            settings_row = cur.fetchone()
    return {"html": render_receipt(sale, settings_row)}


@router.post("/{sale_id}/exchange", status_code=201, dependencies=[Depends(require_roles(*COUNTER_ROLES))])
def exchange(sale_id: str, data: ExchangeIn, client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            return create_exchange(cur, client_id, user["user_id"], sale_id, data.model_dump())
