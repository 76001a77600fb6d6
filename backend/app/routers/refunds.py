from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date

from ..checkout import create_refund
from ..db import get_conn, set_client_context
from ..deps import get_client_id, get_current_user, require_permission, require_roles, COUNTER_ROLES

router = APIRouter(prefix="/refunds", tags=["refunds"])


class RefundItemIn(BaseModel):
    sale_item_id: str
    quantity: int = Field(ge=0)


class RefundIn(BaseModel):
    sale_id: str
    items: List[RefundItemIn] = Field(default_factory=list)
    reason: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("view_orders", roles=COUNTER_ROLES))])
def list_refunds(
    client_id: str = Depends(get_client_id),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    sale_id: Optional[str] = None,
):
    sql = """
        SELECT r.id, r.refund_id, r.sale_id, s.order_id, r.total, r.reason, r.created_at,
               r.cashier_id, u.name AS cashier_name, u.email AS cashier_email
        FROM refunds r
        JOIN sales s ON s.id = r.sale_id
        LEFT JOIN users u ON u.id = r.cashier_id
        WHERE r.client_id = %s
    """
    params: list = [client_id]
    if start_date:
        sql += " AND r.created_at::date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND r.created_at::date <= %s"
        params.append(end_date)
    if sale_id:
        sql += " AND r.sale_id = %s"
        params.append(sale_id)
    sql += " ORDER BY r.created_at DESC"

    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            refunds = cur.fetchall()
            if not refunds:
                return {"refunds": []}
            cur.execute(
                """
                SELECT ri.id, ri.refund_id, ri.sale_item_id, ri.product_id, p.name AS product_name,
                       ri.variant_id, v.name AS variant_name, ri.quantity, ri.refund_amount
                FROM refund_items ri
                JOIN products p ON p.id = ri.product_id
                LEFT JOIN product_variants v ON v.id = ri.variant_id
                WHERE ri.client_id = %s AND ri.refund_id = ANY(%s::uuid[])
                """,
                (client_id, [str(r["id"]) for r in refunds]),
            )
            items = cur.fetchall()
    return {
        "refunds": [
            {**r, "items": [i for i in items if str(i["refund_id"]) == str(r["id"])]}
            for r in refunds
        ]
    }


@router.post("", status_code=201, dependencies=[Depends(require_roles(*COUNTER_ROLES))])
def refund(data: RefundIn, client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            return {"refund": create_refund(cur, client_id, user["user_id"], data.model_dump())}
