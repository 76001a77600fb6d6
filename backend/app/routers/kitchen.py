from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
import json

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_roles, KITCHEN_ROLES, COUNTER_ROLES
from ..kitchen import kitchen_view, update_item_status, update_order_status
from ..validation import ItemStatus, OrderStatus

router = APIRouter(prefix="/kitchen", tags=["kitchen"])

# Waiters and cashiers mark items served from the counter; the kitchen moves the rest.
_ROLES = tuple(dict.fromkeys(KITCHEN_ROLES + COUNTER_ROLES))


class KitchenUpdateIn(BaseModel):
    id: str
    status: Optional[OrderStatus] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    item_status: Optional[ItemStatus] = None


@router.get("/orders", dependencies=[Depends(require_roles(*_ROLES))])
def list_kitchen_orders(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT h.id, h.cashier_id, u.name AS cashier_name, h.data, h.created_at, h.updated_at
                FROM held_bills h
                LEFT JOIN users u ON u.id = h.cashier_id
                WHERE h.client_id = %s
                ORDER BY h.created_at ASC
                """,
                (client_id,),
            )
            return {"orders": kitchen_view(cur.fetchall())}


@router.patch("/orders", dependencies=[Depends(require_roles(*_ROLES))])
def update_kitchen_order(data: KitchenUpdateIn, client_id: str = Depends(get_client_id)):
    item_update = bool(data.product_id and data.item_status)
    if not item_update and not data.status:
        raise HTTPException(status_code=400, detail="status or product_id with item_status is required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, data FROM held_bills WHERE client_id = %s AND id = %s FOR UPDATE",
                (client_id, data.id),
            )
            bill = cur.fetchone()
            if not bill:
                raise HTTPException(status_code=404, detail="order not found")
            if item_update:
                new_data = update_item_status(bill["data"], data.product_id, data.variant_id, data.item_status)
            else:
                new_data = update_order_status(bill["data"], data.status)
            cur.execute(
                """
                UPDATE held_bills
                SET data = %s::jsonb, updated_at = now()
                WHERE client_id = %s AND id = %s
                RETURNING id, cashier_id, data, created_at, updated_at
                """,
                (json.dumps(new_data), client_id, data.id),
            )
            return {"order": cur.fetchone()}
