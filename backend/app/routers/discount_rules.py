from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from decimal import Decimal

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, COUNTER_ROLES
from ..validation import DiscountScope, DiscountType

router = APIRouter(prefix="/discount-rules", tags=["discount-rules"])


class DiscountRuleIn(BaseModel):
    name: str
    scope: DiscountScope = "ITEM"
    type: DiscountType
    value: Decimal = Field(ge=0)
    is_active: bool = True


@router.get("", dependencies=[Depends(require_permission("manage_coupons", roles=COUNTER_ROLES))])
def list_discount_rules(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, scope, type, value, is_active, created_at
                FROM discount_rules
                WHERE client_id = %s AND is_active = true
                ORDER BY created_at DESC
                """,
                (client_id,),
            )
            return {"rules": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("manage_coupons"))])
def create_discount_rule(data: DiscountRuleIn, client_id: str = Depends(get_client_id)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if data.type == "PERCENT" and data.value > 100:
        raise HTTPException(status_code=400, detail="percent discount cannot exceed 100")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO discount_rules (id, client_id, name, scope, type, value, is_active)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (client_id, name, data.scope, data.type, data.value, bool(data.is_active)),
            )
            return {"id": cur.fetchone()["id"]}
