from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from psycopg.errors import UniqueViolation  # type: ignore

from ..checkout import coupon_problem
from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, COUNTER_ROLES
from ..validation import DiscountType

router = APIRouter(prefix="/coupons", tags=["coupons"])


class CouponIn(BaseModel):
    code: str
    type: DiscountType
    value: Decimal = Field(ge=0)
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


@router.get("", dependencies=[Depends(require_permission("manage_coupons"))])
def list_coupons(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, code, type, value, is_active, starts_at, ends_at, created_at
                FROM coupons
                WHERE client_id = %s AND is_active = true
                ORDER BY created_at DESC
                """,
                (client_id,),
            )
            return {"coupons": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("manage_coupons"))])
def create_coupon(data: CouponIn, client_id: str = Depends(get_client_id)):
    code = (data.code or "").strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="code is required")
    if data.type == "PERCENT" and data.value > 100:
        raise HTTPException(status_code=400, detail="percent discount cannot exceed 100")
    if data.starts_at and data.ends_at and data.ends_at < data.starts_at:
        raise HTTPException(status_code=400, detail="ends_at must be after starts_at")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO coupons (id, client_id, code, type, value, is_active, starts_at, ends_at)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (client_id, code, data.type, data.value, bool(data.is_active), data.starts_at, data.ends_at),
                )
            except UniqueViolation:
                raise HTTPException(status_code=409, detail="coupon code already exists")
            return {"id": cur.fetchone()["id"]}


@router.get("/validate", dependencies=[Depends(require_permission("manage_coupons", roles=COUNTER_ROLES))])
def validate_coupon(code: str, client_id: str = Depends(get_client_id)):
    code = (code or "").strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="code is required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, client_id, code, type, value, is_active, starts_at, ends_at
                FROM coupons
                WHERE code = %s
                """,
                (code,),
            )
            rows = cur.fetchall()
    coupon = next((r for r in rows if str(r["client_id"]) == str(client_id)), None)
    if coupon is None:
        raise HTTPException(status_code=404, detail="invalid coupon code")
    problem = coupon_problem(coupon)
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    return {
        "coupon": {
            "id": coupon["id"],
            "code": coupon["code"],
            "type": coupon["type"],
            "value": coupon["value"],
        }
    }
