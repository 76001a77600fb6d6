from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from typing import Optional
import json

from ..db import get_conn, set_client_context
from ..deps import get_client_id, get_current_user, require_roles, COUNTER_ROLES

router = APIRouter(prefix="/held-bills", tags=["held-bills"])


class HeldBillIn(BaseModel):
    id: Optional[str] = None
    data: Optional[dict] = None


@router.get("", dependencies=[Depends(require_roles(*COUNTER_ROLES))])
def list_held_bills(client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, cashier_id, data, created_at, updated_at
                FROM held_bills
                WHERE client_id = %s AND cashier_id = %s
                ORDER BY created_at DESC
                """,
                (client_id, user["user_id"]),
            )
            return {"held_bills": cur.fetchall()}


@router.post("", status_code=201, dependencies=[Depends(require_roles(*COUNTER_ROLES))])
def save_held_bill(
    data: HeldBillIn,
    response: Response,
    client_id: str = Depends(get_client_id),
    user=Depends(get_current_user),
):
    if data.data is None:
        raise HTTPException(status_code=400, detail="data is required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if data.id:
                cur.execute(
                    """
                    UPDATE held_bills
                    SET data = %s::jsonb, updated_at = now()
                    WHERE client_id = %s AND cashier_id = %s AND id = %s
                    RETURNING id, cashier_id, data, created_at, updated_at
                    """,
                    (json.dumps(data.data), client_id, user["user_id"], data.id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="held bill not found")
                response.status_code = 200
                return {"held_bill": row}
            cur.execute(
                """
                INSERT INTO held_bills (id, client_id, cashier_id, data)
                VALUES (gen_random_uuid(), %s, %s, %s::jsonb)
                RETURNING id, cashier_id, data, created_at, updated_at
                """,
                (client_id, user["user_id"], json.dumps(data.data)),
            )
            return {"held_bill": cur.fetchone()}


@router.delete("/{bill_id}", dependencies=[Depends(require_roles(*COUNTER_ROLES))])
def delete_held_bill(bill_id: str, client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM held_bills WHERE client_id = %s AND cashier_id = %s AND id = %s RETURNING id",
                (client_id, user["user_id"], bill_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="held bill not found")
            return {"ok": True}
