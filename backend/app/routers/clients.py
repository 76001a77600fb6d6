from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from ..db import get_admin_conn
from ..deps import get_current_user, require_roles

router = APIRouter(prefix="/clients", tags=["clients"])

_CLIENT_COLUMNS = """
    c.id, c.name, c.company_name, c.contact_number, c.tech_contact, c.email, c.address,
    c.is_active, c.active_date, c.inactive_date, c.created_at, c.updated_at
"""


class ClientIn(BaseModel):
    name: str
    company_name: Optional[str] = None
    contact_number: Optional[str] = None
    tech_contact: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    active_date: Optional[datetime] = None
    inactive_date: Optional[datetime] = None


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    company_name: Optional[str] = None
    contact_number: Optional[str] = None
    tech_contact: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None
    active_date: Optional[datetime] = None
    inactive_date: Optional[datetime] = None


@router.get("", dependencies=[Depends(require_roles("SUPER_ADMIN"))])
def list_clients():
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_CLIENT_COLUMNS},
                       (SELECT COUNT(*) FROM users u WHERE u.client_id = c.id) AS user_count,
                       (SELECT COUNT(*) FROM products p WHERE p.client_id = c.id) AS product_count,
                       (SELECT COUNT(*) FROM sales s WHERE s.client_id = c.id) AS sale_count
                FROM clients c
                ORDER BY c.created_at DESC
                """
            )
            return {"clients": cur.fetchall()}


@router.post("", dependencies=[Depends(require_roles("SUPER_ADMIN"))])
def create_client(data: ClientIn):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO clients
                  (id, name, company_name, contact_number, tech_contact, email, address,
                   is_active, active_date, inactive_date)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), %s)
                RETURNING id
                """,
                (
                    name,
                    data.company_name,
                    data.contact_number,
                    data.tech_contact,
                    data.email,
                    data.address,
                    bool(data.is_active),
                    data.active_date,
                    data.inactive_date,
                ),
            )
            return {"id": cur.fetchone()["id"]}


@router.get("/{client_id}")
def get_client(client_id: str, user=Depends(get_current_user)):
    # Tenant users may only read their own client.
    if user["role"] != "SUPER_ADMIN" and str(user["client_id"] or "") != client_id:
        raise HTTPException(status_code=403, detail="permission denied")
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_CLIENT_COLUMNS} FROM clients c WHERE c.id = %s", (client_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="client not found")
            return {"client": row}


@router.patch("/{client_id}", dependencies=[Depends(require_roles("SUPER_ADMIN"))])
def update_client(client_id: str, data: ClientUpdate):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name cannot be empty")
    if patch.get("is_active") is False and "inactive_date" not in patch:
        patch["inactive_date"] = datetime.now().astimezone()
    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values()) + [client_id]
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE clients
                SET {', '.join(fields)}, updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="client not found")
            return {"ok": True}
