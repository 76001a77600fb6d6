from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, COUNTER_ROLES

router = APIRouter(prefix="/taxes", tags=["taxes"])


class TaxIn(BaseModel):
    name: str
    percent: Decimal = Field(ge=0, le=100)
    is_default: bool = False
    is_active: bool = True


class TaxUpdate(BaseModel):
    name: Optional[str] = None
    percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    set_default: Optional[bool] = None
    is_active: Optional[bool] = None


def _clear_default(cur, client_id: str) -> None:
    cur.execute(
        "UPDATE tax_settings SET is_default = false WHERE client_id = %s AND is_default = true",
        (client_id,),
    )


@router.get("", dependencies=[Depends(require_permission("manage_tax_settings", roles=COUNTER_ROLES))])
def list_taxes(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, percent, is_default, is_active, created_at, updated_at
                FROM tax_settings
                WHERE client_id = %s
                ORDER BY is_default DESC, name
                """,
                (client_id,),
            )
            return {"taxes": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("manage_tax_settings"))])
def create_tax(data: TaxIn, client_id: str = Depends(get_client_id)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if data.is_default:
                _clear_default(cur, client_id)
            cur.execute(
                """
                INSERT INTO tax_settings (id, client_id, name, percent, is_default, is_active)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (client_id, name, data.percent, bool(data.is_default), bool(data.is_active)),
            )
            return {"id": cur.fetchone()["id"]}


@router.patch("/{tax_id}", dependencies=[Depends(require_permission("manage_tax_settings"))])
def update_tax(tax_id: str, data: TaxUpdate, client_id: str = Depends(get_client_id)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    if "name" in patch:
        nm = (patch["name"] or "").strip()
        if not nm:
            raise HTTPException(status_code=400, detail="name cannot be empty")
        fields.append("name = %s")
        params.append(nm)
    if patch.get("percent") is not None:
        fields.append("percent = %s")
        params.append(patch["percent"])
    if "set_default" in patch:
        fields.append("is_default = %s")
        params.append(bool(patch["set_default"]))
    if "is_active" in patch:
        fields.append("is_active = %s")
        params.append(bool(patch["is_active"]))
    if not fields:
        return {"ok": True}

    params.extend([client_id, tax_id])
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if patch.get("set_default"):
                _clear_default(cur, client_id)
            cur.execute(
                f"""
                UPDATE tax_settings
                SET {', '.join(fields)}, updated_at = now()
                WHERE client_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="tax not found")
            return {"ok": True}


@router.delete("/{tax_id}", dependencies=[Depends(require_permission("manage_tax_settings"))])
def delete_tax(tax_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) AS n FROM products WHERE client_id = %s AND default_tax_id = %s",
                (client_id, tax_id),
            )
            n = int(cur.fetchone()["n"])
            if n:
                raise HTTPException(status_code=400, detail=f"tax is used by {n} product(s)")
            cur.execute(
                "DELETE FROM tax_settings WHERE client_id = %s AND id = %s RETURNING id",
                (client_id, tax_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="tax not found")
            return {"ok": True}
