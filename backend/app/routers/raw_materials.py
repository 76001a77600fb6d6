from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from decimal import Decimal
from typing import Optional

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission

router = APIRouter(prefix="/raw-materials", tags=["raw-materials"])


class RawMaterialIn(BaseModel):
    name: str
    sku: Optional[str] = None
    unit: str = "unit"
    stock: Decimal = Decimal("0")
    is_unlimited: bool = False
    low_stock_at: Optional[Decimal] = None


class RawMaterialUpdate(BaseModel):
    name: Optional[str] = None
    sku: Optional[str] = None
    unit: Optional[str] = None
    stock: Optional[Decimal] = None
    is_unlimited: Optional[bool] = None
    low_stock_at: Optional[Decimal] = None


@router.get("", dependencies=[Depends(require_permission("manage_raw_materials"))])
def list_raw_materials(q: str = "", client_id: str = Depends(get_client_id)):
    qq = (q or "").strip()
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, sku, unit, stock, is_unlimited, low_stock_at, updated_at
                FROM raw_materials
                WHERE client_id = %s
                  AND (%s = '' OR name ILIKE %s OR sku ILIKE %s)
                ORDER BY name
                """,
                (client_id, qq, f"%{qq}%", f"%{qq}%"),
            )
            return {"raw_materials": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("manage_raw_materials"))])
def create_raw_material(data: RawMaterialIn, client_id: str = Depends(get_client_id)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO raw_materials (id, client_id, name, sku, unit, stock, is_unlimited, low_stock_at)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    client_id,
                    name,
                    (data.sku or "").strip() or None,
                    (data.unit or "unit").strip() or "unit",
                    data.stock,
                    bool(data.is_unlimited),
                    data.low_stock_at,
                ),
            )
            return {"id": cur.fetchone()["id"]}


@router.patch("/{material_id}", dependencies=[Depends(require_permission("manage_raw_materials"))])
def update_raw_material(material_id: str, data: RawMaterialUpdate, client_id: str = Depends(get_client_id)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name cannot be empty")
    for k in ("name", "sku", "unit"):
        if isinstance(patch.get(k), str):
            patch[k] = patch[k].strip() or None
    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values()) + [client_id, material_id]
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE raw_materials
                SET {', '.join(fields)}, updated_at = now()
                WHERE client_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="raw material not found")
            return {"ok": True}


@router.delete("/{material_id}", dependencies=[Depends(require_permission("manage_raw_materials"))])
def delete_raw_material(material_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM raw_materials WHERE client_id = %s AND id = %s RETURNING id",
                (client_id, material_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="raw material not found")
            return {"ok": True}
