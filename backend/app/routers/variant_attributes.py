from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
import json

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, COUNTER_ROLES

router = APIRouter(prefix="/variant-attributes", tags=["variant-attributes"])


class VariantAttributeIn(BaseModel):
    name: str
    values: List[str] = Field(default_factory=list)


class VariantAttributeUpdate(BaseModel):
    name: Optional[str] = None
    values: Optional[List[str]] = None


def _clean_values(values) -> list:
    out = []
    for v in values or []:
        v = (v or "").strip()
        if v and v not in out:
            out.append(v)
    return out


def _name_taken(cur, client_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM variant_attributes
        WHERE client_id = %s AND lower(name) = lower(%s) AND (%s::uuid IS NULL OR id <> %s::uuid)
        """,
        (client_id, name, exclude_id, exclude_id),
    )
    return cur.fetchone() is not None


@router.get("", dependencies=[Depends(require_permission("manage_products", roles=COUNTER_ROLES))])
def list_variant_attributes(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, attribute_values AS "values", created_at, updated_at
                FROM variant_attributes
                WHERE client_id = %s
                ORDER BY name
                """,
                (client_id,),
            )
            return {"attributes": cur.fetchall()}


@router.post("", status_code=201, dependencies=[Depends(require_permission("manage_products"))])
def create_variant_attribute(data: VariantAttributeIn, client_id: str = Depends(get_client_id)):
    name = (data.name or "").strip()
    values = _clean_values(data.values)
    if not name or not values:
        raise HTTPException(status_code=400, detail="name and values are required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if _name_taken(cur, client_id, name):
                raise HTTPException(status_code=409, detail="attribute already exists")
            cur.execute(
                """
                INSERT INTO variant_attributes (id, client_id, name, attribute_values)
                VALUES (gen_random_uuid(), %s, %s, %s::jsonb)
                RETURNING id, name, attribute_values AS "values"
                """,
                (client_id, name, json.dumps(values)),
            )
            return {"attribute": cur.fetchone()}


@router.patch("/{attribute_id}", dependencies=[Depends(require_permission("manage_products"))])
def update_variant_attribute(attribute_id: str, data: VariantAttributeUpdate, client_id: str = Depends(get_client_id)):
    patch = data.model_dump(exclude_unset=True)
    fields = []
    params = []
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if patch.get("name") is not None:
                name = patch["name"].strip()
                if not name:
                    raise HTTPException(status_code=400, detail="name cannot be empty")
                if _name_taken(cur, client_id, name, attribute_id):
                    raise HTTPException(status_code=409, detail="attribute already exists")
                fields.append("name = %s")
                params.append(name)
            if patch.get("values") is not None:
                values = _clean_values(patch["values"])
                if not values:
                    raise HTTPException(status_code=400, detail="values cannot be empty")
                fields.append("attribute_values = %s::jsonb")
                params.append(json.dumps(values))
            if not fields:
                return {"ok": True}

            params.extend([client_id, attribute_id])
            cur.execute(
                f"""
                UPDATE variant_attributes
                SET {', '.join(fields)}, updated_at = now()
                WHERE client_id = %s AND id = %s
                RETURNING id, name, attribute_values AS "values"
                """,
                params,
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="attribute not found")
            return {"attribute": row}


@router.delete("/{attribute_id}", dependencies=[Depends(require_permission("manage_products"))])
def delete_variant_attribute(attribute_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM variant_attributes WHERE client_id = %s AND id = %s RETURNING id",
                (client_id, attribute_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="attribute not found")
            return {"ok": True}
