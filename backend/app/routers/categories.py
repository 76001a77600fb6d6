from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, require_roles, COUNTER_ROLES

router = APIRouter(prefix="/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: str
    is_default: bool = False


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    is_default: Optional[bool] = None


class CategoryBulkDeleteIn(BaseModel):
    category_ids: List[str] = Field(default_factory=list)


def _name_taken(cur, client_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM categories
        WHERE client_id = %s AND lower(name) = lower(%s) AND (%s::uuid IS NULL OR id <> %s::uuid)
        """,
        (client_id, name, exclude_id, exclude_id),
    )
    return cur.fetchone() is not None


def _clear_default(cur, client_id: str) -> None:
    cur.execute(
        "UPDATE categories SET is_default = false WHERE client_id = %s AND is_default = true",
        (client_id,),
    )


@router.get("", dependencies=[Depends(require_permission("manage_categories", roles=COUNTER_ROLES))])
def list_categories(q: str = "", client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, is_default, created_at, updated_at
                FROM categories
                WHERE client_id = %s AND (%s = '' OR name ILIKE %s)
                ORDER BY is_default DESC, name
                """,
                (client_id, q.strip(), f"%{q.strip()}%"),
            )
            return {"categories": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("manage_categories"))])
def create_category(data: CategoryIn, client_id: str = Depends(get_client_id)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if _name_taken(cur, client_id, name):
                raise HTTPException(status_code=409, detail="category already exists")
            if data.is_default:
                _clear_default(cur, client_id)
            cur.execute(
                """
                INSERT INTO categories (id, client_id, name, is_default)
                VALUES (gen_random_uuid(), %s, %s, %s)
                RETURNING id
                """,
                (client_id, name, bool(data.is_default)),
            )
            return {"id": cur.fetchone()["id"]}


@router.patch("/{category_id}", dependencies=[Depends(require_permission("manage_categories"))])
def update_category(category_id: str, data: CategoryUpdate, client_id: str = Depends(get_client_id)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            if "name" in patch:
                nm = (patch["name"] or "").strip()
                if not nm:
                    raise HTTPException(status_code=400, detail="name cannot be empty")
                if _name_taken(cur, client_id, nm, category_id):
                    raise HTTPException(status_code=409, detail="category already exists")
                fields.append("name = %s")
                params.append(nm)
            if "is_default" in patch:
                if patch["is_default"]:
                    _clear_default(cur, client_id)
                fields.append("is_default = %s")
                params.append(bool(patch["is_default"]))

            params.extend([client_id, category_id])
            cur.execute(
                f"""
                UPDATE categories
                SET {', '.join(fields)}, updated_at = now()
                WHERE client_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="category not found")
            return {"ok": True}


@router.delete("/{category_id}", dependencies=[Depends(require_permission("manage_categories"))])
def delete_category(category_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            # Products keep existing; they just lose their category (ON DELETE SET NULL).
            cur.execute(
                "DELETE FROM categories WHERE client_id = %s AND id = %s RETURNING id",
                (client_id, category_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="category not found")
            return {"ok": True}


@router.post("/bulk-delete", dependencies=[Depends(require_roles("SUPER_ADMIN", "ADMIN"))])
def bulk_delete_categories(data: CategoryBulkDeleteIn, client_id: str = Depends(get_client_id)):
    ids = list(dict.fromkeys(i for i in data.category_ids if i))
    if not ids:
        raise HTTPException(status_code=400, detail="category_ids are required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, is_default FROM categories WHERE client_id = %s AND id = ANY(%s::uuid[])",
                (client_id, ids),
            )
            rows = cur.fetchall()
            if len(rows) != len(ids):
                raise HTTPException(status_code=400, detail="some categories were not found")
            if any(r["is_default"] for r in rows):
                raise HTTPException(status_code=400, detail="default categories cannot be deleted")
            cur.execute(
                "SELECT COUNT(*) AS n FROM products WHERE client_id = %s AND category_id = ANY(%s::uuid[])",
                (client_id, ids),
            )
            in_use = int(cur.fetchone()["n"])
            if in_use:
                raise HTTPException(
                    status_code=400,
                    detail=f"categories are still assigned to {in_use} product(s); reassign them first",
                )
            cur.execute(
                "DELETE FROM categories WHERE client_id = %s AND id = ANY(%s::uuid[]) AND is_default = false RETURNING id",
                (client_id, ids),
            )
            return {"deleted": len(cur.fetchall())}
