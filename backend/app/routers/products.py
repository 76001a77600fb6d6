from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional, List
import json

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, require_roles, COUNTER_ROLES
from ..validation import ProductType

router = APIRouter(prefix="/products", tags=["products"])


class VariantIn(BaseModel):
    name: Optional[str] = None
    sku: Optional[str] = None
    price: Decimal = Field(ge=0)
    cost_price: Optional[Decimal] = None
    stock: int = 0
    low_stock_at: Optional[int] = None
    attributes: dict = Field(default_factory=dict)


class MaterialIn(BaseModel):
    raw_material_id: str
    quantity: Decimal = Field(gt=0)
    unit: Optional[str] = None


class ProductIn(BaseModel):
    name: str
    sku: Optional[str] = None
    type: ProductType = "SIMPLE"
    price: Decimal = Field(default=Decimal("0"), ge=0)
    cost_price: Optional[Decimal] = None
    stock: int = 0
    low_stock_at: Optional[int] = None
    category_id: Optional[str] = None
    default_tax_id: Optional[str] = None
    is_active: bool = True
    variants: List[VariantIn] = Field(default_factory=list)
    materials: List[MaterialIn] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    cost_price: Optional[Decimal] = None
    stock: Optional[int] = None
    low_stock_at: Optional[int] = None
    category_id: Optional[str] = None
    default_tax_id: Optional[str] = None
    is_active: Optional[bool] = None


class ProductBulkDeleteIn(BaseModel):
    product_ids: List[str] = Field(default_factory=list)


def _attach_children(cur, client_id: str, products: list) -> list:
    if not products:
        return products
    ids = [str(p["id"]) for p in products]
    by_id = {str(p["id"]): {**p, "variants": [], "materials": []} for p in products}
    cur.execute(
        """
        SELECT id, product_id, name, sku, price, cost_price, stock, low_stock_at, attributes
        FROM product_variants
        WHERE client_id = %s AND product_id = ANY(%s::uuid[])
        ORDER BY name NULLS LAST, sku
        """,
        (client_id, ids),
    )
    for v in cur.fetchall():
        by_id[str(v["product_id"])]["variants"].append(v)
    cur.execute(
        """
        SELECT pm.id, pm.product_id, pm.raw_material_id, rm.name AS raw_material_name,
               pm.quantity, COALESCE(pm.unit, rm.unit) AS unit, rm.stock, rm.is_unlimited
        FROM product_materials pm
        JOIN raw_materials rm ON rm.id = pm.raw_material_id
        WHERE pm.client_id = %s AND pm.product_id = ANY(%s::uuid[])
        ORDER BY rm.name
        """,
        (client_id, ids),
    )
    for m in cur.fetchall():
        by_id[str(m["product_id"])]["materials"].append(m)
    return [by_id[i] for i in ids]


def _check_refs(cur, client_id: str, data: dict) -> None:
    if data.get("category_id"):
        cur.execute("SELECT 1 FROM categories WHERE client_id=%s AND id=%s", (client_id, data["category_id"]))
        if not cur.fetchone():
            raise HTTPException(status_code=400, detail="invalid category_id")
    if data.get("default_tax_id"):
        cur.execute("SELECT 1 FROM tax_settings WHERE client_id=%s AND id=%s", (client_id, data["default_tax_id"]))
        if not cur.fetchone():
            raise HTTPException(status_code=400, detail="invalid default_tax_id")


@router.get("", dependencies=[Depends(require_permission("manage_products", roles=COUNTER_ROLES))])
def list_products(q: str = "", category_id: Optional[str] = None, client_id: str = Depends(get_client_id)):
    qq = (q or "").strip()
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.sku, p.type, p.price, p.cost_price, p.stock, p.low_stock_at,
                       p.category_id, c.name AS category_name, p.default_tax_id, p.is_active, p.updated_at
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.client_id = %s
                  AND (%s = '' OR p.name ILIKE %s OR p.sku ILIKE %s)
                  AND (%s::uuid IS NULL OR p.category_id = %s::uuid)
                ORDER BY p.name
                """,
                (client_id, qq, f"%{qq}%", f"%{qq}%", category_id, category_id),
            )
            return {"products": _attach_children(cur, client_id, cur.fetchall())}


@router.get("/{product_id}", dependencies=[Depends(require_permission("manage_products", roles=COUNTER_ROLES))])
def get_product(product_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, sku, type, price, cost_price, stock, low_stock_at,
                       category_id, default_tax_id, is_active, updated_at
                FROM products
                WHERE client_id = %s AND id = %s
                """,
                (client_id, product_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": _attach_children(cur, client_id, [row])[0]}


@router.post("", dependencies=[Depends(require_permission("manage_products"))])
def create_product(data: ProductIn, client_id: str = Depends(get_client_id)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if data.type == "VARIANT" and not data.variants:
        raise HTTPException(status_code=400, detail="variant products need at least one variant")
    if data.type == "COMPOSITE" and not data.materials:
        raise HTTPException(status_code=400, detail="composite products need a bill of materials")

    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            _check_refs(cur, client_id, data.model_dump())
            cur.execute(
                """
                INSERT INTO products
                  (id, client_id, name, sku, type, price, cost_price, stock, low_stock_at,
                   category_id, default_tax_id, is_active)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    client_id,
                    name,
                    (data.sku or "").strip() or None,
                    data.type,
                    data.price,
                    data.cost_price,
                    data.stock if data.type == "SIMPLE" else 0,
                    data.low_stock_at,
                    data.category_id,
                    data.default_tax_id,
                    bool(data.is_active),
                ),
            )
            pid = cur.fetchone()["id"]

            if data.type == "VARIANT":
                for v in data.variants:
                    cur.execute(
                        """
                        INSERT INTO product_variants
                          (id, client_id, product_id, name, sku, price, cost_price, stock, low_stock_at, attributes)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                        """,
                        (
                            client_id,
                            pid,
                            (v.name or "").strip() or None,
                            (v.sku or "").strip() or None,
                            v.price,
                            v.cost_price,
                            v.stock,
                            v.low_stock_at,
                            json.dumps(v.attributes or {}),
                        ),
                    )

            if data.type == "COMPOSITE":
                for m in data.materials:
                    cur.execute(
                        "SELECT unit FROM raw_materials WHERE client_id=%s AND id=%s",
                        (client_id, m.raw_material_id),
                    )
                    rm = cur.fetchone()
                    if not rm:
                        raise HTTPException(status_code=400, detail=f"invalid raw_material_id: {m.raw_material_id}")
                    cur.execute(
                        """
                        INSERT INTO product_materials (id, client_id, product_id, raw_material_id, quantity, unit)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                        """,
                        (client_id, pid, m.raw_material_id, m.quantity, m.unit or rm["unit"]),
                    )
            return {"id": pid}


@router.patch("/{product_id}", dependencies=[Depends(require_permission("manage_products"))])
def update_product(product_id: str, data: ProductUpdate, client_id: str = Depends(get_client_id)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name cannot be empty")
    for k in ("name", "sku"):
        if isinstance(patch.get(k), str):
            patch[k] = patch[k].strip() or None
    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values()) + [client_id, product_id]
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            _check_refs(cur, client_id, patch)
            cur.execute(
                f"""
                UPDATE products
                SET {', '.join(fields)}, updated_at = now()
                WHERE client_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="product not found")
            return {"ok": True}


@router.delete("/{product_id}", dependencies=[Depends(require_permission("manage_products"))])
def delete_product(product_id: str, client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) AS n FROM sale_items WHERE client_id = %s AND product_id = %s",
                (client_id, product_id),
            )
            if int(cur.fetchone()["n"]):
                raise HTTPException(status_code=400, detail="product has sales; deactivate it instead")
            # Variants and bill of materials rows cascade.
            cur.execute(
                "DELETE FROM products WHERE client_id = %s AND id = %s RETURNING id",
                (client_id, product_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="product not found")
            return {"ok": True}


@router.post("/bulk-delete", dependencies=[Depends(require_roles("SUPER_ADMIN", "ADMIN"))])
def bulk_delete_products(data: ProductBulkDeleteIn, client_id: str = Depends(get_client_id)):
    """
    Delete the selected products that have no sale or refund history.

    Products with history (or not in this tenant) are skipped and counted.
    """
    ids = list(dict.fromkeys(i for i in data.product_ids if i))
    if not ids:
        raise HTTPException(status_code=400, detail="product_ids are required")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id,
                       EXISTS (SELECT 1 FROM sale_items si WHERE si.product_id = p.id)
                         OR EXISTS (SELECT 1 FROM refund_items ri WHERE ri.product_id = p.id) AS has_history
                FROM products p
                WHERE p.client_id = %s AND p.id = ANY(%s::uuid[])
                """,
                (client_id, ids),
            )
            rows = cur.fetchall()
            if not rows:
                raise HTTPException(status_code=400, detail="no valid products found to delete")
            deletable = [str(r["id"]) for r in rows if not r["has_history"]]
            skipped = len(ids) - len(deletable)
            if not deletable:
                raise HTTPException(
                    status_code=400,
                    detail=f"all selected products have sales or refund history; {skipped} product(s) skipped",
                )
            # Variants and bill of materials rows cascade.
            cur.execute(
                "DELETE FROM products WHERE client_id = %s AND id = ANY(%s::uuid[]) RETURNING id",
                (client_id, deletable),
            )
            return {"deleted": len(cur.fetchall()), "skipped": skipped}
