from decimal import Decimal

from .pricing import to_decimal


def _move(cur, client_id: str, product: dict, variant_id, quantity: int, sign: int) -> None:
    """
    Adjust stock for `quantity` units of `product`.

    SIMPLE products carry their own stock, VARIANT products keep it per variant
    and COMPOSITE products draw on their bill of materials. Each adjustment is a
    single relative UPDATE so concurrent checkouts can't lose writes.
    """
    kind = product.get("type")
    qty = int(quantity)
    if qty <= 0:
        return

    if kind == "SIMPLE":
        cur.execute(
            """
            UPDATE products
            SET stock = stock + %s, updated_at = now()
            WHERE client_id = %s AND id = %s
            """,
            (sign * qty, client_id, product["id"]),
        )
        return

    if kind == "VARIANT":
        if not variant_id:
            return
        cur.execute(
            """
            UPDATE product_variants
            SET stock = stock + %s, updated_at = now()
            WHERE client_id = %s AND id = %s AND product_id = %s
            """,
            (sign * qty, client_id, variant_id, product["id"]),
        )
        return

    if kind == "COMPOSITE":
        for material in product.get("materials") or []:
            if material.get("is_unlimited"):
                continue
            per_unit = to_decimal(material.get("quantity"))
            if per_unit <= 0:
                continue
            cur.execute(
                """
                UPDATE raw_materials
                SET stock = stock + %s, updated_at = now()
                WHERE client_id = %s AND id = %s
                """,
                (Decimal(sign) * per_unit * qty, client_id, material["raw_material_id"]),
            )


def deduct_stock(cur, client_id: str, product: dict, variant_id, quantity: int) -> None:
    _move(cur, client_id, product, variant_id, quantity, -1)


def restore_stock(cur, client_id: str, product: dict, variant_id, quantity: int) -> None:
    _move(cur, client_id, product, variant_id, quantity, 1)
