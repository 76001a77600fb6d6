from fastapi import APIRouter, Depends

from ..config import settings
from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats", dependencies=[Depends(require_permission("view_reports"))])
def dashboard_stats(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS total_orders,
                       COALESCE(SUM(total), 0) AS total_sales,
                       COUNT(*) FILTER (WHERE created_at::date = current_date) AS today_orders,
                       COALESCE(SUM(total) FILTER (WHERE created_at::date = current_date), 0) AS today_sales,
                       COUNT(DISTINCT cashier_id) AS cashier_count
                FROM sales
                WHERE client_id = %s
                """,
                (client_id,),
            )
            totals = cur.fetchone()

            cur.execute(
                """
                SELECT COUNT(*) AS n
                FROM products
                WHERE client_id = %s
                  AND is_active = true
                  AND stock <= COALESCE(low_stock_at, %s)
                """,
                (client_id, settings.low_stock_threshold),
            )
            low_stock = cur.fetchone()["n"]

            cur.execute(
                """
                SELECT s.id, s.order_id, s.total, s.payment_method, s.created_at,
                       u.name AS cashier_name
                FROM sales s
                LEFT JOIN users u ON u.id = s.cashier_id
                WHERE s.client_id = %s
                ORDER BY s.created_at DESC
                LIMIT 10
                """,
                (client_id,),
            )
            recent = cur.fetchall()

    return {
        "total_sales": totals["total_sales"],
        "total_orders": totals["total_orders"],
        "today_orders": totals["today_orders"],
        "today_sales": totals["today_sales"],
        "low_stock_count": low_stock,
        "cashier_count": totals["cashier_count"],
        "recent_orders": recent,
    }
