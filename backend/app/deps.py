from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_admin_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "amanatpos_session"

# Roles that work the billing counter (cashier UI, held bills, refunds, exchanges).
COUNTER_ROLES = ("SUPER_ADMIN", "ADMIN", "MANAGER", "CASHIER", "WAITER")
KITCHEN_ROLES = ("SUPER_ADMIN", "ADMIN", "KITCHEN")

# Permission flags a MANAGER can be granted. ADMIN and SUPER_ADMIN hold all of them.
PERMISSION_CODES = (
    "view_reports",
    "view_orders",
    "manage_products",
    "manage_categories",
    "manage_raw_materials",
    "manage_coupons",
    "manage_tax_settings",
    "manage_receipt_settings",
)


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       u.email, u.name, u.role, u.client_id, u.permissions, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "name": row["name"],
                "role": row["role"],
                "client_id": row["client_id"],
                "permissions": row["permissions"] or {},
                "token": token,
            }


def get_current_user(session=Depends(get_session)):
    return {
        "user_id": session["user_id"],
        "email": session["email"],
        "name": session["name"],
        "role": session["role"],
        "client_id": session["client_id"],
        "permissions": session["permissions"],
    }


def get_client_id(
    x_client_id: Optional[str] = Header(None, alias="X-Client-Id"),
    user=Depends(get_current_user),
) -> str:
    # Super admins have no tenant of their own; they act on one by naming it.
    if user["role"] == "SUPER_ADMIN":
        if x_client_id:
            return x_client_id
        raise HTTPException(status_code=403, detail="super admin must select a client (X-Client-Id)")
    if not user["client_id"]:
        raise HTTPException(status_code=403, detail="no client access")
    return str(user["client_id"])


def require_client_access(client_id: str = Depends(get_client_id)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT is_active FROM clients WHERE id = %s", (client_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="client not found")
            if not row["is_active"]:
                raise HTTPException(status_code=403, detail="client is inactive")
    return True


def has_permission(user: dict, code: str) -> bool:
    role = user.get("role")
    if role in {"SUPER_ADMIN", "ADMIN"}:
        return True
    if role == "MANAGER":
        return bool((user.get("permissions") or {}).get(code))
    return False


def require_permission(code: str, *, roles: tuple = ()):
    """
    Admit admins, managers granted `code`, and any role listed in `roles`.
    """
    def _dep(user=Depends(get_current_user)):
        if user["role"] in roles or has_permission(user, code):
            return True
        raise HTTPException(status_code=403, detail="permission denied")
    return _dep


def require_roles(*roles: str):
    def _dep(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep
