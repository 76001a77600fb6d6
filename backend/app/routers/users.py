from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from psycopg.errors import UniqueViolation  # type: ignore
import json
from ..db import get_conn, set_client_context
from ..deps import get_client_id, get_current_user, require_roles, PERMISSION_CODES
from ..security import hash_password, password_problem
from ..validation import TenantRole

router = APIRouter(prefix="/users", tags=["users"])


class UserIn(BaseModel):
    email: str
    name: str
    password: str
    role: TenantRole = "CASHIER"
    permissions: Optional[dict] = None


class UserUpdate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None
    role: Optional[TenantRole] = None
    permissions: Optional[dict] = None
    is_active: Optional[bool] = None


def _clean_permissions(raw: Optional[dict]) -> dict:
    return {code: bool((raw or {}).get(code)) for code in PERMISSION_CODES}


@router.get("", dependencies=[Depends(require_roles("SUPER_ADMIN", "ADMIN"))])
def list_users(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, name, role, permissions, is_active, created_at
                FROM users
                WHERE client_id = %s
                ORDER BY created_at DESC
                """,
                (client_id,),
            )
            return {"users": cur.fetchall()}


@router.post("", dependencies=[Depends(require_roles("SUPER_ADMIN", "ADMIN"))])
def create_user(data: UserIn, client_id: str = Depends(get_client_id)):
    email = (data.email or "").strip().lower()
    name = (data.name or "").strip()
    if not email or not name:
        raise HTTPException(status_code=400, detail="email and name are required")
    problem = password_problem(data.password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    perms = _clean_permissions(data.permissions) if data.role == "MANAGER" else {}
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO users (id, client_id, email, name, hashed_password, role, permissions)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
                    RETURNING id
                    """,
                    (client_id, email, name, hash_password(data.password), data.role, json.dumps(perms)),
                )
            except UniqueViolation:
                raise HTTPException(status_code=409, detail="email already exists")
            return {"id": cur.fetchone()["id"]}


@router.patch("/{user_id}", dependencies=[Depends(require_roles("SUPER_ADMIN", "ADMIN"))])
def update_user(user_id: str, data: UserUpdate, client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "role" in patch and str(user["user_id"]) == user_id:
        raise HTTPException(status_code=400, detail="you cannot change your own role")

    fields = []
    params = []
    if "email" in patch:
        email = (patch["email"] or "").strip().lower()
        if not email:
            raise HTTPException(status_code=400, detail="email cannot be empty")
        fields.append("email = %s")
        params.append(email)
    if "name" in patch:
        name = (patch["name"] or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="name cannot be empty")
        fields.append("name = %s")
        params.append(name)
    if "password" in patch:
        problem = password_problem(patch["password"])
        if problem:
            raise HTTPException(status_code=400, detail=problem)
        fields.append("hashed_password = %s")
        params.append(hash_password(patch["password"]))
    if "role" in patch and patch["role"]:
        fields.append("role = %s")
        params.append(patch["role"])
    if "permissions" in patch:
        fields.append("permissions = %s::jsonb")
        params.append(json.dumps(_clean_permissions(patch["permissions"])))
    if "is_active" in patch:
        fields.append("is_active = %s")
        params.append(bool(patch["is_active"]))
    if not fields:
        return {"ok": True}

    params.extend([client_id, user_id])
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            try:
                cur.execute(
                    f"""
                    UPDATE users
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE client_id = %s AND id = %s
                    RETURNING id
                    """,
                    params,
                )
            except UniqueViolation:
                raise HTTPException(status_code=409, detail="email already exists")
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="user not found")
            return {"ok": True}


@router.delete("/{user_id}", dependencies=[Depends(require_roles("SUPER_ADMIN", "ADMIN"))])
def delete_user(user_id: str, client_id: str = Depends(get_client_id), user=Depends(get_current_user)):
    if str(user["user_id"]) == user_id:
        raise HTTPException(status_code=400, detail="you cannot delete your own account")
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            # Sessions go with the user (ON DELETE CASCADE).
            cur.execute(
                "DELETE FROM users WHERE client_id = %s AND id = %s RETURNING id",
                (client_id, user_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="user not found")
            return {"ok": True}
