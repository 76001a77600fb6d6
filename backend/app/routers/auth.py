from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from ..config import settings
from ..db import get_admin_conn
from ..deps import get_session, get_current_user, SESSION_COOKIE_NAME
from ..logs import json_log
from ..security import (
    hash_password,
    verify_password,
    needs_rehash,
    hash_session_token,
    new_session_token,
    password_problem,
)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


def _user_out(user: dict) -> dict:
    return {
        "user_id": str(user["id"]),
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "client_id": str(user["client_id"]) if user["client_id"] else None,
        "permissions": user.get("permissions") or {},
    }


@router.post("/login")
def login(data: LoginIn):
    # Login runs before any tenant is known, so it uses the admin connection.
    email = (data.email or "").strip().lower()
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT u.id, u.email, u.name, u.role, u.client_id, u.permissions,
                       u.hashed_password, u.is_active, c.is_active AS client_active
                FROM users u
                LEFT JOIN clients c ON c.id = u.client_id
                WHERE lower(u.email) = %s
                """,
                (email,),
            )
            user = cur.fetchone()
            if not user or not user["is_active"]:
                raise HTTPException(status_code=401, detail="invalid credentials")
            if not verify_password(data.password, user["hashed_password"]):
                raise HTTPException(status_code=401, detail="invalid credentials")
            if user["client_id"] and user["client_active"] is False:
                raise HTTPException(status_code=403, detail="client is inactive")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    "UPDATE users SET hashed_password = %s WHERE id = %s",
                    (hash_password(data.password), user["id"]),
                )

            # Only the hash is stored; the raw token goes back to the caller once.
            token = new_session_token()
            expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token, expires_at)
                VALUES (gen_random_uuid(), %s, %s, %s)
                """,
                (user["id"], hash_session_token(token), expires),
            )

    json_log("info", "auth.login", user_id=user["id"], client_id=user["client_id"])
    resp = JSONResponse({"token": token, "user": _user_out(user)})
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=not settings.is_dev,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE id = %s",
                (session["session_id"],),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


@router.get("/me")
def me(user=Depends(get_current_user)):
    return {
        "user_id": str(user["user_id"]),
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "client_id": str(user["client_id"]) if user["client_id"] else None,
        "permissions": user["permissions"],
    }


@router.post("/change-password")
def change_password(data: ChangePasswordIn, session=Depends(get_session)):
    problem = password_problem(data.new_password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT hashed_password FROM users WHERE id = %s", (session["user_id"],))
            row = cur.fetchone()
            if not row or not verify_password(data.current_password, row["hashed_password"]):
                raise HTTPException(status_code=400, detail="current password is incorrect")
            cur.execute(
                "UPDATE users SET hashed_password = %s, updated_at = now() WHERE id = %s",
                (hash_password(data.new_password), session["user_id"]),
            )
            # Other devices have to sign in again with the new password.
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE user_id = %s AND id <> %s",
                (session["user_id"], session["session_id"]),
            )
    json_log("info", "auth.password_changed", user_id=session["user_id"])
    return {"ok": True}
