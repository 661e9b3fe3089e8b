"""
keystone/routes_users.py

Staff user management endpoints (tenant-scoped, resource "users").

Security guarantees:
- Users are listed, invited and changed inside ctx.tenant_id only
- Assigned roles must belong to the same tenant (404 otherwise)
- Inviting a user consumes "users" capacity, checked inside the insert transaction
- "Delete" deactivates the user; nobody can deactivate themselves or change
  their own role
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path

from keystone.auth_context import AuthContext, hash_password, require_auth_context
from keystone.config import IS_DEV
from keystone.db import get_db, immediate_transaction
from keystone.dependencies import enforce_capacity, require_permission
from keystone.features import Dimension
from keystone.schemas import UserCreateRequest, UserRoleUpdateRequest
from keystone.tenant import assert_rows_scoped, execute_scoped, fetch_owned

router = APIRouter(
    prefix="/api/users",
    tags=["users"],
)

_USER_COLUMNS = """
    u.id, u.tenant_id, u.email, u.first_name, u.last_name, u.phone, u.user_type,
    u.role_id, r.name AS role_name, u.status, u.last_login_at, u.created_at
"""


def user_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    # Never expose password_hash
    return {
        "id": row["id"],
        "email": row["email"],
        "first_name": row["first_name"],
        "last_name": row["last_name"],
        "phone": row["phone"],
        "user_type": row["user_type"],
        "role_id": row["role_id"],
        "role_name": row["role_name"],
        "status": row["status"],
        "last_login_at": row["last_login_at"],
        "created_at": row["created_at"],
    }


def _fetch_user(conn: sqlite3.Connection, user_id: int, tenant_id: int) -> sqlite3.Row:
    fetch_owned(conn, "users", user_id, tenant_id)
    return execute_scoped(
        conn,
        f"""
        SELECT {_USER_COLUMNS}
        FROM users u
        LEFT JOIN roles r ON r.id = u.role_id AND r.tenant_id = u.tenant_id
        WHERE u.id = ? AND u.tenant_id = ?
        """,
        (user_id, tenant_id),
        tenant_id,
        label="fetch_user",
    ).fetchone()


def _check_role(conn: sqlite3.Connection, role_id: Optional[int], tenant_id: int) -> None:
    if role_id is not None:
        fetch_owned(conn, "roles", role_id, tenant_id)


@router.get("", dependencies=[Depends(require_permission("users", "view"))])
def list_users(ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        rows = execute_scoped(
            conn,
            f"""
            SELECT {_USER_COLUMNS}
            FROM users u
            LEFT JOIN roles r ON r.id = u.role_id AND r.tenant_id = u.tenant_id
            WHERE u.tenant_id = ?
            ORDER BY u.created_at, u.id
            """,
            (ctx.tenant_id,),
            ctx.tenant_id,
            label="list_users",
        ).fetchall()
        assert_rows_scoped(rows, ctx.tenant_id, label="list_users")
    finally:
        conn.close()

    return {"users": [user_to_dict(r) for r in rows]}


@router.post("", status_code=201, dependencies=[Depends(require_permission("users", "create"))])
def create_user(
    req: UserCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
):
    """
    Invite a staff user into the caller's tenant.

    Raises:
        HTTPException(400): Email already registered
        HTTPException(402): Subscription not usable or user limit reached
        HTTPException(404): role_id not found in this tenant
    """
    password_hash = hash_password(req.password)

    conn = get_db()
    try:
        _check_role(conn, req.role_id, ctx.tenant_id)
        try:
            with immediate_transaction(conn):
                enforce_capacity(conn, ctx, Dimension.USERS)
                cur = conn.execute(
                    """
                    INSERT INTO users (
                        tenant_id, email, password_hash, first_name, last_name, phone,
                        user_type, role_id, status
                    ) VALUES (?, ?, ?, ?, ?, ?, 'staff', ?, 'active')
                    """,
                    (
                        ctx.tenant_id,
                        req.email,
                        password_hash,
                        req.first_name,
                        req.last_name,
                        req.phone,
                        req.role_id,
                    ),
                )
                user_id = cur.lastrowid
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already registered")

        row = _fetch_user(conn, user_id, ctx.tenant_id)
    finally:
        conn.close()

    print(f"[USERS] Invited user_id={user_id} tenant_id={ctx.tenant_id} role_id={req.role_id}")
    return user_to_dict(row)


@router.patch("/{user_id}/role", dependencies=[Depends(require_permission("users", "edit"))])
def change_user_role(
    req: UserRoleUpdateRequest,
    user_id: int = Path(..., description="User ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    if user_id == ctx.user_id:
        raise HTTPException(status_code=400, detail="You cannot change your own role")

    conn = get_db()
    try:
        fetch_owned(conn, "users", user_id, ctx.tenant_id)
        _check_role(conn, req.role_id, ctx.tenant_id)
        execute_scoped(
            conn,
            "UPDATE users SET role_id = ? WHERE id = ? AND tenant_id = ?",
            (req.role_id, user_id, ctx.tenant_id),
            ctx.tenant_id,
            label="change_user_role",
        )
        conn.commit()
        row = _fetch_user(conn, user_id, ctx.tenant_id)
    finally:
        conn.close()

    if IS_DEV:
        print(f"[USERS] Role changed: user_id={user_id} role_id={req.role_id} by user_id={ctx.user_id}")
    return user_to_dict(row)


@router.delete("/{user_id}", dependencies=[Depends(require_permission("users", "delete"))])
def deactivate_user(
    user_id: int = Path(..., description="User ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    if user_id == ctx.user_id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")

    conn = get_db()
    try:
        fetch_owned(conn, "users", user_id, ctx.tenant_id)
        execute_scoped(
            conn,
            "UPDATE users SET status = 'inactive' WHERE id = ? AND tenant_id = ?",
            (user_id, ctx.tenant_id),
            ctx.tenant_id,
            label="deactivate_user",
        )
        conn.commit()
    finally:
        conn.close()

    print(f"[USERS] Deactivated user_id={user_id} tenant_id={ctx.tenant_id}")
    return {"success": True}
