"""
keystone/routes_roles.py

Role management endpoints (tenant-scoped, resource "roles").

Security guarantees:
- Every endpoint requires a role permission on "roles"
- Roles are created and read inside ctx.tenant_id only
- Permission payloads are validated before they are stored
- A role still assigned to users cannot be deleted
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Path

from keystone.auth_context import AuthContext, require_auth_context
from keystone.config import IS_DEV
from keystone.db import get_db
from keystone.dependencies import require_permission
from keystone.permissions import DEFAULT_ROLES, normalize_permissions, permissions_to_json
from keystone.schemas import RoleCreateRequest, RoleUpdateRequest
from keystone.tenant import assert_rows_scoped, execute_scoped, fetch_owned

router = APIRouter(
    prefix="/api/roles",
    tags=["roles"],
)


def role_to_dict(row: sqlite3.Row, user_count: int = 0) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "permissions": permissions_to_json(json.loads(row["permissions_json"] or "{}")),
        "is_system": bool(row["is_system"]),
        "user_count": user_count,
        "created_at": row["created_at"],
    }


def _validated_permissions(raw: Dict[str, List[str]]) -> Dict[str, List[str]]:
    try:
        return permissions_to_json(normalize_permissions(raw))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid permissions: {e}")


@router.get("", dependencies=[Depends(require_permission("roles", "view"))])
def list_roles(ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        rows = execute_scoped(
            conn,
            """
            SELECT r.*, (
                SELECT COUNT(*) FROM users u WHERE u.role_id = r.id AND u.tenant_id = r.tenant_id
            ) AS user_count
            FROM roles r
            WHERE r.tenant_id = ?
            ORDER BY r.is_system DESC, r.name
            """,
            (ctx.tenant_id,),
            ctx.tenant_id,
            label="list_roles",
        ).fetchall()
        assert_rows_scoped(rows, ctx.tenant_id, label="list_roles")
    finally:
        conn.close()

    return {"roles": [role_to_dict(r, r["user_count"]) for r in rows]}


@router.get("/templates", dependencies=[Depends(require_permission("roles", "view"))])
def list_role_templates():
    """Default role templates every tenant starts with."""
    return {
        "templates": [
            {"name": name, "permissions": permissions_to_json(perms)}
            for name, perms in DEFAULT_ROLES.items()
        ]
    }


@router.post("", status_code=201, dependencies=[Depends(require_permission("roles", "create"))])
def create_role(
    req: RoleCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
):
    permissions = _validated_permissions(req.permissions)

    conn = get_db()
    try:
        cur = conn.execute(
            "INSERT INTO roles (tenant_id, name, permissions_json, is_system) VALUES (?, ?, ?, 0)",
            (ctx.tenant_id, req.name, json.dumps(permissions)),
        )
        conn.commit()
        row = fetch_owned(conn, "roles", cur.lastrowid, ctx.tenant_id)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=400, detail="A role with this name already exists")
    finally:
        conn.close()

    if IS_DEV:
        print(f"[ROLES] Created role_id={row['id']} name={req.name!r} tenant_id={ctx.tenant_id}")
    return role_to_dict(row)


@router.patch("/{role_id}", dependencies=[Depends(require_permission("roles", "edit"))])
def update_role(
    req: RoleUpdateRequest,
    role_id: int = Path(..., description="Role ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    conn = get_db()
    try:
        fetch_owned(conn, "roles", role_id, ctx.tenant_id)

        fields = []
        params: List[Any] = []
        if req.name is not None:
            fields.append("name = ?")
            params.append(req.name)
        if req.permissions is not None:
            fields.append("permissions_json = ?")
            params.append(json.dumps(_validated_permissions(req.permissions)))

        if fields:
            params.extend([role_id, ctx.tenant_id])
            try:
                execute_scoped(
                    conn,
                    f"UPDATE roles SET {', '.join(fields)} WHERE id = ? AND tenant_id = ?",
                    tuple(params),
                    ctx.tenant_id,
                    label="update_role",
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise HTTPException(status_code=400, detail="A role with this name already exists")

        row = fetch_owned(conn, "roles", role_id, ctx.tenant_id)
    finally:
        conn.close()

    return role_to_dict(row)


@router.delete("/{role_id}", dependencies=[Depends(require_permission("roles", "delete"))])
def delete_role(
    role_id: int = Path(..., description="Role ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    conn = get_db()
    try:
        fetch_owned(conn, "roles", role_id, ctx.tenant_id)

        in_use = execute_scoped(
            conn,
            "SELECT COUNT(*) AS n FROM users WHERE role_id = ? AND tenant_id = ?",
            (role_id, ctx.tenant_id),
            ctx.tenant_id,
            label="delete_role",
        ).fetchone()["n"]
        if in_use:
            raise HTTPException(
                status_code=400,
                detail=f"Role is assigned to {in_use} user(s) - reassign them first",
            )

        execute_scoped(
            conn,
            "DELETE FROM roles WHERE id = ? AND tenant_id = ?",
            (role_id, ctx.tenant_id),
            ctx.tenant_id,
            label="delete_role",
        )
        conn.commit()
    finally:
        conn.close()

    print(f"[ROLES] Deleted role_id={role_id} tenant_id={ctx.tenant_id}")
    return {"success": True}
