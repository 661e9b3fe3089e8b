"""
keystone/routes_offices.py

Office endpoints (tenant-scoped, resource "offices").

Every tier may run one office. A second office needs the multiOffice
feature (growth and above) and is also bounded by the "offices" capacity.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict

from fastapi import APIRouter, Depends, Path

from keystone.auth_context import AuthContext, require_auth_context
from keystone.db import get_db, immediate_transaction
from keystone.dependencies import check_feature, enforce_capacity, require_permission
from keystone.features import Dimension, FeatureKey
from keystone.schemas import OfficeCreateRequest
from keystone.tenant import assert_rows_scoped, count_usage, execute_scoped, fetch_owned

router = APIRouter(
    prefix="/api/offices",
    tags=["offices"],
)


def office_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "address": row["address"],
        "city": row["city"],
        "state": row["state"],
        "zip_code": row["zip_code"],
        "phone": row["phone"],
        "email": row["email"],
        "is_primary": bool(row["is_primary"]),
        "created_at": row["created_at"],
    }


@router.get("", dependencies=[Depends(require_permission("offices", "view"))])
def list_offices(ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        rows = execute_scoped(
            conn,
            "SELECT * FROM offices WHERE tenant_id = ? ORDER BY is_primary DESC, id",
            (ctx.tenant_id,),
            ctx.tenant_id,
            label="list_offices",
        ).fetchall()
        assert_rows_scoped(rows, ctx.tenant_id, label="list_offices")
    finally:
        conn.close()
    return {"offices": [office_to_dict(r) for r in rows]}


@router.post("", status_code=201, dependencies=[Depends(require_permission("offices", "create"))])
def create_office(
    req: OfficeCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
):
    """
    Raises:
        HTTPException(402): multiOffice not on plan (second office onwards),
            subscription not usable, or office limit reached
    """
    conn = get_db()
    try:
        with immediate_transaction(conn):
            if count_usage(conn, ctx.tenant_id, Dimension.OFFICES) >= 1:
                check_feature(ctx, FeatureKey.MULTI_OFFICE)
            current = enforce_capacity(conn, ctx, Dimension.OFFICES)

            # The first office is always primary
            is_primary = req.is_primary or current == 0
            if is_primary:
                conn.execute("UPDATE offices SET is_primary = 0 WHERE tenant_id = ?", (ctx.tenant_id,))
            cur = conn.execute(
                """
                INSERT INTO offices (tenant_id, name, address, city, state, zip_code, phone, email, is_primary)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ctx.tenant_id,
                    req.name,
                    req.address,
                    req.city,
                    req.state,
                    req.zip_code,
                    req.phone,
                    req.email,
                    int(is_primary),
                ),
            )
            office_id = cur.lastrowid
        row = fetch_owned(conn, "offices", office_id, ctx.tenant_id)
    finally:
        conn.close()

    print(f"[OFFICES] Created office_id={office_id} tenant_id={ctx.tenant_id} primary={is_primary}")
    return office_to_dict(row)


@router.delete("/{office_id}", dependencies=[Depends(require_permission("offices", "delete"))])
def delete_office(
    office_id: int = Path(..., description="Office ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    """Deleting the primary office promotes the remaining office with the lowest id."""
    promoted_id = None
    conn = get_db()
    try:
        with immediate_transaction(conn):
            office = fetch_owned(conn, "offices", office_id, ctx.tenant_id)
            # Properties keep existing with office_id set to NULL (ON DELETE SET NULL)
            execute_scoped(
                conn,
                "DELETE FROM offices WHERE id = ? AND tenant_id = ?",
                (office_id, ctx.tenant_id),
                ctx.tenant_id,
                label="delete_office",
            )
            if office["is_primary"]:
                successor = execute_scoped(
                    conn,
                    "SELECT id FROM offices WHERE tenant_id = ? ORDER BY id LIMIT 1",
                    (ctx.tenant_id,),
                    ctx.tenant_id,
                    label="promote_office",
                ).fetchone()
                if successor is not None:
                    promoted_id = successor["id"]
                    execute_scoped(
                        conn,
                        "UPDATE offices SET is_primary = 1 WHERE id = ? AND tenant_id = ?",
                        (promoted_id, ctx.tenant_id),
                        ctx.tenant_id,
                        label="promote_office",
                    )
    finally:
        conn.close()

    print(f"[OFFICES] Deleted office_id={office_id} tenant_id={ctx.tenant_id} promoted={promoted_id}")
    return {"success": True, "promoted_office_id": promoted_id}
