"""
keystone/routes_properties.py

Property CRUD endpoints (tenant-scoped, resource "properties").

Security guarantees:
- All queries filtered by tenant_id from auth context
- Other tenants' property ids return 404, never 403
- Creating a property consumes "properties" capacity, checked and inserted
  in one BEGIN IMMEDIATE transaction
- office_id must reference an office of the same tenant
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from keystone.auth_context import AuthContext, require_auth_context
from keystone.config import IS_DEV
from keystone.db import get_db, immediate_transaction
from keystone.dependencies import enforce_capacity, require_permission
from keystone.features import Dimension
from keystone.schemas import PropertyCreateRequest, PropertyUpdateRequest
from keystone.tenant import assert_rows_scoped, execute_scoped, fetch_owned

router = APIRouter(
    prefix="/api/properties",
    tags=["properties"],
)

_PROPERTY_FIELDS = (
    "office_id",
    "name",
    "description",
    "property_type",
    "address",
    "city",
    "state",
    "zip_code",
    "country",
    "bedrooms",
    "bathrooms",
    "square_feet",
    "base_rent",
    "security_deposit",
    "status",
)


def property_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys() if key != "tenant_id"}


def _check_office(conn: sqlite3.Connection, office_id: Optional[int], tenant_id: int) -> None:
    if office_id is not None:
        fetch_owned(conn, "offices", office_id, tenant_id)


@router.get("", dependencies=[Depends(require_permission("properties", "view"))])
def list_properties(
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=500, description="Max results (default 100, max 500)"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    ctx: AuthContext = Depends(require_auth_context),
):
    sql = "SELECT * FROM properties WHERE tenant_id = ?"
    params: List[Any] = [ctx.tenant_id]
    if status:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    conn = get_db()
    try:
        rows = execute_scoped(conn, sql, tuple(params), ctx.tenant_id, label="list_properties").fetchall()
        assert_rows_scoped(rows, ctx.tenant_id, label="list_properties")
    finally:
        conn.close()

    if IS_DEV:
        print(f"[PROPERTIES] List: tenant_id={ctx.tenant_id}, status={status!r}, results={len(rows)}")
    return {"items": [property_to_dict(r) for r in rows], "total": len(rows)}


@router.get("/{property_id}", dependencies=[Depends(require_permission("properties", "view"))])
def get_property(
    property_id: int = Path(..., description="Property ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    conn = get_db()
    try:
        row = fetch_owned(conn, "properties", property_id, ctx.tenant_id)
    finally:
        conn.close()
    return property_to_dict(row)


@router.post("", status_code=201, dependencies=[Depends(require_permission("properties", "create"))])
def create_property(
    req: PropertyCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
):
    """
    Create a property in the caller's tenant.

    Raises:
        HTTPException(402): Subscription not usable or property limit reached
        HTTPException(404): office_id not found in this tenant
    """
    values = req.dict()
    columns = ", ".join(_PROPERTY_FIELDS)
    placeholders = ", ".join("?" for _ in _PROPERTY_FIELDS)

    conn = get_db()
    try:
        _check_office(conn, req.office_id, ctx.tenant_id)
        with immediate_transaction(conn):
            current = enforce_capacity(conn, ctx, Dimension.PROPERTIES)
            cur = conn.execute(
                f"INSERT INTO properties (tenant_id, {columns}) VALUES (?, {placeholders})",
                (ctx.tenant_id, *[values[f] for f in _PROPERTY_FIELDS]),
            )
            property_id = cur.lastrowid
        row = fetch_owned(conn, "properties", property_id, ctx.tenant_id)
    finally:
        conn.close()

    print(f"[PROPERTIES] Created property_id={property_id} tenant_id={ctx.tenant_id} "
          f"({current + 1} in use)")
    return property_to_dict(row)


@router.patch("/{property_id}", dependencies=[Depends(require_permission("properties", "edit"))])
def update_property(
    req: PropertyUpdateRequest,
    property_id: int = Path(..., description="Property ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    changes = req.dict(exclude_unset=True)

    conn = get_db()
    try:
        fetch_owned(conn, "properties", property_id, ctx.tenant_id)
        if "office_id" in changes:
            _check_office(conn, changes["office_id"], ctx.tenant_id)

        if changes:
            assignments = [f"{field} = ?" for field in changes]
            assignments.append("updated_at = ?")
            params = list(changes.values())
            params.extend([datetime.now(timezone.utc).isoformat(), property_id, ctx.tenant_id])
            try:
                execute_scoped(
                    conn,
                    f"UPDATE properties SET {', '.join(assignments)} WHERE id = ? AND tenant_id = ?",
                    tuple(params),
                    ctx.tenant_id,
                    label="update_property",
                )
                conn.commit()
            except sqlite3.IntegrityError:
                # Required columns cannot be nulled
                raise HTTPException(status_code=400, detail="Invalid property update")

        row = fetch_owned(conn, "properties", property_id, ctx.tenant_id)
    finally:
        conn.close()

    return property_to_dict(row)


@router.delete("/{property_id}", dependencies=[Depends(require_permission("properties", "delete"))])
def delete_property(
    property_id: int = Path(..., description="Property ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    conn = get_db()
    try:
        fetch_owned(conn, "properties", property_id, ctx.tenant_id)
        execute_scoped(
            conn,
            "DELETE FROM properties WHERE id = ? AND tenant_id = ?",
            (property_id, ctx.tenant_id),
            ctx.tenant_id,
            label="delete_property",
        )
        conn.commit()
    finally:
        conn.close()

    print(f"[PROPERTIES] Deleted property_id={property_id} tenant_id={ctx.tenant_id}")
    return {"success": True}
