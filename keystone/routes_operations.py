"""
keystone/routes_operations.py

Day-to-day operations endpoints, all tenant-scoped:
- /api/tenants      residents renting units          (resource "tenants")
- /api/leases       leases between property/resident (resource "leases")
- /api/maintenance  maintenance requests             (resource "maintenance", feature maintenanceTracking)
- /api/payments     payments received                (resource "payments")
- /api/reports      portfolio summary                (resource "reports")

Referenced properties, residents and leases must belong to the caller's
tenant; foreign ids return 404.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query

from keystone.auth_context import AuthContext, require_auth_context
from keystone.config import IS_DEV
from keystone.db import get_db
from keystone.dependencies import check_feature, require_feature, require_permission
from keystone.features import FeatureKey
from keystone.schemas import (
    LeaseCreateRequest,
    MaintenanceCreateRequest,
    PaymentCreateRequest,
    PropertyTenantCreateRequest,
)
from keystone.tenant import assert_rows_scoped, execute_scoped, fetch_owned

residents_router = APIRouter(prefix="/api/tenants", tags=["tenants"])
leases_router = APIRouter(prefix="/api/leases", tags=["leases"])
maintenance_router = APIRouter(prefix="/api/maintenance", tags=["maintenance"])
payments_router = APIRouter(prefix="/api/payments", tags=["payments"])
reports_router = APIRouter(prefix="/api/reports", tags=["reports"])


# ---------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------
def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys() if key != "tenant_id"}


def _list_rows(table: str, tenant_id: int, order_by: str = "id DESC") -> List[Dict[str, Any]]:
    conn = get_db()
    try:
        rows = execute_scoped(
            conn,
            f"SELECT * FROM {table} WHERE tenant_id = ? ORDER BY {order_by}",
            (tenant_id,),
            tenant_id,
            label=f"list:{table}",
        ).fetchall()
        assert_rows_scoped(rows, tenant_id, label=f"list:{table}")
    finally:
        conn.close()
    return [row_to_dict(r) for r in rows]


def _insert_row(conn: sqlite3.Connection, table: str, tenant_id: int, values: Dict[str, Any]) -> sqlite3.Row:
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    cur = conn.execute(
        f"INSERT INTO {table} (tenant_id, {columns}) VALUES (?, {placeholders})",
        (tenant_id, *values.values()),
    )
    conn.commit()
    return fetch_owned(conn, table, cur.lastrowid, tenant_id)


def _delete_row(table: str, row_id: int, tenant_id: int) -> Dict[str, bool]:
    conn = get_db()
    try:
        fetch_owned(conn, table, row_id, tenant_id)
        execute_scoped(
            conn,
            f"DELETE FROM {table} WHERE id = ? AND tenant_id = ?",
            (row_id, tenant_id),
            tenant_id,
            label=f"delete:{table}",
        )
        conn.commit()
    finally:
        conn.close()
    print(f"[OPS] Deleted {table} id={row_id} tenant_id={tenant_id}")
    return {"success": True}


# ---------------------------------------------------------
# Residents
# ---------------------------------------------------------
@residents_router.get("", dependencies=[Depends(require_permission("tenants", "view"))])
def list_residents(ctx: AuthContext = Depends(require_auth_context)):
    return {"items": _list_rows("property_tenants", ctx.tenant_id, "last_name, first_name")}


@residents_router.post("", status_code=201, dependencies=[Depends(require_permission("tenants", "create"))])
def create_resident(req: PropertyTenantCreateRequest, ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        row = _insert_row(conn, "property_tenants", ctx.tenant_id, req.dict())
    finally:
        conn.close()
    return row_to_dict(row)


@residents_router.delete("/{resident_id}", dependencies=[Depends(require_permission("tenants", "delete"))])
def delete_resident(
    resident_id: int = Path(..., description="Resident ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    return _delete_row("property_tenants", resident_id, ctx.tenant_id)


# ---------------------------------------------------------
# Leases
# ---------------------------------------------------------
@leases_router.get("", dependencies=[Depends(require_permission("leases", "view"))])
def list_leases(ctx: AuthContext = Depends(require_auth_context)):
    return {"items": _list_rows("leases", ctx.tenant_id)}


@leases_router.post("", status_code=201, dependencies=[Depends(require_permission("leases", "create"))])
def create_lease(req: LeaseCreateRequest, ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        fetch_owned(conn, "properties", req.property_id, ctx.tenant_id)
        fetch_owned(conn, "property_tenants", req.property_tenant_id, ctx.tenant_id)
        values = req.dict()
        values["start_date"] = req.start_date.isoformat()
        values["end_date"] = req.end_date.isoformat()
        row = _insert_row(conn, "leases", ctx.tenant_id, values)
    finally:
        conn.close()

    if IS_DEV:
        print(f"[OPS] Lease created: id={row['id']} property_id={req.property_id} tenant_id={ctx.tenant_id}")
    return row_to_dict(row)


@leases_router.delete("/{lease_id}", dependencies=[Depends(require_permission("leases", "delete"))])
def delete_lease(
    lease_id: int = Path(..., description="Lease ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    return _delete_row("leases", lease_id, ctx.tenant_id)


# ---------------------------------------------------------
# Maintenance (growth and above)
# ---------------------------------------------------------
@maintenance_router.get("", dependencies=[
    Depends(require_permission("maintenance", "view")),
    Depends(require_feature("maintenanceTracking")),
])
def list_maintenance_requests(
    status: Optional[str] = Query(None, description="Filter by status"),
    ctx: AuthContext = Depends(require_auth_context),
):
    items = _list_rows("maintenance_requests", ctx.tenant_id)
    if status:
        items = [i for i in items if i["status"] == status]
    return {"items": items}


@maintenance_router.post("", status_code=201, dependencies=[
    Depends(require_permission("maintenance", "create")),
    Depends(require_feature("maintenanceTracking")),
])
def create_maintenance_request(req: MaintenanceCreateRequest, ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        fetch_owned(conn, "properties", req.property_id, ctx.tenant_id)
        if req.lease_id is not None:
            fetch_owned(conn, "leases", req.lease_id, ctx.tenant_id)
        row = _insert_row(conn, "maintenance_requests", ctx.tenant_id, req.dict())
    finally:
        conn.close()
    return row_to_dict(row)


@maintenance_router.delete("/{request_id}", dependencies=[
    Depends(require_permission("maintenance", "delete")),
    Depends(require_feature("maintenanceTracking")),
])
def delete_maintenance_request(
    request_id: int = Path(..., description="Maintenance request ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    return _delete_row("maintenance_requests", request_id, ctx.tenant_id)


# ---------------------------------------------------------
# Payments
# ---------------------------------------------------------
@payments_router.get("", dependencies=[Depends(require_permission("payments", "view"))])
def list_payments(ctx: AuthContext = Depends(require_auth_context)):
    return {"items": _list_rows("payments", ctx.tenant_id)}


@payments_router.post("", status_code=201, dependencies=[Depends(require_permission("payments", "create"))])
def create_payment(req: PaymentCreateRequest, ctx: AuthContext = Depends(require_auth_context)):
    conn = get_db()
    try:
        if req.lease_id is not None:
            fetch_owned(conn, "leases", req.lease_id, ctx.tenant_id)
        row = _insert_row(conn, "payments", ctx.tenant_id, req.dict())
    finally:
        conn.close()
    return row_to_dict(row)


@payments_router.delete("/{payment_id}", dependencies=[Depends(require_permission("payments", "delete"))])
def delete_payment(
    payment_id: int = Path(..., description="Payment ID"),
    ctx: AuthContext = Depends(require_auth_context),
):
    return _delete_row("payments", payment_id, ctx.tenant_id)


# ---------------------------------------------------------
# Reports
# ---------------------------------------------------------
_SUMMARY_TABLES = {
    "properties": "properties",
    "offices": "offices",
    "tenants": "property_tenants",
    "leases": "leases",
    "maintenance_requests": "maintenance_requests",
    "payments": "payments",
}


def _status_breakdown(conn: sqlite3.Connection, table: str, tenant_id: int) -> Dict[str, int]:
    rows = execute_scoped(
        conn,
        f"SELECT status, COUNT(*) AS n FROM {table} WHERE tenant_id = ? GROUP BY status ORDER BY status",
        (tenant_id,),
        tenant_id,
        label=f"breakdown:{table}",
    ).fetchall()
    return {r["status"]: r["n"] for r in rows}


@reports_router.get("/summary", dependencies=[Depends(require_permission("reports", "view"))])
def report_summary(
    detailed: bool = Query(False, description="Include per-status breakdowns (advancedReporting)"),
    ctx: AuthContext = Depends(require_auth_context),
):
    if detailed:
        check_feature(ctx, FeatureKey.ADVANCED_REPORTING)

    conn = get_db()
    try:
        counts = {}
        for key, table in _SUMMARY_TABLES.items():
            counts[key] = execute_scoped(
                conn,
                f"SELECT COUNT(*) AS n FROM {table} WHERE tenant_id = ?",
                (ctx.tenant_id,),
                ctx.tenant_id,
                label=f"summary:{table}",
            ).fetchone()["n"]

        monthly_rent = execute_scoped(
            conn,
            "SELECT COALESCE(SUM(monthly_rent), 0) AS total FROM leases WHERE tenant_id = ? AND status = 'active'",
            (ctx.tenant_id,),
            ctx.tenant_id,
            label="summary:rent",
        ).fetchone()["total"]

        report: Dict[str, Any] = {"counts": counts, "active_monthly_rent": monthly_rent}
        if detailed:
            report["properties_by_status"] = _status_breakdown(conn, "properties", ctx.tenant_id)
            report["maintenance_by_status"] = _status_breakdown(conn, "maintenance_requests", ctx.tenant_id)
    finally:
        conn.close()

    return report
