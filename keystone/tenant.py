"""
keystone/tenant.py

Tenant provisioning and tenant guardrails (defense in depth).

All tenant-owned queries go through these helpers so a missing tenant_id
filter cannot leak another company's records.

- In DEV: emit warnings for unsafe access
- In STAGING/PROD: fail fast with HTTP 500
"""

from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import HTTPException

from keystone import config
from keystone.accounts import issue_email_verification
from keystone.auth_context import hash_password
from keystone.entitlements import get_plan_by_tier
from keystone.features import Dimension, SubscriptionStatus, SubscriptionUsage
from keystone.permissions import ACCOUNT_OWNER, DEFAULT_ROLES, permissions_to_json

# Tables whose rows carry tenant_id
TENANT_TABLES = (
    "roles",
    "users",
    "offices",
    "properties",
    "property_tenants",
    "leases",
    "maintenance_requests",
    "payments",
)

# Metered dimension -> (table, extra filter)
_USAGE_QUERIES = {
    Dimension.PROPERTIES: ("properties", ""),
    Dimension.USERS: ("users", " AND user_type = 'staff' AND status = 'active'"),
    Dimension.OFFICES: ("offices", ""),
}


class ProvisioningError(Exception):
    """Raised when a tenant cannot be created."""


class EmailAlreadyRegisteredError(ProvisioningError):
    pass


@dataclass(frozen=True)
class ProvisionResult:
    tenant_id: int
    user_id: int
    role_id: int
    slug: str
    verification_token: str


# ============================================================================
# Guardrails
# ============================================================================

def require_tenant_id(tenant_id: Optional[int]) -> int:
    """
    Guardrail: Require tenant_id to be present for tenant-scoped operations.

    Raises:
        HTTPException(500): If tenant_id is missing in non-dev environments
    """
    if not tenant_id or tenant_id < 1:
        error_msg = f"[TENANT] Missing or invalid tenant_id: {tenant_id}"
        if config.IS_DEV:
            print(f"{error_msg} (DEV warning - continuing)")
            return tenant_id or 0
        print(f"{error_msg} (PRODUCTION - failing fast)")
        raise HTTPException(status_code=500, detail="Tenant scope missing - this is a server error")
    return tenant_id


def _row_tenant_id(row: Union[sqlite3.Row, Dict[str, Any]]) -> Any:
    if isinstance(row, dict):
        return row.get("tenant_id")
    try:
        return row["tenant_id"]
    except (IndexError, KeyError):
        return None


def assert_rows_scoped(
    rows: List[Union[sqlite3.Row, Dict[str, Any]]],
    tenant_id: int,
    label: str = "",
) -> None:
    """
    Guardrail: Assert that every returned row belongs to the given tenant.

    Raises:
        HTTPException(500): On mismatch in non-dev environments
    """
    mismatches = []
    for i, row in enumerate(rows or []):
        found = _row_tenant_id(row)
        if found is not None and found != tenant_id:
            mismatches.append({"index": i, "found": found})
    if not mismatches:
        return

    error_msg = f"[TENANT] Tenant isolation violation{f' in {label}' if label else ''}"
    detail_msg = f"{len(mismatches)} row(s) not owned by tenant_id={tenant_id}"
    if config.IS_DEV:
        print(f"{error_msg}: {detail_msg} (DEV warning) {mismatches[:3]}")
        return
    print(f"{error_msg}: {detail_msg} (PRODUCTION - failing fast)")
    raise HTTPException(status_code=500, detail="Tenant isolation violation detected - this is a server error")


def assert_row_scoped(
    row: Union[sqlite3.Row, Dict[str, Any], None],
    tenant_id: int,
    label: str = "",
) -> None:
    if row is None:
        return
    assert_rows_scoped([row], tenant_id, label)


def execute_scoped(
    conn: sqlite3.Connection,
    sql: str,
    params: tuple,
    tenant_id: int,
    label: str = "",
) -> sqlite3.Cursor:
    """
    Guardrail: Execute SQL against a tenant-owned table after checking the
    statement filters on tenant_id.

    Raises:
        HTTPException(500): If tenant_id is missing or the query is unscoped (non-dev)
    """
    require_tenant_id(tenant_id)

    sql_lower = sql.lower()
    touches_tenant_table = any(table in sql_lower for table in TENANT_TABLES)
    if touches_tenant_table and "tenant_id" not in sql_lower:
        warning_msg = f"[TENANT] Query missing 'tenant_id' filter{f' in {label}' if label else ''}"
        if config.IS_DEV:
            print(warning_msg)
            print(f"[TENANT][DEV] SQL: {sql[:100]}...")
        else:
            print(f"{warning_msg} (PRODUCTION - failing fast)")
            raise HTTPException(status_code=500, detail="Unsafe tenant query detected - missing tenant_id filter")

    return conn.execute(sql, params)


def fetch_owned(conn: sqlite3.Connection, table: str, row_id: int, tenant_id: int) -> sqlite3.Row:
    """
    Fetch a row by id within the tenant. Raises 404 (not 403) when the row
    is missing or owned by another tenant, so ids cannot be enumerated.
    """
    if table not in TENANT_TABLES:
        raise ValueError(f"Not a tenant-owned table: {table}")
    row = execute_scoped(
        conn,
        f"SELECT * FROM {table} WHERE id = ? AND tenant_id = ?",
        (row_id, tenant_id),
        tenant_id,
        label=f"fetch_owned:{table}",
    ).fetchone()
    if not row:
        print(f"[SECURITY] Row access denied: table={table}, id={row_id}, tenant_id={tenant_id}")
        raise HTTPException(status_code=404, detail="Not found")
    return row


# ============================================================================
# Usage counts (the data side of the capacity gate)
# ============================================================================

def count_usage(conn: sqlite3.Connection, tenant_id: int, dimension: str) -> int:
    table, extra = _USAGE_QUERIES[Dimension(dimension)]
    row = execute_scoped(
        conn,
        f"SELECT COUNT(*) AS n FROM {table} WHERE tenant_id = ?{extra}",
        (tenant_id,),
        tenant_id,
        label=f"count_usage:{table}",
    ).fetchone()
    return int(row["n"])


def get_usage_counts(conn: sqlite3.Connection, tenant_id: int) -> SubscriptionUsage:
    return SubscriptionUsage(
        properties=count_usage(conn, tenant_id, Dimension.PROPERTIES),
        users=count_usage(conn, tenant_id, Dimension.USERS),
        offices=count_usage(conn, tenant_id, Dimension.OFFICES),
    )


# ============================================================================
# Provisioning
# ============================================================================

def generate_slug(text: str) -> str:
    slug = text.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-") or "tenant"


def unique_slug(conn: sqlite3.Connection, base: str) -> str:
    candidate = base
    counter = 1
    while conn.execute("SELECT 1 FROM tenants WHERE slug = ?", (candidate,)).fetchone():
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


def seed_default_roles(conn: sqlite3.Connection, tenant_id: int) -> Dict[str, int]:
    """Create the default role templates for a tenant. Returns name -> role id."""
    role_ids: Dict[str, int] = {}
    for name, permissions in DEFAULT_ROLES.items():
        cur = conn.execute(
            "INSERT INTO roles (tenant_id, name, permissions_json, is_system) VALUES (?, ?, ?, 1)",
            (tenant_id, name, json.dumps(permissions_to_json(permissions))),
        )
        role_ids[name] = cur.lastrowid
    return role_ids


def provision_tenant(
    conn: sqlite3.Connection,
    *,
    company_name: str,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    phone: Optional[str] = None,
    slug: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProvisionResult:
    """
    Create a tenant with a trialing starter subscription, the default roles,
    and an owner user bound to Account Owner whose email awaits verification.
    Runs as one transaction.

    Raises:
        EmailAlreadyRegisteredError: If the email is already in use
        ProvisioningError: If the plan catalogue has not been seeded
    """
    email_norm = email.strip().lower()
    now = now or datetime.now(timezone.utc)

    if conn.execute("SELECT 1 FROM users WHERE email = ?", (email_norm,)).fetchone():
        raise EmailAlreadyRegisteredError("Email already registered")

    plan = get_plan_by_tier(conn, config.DEFAULT_PLAN_TIER)
    if plan is None:
        raise ProvisioningError("Subscription plans not configured")

    try:
        tenant_slug = unique_slug(conn, slug or generate_slug(company_name))
        cur = conn.execute(
            "INSERT INTO tenants (name, slug, email, phone, status) VALUES (?, ?, ?, ?, 'active')",
            (company_name, tenant_slug, email_norm, phone),
        )
        tenant_id = cur.lastrowid

        trial_ends_at = (now + timedelta(days=config.TRIAL_DAYS)).isoformat()
        conn.execute(
            """
            INSERT INTO subscriptions (
                tenant_id, plan_id, status, current_period_start, current_period_end, trial_ends_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, plan.id, SubscriptionStatus.TRIALING.value, now.isoformat(), trial_ends_at, trial_ends_at),
        )

        role_ids = seed_default_roles(conn, tenant_id)
        owner_role_id = role_ids[ACCOUNT_OWNER]

        cur = conn.execute(
            """
            INSERT INTO users (tenant_id, email, password_hash, first_name, last_name, phone, user_type, role_id, status)
            VALUES (?, ?, ?, ?, ?, ?, 'staff', ?, 'active')
            """,
            (tenant_id, email_norm, hash_password(password), first_name, last_name, phone, owner_role_id),
        )
        user_id = cur.lastrowid
        verification_token = issue_email_verification(conn, user_id, now)
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "users.email" in str(e):
            raise EmailAlreadyRegisteredError("Email already registered") from e
        raise

    print(f"[TENANT] Provisioned tenant_id={tenant_id} slug={tenant_slug} plan={plan.tier} "
          f"trial_days={config.TRIAL_DAYS} owner_user_id={user_id}")
    return ProvisionResult(
        tenant_id=tenant_id,
        user_id=user_id,
        role_id=owner_role_id,
        slug=tenant_slug,
        verification_token=verification_token,
    )
