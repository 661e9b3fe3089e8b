"""
keystone/entitlements.py

Subscription data access for Keystone.

This module is the bridge between the subscriptions/subscription_plans tables
and the pure gate in keystone.features:
- Loading a tenant's subscription joined with its plan
- Listing / looking up plan reference data
- Applying billing or admin changes (status, plan, limit overrides)
- Summarising subscription state for the account API

Source of truth: subscriptions table in SQLite
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from keystone.features import (
    PlanTier,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionUsage,
    UNLIMITED_SENTINEL,
    feature_map,
    get_days_until_expiry,
    get_limits,
    get_usage_status,
    is_subscription_active,
    is_subscription_expired,
)


# ============================================================================
# Row conversion
# ============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def plan_from_row(row: sqlite3.Row) -> SubscriptionPlan:
    marketing = json.loads(row["features_json"]) if row["features_json"] else []
    return SubscriptionPlan(
        id=row["id"],
        tier=row["tier"],
        name=row["name"],
        description=row["description"] or "",
        price=float(row["price"]),
        currency=row["currency"] or "USD",
        max_properties=int(row["max_properties"]),
        max_users=int(row["max_users"]),
        max_offices=int(row["max_offices"]),
        display_order=int(row["display_order"] or 0),
        marketing_features=tuple(marketing),
    )


_SUBSCRIPTION_SELECT = """
    SELECT
        s.id AS subscription_id, s.tenant_id, s.status,
        s.current_period_start, s.current_period_end, s.trial_ends_at,
        s.cancel_at_period_end,
        s.max_properties_override, s.max_users_override, s.max_offices_override,
        p.id, p.tier, p.name, p.description, p.price, p.currency,
        p.max_properties, p.max_users, p.max_offices, p.display_order, p.features_json
    FROM subscriptions s
    JOIN subscription_plans p ON p.id = s.plan_id
"""


def subscription_from_row(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["subscription_id"],
        tenant_id=row["tenant_id"],
        status=row["status"],
        plan=plan_from_row(row),
        current_period_start=parse_timestamp(row["current_period_start"]),
        current_period_end=parse_timestamp(row["current_period_end"]),
        trial_ends_at=parse_timestamp(row["trial_ends_at"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        max_properties_override=row["max_properties_override"],
        max_users_override=row["max_users_override"],
        max_offices_override=row["max_offices_override"],
    )


# ============================================================================
# Queries
# ============================================================================

def get_subscription(conn: sqlite3.Connection, tenant_id: int) -> Optional[Subscription]:
    """
    Fetch the tenant's subscription joined with its plan.

    Returns None when the tenant has no subscription row; callers treat
    that as "no capacity, no features".
    """
    row = conn.execute(
        _SUBSCRIPTION_SELECT + " WHERE s.tenant_id = ? LIMIT 1",
        (tenant_id,),
    ).fetchone()
    if row is None:
        return None
    return subscription_from_row(row)


def get_plan_by_tier(conn: sqlite3.Connection, tier: str) -> Optional[SubscriptionPlan]:
    row = conn.execute(
        "SELECT * FROM subscription_plans WHERE tier = ?",
        (tier,),
    ).fetchone()
    return plan_from_row(row) if row else None


def list_plans(conn: sqlite3.Connection) -> List[SubscriptionPlan]:
    rows = conn.execute("SELECT * FROM subscription_plans ORDER BY display_order, id").fetchall()
    return [plan_from_row(r) for r in rows]


# ============================================================================
# Combined checks
# ============================================================================

def is_subscription_usable(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """
    Recommended gate before consuming capacity: status is active/trialing
    AND the current period has not ended. Both primitives stay available
    separately in keystone.features.
    """
    if subscription is None:
        return False
    return is_subscription_active(subscription) and not is_subscription_expired(subscription, now)


def subscription_summary(
    subscription: Subscription,
    usage: SubscriptionUsage,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Serialisable subscription state for the account API."""
    limits = get_limits(subscription)
    plan = subscription.plan
    return {
        "plan": {
            "tier": plan.tier,
            "name": plan.name,
            "price": plan.price,
            "currency": plan.currency,
        },
        "status": subscription.status,
        "active": is_subscription_active(subscription),
        "expired": is_subscription_expired(subscription, now),
        "days_until_expiry": get_days_until_expiry(subscription, now),
        "current_period_end": subscription.current_period_end.isoformat(),
        "trial_ends_at": subscription.trial_ends_at.isoformat() if subscription.trial_ends_at else None,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "limits": limits.to_dict(),
        "usage": get_usage_status(limits, usage).to_dict(),
        "features": feature_map(subscription),
    }


# ============================================================================
# Subscription management helpers
# ============================================================================

def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def update_subscription_status(conn: sqlite3.Connection, tenant_id: int, status: str) -> bool:
    """
    Update subscription status (admin/testing or billing webhook processing).

    Returns False if the tenant has no subscription.
    """
    status = SubscriptionStatus(status).value
    cur = conn.execute(
        "UPDATE subscriptions SET status = ?, updated_at = ? WHERE tenant_id = ?",
        (status, _utcnow_iso(), tenant_id),
    )
    conn.commit()
    return cur.rowcount > 0


def update_subscription_plan(conn: sqlite3.Connection, tenant_id: int, tier: str) -> bool:
    """
    Move a tenant to another plan tier and mark the subscription active.

    Raises:
        ValueError: If the tier is unknown or not seeded.
    """
    tier = PlanTier(tier).value
    plan = get_plan_by_tier(conn, tier)
    if plan is None:
        raise ValueError(f"Plan '{tier}' is not configured")
    cur = conn.execute(
        """
        UPDATE subscriptions
        SET plan_id = ?, status = 'active', updated_at = ?
        WHERE tenant_id = ?
        """,
        (plan.id, _utcnow_iso(), tenant_id),
    )
    conn.commit()
    return cur.rowcount > 0


def _validate_override(name: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if value < UNLIMITED_SENTINEL:
        raise ValueError(f"{name} must be -1 (unlimited) or a non-negative number")
    return value


def set_limit_overrides(
    conn: sqlite3.Connection,
    tenant_id: int,
    *,
    max_properties: Optional[int] = None,
    max_users: Optional[int] = None,
    max_offices: Optional[int] = None,
    clear: bool = False,
) -> bool:
    """
    Set per-tenant ceilings that supersede the plan's.

    Only the dimensions passed are changed; `clear=True` resets all three
    back to the plan values first.
    """
    updates = {
        "max_properties_override": _validate_override("max_properties", max_properties),
        "max_users_override": _validate_override("max_users", max_users),
        "max_offices_override": _validate_override("max_offices", max_offices),
    }

    assignments = []
    params: List[Any] = []
    for column, value in updates.items():
        if clear and value is None:
            assignments.append(f"{column} = NULL")
        elif value is not None:
            assignments.append(f"{column} = ?")
            params.append(value)

    if not assignments:
        return get_subscription(conn, tenant_id) is not None

    assignments.append("updated_at = ?")
    params.extend([_utcnow_iso(), tenant_id])
    cur = conn.execute(
        f"UPDATE subscriptions SET {', '.join(assignments)} WHERE tenant_id = ?",
        tuple(params),
    )
    conn.commit()
    return cur.rowcount > 0
