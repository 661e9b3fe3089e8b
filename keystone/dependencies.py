"""
keystone/dependencies.py

Reusable FastAPI dependencies for permission, feature and capacity enforcement.

Order of checks for a capacity-consuming create:
1. require_permission(resource, "create")  -> 403 if the role does not allow it
2. require_feature(feature) where the route is tier-gated -> 402
3. enforce_capacity(...) inside the insert transaction -> 402
"""

from __future__ import annotations

import sqlite3
from typing import Callable

from fastapi import Depends, HTTPException

from keystone import config
from keystone.auth_context import AuthContext, require_auth_context
from keystone.entitlements import is_subscription_usable
from keystone.features import (
    Dimension,
    FeatureKey,
    FeatureNotAllowedError,
    UsageLimitError,
    ensure_capacity,
    ensure_feature,
)
from keystone.permissions import Action, Resource, allows
from keystone.tenant import count_usage


def require_permission(resource: str, action: str) -> Callable:
    """
    FastAPI dependency factory for role-based permission checks.

    Usage in routes:
        @router.post("", dependencies=[Depends(require_permission("properties", "create"))])
        def create_property(ctx: AuthContext = Depends(require_auth_context)):
            ...

    Raises:
        HTTPException(403): If the actor's role does not allow the action
    """
    # Unknown names fail when the route is declared
    resource = Resource(resource)
    action = Action(action)

    def _check_permission(ctx: AuthContext = Depends(require_auth_context)) -> AuthContext:
        if not allows(ctx.permissions, resource, action):
            if config.IS_DEV:
                print(f"[AUTHZ] Permission denied: {resource.value}:{action.value}, "
                      f"user_id={ctx.user_id}, role={ctx.role_name}")
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions - cannot {action.value} {resource.value}",
            )

        if config.IS_DEV:
            print(f"[AUTHZ] Permission granted: {resource.value}:{action.value}, "
                  f"user_id={ctx.user_id}, role={ctx.role_name}")
        return ctx

    return _check_permission


def require_feature(feature: str) -> Callable:
    """
    FastAPI dependency factory for plan-tier feature checks.

    Raises:
        HTTPException(402): If the tenant's tier does not include the feature
    """
    feature = FeatureKey(feature)

    def _check_feature(ctx: AuthContext = Depends(require_auth_context)) -> AuthContext:
        check_feature(ctx, feature)
        return ctx

    return _check_feature


def check_feature(ctx: AuthContext, feature: str) -> None:
    """Inline variant of require_feature for conditionally gated routes."""
    if ctx.subscription is None:
        print(f"[BILLING] No subscription for tenant_id={ctx.tenant_id}")
        raise HTTPException(status_code=402, detail="No active subscription")
    try:
        ensure_feature(ctx.subscription, feature)
    except FeatureNotAllowedError as e:
        if config.IS_DEV:
            print(f"[BILLING] Feature locked: {e.feature}, tenant_id={ctx.tenant_id}, tier={e.tier}")
        raise HTTPException(
            status_code=402,
            detail=f"{e}. Upgrade to access this feature.",
        )


def enforce_capacity(conn: sqlite3.Connection, ctx: AuthContext, dimension: str) -> int:
    """
    Check the tenant can add one more unit of `dimension`.

    Call inside db.immediate_transaction() right before the insert so the
    count and the insert are atomic. Returns the current count.

    Raises:
        HTTPException(402): Subscription not usable (inactive or past period end)
        HTTPException(402): Limit reached
    """
    subscription = ctx.subscription
    if not is_subscription_usable(subscription):
        status = subscription.status if subscription else None
        print(f"[BILLING] Subscription not usable: tenant_id={ctx.tenant_id}, status={status}")
        raise HTTPException(
            status_code=402,
            detail="Subscription inactive or expired - please update your billing information",
        )

    current = count_usage(conn, ctx.tenant_id, dimension)
    try:
        ensure_capacity(subscription, dimension, current)
    except UsageLimitError as e:
        if config.IS_DEV:
            print(f"[BILLING] Usage limit reached: tenant_id={ctx.tenant_id}, {e}")
        raise HTTPException(
            status_code=402,
            detail=f"Plan limit reached: {e.current_count}/{e.limit} {e.dimension}. Upgrade to continue.",
        )

    if config.IS_DEV:
        print(f"[BILLING] Capacity ok: tenant_id={ctx.tenant_id}, {Dimension(dimension).value}={current}")
    return current
