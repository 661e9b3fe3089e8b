# ---------------------------------------------------------
# keystone/main.py
# Keystone - Multi-tenant Property Management Backend
#
# Run: uvicorn keystone.main:app --reload (from repo root)
#
# - FastAPI + SQLite
# - /auth/*     : company sign-up, login, email verification, password reset,
#                 permission introspection
# - /account/*  : subscription state and plan catalogue
# - /api/*      : tenant-scoped resources (routers in routes_*.py)
# - /admin/*    : dev-only subscription controls
# ---------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from keystone.accounts import deliver_token, issue_password_reset, reset_password, verify_email
from keystone.auth_context import (
    AuthContext,
    create_access_token,
    require_auth_context,
    verify_password,
)
from keystone.config import CORS_ORIGINS, IS_DEV, IS_PROD
from keystone.db import get_db
from keystone.entitlements import (
    list_plans,
    set_limit_overrides,
    subscription_summary,
    update_subscription_plan,
    update_subscription_status,
)
from keystone.features import PlanTier, SubscriptionStatus, tier_features
from keystone.migrate import run_migrations
from keystone.permissions import permissions_to_json
from keystone.routes_offices import router as offices_router
from keystone.routes_operations import (
    leases_router,
    maintenance_router,
    payments_router,
    reports_router,
    residents_router,
)
from keystone.routes_properties import router as properties_router
from keystone.routes_roles import router as roles_router
from keystone.routes_users import router as users_router
from keystone.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    VerifyEmailRequest,
)
from keystone.tenant import (
    EmailAlreadyRegisteredError,
    ProvisioningError,
    get_usage_counts,
    provision_tenant,
    require_tenant_id,
)

# ---------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------
app = FastAPI(title="Keystone Backend", version="0.1")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if IS_PROD else ["*"],  # Restrict origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

run_migrations()

app.include_router(roles_router)
app.include_router(users_router)
app.include_router(properties_router)
app.include_router(offices_router)
app.include_router(residents_router)
app.include_router(leases_router)
app.include_router(maintenance_router)
app.include_router(payments_router)
app.include_router(reports_router)


# ============================================================================
# API ENDPOINT CLASSIFICATION
# ============================================================================
#
# [PUBLIC]
#   • /health, /auth/register, /auth/login, /account/plans
#   • /auth/verify-email, /auth/forgot-password, /auth/reset-password
#     (one-time tokens; forgot-password answers the same for unknown emails)
#
# [TENANT_SCOPED] - bearer token; tenant_id always comes from AuthContext
#   • /auth/permissions, /account/subscription
#   • /api/* - each route declares require_permission(resource, action);
#     tier-gated routes add require_feature(...) (402);
#     creates of metered resources call enforce_capacity(...) (402)
#
# [DEV_ONLY] - 403 unless IS_DEV
#   • /admin/set_plan, /admin/set_subscription_status, /admin/set_overrides
#
# Ids from other tenants answer 404 (not 403) so they cannot be enumerated.
# ============================================================================

@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# Auth endpoints
@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(req: RegisterRequest):
    conn = get_db()
    try:
        result = provision_tenant(
            conn,
            company_name=req.company_name,
            email=req.email,
            password=req.password,
            first_name=req.first_name,
            last_name=req.last_name,
            phone=req.phone,
        )
    except EmailAlreadyRegisteredError:
        print(f"[REGISTER] Duplicate email: {req.email!r}")
        raise HTTPException(status_code=400, detail="Email already registered")
    except ProvisioningError as e:
        print(f"[REGISTER] Provisioning failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        conn.close()

    print(f"[REGISTER] tenant_id={result.tenant_id}, user_id={result.user_id}, slug={result.slug}")
    deliver_token("Email verification", req.email, result.verification_token)
    access_token = create_access_token(result.user_id, result.tenant_id, req.email, role_id=result.role_id)
    return TokenResponse(
        access_token=access_token,
        user={
            "id": result.user_id,
            "email": req.email,
            "tenant_id": result.tenant_id,
            "tenant_slug": result.slug,
            "role_id": result.role_id,
            "email_verified": False,
        },
    )


@app.post("/auth/login", response_model=TokenResponse)
def login(req: LoginRequest):
    email_norm = req.email.strip().lower()

    conn = get_db()
    try:
        row = conn.execute(
            """
            SELECT u.id, u.email, u.password_hash, u.tenant_id, u.user_type, u.role_id, u.status, u.email_verified,
                   t.status AS tenant_status
            FROM users u
            JOIN tenants t ON t.id = u.tenant_id
            WHERE u.email = ?
            """,
            (email_norm,),
        ).fetchone()

        if not row or not verify_password(req.password, row["password_hash"]):
            print("[LOGIN] Invalid credentials")
            raise HTTPException(status_code=401, detail="Invalid credentials")

        if row["status"] != "active":
            print(f"[LOGIN] Inactive user: user_id={row['id']}")
            raise HTTPException(status_code=403, detail="Account is inactive. Please contact support.")

        if row["tenant_status"] != "active":
            print(f"[LOGIN] Suspended tenant: tenant_id={row['tenant_id']}")
            raise HTTPException(status_code=403, detail="Account is suspended. Please contact support.")

        conn.execute(
            "UPDATE users SET last_login_at = ? WHERE id = ?",
            (datetime.now(timezone.utc).isoformat(), row["id"]),
        )
        conn.commit()
    finally:
        conn.close()

    print(f"[LOGIN] user_id={row['id']}, tenant_id={row['tenant_id']}")
    access_token = create_access_token(
        row["id"], row["tenant_id"], row["email"], user_type=row["user_type"] or "staff", role_id=row["role_id"]
    )
    return TokenResponse(
        access_token=access_token,
        user={
            "id": row["id"],
            "email": row["email"],
            "tenant_id": row["tenant_id"],
            "role_id": row["role_id"],
            "email_verified": bool(row["email_verified"]),
        },
    )


@app.get("/auth/permissions")
def get_permissions(ctx: AuthContext = Depends(require_auth_context)):
    """
    Expose the caller's role permissions to the frontend for UI guardrails.
    Read-only introspection; enforcement happens on each /api route.
    """
    return {
        "user_id": ctx.user_id,
        "tenant_id": ctx.tenant_id,
        "role_id": ctx.role_id,
        "role": ctx.role_name,
        "permissions": permissions_to_json(ctx.permissions),
    }


FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, a password reset link has been sent."


@app.post("/auth/verify-email")
def post_verify_email(req: VerifyEmailRequest):
    conn = get_db()
    try:
        user_id = verify_email(conn, req.token)
    finally:
        conn.close()

    if user_id is None:
        print("[AUTH] Invalid or expired verification token")
        raise HTTPException(status_code=400, detail="Invalid or expired verification token")
    return {"success": True, "message": "Email verified successfully"}


@app.post("/auth/forgot-password")
def post_forgot_password(req: ForgotPasswordRequest):
    """Same response whether or not the email belongs to an account."""
    conn = get_db()
    try:
        token = issue_password_reset(conn, req.email)
    finally:
        conn.close()

    if token is not None:
        deliver_token("Password reset", req.email, token)
    return {"success": True, "message": FORGOT_PASSWORD_MESSAGE}


@app.post("/auth/reset-password")
def post_reset_password(req: ResetPasswordRequest):
    conn = get_db()
    try:
        user_id = reset_password(conn, req.token, req.password)
    finally:
        conn.close()

    if user_id is None:
        print("[AUTH] Invalid or expired reset token")
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    return {"success": True, "message": "Password reset successfully"}


# Account & Plan endpoints
@app.get("/account/subscription")
def get_account_subscription(ctx: AuthContext = Depends(require_auth_context)):
    tenant_id = require_tenant_id(ctx.tenant_id)
    if ctx.subscription is None:
        raise HTTPException(status_code=404, detail="No subscription found")

    conn = get_db()
    try:
        usage = get_usage_counts(conn, tenant_id)
    finally:
        conn.close()

    summary = subscription_summary(ctx.subscription, usage)
    if IS_DEV:
        print(f"[ACCOUNT] tenant_id={tenant_id}, tier={ctx.subscription.plan.tier}, "
              f"status={summary['status']}, days_left={summary['days_until_expiry']}")
    return summary


@app.get("/account/plans")
def get_available_plans():
    conn = get_db()
    try:
        plans = list_plans(conn)
    finally:
        conn.close()

    return {
        "plans": [
            {
                "tier": plan.tier,
                "name": plan.name,
                "description": plan.description,
                "price": plan.price,
                "currency": plan.currency,
                "limits": {
                    "max_properties": plan.max_properties,
                    "max_users": plan.max_users,
                    "max_offices": plan.max_offices,
                },
                "features": sorted(f.value for f in tier_features(plan.tier)),
                "highlights": list(plan.marketing_features),
            }
            for plan in plans
        ]
    }


# ---------------------------------------------------------
# Admin endpoints (dev-only) for subscription testing
# ---------------------------------------------------------
def _require_dev() -> None:
    if not IS_DEV:
        raise HTTPException(status_code=403, detail="Admin endpoints only available in dev")


@app.post("/admin/set_plan")
def admin_set_plan(tenant_id: int, tier: str):
    """
    Move a tenant to another plan tier (status becomes active).
    In production this would be driven by billing webhooks.
    """
    _require_dev()

    try:
        PlanTier(tier)
    except ValueError:
        valid = [t.value for t in PlanTier]
        raise HTTPException(status_code=400, detail=f"Invalid plan tier. Valid options: {valid}")

    conn = get_db()
    try:
        updated = update_subscription_plan(conn, tenant_id, tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        conn.close()

    if not updated:
        raise HTTPException(status_code=404, detail="Subscription not found for tenant")

    print(f"[ADMIN] Set tenant {tenant_id} plan to {tier} (status=active)")
    return {"status": "ok", "tenant_id": tenant_id, "tier": tier, "subscription_status": "active"}


@app.post("/admin/set_subscription_status")
def admin_set_subscription_status(tenant_id: int, status: str):
    """
    Change subscription status for testing payment failures and cancellations.

    Valid statuses: trialing, active, past_due, canceled, expired
    """
    _require_dev()

    try:
        SubscriptionStatus(status)
    except ValueError:
        valid = [s.value for s in SubscriptionStatus]
        raise HTTPException(status_code=400, detail=f"Invalid status. Valid options: {valid}")

    conn = get_db()
    try:
        updated = update_subscription_status(conn, tenant_id, status)
    finally:
        conn.close()

    if not updated:
        raise HTTPException(status_code=404, detail="Subscription not found for tenant")

    print(f"[ADMIN] Set tenant {tenant_id} subscription status to {status}")
    return {"status": "ok", "tenant_id": tenant_id, "subscription_status": status}


@app.post("/admin/set_overrides")
def admin_set_overrides(
    tenant_id: int,
    max_properties: Optional[int] = None,
    max_users: Optional[int] = None,
    max_offices: Optional[int] = None,
    clear: bool = False,
):
    """Per-tenant ceilings that supersede the plan's. -1 means unlimited."""
    _require_dev()

    conn = get_db()
    try:
        updated = set_limit_overrides(
            conn,
            tenant_id,
            max_properties=max_properties,
            max_users=max_users,
            max_offices=max_offices,
            clear=clear,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        conn.close()

    if not updated:
        raise HTTPException(status_code=404, detail="Subscription not found for tenant")

    print(f"[ADMIN] Set tenant {tenant_id} overrides: properties={max_properties}, "
          f"users={max_users}, offices={max_offices}, clear={clear}")
    return {
        "status": "ok",
        "tenant_id": tenant_id,
        "overrides": {
            "max_properties": max_properties,
            "max_users": max_users,
            "max_offices": max_offices,
        },
        "cleared": clear,
    }
