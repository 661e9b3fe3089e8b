"""
keystone/auth_context.py

Shared authentication context primitives for FastAPI dependency injection.

Contains:
- Password hashing, access token and one-time token helpers
- AuthContext: Immutable tenant boundary context with role permissions and subscription
- require_auth_context: FastAPI dependency for auth enforcement

This module MUST NOT import keystone.main to avoid circular dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from keystone.config import ALGORITHM, IS_DEV, SECRET_KEY, TOKEN_TTL_DAYS
from keystone.db import get_db
from keystone.entitlements import get_subscription
from keystone.features import Subscription
from keystone.permissions import Action, normalize_permissions

# Security scheme for HTTPBearer
security = HTTPBearer()

PBKDF2_ITERATIONS = 260_000


# ---------------------------------------------------------
# Passwords
# ---------------------------------------------------------
def hash_password(password: str) -> str:
    """Salted PBKDF2-SHA256, stored as pbkdf2_sha256$iterations$salt$hex."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = password_hash.split("$")
    except (AttributeError, ValueError):
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


# ---------------------------------------------------------
# One-time account tokens (email verification, password reset)
# ---------------------------------------------------------
def generate_account_token() -> str:
    """High-entropy URL-safe token. Only its hash is stored."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


# ---------------------------------------------------------
# JWT
# ---------------------------------------------------------
def create_access_token(
    user_id: int,
    tenant_id: int,
    email: str,
    user_type: str = "staff",
    role_id: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "tenant_id": tenant_id,
        "email": email,
        "user_type": user_type,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(days=TOKEN_TTL_DAYS)).timestamp()),
    }
    if role_id is not None:
        payload["role_id"] = role_id
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> dict:
    """
    Verify JWT access token and return decoded payload.

    Raises:
        HTTPException(401): If token is expired or invalid
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


# ---------------------------------------------------------
# AuthContext
# ---------------------------------------------------------
class AuthContext(BaseModel):
    """
    Immutable tenant boundary context derived from the bearer token.
    This is the ONLY source of truth for tenant_id, user_id, permissions and
    subscription in protected endpoints. Never trust tenant_id from request
    bodies or query params.

    Fields:
        user_id: User ID from JWT token
        tenant_id: Tenant ID from the user record (not the token)
        email: User email
        user_type: staff / property_tenant
        role_id: Assigned role, None if the user has no role
        role_name: Display name of the role
        permissions: Resource -> actions from the role (empty without a role)
        subscription: Tenant subscription joined with its plan, None if missing
    """
    user_id: int
    tenant_id: int
    email: str
    user_type: str = "staff"
    role_id: Optional[int] = None
    role_name: Optional[str] = None
    permissions: Dict[str, FrozenSet[Action]] = {}
    subscription: Optional[Subscription] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True


def load_role_permissions(conn, role_id: Optional[int], tenant_id: int):
    """Return (role_name, permissions) for a role in this tenant, or (None, {})."""
    if role_id is None:
        return None, {}
    row = conn.execute(
        "SELECT name, permissions_json FROM roles WHERE id = ? AND tenant_id = ?",
        (role_id, tenant_id),
    ).fetchone()
    if row is None:
        # Role from another tenant or deleted: treat as no role
        print(f"[AUTH] Role {role_id} not found in tenant {tenant_id}; using empty permissions")
        return None, {}
    return row["name"], normalize_permissions(json.loads(row["permissions_json"] or "{}"))


def require_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> AuthContext:
    """
    Auth context dependency for FastAPI routes.

    Process:
    1. Verify JWT token signature and expiration
    2. Fetch user + tenant record from database (source of truth)
    3. Validate user and tenant are active
    4. Load role permissions (scoped to the user's tenant)
    5. Load the tenant's subscription joined with its plan

    Raises:
        HTTPException(401): If token is invalid, expired, or user not found
        HTTPException(403): If user is inactive or tenant is suspended
    """
    payload = verify_token(credentials.credentials)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        print("[AUTH] Missing user_id in token payload")
        raise HTTPException(status_code=401, detail="Invalid token payload")

    conn = get_db()
    try:
        user_row = conn.execute(
            """
            SELECT u.id, u.email, u.user_type, u.role_id, u.status, u.tenant_id,
                   t.status AS tenant_status
            FROM users u
            JOIN tenants t ON t.id = u.tenant_id
            WHERE u.id = ?
            """,
            (user_id,),
        ).fetchone()

        if not user_row:
            print(f"[AUTH] User not found: user_id={user_id}")
            raise HTTPException(status_code=401, detail="User not found")

        if user_row["status"] != "active":
            print(f"[AUTH] Inactive user attempted access: user_id={user_id}")
            raise HTTPException(status_code=403, detail="Account is inactive. Please contact support.")

        if user_row["tenant_status"] != "active":
            print(f"[AUTH] Suspended tenant attempted access: tenant_id={user_row['tenant_id']}")
            raise HTTPException(status_code=403, detail="Account is suspended. Please contact support.")

        tenant_id = user_row["tenant_id"]
        role_name, permissions = load_role_permissions(conn, user_row["role_id"], tenant_id)
        subscription = get_subscription(conn, tenant_id)
    finally:
        conn.close()

    ctx = AuthContext(
        user_id=user_row["id"],
        tenant_id=tenant_id,
        email=user_row["email"],
        user_type=user_row["user_type"] or "staff",
        role_id=user_row["role_id"] if role_name else None,
        role_name=role_name,
        permissions=permissions,
        subscription=subscription,
    )

    if IS_DEV:
        tier = subscription.plan.tier if subscription else None
        status = subscription.status if subscription else None
        print(f"[AUTH] Authenticated: user_id={ctx.user_id}, tenant_id={ctx.tenant_id}, "
              f"role={ctx.role_name}, tier={tier}, sub_status={status}, "
              f"resources={len(ctx.permissions)}")

    return ctx
