"""
keystone/schemas.py

Pydantic request schemas for the Keystone API.
Tenant ids are never accepted from the client: every schema here describes
data owned by the caller's tenant, which comes from the auth context.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, validator


def _strip(v):
    if isinstance(v, str):
        return v.strip()
    return v


# ========================================================================
# AUTH SCHEMAS
# ========================================================================

class RegisterRequest(BaseModel):
    """Company sign-up: creates the tenant, its trial subscription and the owner user."""
    company_name: str = Field(..., min_length=1, max_length=200, description="Company display name")
    email: str = Field(..., min_length=3, max_length=254, description="Owner email (login)")
    password: str = Field(..., min_length=8, max_length=128, description="Owner password (min 8 chars)")
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)

    @validator("company_name", "first_name", "last_name", pre=True)
    def trim_names(cls, v):
        return _strip(v)

    @validator("email")
    def validate_email(cls, v):
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("email must be a valid address")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=200)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)

    @validator("email")
    def normalize_email(cls, v):
        return v.strip().lower()


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=8, max_length=128, description="New password (min 8 chars)")


# ========================================================================
# ROLE / USER SCHEMAS
# ========================================================================

class RoleCreateRequest(BaseModel):
    """
    Permissions are resource -> list of actions, e.g.
    {"properties": ["view", "create"], "maintenance": ["manage"]}.
    Unknown resources or actions are rejected by the route with 400.
    """
    name: str = Field(..., min_length=1, max_length=100, description="Role name (unique per tenant)")
    permissions: Dict[str, List[str]] = Field(default_factory=dict)

    @validator("name", pre=True)
    def trim_name(cls, v):
        return _strip(v)


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    permissions: Optional[Dict[str, List[str]]] = None

    @validator("name", pre=True)
    def trim_name(cls, v):
        return _strip(v)


class UserCreateRequest(BaseModel):
    """Invite a staff user into the caller's tenant."""
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    role_id: Optional[int] = Field(None, description="Role in the same tenant; no role means no access")

    @validator("email")
    def normalize_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must be a valid address")
        return v


class UserRoleUpdateRequest(BaseModel):
    role_id: Optional[int] = Field(None, description="New role id, or null to remove the role")


# ========================================================================
# PROPERTY / OFFICE SCHEMAS
# ========================================================================

PropertyType = Literal["residential", "commercial", "vacation", "mixed"]
PropertyStatus = Literal["available", "occupied", "maintenance", "unlisted"]


class PropertyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Property name")
    description: Optional[str] = Field(None, max_length=2000)
    property_type: PropertyType = Field(..., description="residential / commercial / vacation / mixed")
    address: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=50)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field("US", max_length=3)
    bedrooms: Optional[int] = Field(None, ge=0)
    bathrooms: Optional[float] = Field(None, ge=0)
    square_feet: Optional[int] = Field(None, ge=0)
    base_rent: float = Field(..., ge=0, description="Monthly base rent")
    security_deposit: Optional[float] = Field(None, ge=0)
    status: PropertyStatus = "available"
    office_id: Optional[int] = Field(None, description="Office in the same tenant")

    @validator("name", "address", "city", pre=True)
    def trim_text(cls, v):
        return _strip(v)


class PropertyUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    property_type: Optional[PropertyType] = None
    address: Optional[str] = Field(None, min_length=1, max_length=200)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, min_length=1, max_length=50)
    zip_code: Optional[str] = Field(None, min_length=1, max_length=20)
    bedrooms: Optional[int] = Field(None, ge=0)
    bathrooms: Optional[float] = Field(None, ge=0)
    square_feet: Optional[int] = Field(None, ge=0)
    base_rent: Optional[float] = Field(None, ge=0)
    security_deposit: Optional[float] = Field(None, ge=0)
    status: Optional[PropertyStatus] = None
    office_id: Optional[int] = None


class OfficeCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    address: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=50)
    zip_code: Optional[str] = Field(None, max_length=20)
    phone: Optional[str] = Field(None, max_length=30)
    email: Optional[str] = Field(None, max_length=254)
    is_primary: bool = False

    @validator("name", pre=True)
    def trim_name(cls, v):
        return _strip(v)


# ========================================================================
# OPERATIONS SCHEMAS
# ========================================================================

class PropertyTenantCreateRequest(BaseModel):
    """A resident renting a unit (not a SaaS tenant)."""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    phone: str = Field(..., min_length=1, max_length=30)
    employer: Optional[str] = Field(None, max_length=200)
    annual_income: Optional[float] = Field(None, ge=0)


class LeaseCreateRequest(BaseModel):
    property_id: int
    property_tenant_id: int
    start_date: date = Field(..., description="ISO date (YYYY-MM-DD)")
    end_date: date = Field(..., description="ISO date (YYYY-MM-DD)")
    lease_type: Literal["fixed", "month_to_month", "short_term"]
    monthly_rent: float = Field(..., ge=0)
    security_deposit: float = Field(..., ge=0)
    rent_due_day: int = Field(1, ge=1, le=31)

    @validator("end_date")
    def end_after_start(cls, v, values):
        start = values.get("start_date")
        if start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v


class MaintenanceCreateRequest(BaseModel):
    property_id: int
    lease_id: Optional[int] = None
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=4000)
    category: Literal["plumbing", "electrical", "hvac", "appliance", "structural", "other"]
    priority: Literal["low", "medium", "high", "emergency"] = "medium"
    estimated_cost: Optional[float] = Field(None, ge=0)


class PaymentCreateRequest(BaseModel):
    lease_id: Optional[int] = None
    amount: float = Field(..., gt=0)
    payment_type: Literal["rent", "deposit", "fee", "refund", "other"]
    payment_method: Literal["card", "ach", "cash", "check", "other"]
    payer_name: Optional[str] = Field(None, max_length=200)
