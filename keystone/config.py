# keystone/config.py
# Environment-aware configuration for the Keystone backend

import os
from typing import Literal

# Environment detection
ENV: Literal["dev", "staging", "prod"] = os.environ.get("ENV", "dev")  # type: ignore
IS_DEV = (ENV == "dev")
IS_STAGING = (ENV == "staging")
IS_PROD = (ENV == "prod")

# JWT configuration
SECRET_KEY = os.environ.get("SECRET_KEY", "change-this-secret-in-production")
ALGORITHM = "HS256"
TOKEN_TTL_DAYS = int(os.environ.get("TOKEN_TTL_DAYS", "7"))

# Database configuration (relative paths resolve against the package directory)
DATABASE_PATH = os.environ.get("DATABASE_PATH", "keystone.db")

# Subscription defaults
TRIAL_DAYS = int(os.environ.get("TRIAL_DAYS", "14"))
DEFAULT_PLAN_TIER = os.environ.get("DEFAULT_PLAN_TIER", "starter")

# One-time account tokens (email verification, password reset)
EMAIL_VERIFICATION_TTL_HOURS = int(os.environ.get("EMAIL_VERIFICATION_TTL_HOURS", "24"))
PASSWORD_RESET_TTL_MINUTES = int(os.environ.get("PASSWORD_RESET_TTL_MINUTES", "60"))

# Seed credentials for `python -m keystone.migrate --superadmin`
SUPER_ADMIN_EMAIL = os.environ.get("SUPER_ADMIN_EMAIL", "admin@propertymanager.com")
SUPER_ADMIN_PASSWORD = os.environ.get("SUPER_ADMIN_PASSWORD", "Admin@123456")

# CORS origins (expand for staging/prod)
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

if IS_STAGING or IS_PROD:
    extra_origins = os.environ.get("CORS_ORIGINS", "")
    if extra_origins:
        CORS_ORIGINS.extend(o.strip() for o in extra_origins.split(",") if o.strip())

print(f"[CONFIG] Environment: {ENV}")
print(f"[CONFIG] Database: {DATABASE_PATH}")
print(f"[CONFIG] Token lifetime: {TOKEN_TTL_DAYS} days, trial: {TRIAL_DAYS} days")
