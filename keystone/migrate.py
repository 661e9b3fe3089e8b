# keystone/migrate.py
# Schema creation + reference data seeding for Keystone (SQLite)
# Run: python -m keystone.migrate [--superadmin]

import argparse
import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional

from keystone.config import SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD
from keystone.db import get_db_connection
from keystone.features import PLAN_CATALOG, UNLIMITED_SENTINEL, SubscriptionStatus

# Columns added to `users` after the first schema release
_USER_TOKEN_COLUMNS = (
    ("email_verified", "INTEGER DEFAULT 0"),
    ("email_verification_token", "TEXT"),
    ("email_verification_expires", "TEXT"),
    ("password_reset_token", "TEXT"),
    ("password_reset_expires", "TEXT"),
)


def run_migrations(conn: Optional[sqlite3.Connection] = None) -> None:
    """
    Create all tables and indexes (idempotent) and upsert the plan catalogue.
    Safe to run multiple times.
    """
    if conn is None:
        with get_db_connection() as owned:
            run_migrations(owned)
        return

    print("[MIGRATE] Starting database migrations...")
    _create_tables(conn)
    seed_plans(conn)
    conn.commit()
    print("[MIGRATE] All migrations complete!")


def _create_tables(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()

    # Plan reference data
    cur.execute("""
        CREATE TABLE IF NOT EXISTS subscription_plans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            tier TEXT UNIQUE NOT NULL,
            description TEXT,
            price REAL NOT NULL,
            currency TEXT DEFAULT 'USD',
            max_properties INTEGER NOT NULL,
            max_users INTEGER NOT NULL,
            max_offices INTEGER NOT NULL,
            display_order INTEGER DEFAULT 0,
            features_json TEXT
        )
    """)

    # Tenants (customer companies)
    cur.execute("""
        CREATE TABLE IF NOT EXISTS tenants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            slug TEXT UNIQUE NOT NULL,
            email TEXT NOT NULL,
            phone TEXT,
            status TEXT DEFAULT 'active',
            email_verified INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # One subscription per tenant
    cur.execute("""
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER UNIQUE NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            plan_id INTEGER NOT NULL REFERENCES subscription_plans(id),
            status TEXT NOT NULL DEFAULT 'trialing',
            current_period_start TEXT,
            current_period_end TEXT NOT NULL,
            trial_ends_at TEXT,
            cancel_at_period_end INTEGER DEFAULT 0,
            max_properties_override INTEGER,
            max_users_override INTEGER,
            max_offices_override INTEGER,
            updated_at TEXT
        )
    """)

    # Roles are tenant-scoped and never shared
    cur.execute("""
        CREATE TABLE IF NOT EXISTS roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            permissions_json TEXT NOT NULL DEFAULT '{}',
            is_system INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(tenant_id, name)
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_roles_tenant_id ON roles(tenant_id)")

    cur.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            first_name TEXT,
            last_name TEXT,
            phone TEXT,
            user_type TEXT DEFAULT 'staff',
            role_id INTEGER REFERENCES roles(id),
            status TEXT DEFAULT 'active',
            email_verified INTEGER DEFAULT 0,
            email_verification_token TEXT,
            email_verification_expires TEXT,
            password_reset_token TEXT,
            password_reset_expires TEXT,
            last_login_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_users_tenant_id ON users(tenant_id)")

    # Databases created before account tokens existed
    for column, ddl in _USER_TOKEN_COLUMNS:
        _ensure_sqlite_column(cur, "users", column, ddl)

    cur.execute("""
        CREATE TABLE IF NOT EXISTS offices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            address TEXT,
            city TEXT,
            state TEXT,
            zip_code TEXT,
            phone TEXT,
            email TEXT,
            is_primary INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_offices_tenant_id ON offices(tenant_id)")

    cur.execute("""
        CREATE TABLE IF NOT EXISTS properties (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            office_id INTEGER REFERENCES offices(id) ON DELETE SET NULL,
            name TEXT NOT NULL,
            description TEXT,
            property_type TEXT NOT NULL,
            address TEXT NOT NULL,
            city TEXT NOT NULL,
            state TEXT NOT NULL,
            zip_code TEXT NOT NULL,
            country TEXT DEFAULT 'US',
            bedrooms INTEGER,
            bathrooms REAL,
            square_feet INTEGER,
            base_rent REAL NOT NULL,
            security_deposit REAL,
            currency TEXT DEFAULT 'USD',
            status TEXT DEFAULT 'available',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_properties_tenant_id ON properties(tenant_id)")

    # Residents renting units (not to be confused with SaaS tenants)
    cur.execute("""
        CREATE TABLE IF NOT EXISTS property_tenants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            email TEXT NOT NULL,
            phone TEXT NOT NULL,
            employer TEXT,
            annual_income REAL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_property_tenants_tenant_id ON property_tenants(tenant_id)")

    cur.execute("""
        CREATE TABLE IF NOT EXISTS leases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            property_id INTEGER NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
            property_tenant_id INTEGER NOT NULL REFERENCES property_tenants(id) ON DELETE CASCADE,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            lease_type TEXT NOT NULL,
            monthly_rent REAL NOT NULL,
            security_deposit REAL NOT NULL,
            rent_due_day INTEGER DEFAULT 1,
            status TEXT DEFAULT 'active',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_leases_tenant_id ON leases(tenant_id)")

    cur.execute("""
        CREATE TABLE IF NOT EXISTS maintenance_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            property_id INTEGER NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
            lease_id INTEGER REFERENCES leases(id) ON DELETE SET NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL,
            category TEXT NOT NULL,
            priority TEXT DEFAULT 'medium',
            status TEXT DEFAULT 'open',
            estimated_cost REAL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_maintenance_tenant_id ON maintenance_requests(tenant_id)")

    cur.execute("""
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
            lease_id INTEGER REFERENCES leases(id) ON DELETE SET NULL,
            amount REAL NOT NULL,
            currency TEXT DEFAULT 'USD',
            payment_type TEXT NOT NULL,
            payment_method TEXT NOT NULL,
            status TEXT DEFAULT 'completed',
            payer_name TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_payments_tenant_id ON payments(tenant_id)")


def _ensure_sqlite_column(cur, table: str, column: str, ddl: str) -> None:
    """Add a column to an existing table if it is missing (idempotent)."""
    cur.execute(f"PRAGMA table_info({table})")
    if column in {row[1] for row in cur.fetchall()}:
        return
    try:
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    except sqlite3.OperationalError as e:
        if "duplicate column" not in str(e).lower():
            raise
        return
    print(f"[MIGRATE] Added column {table}.{column}")


def seed_plans(conn: sqlite3.Connection) -> None:
    """Upsert the plan catalogue keyed by tier."""
    for plan in PLAN_CATALOG:
        conn.execute(
            """
            INSERT INTO subscription_plans (
                name, tier, description, price, currency,
                max_properties, max_users, max_offices, display_order, features_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tier) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                price = excluded.price,
                currency = excluded.currency,
                max_properties = excluded.max_properties,
                max_users = excluded.max_users,
                max_offices = excluded.max_offices,
                display_order = excluded.display_order,
                features_json = excluded.features_json
            """,
            (
                plan.name,
                plan.tier,
                plan.description,
                plan.price,
                plan.currency,
                plan.max_properties,
                plan.max_users,
                plan.max_offices,
                plan.display_order,
                json.dumps(list(plan.marketing_features)),
            ),
        )
        print(f"[MIGRATE] Created/Updated plan: {plan.name}")


def seed_superadmin(conn: sqlite3.Connection, email: str, password: str) -> int:
    """
    Provision the `superadmin` tenant: active for one year with every
    ceiling overridden to unlimited. Returns the tenant id (existing or new).
    """
    from keystone.tenant import provision_tenant

    row = conn.execute("SELECT id FROM tenants WHERE slug = 'superadmin'").fetchone()
    if row:
        print(f"[MIGRATE] Super admin tenant already exists (id={row['id']})")
        return row["id"]

    result = provision_tenant(
        conn,
        company_name="Super Admin",
        email=email,
        password=password,
        first_name="Super",
        last_name="Admin",
        slug="superadmin",
    )
    now = datetime.now(timezone.utc)
    conn.execute(
        """
        UPDATE subscriptions
        SET status = ?, current_period_start = ?, current_period_end = ?, trial_ends_at = NULL,
            max_properties_override = ?, max_users_override = ?, max_offices_override = ?
        WHERE tenant_id = ?
        """,
        (
            SubscriptionStatus.ACTIVE.value,
            now.isoformat(),
            (now + timedelta(days=365)).isoformat(),
            UNLIMITED_SENTINEL,
            UNLIMITED_SENTINEL,
            UNLIMITED_SENTINEL,
            result.tenant_id,
        ),
    )
    conn.execute("UPDATE tenants SET email_verified = 1 WHERE id = ?", (result.tenant_id,))
    conn.execute(
        "UPDATE users SET email_verified = 1, email_verification_token = NULL, email_verification_expires = NULL "
        "WHERE id = ?",
        (result.user_id,),
    )
    conn.commit()
    print(f"[MIGRATE] Created super admin tenant id={result.tenant_id} user={email}")
    return result.tenant_id


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Create the Keystone schema and seed reference data.")
    parser.add_argument("--superadmin", action="store_true", help="also provision the super admin tenant")
    args = parser.parse_args(argv)

    with get_db_connection() as conn:
        run_migrations(conn)
        if args.superadmin:
            seed_superadmin(conn, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)


if __name__ == "__main__":
    main()
