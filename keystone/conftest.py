"""
Shared pytest setup for keystone tests.

Points DATABASE_PATH at a throwaway SQLite file before any keystone module
is imported, so tests never touch a developer's database.
"""

import os
import sqlite3
import tempfile
import uuid

os.environ.setdefault("ENV", "dev")
os.environ["DATABASE_PATH"] = os.path.join(tempfile.mkdtemp(prefix="keystone-test-"), "keystone.db")

import pytest  # noqa: E402


@pytest.fixture
def db():
    """In-memory database with the full schema and plan catalogue."""
    from keystone.migrate import run_migrations

    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def unique_email():
    def _make(prefix: str = "user") -> str:
        return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"
    return _make


# ============================================================================
# HTTP fixtures
# ============================================================================

@pytest.fixture(scope="session")
def client():
    from fastapi.testclient import TestClient
    from keystone.main import app

    return TestClient(app)


@pytest.fixture
def register_tenant(client, unique_email):
    """Register a fresh company; returns its ids, token and auth headers."""
    def _register(company: str = "Test Property Co") -> dict:
        email = unique_email("owner")
        resp = client.post("/auth/register", json={
            "company_name": company,
            "email": email,
            "password": "ownerpass123",
            "first_name": "Olive",
            "last_name": "Owner",
        })
        assert resp.status_code == 201, resp.text
        data = resp.json()
        token = data["access_token"]
        return {
            "email": email,
            "password": "ownerpass123",
            "token": token,
            "tenant_id": data["user"]["tenant_id"],
            "user_id": data["user"]["id"],
            "headers": {"Authorization": f"Bearer {token}"},
        }
    return _register


@pytest.fixture
def invite_user(client, unique_email):
    """Invite a staff user with one of the tenant's roles; returns a logged-in actor."""
    def _invite(owner: dict, role_name: str) -> dict:
        roles = client.get("/api/roles", headers=owner["headers"]).json()["roles"]
        role_id = next(r["id"] for r in roles if r["name"] == role_name)
        email = unique_email("staff")
        resp = client.post("/api/users", headers=owner["headers"], json={
            "email": email,
            "password": "staffpass123",
            "first_name": "Sam",
            "last_name": "Staff",
            "role_id": role_id,
        })
        assert resp.status_code == 201, resp.text
        login = client.post("/auth/login", json={"email": email, "password": "staffpass123"})
        assert login.status_code == 200, login.text
        token = login.json()["access_token"]
        return {
            "email": email,
            "user_id": resp.json()["id"],
            "role_id": role_id,
            "headers": {"Authorization": f"Bearer {token}"},
        }
    return _invite


@pytest.fixture
def property_payload():
    def _payload(name: str = "Maple Court 1", **extra) -> dict:
        payload = {
            "name": name,
            "property_type": "residential",
            "address": "12 Maple Ct",
            "city": "Springfield",
            "state": "IL",
            "zip_code": "62701",
            "base_rent": 1450,
        }
        payload.update(extra)
        return payload
    return _payload
