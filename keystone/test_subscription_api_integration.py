"""
keystone/test_subscription_api_integration.py

Integration tests for subscription-aware API endpoints.

Tests verify:
1. Registration starts a 14-day starter trial
2. Metered creates stop at the plan ceiling with 402
3. Tier-gated routes answer 402 until the plan unlocks them
4. Unusable subscriptions block capacity-consuming creates but not reads
5. Changes take effect immediately (no re-login)
"""


def _set(client, path, **params):
    resp = client.post(path, params=params)
    assert resp.status_code == 200, resp.text
    return resp


class TestAccountEndpoints:
    def test_plans_are_public(self, client):
        resp = client.get("/account/plans")
        assert resp.status_code == 200
        plans = {p["tier"]: p for p in resp.json()["plans"]}
        assert set(plans) == {"starter", "growth", "enterprise"}
        assert plans["starter"]["limits"] == {"max_properties": 10, "max_users": 3, "max_offices": 1}
        assert plans["starter"]["features"] == []
        assert "multiOffice" in plans["growth"]["features"]
        assert "whiteLabel" not in plans["growth"]["features"]
        assert len(plans["enterprise"]["features"]) == 10

    def test_new_tenant_subscription(self, client, register_tenant):
        owner = register_tenant()
        resp = client.get("/account/subscription", headers=owner["headers"])
        assert resp.status_code == 200
        sub = resp.json()
        assert sub["plan"]["tier"] == "starter"
        assert sub["status"] == "trialing"
        assert sub["active"] is True
        assert sub["expired"] is False
        assert sub["days_until_expiry"] in (14, 15)
        assert sub["usage"]["users"]["used"] == 1
        assert sub["usage"]["properties"] == {"used": 0, "limit": 10, "percentage": 0, "can_add": True}

    def test_register_rejects_short_password(self, client, unique_email):
        resp = client.post("/auth/register", json={
            "company_name": "Shorty", "email": unique_email(), "password": "short",
            "first_name": "A", "last_name": "B",
        })
        assert resp.status_code == 422

    def test_register_rejects_duplicate_email(self, client, register_tenant):
        owner = register_tenant()
        resp = client.post("/auth/register", json={
            "company_name": "Copycat", "email": owner["email"].upper(), "password": "password123",
            "first_name": "A", "last_name": "B",
        })
        assert resp.status_code == 400

    def test_login(self, client, register_tenant):
        owner = register_tenant()
        bad = client.post("/auth/login", json={"email": owner["email"], "password": "wrong-password"})
        assert bad.status_code == 401
        good = client.post("/auth/login", json={"email": owner["email"], "password": owner["password"]})
        assert good.status_code == 200
        assert good.json()["user"]["tenant_id"] == owner["tenant_id"]


class TestCapacity:
    def test_starter_property_limit(self, client, register_tenant, property_payload):
        owner = register_tenant()
        for i in range(10):
            resp = client.post("/api/properties", headers=owner["headers"], json=property_payload(f"Unit {i}"))
            assert resp.status_code == 201, resp.text

        resp = client.post("/api/properties", headers=owner["headers"], json=property_payload("Unit 11"))
        assert resp.status_code == 402
        assert "10/10 properties" in resp.json()["detail"]

        usage = client.get("/account/subscription", headers=owner["headers"]).json()["usage"]["properties"]
        assert usage == {"used": 10, "limit": 10, "percentage": 100, "can_add": False}

    def test_deleting_frees_capacity(self, client, register_tenant, property_payload):
        owner = register_tenant()
        _set(client, "/admin/set_overrides", tenant_id=owner["tenant_id"], max_properties=1)
        first = client.post("/api/properties", headers=owner["headers"], json=property_payload())
        assert client.post("/api/properties", headers=owner["headers"], json=property_payload()).status_code == 402

        client.delete(f"/api/properties/{first.json()['id']}", headers=owner["headers"])
        assert client.post("/api/properties", headers=owner["headers"], json=property_payload()).status_code == 201

    def test_zero_override_blocks_creates(self, client, register_tenant, property_payload):
        owner = register_tenant()
        _set(client, "/admin/set_overrides", tenant_id=owner["tenant_id"], max_properties=0)
        resp = client.post("/api/properties", headers=owner["headers"], json=property_payload())
        assert resp.status_code == 402

    def test_unlimited_override(self, client, register_tenant, property_payload):
        owner = register_tenant()
        _set(client, "/admin/set_overrides", tenant_id=owner["tenant_id"], max_properties=-1)
        for i in range(12):
            assert client.post("/api/properties", headers=owner["headers"],
                               json=property_payload(f"U{i}")).status_code == 201
        usage = client.get("/account/subscription", headers=owner["headers"]).json()["usage"]["properties"]
        assert usage["limit"] == -1
        assert usage["percentage"] == 0

    def test_starter_user_limit(self, client, register_tenant, invite_user):
        owner = register_tenant()
        invite_user(owner, "Viewer")
        invite_user(owner, "Leasing Agent")
        resp = client.post("/api/users", headers=owner["headers"], json={
            "email": "fourth@example.com", "password": "password123", "first_name": "F", "last_name": "U",
        })
        assert resp.status_code == 402

    def test_deactivated_users_free_a_seat(self, client, register_tenant, invite_user, unique_email):
        owner = register_tenant()
        viewer = invite_user(owner, "Viewer")
        invite_user(owner, "Viewer")
        client.delete(f"/api/users/{viewer['user_id']}", headers=owner["headers"])
        resp = client.post("/api/users", headers=owner["headers"], json={
            "email": unique_email(), "password": "password123", "first_name": "F", "last_name": "U",
        })
        assert resp.status_code == 201


class TestFeatureGates:
    def test_second_office_needs_multi_office(self, client, register_tenant):
        owner = register_tenant()
        first = client.post("/api/offices", headers=owner["headers"], json={"name": "Main"})
        assert first.status_code == 201
        assert first.json()["is_primary"] is True

        second = client.post("/api/offices", headers=owner["headers"], json={"name": "Branch"})
        assert second.status_code == 402
        assert "multiOffice" in second.json()["detail"]

        _set(client, "/admin/set_plan", tenant_id=owner["tenant_id"], tier="growth")
        second = client.post("/api/offices", headers=owner["headers"], json={"name": "Branch"})
        assert second.status_code == 201
        assert second.json()["is_primary"] is False

    def test_growth_office_limit(self, client, register_tenant):
        owner = register_tenant()
        _set(client, "/admin/set_plan", tenant_id=owner["tenant_id"], tier="growth")
        for i in range(5):
            assert client.post("/api/offices", headers=owner["headers"], json={"name": f"O{i}"}).status_code == 201
        resp = client.post("/api/offices", headers=owner["headers"], json={"name": "O6"})
        assert resp.status_code == 402
        assert "Plan limit reached" in resp.json()["detail"]

    def test_maintenance_requires_growth(self, client, register_tenant, property_payload):
        owner = register_tenant()
        prop = client.post("/api/properties", headers=owner["headers"], json=property_payload()).json()
        request = {
            "property_id": prop["id"],
            "title": "Leaky faucet",
            "description": "Kitchen faucet drips",
            "category": "plumbing",
        }

        assert client.get("/api/maintenance", headers=owner["headers"]).status_code == 402
        assert client.post("/api/maintenance", headers=owner["headers"], json=request).status_code == 402

        _set(client, "/admin/set_plan", tenant_id=owner["tenant_id"], tier="growth")
        created = client.post("/api/maintenance", headers=owner["headers"], json=request)
        assert created.status_code == 201
        assert created.json()["priority"] == "medium"
        assert created.json()["status"] == "open"
        items = client.get("/api/maintenance", headers=owner["headers"]).json()["items"]
        assert [i["title"] for i in items] == ["Leaky faucet"]

    def test_detailed_reports_need_advanced_reporting(self, client, register_tenant, property_payload):
        owner = register_tenant()
        client.post("/api/properties", headers=owner["headers"], json=property_payload(status="occupied"))

        basic = client.get("/api/reports/summary", headers=owner["headers"])
        assert basic.status_code == 200
        assert basic.json()["counts"]["properties"] == 1
        assert "properties_by_status" not in basic.json()

        assert client.get("/api/reports/summary?detailed=true", headers=owner["headers"]).status_code == 402

        _set(client, "/admin/set_plan", tenant_id=owner["tenant_id"], tier="growth")
        detailed = client.get("/api/reports/summary?detailed=true", headers=owner["headers"])
        assert detailed.status_code == 200
        assert detailed.json()["properties_by_status"] == {"occupied": 1}


class TestSubscriptionStatus:
    def test_past_due_blocks_creates_not_reads(self, client, register_tenant, property_payload):
        owner = register_tenant()
        _set(client, "/admin/set_subscription_status", tenant_id=owner["tenant_id"], status="past_due")

        resp = client.post("/api/properties", headers=owner["headers"], json=property_payload())
        assert resp.status_code == 402
        assert "inactive or expired" in resp.json()["detail"]
        assert client.get("/api/properties", headers=owner["headers"]).status_code == 200

        _set(client, "/admin/set_subscription_status", tenant_id=owner["tenant_id"], status="active")
        assert client.post("/api/properties", headers=owner["headers"], json=property_payload()).status_code == 201

    def test_expired_period_blocks_creates(self, client, register_tenant, property_payload):
        from keystone.db import get_db_connection

        owner = register_tenant()
        with get_db_connection() as conn:
            conn.execute(
                "UPDATE subscriptions SET status = 'active', current_period_end = ? WHERE tenant_id = ?",
                ("2020-01-01T00:00:00+00:00", owner["tenant_id"]),
            )
            conn.commit()

        sub = client.get("/account/subscription", headers=owner["headers"]).json()
        assert sub["active"] is True
        assert sub["expired"] is True
        assert sub["days_until_expiry"] < 0

        resp = client.post("/api/properties", headers=owner["headers"], json=property_payload())
        assert resp.status_code == 402

    def test_canceled_still_reads_subscription(self, client, register_tenant):
        owner = register_tenant()
        _set(client, "/admin/set_subscription_status", tenant_id=owner["tenant_id"], status="canceled")
        sub = client.get("/account/subscription", headers=owner["headers"]).json()
        assert sub["status"] == "canceled"
        assert sub["active"] is False
