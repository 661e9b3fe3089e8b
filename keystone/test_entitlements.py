"""
keystone/test_entitlements.py

Tests for the subscription data layer (in-memory SQLite):
1. Plan catalogue is seeded and upserted idempotently
2. Subscriptions load joined with their plan
3. Status / plan / override changes take effect on the next load
4. The account summary carries limits, usage and features
"""

from datetime import datetime, timedelta, timezone

import pytest

from keystone.entitlements import (
    get_plan_by_tier,
    get_subscription,
    is_subscription_usable,
    list_plans,
    parse_timestamp,
    set_limit_overrides,
    subscription_summary,
    update_subscription_plan,
    update_subscription_status,
)
from keystone.features import UNLIMITED, Limit, SubscriptionUsage, get_limits
from keystone.migrate import run_migrations, seed_plans
from keystone.tenant import provision_tenant

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def tenant_id(db):
    result = provision_tenant(
        db,
        company_name="Harbor Homes",
        email="owner@harbor.example",
        password="s3cret-pass",
        first_name="Ada",
        last_name="Harbor",
        now=NOW,
    )
    return result.tenant_id


class TestPlanCatalogue:
    def test_three_plans_in_display_order(self, db):
        plans = list_plans(db)
        assert [p.tier for p in plans] == ["starter", "growth", "enterprise"]
        assert [p.price for p in plans] == [49.0, 149.0, 399.0]

    def test_enterprise_stored_as_unlimited_sentinel(self, db):
        plan = get_plan_by_tier(db, "enterprise")
        assert (plan.max_properties, plan.max_users, plan.max_offices) == (-1, -1, -1)

    def test_reseeding_is_idempotent(self, db):
        seed_plans(db)
        run_migrations(db)
        assert db.execute("SELECT COUNT(*) FROM subscription_plans").fetchone()[0] == 3

    def test_unknown_tier_returns_none(self, db):
        assert get_plan_by_tier(db, "platinum") is None


class TestSubscriptionLoading:
    def test_new_tenant_is_trialing_starter(self, db, tenant_id):
        sub = get_subscription(db, tenant_id)
        assert sub.status == "trialing"
        assert sub.plan.tier == "starter"
        assert sub.current_period_end == NOW + timedelta(days=14)
        assert sub.trial_ends_at == sub.current_period_end
        assert sub.max_properties_override is None

    def test_missing_subscription_returns_none(self, db):
        assert get_subscription(db, 999) is None
        assert not is_subscription_usable(None)

    def test_parse_timestamp_handles_naive_and_z(self):
        assert parse_timestamp("2025-01-01T00:00:00") == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert parse_timestamp("2025-01-01T00:00:00Z") == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert parse_timestamp(None) is None


class TestSubscriptionChanges:
    def test_status_change_is_visible_immediately(self, db, tenant_id):
        assert update_subscription_status(db, tenant_id, "past_due")
        sub = get_subscription(db, tenant_id)
        assert sub.status == "past_due"
        assert not is_subscription_usable(sub, NOW)

    def test_invalid_status_raises(self, db, tenant_id):
        with pytest.raises(ValueError):
            update_subscription_status(db, tenant_id, "on_vacation")

    def test_status_change_for_unknown_tenant(self, db):
        assert update_subscription_status(db, 999, "active") is False

    def test_plan_change_activates(self, db, tenant_id):
        assert update_subscription_plan(db, tenant_id, "growth")
        sub = get_subscription(db, tenant_id)
        assert sub.plan.tier == "growth"
        assert sub.status == "active"

    def test_plan_change_rejects_unknown_tier(self, db, tenant_id):
        with pytest.raises(ValueError):
            update_subscription_plan(db, tenant_id, "platinum")

    def test_overrides_supersede_plan(self, db, tenant_id):
        assert set_limit_overrides(db, tenant_id, max_properties=-1, max_users=7)
        limits = get_limits(get_subscription(db, tenant_id))
        assert limits.max_properties is UNLIMITED
        assert limits.max_users == Limit(7)
        assert limits.max_offices == Limit(1)

    def test_partial_override_keeps_others(self, db, tenant_id):
        set_limit_overrides(db, tenant_id, max_users=7)
        set_limit_overrides(db, tenant_id, max_offices=2)
        sub = get_subscription(db, tenant_id)
        assert (sub.max_users_override, sub.max_offices_override) == (7, 2)

    def test_clear_resets_to_plan(self, db, tenant_id):
        set_limit_overrides(db, tenant_id, max_properties=100, max_users=7)
        set_limit_overrides(db, tenant_id, clear=True)
        sub = get_subscription(db, tenant_id)
        assert sub.max_properties_override is None
        assert sub.max_users_override is None

    def test_invalid_override_raises(self, db, tenant_id):
        with pytest.raises(ValueError):
            set_limit_overrides(db, tenant_id, max_users=-3)


class TestUsable:
    def test_trialing_within_period_is_usable(self, db, tenant_id):
        sub = get_subscription(db, tenant_id)
        assert is_subscription_usable(sub, NOW + timedelta(days=1))

    def test_trialing_after_trial_end_is_not_usable(self, db, tenant_id):
        sub = get_subscription(db, tenant_id)
        assert not is_subscription_usable(sub, NOW + timedelta(days=15))

    def test_canceled_within_period_is_not_usable(self, db, tenant_id):
        update_subscription_status(db, tenant_id, "canceled")
        assert not is_subscription_usable(get_subscription(db, tenant_id), NOW)


class TestSummary:
    def test_summary_shape(self, db, tenant_id):
        sub = get_subscription(db, tenant_id)
        summary = subscription_summary(sub, SubscriptionUsage(properties=4, users=1), NOW)

        assert summary["plan"]["tier"] == "starter"
        assert summary["status"] == "trialing"
        assert summary["active"] is True
        assert summary["expired"] is False
        assert summary["days_until_expiry"] == 14
        assert summary["limits"] == {"max_properties": 10, "max_users": 3, "max_offices": 1}
        assert summary["usage"]["properties"]["percentage"] == 40
        assert summary["usage"]["users"]["can_add"] is True
        assert len(summary["features"]) == 10
        assert not any(summary["features"].values())
