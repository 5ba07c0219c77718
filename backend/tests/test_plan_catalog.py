"""
Test Suite: Plan Catalog
========================

- Catalog ids and storefront aliases resolve case-insensitively
- Unknown plans raise InvalidPlan (no silent default)
- Plan expiry is grant time + duration
"""

import pytest
from datetime import datetime, timezone, timedelta

from credit_ledger.errors import InvalidPlan
from credit_ledger.plan_catalog import resolve_plan_id, get_plan, list_plans, plan_expiry


class TestResolvePlanId:

    @pytest.mark.parametrize("external,expected", [
        ("tier1", "tier1"),
        ("TIER2", "tier2"),
        ("temel", "tier1"),
        ("Starter-Plan", "tier1"),
        ("uzman", "tier2"),
        ("pro", "tier3"),
        ("enterprise-plan", "tier3"),
        ("free", "none"),
    ])
    def test_aliases(self, external, expected):
        assert resolve_plan_id(external) == expected

    def test_unknown_plan_raises(self):
        with pytest.raises(InvalidPlan) as exc_info:
            resolve_plan_id("platinum")
        assert exc_info.value.details["plan_id"] == "platinum"

    @pytest.mark.parametrize("empty", [None, ""])
    def test_missing_plan_raises(self, empty):
        with pytest.raises(InvalidPlan):
            resolve_plan_id(empty)


class TestPlanDefinitions:

    def test_tier1_bundle(self):
        plan = get_plan("tier1")
        assert plan.credits_granted == 50
        assert plan.duration_days == 30
        assert set(plan.features) == {"generate", "lyrics"}
        assert "V5" not in plan.allowed_models

    def test_tiers_are_supersets(self):
        tier1, tier2, tier3 = get_plan("tier1"), get_plan("tier2"), get_plan("tier3")
        assert set(tier1.features) < set(tier2.features) < set(tier3.features)
        assert set(tier1.allowed_models) < set(tier2.allowed_models) < set(tier3.allowed_models)

    def test_list_plans_excludes_none_and_is_sorted_by_price(self):
        plans = list_plans()
        assert [p.plan_id for p in plans] == ["tier1", "tier2", "tier3"]
        assert list_plans(include_none=True)[0].plan_id == "none"

    def test_catalog_copies_are_independent(self):
        plan = get_plan("tier1")
        plan.features.append("persona")
        assert "persona" not in get_plan("tier1").features


class TestPlanExpiry:

    def test_expiry_is_now_plus_duration(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert plan_expiry(get_plan("tier2"), now) == now + timedelta(days=180)

    def test_plan_without_duration_never_expires(self):
        assert plan_expiry(get_plan("none"), datetime.now(timezone.utc)) is None
