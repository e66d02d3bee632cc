"""
Tests for the plan catalog and period helpers.
"""

import pytest

from src.billing.errors import ConfigurationError, ValidationError
from src.billing.periods import add_months, month_window
from src.billing.plans import (
    PLANS,
    get_paid_plan,
    get_plan,
    has_feature,
    is_unlimited,
    list_plans,
    within_limit,
)
from src.models.billing import Feature, PlanId
from tests.conftest import utc


class TestPlanCatalog:
    def test_prices(self):
        assert [(plan.id, plan.price) for plan in list_plans()] == [
            (PlanId.FREE, 0),
            (PlanId.STARTER, 249),
            (PlanId.PRO, 499),
            (PlanId.BUSINESS, 999),
        ]

    def test_free_limits(self):
        limits = get_plan("free").limits
        assert limits.max_customers == 50
        assert limits.max_invoices_per_month == 20
        assert not limits.has_product_management

    def test_pro_and_business_unlimited(self):
        for plan_id in (PlanId.PRO, PlanId.BUSINESS):
            limits = PLANS[plan_id].limits
            assert is_unlimited(limits.max_customers)
            assert is_unlimited(limits.max_invoices_per_month)

    def test_catalog_is_read_only(self):
        with pytest.raises(TypeError):
            PLANS[PlanId.FREE] = PLANS[PlanId.PRO]

    def test_unknown_plan_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_plan("enterprise")

    @pytest.mark.parametrize("plan_id", ["free", "enterprise", ""])
    def test_paid_plan_rejects_free_and_unknown(self, plan_id):
        with pytest.raises(ValidationError):
            get_paid_plan(plan_id)


class TestLimits:
    def test_within_limit_boundary(self):
        assert within_limit(50, 49)
        assert not within_limit(50, 50)
        assert not within_limit(50, 51)

    def test_unlimited_always_allows(self):
        assert within_limit(-1, 0)
        assert within_limit(-1, 10_000_000)


class TestFeatures:
    def test_feature_flags(self):
        assert not has_feature(get_plan("free"), Feature.PRODUCT_MANAGEMENT)
        assert has_feature(get_plan("starter"), "product_management")
        assert not has_feature(get_plan("pro"), "whatsapp_crm")
        assert has_feature(get_plan("business"), "whatsapp_crm")
        assert has_feature(get_plan("business"), "priority_support")

    def test_unknown_feature(self):
        with pytest.raises(ValidationError):
            has_feature(get_plan("business"), "teleportation")


class TestPeriods:
    def test_add_months_clamps_day(self):
        assert add_months(utc(2024, 1, 31), 1) == utc(2024, 2, 29)
        assert add_months(utc(2023, 1, 31), 1) == utc(2023, 2, 28)

    def test_add_months_crosses_year(self):
        assert add_months(utc(2024, 11, 15, 8, 30), 3) == utc(2025, 2, 15, 8, 30)

    def test_month_window(self):
        start, end = month_window(utc(2024, 1, 31, 23, 59, 59))
        assert start == utc(2024, 1, 1)
        assert end == utc(2024, 2, 1)

    def test_month_window_december(self):
        start, end = month_window(utc(2024, 12, 10))
        assert (start, end) == (utc(2024, 12, 1), utc(2025, 1, 1))
