"""
Tests for coupon rules and the /coupons/validate endpoint.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from storefront import db as db_module
from storefront.services import coupons
from storefront.services.coupons import CouponError, check_coupon_rules, coupon_usage_stats
from conftest import async_return


NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def _coupon(**overrides) -> dict:
    coupon = {
        "id": "c1",
        "code": "SWEET20",
        "type": "percentage",
        "value": 20,
        "max_discount_cap": 200,
        "min_order_amount": 500,
        "usage_limit": 100,
        "enable_usage_limit": True,
        "usage_per_user": 1,
        "times_used": 10,
        "applicable_categories": None,
        "is_active": True,
        "valid_from": NOW - timedelta(days=1),
        "valid_until": NOW + timedelta(days=30),
    }
    coupon.update(overrides)
    return coupon


class TestCouponRules:

    def test_valid_coupon_passes(self):
        assert check_coupon_rules(_coupon(), 800, now=NOW)["code"] == "SWEET20"

    def test_missing_coupon_is_404(self):
        with pytest.raises(CouponError) as exc:
            check_coupon_rules(None, 800, now=NOW)
        assert exc.value.status_code == 404

    def test_inactive_coupon_is_404(self):
        with pytest.raises(CouponError) as exc:
            check_coupon_rules(_coupon(is_active=False), 800, now=NOW)
        assert exc.value.message == "Coupon not found or inactive"

    @pytest.mark.parametrize("overrides,user_uses,order_value,message", [
        ({"valid_from": NOW + timedelta(hours=1)}, 0, 800, "Coupon is not yet valid"),
        ({"valid_until": NOW - timedelta(seconds=1)}, 0, 800, "Coupon has expired"),
        ({"times_used": 100}, 0, 800, "Coupon usage limit reached"),
        ({}, 1, 800, "You have already used this coupon"),
        ({}, 0, 499, "Minimum order amount of ₹500 required"),
    ])
    def test_rejections(self, overrides, user_uses, order_value, message):
        with pytest.raises(CouponError) as exc:
            check_coupon_rules(_coupon(**overrides), order_value, user_uses, now=NOW)
        assert exc.value.status_code == 400
        assert exc.value.message == message

    def test_expiry_checked_before_usage(self):
        expired_and_used_up = _coupon(valid_until=NOW - timedelta(days=1), times_used=100)
        with pytest.raises(CouponError, match="expired"):
            check_coupon_rules(expired_and_used_up, 800, now=NOW)

    def test_unlimited_usage(self):
        assert check_coupon_rules(_coupon(usage_limit=None, times_used=5000), 800, now=NOW)

    def test_usage_limit_ignored_when_disabled(self):
        used_up = _coupon(enable_usage_limit=False, usage_limit=10, times_used=10)
        assert check_coupon_rules(used_up, 800, now=NOW)["code"] == "SWEET20"


class TestApplyCoupon:

    def test_apply_computes_capped_discount(self):
        with patch.object(db_module, "get_coupon_by_code", side_effect=async_return(_coupon(valid_until=NOW + timedelta(days=3650)))):
            with patch.object(db_module, "count_user_coupon_uses", side_effect=async_return(0)):
                result = asyncio.run(coupons.apply_coupon("SWEET20", "u1", 2000))
        assert result["discount"] == 200

    def test_no_eligible_items(self):
        coupon = _coupon(applicable_categories=["Breads"], valid_until=NOW + timedelta(days=3650))
        with patch.object(db_module, "get_coupon_by_code", side_effect=async_return(coupon)):
            with patch.object(db_module, "count_user_coupon_uses", side_effect=async_return(0)):
                with pytest.raises(CouponError, match="does not apply"):
                    asyncio.run(coupons.apply_coupon("SWEET20", "u1", 800, {"Cakes": 800}))


class TestUsageStats:

    def test_limited(self):
        stats = coupon_usage_stats(_coupon(times_used=25, usage_limit=40))
        assert stats["remainingUses"] == 15
        assert stats["usagePercentage"] == 62.5

    def test_unlimited(self):
        stats = coupon_usage_stats(_coupon(usage_limit=None))
        assert stats["remainingUses"] is None
        assert stats["usagePercentage"] is None

    def test_disabled_limit_reports_no_remaining(self):
        stats = coupon_usage_stats(_coupon(enable_usage_limit=False, times_used=25, usage_limit=40))
        assert stats["remainingUses"] is None
        assert stats["usagePercentage"] is None


class TestValidateEndpoint:

    def test_requires_session(self, client):
        response = client.post("/coupons/validate", json={"code": "SWEET20", "orderValue": 800})
        assert response.status_code == 401
