"""
Tests for pricing arithmetic: GST, zone fees, totals, coupons and
delivery rule resolution.
"""

import pytest

from storefront import pricing


DISTANCE_RULES = [
    {"id": "r1", "type": "distance", "start_km": 0, "end_km": 5, "price": 40},
    {"id": "r2", "type": "distance", "start_km": 5, "end_km": 10, "price": 70},
    {"id": "r3", "type": "distance", "start_km": 12, "end_km": 20, "price": 120},
]

FREE_OVER_1000 = {
    "id": "v1", "type": "order_value", "order_value_threshold": 1000, "delivery_type": "free",
}


class TestTax:
    def test_halves_sum_to_total(self):
        tax = pricing.calculate_tax_amounts(999.99, 9, 9)
        assert tax["cgst"] == 90.0
        assert tax["sgst"] == 90.0
        assert tax["cgst"] + tax["sgst"] == tax["total"]

    def test_rounds_half_up_to_two_places(self):
        # 0.125 * 100 / 100 would round to 0.12 with banker's rounding
        tax = pricing.calculate_tax_amounts(12.5, 1, 1)
        assert tax["cgst"] == 0.13
        assert tax["total"] == 0.26

    def test_negative_base_is_clamped(self):
        assert pricing.calculate_tax_amounts(-50)["total"] == 0


class TestZoneDelivery:
    @pytest.mark.parametrize("zone,multiplier", [
        ("Zone A - Express", 1.0),
        ("Zone B - Standard", 1.2),
        ("Zone C - Extended", 1.5),
        ("Zone D - Outskirts", 2.0),
        ("Zone E - Remote", 2.5),
    ])
    def test_known_zones(self, zone, multiplier):
        assert pricing.get_zone_multiplier(zone) == multiplier

    def test_unknown_zone_defaults(self):
        assert pricing.get_zone_multiplier("Zone Z") == 1.2
        assert pricing.get_zone_multiplier(None) == 1.2

    def test_zone_charge_formula(self):
        # (30 + 5 * 4) * 1.5 = 75
        assert pricing.calculate_zone_delivery_charge(4, "Zone C - Extended") == 75
        # (30 + 5 * 3) * 1.2 = 54
        assert pricing.calculate_zone_delivery_charge(3) == 54


class TestTotals:
    def test_tax_on_discounted_items_not_delivery(self):
        totals = pricing.calculate_total_amount(1000, delivery_charge=50, discount=100)
        assert totals["cgst"] == 81.0
        assert totals["sgst"] == 81.0
        assert totals["total_amount"] == 1000 + 50 - 100 + 162

    def test_discount_capped_at_item_total(self):
        totals = pricing.calculate_total_amount(200, delivery_charge=40, discount=500)
        assert totals["discount"] == 200
        assert totals["tax_total"] == 0
        assert totals["total_amount"] == 40

    def test_paise_conversion(self):
        assert pricing.to_paise(499.99) == 49999
        assert pricing.from_paise(49999) == 499.99


class TestCouponDiscount:
    def test_percentage_with_cap(self):
        coupon = {"type": "percentage", "value": 20, "max_discount_cap": 150}
        assert pricing.compute_coupon_discount(coupon, 1000) == 150

    def test_percentage_without_cap(self):
        coupon = {"type": "percentage", "value": 10, "max_discount_cap": None}
        assert pricing.compute_coupon_discount(coupon, 850) == 85

    def test_flat_never_exceeds_subtotal(self):
        coupon = {"type": "flat", "value": 300}
        assert pricing.compute_coupon_discount(coupon, 250) == 250

    def test_category_restriction(self):
        coupon = {"type": "percentage", "value": 10, "applicable_categories": ["Cakes"]}
        totals = {"cakes": 600, "Cookies": 400}
        assert pricing.compute_coupon_discount(coupon, 1000, totals) == 60

    def test_no_eligible_items(self):
        coupon = {"type": "flat", "value": 100, "applicable_categories": ["Breads"]}
        assert pricing.compute_coupon_discount(coupon, 1000, {"Cakes": 1000}) == 0


class TestResolveDeliveryCharge:
    def test_order_value_rule_wins(self):
        result = pricing.resolve_delivery_charge(8, 1200, DISTANCE_RULES + [FREE_OVER_1000])
        assert result["charge"] == 0
        assert result["method"] == "order_value"

    def test_below_threshold_uses_distance(self):
        result = pricing.resolve_delivery_charge(8, 999, DISTANCE_RULES + [FREE_OVER_1000])
        assert result["charge"] == 70
        assert result["method"] == "distance"

    def test_fixed_order_value_rule(self):
        rule = {"type": "order_value", "order_value_threshold": 500, "delivery_type": "fixed", "fixed_price": 25}
        assert pricing.resolve_delivery_charge(3, 600, [rule])["charge"] == 25

    def test_beyond_last_range_uses_last(self):
        assert pricing.resolve_delivery_charge(35, 100, DISTANCE_RULES)["charge"] == 120

    def test_gap_between_ranges_uses_flat_fallback(self):
        result = pricing.resolve_delivery_charge(11, 100, DISTANCE_RULES)
        assert result == {"charge": 80.0, "method": "fallback", "rule": None}

    def test_gap_fallback_amount_is_configurable(self):
        result = pricing.resolve_delivery_charge(10.5, 100, DISTANCE_RULES, fallback=65)
        assert result["charge"] == 65.0
        assert result["method"] == "fallback"

    def test_no_ranges_falls_back_to_zone_formula(self):
        result = pricing.resolve_delivery_charge(4, 100, [], zone="Zone A - Express")
        assert result == {"charge": 50.0, "method": "zone", "rule": None}


class TestValidateDeliveryRanges:
    def test_reports_gap(self):
        issues = pricing.validate_delivery_ranges(DISTANCE_RULES)
        assert [i["type"] for i in issues] == ["gap"]
        assert issues[0]["rule_ids"] == ["r2", "r3"]

    def test_reports_overlap_and_invalid(self):
        rules = [
            {"id": "a", "type": "distance", "start_km": 0, "end_km": 6, "price": 40},
            {"id": "b", "type": "distance", "start_km": 5, "end_km": 10, "price": 70},
            {"id": "c", "type": "distance", "start_km": 12, "end_km": 12, "price": 90},
        ]
        types = {i["type"] for i in pricing.validate_delivery_ranges(rules)}
        assert {"overlap", "invalid_range", "gap"} <= types

    def test_summary(self):
        summary = pricing.summarize_delivery_rules(DISTANCE_RULES + [FREE_OVER_1000])
        assert summary["distance_ranges"] == 3
        assert summary["covered_km"] == [0.0, 20.0]
        assert summary["free_delivery_threshold"] == 1000.0
        assert summary["issues"] == 1
