"""
Pricing arithmetic: GST, delivery fees, coupon discounts and order totals.

Everything here is pure. Rates and delivery rules are passed in by the
caller (see services/delivery.py for the cached rule lookup).
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Iterable


DEFAULT_CGST_RATE = 9.0
DEFAULT_SGST_RATE = 9.0

# Delivery fee = (base + per_km * distance) * zone multiplier
ZONE_BASE_FEE = 30.0
ZONE_PER_KM_FEE = 5.0
DEFAULT_ZONE_MULTIPLIER = 1.2

ZONE_MULTIPLIERS: Dict[str, float] = {
    "Zone A - Express": 1.0,
    "Zone B - Standard": 1.2,
    "Zone C - Extended": 1.5,
    "Zone D - Outskirts": 2.0,
    "Zone E - Remote": 2.5,
}


def round_money(value: float) -> float:
    """Round half-up to 2 decimal places."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def round_rupee(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_paise(amount: float) -> int:
    """Rupees to the gateway's minor unit."""
    return round_rupee(amount * 100)


def from_paise(paise: int) -> float:
    return round_money(paise / 100)


def calculate_tax_amounts(
    taxable_amount: float,
    cgst_rate: float = DEFAULT_CGST_RATE,
    sgst_rate: float = DEFAULT_SGST_RATE,
) -> Dict[str, float]:
    """
    Split GST into its central and state halves.

    Each half is rounded on its own and the total is their sum, so
    cgst + sgst == total always holds.
    """
    base = max(0.0, float(taxable_amount))
    cgst = round_money(base * cgst_rate / 100)
    sgst = round_money(base * sgst_rate / 100)
    return {"cgst": cgst, "sgst": sgst, "total": round_money(cgst + sgst)}


def get_zone_multiplier(zone: Optional[str]) -> float:
    if not zone:
        return DEFAULT_ZONE_MULTIPLIER
    return ZONE_MULTIPLIERS.get(zone, DEFAULT_ZONE_MULTIPLIER)


def calculate_zone_delivery_charge(distance_km: float, zone: Optional[str] = None) -> int:
    """Distance-based fee scaled by the zone multiplier, in whole rupees."""
    base = ZONE_BASE_FEE + max(0.0, distance_km) * ZONE_PER_KM_FEE
    return round_rupee(base * get_zone_multiplier(zone))


def calculate_total_amount(
    item_total: float,
    delivery_charge: float = 0,
    discount: float = 0,
    cgst_rate: float = DEFAULT_CGST_RATE,
    sgst_rate: float = DEFAULT_SGST_RATE,
) -> Dict[str, float]:
    """
    Full order breakdown.

    Tax is charged on the discounted item total; delivery is not taxed.
    """
    discount = min(max(0.0, discount), item_total)
    tax = calculate_tax_amounts(item_total - discount, cgst_rate, sgst_rate)
    total = round_money(item_total + delivery_charge - discount + tax["total"])
    return {
        "item_total": round_money(item_total),
        "delivery_charge": round_money(delivery_charge),
        "discount": round_money(discount),
        "cgst": tax["cgst"],
        "sgst": tax["sgst"],
        "tax_total": tax["total"],
        "total_amount": total,
    }


# --- Coupons ---


def coupon_eligible_subtotal(
    subtotal: float,
    applicable_categories: Optional[Iterable[str]],
    category_totals: Optional[Dict[str, float]] = None,
) -> float:
    """Portion of the subtotal a coupon applies to."""
    categories = [c.lower() for c in (applicable_categories or []) if c]
    if not categories or category_totals is None:
        return subtotal
    return round_money(
        sum(amount for name, amount in category_totals.items() if name and name.lower() in categories)
    )


def compute_coupon_discount(
    coupon: dict,
    subtotal: float,
    category_totals: Optional[Dict[str, float]] = None,
) -> float:
    eligible = coupon_eligible_subtotal(
        subtotal, coupon.get("applicable_categories"), category_totals
    )
    if eligible <= 0:
        return 0.0
    value = float(coupon["value"])
    if coupon["type"] == "percentage":
        discount = eligible * value / 100
        cap = coupon.get("max_discount_cap")
        if cap is not None and cap > 0:
            discount = min(discount, float(cap))
    else:
        discount = min(value, eligible)
    return round_money(discount)


# --- Delivery rules ---


def _distance_rules(rules: List[dict]) -> List[dict]:
    ranges = [
        r for r in rules
        if r.get("type") == "distance" and r.get("start_km") is not None and r.get("end_km") is not None
    ]
    return sorted(ranges, key=lambda r: float(r["start_km"]))


def _order_value_rule(rules: List[dict]) -> Optional[dict]:
    candidates = [
        r for r in rules
        if r.get("type") == "order_value" and r.get("order_value_threshold") is not None
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda r: float(r["order_value_threshold"]))


def resolve_delivery_charge(
    distance_km: float,
    order_value: float,
    rules: List[dict],
    zone: Optional[str] = None,
    fallback: float = 80.0,
) -> dict:
    """
    Pick the delivery charge for an order.

    Order:
    1. Order-value rule (free or fixed) once the threshold is reached
    2. The distance range containing distance_km; below the first range the
       first range applies, beyond the last range the last one applies, and a
       distance between two ranges gets the flat fallback charge
    3. Zone formula when no distance ranges are configured
    """
    value_rule = _order_value_rule(rules)
    if value_rule and order_value >= float(value_rule["order_value_threshold"]):
        if value_rule.get("delivery_type") == "free":
            charge = 0.0
        else:
            charge = float(value_rule.get("fixed_price") or 0)
        return {"charge": round_money(charge), "method": "order_value", "rule": value_rule}

    ranges = _distance_rules(rules)
    if ranges:
        for rule in ranges:
            if float(rule["start_km"]) <= distance_km <= float(rule["end_km"]):
                return {"charge": round_money(float(rule["price"])), "method": "distance", "rule": rule}
        if distance_km < float(ranges[0]["start_km"]):
            chosen = ranges[0]
        elif distance_km > float(ranges[-1]["end_km"]):
            chosen = ranges[-1]
        else:
            return {"charge": round_money(fallback), "method": "fallback", "rule": None}
        return {"charge": round_money(float(chosen["price"])), "method": "distance", "rule": chosen}

    return {
        "charge": float(calculate_zone_delivery_charge(distance_km, zone)),
        "method": "zone",
        "rule": None,
    }


def validate_delivery_ranges(rules: List[dict]) -> List[dict]:
    """Report invalid, overlapping and non-contiguous distance ranges."""
    issues = []
    ranges = _distance_rules(rules)
    for rule in ranges:
        if float(rule["start_km"]) >= float(rule["end_km"]):
            issues.append({
                "type": "invalid_range",
                "rule_id": rule.get("id"),
                "message": f"Start ({rule['start_km']} km) must be less than end ({rule['end_km']} km)",
            })
    for current, nxt in zip(ranges, ranges[1:]):
        end, next_start = float(current["end_km"]), float(nxt["start_km"])
        if end > next_start:
            issues.append({
                "type": "overlap",
                "rule_ids": [current.get("id"), nxt.get("id")],
                "message": f"Range ending at {end} km overlaps range starting at {next_start} km",
            })
        elif end < next_start:
            issues.append({
                "type": "gap",
                "rule_ids": [current.get("id"), nxt.get("id")],
                "message": f"No range covers {end} km to {next_start} km",
            })
    return issues


def summarize_delivery_rules(rules: List[dict]) -> dict:
    ranges = _distance_rules(rules)
    value_rule = _order_value_rule(rules)
    prices = [float(r["price"]) for r in ranges if r.get("price") is not None]
    return {
        "distance_ranges": len(ranges),
        "covered_km": [float(ranges[0]["start_km"]), float(ranges[-1]["end_km"])] if ranges else None,
        "min_price": min(prices) if prices else None,
        "max_price": max(prices) if prices else None,
        "free_delivery_threshold": (
            float(value_rule["order_value_threshold"])
            if value_rule and value_rule.get("delivery_type") == "free" else None
        ),
        "issues": len(validate_delivery_ranges(rules)),
    }
