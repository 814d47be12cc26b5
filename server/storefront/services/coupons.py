"""
Coupon validation, discount calculation and usage statistics.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from .. import db
from .. import pricing


logger = logging.getLogger(__name__)


class CouponError(Exception):
    """A coupon cannot be applied. status_code is the HTTP status to report."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_coupon_active(coupon: dict, now: Optional[datetime] = None) -> bool:
    now = now or _utcnow()
    return bool(coupon.get("is_active")) and coupon["valid_from"] <= now <= coupon["valid_until"]


def _enforced_usage_limit(coupon: dict) -> Optional[int]:
    # usage_limit only counts while the coupon has enable_usage_limit set
    if coupon.get("enable_usage_limit") and coupon.get("usage_limit"):
        return coupon["usage_limit"]
    return None


def check_coupon_rules(
    coupon: Optional[dict],
    order_value: float,
    user_uses: int = 0,
    now: Optional[datetime] = None,
) -> dict:
    """Raise CouponError when the coupon cannot be used for this order."""
    now = now or _utcnow()
    if not coupon or not coupon.get("is_active"):
        raise CouponError("Coupon not found or inactive", status_code=404)
    if now < coupon["valid_from"]:
        raise CouponError("Coupon is not yet valid")
    if now > coupon["valid_until"]:
        raise CouponError("Coupon has expired")
    usage_limit = _enforced_usage_limit(coupon)
    if usage_limit and (coupon.get("times_used") or 0) >= usage_limit:
        raise CouponError("Coupon usage limit reached")
    per_user = coupon.get("usage_per_user") or 1
    if user_uses >= per_user:
        raise CouponError("You have already used this coupon")
    min_order = float(coupon.get("min_order_amount") or 0)
    if order_value < min_order:
        raise CouponError(f"Minimum order amount of ₹{min_order:g} required")
    return coupon


async def validate_coupon_usage(
    code: str,
    user_id: Optional[str],
    order_value: float,
    now: Optional[datetime] = None,
) -> dict:
    """Look a coupon up by code and check it for this user and order value."""
    coupon = await db.get_coupon_by_code(code)
    user_uses = 0
    if coupon and user_id:
        user_uses = await db.count_user_coupon_uses(user_id, coupon["code"])
    return check_coupon_rules(coupon, order_value, user_uses, now)


async def apply_coupon(
    code: str,
    user_id: Optional[str],
    subtotal: float,
    category_totals: Optional[Dict[str, float]] = None,
) -> dict:
    """Validate a coupon and compute its discount. Returns {coupon, discount}."""
    coupon = await validate_coupon_usage(code, user_id, subtotal)
    discount = pricing.compute_coupon_discount(coupon, subtotal, category_totals)
    if discount <= 0:
        raise CouponError("Coupon does not apply to the items in your cart")
    return {"coupon": coupon, "discount": discount}


def coupon_usage_stats(coupon: dict) -> dict:
    times_used = coupon.get("times_used") or 0
    usage_limit = _enforced_usage_limit(coupon)
    if usage_limit:
        remaining = max(0, usage_limit - times_used)
        percentage = round(times_used / usage_limit * 100, 1)
    else:
        remaining = None
        percentage = None
    return {
        "timesUsed": times_used,
        "usageLimit": usage_limit,
        "remainingUses": remaining,
        "usagePercentage": percentage,
        "totalRevenue": coupon.get("total_revenue") or 0,
        "lastUsedAt": coupon.get("last_used_at"),
    }
