"""
Admin back-office API.

All endpoints require admin authentication: an env service key
(X-API-Key) or a customer session whose account has the admin role.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

import asyncpg
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import require_admin, UserContext
from .models import (
    CategoryRequest, CategoryUpdateRequest, CategoryOrderRequest, ProductRequest, ProductUpdateRequest,
    BannerSaveRequest, PopupBannerRequest, CouponRequest, CouponPatchRequest,
    DeliveryChargeRequest, DeliveryChargeUpdateRequest, TaxSettingsRequest,
    OrderStatusUpdateRequest, UserRoleRequest, ImageDeleteRequest,
)
from .services import delivery
from .services import mailer
from .services import media
from .services.coupons import coupon_usage_stats
from .settings import settings
from . import db
from . import pricing


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

DASHBOARD_FILTERS = ("today", "weekly", "monthly", "last3months", "last6months", "overall", "custom")

# Allowed next statuses; delivered and cancelled are final
ORDER_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"preparing", "cancelled"},
    "preparing": {"ready", "cancelled"},
    "ready": {"out_for_delivery", "cancelled"},
    "out_for_delivery": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

STATUS_TIMESTAMPS = {
    "preparing": "cooking_started_at",
    "ready": "ready_at",
    "out_for_delivery": "picked_up_at",
    "delivered": "delivered_at",
}


# --- Response Models ---


class DashboardStat(BaseModel):
    """Current period value compared with the previous period."""
    value: float = Field(..., description="Value for the selected period")
    previous: float = Field(0, description="Value for the preceding period of the same length")
    change: float = Field(0, description="Percentage change from the previous period")
    trend: str = Field("up", description="up or down")


class DashboardResponse(BaseModel):
    filter: str
    start: Optional[datetime] = Field(None, description="Period start (null for overall)")
    end: datetime
    orders: DashboardStat
    revenue: DashboardStat
    users: DashboardStat
    recent_orders: List[dict] = Field(default_factory=list)
    top_products: List[dict] = Field(default_factory=list)


class ReviewStats(BaseModel):
    total: int
    averageRating: float
    pending: int
    reported: int


# --- Helpers ---


def _server_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"[admin] Error {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}.",
    )


def _add_months(day: date, months: int) -> date:
    """First of the month, `months` away from day's month."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def resolve_period(
    filter: str,
    now: datetime,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Tuple[Optional[datetime], datetime, Optional[datetime], Optional[datetime]]:
    """
    Date range for a dashboard filter and the preceding range it is
    compared with: (start, end, previous_start, previous_end).

    Ranges are calendar based (day, week starting Sunday, month). An
    unknown filter, or custom without both dates, behaves as monthly.
    """
    today = now.date()
    if filter == "custom" and start_date and end_date:
        start, end = _midnight(start_date), _midnight(end_date)
        span = timedelta(days=(end_date - start_date).days)
        return start, end, start - span, start
    if filter == "today":
        start = _midnight(today)
        return start, start + timedelta(days=1), start - timedelta(days=1), start
    if filter == "weekly":
        # Python weekday(): Monday=0 ... Sunday=6
        start = _midnight(today - timedelta(days=(today.weekday() + 1) % 7))
        return start, start + timedelta(days=7), start - timedelta(days=7), start
    if filter == "last3months":
        return (
            _midnight(_add_months(today, -3)),
            _midnight(_add_months(today, 1)),
            _midnight(_add_months(today, -6)),
            _midnight(_add_months(today, -3)),
        )
    if filter == "last6months":
        return (
            _midnight(_add_months(today, -6)),
            _midnight(_add_months(today, 1)),
            _midnight(_add_months(today, -12)),
            _midnight(_add_months(today, -6)),
        )
    if filter == "overall":
        return None, now, None, None
    return (
        _midnight(_add_months(today, 0)),
        _midnight(_add_months(today, 1)),
        _midnight(_add_months(today, -1)),
        _midnight(_add_months(today, 0)),
    )


def percent_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def _stat(current: float, previous: Optional[float]) -> DashboardStat:
    if previous is None:
        return DashboardStat(value=current, previous=0, change=0, trend="up")
    change = percent_change(current, previous)
    return DashboardStat(value=current, previous=previous, change=change, trend="up" if change >= 0 else "down")


# --- Dashboard ---


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    filter: str = Query("monthly"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    admin: UserContext = Depends(require_admin),
):
    """
    Store performance for a period.

    Filters: today, weekly, monthly (default), last3months, last6months,
    overall, custom (with startDate and endDate). Each figure is compared
    with the preceding period of the same length.
    """
    if filter not in DASHBOARD_FILTERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"filter must be one of: {', '.join(DASHBOARD_FILTERS)}",
        )
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="startDate must be before endDate")

    now = datetime.now(timezone.utc)
    start, end, prev_start, prev_end = resolve_period(filter, now, start_date, end_date)
    try:
        current = await db.get_period_stats(start, end)
        previous = await db.get_period_stats(prev_start, prev_end) if prev_end else None
        recent = await db.get_recent_orders(limit=5)
        top = await db.get_top_products(start, end, limit=3)
    except Exception as e:
        raise _server_error("load dashboard", e)

    return DashboardResponse(
        filter=filter,
        start=start,
        end=end,
        orders=_stat(current["orders"], previous["orders"] if previous else None),
        revenue=_stat(current["revenue"], previous["revenue"] if previous else None),
        users=_stat(current["new_users"], previous["new_users"] if previous else None),
        recent_orders=recent,
        top_products=top,
    )


# --- Orders ---


@router.get("/orders")
async def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: UserContext = Depends(require_admin),
):
    try:
        result = await db.list_orders(status_filter, payment_status, limit=limit, offset=offset)
    except Exception as e:
        raise _server_error("list orders", e)
    return {**result, "limit": limit, "offset": offset}


@router.get("/orders/{order_id}")
async def get_order(order_id: str, admin: UserContext = Depends(require_admin)):
    try:
        order = await db.get_order(order_id)
        if not order:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        order["items"] = await db.get_order_items(order_id)
        return {"order": order}
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("fetch order", e)


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: OrderStatusUpdateRequest,
    admin: UserContext = Depends(require_admin),
):
    """
    Move an order along pending -> confirmed -> preparing -> ready ->
    out_for_delivery -> delivered. Any non-final order can be cancelled.

    out_for_delivery needs the delivery person's name and contact, and
    emails the customer.
    """
    try:
        order = await db.get_order(order_id)
        if not order:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

        current = order["status"]
        if req.status not in ORDER_TRANSITIONS.get(current, set()):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Cannot change order status from {current} to {req.status}",
            )

        fields = {"status": req.status}
        if req.status == "out_for_delivery":
            if not (req.delivery_person_name and req.delivery_person_contact):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Delivery person name and contact are required",
                )
            fields["delivery_person_name"] = req.delivery_person_name
            fields["delivery_person_contact"] = req.delivery_person_contact
        if req.status in STATUS_TIMESTAMPS:
            fields[STATUS_TIMESTAMPS[req.status]] = datetime.now(timezone.utc)

        updated = await db.update_order_status(order_id, fields)
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("update order status", e)

    logger.info(f"[admin] Order {order['order_number']} {current} -> {req.status}")

    if req.status == "out_for_delivery" and order.get("user_email"):
        try:
            await mailer.send_out_for_delivery(
                order["user_email"],
                order["order_number"],
                req.delivery_person_name,
                req.delivery_person_contact,
            )
        except mailer.MailDeliveryError as e:
            logger.warning(f"[admin] Out-for-delivery email for {order['order_number']} not sent: {e}")

    return {"success": True, "order": updated}


# --- Reviews ---


def review_to_client(row: dict) -> dict:
    rating = row.get("customer_rating") or 0
    text = row.get("customer_feedback") or ""
    return {
        "id": row["id"],
        "orderNumber": row["order_number"],
        "product": {"name": row.get("product_name") or "Unknown product"},
        "rating": rating,
        "review": text,
        "customer": {
            "name": row.get("customer_name") or "Unknown customer",
            "email": row.get("customer_email"),
            "verified": row.get("payment_status") == "paid",
        },
        "date": row.get("updated_at") or row.get("created_at"),
        "status": "pending" if not text or rating == 0 else "published",
    }


def review_stats(reviews: List[dict]) -> ReviewStats:
    rated = [r["rating"] for r in reviews if r["rating"]]
    return ReviewStats(
        total=len(reviews),
        averageRating=round(sum(rated) / len(rated), 2) if rated else 0,
        pending=sum(1 for r in reviews if r["status"] == "pending"),
        reported=sum(1 for r in reviews if r["status"] == "reported"),
    )


@router.get("/reviews")
async def list_reviews(admin: UserContext = Depends(require_admin)):
    try:
        rows = await db.list_reviews()
    except Exception as e:
        raise _server_error("load reviews", e)
    reviews = [review_to_client(r) for r in rows]
    return {"reviews": reviews, "stats": review_stats(reviews)}


# --- Categories ---


@router.get("/categories")
async def list_categories(admin: UserContext = Depends(require_admin)):
    try:
        return {"categories": await db.list_categories(active_only=False)}
    except Exception as e:
        raise _server_error("list categories", e)


@router.post("/categories", status_code=status.HTTP_201_CREATED)
async def create_category(req: CategoryRequest, admin: UserContext = Depends(require_admin)):
    try:
        category = await db.create_category(req.model_dump())
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category already exists")
    except Exception as e:
        raise _server_error("create category", e)
    return {"success": True, "category": category}


@router.put("/categories/order")
async def reorder_categories(req: CategoryOrderRequest, admin: UserContext = Depends(require_admin)):
    """Set category positions to the order of the given ids."""
    try:
        await db.reorder_categories(req.category_ids)
    except Exception as e:
        raise _server_error("reorder categories", e)
    return {"success": True}


@router.put("/categories/{category_id}")
async def update_category(
    category_id: str,
    req: CategoryUpdateRequest,
    admin: UserContext = Depends(require_admin),
):
    try:
        category = await db.update_category(category_id, req.model_dump(exclude_unset=True))
        if not category:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
        return {"success": True, "category": category}
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        raise _server_error("update category", e)


@router.delete("/categories/{category_id}")
async def delete_category(category_id: str, admin: UserContext = Depends(require_admin)):
    try:
        if not await db.delete_category(category_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("delete category", e)


# --- Products ---


def _product_fields(req, partial: bool = False) -> dict:
    fields = req.model_dump(exclude_unset=partial)
    for key in ("weight_options", "piece_options"):
        options = getattr(req, key)
        if key in fields and options is not None:
            fields[key] = [o.model_dump(by_alias=True) for o in options]
    return fields


@router.get("/products")
async def list_products(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    admin: UserContext = Depends(require_admin),
):
    try:
        return {"products": await db.list_products(active_only=False, category_id=category_id)}
    except Exception as e:
        raise _server_error("list products", e)


@router.get("/products/{product_id}")
async def get_product(product_id: str, admin: UserContext = Depends(require_admin)):
    try:
        product = await db.get_product(product_id)
    except Exception as e:
        raise _server_error("fetch product", e)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return {"product": product}


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(req: ProductRequest, admin: UserContext = Depends(require_admin)):
    if req.selling_type in ("weight", "both") and not req.weight_options:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one weight option is required")
    if req.selling_type in ("piece", "both") and not req.piece_options:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one piece option is required")
    try:
        product = await db.create_product(_product_fields(req))
    except Exception as e:
        raise _server_error("create product", e)
    logger.info(f"[admin] Created product {product['id']} ({product['name']})")
    return {"success": True, "product": product}


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    req: ProductUpdateRequest,
    admin: UserContext = Depends(require_admin),
):
    try:
        product = await db.update_product(product_id, _product_fields(req, partial=True))
        if not product:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        return {"success": True, "product": product}
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        raise _server_error("update product", e)


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, admin: UserContext = Depends(require_admin)):
    try:
        if not await db.delete_product(product_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("delete product", e)


# --- Banners ---


@router.get("/banners")
async def list_banners(
    banner_type: str = Query("hero", alias="type"),
    device_type: Optional[str] = Query(None, alias="deviceType"),
    admin: UserContext = Depends(require_admin),
):
    try:
        return {"banners": await db.list_banners(banner_type, device_type=device_type, active_only=False)}
    except Exception as e:
        raise _server_error("list banners", e)


@router.post("/banners")
async def save_banners(req: BannerSaveRequest, admin: UserContext = Depends(require_admin)):
    """
    Upsert banners by (type, device, position). Footer banners only use
    position 0. Partial failures return 207 with the per-banner errors.
    """
    banners = req.banners[:1] if req.type == "footer" else req.banners
    saved, errors = [], []
    for index, banner in enumerate(banners):
        position = 0 if req.type == "footer" else (banner.position if banner.position is not None else index)
        try:
            saved.append(await db.upsert_banner(
                req.type,
                req.device_type,
                position,
                banner.image_url,
                banner.redirect_url,
                banner.is_active,
            ))
        except Exception as e:
            logger.error(f"[admin] Failed to save {req.type}/{req.device_type} banner at {position}: {e}")
            errors.append({"position": position, "error": "Failed to save banner"})

    if errors and not saved:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save banners.")
    if errors:
        return JSONResponse(
            status_code=207,
            content=jsonable_encoder({"success": False, "banners": saved, "errors": errors}),
        )
    return {"success": True, "banners": saved}


@router.post("/banners/popup")
async def save_popup_banner(req: PopupBannerRequest, admin: UserContext = Depends(require_admin)):
    try:
        banner = await db.upsert_banner("popup", "desktop", 0, req.image_url, req.redirect_url, req.is_active)
    except Exception as e:
        raise _server_error("save popup banner", e)
    return {"success": True, "banner": banner}


@router.delete("/banners/{banner_id}")
async def delete_banner(banner_id: str, admin: UserContext = Depends(require_admin)):
    try:
        if not await db.delete_banner(banner_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Banner not found")
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("delete banner", e)


# --- Coupons ---


def _coupon_with_stats(coupon: dict) -> dict:
    return {**coupon, "usage": coupon_usage_stats(coupon)}


@router.get("/coupons")
async def list_coupons(admin: UserContext = Depends(require_admin)):
    try:
        coupons = await db.list_coupons()
    except Exception as e:
        raise _server_error("list coupons", e)
    return {"coupons": [_coupon_with_stats(c) for c in coupons]}


@router.post("/coupons", status_code=status.HTTP_201_CREATED)
async def create_coupon(req: CouponRequest, admin: UserContext = Depends(require_admin)):
    if req.valid_from >= req.valid_until:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="validFrom must be before validUntil")
    if req.type == "percentage" and req.value > 100:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage discount cannot exceed 100")
    try:
        coupon = await db.create_coupon(req.model_dump())
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")
    except Exception as e:
        raise _server_error("create coupon", e)
    logger.info(f"[admin] Created coupon {coupon['code']}")
    return {"success": True, "coupon": _coupon_with_stats(coupon)}


@router.put("/coupons/{coupon_id}")
async def update_coupon(
    coupon_id: str,
    req: CouponRequest,
    admin: UserContext = Depends(require_admin),
):
    if req.valid_from >= req.valid_until:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="validFrom must be before validUntil")
    try:
        coupon = await db.update_coupon(coupon_id, req.model_dump())
        if not coupon:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
        return {"success": True, "coupon": _coupon_with_stats(coupon)}
    except HTTPException:
        raise
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")
    except Exception as e:
        raise _server_error("update coupon", e)


@router.patch("/coupons/{coupon_id}")
async def toggle_coupon(
    coupon_id: str,
    req: CouponPatchRequest,
    admin: UserContext = Depends(require_admin),
):
    """Only is_active can be patched."""
    if req.is_active is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields provided for update")
    try:
        coupon = await db.update_coupon(coupon_id, {"is_active": req.is_active})
        if not coupon:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
        return {"success": True, "coupon": _coupon_with_stats(coupon)}
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("update coupon", e)


@router.delete("/coupons/{coupon_id}")
async def delete_coupon(coupon_id: str, admin: UserContext = Depends(require_admin)):
    try:
        if not await db.delete_coupon(coupon_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("delete coupon", e)


# --- Delivery charges ---


# Fields that change whether a stored rule is complete
RULE_SHAPE_FIELDS = {
    "type", "order_value_threshold", "delivery_type", "fixed_price", "start_km", "end_km", "price",
}


def check_delivery_rule(rule: dict) -> Optional[str]:
    """Validation message for a delivery rule, or None when it is complete."""
    if rule.get("type") == "order_value":
        if rule.get("order_value_threshold") is None or not rule.get("delivery_type"):
            return "Missing required fields for order value"
        if rule["delivery_type"] == "fixed" and rule.get("fixed_price") is None:
            return "Missing required fields for order value"
        return None
    if rule.get("start_km") is None or rule.get("end_km") is None or rule.get("price") is None:
        return "Missing required fields for distance"
    if float(rule["start_km"]) >= float(rule["end_km"]):
        return "Start distance must be less than end distance"
    return None


@router.get("/delivery-charges")
async def list_delivery_charges(admin: UserContext = Depends(require_admin)):
    try:
        rules = await db.list_delivery_charges(active_only=False)
    except Exception as e:
        raise _server_error("list delivery charges", e)
    active = [r for r in rules if r.get("is_active")]
    return {
        "rules": rules,
        "issues": pricing.validate_delivery_ranges(active),
        "summary": pricing.summarize_delivery_rules(active),
    }


@router.post("/delivery-charges", status_code=status.HTTP_201_CREATED)
async def create_delivery_charge(req: DeliveryChargeRequest, admin: UserContext = Depends(require_admin)):
    fields = req.model_dump()
    problem = check_delivery_rule(fields)
    if problem:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)
    try:
        rule = await db.create_delivery_charge(fields)
    except Exception as e:
        raise _server_error("create delivery charge", e)
    delivery.rules_cache.invalidate()
    return {"success": True, "rule": rule}


@router.put("/delivery-charges/{rule_id}")
async def update_delivery_charge(
    rule_id: str,
    req: DeliveryChargeUpdateRequest,
    admin: UserContext = Depends(require_admin),
):
    fields = req.model_dump(exclude_unset=True)
    if fields.get("type") is None:
        fields.pop("type", None)
    try:
        if RULE_SHAPE_FIELDS & fields.keys():
            current = next((r for r in await db.list_delivery_charges() if r["id"] == rule_id), None)
            if current:
                problem = check_delivery_rule({**current, **fields})
                if problem:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)
        rule = await db.update_delivery_charge(rule_id, fields)
        if not rule:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Delivery charge not found")
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        raise _server_error("update delivery charge", e)
    delivery.rules_cache.invalidate()
    return {"success": True, "rule": rule}


@router.delete("/delivery-charges/{rule_id}")
async def delete_delivery_charge(rule_id: str, admin: UserContext = Depends(require_admin)):
    try:
        if not await db.delete_delivery_charge(rule_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Delivery charge not found")
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("delete delivery charge", e)
    delivery.rules_cache.invalidate()
    return {"success": True}


# --- Tax settings ---


@router.post("/tax-settings")
async def save_tax_settings(req: TaxSettingsRequest, admin: UserContext = Depends(require_admin)):
    try:
        row = await db.save_tax_settings(req.cgst_rate, req.sgst_rate)
    except Exception as e:
        raise _server_error("save tax settings", e)
    logger.info(f"[admin] Tax settings updated: CGST {req.cgst_rate}% SGST {req.sgst_rate}%")
    return {"success": True, "settings": row}


# --- Users ---


@router.get("/users")
async def list_users(
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: UserContext = Depends(require_admin),
):
    try:
        result = await db.list_users(limit=limit, offset=offset, search=search)
    except Exception as e:
        raise _server_error("list users", e)
    return {**result, "limit": limit, "offset": offset}


@router.patch("/users/{user_id}/role")
async def set_user_role(
    user_id: str,
    req: UserRoleRequest,
    admin: UserContext = Depends(require_admin),
):
    if admin.user_id == user_id and req.role != "admin":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot remove your own admin role")
    try:
        user = await db.set_user_role(user_id, req.role)
        if not user:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("update user role", e)
    logger.info(f"[admin] {user['email']} role set to {req.role}")
    return {"success": True, "user": user}


# --- Image uploads ---


@router.post("/uploads/image")
async def upload_image(
    image: Optional[UploadFile] = File(None),
    folder: Optional[str] = Form(None),
    public_id: Optional[str] = Form(None),
    admin: UserContext = Depends(require_admin),
):
    """Upload an image (multipart field `image`) to the CDN."""
    if image is None or not image.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")
    content_type = image.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be an image")
    content = await image.read()
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File size must be less than 5MB")

    try:
        result = await media.upload_image(content, image.filename, content_type, folder=folder, public_id=public_id)
    except media.MediaUploadError as e:
        raise _server_error("upload image", e)
    return {
        "success": True,
        "data": {
            **result,
            "url": result["secure_url"],
            "optimized_url": media.optimized_url(result["secure_url"]),
            "thumbnail_url": media.thumbnail_url(result["secure_url"]),
        },
    }


@router.delete("/uploads/image")
async def delete_image(req: ImageDeleteRequest, admin: UserContext = Depends(require_admin)):
    try:
        deleted = await media.delete_image(req.public_id)
    except media.MediaUploadError as e:
        raise _server_error("delete image", e)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return {"success": True}
