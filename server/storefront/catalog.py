"""
Public catalog endpoints: products, categories, banners, tax rates,
active coupons and pincode checks.

Responses carry Cache-Control hints so the CDN/browser can cache them.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response, status

from .models import PincodeRequest
from .services import delivery
from .services import media
from .settings import settings
from . import db


logger = logging.getLogger(__name__)

router = APIRouter(tags=["catalog"])

PRODUCTS_CACHE = "public, s-maxage=300, stale-while-revalidate=3600"
CATEGORIES_CACHE = "public, s-maxage=600, stale-while-revalidate=7200"
BANNERS_CACHE = "public, s-maxage=300, stale-while-revalidate=600"
NO_CACHE = "no-cache, no-store, must-revalidate"


def _with_image_urls(product: dict) -> dict:
    images = product.get("images") or []
    product["thumbnail_url"] = media.optimized_url(images[0], media.THUMBNAIL_TRANSFORMATION) if images else None
    product["banner_url"] = media.optimized_url(product.get("banner_image"))
    return product


def _server_error(what: str, e: Exception) -> HTTPException:
    logger.error(f"[catalog] Error fetching {what}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to fetch {what}",
        headers={"Cache-Control": NO_CACHE},
    )


@router.get("/products")
async def list_products(response: Response, category_id: Optional[str] = Query(None, alias="categoryId")):
    """Active products, newest first."""
    try:
        products = await db.list_products(active_only=True, category_id=category_id)
    except Exception as e:
        raise _server_error("products", e)
    response.headers["Cache-Control"] = PRODUCTS_CACHE
    return {"products": [_with_image_urls(p) for p in products]}


@router.get("/products/{product_id}")
async def get_product(product_id: str, response: Response):
    try:
        product = await db.get_product(product_id)
    except Exception as e:
        raise _server_error("product", e)
    if not product or not product.get("is_active"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    response.headers["Cache-Control"] = PRODUCTS_CACHE
    return {"product": _with_image_urls(product)}


@router.get("/categories")
async def list_categories(response: Response):
    try:
        categories = await db.list_categories(active_only=True)
    except Exception as e:
        raise _server_error("categories", e)
    response.headers["Cache-Control"] = CATEGORIES_CACHE
    return {"categories": categories}


@router.get("/categories/{category_id}/products")
async def list_category_products(category_id: str, response: Response):
    try:
        category = await db.get_category(category_id)
        if not category or not category.get("is_active"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
        products = await db.list_products(active_only=True, category_id=category_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _server_error("products", e)
    response.headers["Cache-Control"] = PRODUCTS_CACHE
    return {"category": category, "products": [_with_image_urls(p) for p in products]}


@router.get("/banners")
async def list_hero_banners(
    response: Response,
    device_type: str = Query("desktop", alias="deviceType"),
):
    """Active hero banners for a device type, in display order."""
    if device_type not in ("desktop", "mobile"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="deviceType must be desktop or mobile")
    try:
        banners = await db.list_banners("hero", device_type=device_type)
    except Exception as e:
        raise _server_error("banners", e)
    response.headers["Cache-Control"] = BANNERS_CACHE
    return {"banners": banners}


@router.get("/banners/footer")
async def list_footer_banners(response: Response):
    try:
        banners = await db.list_banners("footer")
    except Exception as e:
        raise _server_error("banners", e)
    response.headers["Cache-Control"] = BANNERS_CACHE
    return {
        "desktop": next((b for b in banners if b["device_type"] == "desktop"), None),
        "mobile": next((b for b in banners if b["device_type"] == "mobile"), None),
    }


@router.get("/banners/popup")
async def get_popup_banner(response: Response):
    try:
        banners = await db.list_banners("popup")
    except Exception as e:
        raise _server_error("banners", e)
    response.headers["Cache-Control"] = BANNERS_CACHE
    return {"banner": banners[0] if banners else None}


async def get_tax_rates() -> dict:
    """Active GST rates, falling back to the configured defaults."""
    row = await db.get_active_tax_settings()
    if row:
        return {"cgst_rate": row["cgst_rate"], "sgst_rate": row["sgst_rate"]}
    return {"cgst_rate": settings.default_cgst_rate, "sgst_rate": settings.default_sgst_rate}


@router.get("/tax-settings")
async def get_tax_settings():
    try:
        return await get_tax_rates()
    except Exception as e:
        logger.error(f"[catalog] Error fetching tax settings: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch tax settings",
        )


@router.get("/coupons/active")
async def list_active_coupons():
    """Coupons customers can currently apply (public fields only)."""
    try:
        coupons = await db.list_active_coupons(datetime.now(timezone.utc))
    except Exception as e:
        logger.error(f"[catalog] Error fetching coupons: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch coupons",
        )
    return {
        "coupons": [
            {
                "code": c["code"],
                "type": c["type"],
                "value": c["value"],
                "minOrderAmount": c["min_order_amount"],
                "maxDiscountCap": c["max_discount_cap"],
                "validUntil": c["valid_until"],
                "applicableCategories": c["applicable_categories"],
            }
            for c in coupons
        ]
    }


@router.post("/pincode/validate")
async def validate_pincode(req: PincodeRequest):
    if not req.pincode.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Pincode is required")
    return delivery.validate_pincode(req.pincode)
