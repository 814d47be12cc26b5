"""
Cart and favorites endpoints. All require a customer session.
"""

import logging

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Response, status

from .auth import get_current_user, UserContext
from .models import (
    CartAddRequest, CartUpdateRequest, CartRemoveRequest, CartSyncRequest, FavoriteRequest,
)
from . import db


logger = logging.getLogger(__name__)

router = APIRouter(tags=["cart"])

DEFAULT_VARIANT = "Regular"
DEFAULT_ORDER_TYPE = "weight"
DEFAULT_IMAGE = "/placeholder.svg"
DEFAULT_CATEGORY = "Product"

FAVORITES_CACHE = "private, max-age=120, stale-while-revalidate=600"


async def resolve_user(user: UserContext) -> dict:
    """Load the session's user row, 404 when the account no longer exists."""
    row = await db.get_user_by_email(user.email or "")
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return row


def cart_item_to_client(item: dict) -> dict:
    return {
        "id": item["id"],
        "productId": item["product_id"],
        "name": item["product_name"],
        "price": item["price"],
        "quantity": item["quantity"],
        "image": item["product_image"],
        "category": item["category"],
        "variant": item["variant"],
        "orderType": item["order_type"],
        "addTextOnCake": item["add_text_on_cake"],
        "addCandles": item["add_candles"],
        "addKnife": item["add_knife"],
        "addMessageCard": item["add_message_card"],
        "cakeText": item["cake_text"],
        "giftCardText": item["gift_card_text"],
    }


def _cart_response(cart: dict, items: list) -> dict:
    client_items = [cart_item_to_client(i) for i in items]
    return {
        "cartId": cart["id"],
        "items": client_items,
        "itemCount": sum(i["quantity"] for i in client_items),
        "subtotal": round(sum(i["price"] * i["quantity"] for i in client_items), 2),
    }


def _fail(action: str, e: Exception) -> HTTPException:
    logger.error(f"[cart] Error {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


@router.get("/cart")
async def get_cart(user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        cart = await db.get_or_create_cart(row["id"])
        items = await db.list_cart_items(cart["id"])
        return _cart_response(cart, items)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("fetch cart", e)


@router.post("/cart/add")
async def add_to_cart(req: CartAddRequest, user: UserContext = Depends(get_current_user)):
    """
    Add an item. The same product/variant/order type increments the
    existing line instead of adding a duplicate.
    """
    try:
        row = await resolve_user(user)
        cart = await db.get_or_create_cart(row["id"])
        item = await db.add_cart_item(cart["id"], {
            "product_id": req.id,
            "product_name": req.name,
            "product_image": req.image or DEFAULT_IMAGE,
            "category": req.category or DEFAULT_CATEGORY,
            "variant": req.variant or DEFAULT_VARIANT,
            "order_type": req.order_type or DEFAULT_ORDER_TYPE,
            "price": req.price,
            "quantity": req.quantity,
            "add_text_on_cake": req.add_text_on_cake,
            "add_candles": req.add_candles,
            "add_knife": req.add_knife,
            "add_message_card": req.add_message_card,
            "cake_text": req.cake_text,
            "gift_card_text": req.gift_card_text,
        })
        return {"success": True, "item": cart_item_to_client(item)}
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("add item to cart", e)


@router.put("/cart/update")
async def update_cart_item(req: CartUpdateRequest, user: UserContext = Depends(get_current_user)):
    if req.quantity < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Quantity cannot be negative")
    try:
        row = await resolve_user(user)
        cart = await db.get_or_create_cart(row["id"])
        touched = await db.set_cart_item_quantity(cart["id"], req.product_id, req.quantity, req.variant)
        if not touched:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found in cart")
        return {"success": True, "removed": req.quantity == 0}
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("update cart item", e)


@router.delete("/cart/remove")
async def remove_cart_item(req: CartRemoveRequest, user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        cart = await db.get_or_create_cart(row["id"])
        removed = await db.remove_cart_item(cart["id"], req.product_id, req.variant)
        return {"success": True, "removed": removed}
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("remove cart item", e)


@router.delete("/cart/clear")
async def clear_cart(user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        cart = await db.get_or_create_cart(row["id"])
        removed = await db.clear_cart(cart["id"])
        return {"success": True, "removed": removed}
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("clear cart", e)


@router.post("/cart/sync")
async def sync_cart(req: CartSyncRequest, user: UserContext = Depends(get_current_user)):
    """Merge a signed-out (local) cart into the stored cart after login."""
    try:
        row = await resolve_user(user)
        cart = await db.get_or_create_cart(row["id"])
        merged: dict = {}
        # collapse duplicates in the local cart before merging
        for item in req.local_cart_items:
            variant = item.variant or DEFAULT_VARIANT
            key = (item.id, variant)
            if key in merged:
                merged[key]["quantity"] += item.quantity
                continue
            merged[key] = {
                "product_id": item.id,
                "product_name": item.name,
                "product_image": item.image or DEFAULT_IMAGE,
                "category": item.category or DEFAULT_CATEGORY,
                "variant": variant,
                "order_type": item.order_type or DEFAULT_ORDER_TYPE,
                "price": item.price,
                "quantity": item.quantity,
            }
        if merged:
            items = await db.merge_cart_items(cart["id"], list(merged.values()))
        else:
            items = await db.list_cart_items(cart["id"])
        return _cart_response(cart, items)
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("sync cart", e)


# --- Favorites ---


def favorite_to_client(fav: dict) -> dict:
    return {
        "id": fav["product_id"],
        "name": fav["product_name"],
        "price": fav["product_price"],
        "image": fav["product_image"],
        "category": fav["product_category"],
        "description": fav["product_description"],
        "rating": fav["product_rating"],
        "isVeg": fav["is_veg"],
        "addedAt": fav["created_at"],
    }


@router.get("/favorites")
async def list_favorites(response: Response, user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        favorites = await db.list_favorites(row["id"])
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("fetch favorites", e)
    response.headers["Cache-Control"] = FAVORITES_CACHE
    return {"favorites": [favorite_to_client(f) for f in favorites]}


@router.post("/favorites", status_code=status.HTTP_201_CREATED)
async def add_favorite(req: FavoriteRequest, user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        if await db.get_favorite(row["id"], req.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product already in favorites")
        fav = await db.add_favorite(row["id"], {
            "product_id": req.id,
            "product_name": req.name,
            "product_price": req.price,
            "product_image": req.image,
            "product_category": req.category,
            "product_description": req.description,
            "product_rating": req.rating,
            "is_veg": req.is_veg,
        })
        return {"success": True, "favorite": favorite_to_client(fav)}
    except HTTPException:
        raise
    except asyncpg.UniqueViolationError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product already in favorites")
    except Exception as e:
        raise _fail("add favorite", e)


@router.delete("/favorites/{product_id}")
async def remove_favorite(product_id: str, user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        if not await db.remove_favorite(row["id"], product_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Favorite not found")
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        raise _fail("remove favorite", e)
