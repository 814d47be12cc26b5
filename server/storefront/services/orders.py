"""
Turning a paid checkout session into an order.
"""

import asyncio
import logging
import secrets
import time
import weakref
from datetime import date, datetime
from typing import Optional

from .. import db
from ..checkout_store import CheckoutSession, get_checkout_store


logger = logging.getLogger(__name__)

BASE36_UPPER = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Serializes verify/webhook races for the same session within this process
# Entries drop out once no coroutine holds or waits on the lock
_order_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(checkout_id: str) -> asyncio.Lock:
    lock = _order_locks.get(checkout_id)
    if lock is None:
        lock = asyncio.Lock()
        _order_locks[checkout_id] = lock
    return lock


class CheckoutOrderError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def generate_order_number(now_ms: Optional[int] = None) -> str:
    """ORD-<ms timestamp>-<6 random uppercase base36 chars>."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(BASE36_UPPER) for _ in range(6))
    return f"ORD-{now_ms}-{suffix}"


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def build_order_record(session: CheckoutSession, user_id: str, payment_method: str = "online") -> dict:
    """Map a checkout session onto orders table columns."""
    options = session.customization_options or {}
    contact = session.contact_info
    return {
        "user_id": user_id,
        "order_number": generate_order_number(),
        "status": "confirmed",
        "payment_status": "paid",
        "item_total": session.subtotal,
        "delivery_charge": session.delivery_fee,
        "discount_amount": session.discount,
        "cgst": session.cgst_amount,
        "sgst": session.sgst_amount,
        "total_amount": session.total_amount,
        "delivery_address_id": session.selected_address_id,
        "delivery_address_text": session.address_text,
        "notes": session.notes,
        "is_knife": bool(options.get("addKnife")),
        "is_candle": bool(options.get("addCandles")),
        "is_text_on_card": bool(options.get("addMessageCard") or session.message_card_text),
        "text_on_card": session.message_card_text,
        "delivery_timing": session.delivery_timing,
        "delivery_date": _parse_date(session.delivery_date),
        "delivery_time_slot": session.delivery_time_slot,
        "contact_name": contact.name if contact else "",
        "contact_number": contact.phone if contact else "",
        "contact_alternate_number": contact.alternate_phone if contact else None,
        "is_coupon": bool(session.coupon_code),
        "coupon_id": session.coupon_id,
        "coupon_code": session.coupon_code,
        "estimated_time_delivery": _parse_datetime(session.estimated_delivery_time),
        "distance": session.distance,
        "duration": session.duration,
        "delivery_zone": session.delivery_zone,
        "payment_method": payment_method,
        "payment_transaction_id": session.razorpay_payment_id,
    }


def build_order_items(session: CheckoutSession) -> list[dict]:
    return [
        {
            "product_id": item.product_id,
            "product_name": item.product_name,
            "product_image": item.product_image,
            "product_description": item.product_description,
            "category": item.category,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total_price": item.total_price,
            "variant": item.variant,
            "customization_options": item.customization_options,
            "cake_text": item.cake_text,
            "cake_flavor": item.cake_flavor,
            "cake_size": item.cake_size,
            "cake_weight": item.cake_weight,
            "item_has_knife": item.item_has_knife,
            "item_has_candle": item.item_has_candle,
            "item_has_message_card": item.item_has_message_card,
            "item_message_card_text": item.item_message_card_text,
            "item_status": "pending",
        }
        for item in session.items
    ]


async def create_order_from_checkout(checkout_id: str, payment_method: str = "online") -> dict:
    """
    Create the order for a paid checkout session.

    Idempotent: a session that already produced an order returns it again
    with created=False.
    """
    store = get_checkout_store()
    async with _lock_for(checkout_id):
        session = await store.get_session(checkout_id)
        if session is None:
            raise CheckoutOrderError("Checkout session not found or expired", status_code=404)
        if session.payment_status != "paid":
            raise CheckoutOrderError("Payment not completed for this checkout")
        if session.database_order_id:
            logger.info(f"[orders] Checkout {checkout_id} already has order {session.database_order_id}")
            return {
                "order_id": session.database_order_id,
                "order_number": session.order_number,
                "created": False,
            }

        user = await db.get_user_by_email(session.user_email)
        if not user:
            raise CheckoutOrderError("User not found", status_code=404)

        order = build_order_record(session, user["id"], payment_method)
        items = build_order_items(session)
        row = await db.create_order_with_items(order, items, coupon_id=session.coupon_id)
        await store.update_database_order_id(checkout_id, row["id"], row["order_number"])
        logger.info(f"[orders] Created order {row['order_number']} from checkout {checkout_id}")

    try:
        await db.clear_cart_for_user(user["id"])
    except Exception as e:
        logger.warning(f"[orders] Failed to clear cart for {session.user_email}: {e}")

    return {"order_id": row["id"], "order_number": row["order_number"], "created": True}
