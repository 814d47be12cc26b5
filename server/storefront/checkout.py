"""
Checkout and payment endpoints.

Flow: POST /checkout freezes the cart and server-computed totals into a
checkout session -> POST /payment/order creates the gateway order ->
the browser pays -> POST /payment/verify (or the gateway webhook) marks
the session paid and creates the order.
"""

import json
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from .auth import get_current_user, UserContext
from .cart import resolve_user
from .catalog import get_tax_rates
from .checkout_store import CheckoutSession, get_checkout_store
from .models import (
    CheckoutCreateRequest, CheckoutUpdateRequest, CheckoutItemRequest, PaymentOrderRequest,
    PaymentVerifyRequest, DeliveryCalculateRequest, CouponValidateRequest,
)
from .services import delivery
from .services import mailer
from .services import payments
from .services.coupons import CouponError, apply_coupon
from .services.orders import CheckoutOrderError, create_order_from_checkout
from .settings import settings
from . import db
from . import pricing


logger = logging.getLogger(__name__)

router = APIRouter(tags=["checkout"])


def _category_totals(items: List[CheckoutItemRequest]) -> Dict[str, float]:
    totals: Dict[str, float] = defaultdict(float)
    for item in items:
        totals[item.category or ""] += item.unit_price * item.quantity
    return dict(totals)


async def _resolve_distance(req, user_id: str) -> dict:
    """
    Distance for delivery pricing: a saved address, then coordinates, then
    the client-supplied distance, then the configured default.
    """
    if getattr(req, "selected_address_id", None):
        address = await db.get_address(user_id, req.selected_address_id)
        if not address:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Address not found")
        if address.get("distance") is not None:
            return {"distance": float(address["distance"]), "duration": address.get("duration")}
        if address.get("latitude") is not None and address.get("longitude") is not None:
            return await delivery.get_road_distance(address["latitude"], address["longitude"])
    if req.latitude is not None and req.longitude is not None:
        problem = delivery.validate_coordinates(req.latitude, req.longitude)
        if problem:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)
        return await delivery.get_road_distance(req.latitude, req.longitude)
    if req.distance is not None:
        return {"distance": req.distance, "duration": None}
    return {"distance": settings.default_delivery_distance_km, "duration": None}


def _totals_to_client(session: CheckoutSession) -> dict:
    return {
        "subtotal": session.subtotal,
        "discount": session.discount,
        "deliveryFee": session.delivery_fee,
        "cgstAmount": session.cgst_amount,
        "sgstAmount": session.sgst_amount,
        "totalAmount": session.total_amount,
    }


async def _owned_session(checkout_id: str, user: UserContext) -> CheckoutSession:
    session = await get_checkout_store().get_session(checkout_id)
    if session is None or session.user_email != user.email:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found or expired")
    return session


@router.post("/checkout", status_code=status.HTTP_201_CREATED)
async def create_checkout(req: CheckoutCreateRequest, user: UserContext = Depends(get_current_user)):
    row = await resolve_user(user)

    subtotal = pricing.round_money(sum(i.unit_price * i.quantity for i in req.items))
    discount = 0.0
    coupon: Optional[dict] = None
    if req.coupon_code:
        try:
            applied = await apply_coupon(
                req.coupon_code.strip().upper(), row["id"], subtotal, _category_totals(req.items)
            )
        except CouponError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        coupon, discount = applied["coupon"], applied["discount"]

    try:
        route = await _resolve_distance(req, row["id"])
        fee = await delivery.calculate_delivery_charge(route["distance"], subtotal, zone=req.delivery_zone)
        rates = await get_tax_rates()
        totals = pricing.calculate_total_amount(
            subtotal, fee["charge"], discount, rates["cgst_rate"], rates["sgst_rate"]
        )

        items = [
            {**item.model_dump(), "total_price": pricing.round_money(item.unit_price * item.quantity)}
            for item in req.items
        ]
        session = await get_checkout_store().create_session({
            "user_id": row["id"],
            "user_email": row["email"],
            "items": items,
            "subtotal": totals["item_total"],
            "discount": totals["discount"],
            "delivery_fee": totals["delivery_charge"],
            "cgst_amount": totals["cgst"],
            "sgst_amount": totals["sgst"],
            "total_amount": totals["total_amount"],
            "address_text": req.address_text,
            "selected_address_id": req.selected_address_id,
            "coupon_code": coupon["code"] if coupon else None,
            "coupon_id": coupon["id"] if coupon else None,
            "customization_options": req.customization_options,
            "cake_text": req.cake_text,
            "message_card_text": req.message_card_text,
            "contact_info": req.contact_info.model_dump() if req.contact_info else None,
            "notes": req.notes,
            "delivery_timing": req.delivery_timing,
            "delivery_date": req.delivery_date,
            "delivery_time_slot": req.delivery_time_slot,
            "estimated_delivery_time": req.estimated_delivery_time,
            "distance": route["distance"],
            "duration": route.get("duration"),
            "delivery_zone": req.delivery_zone,
        })
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[checkout] Error creating checkout for {user.email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session",
        )

    return {
        "success": True,
        "checkoutId": session.checkout_id,
        "expiresAt": session.expires_at.isoformat(),
        "totals": _totals_to_client(session),
        "deliveryMethod": fee["method"],
    }


@router.get("/checkout/{checkout_id}")
async def get_checkout(checkout_id: str, user: UserContext = Depends(get_current_user)):
    session = await _owned_session(checkout_id, user)
    return {"session": session.to_public()}


@router.patch("/checkout/{checkout_id}")
async def update_checkout(
    checkout_id: str,
    req: CheckoutUpdateRequest,
    user: UserContext = Depends(get_current_user),
):
    """Update contact, delivery and note fields. Totals never change here."""
    session = await _owned_session(checkout_id, user)
    if session.payment_status == "paid" or session.database_order_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Checkout session already paid")
    updates = req.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields provided for update")
    session = await get_checkout_store().update_session(checkout_id, updates)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found or expired")
    return {"success": True, "session": session.to_public()}


# --- Payment ---


@router.post("/payment/order")
async def create_payment_order(req: PaymentOrderRequest, user: UserContext = Depends(get_current_user)):
    """Create a gateway order for a checkout session. Amount is in paise."""
    if req.amount <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Amount must be greater than zero")

    store = get_checkout_store()
    session = await _owned_session(req.checkout_id, user)
    if session.payment_status == "paid" or session.database_order_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Checkout session already paid")
    if round(req.amount / 100) != round(session.total_amount):
        logger.warning(
            f"[payment] Amount mismatch for {req.checkout_id}: "
            f"{req.amount} paise vs total {session.total_amount}"
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Amount mismatch with checkout session")

    receipt = payments.build_receipt(session.checkout_id)
    try:
        order = await payments.create_order(
            req.amount,
            receipt,
            notes={"checkoutId": session.checkout_id, "userEmail": session.user_email},
        )
    except payments.PaymentGatewayError as e:
        logger.error(f"[payment] Failed to create gateway order for {req.checkout_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create payment order")

    await store.update_payment_status(session.checkout_id, "processing", razorpay_order_id=order["id"])
    return {
        "id": order["id"],
        "amount": order.get("amount", req.amount),
        "currency": order.get("currency", settings.currency),
        "receipt": order.get("receipt", receipt),
        "status": order.get("status", "created"),
        "key_id": settings.razorpay_key_id,
    }


async def _send_confirmation(session: CheckoutSession, order_number: str) -> None:
    try:
        await mailer.send_order_confirmation(
            session.user_email,
            order_number,
            [{"name": i.product_name, "quantity": i.quantity} for i in session.items],
        )
    except mailer.MailDeliveryError as e:
        logger.warning(f"[payment] Confirmation email for {order_number} not sent: {e}")


@router.post("/payment/verify")
async def verify_payment(req: PaymentVerifyRequest, user: UserContext = Depends(get_current_user)):
    if not (req.razorpay_order_id and req.razorpay_payment_id and req.razorpay_signature and req.checkout_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required payment fields")

    store = get_checkout_store()
    session = await _owned_session(req.checkout_id, user)
    if session.razorpay_order_id != req.razorpay_order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order ID mismatch")

    signature_ok = payments.verify_payment_signature(
        req.razorpay_order_id, req.razorpay_payment_id, req.razorpay_signature
    )
    # A paid session is never downgraded; a repeat verify gets the existing order
    if session.payment_status == "paid":
        if not signature_ok:
            logger.warning(f"[payment] Invalid signature replayed for paid checkout {req.checkout_id}")
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Checkout session already paid")
        if session.database_order_id:
            return {"success": True, "orderId": session.database_order_id, "orderNumber": session.order_number}
    elif not signature_ok:
        logger.warning(f"[payment] Invalid signature for checkout {req.checkout_id}")
        await store.update_payment_status(req.checkout_id, "failed", razorpay_payment_id=req.razorpay_payment_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payment signature")

    await store.update_payment_status(
        req.checkout_id,
        "paid",
        razorpay_payment_id=req.razorpay_payment_id,
        razorpay_signature=req.razorpay_signature,
    )

    try:
        result = await create_order_from_checkout(req.checkout_id)
        await db.record_payment(
            razorpay_order_id=req.razorpay_order_id,
            razorpay_payment_id=req.razorpay_payment_id,
            amount=session.total_amount,
            payment_status="captured",
            order_id=result["order_id"],
            currency=settings.currency,
            signature_verified=True,
        )
    except Exception as e:
        detail = e.message if isinstance(e, CheckoutOrderError) else str(e)
        logger.error(f"[payment] Order creation failed for checkout {req.checkout_id}: {detail}")
        await store.update_payment_status(req.checkout_id, "failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create order")

    if result["created"]:
        await _send_confirmation(session, result["order_number"])

    return {"success": True, "orderId": result["order_id"], "orderNumber": result["order_number"]}


@router.post("/payment/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
):
    """Gateway webhook. Authenticated by the body signature, not a session."""
    body = await request.body()
    if not payments.verify_webhook_signature(body, x_razorpay_signature):
        logger.warning("[payment] Webhook with invalid signature rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    event_type = event.get("event")
    entity = event.get("payload", {}).get("payment", {}).get("entity", {})
    razorpay_order_id = entity.get("order_id")
    razorpay_payment_id = entity.get("id")
    logger.info(f"[payment] Webhook {event_type} for gateway order {razorpay_order_id}")

    if event_type not in ("payment.captured", "payment.failed") or not razorpay_order_id:
        return {"status": "ignored"}

    store = get_checkout_store()
    session = await store.get_session_by_razorpay_order_id(razorpay_order_id)
    if session is None:
        logger.warning(f"[payment] No checkout session for gateway order {razorpay_order_id}")
        return {"status": "ignored"}

    if event_type == "payment.failed":
        if session.payment_status != "paid":
            await store.update_payment_status(session.checkout_id, "failed", razorpay_payment_id=razorpay_payment_id)
        return {"status": "ok"}

    if session.payment_status == "paid" and session.database_order_id:
        return {"status": "ok", "orderId": session.database_order_id}

    if session.payment_status != "paid":
        await store.update_payment_status(session.checkout_id, "paid", razorpay_payment_id=razorpay_payment_id)
    try:
        result = await create_order_from_checkout(session.checkout_id)
        if razorpay_payment_id:
            await db.record_payment(
                razorpay_order_id=razorpay_order_id,
                razorpay_payment_id=razorpay_payment_id,
                amount=pricing.from_paise(entity.get("amount", 0)),
                payment_status="captured",
                order_id=result["order_id"],
                currency=entity.get("currency", settings.currency),
                webhook_received=True,
            )
    except Exception as e:
        logger.error(f"[payment] Webhook order creation failed for {session.checkout_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create order")

    if result["created"]:
        await _send_confirmation(session, result["order_number"])
    return {"status": "ok", "orderId": result["order_id"]}


@router.get("/payment/status")
async def payment_status(
    order_id: Optional[str] = Query(None, alias="orderId"),
    checkout_id: Optional[str] = Query(None, alias="checkoutId"),
    user: UserContext = Depends(get_current_user),
):
    if not order_id and not checkout_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="orderId or checkoutId is required")

    try:
        if order_id:
            order = await db.get_order(order_id)
            if order and order.get("user_email") == user.email and order["payment_status"] == "paid":
                return {"status": "paid", "orderId": order["id"], "orderNumber": order["order_number"]}

        if checkout_id:
            session = await _owned_session(checkout_id, user)
            if session.payment_status == "paid":
                return {
                    "status": "paid",
                    "orderId": session.database_order_id,
                    "orderNumber": session.order_number,
                }
            if session.razorpay_order_id and payments.is_configured():
                captured = await payments.is_order_captured(session.razorpay_order_id)
                if captured:
                    return {"status": "paid", "paymentId": captured.get("id"), "orderId": None}
            return {"status": session.payment_status if session.payment_status == "failed" else "pending"}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[payment] Error checking payment status: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to check payment status")

    return {"status": "pending"}


# --- Pricing helpers ---


@router.post("/delivery/calculate")
async def calculate_delivery(req: DeliveryCalculateRequest):
    if req.latitude is not None and req.longitude is not None:
        problem = delivery.validate_coordinates(req.latitude, req.longitude)
        if problem:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)
        route = await delivery.get_road_distance(req.latitude, req.longitude)
    elif req.distance is not None:
        route = {"distance": req.distance, "duration": None}
    else:
        route = {"distance": settings.default_delivery_distance_km, "duration": None}

    fee = await delivery.calculate_delivery_charge(route["distance"], req.order_value, zone=req.delivery_zone)
    rule = fee["rule"]
    return {
        "deliveryCharge": fee["charge"],
        "method": fee["method"],
        "distance": route["distance"],
        "duration": route.get("duration"),
        "breakdown": {
            "orderValue": req.order_value,
            "ruleId": rule.get("id") if rule else None,
            "zone": req.delivery_zone,
            "zoneMultiplier": pricing.get_zone_multiplier(req.delivery_zone) if fee["method"] == "zone" else None,
            "isFree": fee["charge"] == 0,
        },
    }


@router.post("/coupons/validate")
async def validate_coupon(req: CouponValidateRequest, user: UserContext = Depends(get_current_user)):
    row = await resolve_user(user)
    category_totals = _category_totals(req.items) if req.items else None
    try:
        applied = await apply_coupon(req.code.strip().upper(), row["id"], req.order_value, category_totals)
    except CouponError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    coupon = applied["coupon"]
    return {
        "valid": True,
        "discount": applied["discount"],
        "coupon": {
            "id": coupon["id"],
            "code": coupon["code"],
            "type": coupon["type"],
            "value": coupon["value"],
            "maxDiscountCap": coupon.get("max_discount_cap"),
        },
    }
