"""
Customer account endpoints: email OTP and Google sign-in, profile,
saved addresses and order history.
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from .auth import create_session_token, get_current_user, UserContext
from .cart import resolve_user
from .models import (
    SendOTPRequest, VerifyOTPRequest, GoogleLoginRequest, ProfileUpdateRequest,
    AddressRequest, AddressUpdateRequest, OrderReviewRequest, OrderConfirmEmailRequest,
)
from .otp_store import generate_otp, get_otp_store
from .rate_limit import limiter
from .services import delivery
from .services import mailer
from .services.oauth import OAuthError, verify_google_id_token
from .settings import settings
from . import db


logger = logging.getLogger(__name__)

router = APIRouter(tags=["account"])

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _session_response(user: dict) -> dict:
    return {
        "success": True,
        "user": {
            "id": user["id"],
            "email": user["email"],
            "name": user["name"],
            "role": user.get("role", "user"),
            "image": user.get("image"),
        },
        "sessionToken": create_session_token(user),
    }


# --- Email OTP login ---


@router.post("/auth/otp/send")
@limiter.limit(lambda: settings.otp_send_rate_limit)
async def send_otp(request: Request, body: SendOTPRequest):
    """Email a 6-digit login code valid for 5 minutes."""
    email = body.email.strip().lower()
    if not email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email is required")
    if not EMAIL_PATTERN.match(email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email format")

    store = get_otp_store()
    await store.clear_expired()
    code = generate_otp(settings.otp_length)
    await store.set(email, code, settings.otp_ttl_seconds)
    if settings.debug:
        logger.debug(f"[otp] Code for {email}: {code}")

    try:
        await mailer.send_otp_email(email, code, ttl_minutes=settings.otp_ttl_seconds // 60)
    except mailer.MailDeliveryError as e:
        logger.error(f"[otp] Failed to send OTP email to {email}: {e}")
        await store.delete(email)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send OTP email",
        )

    return {"success": True, "message": "OTP sent successfully", "expiresIn": settings.otp_ttl_seconds}


@router.post("/auth/otp/verify")
async def verify_otp(body: VerifyOTPRequest):
    email = body.email.strip().lower()
    otp = body.otp.strip()
    if not email or not otp:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email and OTP are required")

    store = get_otp_store()
    entry = await store.get(email)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OTP not found or expired")
    if store.is_expired(entry):
        await store.delete(email)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OTP has expired")
    if entry.code != otp:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OTP")

    await store.delete(email)
    try:
        user = await db.upsert_user(
            email=email,
            name=email.split("@")[0],
            provider="otp",
            provider_id=f"otp_{email}",
        )
    except Exception as e:
        logger.error(f"[otp] Error creating user {email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sign in",
        )
    logger.info(f"[otp] {email} signed in")
    return _session_response(user)


# --- Google sign-in ---


@router.post("/auth/oauth/google")
async def google_login(body: GoogleLoginRequest):
    try:
        profile = await verify_google_id_token(body.id_token)
    except OAuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    try:
        user = await db.upsert_user(
            email=profile["email"],
            name=profile["name"],
            provider="google",
            provider_id=profile["sub"],
            image=profile.get("picture"),
        )
    except Exception as e:
        logger.error(f"[oauth] Error creating user {profile['email']}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sign in",
        )
    return _session_response(user)


# --- Profile ---


@router.get("/me")
async def get_profile(user: UserContext = Depends(get_current_user)):
    try:
        return {"user": await resolve_user(user)}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error fetching profile: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch profile")


@router.put("/me")
async def update_profile(req: ProfileUpdateRequest, user: UserContext = Depends(get_current_user)):
    fields = req.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields provided for update")
    try:
        row = await resolve_user(user)
        updated = await db.update_user_profile(row["id"], fields)
        return {"success": True, "user": updated}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error updating profile: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update profile")


# --- Addresses ---


async def _with_distance(fields: dict) -> dict:
    """Validate coordinates and attach road distance/duration from the shop."""
    lat, lon = fields.get("latitude"), fields.get("longitude")
    if lat is None or lon is None:
        return fields
    problem = delivery.validate_coordinates(lat, lon)
    if problem:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)
    route = await delivery.get_road_distance(lat, lon)
    fields["distance"] = route["distance"]
    fields["duration"] = route["duration"]
    return fields


@router.get("/addresses")
async def list_addresses(user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        return {"addresses": await db.list_addresses(row["id"])}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error fetching addresses: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch addresses")


@router.post("/addresses", status_code=status.HTTP_201_CREATED)
async def create_address(req: AddressRequest, user: UserContext = Depends(get_current_user)):
    fields = await _with_distance(req.model_dump())
    try:
        row = await resolve_user(user)
        address = await db.create_address(row["id"], fields)
        return {"success": True, "address": address}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error creating address: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create address")


@router.put("/addresses/{address_id}")
async def update_address(
    address_id: str,
    req: AddressUpdateRequest,
    user: UserContext = Depends(get_current_user),
):
    fields = req.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields provided for update")
    fields = await _with_distance(fields)
    try:
        row = await resolve_user(user)
        address = await db.update_address(row["id"], address_id, fields)
        if not address:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Address not found")
        return {"success": True, "address": address}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error updating address {address_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update address")


@router.delete("/addresses/{address_id}")
async def delete_address(address_id: str, user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        if not await db.delete_address(row["id"], address_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Address not found")
        return {"success": True}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error deleting address {address_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete address")


# --- Orders ---


async def _owned_order(user: UserContext, order_id: str) -> dict:
    row = await resolve_user(user)
    order = await db.get_order(order_id)
    if not order or order["user_id"] != row["id"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


@router.get("/orders")
async def list_orders(
    limit: int = Query(50, ge=1, le=100),
    user: UserContext = Depends(get_current_user),
):
    """Order history, newest first."""
    try:
        row = await resolve_user(user)
        return {"orders": await db.list_orders_for_user(row["id"], limit=limit)}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error fetching orders: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch orders")


@router.get("/orders/recent")
async def list_recent_orders(user: UserContext = Depends(get_current_user)):
    try:
        row = await resolve_user(user)
        return {"orders": await db.list_orders_for_user(row["id"], limit=5)}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error fetching recent orders: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch orders")


@router.get("/orders/{order_id}")
async def get_order(order_id: str, user: UserContext = Depends(get_current_user)):
    try:
        order = await _owned_order(user, order_id)
        order["items"] = await db.get_order_items(order_id)
        return {"order": order}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error fetching order {order_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch order")


@router.post("/orders/{order_id}/review")
async def review_order(
    order_id: str,
    req: OrderReviewRequest,
    user: UserContext = Depends(get_current_user),
):
    """Rate a delivered order (1-5) with optional feedback."""
    try:
        order = await _owned_order(user, order_id)
        if order["status"] != "delivered":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Only delivered orders can be reviewed",
            )
        feedback: Optional[str] = req.feedback.strip() if req.feedback else None
        review = await db.set_order_review(order_id, req.rating, feedback or None)
        return {"success": True, "review": review}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[account] Error saving review for {order_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save review")


@router.post("/orders/confirm-email")
async def send_order_confirmation(
    req: OrderConfirmEmailRequest,
    user: UserContext = Depends(get_current_user),
):
    """Resend an order confirmation email."""
    try:
        await mailer.send_order_confirmation(
            str(req.email),
            req.order_id,
            [item.model_dump() for item in req.items],
        )
    except mailer.MailDeliveryError as e:
        logger.error(f"[account] Failed to send confirmation for {req.order_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send confirmation email",
        )
    return {"success": True}
