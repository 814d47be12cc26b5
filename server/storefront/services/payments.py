"""
Razorpay payment gateway client.

Orders are created through the REST API with HTTP basic auth (key id /
key secret). Checkout signatures and webhooks are verified locally with
HMAC-SHA256.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

import httpx

from ..settings import settings


logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Raised when the gateway is not configured or rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_configured() -> bool:
    return bool(settings.razorpay_key_id and settings.razorpay_key_secret)


def build_receipt(checkout_id: str, now_ms: Optional[int] = None) -> str:
    """Receipt id: rcpt_<first 8 of checkout id>_<last 8 digits of ms timestamp>."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"rcpt_{checkout_id[:8]}_{str(now_ms)[-8:]}"


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """HMAC-SHA256(key_secret, "order_id|payment_id") compared in constant time."""
    if not (settings.razorpay_key_secret and order_id and payment_id and signature):
        return False
    expected = _sign(settings.razorpay_key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
    """Webhook signature is the HMAC-SHA256 of the raw body with the webhook secret."""
    if not (settings.razorpay_webhook_secret and signature):
        return False
    expected = _sign(settings.razorpay_webhook_secret, body)
    return hmac.compare_digest(expected, signature)


def _client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    if not is_configured():
        raise PaymentGatewayError("Payment gateway is not configured")
    return httpx.AsyncClient(
        base_url=settings.razorpay_api_url,
        auth=(settings.razorpay_key_id, settings.razorpay_key_secret),
        timeout=15.0,
        transport=transport,
    )


async def _request(method: str, path: str, transport=None, **kwargs) -> dict:
    async with _client(transport) as client:
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"[payment] Gateway request failed: {method} {path}: {e}")
            raise PaymentGatewayError("Payment gateway unavailable") from e
    if response.status_code >= 400:
        try:
            description = response.json().get("error", {}).get("description")
        except ValueError:
            description = None
        logger.warning(f"[payment] Gateway returned {response.status_code} for {method} {path}: {description}")
        raise PaymentGatewayError(description or "Payment gateway error", response.status_code)
    return response.json()


async def create_order(
    amount_paise: int,
    receipt: str,
    notes: Optional[dict] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Create a gateway order. Amount is in paise."""
    payload = {
        "amount": amount_paise,
        "currency": settings.currency,
        "receipt": receipt,
        "notes": notes or {},
    }
    order = await _request("POST", "/orders", transport=transport, json=payload)
    logger.info(f"[payment] Created gateway order {order.get('id')} receipt={receipt} amount={amount_paise}")
    return order


async def fetch_order_payments(
    razorpay_order_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list:
    data = await _request("GET", f"/orders/{razorpay_order_id}/payments", transport=transport)
    return data.get("items", [])


async def is_order_captured(
    razorpay_order_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[dict]:
    """Return the captured payment for a gateway order, if any."""
    for payment in await fetch_order_payments(razorpay_order_id, transport=transport):
        if payment.get("status") == "captured":
            return payment
    return None
