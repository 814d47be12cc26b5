"""
Transactional email through an HTTP mail relay (Resend-compatible API).

Sending is required for OTP login, so a missing configuration is an
error rather than a silent skip.
"""

import html
import logging
from typing import Iterable, Optional

import httpx

from ..settings import settings


logger = logging.getLogger(__name__)


class MailDeliveryError(Exception):
    pass


async def send_email(
    to_email: str,
    subject: str,
    html_body: str,
    text_body: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Send a single email. Returns the relay message id."""
    sender = settings.sender
    if not settings.mail_api_key or not sender:
        raise MailDeliveryError("Mail relay is not configured (STOREFRONT_MAIL_API_KEY / STOREFRONT_MAIL_FROM)")

    payload = {
        "from": sender,
        "to": [to_email],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    headers = {"Authorization": f"Bearer {settings.mail_api_key}"}
    url = settings.mail_api_url.rstrip("/") + "/emails"

    async with httpx.AsyncClient(timeout=settings.mail_timeout_seconds, transport=transport) as client:
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[mail] Relay request failed for '{subject}': {e}")
            raise MailDeliveryError("Mail relay unavailable") from e

    if response.status_code >= 400:
        logger.warning(f"[mail] Relay rejected '{subject}' ({response.status_code}): {response.text[:200]}")
        raise MailDeliveryError(f"Mail relay returned {response.status_code}")

    message_id = response.json().get("id", "")
    logger.info(f"[mail] Sent '{subject}' message_id={message_id}")
    return message_id


async def send_otp_email(email: str, code: str, ttl_minutes: int = 5, transport=None) -> str:
    subject = "Your Duchess Pastries login code"
    text = (
        f"Your one-time login code is {code}.\n"
        f"It expires in {ttl_minutes} minutes. If you did not request it, ignore this email."
    )
    body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 480px; margin: 0 auto;">
      <h2 style="color: #8b4513;">Duchess Pastries</h2>
      <p>Your one-time login code is:</p>
      <p style="font-size: 32px; letter-spacing: 6px; font-weight: bold;">{html.escape(code)}</p>
      <p>This code expires in {ttl_minutes} minutes.</p>
      <p style="color: #888; font-size: 12px;">If you did not request this code, you can ignore this email.</p>
    </div>
    """
    return await send_email(email, subject, body, text, transport=transport)


async def send_order_confirmation(
    email: str,
    order_id: str,
    items: Iterable[dict],
    transport=None,
) -> str:
    """Order confirmation listing item names and quantities."""
    items = list(items)
    rows = "".join(
        f"<li>{html.escape(str(item.get('name', '')))} &times; {int(item.get('quantity', 0))}</li>"
        for item in items
    )
    text_lines = "\n".join(f"- {item.get('name', '')} x {item.get('quantity', 0)}" for item in items)
    subject = f"Order Confirmation #{order_id}"
    body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 560px; margin: 0 auto;">
      <h2 style="color: #8b4513;">Thank you for your order!</h2>
      <p>Your order <strong>#{html.escape(order_id)}</strong> has been confirmed.</p>
      <ul>{rows}</ul>
      <p>We will let you know when it is out for delivery.</p>
    </div>
    """
    text = f"Your order #{order_id} has been confirmed.\n\n{text_lines}\n"
    return await send_email(email, subject, body, text, transport=transport)


async def send_out_for_delivery(
    email: str,
    order_number: str,
    delivery_person_name: str,
    delivery_person_contact: str,
    transport=None,
) -> str:
    subject = f"Your order #{order_number} is out for delivery"
    text = (
        f"Your order #{order_number} is on its way.\n"
        f"Delivery partner: {delivery_person_name} ({delivery_person_contact})"
    )
    body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 560px; margin: 0 auto;">
      <h2 style="color: #8b4513;">Your order is on its way!</h2>
      <p>Order <strong>#{html.escape(order_number)}</strong> is out for delivery.</p>
      <p>Delivery partner: {html.escape(delivery_person_name)}<br>
         Contact: {html.escape(delivery_person_contact)}</p>
    </div>
    """
    return await send_email(email, subject, body, text, transport=transport)
