"""
End-to-end checkout tests: session creation, gateway order, payment
verification and the webhook. Database and gateway calls are mocked.
"""

import asyncio
import hashlib
import hmac
import json
from contextlib import ExitStack
from unittest.mock import patch

import pytest

from storefront import db as db_module
from storefront.checkout_store import get_checkout_store
from storefront.services import mailer, orders, payments
from storefront.services.orders import create_order_from_checkout, generate_order_number
from storefront.settings import settings
from conftest import CUSTOMER, async_return


KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"

RULES = [{"id": "r1", "type": "distance", "start_km": 0, "end_km": 5, "price": 40}]

ITEMS = [{
    "productId": "p1",
    "productName": "Black Forest",
    "category": "Cakes",
    "quantity": 2,
    "unitPrice": 450,
    "variant": "1 kg",
}]


def sign(message: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class FakeBackend:
    """Records what the flow writes to the database and mail relay."""

    def __init__(self):
        self.orders = []
        self.payments = []
        self.emails = []

    async def create_order_with_items(self, order, items, coupon_id=None):
        self.orders.append({"order": order, "items": items, "coupon_id": coupon_id})
        return {"id": f"order-{len(self.orders)}", "order_number": order["order_number"]}

    async def record_payment(self, **kwargs):
        self.payments.append(kwargs)
        return {"id": f"payment-{len(self.payments)}"}

    async def send_order_confirmation(self, email, order_id, items, transport=None):
        self.emails.append({"email": email, "order_id": order_id, "items": list(items)})
        return "email-1"


@pytest.fixture
def backend():
    fake = FakeBackend()
    with ExitStack() as stack:
        stack.enter_context(patch.object(settings, "razorpay_key_id", "rzp_test_key"))
        stack.enter_context(patch.object(settings, "razorpay_key_secret", KEY_SECRET))
        stack.enter_context(patch.object(settings, "razorpay_webhook_secret", WEBHOOK_SECRET))
        stack.enter_context(patch.object(db_module, "get_user_by_email", side_effect=async_return(dict(CUSTOMER))))
        stack.enter_context(patch.object(db_module, "get_active_tax_settings", side_effect=async_return(None)))
        stack.enter_context(patch.object(db_module, "list_delivery_charges", side_effect=async_return(RULES)))
        stack.enter_context(patch.object(db_module, "clear_cart_for_user", side_effect=async_return(1)))
        stack.enter_context(patch.object(db_module, "create_order_with_items", side_effect=fake.create_order_with_items))
        stack.enter_context(patch.object(db_module, "record_payment", side_effect=fake.record_payment))
        stack.enter_context(patch.object(mailer, "send_order_confirmation", side_effect=fake.send_order_confirmation))
        yield fake


def create_checkout(client, headers, **overrides):
    body = {"items": ITEMS, "distance": 3, "contactInfo": {"name": "Asha", "phone": "9876543210"}}
    body.update(overrides)
    response = client.post("/checkout", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def create_gateway_order(client, headers, checkout_id, amount=110200):
    async def fake_create(amount_paise, receipt, notes=None, transport=None):
        return {"id": "order_RZP1", "amount": amount_paise, "currency": "INR", "receipt": receipt, "status": "created"}

    with patch.object(payments, "create_order", side_effect=fake_create):
        return client.post("/payment/order", json={"checkoutId": checkout_id, "amount": amount}, headers=headers)


class TestCreateCheckout:

    def test_totals_are_computed_server_side(self, client, customer_headers, backend):
        data = create_checkout(client, customer_headers)
        # 900 items + 40 delivery + 9% CGST + 9% SGST on items
        assert data["totals"] == {
            "subtotal": 900,
            "discount": 0,
            "deliveryFee": 40,
            "cgstAmount": 81,
            "sgstAmount": 81,
            "totalAmount": 1102,
        }
        assert data["deliveryMethod"] == "distance"

    def test_session_belongs_to_creator(self, client, customer_headers, admin_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        assert client.get(f"/checkout/{checkout_id}", headers=customer_headers).status_code == 200
        assert client.get(f"/checkout/{checkout_id}", headers=admin_headers).status_code == 404

    def test_empty_cart_rejected(self, client, customer_headers, backend):
        response = client.post("/checkout", json={"items": []}, headers=customer_headers)
        assert response.status_code == 400

    def test_invalid_coupon(self, client, customer_headers, backend):
        with patch.object(db_module, "get_coupon_by_code", side_effect=async_return(None)):
            response = client.post(
                "/checkout", json={"items": ITEMS, "couponCode": "nope"}, headers=customer_headers
            )
        assert response.status_code == 404
        assert response.json() == {"error": "Coupon not found or inactive"}

    def test_update_requires_fields(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        response = client.patch(f"/checkout/{checkout_id}", json={}, headers=customer_headers)
        assert response.status_code == 400

    def test_update_notes(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        response = client.patch(f"/checkout/{checkout_id}", json={"notes": "Gate 2"}, headers=customer_headers)
        assert response.status_code == 200
        assert response.json()["session"]["notes"] == "Gate 2"
        assert response.json()["session"]["totalAmount"] == 1102

    def test_update_ignores_null_fields(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        response = client.patch(
            f"/checkout/{checkout_id}", json={"deliveryTiming": None}, headers=customer_headers
        )
        assert response.status_code == 400
        assert response.json() == {"error": "No valid fields provided for update"}

        response = client.patch(
            f"/checkout/{checkout_id}",
            json={"deliveryTiming": None, "notes": "Ring twice"},
            headers=customer_headers,
        )
        assert response.status_code == 200
        assert response.json()["session"]["notes"] == "Ring twice"


class TestPaymentOrder:

    def test_amount_mismatch(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        response = create_gateway_order(client, customer_headers, checkout_id, amount=50000)
        assert response.status_code == 400
        assert response.json() == {"error": "Amount mismatch with checkout session"}

    def test_zero_amount(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        response = create_gateway_order(client, customer_headers, checkout_id, amount=0)
        assert response.status_code == 400

    def test_creates_gateway_order(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        response = create_gateway_order(client, customer_headers, checkout_id)
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "order_RZP1"
        assert data["key_id"] == "rzp_test_key"
        assert data["receipt"].startswith(f"rcpt_{checkout_id[:8]}_")

        session = asyncio.run(get_checkout_store().get_session(checkout_id))
        assert session.payment_status == "processing"
        assert session.razorpay_order_id == "order_RZP1"

    def test_gateway_failure(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]

        async def failing(*args, **kwargs):
            raise payments.PaymentGatewayError("Payment gateway unavailable")

        with patch.object(payments, "create_order", side_effect=failing):
            response = client.post(
                "/payment/order", json={"checkoutId": checkout_id, "amount": 110200}, headers=customer_headers
            )
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to create payment order"}


class TestVerifyPayment:

    @pytest.fixture
    def pending(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        create_gateway_order(client, customer_headers, checkout_id)
        return checkout_id

    def _verify(self, client, headers, checkout_id, signature=None, order_id="order_RZP1"):
        return client.post("/payment/verify", headers=headers, json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": signature or sign(f"{order_id}|pay_1"),
            "checkoutId": checkout_id,
        })

    def test_valid_signature_creates_order(self, client, customer_headers, backend, pending):
        response = self._verify(client, customer_headers, pending)
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["orderId"] == "order-1"
        assert data["orderNumber"].startswith("ORD-")

        order = backend.orders[0]["order"]
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "paid"
        assert order["total_amount"] == 1102
        assert order["contact_name"] == "Asha"
        assert backend.orders[0]["items"][0]["total_price"] == 900
        assert backend.payments[0]["signature_verified"] is True
        assert backend.emails[0]["items"] == [{"name": "Black Forest", "quantity": 2}]

    def test_invalid_signature_marks_failed(self, client, customer_headers, backend, pending):
        response = self._verify(client, customer_headers, pending, signature="0" * 64)
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid payment signature"}
        assert backend.orders == []
        session = asyncio.run(get_checkout_store().get_session(pending))
        assert session.payment_status == "failed"

    def test_order_id_mismatch(self, client, customer_headers, backend, pending):
        response = self._verify(client, customer_headers, pending, order_id="order_OTHER")
        assert response.status_code == 400
        assert response.json() == {"error": "Order ID mismatch"}

    def test_mail_failure_does_not_fail_payment(self, client, customer_headers, backend, pending):
        async def failing(*args, **kwargs):
            raise mailer.MailDeliveryError("relay down")

        with patch.object(mailer, "send_order_confirmation", side_effect=failing):
            response = self._verify(client, customer_headers, pending)
        assert response.status_code == 200

    def test_bad_signature_replay_keeps_paid_session(self, client, customer_headers, backend, pending):
        assert self._verify(client, customer_headers, pending).status_code == 200

        response = self._verify(client, customer_headers, pending, signature="deadbeef")
        assert response.status_code == 409
        assert response.json() == {"error": "Checkout session already paid"}

        session = asyncio.run(get_checkout_store().get_session(pending))
        assert session.payment_status == "paid"
        assert session.database_order_id == "order-1"
        status_response = client.get(f"/payment/status?checkoutId={pending}", headers=customer_headers)
        assert status_response.json()["status"] == "paid"
        assert status_response.json()["orderId"] == "order-1"

    def test_repeat_verify_returns_existing_order(self, client, customer_headers, backend, pending):
        first = self._verify(client, customer_headers, pending).json()
        response = self._verify(client, customer_headers, pending)
        assert response.status_code == 200
        assert response.json() == first
        assert len(backend.orders) == 1
        assert len(backend.payments) == 1
        assert len(backend.emails) == 1

    def test_no_new_gateway_order_after_payment(self, client, customer_headers, backend, pending):
        self._verify(client, customer_headers, pending)
        response = create_gateway_order(client, customer_headers, pending)
        assert response.status_code == 409
        assert response.json() == {"error": "Checkout session already paid"}
        session = asyncio.run(get_checkout_store().get_session(pending))
        assert session.payment_status == "paid"

    def test_no_updates_after_payment(self, client, customer_headers, backend, pending):
        self._verify(client, customer_headers, pending)
        response = client.patch(f"/checkout/{pending}", json={"notes": "late"}, headers=customer_headers)
        assert response.status_code == 409

    def test_status_after_payment(self, client, customer_headers, backend, pending):
        self._verify(client, customer_headers, pending)
        response = client.get(f"/payment/status?checkoutId={pending}", headers=customer_headers)
        assert response.json()["status"] == "paid"
        assert response.json()["orderId"] == "order-1"

    def test_status_requires_an_id(self, client, customer_headers):
        assert client.get("/payment/status", headers=customer_headers).status_code == 400


class TestOrderCreation:

    def test_order_number_format(self):
        number = generate_order_number(now_ms=1718000000000)
        prefix, millis, suffix = number.split("-")
        assert prefix == "ORD"
        assert millis == "1718000000000"
        assert len(suffix) == 6
        assert suffix.isalnum() and suffix.upper() == suffix

    def test_create_is_idempotent(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        store = get_checkout_store()

        async def scenario():
            await store.update_payment_status(checkout_id, "paid", razorpay_payment_id="pay_1")
            first = await create_order_from_checkout(checkout_id)
            second = await create_order_from_checkout(checkout_id)
            return first, second

        first, second = asyncio.run(scenario())
        assert first["created"] is True
        assert second["created"] is False
        assert second["order_id"] == first["order_id"]
        assert len(backend.orders) == 1
        assert checkout_id not in orders._order_locks

    def test_unpaid_session_is_refused(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        with pytest.raises(Exception, match="Payment not completed"):
            asyncio.run(create_order_from_checkout(checkout_id))


class TestWebhook:

    def _post(self, client, event, secret=WEBHOOK_SECRET):
        body = json.dumps(event).encode()
        signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return client.post(
            "/payment/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
        )

    def _captured(self, event="payment.captured"):
        return {
            "event": event,
            "payload": {"payment": {"entity": {
                "id": "pay_9", "order_id": "order_RZP1", "amount": 110200, "currency": "INR",
            }}},
        }

    def test_rejects_bad_signature(self, client, backend):
        response = self._post(client, self._captured(), secret="wrong")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid webhook signature"}

    def test_ignores_other_events(self, client, backend):
        assert self._post(client, {"event": "order.paid"}).json() == {"status": "ignored"}

    def test_captured_creates_order_once(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        create_gateway_order(client, customer_headers, checkout_id)

        first = self._post(client, self._captured())
        second = self._post(client, self._captured())

        assert first.json() == {"status": "ok", "orderId": "order-1"}
        assert second.json() == {"status": "ok", "orderId": "order-1"}
        assert len(backend.orders) == 1
        assert backend.payments[0]["webhook_received"] is True
        assert backend.payments[0]["amount"] == 1102

    def test_failed_event_marks_session(self, client, customer_headers, backend):
        checkout_id = create_checkout(client, customer_headers)["checkoutId"]
        create_gateway_order(client, customer_headers, checkout_id)
        assert self._post(client, self._captured("payment.failed")).json() == {"status": "ok"}
        session = asyncio.run(get_checkout_store().get_session(checkout_id))
        assert session.payment_status == "failed"
