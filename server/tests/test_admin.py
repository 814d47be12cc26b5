"""
Tests for the admin back-office endpoints.

Admin requests use a session token for an admin account; the role
lookup and all other database calls are mocked.
"""

from datetime import date, datetime, timezone
from unittest.mock import patch

import asyncpg
import pytest

from storefront import db as db_module
from storefront.admin import ORDER_TRANSITIONS, check_delivery_rule, percent_change, resolve_period
from storefront.services import mailer, media
from storefront.settings import settings
from conftest import ADMIN, async_return


@pytest.fixture
def admin(admin_headers):
    """Admin session headers with the role check mocked."""
    with patch.object(db_module, "get_user_by_id", side_effect=async_return(dict(ADMIN))):
        yield admin_headers


# Wednesday
NOW = datetime(2026, 3, 18, 15, 30, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestResolvePeriod:

    def test_today(self):
        start, end, prev_start, prev_end = resolve_period("today", NOW)
        assert (start, end) == (utc(2026, 3, 18), utc(2026, 3, 19))
        assert (prev_start, prev_end) == (utc(2026, 3, 17), utc(2026, 3, 18))

    def test_week_starts_on_sunday(self):
        start, end, prev_start, _ = resolve_period("weekly", NOW)
        assert start == utc(2026, 3, 15)
        assert end == utc(2026, 3, 22)
        assert prev_start == utc(2026, 3, 8)

    def test_sunday_is_its_own_week_start(self):
        start, _, _, _ = resolve_period("weekly", utc(2026, 3, 15, 9))
        assert start == utc(2026, 3, 15)

    def test_monthly_crosses_year(self):
        start, end, prev_start, prev_end = resolve_period("monthly", utc(2026, 1, 10))
        assert (start, end) == (utc(2026, 1, 1), utc(2026, 2, 1))
        assert (prev_start, prev_end) == (utc(2025, 12, 1), utc(2026, 1, 1))

    def test_last_three_months(self):
        start, end, prev_start, prev_end = resolve_period("last3months", NOW)
        assert (start, end) == (utc(2025, 12, 1), utc(2026, 4, 1))
        assert (prev_start, prev_end) == (utc(2025, 9, 1), utc(2025, 12, 1))

    def test_overall_has_no_comparison(self):
        assert resolve_period("overall", NOW) == (None, NOW, None, None)

    def test_custom(self):
        start, end, prev_start, prev_end = resolve_period("custom", NOW, date(2026, 3, 1), date(2026, 3, 11))
        assert (start, end) == (utc(2026, 3, 1), utc(2026, 3, 11))
        assert (prev_start, prev_end) == (utc(2026, 2, 19), utc(2026, 3, 1))

    def test_custom_without_dates_is_monthly(self):
        assert resolve_period("custom", NOW) == resolve_period("monthly", NOW)

    def test_percent_change(self):
        assert percent_change(150, 100) == 50.0
        assert percent_change(50, 0) == 0.0
        assert percent_change(1, 3) == -66.7


class TestDashboard:

    def test_invalid_filter(self, client, admin):
        response = client.get("/admin/dashboard?filter=yearly", headers=admin)
        assert response.status_code == 400

    def test_start_after_end(self, client, admin):
        response = client.get(
            "/admin/dashboard?filter=custom&startDate=2026-03-10&endDate=2026-03-01", headers=admin
        )
        assert response.status_code == 400
        assert response.json() == {"error": "startDate must be before endDate"}

    def test_compares_with_previous_period(self, client, admin):
        stats = iter([
            {"orders": 30, "revenue": 15000.0, "new_users": 4},
            {"orders": 20, "revenue": 20000.0, "new_users": 0},
        ])

        async def period_stats(start, end):
            return next(stats)

        with patch.object(db_module, "get_period_stats", side_effect=period_stats):
            with patch.object(db_module, "get_recent_orders", side_effect=async_return([])):
                with patch.object(db_module, "get_top_products", side_effect=async_return([])):
                    response = client.get("/admin/dashboard", headers=admin)

        assert response.status_code == 200
        data = response.json()
        assert data["orders"] == {"value": 30, "previous": 20, "change": 50.0, "trend": "up"}
        assert data["revenue"]["change"] == -25.0
        assert data["revenue"]["trend"] == "down"
        assert data["users"]["change"] == 0


class TestOrderStatus:

    ORDER = {
        "id": "o1",
        "order_number": "ORD-1-ABCDEF",
        "status": "ready",
        "user_email": "customer@example.com",
    }

    def test_transition_table_is_final_for_terminal_states(self):
        assert ORDER_TRANSITIONS["delivered"] == set()
        assert ORDER_TRANSITIONS["cancelled"] == set()

    def test_illegal_transition(self, client, admin):
        with patch.object(db_module, "get_order", side_effect=async_return(dict(self.ORDER))):
            response = client.patch("/admin/orders/o1/status", json={"status": "pending"}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "Cannot change order status from ready to pending"}

    def test_out_for_delivery_requires_courier(self, client, admin):
        with patch.object(db_module, "get_order", side_effect=async_return(dict(self.ORDER))):
            response = client.patch(
                "/admin/orders/o1/status", json={"status": "out_for_delivery"}, headers=admin
            )
        assert response.status_code == 400
        assert response.json() == {"error": "Delivery person name and contact are required"}

    def test_out_for_delivery_stamps_and_emails(self, client, admin):
        captured = {}
        sent = []

        async def fake_update(order_id, fields):
            captured.update(fields)
            return {**self.ORDER, **fields}

        async def fake_send(email, order_number, name, contact, transport=None):
            sent.append((email, order_number, name, contact))
            return "email-1"

        with patch.object(db_module, "get_order", side_effect=async_return(dict(self.ORDER))):
            with patch.object(db_module, "update_order_status", side_effect=fake_update):
                with patch.object(mailer, "send_out_for_delivery", side_effect=fake_send):
                    response = client.patch(
                        "/admin/orders/o1/status",
                        json={
                            "status": "out_for_delivery",
                            "deliveryPersonName": "Ravi",
                            "deliveryPersonContact": "9000000000",
                        },
                        headers=admin,
                    )

        assert response.status_code == 200
        assert captured["status"] == "out_for_delivery"
        assert captured["delivery_person_name"] == "Ravi"
        assert isinstance(captured["picked_up_at"], datetime)
        assert sent == [("customer@example.com", "ORD-1-ABCDEF", "Ravi", "9000000000")]

    def test_missing_order(self, client, admin):
        with patch.object(db_module, "get_order", side_effect=async_return(None)):
            response = client.patch("/admin/orders/nope/status", json={"status": "cancelled"}, headers=admin)
        assert response.status_code == 404


class TestReviews:

    def test_status_and_stats(self, client, admin):
        rows = [
            {"id": "1", "order_number": "A", "customer_rating": 5, "customer_feedback": "Lovely", "payment_status": "paid"},
            {"id": "2", "order_number": "B", "customer_rating": 3, "customer_feedback": None, "payment_status": "paid"},
        ]
        with patch.object(db_module, "list_reviews", side_effect=async_return(rows)):
            response = client.get("/admin/reviews", headers=admin)
        data = response.json()
        assert [r["status"] for r in data["reviews"]] == ["published", "pending"]
        assert data["reviews"][0]["customer"]["verified"] is True
        assert data["stats"] == {"total": 2, "averageRating": 4.0, "pending": 1, "reported": 0}


class TestCoupons:

    BODY = {
        "code": " sweet20 ",
        "type": "percentage",
        "value": 20,
        "validFrom": "2026-03-01T00:00:00Z",
        "validUntil": "2026-04-01T00:00:00Z",
    }

    def test_dates_must_be_ordered(self, client, admin):
        body = {**self.BODY, "validUntil": "2026-02-01T00:00:00Z"}
        response = client.post("/admin/coupons", json=body, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "validFrom must be before validUntil"}

    def test_percentage_over_100(self, client, admin):
        response = client.post("/admin/coupons", json={**self.BODY, "value": 120}, headers=admin)
        assert response.status_code == 400

    def test_duplicate_code(self, client, admin):
        async def conflict(fields):
            raise asyncpg.UniqueViolationError("duplicate key")

        with patch.object(db_module, "create_coupon", side_effect=conflict):
            response = client.post("/admin/coupons", json=self.BODY, headers=admin)
        assert response.status_code == 409
        assert response.json() == {"error": "Coupon code already exists"}

    def test_create_uppercases_code(self, client, admin):
        captured = {}

        async def fake_create(fields):
            captured.update(fields)
            return {**fields, "id": "c1", "times_used": 0}

        with patch.object(db_module, "create_coupon", side_effect=fake_create):
            response = client.post("/admin/coupons", json=self.BODY, headers=admin)
        assert response.status_code == 201
        assert captured["code"] == "SWEET20"
        assert response.json()["coupon"]["usage"]["timesUsed"] == 0

    def test_patch_only_toggles_active(self, client, admin):
        response = client.patch("/admin/coupons/c1", json={"value": 50}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "No valid fields provided for update"}


class TestDeliveryCharges:

    @pytest.mark.parametrize("rule,message", [
        ({"type": "order_value"}, "Missing required fields for order value"),
        ({"type": "order_value", "order_value_threshold": 500, "delivery_type": "fixed"},
         "Missing required fields for order value"),
        ({"type": "distance", "start_km": 0, "end_km": 5}, "Missing required fields for distance"),
        ({"type": "distance", "start_km": 5, "end_km": 5, "price": 40}, "Start distance must be less than end distance"),
        ({"type": "distance", "start_km": 0, "end_km": 5, "price": 40}, None),
    ])
    def test_check_rule(self, rule, message):
        assert check_delivery_rule(rule) == message

    def test_create_rejects_bad_range(self, client, admin):
        response = client.post(
            "/admin/delivery-charges",
            json={"type": "distance", "start_km": 10, "end_km": 5, "price": 40},
            headers=admin,
        )
        assert response.status_code == 400

    def test_list_reports_gaps(self, client, admin):
        rules = [
            {"id": "a", "type": "distance", "start_km": 0, "end_km": 5, "price": 40, "is_active": True},
            {"id": "b", "type": "distance", "start_km": 8, "end_km": 12, "price": 80, "is_active": True},
            {"id": "c", "type": "distance", "start_km": 5, "end_km": 8, "price": 60, "is_active": False},
        ]
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(rules)):
            response = client.get("/admin/delivery-charges", headers=admin)
        data = response.json()
        assert len(data["rules"]) == 3
        assert [i["type"] for i in data["issues"]] == ["gap"]

    def test_update_revalidates_range(self, client, admin):
        current = [{"id": "a", "type": "distance", "start_km": 0, "end_km": 5, "price": 40}]
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(current)):
            response = client.put("/admin/delivery-charges/a", json={"start_km": 6}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "Start distance must be less than end distance"}

    def test_update_revalidates_type_change(self, client, admin):
        current = [{"id": "a", "type": "distance", "start_km": 0, "end_km": 5, "price": 40}]
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(current)), \
                patch.object(db_module, "update_delivery_charge") as update:
            response = client.put("/admin/delivery-charges/a", json={"type": "order_value"}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields for order value"}
        update.assert_not_called()

    def test_update_revalidates_order_value_fields(self, client, admin):
        current = [{
            "id": "v", "type": "order_value", "order_value_threshold": 1000, "delivery_type": "free",
        }]
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(current)):
            response = client.put("/admin/delivery-charges/v", json={"delivery_type": "fixed"}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields for order value"}

    def test_update_complete_type_change_is_saved(self, client, admin):
        current = [{"id": "a", "type": "distance", "start_km": 0, "end_km": 5, "price": 40}]
        body = {"type": "order_value", "order_value_threshold": 1500, "delivery_type": "free"}
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(current)), \
                patch.object(db_module, "update_delivery_charge", side_effect=async_return({**current[0], **body})):
            response = client.put("/admin/delivery-charges/a", json=body, headers=admin)
        assert response.status_code == 200
        assert response.json()["rule"]["type"] == "order_value"


class TestBanners:

    def test_partial_failure_is_207(self, client, admin):
        async def flaky(banner_type, device_type, position, image_url, redirect_url, is_active):
            if position == 1:
                raise RuntimeError("write failed")
            now = datetime(2026, 5, 1, 9, 30, tzinfo=timezone.utc)
            return {
                "id": f"b{position}", "position": position, "image_url": image_url,
                "created_at": now, "updated_at": now,
            }

        body = {"type": "hero", "banners": [{"imageUrl": "https://x/1.jpg"}, {"imageUrl": "https://x/2.jpg"}]}
        with patch.object(db_module, "upsert_banner", side_effect=flaky):
            response = client.post("/admin/banners", json=body, headers=admin)
        assert response.status_code == 207
        data = response.json()
        assert data["success"] is False
        assert data["errors"] == [{"position": 1, "error": "Failed to save banner"}]
        assert data["banners"][0]["id"] == "b0"
        assert data["banners"][0]["created_at"].startswith("2026-05-01T09:30:00")

    def test_footer_uses_single_slot(self, client, admin):
        calls = []

        async def record(banner_type, device_type, position, image_url, redirect_url, is_active):
            calls.append((banner_type, position, image_url))
            return {"id": "f", "position": position}

        body = {"type": "footer", "banners": [
            {"imageUrl": "https://x/1.jpg", "position": 3}, {"imageUrl": "https://x/2.jpg"},
        ]}
        with patch.object(db_module, "upsert_banner", side_effect=record):
            response = client.post("/admin/banners", json=body, headers=admin)
        assert response.status_code == 200
        assert calls == [("footer", 0, "https://x/1.jpg")]


class TestUsers:

    def test_cannot_demote_self(self, client, admin):
        response = client.patch(f"/admin/users/{ADMIN['id']}/role", json={"role": "user"}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "You cannot remove your own admin role"}


class TestUploads:

    def test_no_file(self, client, admin):
        response = client.post("/admin/uploads/image", data={"folder": "cakes"}, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "No file provided"}

    def test_not_an_image(self, client, admin):
        files = {"image": ("notes.txt", b"hello", "text/plain")}
        response = client.post("/admin/uploads/image", files=files, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "File must be an image"}

    def test_too_large(self, client, admin):
        files = {"image": ("big.png", b"x" * 11, "image/png")}
        with patch.object(settings, "max_upload_bytes", 10):
            response = client.post("/admin/uploads/image", files=files, headers=admin)
        assert response.status_code == 400
        assert response.json() == {"error": "File size must be less than 5MB"}

    def test_upload_returns_urls(self, client, admin):
        result = {
            "secure_url": "https://res.cloudinary.com/duchess/image/upload/v1/cakes/x.png",
            "public_id": "cakes/x",
            "width": 10, "height": 10, "format": "png", "bytes": 3,
        }
        files = {"image": ("x.png", b"png", "image/png")}
        with patch.object(media, "upload_image", side_effect=async_return(result)):
            response = client.post("/admin/uploads/image", files=files, data={"folder": "cakes"}, headers=admin)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["url"] == result["secure_url"]
        assert data["optimized_url"].endswith("/w_auto,f_auto,q_auto/cakes/x")

    def test_delete_missing_image(self, client, admin):
        with patch.object(media, "delete_image", side_effect=async_return(False)):
            response = client.request(
                "DELETE", "/admin/uploads/image", json={"publicId": "cakes/gone"}, headers=admin
            )
        assert response.status_code == 404
