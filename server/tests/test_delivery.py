"""
Tests for delivery pricing: the rules cache, road distance lookups,
pincode checks and /delivery/calculate.
"""

import asyncio
from unittest.mock import patch

import httpx
import pytest

from storefront import db as db_module
from storefront.settings import settings
from storefront.services import delivery
from storefront.services.delivery import DeliveryRulesCache
from conftest import async_return


RULES = [
    {"id": "r1", "type": "distance", "start_km": 0, "end_km": 5, "price": 40},
    {"id": "r2", "type": "distance", "start_km": 5, "end_km": 10, "price": 70},
    {"id": "v1", "type": "order_value", "order_value_threshold": 1000, "delivery_type": "free"},
]


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestRulesCache:

    def test_caches_within_ttl(self):
        calls = []

        async def load(active_only=True):
            calls.append(active_only)
            return RULES

        clock = FakeClock()
        cache = DeliveryRulesCache(ttl_seconds=60, clock=clock)
        with patch.object(db_module, "list_delivery_charges", side_effect=load):
            asyncio.run(cache.get_rules())
            clock.now += 30
            asyncio.run(cache.get_rules())
            clock.now += 31
            asyncio.run(cache.get_rules())
        assert calls == [True, True]

    def test_serves_stale_rules_on_error(self):
        async def broken(active_only=True):
            raise RuntimeError("db down")

        clock = FakeClock()
        cache = DeliveryRulesCache(ttl_seconds=60, clock=clock)
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(RULES)):
            asyncio.run(cache.get_rules())
        clock.now += 120
        with patch.object(db_module, "list_delivery_charges", side_effect=broken):
            assert asyncio.run(cache.get_rules()) == RULES

    def test_no_cache_and_error_uses_flat_fallback(self):
        async def broken(active_only=True):
            raise RuntimeError("db down")

        with patch.object(db_module, "list_delivery_charges", side_effect=broken):
            result = asyncio.run(delivery.calculate_delivery_charge(3, 400))
        assert result == {"charge": 80.0, "method": "fallback", "rule": None}

    def test_gap_between_ranges_uses_configured_fallback(self):
        rules = [
            {"id": "r1", "type": "distance", "start_km": 0, "end_km": 5, "price": 40},
            {"id": "r2", "type": "distance", "start_km": 8, "end_km": 12, "price": 90},
        ]
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(rules)), \
                patch.object(settings, "fallback_delivery_charge", 75.0):
            result = asyncio.run(delivery.calculate_delivery_charge(6.5, 100))
        assert result == {"charge": 75.0, "method": "fallback", "rule": None}

    def test_invalidate_forces_reload(self):
        calls = []

        async def load(active_only=True):
            calls.append(1)
            return RULES

        cache = DeliveryRulesCache(ttl_seconds=600)
        with patch.object(db_module, "list_delivery_charges", side_effect=load):
            asyncio.run(cache.get_rules())
            cache.invalidate()
            asyncio.run(cache.get_rules())
        assert len(calls) == 2


class TestRoadDistance:

    def test_uses_routing_service(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "/route/v1/driving/" in request.url.path
            return httpx.Response(200, json={"code": "Ok", "routes": [{"distance": 7340, "duration": 1260}]})

        result = asyncio.run(delivery.get_road_distance(11.02, 76.96, transport=httpx.MockTransport(handler)))
        assert result == {"distance": 7.3, "duration": 21, "source": "osrm"}

    def test_falls_back_to_straight_line(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        result = asyncio.run(delivery.get_road_distance(11.02, 76.96, transport=httpx.MockTransport(handler)))
        assert result["source"] == "haversine"
        assert result["distance"] > 0
        assert result["duration"] >= 1

    def test_no_route_falls_back(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": "NoRoute", "routes": []})

        result = asyncio.run(delivery.get_road_distance(11.02, 76.96, transport=httpx.MockTransport(handler)))
        assert result["source"] == "haversine"

    def test_haversine_zero_for_same_point(self):
        assert delivery.haversine_km(11.0, 77.0, 11.0, 77.0) == 0

    @pytest.mark.parametrize("lat,lon,ok", [(11.0, 77.0, True), (91, 0, False), (0, -181, False)])
    def test_validate_coordinates(self, lat, lon, ok):
        assert (delivery.validate_coordinates(lat, lon) is None) is ok


class TestPincode:

    def test_known_area(self):
        result = delivery.validate_pincode("641 004")
        assert result["isValid"] is True
        assert result["area"] == "Peelamedu"
        assert result["deliverable"] is True

    def test_outside_service_area(self):
        result = delivery.validate_pincode("600001")
        assert result["isValid"] is True
        assert result["deliverable"] is False
        assert result["state"] == "Tamil Nadu"

    @pytest.mark.parametrize("pincode", ["", "64100", "64100a", "6410011"])
    def test_invalid(self, pincode):
        assert delivery.validate_pincode(pincode)["isValid"] is False


class TestCalculateEndpoint:

    def test_distance_rule(self, client):
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(RULES)):
            response = client.post("/delivery/calculate", json={"orderValue": 400, "distance": 7})
        assert response.status_code == 200
        data = response.json()
        assert data["deliveryCharge"] == 70
        assert data["method"] == "distance"
        assert data["breakdown"]["ruleId"] == "r2"
        assert data["breakdown"]["isFree"] is False

    def test_free_over_threshold(self, client):
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return(RULES)):
            response = client.post("/delivery/calculate", json={"orderValue": 1500, "distance": 7})
        assert response.json()["breakdown"]["isFree"] is True

    def test_zone_formula_without_rules(self, client):
        with patch.object(db_module, "list_delivery_charges", side_effect=async_return([])):
            response = client.post(
                "/delivery/calculate",
                json={"orderValue": 400, "distance": 4, "deliveryZone": "Zone C - Extended"},
            )
        data = response.json()
        assert data["deliveryCharge"] == 75
        assert data["breakdown"]["zoneMultiplier"] == 1.5

    def test_bad_coordinates(self, client):
        response = client.post("/delivery/calculate", json={"orderValue": 400, "latitude": 123, "longitude": 77})
        assert response.status_code == 400
        assert response.json() == {"error": "Latitude must be between -90 and 90"}
