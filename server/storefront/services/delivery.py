"""
Delivery: charge rules (cached), road distance from the shop, pincode checks.
"""

import asyncio
import logging
import math
import re
import time
from typing import Callable, List, Optional

import httpx

from .. import db
from .. import pricing
from ..settings import settings


logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
# Used to estimate travel time when the routing service is unavailable
FALLBACK_SPEED_KMH = 25.0

PINCODE_PATTERN = re.compile(r"^\d{6}$")

COIMBATORE_AREAS = {
    "641001": "Coimbatore H.O.",
    "641002": "R S Puram",
    "641003": "Lawley Road",
    "641004": "Peelamedu",
    "641005": "Singanallur",
    "641006": "Ganapathy",
    "641007": "Veera Keralam",
    "641008": "Kuniamuthur",
    "641009": "Ram Nagar",
    "641010": "Perur",
    "641011": "Saibaba Colony",
    "641012": "Gandhipuram",
    "641013": "Govt College of Technology",
    "641014": "Civil Aerodrome",
    "641015": "Uppilipalayam",
    "641016": "Ondipudur",
    "641018": "Coimbatore Central",
    "641020": "Perianaickenpalayam",
    "641021": "Industrial Estate",
    "641022": "NGGO Colony",
    "641023": "Podanur",
    "641024": "Sundrapuram",
    "641025": "Velandipalayam",
    "641026": "Selvapuram",
    "641027": "Rathnapuri",
    "641028": "Sowripalayam",
    "641030": "Kavundampalayam",
    "641034": "Thudialur",
    "641035": "Saravanampatti",
    "641041": "Vadavalli",
    "641045": "Ramanathapuram",
    "641046": "Bharathiar University",
    "641048": "Kovaipudur",
}


class DeliveryRulesCache:
    """
    Active delivery-charge rules with a TTL.

    On a database error the last good (possibly stale) rules are served;
    with nothing cached the caller falls back to a flat charge.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._rules: Optional[List[dict]] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._rules = None
        self._loaded_at = 0.0

    def _fresh(self) -> bool:
        return self._rules is not None and (self._clock() - self._loaded_at) < self.ttl_seconds

    async def get_rules(self) -> Optional[List[dict]]:
        if self._fresh():
            return self._rules
        async with self._lock:
            if self._fresh():
                return self._rules
            try:
                self._rules = await db.list_delivery_charges(active_only=True)
                self._loaded_at = self._clock()
            except Exception as e:
                if self._rules is not None:
                    logger.warning(f"[delivery] Rule refresh failed, serving stale cache: {e}")
                else:
                    logger.error(f"[delivery] Rule load failed and no cache available: {e}")
            return self._rules


rules_cache = DeliveryRulesCache(ttl_seconds=settings.delivery_rules_ttl_seconds)


async def calculate_delivery_charge(
    distance_km: float,
    order_value: float,
    zone: Optional[str] = None,
) -> dict:
    """Delivery charge for an order, with the rule that produced it."""
    rules = await rules_cache.get_rules()
    if rules is None:
        return {
            "charge": settings.fallback_delivery_charge,
            "method": "fallback",
            "rule": None,
        }
    return pricing.resolve_delivery_charge(
        distance_km, order_value, rules, zone=zone, fallback=settings.fallback_delivery_charge
    )


async def calculate_delivery_charges_batch(requests: List[dict]) -> List[dict]:
    """Charges for several (distance, order value) pairs sharing one rule load."""
    results = []
    for req in requests:
        distance = float(req.get("distance", settings.default_delivery_distance_km))
        order_value = float(req.get("orderValue", req.get("order_value", 0)))
        result = await calculate_delivery_charge(distance, order_value)
        results.append({"distance": distance, "orderValue": order_value, **result})
    return results


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def validate_coordinates(latitude: float, longitude: float) -> Optional[str]:
    if not -90 <= latitude <= 90:
        return "Latitude must be between -90 and 90"
    if not -180 <= longitude <= 180:
        return "Longitude must be between -180 and 180"
    return None


async def get_road_distance(
    latitude: float,
    longitude: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    Driving distance and time from the shop to a point.

    Uses the OSRM route API; on any failure falls back to the straight-line
    distance with a time estimate.
    """
    origin = f"{settings.shop_longitude},{settings.shop_latitude}"
    destination = f"{longitude},{latitude}"
    url = f"{settings.routing_api_url.rstrip('/')}/route/v1/driving/{origin};{destination}"
    try:
        async with httpx.AsyncClient(timeout=settings.routing_timeout_seconds, transport=transport) as client:
            response = await client.get(url, params={"overview": "false"})
        response.raise_for_status()
        data = response.json()
        if data.get("code") != "Ok" or not data.get("routes"):
            raise ValueError(f"routing service returned {data.get('code')}")
        route = data["routes"][0]
        return {
            "distance": round(route["distance"] / 1000, 1),
            "duration": max(1, round(route["duration"] / 60)),
            "source": "osrm",
        }
    except (httpx.HTTPError, ValueError, KeyError) as e:
        logger.warning(f"[delivery] Road distance lookup failed, using straight line: {e}")

    distance = haversine_km(settings.shop_latitude, settings.shop_longitude, latitude, longitude)
    return {
        "distance": round(distance, 1),
        "duration": max(1, round(distance / FALLBACK_SPEED_KMH * 60)),
        "source": "haversine",
    }


def validate_pincode(pincode: str) -> dict:
    """Validate an Indian 6-digit pincode and check the Coimbatore service area."""
    clean = re.sub(r"\s+", "", pincode or "")
    if not PINCODE_PATTERN.match(clean):
        return {"isValid": False, "error": "Please enter a valid 6-digit pincode."}
    area = COIMBATORE_AREAS.get(clean)
    is_coimbatore = area is not None or clean.startswith("641")
    return {
        "isValid": True,
        "pincode": clean,
        "isCoimbatoreArea": is_coimbatore,
        "city": "Coimbatore" if is_coimbatore else None,
        "state": "Tamil Nadu" if clean.startswith(("60", "61", "62", "63", "64")) else None,
        "area": area or "",
        "deliverable": is_coimbatore,
    }
