"""
Checkout sessions.

A checkout session freezes the cart, the computed totals and the delivery
details while the customer pays. Sessions expire 30 minutes after creation;
an expired session is deleted on read and never returned.

Backends:
- memory: per-process dict (default, development)
- redis: JSON documents with key TTL matching the session lifetime
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .settings import settings
from .redis_client import get_redis


logger = logging.getLogger(__name__)

PaymentStatus = Literal["pending", "processing", "paid", "failed", "cancelled"]

# Fields a caller may never overwrite through update_session
_PROTECTED_FIELDS = {"checkout_id", "created_at", "expires_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutItem(_CamelModel):
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    product_description: Optional[str] = None
    category: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    variant: Optional[str] = None
    customization_options: Dict[str, Any] = {}
    cake_text: Optional[str] = None
    cake_flavor: Optional[str] = None
    cake_size: Optional[str] = None
    cake_weight: Optional[float] = None
    item_has_knife: bool = False
    item_has_candle: bool = False
    item_has_message_card: bool = False
    item_message_card_text: Optional[str] = None


class ContactInfo(_CamelModel):
    name: str
    phone: str
    alternate_phone: Optional[str] = None


class CheckoutSession(_CamelModel):
    checkout_id: str
    user_id: Optional[str] = None
    user_email: str
    items: List[CheckoutItem]

    subtotal: float
    discount: float = 0
    delivery_fee: float = 0
    total_amount: float
    cgst_amount: float = 0
    sgst_amount: float = 0

    address_text: Optional[str] = None
    selected_address_id: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_id: Optional[str] = None
    customization_options: Dict[str, Any] = {}
    cake_text: Optional[str] = None
    message_card_text: Optional[str] = None
    contact_info: Optional[ContactInfo] = None
    notes: Optional[str] = None

    delivery_timing: str = "same_day"
    delivery_date: Optional[str] = None
    delivery_time_slot: Optional[str] = None
    estimated_delivery_time: Optional[str] = None
    distance: Optional[float] = None
    duration: Optional[int] = None
    delivery_zone: Optional[str] = None

    payment_status: PaymentStatus = "pending"
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    payment_attempts: int = 0

    database_order_id: Optional[str] = None
    order_number: Optional[str] = None

    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at

    def to_public(self) -> dict:
        """camelCase JSON-ready representation for API responses."""
        return self.model_dump(mode="json", by_alias=True)


class BaseCheckoutStore:
    """
    Session lifecycle on top of four storage primitives implemented by
    the concrete backends: _load, _save, _remove and _list_ids.
    """

    def __init__(self, ttl_seconds: int = 1800, clock: Callable[[], datetime] = _utcnow):
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    # -- primitives --

    async def _load(self, checkout_id: str) -> Optional[CheckoutSession]:
        raise NotImplementedError

    async def _save(self, session: CheckoutSession) -> None:
        raise NotImplementedError

    async def _remove(self, checkout_id: str) -> bool:
        raise NotImplementedError

    async def _list_ids(self) -> List[str]:
        raise NotImplementedError

    async def _find_by_razorpay_order_id(self, razorpay_order_id: str) -> Optional[CheckoutSession]:
        for checkout_id in await self._list_ids():
            session = await self._load(checkout_id)
            if session and session.razorpay_order_id == razorpay_order_id:
                return session
        return None

    # -- lifecycle --

    async def create_session(self, data: dict) -> CheckoutSession:
        """Create a pending session from checkout data (snake_case keys)."""
        now = self._clock()
        fields = {k: v for k, v in data.items() if k not in _PROTECTED_FIELDS}
        fields.update(
            checkout_id=str(uuid.uuid4()),
            payment_status="pending",
            payment_attempts=0,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        session = CheckoutSession.model_validate(fields)
        await self._save(session)
        logger.info(f"[checkout] Created session {session.checkout_id} for {session.user_email}")
        await self.cleanup_expired_sessions()
        return session

    async def get_session(self, checkout_id: str) -> Optional[CheckoutSession]:
        session = await self._load(checkout_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            await self._remove(checkout_id)
            logger.info(f"[checkout] Session {checkout_id} expired")
            return None
        return session

    async def update_session(self, checkout_id: str, updates: dict) -> Optional[CheckoutSession]:
        session = await self.get_session(checkout_id)
        if session is None:
            return None
        changes = {k: v for k, v in updates.items() if k not in _PROTECTED_FIELDS}
        updated = CheckoutSession.model_validate({**session.model_dump(), **changes})
        await self._save(updated)
        return updated

    async def delete_session(self, checkout_id: str) -> bool:
        return await self._remove(checkout_id)

    async def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        removed = 0
        for checkout_id in await self._list_ids():
            session = await self._load(checkout_id)
            if session is not None and session.is_expired(now):
                await self._remove(checkout_id)
                removed += 1
        if removed:
            logger.info(f"[checkout] Cleaned up {removed} expired sessions")
        return removed

    async def get_session_count(self) -> int:
        return len(await self._list_ids())

    async def update_payment_status(
        self,
        checkout_id: str,
        status: PaymentStatus,
        razorpay_payment_id: Optional[str] = None,
        razorpay_signature: Optional[str] = None,
        razorpay_order_id: Optional[str] = None,
    ) -> Optional[CheckoutSession]:
        """Record a payment state change; every call counts as an attempt."""
        session = await self.get_session(checkout_id)
        if session is None:
            return None
        updates: Dict[str, Any] = {
            "payment_status": status,
            "payment_attempts": session.payment_attempts + 1,
        }
        if razorpay_payment_id:
            updates["razorpay_payment_id"] = razorpay_payment_id
        if razorpay_signature:
            updates["razorpay_signature"] = razorpay_signature
        if razorpay_order_id:
            updates["razorpay_order_id"] = razorpay_order_id
        logger.info(f"[checkout] Session {checkout_id} payment status -> {status}")
        return await self.update_session(checkout_id, updates)

    async def get_session_by_razorpay_order_id(self, razorpay_order_id: str) -> Optional[CheckoutSession]:
        session = await self._find_by_razorpay_order_id(razorpay_order_id)
        if session is None:
            return None
        return await self.get_session(session.checkout_id)

    async def update_database_order_id(
        self, checkout_id: str, order_id: str, order_number: Optional[str] = None
    ) -> Optional[CheckoutSession]:
        updates = {"database_order_id": order_id}
        if order_number:
            updates["order_number"] = order_number
        return await self.update_session(checkout_id, updates)

    async def close(self) -> None:
        return None


class MemoryCheckoutStore(BaseCheckoutStore):
    """In-memory checkout sessions. Lost on restart; per-instance only."""

    def __init__(self, ttl_seconds: int = 1800, clock: Callable[[], datetime] = _utcnow):
        super().__init__(ttl_seconds, clock)
        self._sessions: Dict[str, CheckoutSession] = {}
        self._lock = asyncio.Lock()

    async def _load(self, checkout_id: str) -> Optional[CheckoutSession]:
        async with self._lock:
            return self._sessions.get(checkout_id)

    async def _save(self, session: CheckoutSession) -> None:
        async with self._lock:
            self._sessions[session.checkout_id] = session

    async def _remove(self, checkout_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(checkout_id, None) is not None

    async def _list_ids(self) -> List[str]:
        async with self._lock:
            return list(self._sessions.keys())

    async def close(self) -> None:
        self._sessions.clear()


class RedisCheckoutStore(BaseCheckoutStore):
    """
    Redis checkout sessions.

    Keys:
    - checkout:session:<id> -> session JSON (TTL = remaining lifetime)
    - checkout:rzp:<gateway order id> -> checkout id
    """

    SESSION_PREFIX = "checkout:session:"
    ORDER_INDEX_PREFIX = "checkout:rzp:"

    def __init__(self, redis, ttl_seconds: int = 1800, clock: Callable[[], datetime] = _utcnow):
        super().__init__(ttl_seconds, clock)
        self._redis = redis

    def _ttl_for(self, session: CheckoutSession) -> int:
        return max(1, int((session.expires_at - self._clock()).total_seconds()))

    async def _load(self, checkout_id: str) -> Optional[CheckoutSession]:
        raw = await self._redis.get(f"{self.SESSION_PREFIX}{checkout_id}")
        if not raw:
            return None
        return CheckoutSession.model_validate_json(raw)

    async def _save(self, session: CheckoutSession) -> None:
        ttl = self._ttl_for(session)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(f"{self.SESSION_PREFIX}{session.checkout_id}", session.model_dump_json(), ex=ttl)
            if session.razorpay_order_id:
                pipe.set(f"{self.ORDER_INDEX_PREFIX}{session.razorpay_order_id}", session.checkout_id, ex=ttl)
            await pipe.execute()

    async def _remove(self, checkout_id: str) -> bool:
        session = await self._load(checkout_id)
        keys = [f"{self.SESSION_PREFIX}{checkout_id}"]
        if session and session.razorpay_order_id:
            keys.append(f"{self.ORDER_INDEX_PREFIX}{session.razorpay_order_id}")
        return await self._redis.delete(*keys) > 0

    async def _list_ids(self) -> List[str]:
        ids = []
        async for key in self._redis.scan_iter(match=f"{self.SESSION_PREFIX}*"):
            ids.append(key[len(self.SESSION_PREFIX):])
        return ids

    async def _find_by_razorpay_order_id(self, razorpay_order_id: str) -> Optional[CheckoutSession]:
        checkout_id = await self._redis.get(f"{self.ORDER_INDEX_PREFIX}{razorpay_order_id}")
        if not checkout_id:
            return None
        return await self._load(checkout_id)

    async def cleanup_expired_sessions(self) -> int:
        # key TTLs evict expired sessions
        return 0


# Global store instance
_store: Optional[BaseCheckoutStore] = None


async def init_checkout_store() -> None:
    """Initialize the checkout store for the configured backend."""
    global _store
    if settings.store_backend == "redis":
        _store = RedisCheckoutStore(await get_redis(), ttl_seconds=settings.checkout_ttl_seconds)
    else:
        _store = MemoryCheckoutStore(ttl_seconds=settings.checkout_ttl_seconds)


def get_checkout_store() -> BaseCheckoutStore:
    """Get the checkout store, falling back to an in-memory one."""
    global _store
    if _store is None:
        _store = MemoryCheckoutStore(ttl_seconds=settings.checkout_ttl_seconds)
    return _store


async def close_checkout_store() -> None:
    global _store
    if _store:
        await _store.close()
        _store = None


def get_store_type() -> str:
    if isinstance(_store, RedisCheckoutStore):
        return "redis"
    if isinstance(_store, MemoryCheckoutStore):
        return "memory"
    return "none"
