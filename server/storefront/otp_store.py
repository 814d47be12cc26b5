"""
One-time passcodes for email login.

Codes are 6 digits and expire after STOREFRONT_OTP_TTL_SECONDS (5 minutes).
Two backends:
- memory: per-process dict, lost on restart
- redis: shared between instances, expiry enforced by key TTL as well
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .settings import settings
from .redis_client import get_redis


logger = logging.getLogger(__name__)


def generate_otp(length: int = 6) -> str:
    """Uniformly random numeric code, zero padded."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def _normalize(email: str) -> str:
    return email.strip().lower()


@dataclass
class OTPEntry:
    code: str
    expires_at: float  # epoch seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


class MemoryOTPStore:
    """In-memory OTP store guarded by an asyncio lock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._codes: Dict[str, OTPEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def set(self, email: str, code: str, ttl_seconds: int) -> OTPEntry:
        entry = OTPEntry(code=code, expires_at=self._clock() + ttl_seconds)
        async with self._lock:
            self._codes[_normalize(email)] = entry
        return entry

    async def get(self, email: str) -> Optional[OTPEntry]:
        """Return the stored entry, expired or not; callers decide."""
        async with self._lock:
            return self._codes.get(_normalize(email))

    async def delete(self, email: str) -> None:
        async with self._lock:
            self._codes.pop(_normalize(email), None)

    async def clear_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [k for k, v in self._codes.items() if v.is_expired(now)]
            for key in expired:
                del self._codes[key]
        return len(expired)

    def is_expired(self, entry: OTPEntry) -> bool:
        return entry.is_expired(self._clock())

    async def close(self) -> None:
        self._codes.clear()


class RedisOTPStore:
    """Redis-backed OTP store. Keys: otp:<email>."""

    KEY_PREFIX = "otp:"

    def __init__(self, redis):
        self._redis = redis

    def _key(self, email: str) -> str:
        return f"{self.KEY_PREFIX}{_normalize(email)}"

    async def set(self, email: str, code: str, ttl_seconds: int) -> OTPEntry:
        entry = OTPEntry(code=code, expires_at=time.time() + ttl_seconds)
        payload = json.dumps({"otp": entry.code, "expires_at": entry.expires_at})
        await self._redis.set(self._key(email), payload, ex=ttl_seconds)
        return entry

    async def get(self, email: str) -> Optional[OTPEntry]:
        raw = await self._redis.get(self._key(email))
        if not raw:
            return None
        data = json.loads(raw)
        return OTPEntry(code=data["otp"], expires_at=float(data["expires_at"]))

    async def delete(self, email: str) -> None:
        await self._redis.delete(self._key(email))

    async def clear_expired(self) -> int:
        # key TTLs already evict expired codes
        return 0

    def is_expired(self, entry: OTPEntry) -> bool:
        return entry.is_expired()

    async def close(self) -> None:
        return None


# Global store instance
_store = None


async def init_otp_store() -> None:
    """Initialize the OTP store for the configured backend."""
    global _store
    if settings.store_backend == "redis":
        _store = RedisOTPStore(await get_redis())
    else:
        _store = MemoryOTPStore()


def get_otp_store():
    """Get the OTP store, falling back to an in-memory one."""
    global _store
    if _store is None:
        _store = MemoryOTPStore()
    return _store


async def close_otp_store() -> None:
    global _store
    if _store:
        await _store.close()
        _store = None


def get_store_type() -> str:
    if isinstance(_store, RedisOTPStore):
        return "redis"
    if isinstance(_store, MemoryOTPStore):
        return "memory"
    return "none"
