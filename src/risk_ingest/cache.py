"""
Read-side cache and its invalidation after writes.

Every backend operation is best effort: if Redis is down the call is a no-op
and reads fall through to the store. Staleness is bounded by the TTL the
value was written with, not by invalidation succeeding.
"""
import fnmatch
import json
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .logger import get_logger
from .models import PatientFilter, RecordType

logger = get_logger(__name__)

DASHBOARD_STATS = "dashboard:stats"
ANALYTICS_INSIGHTS = "analytics:insights"
ANALYTICS_TRENDS = "analytics:trends"
AGGREGATE_KEYS = (DASHBOARD_STATS, ANALYTICS_INSIGHTS, ANALYTICS_TRENDS)


def patients_prefix(record_type: RecordType) -> str:
    return f"patients:{record_type.value}:"


def patients_page_key(record_type: RecordType, page: int, limit: int, flt: Optional[PatientFilter] = None) -> str:
    filters = flt.cache_fragment() if flt is not None else "{}"
    return f"{patients_prefix(record_type)}{page}:{limit}:{filters}"


def patient_key(record_type: RecordType, record_id: str) -> str:
    return f"{patients_prefix(record_type)}id:{record_id}"


class Cache(Protocol):
    available: bool

    async def ping(self) -> bool: ...
    async def get(self, key: str) -> Optional[Any]: ...
    async def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def delete_prefix(self, pattern: str) -> None: ...


class NullCache:
    """No backend at all. Every call is a no-op."""

    available = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def delete_prefix(self, pattern: str) -> None:
        return None


class MemoryCache:
    available = True

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        self._data[key] = (self._clock() + ttl_seconds, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_prefix(self, pattern: str) -> None:
        for key in [k for k in self._data if fnmatch.fnmatchcase(k, _glob(pattern))]:
            self._data.pop(key, None)


class RedisCache:
    def __init__(self, client: aioredis.Redis):
        self.client = client
        self.available = True

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError):
            return False

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
            return json.loads(raw) if raw else None
        except (RedisError, OSError, ValueError) as e:
            logger.debug("cache get skipped", extra={"key": key, "reason": str(e)})
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        try:
            await self.client.setex(key, ttl_seconds, json.dumps(value, default=str))
        except (RedisError, OSError, TypeError) as e:
            logger.debug("cache set skipped", extra={"key": key, "reason": str(e)})

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except (RedisError, OSError) as e:
            logger.debug("cache delete skipped", extra={"key": key, "reason": str(e)})

    async def delete_prefix(self, pattern: str) -> None:
        try:
            batch = []
            async for key in self.client.scan_iter(match=_glob(pattern), count=500):
                batch.append(key)
                if len(batch) >= 500:
                    await self.client.delete(*batch)
                    batch = []
            if batch:
                await self.client.delete(*batch)
        except (RedisError, OSError) as e:
            logger.debug("cache prefix delete skipped", extra={"pattern": pattern, "reason": str(e)})


def _glob(pattern: str) -> str:
    return pattern if pattern.endswith("*") else pattern + "*"


async def invalidate_after_batch(cache: Cache, record_type: RecordType, success_count: int) -> bool:
    """Drop list pages for ``record_type`` and the global aggregates. Returns True if anything was attempted."""
    if success_count <= 0:
        return False
    await cache.delete_prefix(patients_prefix(record_type))
    for key in AGGREGATE_KEYS:
        await cache.delete(key)
    logger.info(
        "cache invalidated",
        extra={"record_type": record_type.value, "records_success": success_count, "cache_available": cache.available},
    )
    return True


async def invalidate_record(cache: Cache, record_type: RecordType) -> None:
    # the by-id key lives under the same prefix as the list pages
    await invalidate_after_batch(cache, record_type, 1)
