# src/risk_ingest/services.py
from dataclasses import dataclass, field
from typing import Any, List, Optional

from redis.exceptions import RedisError

from .cache import Cache, MemoryCache, NullCache, RedisCache
from .config import Settings
from .db import get_pool
from .jobqueue import QueueHandle, redis_client, select_queue_handle
from .loader import InMemoryPatientStore, PatientStore, PostgresPatientStore
from .logger import get_logger
from .orchestrator import Orchestrator
from .scorer import RiskScorer

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: PatientStore
    scorer: RiskScorer
    cache: Cache
    queue: QueueHandle
    orchestrator: Orchestrator
    _closers: List[Any] = field(default_factory=list)

    async def close(self) -> None:
        for closer in self._closers:
            await closer()
        if self.queue.is_available:
            await self.queue.backend.close()


async def select_cache(settings: Settings) -> Cache:
    if settings.cache_backend == "memory":
        return MemoryCache()
    if settings.cache_backend == "redis":
        client = redis_client(settings)
        try:
            await client.ping()
        except (RedisError, OSError):
            await client.aclose()
            logger.warning("Redis not available - running without cache")
            return NullCache()
        return RedisCache(client)
    return NullCache()


async def build_services(
    settings: Settings,
    store: Optional[PatientStore] = None,
    scorer: Optional[RiskScorer] = None,
    cache: Optional[Cache] = None,
    queue: Optional[QueueHandle] = None,
) -> Services:
    """Wire the pipeline collaborators once at startup. Anything passed in is used as-is."""
    closers = []
    if store is None:
        if settings.store_backend == "postgres":
            pool = await get_pool(settings)
            store = PostgresPatientStore(pool)
            await store.ensure_schema()
            closers.append(pool.close)
        else:
            store = InMemoryPatientStore()
    if scorer is None:
        scorer = RiskScorer.from_settings(settings)
    if cache is None:
        cache = await select_cache(settings)
        if isinstance(cache, RedisCache):
            closers.append(cache.client.aclose)
    if queue is None:
        queue = await select_queue_handle(settings)

    orchestrator = Orchestrator.from_settings(settings, queue, store, scorer, cache)
    logger.info(
        "services ready",
        extra={
            "store": type(store).__name__,
            "cache": type(cache).__name__,
            "queue": repr(queue),
            "inference": bool(settings.inference_url),
        },
    )
    return Services(settings, store, scorer, cache, queue, orchestrator, closers)
