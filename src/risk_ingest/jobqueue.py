"""
Job queue backends and the handle the orchestrator is given at startup.

A QueueHandle is either available (wraps a backend) or unavailable; it is
chosen once by select_queue_handle() and never re-probed. Backends persist
Job snapshots, hand out queued job ids, and expire terminal jobs after their
retention window.

dequeue() claims an id: it stays claimed until the job is retained as
terminal or enqueued again, so the stall reaper can always find a job a
worker took and then lost.
"""
import asyncio
import time
from typing import Dict, List, Optional, Protocol, Set, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings
from .errors import QueueUnavailable
from .logger import get_logger
from .models import Job

logger = get_logger(__name__)

QUEUE_NAME = "csv-processing"


class QueueBackend(Protocol):
    name: str

    async def ping(self) -> bool: ...
    async def enqueue(self, job: Job) -> None: ...
    async def dequeue(self, timeout: float = 1.0) -> Optional[str]: ...
    async def save(self, job: Job) -> None: ...
    async def get(self, job_id: str) -> Optional[Job]: ...
    async def retain(self, job: Job, ttl_seconds: int) -> None: ...
    async def claimed_jobs(self) -> List[Job]: ...
    async def close(self) -> None: ...


class QueueHandle:
    def __init__(self, backend: Optional[QueueBackend] = None):
        self.backend = backend

    @classmethod
    def available(cls, backend: QueueBackend) -> "QueueHandle":
        return cls(backend)

    @classmethod
    def unavailable(cls) -> "QueueHandle":
        return cls(None)

    @property
    def is_available(self) -> bool:
        return self.backend is not None

    def __repr__(self) -> str:
        return f"QueueHandle({self.backend.name if self.backend else 'unavailable'})"


class MemoryQueueBackend:
    """In-process queue. Jobs do not survive a restart."""

    name = "memory"

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._jobs: Dict[str, Tuple[Job, Optional[float]]] = {}
        self._claimed: Set[str] = set()
        self._ready: Optional[asyncio.Queue] = None

    def _queue(self) -> asyncio.Queue:
        if self._ready is None:
            self._ready = asyncio.Queue()
        return self._ready

    def _prune(self) -> None:
        now = self._clock()
        for job_id in [k for k, (_, exp) in self._jobs.items() if exp is not None and exp <= now]:
            del self._jobs[job_id]

    async def ping(self) -> bool:
        return True

    async def enqueue(self, job: Job) -> None:
        await self.save(job)
        self._claimed.discard(job.jobId)
        self._queue().put_nowait(job.jobId)

    async def dequeue(self, timeout: float = 1.0) -> Optional[str]:
        try:
            job_id = await asyncio.wait_for(self._queue().get(), timeout)
        except asyncio.TimeoutError:
            return None
        self._claimed.add(job_id)
        return job_id

    async def save(self, job: Job) -> None:
        self._jobs[job.jobId] = (job.model_copy(deep=True), None)

    async def get(self, job_id: str) -> Optional[Job]:
        self._prune()
        item = self._jobs.get(job_id)
        return item[0].model_copy(deep=True) if item else None

    async def retain(self, job: Job, ttl_seconds: int) -> None:
        self._jobs[job.jobId] = (job.model_copy(deep=True), self._clock() + ttl_seconds)
        self._claimed.discard(job.jobId)

    async def claimed_jobs(self) -> List[Job]:
        jobs: List[Job] = []
        for job_id in sorted(self._claimed):
            job = await self.get(job_id)
            if job is None or job.is_terminal:
                self._claimed.discard(job_id)
                continue
            jobs.append(job)
        return jobs

    async def close(self) -> None:
        return None


class RedisQueueBackend:
    """
    Jobs as JSON strings under ``{prefix}:job:{id}``. Ready ids sit on a list
    and are moved atomically onto a processing list when a worker claims them.
    """

    name = "redis"

    def __init__(self, client: aioredis.Redis, prefix: str = QUEUE_NAME):
        self.client = client
        self.prefix = prefix

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    @property
    def _ready_key(self) -> str:
        return f"{self.prefix}:ready"

    @property
    def _processing_key(self) -> str:
        return f"{self.prefix}:processing"

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError):
            return False

    async def enqueue(self, job: Job) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.jobId), job.model_dump_json())
                pipe.lrem(self._processing_key, 0, job.jobId)
                pipe.rpush(self._ready_key, job.jobId)
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise QueueUnavailable(str(e)) from e

    async def dequeue(self, timeout: float = 1.0) -> Optional[str]:
        job_id = await self.client.blmove(
            self._ready_key, self._processing_key, max(1, int(timeout)), "LEFT", "RIGHT",
        )
        if job_id is None:
            return None
        return job_id.decode() if isinstance(job_id, bytes) else job_id

    async def save(self, job: Job) -> None:
        await self.client.set(self._job_key(job.jobId), job.model_dump_json())

    async def get(self, job_id: str) -> Optional[Job]:
        raw = await self.client.get(self._job_key(job_id))
        return Job.model_validate_json(raw) if raw else None

    async def retain(self, job: Job, ttl_seconds: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.jobId), job.model_dump_json(), ex=ttl_seconds)
            pipe.lrem(self._processing_key, 0, job.jobId)
            await pipe.execute()

    async def claimed_jobs(self) -> List[Job]:
        jobs: List[Job] = []
        for raw_id in await self.client.lrange(self._processing_key, 0, -1):
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            job = await self.get(job_id)
            if job is None or job.is_terminal:
                await self.client.lrem(self._processing_key, 0, job_id)
                continue
            jobs.append(job)
        return jobs

    async def close(self) -> None:
        await self.client.aclose()


def redis_client(settings: Settings) -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, socket_connect_timeout=2)


async def select_queue_handle(settings: Settings) -> QueueHandle:
    kind = settings.queue_backend
    if kind == "memory":
        return QueueHandle.available(MemoryQueueBackend())
    if kind == "redis":
        backend = RedisQueueBackend(redis_client(settings))
        if await backend.ping():
            logger.info("job queue connected", extra={"backend": "redis"})
            return QueueHandle.available(backend)
        await backend.close()
        logger.warning("Redis not available - job queue disabled, CSV processing will be synchronous")
    return QueueHandle.unavailable()
