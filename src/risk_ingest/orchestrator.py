"""
Ingestion orchestrator.

Decides between the queued and the synchronous path, runs queued jobs with a
bounded exponential-backoff retry loop, reports progress, detects stalled
jobs, and always cleans up the uploaded file once a batch is finished.

Both paths go through pipeline.process_batch, so a file produces the same
BatchSummary counts whichever way it is run.
"""
import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set
from uuid import uuid4

from .cache import Cache, invalidate_after_batch
from .config import Settings
from .errors import JobRetryExhausted, ParseError, QueueUnavailable
from .jobqueue import QueueHandle
from .loader import PatientStore
from .logger import get_logger
from .models import BatchSummary, Job, JobState, RecordType
from .pipeline import process_batch, remove_artifact
from .scorer import RiskScorer

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Delay before the attempt that follows ``attempt`` (1-based): 2s, 4s, ..."""
        return self.base_delay_seconds * (self.exponential_base ** (attempt - 1))


@dataclass(frozen=True)
class SubmitResult:
    job_id: Optional[str] = None
    summary: Optional[BatchSummary] = None

    @property
    def queued(self) -> bool:
        return self.job_id is not None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    def __init__(
        self,
        queue: QueueHandle,
        store: PatientStore,
        scorer: RiskScorer,
        cache: Cache,
        retry: RetryPolicy = RetryPolicy(),
        completed_ttl: int = 3600,
        failed_ttl: int = 24 * 3600,
        stall_timeout: float = 30.0,
        max_stalled_count: int = 1,
        sleep: Sleep = asyncio.sleep,
    ):
        self.queue = queue
        self.store = store
        self.scorer = scorer
        self.cache = cache
        self.retry = retry
        self.completed_ttl = completed_ttl
        self.failed_ttl = failed_ttl
        self.stall_timeout = stall_timeout
        self.max_stalled_count = max_stalled_count
        self._sleep = sleep
        self._running: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings, queue: QueueHandle, store: PatientStore,
                      scorer: RiskScorer, cache: Cache) -> "Orchestrator":
        return cls(
            queue, store, scorer, cache,
            retry=RetryPolicy(settings.job_attempts, settings.job_backoff_seconds),
            completed_ttl=settings.completed_job_ttl,
            failed_ttl=settings.failed_job_ttl,
            stall_timeout=settings.stall_timeout,
            max_stalled_count=settings.max_stalled_count,
        )

    # ---- submission -------------------------------------------------------

    async def submit(self, path: str, record_type: RecordType, filename: Optional[str] = None) -> SubmitResult:
        if self.queue.is_available:
            job = Job(jobId=str(uuid4()), recordType=record_type, filePath=path, filename=filename)
            try:
                await self.queue.backend.enqueue(job)
            except QueueUnavailable as e:
                logger.warning(
                    "queue rejected job, processing synchronously",
                    extra={"record_type": record_type.value, "upload": filename, "reason": str(e)},
                )
            else:
                logger.info(
                    "CSV upload queued",
                    extra={"job_id": job.jobId, "record_type": record_type.value, "upload": filename},
                )
                return SubmitResult(job_id=job.jobId)

        summary = await self.run_sync(path, record_type, filename)
        return SubmitResult(summary=summary)

    async def run_sync(self, path: str, record_type: RecordType, filename: Optional[str] = None) -> BatchSummary:
        logger.info(
            "processing CSV synchronously",
            extra={"record_type": record_type.value, "upload": filename},
        )
        try:
            summary = await process_batch(path, record_type, self.scorer, self.store)
        finally:
            remove_artifact(path)
        await invalidate_after_batch(self.cache, record_type, summary.recordsSuccess)
        return summary

    async def get_job(self, job_id: str) -> Optional[Job]:
        if not self.queue.is_available:
            return None
        return await self.queue.backend.get(job_id)

    # ---- queued execution -------------------------------------------------

    async def process_next(self, timeout: float = 1.0) -> Optional[Job]:
        job_id = await self.queue.backend.dequeue(timeout)
        if job_id is None:
            return None
        return await self.run_job(job_id)

    async def run_job(self, job_id: str) -> Optional[Job]:
        backend = self.queue.backend
        self._running.add(job_id)
        beat: Optional[asyncio.Task] = None
        job: Optional[Job] = None
        try:
            job = await backend.get(job_id)
            if job is None:
                logger.warning("dequeued job has expired or never existed", extra={"job_id": job_id})
                return None
            if job.is_terminal:
                return job

            # keeps beating through backoff so the claim never looks abandoned
            beat = asyncio.create_task(self._heartbeat(job))
            while True:
                if job.attempts >= self.retry.max_attempts:
                    await self._fail(job, JobRetryExhausted(job.jobId, job.attempts, job.error))
                    return job

                job.attempts += 1
                job.state = JobState.active
                job.heartbeatAt = _now()
                job.touch()
                await backend.save(job)
                logger.info(
                    "processing CSV job",
                    extra={"job_id": job.jobId, "record_type": job.recordType.value, "attempt": job.attempts},
                )

                try:
                    summary = await process_batch(
                        job.filePath, job.recordType, self.scorer, self.store,
                        on_progress=lambda pct: self._progress(job, pct),
                    )
                except ParseError as e:
                    # a malformed file fails the same way on every attempt
                    await self._fail(job, e)
                    return job
                except Exception as e:
                    if job.attempts >= self.retry.max_attempts:
                        await self._fail(job, JobRetryExhausted(job.jobId, job.attempts, e))
                        return job
                    delay = self.retry.get_delay(job.attempts)
                    job.state = JobState.queued
                    job.error = str(e)
                    job.touch()
                    await backend.save(job)
                    logger.warning(
                        "CSV processing attempt failed, retrying",
                        extra={"job_id": job.jobId, "attempt": job.attempts, "retry_in": delay, "reason": str(e)},
                    )
                    await self._sleep(delay)
                    continue

                await self._complete(job, summary)
                return job
        except asyncio.CancelledError:
            if job is not None and not job.is_terminal:
                await self._release(job)
            raise
        finally:
            if beat is not None:
                beat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await beat
            self._running.discard(job_id)

    async def _release(self, job: Job) -> None:
        """Put an interrupted job back on the ready list. If that fails the reaper picks it up."""
        job.state = JobState.queued
        job.touch()
        try:
            await self.queue.backend.enqueue(job)
        except QueueUnavailable as e:
            logger.warning("could not release interrupted job", extra={"job_id": job.jobId, "reason": str(e)})
        else:
            logger.info("interrupted job released", extra={"job_id": job.jobId, "attempts": job.attempts})

    async def _progress(self, job: Job, pct: int) -> None:
        if pct > job.progress:
            job.progress = pct
        job.heartbeatAt = _now()
        job.touch()
        await self.queue.backend.save(job)

    async def _heartbeat(self, job: Job) -> None:
        interval = max(self.stall_timeout / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            if job.is_terminal:
                return
            job.heartbeatAt = _now()
            await self.queue.backend.save(job)

    async def _complete(self, job: Job, summary: BatchSummary) -> None:
        job.state = JobState.completed
        job.progress = 100
        job.result = summary
        job.error = None
        job.touch()
        await self.queue.backend.retain(job, self.completed_ttl)
        remove_artifact(job.filePath)
        await invalidate_after_batch(self.cache, job.recordType, summary.recordsSuccess)
        logger.info(
            "CSV processing job completed",
            extra={
                "job_id": job.jobId,
                "records_success": summary.recordsSuccess,
                "records_processed": summary.recordsProcessed,
            },
        )

    async def _fail(self, job: Job, error: Exception) -> None:
        job.state = JobState.failed
        job.error = str(error)
        job.touch()
        await self.queue.backend.retain(job, self.failed_ttl)
        remove_artifact(job.filePath)
        # an attempt may have written rows before it blew up
        await invalidate_after_batch(self.cache, job.recordType, 1)
        logger.error(
            "CSV processing job failed",
            extra={"job_id": job.jobId, "attempts": job.attempts, "error": job.error},
        )

    # ---- liveness ---------------------------------------------------------

    async def reap_stalled(self, now: Optional[datetime] = None) -> List[str]:
        """
        Flag claimed jobs not heard from within stall_timeout; requeue or fail them.

        A claimed job that never got its first save is judged by updatedAt.
        """
        now = now or _now()
        cutoff = now - timedelta(seconds=self.stall_timeout)
        backend = self.queue.backend
        reaped: List[str] = []
        for job in await backend.claimed_jobs():
            if job.jobId in self._running:
                continue
            if (job.heartbeatAt or job.updatedAt) > cutoff:
                continue

            job.stalledCount += 1
            job.state = JobState.stalled
            job.touch()
            await backend.save(job)
            logger.warning(
                "CSV processing job stalled",
                extra={"job_id": job.jobId, "stalled_count": job.stalledCount},
            )
            if job.stalledCount > self.max_stalled_count:
                await self._fail(job, RuntimeError(f"job stalled {job.stalledCount} times"))
            else:
                job.state = JobState.queued
                job.touch()
                await backend.enqueue(job)
            reaped.append(job.jobId)
        return reaped

    # ---- worker loops -----------------------------------------------------

    async def work(self, stop: asyncio.Event, worker_id: int = 0, poll_interval: float = 1.0) -> None:
        logger.info("worker started", extra={"worker_id": worker_id, "queue": repr(self.queue)})
        while not stop.is_set():
            try:
                await self.process_next(timeout=poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker error", extra={"worker_id": worker_id})
                await asyncio.sleep(poll_interval)
        logger.info("worker stopped", extra={"worker_id": worker_id})

    async def reap_forever(self, stop: asyncio.Event) -> None:
        interval = max(self.stall_timeout / 2, 0.05)
        while not stop.is_set():
            try:
                await self.reap_stalled()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("stall reaper error")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), interval)

    def start_workers(self, stop: asyncio.Event, concurrency: int) -> List[asyncio.Task]:
        tasks = [asyncio.create_task(self.work(stop, worker_id=i)) for i in range(concurrency)]
        tasks.append(asyncio.create_task(self.reap_forever(stop)))
        return tasks
