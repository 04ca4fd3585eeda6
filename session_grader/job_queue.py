import os
import time
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Optional, Tuple

from dotenv import load_dotenv
import redis.asyncio as redis

from .schemas import LineRatingJob

load_dotenv()

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """
    FIFO of line-rating jobs keyed by (session_id, batch_index)

    Enqueueing a job whose identity is still pending replaces its payload
    instead of queueing it twice.
    """

    @abstractmethod
    async def enqueue(self, job: LineRatingJob) -> bool:
        """Queue a job; returns False when the identity was already pending"""

    @abstractmethod
    async def dequeue(self, timeout: float = 1.0) -> Optional[LineRatingJob]:
        """Next job, or None after timeout seconds without one"""

    @abstractmethod
    async def size(self) -> int:
        ...

    async def close(self) -> None:
        return None


class InMemoryJobQueue(JobQueue):
    """Process-local queue for the in-process worker pool and tests"""

    def __init__(self):
        self._order: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[Tuple[str, int], LineRatingJob] = {}

    async def enqueue(self, job: LineRatingJob) -> bool:
        identity = job.identity
        is_new = identity not in self._pending
        self._pending[identity] = job
        if is_new:
            await self._order.put(identity)
        return is_new

    async def dequeue(self, timeout: float = 1.0) -> Optional[LineRatingJob]:
        try:
            identity = await asyncio.wait_for(self._order.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._pending.pop(identity, None)

    async def size(self) -> int:
        return len(self._pending)


class RedisJobQueue(JobQueue):
    """Durable queue: a list of identities plus a hash of pending payloads"""

    QUEUE_KEY = "line-rating:queue"
    PENDING_KEY = "line-rating:pending"

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.redis = client or redis.from_url(self.redis_url)

    @staticmethod
    def _field(job: LineRatingJob) -> str:
        return f"{job.session_id}:{job.run_id or '-'}:{job.batch_index}"

    async def enqueue(self, job: LineRatingJob) -> bool:
        field = self._field(job)
        is_new = await self.redis.hset(self.PENDING_KEY, field, job.model_dump_json())
        # hset returns the number of new fields; an update means it is already queued
        if is_new:
            await self.redis.rpush(self.QUEUE_KEY, field)
        return bool(is_new)

    async def dequeue(self, timeout: float = 1.0) -> Optional[LineRatingJob]:
        item = await self.redis.blpop([self.QUEUE_KEY], timeout=max(1, int(timeout)))
        if item is None:
            return None
        _, field = item
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hget(self.PENDING_KEY, field)
            pipe.hdel(self.PENDING_KEY, field)
            payload, _ = await pipe.execute()
        if payload is None:
            logger.warning(f"Queued job {field!r} had no payload, skipping")
            return None
        return LineRatingJob.model_validate_json(payload)

    async def size(self) -> int:
        return await self.redis.hlen(self.PENDING_KEY)

    async def close(self) -> None:
        await self.redis.aclose()


class RateLimiter:
    """Sliding window limiter: at most max_jobs acquisitions per per_seconds"""

    def __init__(self, max_jobs: int = 10, per_seconds: float = 1.0):
        self.max_jobs = max_jobs
        self.per_seconds = per_seconds
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._stamps and now - self._stamps[0] >= self.per_seconds:
                    self._stamps.popleft()
                if len(self._stamps) < self.max_jobs:
                    self._stamps.append(now)
                    return
                await asyncio.sleep(self.per_seconds - (now - self._stamps[0]))


def create_job_queue(backend: Optional[str] = None) -> JobQueue:
    """Build the queue selected by JOB_QUEUE_BACKEND (memory, redis)"""
    backend = (backend or os.getenv("JOB_QUEUE_BACKEND", "memory")).lower()
    if backend == "redis":
        return RedisJobQueue()
    if backend != "memory":
        logger.warning(f"Unknown job queue backend '{backend}', using in-memory queue")
    return InMemoryJobQueue()
