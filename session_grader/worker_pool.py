import os
import time
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import SessionNotFoundError
from .job_queue import JobQueue, RateLimiter
from .line_rating import LineRater
from .schemas import GradingJobRecord, LineRatingJob, LineRatingsStatus, SessionGradingState

logger = logging.getLogger(__name__)


def _mark_processing(state: SessionGradingState, job: LineRatingJob) -> None:
    if job.run_id == state.run_id and state.line_ratings_status == LineRatingsStatus.QUEUED:
        state.line_ratings_status = LineRatingsStatus.PROCESSING


class WorkerPool:
    """
    Bounded pool of asyncio workers consuming line-rating jobs

    Lifecycle is explicit: start() spawns the workers, drain() waits for the
    queue and in-flight jobs to empty, shutdown() optionally drains and then
    stops the workers.
    """

    def __init__(self, queue: JobQueue, rater: LineRater, store, concurrency: int = None,
                 rate_limit: int = None, max_attempts: int = 2, backoff: float = 1.0,
                 on_batch_complete: Optional[Callable[[SessionGradingState], Awaitable[None]]] = None,
                 poll_interval: float = 1.0):
        """
        Args:
            queue: Source of LineRatingJob
            rater: Rates the lines of one job
            store: Session store receiving merged ratings and the job ledger
            concurrency: Number of workers (WORKER_CONCURRENCY, default 3)
            rate_limit: Jobs started per second across the pool (WORKER_RATE_LIMIT, default 10)
            max_attempts: Attempts per batch before it is recorded as failed
            backoff: Delay before the first retry, doubled on each further retry
            on_batch_complete: Awaited with the session state after each merged batch
            poll_interval: Dequeue timeout, bounds how quickly workers notice shutdown
        """
        self.queue = queue
        self.rater = rater
        self.store = store
        self.concurrency = concurrency or int(os.getenv("WORKER_CONCURRENCY", "3"))
        self.limiter = RateLimiter(rate_limit or int(os.getenv("WORKER_RATE_LIMIT", "10")), 1.0)
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.on_batch_complete = on_batch_complete
        self.poll_interval = poll_interval

        self.stats: Dict[str, int] = {"processed": 0, "failed": 0, "retried": 0}
        self._workers: List[asyncio.Task] = []
        self._in_flight = 0
        self._stopping = False

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"line-rating-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} line rating workers")

    async def _worker(self, worker_id: int) -> None:
        while not self._stopping:
            job = await self.queue.dequeue(timeout=self.poll_interval)
            if job is None:
                continue
            self._in_flight += 1
            try:
                await self.limiter.acquire()
                await self._process(job)
            except Exception as e:
                logger.error(f"Worker {worker_id} crashed on batch {job.batch_index} "
                             f"of session {job.session_id}: {e}", exc_info=True)
            finally:
                self._in_flight -= 1

    async def _process(self, job: LineRatingJob) -> None:
        record = GradingJobRecord(
            session_id=job.session_id,
            batch_index=job.batch_index,
            total_batches=job.total_batches,
            status="processing",
            started_at=datetime.now(),
        )
        delay = self.backoff
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            record.attempts = attempt
            await self.store.save_job(record)
            try:
                if attempt == 1:
                    await self.store.update(job.session_id, lambda state: _mark_processing(state, job))
                ratings = await self.rater.rate_batch(job)
                state = await self.store.apply_line_ratings(job.session_id, job, ratings)
            except SessionNotFoundError as e:
                last_error = e
                break
            except Exception as e:
                last_error = e
                if attempt < self.max_attempts:
                    self.stats["retried"] += 1
                    logger.warning(f"Batch {job.batch_index} of session {job.session_id} failed "
                                   f"(attempt {attempt}/{self.max_attempts}), retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                    delay *= 2
                continue

            record.status = "completed"
            record.completed_at = datetime.now()
            await self.store.save_job(record)
            self.stats["processed"] += 1
            if self.on_batch_complete is not None:
                await self.on_batch_complete(state)
            return

        self.stats["failed"] += 1
        record.status = "failed"
        record.error = str(last_error)
        record.completed_at = datetime.now()
        await self.store.save_job(record)
        logger.error(f"Batch {job.batch_index} of session {job.session_id} failed: {last_error}")
        if not isinstance(last_error, SessionNotFoundError):
            await self.store.record_failed_batch(job.session_id, job.batch_index, str(last_error),
                                                 run_id=job.run_id)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until the queue is empty and no job is in flight; False on timeout"""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._in_flight == 0 and await self.queue.size() == 0:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Drain timed out with {self._in_flight} jobs in flight")
                return False
            await asyncio.sleep(0.05)

    async def shutdown(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        if drain and self.running:
            await self.drain(timeout)
        self._stopping = True
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.rater.flush()
        logger.info(f"Line rating workers stopped: {self.stats}")
