import time
import asyncio

from session_grader.job_queue import InMemoryJobQueue, RateLimiter, create_job_queue
from session_grader.schemas import LineRatingJob, Utterance


def _job(session_id="session-1", batch_index=0, text="We spray.", run_id="run-1"):
    return LineRatingJob(
        session_id=session_id,
        run_id=run_id,
        batch_index=batch_index,
        total_batches=2,
        utterances=[Utterance(speaker="rep", text=text, index=0)],
    )


class TestInMemoryJobQueue:
    def test_fifo_order(self):
        async def run():
            queue = InMemoryJobQueue()
            await queue.enqueue(_job(batch_index=0))
            await queue.enqueue(_job(batch_index=1))
            first = await queue.dequeue(timeout=0.1)
            second = await queue.dequeue(timeout=0.1)
            return first, second, await queue.size()

        first, second, size = asyncio.run(run())

        assert (first.batch_index, second.batch_index) == (0, 1)
        assert size == 0

    def test_duplicate_identity_is_queued_once(self):
        async def run():
            queue = InMemoryJobQueue()
            added = await queue.enqueue(_job(text="Old text."))
            re_added = await queue.enqueue(_job(text="New text."))
            size = await queue.size()
            job = await queue.dequeue(timeout=0.1)
            leftover = await queue.dequeue(timeout=0.05)
            return added, re_added, size, job, leftover

        added, re_added, size, job, leftover = asyncio.run(run())

        assert added
        assert not re_added
        assert size == 1
        assert job.utterances[0].text == "New text."
        assert leftover is None

    def test_same_batch_of_other_session_is_distinct(self):
        async def run():
            queue = InMemoryJobQueue()
            await queue.enqueue(_job(session_id="a"))
            await queue.enqueue(_job(session_id="b"))
            return await queue.size()

        assert asyncio.run(run()) == 2

    def test_same_batch_of_other_run_is_distinct(self):
        async def run():
            queue = InMemoryJobQueue()
            await queue.enqueue(_job(run_id="run-1"))
            await queue.enqueue(_job(run_id="run-2"))
            first = await queue.dequeue(timeout=0.1)
            second = await queue.dequeue(timeout=0.1)
            return first.run_id, second.run_id

        assert asyncio.run(run()) == ("run-1", "run-2")

    def test_dequeue_times_out(self):
        async def run():
            return await InMemoryJobQueue().dequeue(timeout=0.05)

        assert asyncio.run(run()) is None


class TestRateLimiter:
    def test_limits_acquisitions_per_window(self):
        async def run():
            limiter = RateLimiter(max_jobs=2, per_seconds=0.2)
            started = time.monotonic()
            for _ in range(3):
                await limiter.acquire()
            return time.monotonic() - started

        assert asyncio.run(run()) >= 0.15

    def test_under_limit_does_not_wait(self):
        async def run():
            limiter = RateLimiter(max_jobs=5, per_seconds=10)
            started = time.monotonic()
            for _ in range(5):
                await limiter.acquire()
            return time.monotonic() - started

        assert asyncio.run(run()) < 1


def test_default_backend_is_in_memory(monkeypatch):
    monkeypatch.delenv("JOB_QUEUE_BACKEND", raising=False)

    assert isinstance(create_job_queue(), InMemoryJobQueue)
