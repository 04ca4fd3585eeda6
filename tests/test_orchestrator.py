import asyncio
import pytest

from session_grader.errors import LLMError, LLMResponseError, SessionNotFoundError, TranscriptError
from session_grader.deep_grade import DeepGrader
from session_grader.job_queue import InMemoryJobQueue
from session_grader.key_moments import KeyMomentExtractor
from session_grader.line_rating import LineRater
from session_grader.orchestrator import GradingOrchestrator, coerce_transcript, diagnose, resolve_status
from session_grader.schemas import GradingStatus, LineRatingsStatus, SessionGradingState
from session_grader.session_store import InMemorySessionStore
from session_grader.worker_pool import WorkerPool

from fakes import FakeLLM, GOOD_RATING, CLOSED_DEEP_GRADE, conversation, plain_rep_lines


SALES_CALL = [
    {"speaker": "rep", "text": "Hi, I'm with the local pest team.", "timestamp": "00:00"},
    {"speaker": "customer", "text": "Hello.", "timestamp": "00:04"},
    {"speaker": "rep", "text": "Have you noticed any ants this season?", "timestamp": "00:08"},
    {"speaker": "customer", "text": "A few. It's too expensive to treat though.", "timestamp": "00:14"},
    {"speaker": "rep", "text": "I understand. Is the safety of your pets a concern?", "timestamp": "00:20"},
    {"speaker": "customer", "text": "Yes, we have two dogs.", "timestamp": "00:26"},
    {"speaker": "rep", "text": "Would you like to get started this week?", "timestamp": "00:30"},
    {"speaker": "customer", "text": "Sure, Tuesday works.", "timestamp": "00:35"},
]


class Harness:
    """Orchestrator wired to in-memory storage, fake LLMs and a running worker pool"""

    def __init__(self, deep_responses=None, with_deep_grade=True, line_llm=None):
        self.store = InMemorySessionStore()
        self.queue = InMemoryJobQueue()
        self.deep_llm = FakeLLM(deep_responses or [CLOSED_DEEP_GRADE])
        self.line_llm = line_llm or FakeLLM([GOOD_RATING])
        self.orchestrator = GradingOrchestrator(
            store=self.store,
            queue=self.queue,
            extractor=KeyMomentExtractor(enrich=False),
            deep_grader=DeepGrader(llm=self.deep_llm) if with_deep_grade else None,
            batch_size=2,
            deep_grade_backoff=0,
        )
        self.pool = WorkerPool(self.queue, LineRater(self.line_llm), self.store, concurrency=2,
                               on_batch_complete=self.orchestrator.on_batch_complete, poll_interval=0.05)

    async def grade(self, session_id, transcript, **kwargs):
        self.pool.start()
        try:
            await self.orchestrator.grade(session_id, transcript, **kwargs)
            await self.pool.drain(timeout=5)
        finally:
            await self.pool.shutdown()
        return await self.store.get(session_id)


class TestGradingOrchestrator:
    def test_full_pipeline_completes(self):
        harness = Harness()

        state = asyncio.run(harness.grade("session-1", SALES_CALL, duration_seconds=35))

        assert state.status == GradingStatus.COMPLETED
        assert state.instant_metrics is not None
        assert state.key_moments
        assert state.moment_feedback is not None
        assert len(state.line_ratings) == 4
        assert state.line_ratings_total_batches == 2
        assert state.line_ratings_status == LineRatingsStatus.COMPLETED
        assert state.deep_grade.sale_closed
        assert state.overall_score == 80
        assert state.graded_at is not None
        assert harness.deep_llm.call_count == 1

    def test_deep_grade_can_be_deferred(self):
        harness = Harness()

        async def run():
            harness.pool.start()
            try:
                first = await harness.orchestrator.grade("session-1", SALES_CALL, run_deep_grade=False)
                await harness.pool.drain(timeout=5)
                before = await harness.store.get("session-1")
                after = await harness.orchestrator.run_deep_grade("session-1")
            finally:
                await harness.pool.shutdown()
            return first, before, after

        first, before, after = asyncio.run(run())

        assert first.status == GradingStatus.PROCESSING
        assert first.overall_score == first.instant_metrics.estimated_score
        assert before.status == GradingStatus.PROCESSING
        assert before.line_ratings_complete
        assert after.status == GradingStatus.COMPLETED

    def test_malformed_deep_grade_fails_only_that_stage(self):
        harness = Harness(deep_responses=[LLMResponseError("Invalid JSON from fake-model")])

        state = asyncio.run(harness.grade("session-1", SALES_CALL))

        assert state.status == GradingStatus.FAILED
        assert state.analytics["deep_analysis_error"] is True
        assert "Invalid JSON" in state.analytics["deep_analysis_error_message"]
        assert state.instant_metrics is not None
        assert state.key_moments
        assert len(state.line_ratings) == 4
        assert state.deep_grade is None
        assert harness.deep_llm.call_count == 1

    def test_provider_errors_are_retried(self):
        harness = Harness(deep_responses=[LLMError("OpenAI API error (fake-model): timeout"), CLOSED_DEEP_GRADE])

        state = asyncio.run(harness.grade("session-1", SALES_CALL))

        assert state.status == GradingStatus.COMPLETED
        assert harness.deep_llm.call_count == 2

    def test_retry_after_failure_completes(self):
        harness = Harness(deep_responses=[LLMResponseError("Invalid JSON"), CLOSED_DEEP_GRADE])

        async def run():
            failed = await harness.grade("session-1", SALES_CALL)
            retried = await harness.orchestrator.run_deep_grade("session-1")
            return failed, retried

        failed, retried = asyncio.run(run())

        assert failed.status == GradingStatus.FAILED
        assert retried.status == GradingStatus.COMPLETED
        assert retried.analytics["deep_analysis_retry_count"] == 1
        assert "deep_analysis_error" not in retried.analytics

    def test_profanity_zeroes_session_without_llm(self):
        harness = Harness()
        transcript = SALES_CALL + [{"speaker": "customer", "text": "Now shut up and leave."}]

        state = asyncio.run(harness.grade("session-1", transcript))

        assert harness.deep_llm.call_count == 0
        assert state.overall_score == 0
        assert state.deep_grade.inappropriate_language_detected
        assert state.status == GradingStatus.COMPLETED

    def test_without_deep_grader_session_stays_processing(self):
        harness = Harness(with_deep_grade=False)

        state = asyncio.run(harness.grade("session-1", SALES_CALL))

        assert state.status == GradingStatus.PROCESSING
        assert state.line_ratings_complete

    def test_empty_transcript_writes_nothing(self):
        harness = Harness()

        async def run():
            with pytest.raises(TranscriptError):
                await harness.orchestrator.grade("session-1", [])
            with pytest.raises(SessionNotFoundError):
                await harness.store.get("session-1")

        asyncio.run(run())

    def test_missing_session_id(self):
        harness = Harness()

        with pytest.raises(TranscriptError):
            asyncio.run(harness.orchestrator.grade("", SALES_CALL))

    def test_regrade_discards_batches_of_superseded_run(self):
        harness = Harness(with_deep_grade=False, line_llm=FakeLLM([GOOD_RATING]))

        async def run():
            # First run's batches stay queued until after the session is graded again
            await harness.orchestrator.grade("session-1", conversation(plain_rep_lines(12)), run_deep_grade=False)
            await harness.orchestrator.grade("session-1", conversation(plain_rep_lines(2)), run_deep_grade=False)
            harness.pool.start()
            await harness.pool.drain(timeout=5)
            await harness.pool.shutdown()
            return await harness.store.get("session-1")

        state = asyncio.run(run())

        assert state.line_ratings_total_batches == 1
        assert state.line_ratings_completed_batches == [0]
        assert [r.index for r in state.line_ratings] == [0, 2]
        assert [r.text for r in state.line_ratings] == ["Plain remark number 0.", "Plain remark number 1."]
        assert state.line_ratings_status == LineRatingsStatus.COMPLETED

    def test_failed_batches_can_be_requeued(self):
        harness = Harness(with_deep_grade=False, line_llm=FakeLLM([GOOD_RATING]))

        async def run():
            await harness.orchestrator.grade("session-1", conversation(plain_rep_lines(3)), run_deep_grade=False)
            # Take a batch off the queue and record it as exhausted
            job = await harness.queue.dequeue(timeout=0.1)
            await harness.store.record_failed_batch("session-1", job.batch_index, "provider unavailable",
                                                    run_id=job.run_id)
            queued = await harness.orchestrator.retry_failed_batches("session-1")

            harness.pool.start()
            await harness.pool.drain(timeout=5)
            await harness.pool.shutdown()
            return queued, await harness.store.get("session-1")

        queued, state = asyncio.run(run())

        assert queued == 1
        assert state.line_ratings_failed_batches == []
        assert state.line_ratings_complete
        assert len(state.line_ratings) == 3


class TestStatusHelpers:
    def test_coerce_transcript_rejects_blank_lines(self):
        with pytest.raises(TranscriptError):
            coerce_transcript([{"speaker": "rep", "text": "   "}])
        with pytest.raises(TranscriptError):
            coerce_transcript(None)

    def test_coerce_transcript_rejects_bad_records(self):
        with pytest.raises(TranscriptError):
            coerce_transcript([{"speaker": "rep", "text": "Hi", "index": 3}, {"speaker": "rep", "text": "Hi", "index": 1}])

    def test_resolve_status_needs_all_batches(self):
        state = SessionGradingState(session_id="s", status=GradingStatus.PROCESSING, line_ratings_total_batches=3,
                                    line_ratings_completed_batches=[0, 2])

        assert resolve_status(state) == GradingStatus.PROCESSING

    def test_diagnose_reports_deep_grade_error(self):
        state = SessionGradingState(session_id="s", status=GradingStatus.FAILED,
                                    analytics={"deep_analysis_error": True,
                                               "deep_analysis_error_message": "Invalid JSON"})

        diagnosis = diagnose(state)

        assert diagnosis["status"] == "error"
        assert "No transcript available" in diagnosis["issues"]
        assert "Error: Invalid JSON" in diagnosis["recommendations"]

    def test_diagnose_healthy_session(self):
        harness = Harness()
        state = asyncio.run(harness.grade("session-1", SALES_CALL))

        diagnosis = diagnose(state)

        assert diagnosis["status"] == "healthy"
        assert diagnosis["phase1_complete"]
        assert diagnosis["phase2_complete"]
        assert diagnosis["phase3_complete"]
        assert diagnosis["issues"] == []
