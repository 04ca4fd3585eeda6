"""
Sequences the grading stages for one session.

Instant metrics and key moments run inline; line-rating batches are handed to
the job queue; the deep grade runs inline or from a background task. Each
stage writes only its own fields, and a failing stage never rolls back what
earlier stages persisted.
"""

import time
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .errors import TranscriptError, LLMError, LLMResponseError
from .instant_metrics import compute_instant
from .job_queue import JobQueue
from .key_moments import KeyMomentExtractor, generate_moment_feedback
from .line_rating import partition_batches
from .patterns import PatternEngine, get_pattern_engine
from .schemas import (
    GradingJobRecord, GradingStatus, LineRatingsStatus, SessionGradingState, Transcript
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def coerce_transcript(transcript: Union[Transcript, List[Dict[str, Any]], None]) -> Transcript:
    """Validate raw {speaker, text, timestamp?} records into a Transcript"""
    if transcript is None:
        raise TranscriptError("No transcript available")
    if isinstance(transcript, Transcript):
        parsed = transcript
    else:
        try:
            parsed = Transcript.from_records(list(transcript))
        except (ValidationError, TypeError) as e:
            raise TranscriptError(f"Invalid transcript: {e}")
    if len(parsed) == 0 or not any(u.text.strip() for u in parsed.utterances):
        raise TranscriptError("No transcript available")
    return parsed


def resolve_status(state: SessionGradingState) -> GradingStatus:
    """
    Overall status from what each stage has landed

    completed needs both the deep grade and every line-rating batch; a failed
    deep grade keeps the session failed until a retry succeeds.
    """
    if state.deep_grade is not None and state.line_ratings_complete:
        return GradingStatus.COMPLETED
    if state.status == GradingStatus.FAILED and state.deep_grade is None:
        return GradingStatus.FAILED
    if state.status == GradingStatus.COMPLETED:
        # A re-queued batch reopened the session
        return GradingStatus.PROCESSING
    return state.status


def diagnose(state: SessionGradingState) -> Dict[str, Any]:
    """Health report for a session: phase flags, issues and recommendations"""
    analytics = state.analytics
    diagnosis = {
        "session_id": state.session_id,
        "status": "healthy",
        "issues": [],
        "recommendations": [],
        "phase1_complete": state.instant_metrics is not None,
        "phase2_complete": bool(state.key_moments),
        "line_ratings_complete": state.line_ratings_complete,
        "phase3_complete": state.deep_grade is not None,
        "has_transcript": state.transcript is not None and len(state.transcript) > 0,
        "has_scores": state.overall_score is not None,
        "has_errors": bool(analytics.get("deep_analysis_error")),
        "error_message": analytics.get("deep_analysis_error_message"),
        "retry_count": analytics.get("deep_analysis_retry_count", 0),
        "grading_status": state.status.value,
        "line_ratings_completed_batches": state.completed_batch_count,
        "line_ratings_total_batches": state.line_ratings_total_batches,
        "line_ratings_failed_batches": list(state.line_ratings_failed_batches),
        "overall_score": state.overall_score,
        "sale_closed": state.sale_closed,
        "graded_at": state.graded_at.isoformat() if state.graded_at else None,
    }
    issues = diagnosis["issues"]
    recommendations = diagnosis["recommendations"]

    if not diagnosis["has_transcript"]:
        issues.append("No transcript available")
        diagnosis["status"] = "error"

    if not diagnosis["phase1_complete"]:
        issues.append("Phase 1 (Instant Metrics) not complete")
        recommendations.append("Trigger grading orchestration")

    if not diagnosis["phase2_complete"] and diagnosis["phase1_complete"]:
        issues.append("Phase 2 (Key Moments) not complete")
        if analytics.get("key_moments_error"):
            recommendations.append(f"Key moments failed: {analytics['key_moments_error']}")
        else:
            recommendations.append("Check key-moments logs")

    if state.line_ratings_failed_batches:
        issues.append(f"{len(state.line_ratings_failed_batches)} line rating batch(es) failed")
        recommendations.append("Re-queue failed line rating batches")
        diagnosis["status"] = "warning"

    if not diagnosis["phase3_complete"] and diagnosis["phase2_complete"]:
        issues.append("Phase 3 (Deep Analysis) not complete")
        if diagnosis["has_errors"]:
            recommendations.append("Deep analysis failed - POST /grade/deep-analysis/{session_id} to retry")
        else:
            recommendations.append("Deep analysis may still be running - wait or check logs")
        diagnosis["status"] = "warning"

    if diagnosis["has_errors"]:
        diagnosis["status"] = "error"
        recommendations.append(f"Error: {diagnosis['error_message']}")

    if diagnosis["phase3_complete"] and not diagnosis["has_scores"]:
        issues.append("Grading marked complete but no scores found")
        diagnosis["status"] = "warning"

    return diagnosis


class GradingOrchestrator:
    """Runs the grading pipeline for sessions against a store and a job queue"""

    def __init__(self, store: SessionStore, queue: JobQueue, extractor: Optional[KeyMomentExtractor] = None,
                 deep_grader=None, engine: Optional[PatternEngine] = None, batch_size: int = None,
                 deep_grade_attempts: int = 3, deep_grade_backoff: float = 2.0):
        """
        Args:
            store: Session state storage
            queue: Queue receiving line-rating batches
            extractor: Key-moment extractor (local-only when omitted)
            deep_grader: DeepGrader; deep grading is skipped when omitted
            engine: Pattern engine shared by the local stages
            batch_size: Rep lines per line-rating batch
            deep_grade_attempts: Attempts for the deep grade on provider errors
            deep_grade_backoff: Delay before the first deep-grade retry, doubled after each
        """
        self.store = store
        self.queue = queue
        self.engine = engine or get_pattern_engine()
        self.extractor = extractor or KeyMomentExtractor(engine=self.engine, enrich=False)
        self.deep_grader = deep_grader
        self.batch_size = batch_size
        self.deep_grade_attempts = max(1, deep_grade_attempts)
        self.deep_grade_backoff = deep_grade_backoff

    async def grade(self, session_id: str, transcript, duration_seconds: Optional[float] = None,
                    prior_analytics: Optional[Dict[str, Any]] = None, speech_payload: Optional[Dict[str, Any]] = None,
                    speech_expected: bool = False, run_deep_grade: bool = True) -> SessionGradingState:
        """
        Run the pipeline for a session

        Input errors raise TranscriptError before anything is written. With
        run_deep_grade=False the call returns once line-rating batches are
        queued; run_deep_grade() can then be scheduled separately.
        """
        if not session_id:
            raise TranscriptError("Session ID required")
        transcript = coerce_transcript(transcript)

        pipeline_started = time.monotonic()
        await self.store.create(session_id, transcript, duration_seconds)
        if prior_analytics:
            await self.store.update(session_id, lambda s: s.analytics.update(
                {k: v for k, v in prior_analytics.items() if k == "voice_analysis"}
            ))
        logger.info(f"Grading started for session {session_id} ({len(transcript)} lines)")

        await self._run_instant(session_id, transcript, prior_analytics, speech_payload, speech_expected)
        await self._run_key_moments(session_id, transcript)
        await self._enqueue_line_ratings(session_id, transcript)

        if run_deep_grade and self.deep_grader is not None:
            await self.run_deep_grade(session_id)

        state = await self.refresh_status(session_id)
        logger.info(f"Grading pass for session {session_id} returned with status {state.status.value} "
                    f"in {_elapsed_ms(pipeline_started)}ms")
        return state

    async def _run_instant(self, session_id, transcript, prior_analytics, speech_payload, speech_expected) -> None:
        started = time.monotonic()
        try:
            metrics = compute_instant(transcript, prior_analytics, speech_payload, speech_expected, self.engine)
        except Exception as e:
            logger.error(f"Instant metrics failed for session {session_id}: {e}", exc_info=True)
            await self.store.update(session_id, lambda s: s.analytics.update({"instant_metrics_error": str(e)}))
            return

        def apply(state: SessionGradingState) -> None:
            state.instant_metrics = metrics
            state.overall_score = metrics.estimated_score
            state.status = GradingStatus.INSTANT_COMPLETE
            state.analytics["instant_metrics_ms"] = _elapsed_ms(started)

        await self.store.update(session_id, apply)
        logger.info(f"Instant metrics complete for session {session_id} in {_elapsed_ms(started)}ms "
                    f"(estimated score {metrics.estimated_score})")

    async def _run_key_moments(self, session_id: str, transcript: Transcript) -> None:
        started = time.monotonic()
        try:
            moments = await asyncio.to_thread(self.extractor.extract, transcript)
        except Exception as e:
            logger.error(f"Key moments failed for session {session_id}: {e}", exc_info=True)
            await self.store.update(session_id, lambda s: s.analytics.update({"key_moments_error": str(e)}))
            return

        feedback = generate_moment_feedback(moments)

        def apply(state: SessionGradingState) -> None:
            state.key_moments = moments
            state.moment_feedback = feedback
            state.status = GradingStatus.MOMENTS_COMPLETE
            state.analytics["key_moments_ms"] = _elapsed_ms(started)

        await self.store.update(session_id, apply)
        logger.info(f"Key moments complete for session {session_id}: {len(moments)} moments "
                    f"in {_elapsed_ms(started)}ms")

    async def _enqueue_line_ratings(self, session_id: str, transcript: Transcript) -> None:
        try:
            run_id = (await self.store.get(session_id)).run_id
            jobs = partition_batches(session_id, transcript, self.batch_size, run_id=run_id)

            def apply(state: SessionGradingState) -> None:
                state.line_ratings = []
                state.line_ratings_total_batches = len(jobs)
                state.line_ratings_completed_batches = []
                state.line_ratings_failed_batches = []
                state.line_ratings_status = LineRatingsStatus.QUEUED if jobs else LineRatingsStatus.COMPLETED
                state.status = GradingStatus.PROCESSING

            await self.store.update(session_id, apply)
            for job in jobs:
                await self.store.save_job(GradingJobRecord(
                    session_id=session_id, batch_index=job.batch_index, total_batches=job.total_batches
                ))
                await self.queue.enqueue(job)
        except Exception as e:
            logger.error(f"Queueing line ratings failed for session {session_id}: {e}", exc_info=True)
            await self.store.update(session_id, lambda s: s.analytics.update({"line_ratings_error": str(e)}))
            return
        logger.info(f"Queued {len(jobs)} line rating batches for session {session_id}")

    async def retry_failed_batches(self, session_id: str) -> int:
        """Re-queue batches that exhausted their attempts; returns how many were queued"""
        state = await self.store.get(session_id)
        failed = set(state.line_ratings_failed_batches)
        if not failed or state.transcript is None:
            return 0
        jobs = [j for j in partition_batches(session_id, state.transcript, self.batch_size, run_id=state.run_id)
                if j.batch_index in failed]
        for job in jobs:
            await self.queue.enqueue(job)
        logger.info(f"Re-queued {len(jobs)} failed line rating batches for session {session_id}")
        return len(jobs)

    async def run_deep_grade(self, session_id: str) -> SessionGradingState:
        """Run (or retry) the deep grade; failures mark the session failed without touching other stages"""
        if self.deep_grader is None:
            raise RuntimeError("No deep grader configured")

        state = await self.store.get(session_id)
        if state.transcript is None or len(state.transcript) == 0:
            raise TranscriptError("No transcript available")

        def mark_started(s: SessionGradingState) -> None:
            if "deep_analysis_started_at" in s.analytics:
                s.analytics["deep_analysis_retry_count"] = s.analytics.get("deep_analysis_retry_count", 0) + 1
            s.analytics["deep_analysis_started_at"] = datetime.now().isoformat()

        await self.store.update(session_id, mark_started)

        started = time.monotonic()
        delay = self.deep_grade_backoff
        last_error: Optional[Exception] = None
        result = None
        for attempt in range(1, self.deep_grade_attempts + 1):
            try:
                result = await asyncio.to_thread(self.deep_grader.grade, state.transcript, state.duration_seconds)
                break
            except LLMResponseError as e:
                # Response retries already happened inside the client
                last_error = e
                break
            except LLMError as e:
                last_error = e
                if attempt < self.deep_grade_attempts:
                    logger.warning(f"Deep grade attempt {attempt}/{self.deep_grade_attempts} failed for "
                                   f"session {session_id}, retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                    delay *= 2
            except Exception as e:
                last_error = e
                break

        if result is None:
            logger.error(f"Deep grade failed for session {session_id}: {last_error}")

            def mark_failed(s: SessionGradingState) -> None:
                s.status = GradingStatus.FAILED
                s.analytics["deep_analysis_error"] = True
                s.analytics["deep_analysis_error_message"] = str(last_error)

            return await self.store.update(session_id, mark_failed)

        def apply(s: SessionGradingState) -> None:
            s.deep_grade = result
            s.overall_score = result.overall_score
            s.analytics.pop("deep_analysis_error", None)
            s.analytics.pop("deep_analysis_error_message", None)
            s.analytics["deep_analysis_completed_at"] = datetime.now().isoformat()
            s.analytics["deep_analysis_ms"] = _elapsed_ms(started)
            if s.status == GradingStatus.FAILED:
                s.status = GradingStatus.PROCESSING
            s.status = resolve_status(s)
            if s.status == GradingStatus.COMPLETED:
                s.graded_at = datetime.now()

        state = await self.store.update(session_id, apply)
        logger.info(f"Deep grade complete for session {session_id} in {_elapsed_ms(started)}ms "
                    f"(overall {result.overall_score}, sale_closed={result.sale_closed})")
        return state

    async def refresh_status(self, session_id: str) -> SessionGradingState:
        def apply(state: SessionGradingState) -> None:
            status = resolve_status(state)
            if status == GradingStatus.COMPLETED and state.status != GradingStatus.COMPLETED:
                state.graded_at = datetime.now()
                logger.info(f"Session {session_id} grading completed")
            state.status = status

        return await self.store.update(session_id, apply)

    async def on_batch_complete(self, state: SessionGradingState) -> None:
        """Worker-pool callback: settle the session once its last batch lands"""
        if state.line_ratings_complete:
            await self.refresh_status(state.session_id)
