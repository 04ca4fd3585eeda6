"""
FastAPI service for the session grading pipeline - Cloud Run deployment
"""

import os
import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from pathlib import Path
from datetime import datetime

from fastapi import FastAPI, HTTPException, BackgroundTasks, status, Request
from pydantic import BaseModel, Field
from cloudevents.http import from_http
import uvicorn

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from session_grader.errors import GradingError, TranscriptError, SessionNotFoundError
from session_grader.gcs_client import GCSClient
from session_grader.importers.json_records import parse_session_content
from session_grader.instant_metrics import compute_instant
from session_grader.key_moments import KeyMomentExtractor, generate_moment_feedback
from session_grader.orchestrator import coerce_transcript, diagnose
from session_grader.pipeline import GradingPipeline
from session_grader.schemas import SessionGradingState


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the line-rating workers with the app; drain them on shutdown"""
    owns_pipeline = getattr(app.state, "pipeline", None) is None
    if owns_pipeline:
        app.state.pipeline = GradingPipeline()
    app.state.processed_events = OrderedDict()
    app.state.pipeline.start()
    logger.info("Grading pipeline started")
    try:
        yield
    finally:
        await app.state.pipeline.shutdown(drain=True, timeout=float(os.getenv("SHUTDOWN_DRAIN_SECONDS", "30")))
        if owns_pipeline:
            app.state.pipeline = None


# Initialize FastAPI app
app = FastAPI(
    title="Session Grader - Sales Conversation Grading API",
    description="Multi-phase grading of sales conversation transcripts",
    version="1.0.0",
    lifespan=lifespan
)


# Request models
class GradeRequest(BaseModel):
    session_id: str = Field(..., description="Session identifier")
    transcript: List[Dict[str, Any]] = Field(..., description="Ordered {speaker, text, timestamp?} records")
    duration_seconds: Optional[float] = Field(None, description="Conversation length, used by the deep grade")
    voice_analysis: Optional[Dict[str, Any]] = Field(None, description="avgWPM, totalFillerWords, longPausesCount")
    speech_payload: Optional[Dict[str, Any]] = Field(None, description="Speech-quality webhook payload")
    speech_expected: bool = Field(False, description="True when a speech payload should exist")


class TranscriptBody(BaseModel):
    transcript: List[Dict[str, Any]]
    voice_analysis: Optional[Dict[str, Any]] = None
    max_moments: Optional[int] = None


def _pipeline(request: Request) -> GradingPipeline:
    return request.app.state.pipeline


def _remember_event(processed: OrderedDict, session_id: str) -> None:
    """Record an accepted upload, forgetting the oldest beyond PROCESSED_EVENTS_LIMIT"""
    processed[session_id] = datetime.now()
    limit = int(os.getenv("PROCESSED_EVENTS_LIMIT", "1000"))
    while len(processed) > limit:
        processed.popitem(last=False)


async def _session_exists(pipeline: GradingPipeline, session_id: str) -> bool:
    try:
        await pipeline.store.get(session_id)
    except SessionNotFoundError:
        return False
    return True


def _raise_http(e: Exception, action: str):
    if isinstance(e, TranscriptError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, SessionNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action} failed: {str(e)}"
    )


def _status_payload(state: SessionGradingState) -> Dict[str, Any]:
    return {
        "session_id": state.session_id,
        "grading_status": state.status.value,
        "overall_score": state.overall_score,
        "sale_closed": state.sale_closed,
        "instant_complete": state.instant_metrics is not None,
        "key_moments": len(state.key_moments),
        "line_ratings_status": state.line_ratings_status.value if state.line_ratings_status else None,
        "line_ratings_completed_batches": state.completed_batch_count,
        "line_ratings_total_batches": state.line_ratings_total_batches,
        "line_ratings_failed_batches": state.line_ratings_failed_batches,
        "deep_grade_complete": state.deep_grade is not None,
        "deep_analysis_error": state.analytics.get("deep_analysis_error_message"),
        "updated_at": state.updated_at.isoformat(),
    }


async def run_deep_grade_task(pipeline: GradingPipeline, session_id: str):
    """Background deep grade; failures are already recorded on the session"""
    try:
        await pipeline.orchestrator.run_deep_grade(session_id)
    except GradingError as e:
        logger.error(f"Background deep grade for {session_id} failed: {e}")


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint"""
    return {
        "message": "Session Grader API",
        "status": "healthy",
        "version": "1.0.0"
    }


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint for Cloud Run"""
    pipeline = _pipeline(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "session-grader-api",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "workers_running": pipeline.pool.running,
        "queue_size": await pipeline.queue.size(),
        "worker_stats": pipeline.pool.stats
    }


@app.post("/grade/orchestrate", tags=["Grading"])
async def orchestrate(body: GradeRequest, request: Request, background_tasks: BackgroundTasks):
    """
    Run instant metrics and key moments, queue line ratings, and schedule the
    deep grade in the background. Poll /grade/status/{session_id} for progress.
    """
    pipeline = _pipeline(request)
    prior_analytics = {"voice_analysis": body.voice_analysis} if body.voice_analysis else None
    try:
        state = await pipeline.orchestrator.grade(
            body.session_id,
            body.transcript,
            duration_seconds=body.duration_seconds,
            prior_analytics=prior_analytics,
            speech_payload=body.speech_payload,
            speech_expected=body.speech_expected,
            run_deep_grade=False,
        )
    except Exception as e:
        _raise_http(e, "Grading orchestration")

    deep_scheduled = pipeline.deep_grader is not None
    if deep_scheduled:
        background_tasks.add_task(run_deep_grade_task, pipeline, body.session_id)

    payload = _status_payload(state)
    payload["deep_grade_scheduled"] = deep_scheduled
    return payload


@app.post("/grade/instant", tags=["Grading"])
async def grade_instant(body: TranscriptBody):
    """Instant heuristic metrics for a transcript (no LLM call)"""
    try:
        transcript = coerce_transcript(body.transcript)
        prior_analytics = {"voice_analysis": body.voice_analysis} if body.voice_analysis else None
        metrics = compute_instant(transcript, prior_analytics)
    except Exception as e:
        _raise_http(e, "Instant metrics")
    return metrics.model_dump(mode="json")


@app.post("/grade/key-moments", tags=["Grading"])
async def grade_key_moments(body: TranscriptBody, request: Request):
    """Ranked key moments with best-effort annotations"""
    extractor = _pipeline(request).extractor
    if body.max_moments is not None:
        extractor = KeyMomentExtractor(
            llm=extractor.llm,
            max_moments=body.max_moments,
            engine=extractor.engine,
            enrich=extractor.enrich_enabled,
            topic_change_gap_seconds=extractor.topic_change_gap_seconds
        )
    try:
        transcript = coerce_transcript(body.transcript)
        moments = await asyncio.to_thread(extractor.extract, transcript)
    except Exception as e:
        _raise_http(e, "Key moment extraction")
    return {
        "key_moments": [m.model_dump(mode="json") for m in moments],
        "feedback": generate_moment_feedback(moments).model_dump(mode="json")
    }


@app.post("/grade/deep-analysis/{session_id}", tags=["Grading"])
async def retry_deep_analysis(session_id: str, request: Request):
    """Run the deep grade for a session again"""
    pipeline = _pipeline(request)
    if pipeline.deep_grader is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Deep grading is disabled")
    try:
        state = await pipeline.orchestrator.run_deep_grade(session_id)
    except Exception as e:
        _raise_http(e, "Deep analysis")
    return _status_payload(state)


@app.post("/grade/retry-batches/{session_id}", tags=["Grading"])
async def retry_line_rating_batches(session_id: str, request: Request):
    """Re-queue line-rating batches that exhausted their attempts"""
    try:
        queued = await _pipeline(request).orchestrator.retry_failed_batches(session_id)
    except Exception as e:
        _raise_http(e, "Batch retry")
    return {"session_id": session_id, "queued_batches": queued}


@app.get("/grade/status/{session_id}", tags=["Status"])
async def grading_status(session_id: str, request: Request):
    """Pipeline status and batch counters for polling"""
    try:
        state = await _pipeline(request).store.get(session_id)
    except Exception as e:
        _raise_http(e, "Status lookup")
    return _status_payload(state)


@app.get("/grade/health/{session_id}", tags=["Status"])
async def grading_health(session_id: str, request: Request):
    """Diagnose a session's grading progress"""
    try:
        state = await _pipeline(request).store.get(session_id)
    except Exception as e:
        _raise_http(e, "Health check")
    return diagnose(state)


@app.get("/grade/session/{session_id}", tags=["Status"])
async def grading_session(session_id: str, request: Request):
    """Full grading state, including partial results of unfinished stages"""
    try:
        state = await _pipeline(request).store.get(session_id)
    except Exception as e:
        _raise_http(e, "Session lookup")
    return state.model_dump(mode="json")


@app.get("/recent-jobs", tags=["Status"])
async def get_recent_jobs(request: Request, limit: int = 10):
    """Recently graded sessions and line-rating jobs"""
    pipeline = _pipeline(request)
    sessions = await pipeline.store.list_recent(limit)
    jobs = await pipeline.store.list_jobs(limit=limit)
    return {
        "sessions": [_status_payload(s) for s in sessions],
        "jobs": [
            {
                **job.model_dump(mode="json"),
                "error": job.error[:100] + "..." if job.error and len(job.error) > 100 else job.error
            }
            for job in jobs
        ],
        "showing": len(sessions)
    }


async def grade_uploaded_transcript(pipeline: GradingPipeline, bucket: str, file_name: str, session_id: str):
    """Download a transcript object and run the full pipeline on it"""
    try:
        gcs = GCSClient(bucket_name=bucket)
        content = await asyncio.to_thread(gcs.download_transcript, file_name)
        imported = parse_session_content(file_name, content)
        await pipeline.orchestrator.grade(
            session_id,
            imported.transcript,
            duration_seconds=imported.duration_seconds,
            prior_analytics=imported.prior_analytics,
            run_deep_grade=pipeline.deep_grader is not None,
        )
    except Exception as e:
        logger.error(f"Automatic grading of gs://{bucket}/{file_name} failed: {e}", exc_info=True)


@app.post("/cloudevents", tags=["Automation"])
async def handle_storage_event(request: Request, background_tasks: BackgroundTasks):
    """
    Handle Cloud Storage events via Eventarc
    Automatically grades new transcripts when uploaded
    """
    try:
        headers = dict(request.headers)
        body = await request.body()
        event = from_http(headers, body)

        event_type = event['type']
        data = event.data
        file_name = data.get('name', '')
        bucket = data.get('bucket', '')
        logger.info(f"Received event: {event_type} for {file_name}")

        if (event_type == "google.cloud.storage.object.v1.finalized"
                and GCSClient.is_transcript_file(file_name)):

            # Generation makes redelivered events idempotent
            generation = data.get('generation')
            session_id = f"auto-{Path(file_name).stem}-{generation or event['id']}"

            processed = request.app.state.processed_events
            if session_id in processed or await _session_exists(_pipeline(request), session_id):
                logger.info(f"Already processing/processed: {session_id}")
                return {
                    "status": "duplicate",
                    "session_id": session_id,
                    "message": "Already being processed or completed"
                }
            _remember_event(processed, session_id)

            background_tasks.add_task(grade_uploaded_transcript, _pipeline(request), bucket, file_name, session_id)
            logger.info(f"Accepted for grading: {session_id}")
            return {
                "status": "accepted",
                "session_id": session_id,
                "file": file_name,
                "generation": generation
            }

        logger.info(f"Ignored file: {file_name}")
        return {
            "status": "ignored",
            "reason": f"Not a transcript file or wrong directory: {file_name}"
        }

    except Exception as e:
        logger.error(f"Error handling CloudEvent: {str(e)}")
        return {
            "status": "error",
            "error": str(e)
        }


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
