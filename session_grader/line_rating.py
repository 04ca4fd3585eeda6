"""
Per-line effectiveness ratings for rep utterances.

Rep lines are partitioned into fixed-size batches (one queued job per batch).
Each line is rated cache-first with an LLM fallback, and batch results are
merged into the session by utterance index so a retried batch never
duplicates ratings.
"""

import os
import asyncio
import logging
from typing import List, Optional, Set

from .errors import TranscriptError
from .phrase_cache import PhraseCache, InMemoryPhraseCache
from .schemas import (
    Transcript, Utterance, LineRating, LineRatingResponse, LineRatingJob,
    LineRatingsStatus, SessionGradingState
)

logger = logging.getLogger(__name__)

LINE_RATING_SYSTEM_PROMPT = "You are an expert sales coach. Return only valid JSON."


def partition_batches(session_id: str, transcript: Transcript, batch_size: int = None,
                      run_id: Optional[str] = None) -> List[LineRatingJob]:
    """
    Split the rep's lines into ordered batches of batch_size

    Every rep utterance lands in exactly one batch and every job carries the
    total batch count and the grading run it belongs to. A transcript without
    rep lines yields no jobs.
    """
    if not session_id:
        raise TranscriptError("Session id is required")
    batch_size = batch_size or int(os.getenv("LINE_RATING_BATCH_SIZE", "5"))
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    rep_lines = transcript.rep_utterances
    chunks = [rep_lines[i:i + batch_size] for i in range(0, len(rep_lines), batch_size)]
    return [
        LineRatingJob(session_id=session_id, run_id=run_id, batch_index=i, total_batches=len(chunks),
                      utterances=chunk)
        for i, chunk in enumerate(chunks)
    ]


def merge_line_ratings(existing: List[LineRating], new: List[LineRating]) -> List[LineRating]:
    """Merge by utterance index, last write wins, sorted by index"""
    by_index = {rating.index: rating for rating in existing}
    for rating in new:
        by_index[rating.index] = rating
    return [by_index[index] for index in sorted(by_index)]


def apply_batch_result(state: SessionGradingState, job: LineRatingJob, ratings: List[LineRating]) -> SessionGradingState:
    """
    Fold one batch's ratings into the session state in place

    Safe to call again for the same batch and in any batch order: completion is
    counted over distinct batch indexes, not over calls. A batch partitioned
    for another grading run of the session changes nothing.
    """
    if job.run_id != state.run_id:
        logger.info(f"Ignoring batch {job.batch_index} of superseded run {job.run_id} for session {job.session_id}")
        return state

    state.line_ratings = merge_line_ratings(state.line_ratings, ratings)
    state.line_ratings_total_batches = job.total_batches
    if job.batch_index not in state.line_ratings_completed_batches:
        state.line_ratings_completed_batches = sorted(state.line_ratings_completed_batches + [job.batch_index])
    if job.batch_index in state.line_ratings_failed_batches:
        state.line_ratings_failed_batches = [b for b in state.line_ratings_failed_batches if b != job.batch_index]

    if state.line_ratings_complete:
        state.line_ratings_status = LineRatingsStatus.COMPLETED
    else:
        state.line_ratings_status = LineRatingsStatus.PROCESSING
    return state


class LineRater:
    """Rates rep lines, consulting the phrase cache before the LLM"""

    def __init__(self, llm, cache: Optional[PhraseCache] = None, cache_write_timeout: float = 2.0):
        """
        Args:
            llm: Client exposing acomplete_json (see LLMClient)
            cache: Phrase cache; a process-local one when omitted
            cache_write_timeout: How long rate_line lets a cache write run
                before returning without it
        """
        self.llm = llm
        self.cache = cache if cache is not None else InMemoryPhraseCache()
        self.cache_write_timeout = cache_write_timeout
        self._pending_writes: Set[asyncio.Task] = set()

    def _build_prompt(self, text: str) -> str:
        return f"""You are an expert door-to-door sales coach. Rate this sales rep line and provide better alternatives.

Sales Rep Line: "{text}"

Rate the effectiveness as one of: "excellent", "good", "poor", "missed_opportunity"

Provide 2-3 alternative ways to say this that would be more effective.

Return JSON:
{{
  "rating": "excellent|good|poor|missed_opportunity",
  "alternatives": ["alternative 1", "alternative 2", "alternative 3"],
  "reason": "brief explanation"
}}"""

    async def _write_back(self, text: str, response: LineRatingResponse) -> None:
        task = asyncio.create_task(self.cache.put(text, response.rating, response.alternatives))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        # Slow backends keep writing in the background; the rating never waits past the timeout
        await asyncio.wait({task}, timeout=self.cache_write_timeout)

    async def rate_line(self, utterance: Utterance) -> LineRating:
        cached = await self.cache.get(utterance.text)
        if cached is not None:
            return LineRating(
                index=utterance.index,
                text=utterance.text,
                rating=cached.rating,
                alternatives=cached.alternatives[:3],
                cached=True,
            )

        try:
            response = await self.llm.acomplete_json(
                self._build_prompt(utterance.text),
                system=LINE_RATING_SYSTEM_PROMPT,
                schema=LineRatingResponse,
                temperature=0.3,
                max_tokens=200,
            )
        except Exception as e:
            logger.error(f"Failed to rate line {utterance.index}: {e}")
            return LineRating(index=utterance.index, text=utterance.text, rating="error", error=str(e))

        await self._write_back(utterance.text, response)
        return LineRating(
            index=utterance.index,
            text=utterance.text,
            rating=response.rating,
            alternatives=response.alternatives,
            cached=False,
        )

    async def rate_batch(self, job: LineRatingJob) -> List[LineRating]:
        """Rate a batch's lines in transcript order; line failures become 'error' ratings"""
        ratings = []
        for utterance in job.utterances:
            if not utterance.is_rep:
                continue
            ratings.append(await self.rate_line(utterance))

        cached_count = sum(1 for r in ratings if r.cached)
        logger.info(
            f"Rated batch {job.batch_index + 1}/{job.total_batches} for session {job.session_id}: "
            f"{len(ratings)} lines, {cached_count} from cache"
        )
        return ratings

    async def flush(self) -> None:
        """Wait for cache writes still running in the background"""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
