import asyncio
import pytest

from session_grader.errors import LLMResponseError, TranscriptError
from session_grader.line_rating import (
    LineRater, apply_batch_result, merge_line_ratings, partition_batches
)
from session_grader.phrase_cache import InMemoryPhraseCache
from session_grader.schemas import (
    LineRating, LineRatingsStatus, SessionGradingState, Transcript, Utterance
)

from fakes import FakeLLM, GOOD_RATING, conversation, plain_rep_lines


class TestPartitionBatches:
    def setup_method(self):
        self.transcript = Transcript.from_records(conversation(plain_rep_lines(12)))

    def test_twelve_rep_lines_in_batches_of_five(self):
        jobs = partition_batches("session-1", self.transcript, batch_size=5)

        assert [len(job.utterances) for job in jobs] == [5, 5, 2]
        assert [job.batch_index for job in jobs] == [0, 1, 2]
        assert all(job.total_batches == 3 for job in jobs)

    def test_only_rep_lines_are_batched(self):
        jobs = partition_batches("session-1", self.transcript, batch_size=5)

        rated = [u.index for job in jobs for u in job.utterances]
        assert rated == [u.index for u in self.transcript.rep_utterances]
        assert all(u.is_rep for job in jobs for u in job.utterances)

    def test_no_rep_lines_yields_no_jobs(self):
        transcript = Transcript.from_records([{"speaker": "customer", "text": "Hello?"}])

        assert partition_batches("session-1", transcript) == []

    def test_session_id_required(self):
        with pytest.raises(TranscriptError):
            partition_batches("", self.transcript)


class TestMergeLineRatings:
    def setup_method(self):
        self.transcript = Transcript.from_records(conversation(plain_rep_lines(12)))
        self.jobs = partition_batches("session-1", self.transcript, batch_size=5)

    def _ratings(self, job, rating="good"):
        return [LineRating(index=u.index, text=u.text, rating=rating) for u in job.utterances]

    def test_merge_is_idempotent(self):
        once = merge_line_ratings([], self._ratings(self.jobs[0]))
        twice = merge_line_ratings(once, self._ratings(self.jobs[0]))

        assert twice == once

    def test_last_write_wins_per_line(self):
        merged = merge_line_ratings(self._ratings(self.jobs[0], "poor"), self._ratings(self.jobs[0], "excellent"))

        assert {r.rating for r in merged} == {"excellent"}
        assert len(merged) == 5

    def test_arrival_order_does_not_matter(self):
        in_order = SessionGradingState(session_id="session-1")
        shuffled = SessionGradingState(session_id="session-1")

        for job in self.jobs:
            apply_batch_result(in_order, job, self._ratings(job))
        for position in (2, 0, 1):
            apply_batch_result(shuffled, self.jobs[position], self._ratings(self.jobs[position]))

        assert shuffled.line_ratings == in_order.line_ratings
        assert shuffled.line_ratings_completed_batches == [0, 1, 2]
        assert shuffled.line_ratings_status == LineRatingsStatus.COMPLETED
        assert [r.index for r in shuffled.line_ratings] == sorted(r.index for r in shuffled.line_ratings)

    def test_duplicate_completion_counted_once(self):
        state = SessionGradingState(session_id="session-1")

        apply_batch_result(state, self.jobs[0], self._ratings(self.jobs[0]))
        apply_batch_result(state, self.jobs[0], self._ratings(self.jobs[0]))
        apply_batch_result(state, self.jobs[1], self._ratings(self.jobs[1]))

        assert state.completed_batch_count == 2
        assert not state.line_ratings_complete
        assert state.line_ratings_status == LineRatingsStatus.PROCESSING
        assert len(state.line_ratings) == 10

    def test_completed_batch_leaves_failed_list(self):
        state = SessionGradingState(session_id="session-1", line_ratings_failed_batches=[1])

        apply_batch_result(state, self.jobs[1], self._ratings(self.jobs[1]))

        assert state.line_ratings_failed_batches == []


class TestLineRater:
    def setup_method(self):
        self.cache = InMemoryPhraseCache()

    def test_cache_round_trip_makes_one_llm_call(self):
        llm = FakeLLM([GOOD_RATING])
        rater = LineRater(llm, self.cache)

        async def run():
            first = await rater.rate_line(Utterance(speaker="rep", text="How long have you lived here?", index=0))
            second = await rater.rate_line(Utterance(speaker="rep", text="  how long have you LIVED here ", index=4))
            return first, second

        first, second = asyncio.run(run())

        assert llm.call_count == 1
        assert not first.cached
        assert second.cached
        assert second.index == 4
        assert second.rating == first.rating == "good"
        assert second.alternatives == first.alternatives

    def test_alternatives_capped_at_three(self):
        llm = FakeLLM([{"rating": "Missed Opportunity", "alternatives": ["a", "b", "c", "d"]}])
        rater = LineRater(llm, self.cache)

        rating = asyncio.run(rater.rate_line(Utterance(speaker="rep", text="We spray.", index=0)))

        assert rating.rating == "missed_opportunity"
        assert rating.alternatives == ["a", "b", "c"]

    def test_malformed_response_becomes_error_rating(self):
        llm = FakeLLM([LLMResponseError("Invalid JSON from fake-model")])
        rater = LineRater(llm, self.cache)

        rating = asyncio.run(rater.rate_line(Utterance(speaker="rep", text="We spray.", index=2)))

        assert rating.rating == "error"
        assert "Invalid JSON" in rating.error
        assert len(self.cache) == 0

    def test_off_contract_rating_becomes_error_rating(self):
        llm = FakeLLM([{"rating": "fantastic", "alternatives": []}])
        rater = LineRater(llm, self.cache)

        rating = asyncio.run(rater.rate_line(Utterance(speaker="rep", text="We spray.", index=2)))

        assert rating.rating == "error"

    def test_batch_keeps_going_after_line_failure(self):
        llm = FakeLLM([GOOD_RATING, LLMResponseError("Empty response from fake-model"), GOOD_RATING])
        rater = LineRater(llm, self.cache)
        transcript = Transcript.from_records(conversation(["First line.", "Second line.", "Third line."]))
        job = partition_batches("session-1", transcript, batch_size=5)[0]

        ratings = asyncio.run(rater.rate_batch(job))

        assert [r.rating for r in ratings] == ["good", "error", "good"]
        assert [r.index for r in ratings] == [0, 2, 4]

    def test_slow_cache_write_does_not_block_rating(self):
        class SlowCache(InMemoryPhraseCache):
            async def _write(self, entry):
                await asyncio.sleep(0.3)
                await super()._write(entry)

        cache = SlowCache()
        rater = LineRater(FakeLLM([GOOD_RATING]), cache, cache_write_timeout=0.01)

        async def run():
            rating = await rater.rate_line(Utterance(speaker="rep", text="We spray.", index=0))
            written_before_flush = len(cache)
            await rater.flush()
            return rating, written_before_flush

        rating, written_before_flush = asyncio.run(run())

        assert rating.rating == "good"
        assert written_before_flush == 0
        assert len(cache) == 1
