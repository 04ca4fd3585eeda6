import pytest
from pydantic import ValidationError

from session_grader.deep_grade import (
    DEFAULT_FAILURE_REASON, INAPPROPRIATE_NOTE, DeepGrader, detect_inappropriate_language
)
from session_grader.errors import LLMResponseError, TranscriptError
from session_grader.schemas import Transcript

from fakes import FakeLLM, CLOSED_DEEP_GRADE, NOT_CLOSED_DEEP_GRADE


SALE_TRANSCRIPT = [
    {"speaker": "rep", "text": "Hi, I'm with the local pest team.", "timestamp": "00:00"},
    {"speaker": "customer", "text": "Hello.", "timestamp": "00:05"},
    {"speaker": "rep", "text": "Would you like to get started this week?", "timestamp": "00:28"},
    {"speaker": "customer", "text": "Yes, Tuesday works.", "timestamp": "00:33"},
]


class TestInappropriateLanguage:
    def test_flagged_transcript(self):
        transcript = Transcript.from_records([
            {"speaker": "customer", "text": "Get off my porch."},
            {"speaker": "customer", "text": "Seriously, shut up and leave."},
        ])

        assert detect_inappropriate_language(transcript) is not None

    def test_clean_transcript(self):
        transcript = Transcript.from_records(SALE_TRANSCRIPT)

        assert detect_inappropriate_language(transcript) is None


class TestDeepGrader:
    def test_profanity_short_circuits_without_llm_call(self):
        llm = FakeLLM([CLOSED_DEEP_GRADE])
        transcript = Transcript.from_records([
            {"speaker": "rep", "text": "Hi there."},
            {"speaker": "customer", "text": "Shut up and get off my lawn."},
        ])

        result = DeepGrader(llm=llm).grade(transcript, 60)

        assert llm.call_count == 0
        assert result.overall_score == 0
        assert result.scores.closing == 0
        assert not result.sale_closed
        assert result.inappropriate_language_detected
        assert result.grading_note == INAPPROPRIATE_NOTE

    def test_closed_sale_scores_are_floored(self):
        llm = FakeLLM([CLOSED_DEEP_GRADE], model="gpt-4o")

        result = DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

        assert llm.call_count == 1
        assert result.sale_closed
        assert result.scores.overall == 80
        assert result.scores.closing == 90
        assert result.scores.rapport == 75
        assert result.virtual_earnings == 1200
        assert result.deal_details.add_ons == ["Mosquito"]
        assert result.failure_reason is None
        assert result.top_improvements == ["Discovery - Ask about past treatments"]
        assert result.llm_model == "gpt-4o"

    def test_moment_quote_falls_back_to_nearest_line(self):
        llm = FakeLLM([CLOSED_DEEP_GRADE])

        result = DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

        assert result.key_moments[0].transcript == "Would you like to get started this week?"

    def test_moment_quote_falls_back_to_description_without_timestamps(self):
        llm = FakeLLM([CLOSED_DEEP_GRADE])
        transcript = Transcript.from_records([{k: v for k, v in u.items() if k != "timestamp"} for u in SALE_TRANSCRIPT])

        result = DeepGrader(llm=llm).grade(transcript, 600)

        assert result.key_moments[0].transcript == "Asked for the sale"

    def test_no_sale_clears_deal(self):
        llm = FakeLLM([NOT_CLOSED_DEEP_GRADE])

        result = DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

        assert not result.sale_closed
        assert result.virtual_earnings == 0
        assert result.deal_details is None
        assert result.failure_reason == DEFAULT_FAILURE_REASON
        assert result.overall_score == 41

    def test_scores_are_clamped(self):
        response = dict(NOT_CLOSED_DEEP_GRADE, finalScores={"overall": 140, "rapport": -5, "discovery": "55.6"})
        llm = FakeLLM([response])

        result = DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

        assert result.scores.overall == 100
        assert result.scores.rapport == 0
        assert result.scores.discovery == 56
        assert result.scores.closing == 0

    def test_malformed_response_propagates(self):
        llm = FakeLLM([LLMResponseError("Invalid JSON from fake-model")])

        with pytest.raises(LLMResponseError):
            DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

    def test_missing_sale_outcome_is_off_contract(self):
        llm = FakeLLM([{"finalScores": {"overall": 50}}])

        with pytest.raises(ValidationError):
            DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

    def test_empty_transcript_raises(self):
        with pytest.raises(TranscriptError):
            DeepGrader(llm=FakeLLM()).grade(Transcript(), 0)

    def test_prompt_includes_transcript_lines(self):
        llm = FakeLLM([NOT_CLOSED_DEEP_GRADE])

        DeepGrader(llm=llm).grade(Transcript.from_records(SALE_TRANSCRIPT), 600)

        assert "[2] rep: Would you like to get started this week?" in llm.prompts[0]
        assert "(10 minutes, 4 lines)" in llm.prompts[0]
