import os
import re
import logging
from typing import List, Optional, Any

from pydantic import BaseModel, Field, model_validator

from .errors import TranscriptError
from .patterns import PatternEngine, get_pattern_engine, is_affirmative
from .schemas import Transcript, Segment, KeyMoment, MomentAnalysis, MomentFeedback

logger = logging.getLogger(__name__)


CATEGORY_IMPORTANCE = {
    "objection": 9,
    "close_attempt": 8,
    "discovery": 7,
    "safety": 6,
    "rapport": 6,
    "neutral": 5,
}

MAX_SEGMENT_LINES = 10
TOPIC_CHANGE_MIN_LINES = 3
MOMENT_TEXT_LIMIT = 500

ENRICHMENT_SYSTEM_PROMPT = "Sales coach. JSON only."

# Annotations are addressed to the rep in second person
_SECOND_PERSON_REWRITES = [
    (re.compile(r"\bthe sales rep\b", re.IGNORECASE), "you"),
    (re.compile(r"\bthe user\b", re.IGNORECASE), "you"),
    (re.compile(r"\bthe rep\b", re.IGNORECASE), "you"),
    (re.compile(r"\bthey\b", re.IGNORECASE), "you"),
    (re.compile(r"\btheir\b", re.IGNORECASE), "your"),
]


class MomentAnnotations(BaseModel):
    """Contract for the key-moment enrichment answer"""
    moments: List[MomentAnalysis] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, data: Any):
        if isinstance(data, list):
            return {"moments": data}
        if isinstance(data, dict) and "moments" not in data and "analysis" in data:
            return {"moments": data["analysis"]}
        return data


def clean_text(text: Optional[str]) -> str:
    """Rewrite third-person references to the rep as 'you'"""
    if not text:
        return ""
    for pattern, replacement in _SECOND_PERSON_REWRITES:
        text = pattern.sub(replacement, text)
    return text


def segment_transcript(transcript: Transcript, engine: Optional[PatternEngine] = None,
                       gap_seconds: Optional[float] = None) -> List[Segment]:
    """
    Split a transcript into contiguous segments

    A pattern match starts a new segment; other lines extend the open one.
    A segment closes after MAX_SEGMENT_LINES lines, or on a speaker change once
    it holds more than TOPIC_CHANGE_MIN_LINES lines. When gap_seconds is set,
    a silence longer than that between consecutive lines also closes it.
    """
    engine = engine or get_pattern_engine()
    utterances = transcript.utterances
    segments: List[Segment] = []
    current: Optional[Segment] = None

    for position, utterance in enumerate(utterances):
        context = utterances[max(0, position - 3):position]
        match = engine.classify(utterance, context)

        if match.matched:
            if current is not None:
                segments.append(current)
            current = Segment(
                category=match.category,
                subtype=match.subtype,
                start_index=utterance.index,
                end_index=utterance.index,
                utterances=[utterance],
            )
            continue

        if current is None:
            current = Segment(
                category="neutral",
                start_index=utterance.index,
                end_index=utterance.index,
                utterances=[utterance],
            )
            continue

        previous = current.utterances[-1]
        topic_change = (
            current.line_count > TOPIC_CHANGE_MIN_LINES and utterance.speaker != previous.speaker
        )
        if gap_seconds is not None and previous.seconds is not None and utterance.seconds is not None:
            topic_change = topic_change or (utterance.seconds - previous.seconds) > gap_seconds

        current.utterances.append(utterance)
        current.end_index = utterance.index

        if current.line_count > MAX_SEGMENT_LINES or topic_change:
            segments.append(current)
            current = None

    if current is not None:
        segments.append(current)

    return segments


def score_segments(segments: List[Segment]) -> List[Segment]:
    """Assign 1-10 importance from category weight, length and position"""
    total = len(segments)
    scored = []
    for position, segment in enumerate(segments):
        importance = CATEGORY_IMPORTANCE.get(segment.category, 5)
        if segment.line_count > 5:
            importance += 1
        ratio = position / total
        if ratio < 0.2 or ratio > 0.8:
            importance += 1
        scored.append(segment.model_copy(update={"importance": max(1, min(10, importance))}))
    return scored


def infer_outcomes(segments: List[Segment]) -> List[Segment]:
    """A close attempt succeeded when the following segment contains an affirmative"""
    for position, segment in enumerate(segments):
        segment.outcome = "neutral"
        if segment.category != "close_attempt" or position + 1 >= len(segments):
            continue
        following = segments[position + 1]
        if any(is_affirmative(u.text) for u in following.utterances):
            segment.outcome = "success"
    return segments


def select_moments(segments: List[Segment], max_moments: int = 10) -> List[Segment]:
    """Top segments by importance; sorted() is stable so ties keep transcript order"""
    ranked = sorted(segments, key=lambda s: s.importance, reverse=True)
    return ranked[:max(0, max_moments)]


def to_key_moment(segment: Segment, rank: int) -> KeyMoment:
    text = "\n".join(f"{u.speaker}: {u.text}" for u in segment.utterances)
    return KeyMoment(
        id=f"moment-{rank}",
        type=segment.category,
        subtype=segment.subtype,
        start_index=segment.start_index,
        end_index=segment.end_index,
        transcript=text[:MOMENT_TEXT_LIMIT],
        timestamp=segment.utterances[0].timestamp if segment.utterances else None,
        importance=segment.importance,
        outcome=segment.outcome,
    )


def generate_moment_feedback(moments: List[KeyMoment]) -> MomentFeedback:
    """Summarize selected moments into strengths, improvements and quick tips"""
    feedback = MomentFeedback()

    successes = [m for m in moments if m.outcome == "success"]
    failures = [m for m in moments if m.outcome == "failure"]
    if successes:
        feedback.strengths.append(f"Successfully handled {len(successes)} key moment(s)")
    if failures:
        feedback.improvements.append(f"Had difficulty with {len(failures)} key moment(s)")

    closes = [m for m in moments if m.type == "close_attempt"]
    if len(closes) >= 2:
        feedback.strengths.append("Made multiple close attempts")
    elif not closes:
        feedback.improvements.append("No close attempts detected")

    objections = [m for m in moments if m.type == "objection"]
    if objections:
        feedback.quick_tips.append(f"Faced {len(objections)} objection(s) - review how they were handled")

    if not any(m.type == "discovery" for m in moments):
        feedback.quick_tips.append("Ask more open discovery questions early in the conversation")

    return feedback


class KeyMomentExtractor:
    """Local segmentation and ranking plus one best-effort LLM annotation pass"""

    def __init__(self, llm=None, max_moments: int = None, engine: Optional[PatternEngine] = None,
                 enrich: bool = True, topic_change_gap_seconds: Optional[float] = None):
        self.llm = llm
        self.max_moments = max_moments if max_moments is not None else int(os.getenv("MAX_KEY_MOMENTS", "10"))
        self.engine = engine or get_pattern_engine()
        self.enrich_enabled = enrich
        gap = topic_change_gap_seconds
        if gap is None and os.getenv("TOPIC_CHANGE_GAP_SECONDS"):
            gap = float(os.getenv("TOPIC_CHANGE_GAP_SECONDS"))
        self.topic_change_gap_seconds = gap

    def rank(self, transcript: Transcript) -> List[KeyMoment]:
        """Segment, score and select moments without calling the LLM"""
        if transcript is None or len(transcript) == 0:
            raise TranscriptError("No transcript available")

        segments = segment_transcript(transcript, self.engine, self.topic_change_gap_seconds)
        scored = infer_outcomes(score_segments(segments))
        selected = select_moments(scored, self.max_moments)
        return [to_key_moment(segment, rank) for rank, segment in enumerate(selected, start=1)]

    def extract(self, transcript: Transcript) -> List[KeyMoment]:
        moments = self.rank(transcript)
        if self.enrich_enabled and self.llm is not None:
            moments = self.enrich(moments)
        logger.info(f"Selected {len(moments)} key moments")
        return moments

    def _build_prompt(self, moments: List[KeyMoment]) -> str:
        listing = "\n".join(
            f'{i}. {m.type}: "{m.transcript[:150]}" Outcome: {m.outcome}'
            for i, m in enumerate(moments, start=1)
        )
        return f"""Analyze {len(moments)} key moments from a sales conversation. Address the rep as "you".
For each: what happened (1 sentence), what worked (1 sentence), what to improve (1 sentence), alternative line (1 sentence).

Moments:
{listing}

Return JSON with one entry per moment, in order:
{{"moments": [{{"whatHappened": "s", "whatWorked": "s", "whatToImprove": "s", "alternativeResponse": "s"}}]}}"""

    def enrich(self, moments: List[KeyMoment]) -> List[KeyMoment]:
        """Annotate moments with one LLM call; on any failure return them unannotated"""
        if not moments:
            return moments

        try:
            annotations = self.llm.complete_json(
                self._build_prompt(moments),
                system=ENRICHMENT_SYSTEM_PROMPT,
                schema=MomentAnnotations,
                temperature=0.2,
                max_tokens=1200,
                retries=1,
            )
        except Exception as e:
            logger.warning(f"Key moment enrichment failed, returning moments without analysis: {e}")
            return moments

        enriched = []
        for position, moment in enumerate(moments):
            if position < len(annotations.moments):
                analysis = annotations.moments[position]
                moment = moment.model_copy(update={"analysis": MomentAnalysis(
                    what_happened=clean_text(analysis.what_happened) or "Analysis pending",
                    what_worked=clean_text(analysis.what_worked),
                    what_to_improve=clean_text(analysis.what_to_improve) or "Could be improved",
                    alternative_response=clean_text(analysis.alternative_response),
                )})
            enriched.append(moment)
        return enriched
