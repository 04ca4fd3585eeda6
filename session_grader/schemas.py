from pydantic import BaseModel, Field, AliasChoices, field_validator, model_validator
from typing import List, Optional, Dict, Any, Union, Tuple
from datetime import datetime
from enum import Enum
import re


# Historical speaker labels collapse onto two conversational roles
REP_ALIASES = {"rep", "user", "sales_rep", "salesperson", "sales", "me"}
CUSTOMER_ALIASES = {"customer", "homeowner", "agent", "ai", "prospect", "them", "client"}


def normalize_speaker(value: Any) -> str:
    """Map a raw speaker label onto 'rep', 'customer' or 'unknown'"""
    if not isinstance(value, str):
        return "unknown"
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    if key in REP_ALIASES:
        return "rep"
    if key in CUSTOMER_ALIASES:
        return "customer"
    return "unknown"


def parse_timestamp(value: Union[float, int, str, None]) -> Optional[float]:
    """Convert a timestamp into seconds (elapsed or epoch), or None when unparseable"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r'\d+(\.\d+)?', text):
        return float(text)
    clock = re.fullmatch(r'(?:(\d+):)?(\d{1,2}):(\d{2})(?:\.\d+)?', text)
    if clock:
        hours = int(clock.group(1) or 0)
        return hours * 3600 + int(clock.group(2)) * 60 + int(clock.group(3))
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).timestamp()
    except ValueError:
        return None


class GradingStatus(str, Enum):
    NOT_STARTED = "not_started"
    INSTANT_COMPLETE = "instant_complete"
    MOMENTS_COMPLETE = "moments_complete"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LineRatingsStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"


LINE_RATING_VALUES = ("excellent", "good", "poor", "missed_opportunity")


class Utterance(BaseModel):
    speaker: str = Field(..., description="Conversational role: rep, customer or unknown")
    text: str = Field("", validation_alias=AliasChoices("text", "message"), description="What was said")
    timestamp: Optional[Union[float, str]] = Field(None, description="Elapsed seconds, MM:SS, or ISO time")
    index: Optional[int] = Field(None, description="Stable position within the transcript")

    @field_validator("speaker", mode="before")
    @classmethod
    def _normalize_speaker(cls, value):
        return normalize_speaker(value)

    @field_validator("text", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        return value if isinstance(value, str) else ""

    @property
    def is_rep(self) -> bool:
        return self.speaker == "rep"

    @property
    def seconds(self) -> Optional[float]:
        return parse_timestamp(self.timestamp)


class Transcript(BaseModel):
    utterances: List[Utterance] = Field(default_factory=list, description="Ordered utterances")

    @model_validator(mode="after")
    def _assign_indexes(self):
        for position, utterance in enumerate(self.utterances):
            if utterance.index is None:
                utterance.index = position
        indexes = [u.index for u in self.utterances]
        if any(b <= a for a, b in zip(indexes, indexes[1:])):
            raise ValueError("utterance indexes must be unique and increasing")
        return self

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> "Transcript":
        return cls(utterances=records)

    @property
    def rep_utterances(self) -> List[Utterance]:
        return [u for u in self.utterances if u.is_rep]

    def __len__(self) -> int:
        return len(self.utterances)


class PatternMatch(BaseModel):
    category: str = Field("none", description="objection | close_attempt | safety | discovery | rapport | none")
    severity: Optional[str] = Field(None, description="low/medium/high/critical, objections only")
    subtype: Optional[str] = Field(None, description="Pattern family that matched")
    sub_category: Optional[str] = Field(None, description="Finer objection label, e.g. price_affordability")
    suggested_approach: Optional[str] = Field(None, description="Coaching hint for the matched objection")
    pattern: Optional[str] = Field(None, description="Source of the regular expression that matched")

    @property
    def matched(self) -> bool:
        return self.category != "none"


class Segment(BaseModel):
    category: str = Field(..., description="Trigger category, or neutral")
    subtype: Optional[str] = None
    start_index: int
    end_index: int
    utterances: List[Utterance] = Field(default_factory=list)
    importance: int = Field(5, ge=1, le=10)
    outcome: str = Field("neutral", description="success | failure | neutral")

    @property
    def line_count(self) -> int:
        return len(self.utterances)


class MomentAnalysis(BaseModel):
    what_happened: str = Field("", validation_alias=AliasChoices("what_happened", "whatHappened"))
    what_worked: str = Field("", validation_alias=AliasChoices("what_worked", "whatWorked"))
    what_to_improve: str = Field("", validation_alias=AliasChoices("what_to_improve", "whatToImprove"))
    alternative_response: str = Field("", validation_alias=AliasChoices("alternative_response", "alternativeResponse"))

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value


class KeyMoment(BaseModel):
    id: str = Field(..., description="moment-<rank>")
    type: str = Field(..., description="Segment category")
    subtype: Optional[str] = None
    start_index: int
    end_index: int
    transcript: str = Field(..., description="speaker: text lines, truncated")
    timestamp: Optional[Union[float, str]] = None
    importance: int = Field(..., ge=1, le=10)
    outcome: str = "neutral"
    analysis: Optional[MomentAnalysis] = None


class MomentFeedback(BaseModel):
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    quick_tips: List[str] = Field(default_factory=list)


class EstimatedScores(BaseModel):
    rapport: int = Field(70, ge=0, le=100)
    discovery: int = Field(70, ge=0, le=100)
    objection_handling: int = Field(70, ge=0, le=100)
    closing: int = Field(70, ge=0, le=100)
    safety: int = Field(70, ge=0, le=100)

    @property
    def mean(self) -> int:
        values = [self.rapport, self.discovery, self.objection_handling, self.closing, self.safety]
        return round(sum(values) / len(values))


class SpeechMetrics(BaseModel):
    """Speech-quality payload delivered by the voice provider webhook"""
    sentiment_progression: List[float] = Field(default_factory=list, validation_alias=AliasChoices("sentiment_progression", "sentimentProgression"))
    interruption_count: int = Field(0, validation_alias=AliasChoices("interruption_count", "interruptionCount"))
    conversation_id: Optional[str] = Field(None, validation_alias=AliasChoices("conversation_id", "conversationId"))
    audio_quality: float = Field(85, validation_alias=AliasChoices("audio_quality", "audioQuality"))


class InstantMetrics(BaseModel):
    words_per_minute: float = 0
    filler_words: int = 0
    pause_frequency: int = 0
    conversation_balance: int = Field(50, ge=0, le=100, description="Rep share of characters spoken (%)")
    objection_count: int = 0
    close_attempts: int = 0
    safety_mentions: int = 0
    question_count: int = 0
    estimated_score: int = Field(70, ge=0, le=100)
    estimated_scores: EstimatedScores = Field(default_factory=EstimatedScores)
    speech_metrics: Optional[SpeechMetrics] = None
    speech_grading_error: bool = False
    partial: bool = Field(False, description="True when computation stopped early and these are best-effort values")
    computed_at: datetime = Field(default_factory=datetime.now)


class LineRating(BaseModel):
    index: int = Field(..., description="Utterance index this rating belongs to")
    text: str = ""
    rating: str = Field(..., description="excellent | good | poor | missed_opportunity | error")
    alternatives: List[str] = Field(default_factory=list, max_length=3)
    cached: bool = False
    error: Optional[str] = None


class LineRatingResponse(BaseModel):
    """Contract for a single-line rating answer from the LLM"""
    rating: str
    alternatives: List[str] = Field(default_factory=list)
    reason: Optional[str] = None

    @field_validator("rating", mode="before")
    @classmethod
    def _check_rating(cls, value):
        normalized = str(value or "").strip().lower().replace(" ", "_")
        if normalized not in LINE_RATING_VALUES:
            raise ValueError(f"rating must be one of {LINE_RATING_VALUES}, got {value!r}")
        return normalized

    @field_validator("alternatives", mode="before")
    @classmethod
    def _trim_alternatives(cls, value):
        if not isinstance(value, list):
            return []
        return [str(a).strip() for a in value if str(a).strip()][:3]


class LineRatingJob(BaseModel):
    session_id: str
    run_id: Optional[str] = Field(None, description="Grading run the batch was partitioned for")
    batch_index: int = Field(..., ge=0)
    total_batches: int = Field(..., ge=1)
    utterances: List[Utterance] = Field(default_factory=list)

    @property
    def identity(self) -> Tuple[str, Optional[str], int]:
        return (self.session_id, self.run_id, self.batch_index)


class CachedPhrase(BaseModel):
    key: str = Field(..., description="Normalized utterance text")
    rating: str
    alternatives: List[str] = Field(default_factory=list)
    cached_at: datetime = Field(default_factory=datetime.now)

    def is_stale(self, max_age_days: float, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return (now - self.cached_at).total_seconds() > max_age_days * 86400


class GradingJobRecord(BaseModel):
    session_id: str
    batch_index: int
    total_batches: int
    status: str = "queued"  # queued, processing, completed, failed
    attempts: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class DealDetails(BaseModel):
    product_sold: Optional[str] = None
    service_type: Optional[str] = None
    base_price: Optional[Union[float, str]] = None
    monthly_value: Optional[Union[float, str]] = None
    contract_length: Optional[Union[int, str]] = None
    total_contract_value: Optional[Union[float, str]] = None
    payment_method: Optional[str] = None
    add_ons: List[str] = Field(default_factory=list)
    start_date: Optional[str] = None

    @field_validator("add_ons", mode="before")
    @classmethod
    def _coerce_add_ons(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(v) for v in value]


class DeepGradeScores(BaseModel):
    overall: int = 0
    rapport: int = 0
    discovery: int = 0
    objection_handling: int = Field(0, validation_alias=AliasChoices("objection_handling", "objectionHandling"))
    closing: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def _clamp(cls, value):
        if value is None:
            return 0
        return max(0, min(100, int(round(float(value)))))


class DeepGradeMoment(BaseModel):
    time: Optional[str] = None
    type: str = "moment"
    description: str = ""
    transcript: str = ""


def _flatten_feedback(value) -> List[str]:
    if not isinstance(value, list):
        return []
    items = []
    for entry in value:
        if isinstance(entry, dict):
            entry = " - ".join(str(v) for v in entry.values() if v)
        if entry:
            items.append(str(entry))
    return items


class DeepGradeResponse(BaseModel):
    """Contract for the holistic grading answer from the LLM"""
    sale_closed: bool
    virtual_earnings: float = 0
    deal_details: Optional[DealDetails] = None
    failure_reason: Optional[str] = None
    final_scores: DeepGradeScores = Field(..., validation_alias=AliasChoices("final_scores", "finalScores"))
    top_strengths: List[str] = Field(default_factory=list)
    top_improvements: List[str] = Field(default_factory=list)
    session_highlight: Optional[str] = None
    key_moments: List[DeepGradeMoment] = Field(default_factory=list)

    @field_validator("deal_details", mode="before")
    @classmethod
    def _empty_deal(cls, value):
        return value if isinstance(value, dict) and value else None

    @field_validator("virtual_earnings", mode="before")
    @classmethod
    def _coerce_earnings(cls, value):
        if value in (None, ""):
            return 0
        if isinstance(value, str):
            digits = re.sub(r'[^\d.]', '', value)
            return float(digits) if digits else 0
        return value

    @field_validator("top_strengths", "top_improvements", mode="before")
    @classmethod
    def _coerce_feedback(cls, value):
        return _flatten_feedback(value)


class DeepGradeResult(BaseModel):
    sale_closed: bool = False
    virtual_earnings: float = 0
    deal_details: Optional[DealDetails] = None
    failure_reason: Optional[str] = None
    scores: DeepGradeScores = Field(default_factory=DeepGradeScores)
    top_strengths: List[str] = Field(default_factory=list)
    top_improvements: List[str] = Field(default_factory=list)
    session_highlight: Optional[str] = None
    key_moments: List[DeepGradeMoment] = Field(default_factory=list)
    inappropriate_language_detected: bool = False
    grading_note: Optional[str] = None
    llm_model: Optional[str] = None
    graded_at: datetime = Field(default_factory=datetime.now)

    @property
    def overall_score(self) -> int:
        return self.scores.overall


class SessionGradingState(BaseModel):
    """Aggregate grading record for one session; each stage owns its own fields"""
    session_id: str
    run_id: Optional[str] = Field(
        None, description="Identity of the current grading run; batches from other runs are ignored"
    )
    status: GradingStatus = GradingStatus.NOT_STARTED
    transcript: Optional[Transcript] = None
    duration_seconds: Optional[float] = None

    instant_metrics: Optional[InstantMetrics] = None
    key_moments: List[KeyMoment] = Field(default_factory=list)
    moment_feedback: Optional[MomentFeedback] = None

    line_ratings: List[LineRating] = Field(default_factory=list)
    line_ratings_status: Optional[LineRatingsStatus] = None
    line_ratings_total_batches: int = 0
    line_ratings_completed_batches: List[int] = Field(default_factory=list)
    line_ratings_failed_batches: List[int] = Field(default_factory=list)

    deep_grade: Optional[DeepGradeResult] = None
    overall_score: Optional[int] = None

    # Stage error notes, retry counters and timing markers
    analytics: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    graded_at: Optional[datetime] = None

    @property
    def completed_batch_count(self) -> int:
        return len(set(self.line_ratings_completed_batches))

    @property
    def line_ratings_complete(self) -> bool:
        return self.completed_batch_count >= self.line_ratings_total_batches

    @property
    def sale_closed(self) -> Optional[bool]:
        return self.deep_grade.sale_closed if self.deep_grade else None


class ImportedSession(BaseModel):
    """A transcript file read from disk, ready for grading"""
    session_id: str
    transcript: Transcript
    duration_seconds: Optional[float] = None
    prior_analytics: Dict[str, Any] = Field(default_factory=dict)
    source: str = Field(..., description="plaintext | markdown | json")
