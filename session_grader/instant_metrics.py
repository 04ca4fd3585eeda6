"""
Instant (heuristic-only) grading stage.

Produces coarse 0-100 sub-scores from pattern counts, conversation balance and
pre-computed voice metrics. No LLM call is made here; the stage returns
best-effort partial metrics rather than raising once input validation passes.
"""

import re
import math
import logging
from typing import Dict, Any, Optional

from .errors import TranscriptError
from .patterns import PatternEngine, get_pattern_engine, is_question
from .schemas import Transcript, InstantMetrics, EstimatedScores, SpeechMetrics

logger = logging.getLogger(__name__)

BASE_SCORE = 70

FILLER_WORDS = ["um", "uh", "like", "you know", "basically", "actually", "literally", "sort of", "kind of"]
_FILLER_PATTERN = re.compile(r"\b(" + "|".join(re.escape(w) for w in FILLER_WORDS) + r")\b", re.IGNORECASE)
LONG_PAUSE_SECONDS = 3.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: int) -> int:
    return max(0, min(100, value))


def conversation_balance(transcript: Transcript) -> int:
    """Rep share of spoken characters (0-100); 50 when nothing countable was said"""
    rep_chars = 0
    customer_chars = 0
    for utterance in transcript.utterances:
        if utterance.speaker == "rep":
            rep_chars += len(utterance.text)
        elif utterance.speaker == "customer":
            customer_chars += len(utterance.text)
        # unknown roles count on neither side

    total = rep_chars + customer_chars
    if total == 0:
        return 50
    return _round_half_up(rep_chars / total * 100)


def estimate_voice_metrics(transcript: Transcript) -> Dict[str, float]:
    """
    Approximate voice metrics from the transcript itself

    WPM needs timestamps on the rep's lines; without at least two of them it
    stays 0, which the scorer treats as 'not measured'.
    """
    rep_lines = transcript.rep_utterances
    filler_words = sum(len(_FILLER_PATTERN.findall(u.text)) for u in rep_lines)

    words_per_minute = 0.0
    rep_seconds = [u.seconds for u in rep_lines if u.seconds is not None]
    if len(rep_seconds) >= 2 and rep_seconds[-1] > rep_seconds[0]:
        word_count = sum(len(u.text.split()) for u in rep_lines)
        words_per_minute = round(word_count / ((rep_seconds[-1] - rep_seconds[0]) / 60), 1)

    pauses = 0
    previous = None
    for utterance in transcript.utterances:
        current = utterance.seconds
        if previous is not None and current is not None and current - previous > LONG_PAUSE_SECONDS:
            pauses += 1
        if current is not None:
            previous = current

    return {
        "words_per_minute": words_per_minute,
        "filler_words": filler_words,
        "pause_frequency": pauses,
    }


def voice_metrics_from_analytics(prior_analytics: Optional[Dict[str, Any]],
                                 transcript: Optional[Transcript] = None) -> Dict[str, float]:
    """Read the recorder's voice analysis (avgWPM, totalFillerWords, longPausesCount)"""
    voice = (prior_analytics or {}).get("voice_analysis")
    if not voice:
        if transcript is not None:
            return estimate_voice_metrics(transcript)
        voice = {}
    return {
        "words_per_minute": float(voice.get("avgWPM") or 0),
        "filler_words": int(voice.get("totalFillerWords") or 0),
        "pause_frequency": int(voice.get("longPausesCount") or 0),
    }


def score_instant(metrics: InstantMetrics) -> EstimatedScores:
    """Apply the additive adjustments to the base sub-scores"""
    rapport = discovery = closing = safety = BASE_SCORE

    balance = metrics.conversation_balance
    if 40 <= balance <= 60:
        rapport += 10
    elif balance <= 30:
        rapport -= 15
    elif balance > 70:
        rapport -= 10

    # 0 means the recorder supplied no pace measurement
    wpm = metrics.words_per_minute
    if wpm > 0:
        if 140 <= wpm <= 160:
            rapport += 5
        elif wpm < 120:
            rapport -= 5
        elif wpm > 180:
            rapport -= 10

    if metrics.question_count >= 3:
        discovery += 10
    elif metrics.question_count == 0:
        discovery -= 15

    # Objections are refined by the deep grade; an objection-free call is slightly easier
    objection_handling = 70 if metrics.objection_count > 0 else 75

    if metrics.close_attempts >= 2:
        closing += 15
    elif metrics.close_attempts == 1:
        closing += 5
    else:
        closing -= 20

    if metrics.safety_mentions > 0:
        safety += 20
    else:
        safety -= 10

    filler_penalty = min(metrics.filler_words * 2, 15)
    rapport -= filler_penalty
    discovery -= filler_penalty

    if metrics.pause_frequency > 5:
        rapport -= 5

    return EstimatedScores(
        rapport=_clamp(rapport),
        discovery=_clamp(discovery),
        objection_handling=_clamp(objection_handling),
        closing=_clamp(closing),
        safety=_clamp(safety),
    )


def compute_instant(transcript: Transcript, prior_analytics: Optional[Dict[str, Any]] = None,
                    speech_payload: Optional[Dict[str, Any]] = None, speech_expected: bool = False,
                    engine: Optional[PatternEngine] = None) -> InstantMetrics:
    """
    Compute instant metrics for a transcript

    Args:
        transcript: Conversation to score
        prior_analytics: Session analytics carrying 'voice_analysis'
        speech_payload: Speech-quality webhook payload, if it arrived
        speech_expected: True when a speech payload was expected for this session
        engine: Pattern engine (defaults to the shared engine)

    Returns:
        InstantMetrics; 'partial' is set when computation stopped early
    """
    if transcript is None or len(transcript) == 0:
        raise TranscriptError("No transcript available")

    engine = engine or get_pattern_engine()
    metrics = InstantMetrics()

    try:
        voice = voice_metrics_from_analytics(prior_analytics, transcript)
        metrics.words_per_minute = voice["words_per_minute"]
        metrics.filler_words = voice["filler_words"]
        metrics.pause_frequency = voice["pause_frequency"]

        utterances = transcript.utterances
        for position, utterance in enumerate(utterances):
            if not utterance.is_rep:
                continue
            context = utterances[max(0, position - 3):position]
            if engine.detect_objection(utterance.text, context).matched:
                metrics.objection_count += 1
            if engine.detect_close(utterance.text).matched:
                metrics.close_attempts += 1
            if engine.detect_safety(utterance.text).matched:
                metrics.safety_mentions += 1
            if is_question(utterance.text):
                metrics.question_count += 1

        metrics.conversation_balance = conversation_balance(transcript)

        if speech_payload:
            metrics.speech_metrics = SpeechMetrics.model_validate(speech_payload)
        elif speech_expected:
            metrics.speech_grading_error = True
            logger.warning("Speech grading payload expected but missing; continuing without it")

        metrics.estimated_scores = score_instant(metrics)
        metrics.estimated_score = metrics.estimated_scores.mean
    except Exception as e:
        logger.warning(f"Instant metrics stopped early, returning partial metrics: {e}", exc_info=True)
        metrics.partial = True

    return metrics
