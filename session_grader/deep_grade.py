"""
Holistic grading of a full transcript in a single LLM call.

A fixed content-safety screen runs first; a flagged transcript is zeroed
without calling the model.
"""

import os
import re
import logging
from typing import List, Optional

from .errors import TranscriptError
from .llm_client import LLMClient
from .schemas import (
    Transcript, DeepGradeResponse, DeepGradeResult, DeepGradeScores, DeepGradeMoment, parse_timestamp
)

logger = logging.getLogger(__name__)

INAPPROPRIATE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in [
        r"\bn[i1]gg?[e3]r\b",
        r"\bf[a4]gg?[o0]t\b",
        r"\bp[u3]ssy\b",
        r"\bf[u3]ck\b",
        r"\bsh[i1]t\b",
        r"\bb[i1]tch\b",
        r"\bwh[o0]re\b",
        r"\bsl[u3]t\b",
        r"\bc[u3]nt\b",
        r"\bc[o0]ck\b",
        r"\bd[i1]ck\b",
        r"\bt[i1]ts?\b",
        r"\btw[a4]t\b",
        r"\bp[o0]rn\b",
        r"\br[a4]p[e3]\b",
        r"\bk[i1]ll\s+y[o0]u\b",
        r"\bf[u3]ck\s+y[o0]u\b",
        r"\bd[i1][e3]\b",
        r"\bbl[o0]w\s+j[o0]b\b",
        r"\br[e3]t[a4]rd\b",
        r"\bp[i1]ss\s+[o0]ff\b",
        r"\bg[o0]\s+f[u3]ck\s+y[o0]urs[e3]lf\b",
        r"\bsh[u3]t\s+u[p3]\b",
        r"\bsh[u3]t\s+th[e3]\s+f[u3]ck\s+u[p3]\b",
    ]
]

INAPPROPRIATE_NOTE = "Session score set to 0 due to inappropriate language detected in transcript"
DEFAULT_FAILURE_REASON = "Close attempt did not result in sale"
DEEP_GRADE_SYSTEM_PROMPT = "Sales coach. Return ONLY valid JSON, no markdown formatting."


def detect_inappropriate_language(transcript: Transcript) -> Optional[str]:
    """Return the first flagged pattern found in any utterance, or None"""
    for utterance in transcript.utterances:
        for pattern in INAPPROPRIATE_PATTERNS:
            if pattern.search(utterance.text):
                logger.warning(f"Inappropriate language detected at line {utterance.index} ({utterance.speaker})")
                return pattern.pattern
    return None


def _format_transcript(transcript: Transcript) -> str:
    return "\n".join(f"[{u.index}] {u.speaker}: {u.text}" for u in transcript.utterances)


class DeepGrader:
    """Single-call holistic grader with a content-safety pre-check"""

    def __init__(self, llm=None, temperature: float = 0.2, max_tokens: int = 3000):
        self.llm = llm or LLMClient(model=os.getenv("DEEP_GRADE_MODEL", "gpt-4o"))
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _build_prompt(self, transcript: Transcript, duration_seconds: Optional[float]) -> str:
        duration_minutes = round((duration_seconds or 0) / 60)
        return f"""Analyze this door-to-door sales conversation transcript and return JSON with ONLY these fields:

1. sale_closed (boolean) - Did the customer commit to service? Look for: customer agreement + info collection, scheduling, payment discussion, or rep collecting customer info after discussing service.
2. virtual_earnings (number) - Deal value if closed. Use the exact price mentioned in the conversation; if no price was mentioned return 0. 0 if not closed.
3. deal_details (object) - If sale_closed=true: {{product_sold, service_type, base_price, monthly_value, contract_length, total_contract_value, payment_method, add_ons, start_date}}
4. failure_reason (string) - If sale_closed=false: why did the close fail? (e.g. "Didn't ask for the close", "Talk ratio too high")
5. finalScores (object) - {{overall: 0-100, rapport: 0-100, discovery: 0-100, objectionHandling: 0-100, closing: 0-100}}
   - If sale_closed=true: overall MUST be at least 80, closing MUST be 90-100
6. top_strengths (array) - Top 2-3 strengths with brief description
7. top_improvements (array) - Top 2-3 areas for improvement
8. session_highlight (string) - One highlight from the conversation
9. key_moments (array) - Important moments: [{{time: "MM:SS", type: "string", description: "string", transcript: "actual quote from conversation"}}]

SALE DETECTION RULES:
- Sale is CLOSED if customer agreed AND (info was collected OR scheduling happened OR payment discussed)
- If rep asks for info after discussing service and customer provides it = SALE CLOSED
- If customer schedules appointment = SALE CLOSED

TRANSCRIPT ({duration_minutes} minutes, {len(transcript)} lines):
{_format_transcript(transcript)}

Return ONLY valid JSON matching this structure:
{{
  "sale_closed": boolean,
  "virtual_earnings": number,
  "deal_details": object,
  "failure_reason": string,
  "finalScores": {{"overall": number, "rapport": number, "discovery": number, "objectionHandling": number, "closing": number}},
  "top_strengths": ["string"],
  "top_improvements": ["string"],
  "session_highlight": "string",
  "key_moments": [{{"time": "MM:SS", "type": "string", "description": "string", "transcript": "actual quote from conversation"}}]
}}"""

    def _quote_for(self, moment: DeepGradeMoment, transcript: Transcript) -> str:
        """Literal quote for a moment: the model's, else the line nearest its time, else the description"""
        if moment.transcript:
            return moment.transcript
        target = parse_timestamp(moment.time)
        timed = [u for u in transcript.utterances if u.seconds is not None]
        if target is not None and timed:
            # Only elapsed-time transcripts are comparable with MM:SS
            closest = min(timed, key=lambda u: abs(u.seconds - target))
            if abs(closest.seconds - target) <= 30:
                return closest.text
        return moment.description

    def _post_process(self, response: DeepGradeResponse, transcript: Transcript) -> DeepGradeResult:
        scores = response.final_scores.model_copy()
        if response.sale_closed:
            scores.overall = max(scores.overall, 80)
            scores.closing = max(scores.closing, 90)
            virtual_earnings = response.virtual_earnings
            deal_details = response.deal_details
            failure_reason = None
        else:
            virtual_earnings = 0
            deal_details = None
            failure_reason = response.failure_reason or DEFAULT_FAILURE_REASON

        moments: List[DeepGradeMoment] = [
            moment.model_copy(update={"transcript": self._quote_for(moment, transcript)})
            for moment in response.key_moments
        ]

        return DeepGradeResult(
            sale_closed=response.sale_closed,
            virtual_earnings=virtual_earnings,
            deal_details=deal_details,
            failure_reason=failure_reason,
            scores=scores,
            top_strengths=response.top_strengths,
            top_improvements=response.top_improvements,
            session_highlight=response.session_highlight,
            key_moments=moments,
            llm_model=getattr(self.llm, "model", None),
        )

    def grade(self, transcript: Transcript, duration_seconds: Optional[float] = None) -> DeepGradeResult:
        """
        Grade a full conversation

        Raises:
            TranscriptError: Empty transcript
            LLMResponseError: Response was not valid JSON or broke the contract
            LLMError: Provider kept failing
        """
        if transcript is None or len(transcript) == 0:
            raise TranscriptError("No transcript available")

        if detect_inappropriate_language(transcript):
            logger.error("Inappropriate language detected - setting all scores to 0")
            return DeepGradeResult(
                sale_closed=False,
                virtual_earnings=0,
                scores=DeepGradeScores(),
                failure_reason="Inappropriate language",
                inappropriate_language_detected=True,
                grading_note=INAPPROPRIATE_NOTE,
            )

        logger.info(f"Starting deep grade ({len(transcript)} lines)")
        response = self.llm.complete_json(
            self._build_prompt(transcript, duration_seconds),
            system=DEEP_GRADE_SYSTEM_PROMPT,
            schema=DeepGradeResponse,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        result = self._post_process(response, transcript)
        logger.info(f"Deep grade complete: sale_closed={result.sale_closed}, overall={result.overall_score}")
        return result
