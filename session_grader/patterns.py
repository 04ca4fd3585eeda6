"""
Pattern engine for sales conversation utterances.

Classification is table driven: each category maps a subtype (pattern family)
to its severity and an ordered list of regular expressions. Families are
tried in table order and the first family with a matching expression wins;
categories are tried in CATEGORY_PRIORITY order. New verticals extend the
tables through PatternEngine.register() without touching the matching code.
"""

import re
import logging
from typing import Dict, List, Optional, Sequence, Any

from .schemas import PatternMatch, Utterance

logger = logging.getLogger(__name__)


CATEGORY_PRIORITY = ["objection", "close_attempt", "safety", "discovery", "rapport"]

OBJECTION_PATTERNS: Dict[str, Dict[str, Any]] = {
    "price": {
        "severity": "high",
        "suggested_approach": "Pivot to value, ROI, and payment options",
        "patterns": [
            r"too expensive", r"can'?t afford", r"cost(s)? too much", r"\bprice\b",
            r"\bmoney\b", r"cheaper", r"financial",
        ],
    },
    "timing": {
        "severity": "medium",
        "suggested_approach": "Create urgency and highlight immediate benefits",
        "patterns": [
            r"not (a good|the right) time", r"maybe later", r"think about it", r"not right now",
            r"\bbusy\b", r"come back", r"another time", r"let me think", r"need to think",
        ],
    },
    "trust": {
        "severity": "critical",
        "suggested_approach": "Build credibility with social proof and guarantees",
        "patterns": [
            r"don'?t trust", r"\bscam\b", r"legitimate", r"never heard of", r"references",
            r"\bproof\b", r"how do i know", r"sketchy", r"door to door",
        ],
    },
    "need": {
        "severity": "medium",
        "suggested_approach": "Discover hidden pain points and educate on risks",
        "patterns": [
            r"don'?t need", r"not interested", r"don'?t want", r"doing fine",
            r"already have", r"handle it myself",
        ],
    },
    "authority": {
        "severity": "medium",
        "suggested_approach": "Get commitment for follow-up or include decision maker",
        "requires_context": True,
        "patterns": [
            r"speak (to|with) my (spouse|husband|wife|partner)", r"not my decision",
            r"need to ask (my|the) (spouse|husband|wife|partner)", r"can'?t decide",
            r"talk it over (with|to)", r"need approval",
            r"have to (ask|check with|discuss with) (my|the) (spouse|husband|wife|partner)",
            r"(spouse|husband|wife|partner) (needs|has) to (decide|approve|agree)",
        ],
    },
    "comparison": {
        "severity": "low",
        "suggested_approach": "Highlight unique value propositions and create urgency",
        "patterns": [
            r"shop around", r"get other quotes", r"compare prices", r"what makes you different",
            r"why should i choose", r"competitors",
        ],
    },
    "skepticism": {
        "severity": "medium",
        "suggested_approach": "Share success stories and offer guarantees",
        "patterns": [
            r"does it really work", r"guarantee", r"what if it doesn'?t", r"seen this before",
            r"tired of", r"promises",
        ],
    },
    "existing_service": {
        "severity": "medium",
        "suggested_approach": "Discover contract end date and highlight switching benefits",
        "patterns": [
            r"already have someone", r"under contract", r"current provider", r"already use",
            r"have a guy", r"current company", r"already signed",
        ],
    },
    "no_problem": {
        "severity": "high",
        "suggested_approach": "Educate on hidden problems and preventive value",
        "patterns": [
            r"no bugs", r"haven'?t seen any", r"don'?t have pests", r"not a problem",
            r"no issues", r"no problems", r"haven'?t noticed", r"don'?t see any",
        ],
    },
    "contract_fear": {
        "severity": "medium",
        "suggested_approach": "Clarify flexible terms and cancellation policy",
        "patterns": [
            r"is this a contract", r"locked in", r"cancel anytime", r"commitment",
            r"contract term", r"long term", r"obligation",
        ],
    },
    "door_policy": {
        "severity": "critical",
        "suggested_approach": "Respect policy, offer alternative contact method",
        "patterns": [
            r"don'?t buy at the door", r"no solicit(ing|ation)", r"don'?t do business this way",
            r"never buy from", r"no door to door",
        ],
    },
    "brush_off": {
        "severity": "high",
        "suggested_approach": "Create urgency and get commitment for follow-up",
        "patterns": [
            r"i'?ll call you", r"leave a card", r"give me your number", r"reach out later",
            r"(call|contact) you later", r"get back to you", r"follow up later",
        ],
    },
    "bad_experience": {
        "severity": "high",
        "suggested_approach": "Acknowledge concern, differentiate your service",
        "patterns": [
            r"tried that before", r"didn'?t work", r"waste of money", r"last company",
            r"burned before", r"previous company", r"didn'?t help", r"wasn'?t worth it",
        ],
    },
    "renter_ownership": {
        "severity": "medium",
        "suggested_approach": "Offer to contact landlord or provide tenant-friendly solutions",
        "patterns": [
            r"\brenting\b", r"don'?t own", r"landlord", r"\btenant\b", r"not my house",
            r"\bapartment\b", r"\brental\b",
        ],
    },
    "just_moved": {
        "severity": "low",
        "suggested_approach": "Welcome them, offer new homeowner special",
        "patterns": [
            r"just moved", r"new to the area", r"just bought", r"settling in",
            r"recently moved", r"new homeowner", r"just purchased",
        ],
    },
}

CLOSE_PATTERNS: Dict[str, Dict[str, Any]] = {
    "hard": {
        "patterns": [
            r"let'?s get you (started|scheduled|set up)", r"i'?ll set you up", r"here'?s what we'?ll do",
            r"let'?s set (you )?up", r"ready to (start|begin)", r"so what i can do",
            r"here'?s what i propose", r"let me offer", r"i can offer",
            r"what('?s| is) your (name|phone|email|house number)", r"what('?s| is) .*address",
            r"credit or debit", r"are you using .*credit", r"payment method", r"how would you like to pay",
            r"anything else .*special notes",
        ],
    },
    "assumptive": {
        "patterns": [
            r"when we start", r"your first (treatment|service|visit)", r"once you'?re enrolled",
            r"after we begin", r"during your service", r"can you make sure .*dog", r"put your dog away",
            r"can you open the garage", r"gate .*unlocked", r"you'?re going to be here .*today",
            r"you'?ll be here .*right",
        ],
    },
    "urgency": {
        "patterns": [
            r"today only", r"limited time", r"special pricing", r"this week\b(?! or)", r"expires",
            r"last chance", r"while i'?m here", r"best time to (service|treat)", r"going to get worse",
            r"if i can get you done .*neighbor",
        ],
    },
    "soft": {
        "patterns": [
            r"would you like to", r"shall we", r"can we schedule", r"does .*sound good",
            r"how .*feel about", r"what do you think", r"would you be interested", r"if i could",
            r"when can we", r"would you prefer", r"which works better", r"this week or next",
            r"morning or (afternoon|evening)", r"front yard or back yard", r"which .*would you",
            r"give me a (shot|chance)", r"give me .*honest try", r"let me prove",
            r"your neighbor .*how does that sound",
        ],
    },
}

SAFETY_PATTERNS: Dict[str, Dict[str, Any]] = {
    "pets": {"patterns": [r"\bpets?\b", r"\bdogs?\b", r"\bcats?\b"]},
    "children": {"patterns": [r"\bchildren\b", r"\bkids?\b", r"\bbab(y|ies)\b", r"\binfants?\b", r"\btoddlers?\b"]},
}

DISCOVERY_PATTERNS: Dict[str, Dict[str, Any]] = {
    "pain": {
        "patterns": [
            r"have you noticed", r"what problems", r"what issues", r"what challenges",
            r"what'?s (been )?your experience", r"how often",
        ],
    },
    "situation": {
        "patterns": [r"tell me about", r"how long have you", r"what kind of", r"when did you last"],
    },
}

RAPPORT_PATTERNS: Dict[str, Dict[str, Any]] = {
    "empathy": {
        "patterns": [
            r"i understand", r"i hear you", r"i totally get it", r"that makes sense",
            r"same thing happened to me",
        ],
    },
    "affirmation": {"patterns": [r"that'?s great", r"\babsolutely\b", r"i appreciate"]},
}

AFFIRMATIVE_PATTERN = re.compile(
    r"\b(yes|yeah|yep|sure|okay|ok|alright|sounds good|let'?s do it|go ahead)\b", re.IGNORECASE
)

# Explicit decision language required before a family mention counts as an authority objection
_DECISION_LANGUAGE = re.compile(
    r"(need|have to|must|should|can'?t|won'?t|not my decision|speak to|ask|check|discuss|approval|permission|talk it over)",
    re.IGNORECASE,
)
_FAMILY_MENTION = re.compile(r"(wife|husband|spouse|partner|kids|children|dog|pet|family)", re.IGNORECASE)
_CASUAL_OPENER = re.compile(r"^(yeah|yes|yep|uh huh|mm|hmm|okay|sure|alright|well|so|and|or)\b", re.IGNORECASE)
_DISCOVERY_PROMPT = re.compile(r"(tell me|how|what|who|where|when|do you|have you|are you)", re.IGNORECASE)

# Finer labels for the most common objection families
_SUB_CATEGORY_RULES = {
    "price": [
        ("price_affordability", r"can'?t afford|can'?t pay|beyond .*budget|too much money|don'?t have .*money"),
        ("price_value_perception", r"worth it|value|expensive|too much|overpriced|rip off"),
    ],
    "timing": [
        ("timing_busy", r"busy|schedule|appointment|right now|today|this week"),
        ("timing_not_ready", r"not ready|think about|decide|consider|need time|think it over"),
    ],
    "trust": [
        ("trust_legitimacy", r"legitimate|real|scam|sketchy|door to door|never heard"),
        ("trust_references", r"references|proof|guarantee|how do i know|who else|customers"),
    ],
}
_SUB_CATEGORY_DEFAULTS = {"price": "price_affordability", "timing": "timing_not_ready", "trust": "trust_legitimacy"}


def _compile_table(table: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    compiled = {}
    for subtype, family in table.items():
        entry = dict(family)
        entry["compiled"] = [re.compile(p, re.IGNORECASE) for p in family["patterns"]]
        compiled[subtype] = entry
    return compiled


class PatternEngine:
    """Stateless, case-insensitive utterance classifier driven by pattern tables"""

    def __init__(self, tables: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        tables = tables or {
            "objection": OBJECTION_PATTERNS,
            "close_attempt": CLOSE_PATTERNS,
            "safety": SAFETY_PATTERNS,
            "discovery": DISCOVERY_PATTERNS,
            "rapport": RAPPORT_PATTERNS,
        }
        self.tables = {category: _compile_table(table) for category, table in tables.items()}

    def register(self, category: str, subtype: str, patterns: List[str],
                 severity: Optional[str] = None, suggested_approach: Optional[str] = None) -> None:
        """
        Add a pattern family, or extend an existing one

        Args:
            category: One of CATEGORY_PRIORITY
            subtype: Family name; new families are tried after existing ones
            patterns: Regular expressions (matched case-insensitively)
            severity: Severity for objection families
            suggested_approach: Coaching hint for objection families
        """
        if category not in CATEGORY_PRIORITY:
            raise ValueError(f"Unknown pattern category: {category}")
        table = self.tables.setdefault(category, {})
        family = table.setdefault(subtype, {"patterns": [], "compiled": []})
        family["patterns"] = family["patterns"] + list(patterns)
        family["compiled"] = family["compiled"] + [re.compile(p, re.IGNORECASE) for p in patterns]
        if severity:
            family["severity"] = severity
        if suggested_approach:
            family["suggested_approach"] = suggested_approach

    def _first_family(self, category: str, text: str, context: Optional[Sequence[Utterance]] = None) -> PatternMatch:
        for subtype, family in self.tables.get(category, {}).items():
            for pattern in family["compiled"]:
                if not pattern.search(text):
                    continue
                if family.get("requires_context") and not self._authority_in_context(text, context):
                    continue
                match = PatternMatch(category=category, subtype=subtype, pattern=pattern.pattern)
                if category == "objection":
                    match.severity = family.get("severity", "medium")
                    match.suggested_approach = family.get("suggested_approach")
                    match.sub_category = self.objection_sub_category(subtype, text)
                return match
        return PatternMatch()

    def _authority_in_context(self, text: str, context: Optional[Sequence[Utterance]]) -> bool:
        if not _DECISION_LANGUAGE.search(text):
            return False
        if context:
            previous = context[-1].text.strip()
            answering_discovery = previous.endswith("?") and _DISCOVERY_PROMPT.search(previous)
            if answering_discovery and _CASUAL_OPENER.search(text.strip()) and _FAMILY_MENTION.search(text):
                return False
        return True

    def _is_casual_family_mention(self, text: str, context: Optional[Sequence[Utterance]]) -> bool:
        if not _FAMILY_MENTION.search(text) or _DECISION_LANGUAGE.search(text):
            return False
        if _CASUAL_OPENER.search(text.strip()):
            return True
        if context:
            previous = context[-1].text.strip()
            return previous.endswith("?") and bool(_DISCOVERY_PROMPT.search(previous))
        return False

    def detect_objection(self, text: Optional[str], context: Optional[Sequence[Utterance]] = None) -> PatternMatch:
        if not text or not text.strip():
            return PatternMatch()
        if self._is_casual_family_mention(text, context):
            return PatternMatch()
        return self._first_family("objection", text, context)

    def detect_close(self, text: Optional[str]) -> PatternMatch:
        if not text or not text.strip():
            return PatternMatch()
        return self._first_family("close_attempt", text)

    def detect_safety(self, text: Optional[str]) -> PatternMatch:
        if not text or not text.strip():
            return PatternMatch()
        return self._first_family("safety", text)

    def objection_sub_category(self, subtype: str, text: str) -> Optional[str]:
        for label, pattern in _SUB_CATEGORY_RULES.get(subtype, []):
            if re.search(pattern, text, re.IGNORECASE):
                return label
        return _SUB_CATEGORY_DEFAULTS.get(subtype)

    def classify(self, utterance: Any, context: Optional[Sequence[Utterance]] = None) -> PatternMatch:
        """
        Classify one utterance into a single category

        Args:
            utterance: Utterance or raw text
            context: Utterances preceding this one (most recent last)

        Returns:
            PatternMatch; category 'none' when nothing matched
        """
        text = utterance.text if isinstance(utterance, Utterance) else utterance
        if not isinstance(text, str) or not text.strip():
            return PatternMatch()

        for category in CATEGORY_PRIORITY:
            if category == "objection":
                match = self.detect_objection(text, context)
            else:
                match = self._first_family(category, text, context)
            if match.matched:
                return match
        return PatternMatch()


def is_affirmative(text: Optional[str]) -> bool:
    return bool(text) and bool(AFFIRMATIVE_PATTERN.search(text))


def is_question(text: Optional[str]) -> bool:
    return bool(text) and "?" in text


_default_engine: Optional[PatternEngine] = None


def get_pattern_engine() -> PatternEngine:
    """Shared engine built from the default tables"""
    global _default_engine
    if _default_engine is None:
        _default_engine = PatternEngine()
    return _default_engine


def classify(utterance: Any, context: Optional[Sequence[Utterance]] = None) -> PatternMatch:
    return get_pattern_engine().classify(utterance, context)
