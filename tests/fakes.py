"""Test doubles for the LLM clients and helpers for building transcripts."""

from types import SimpleNamespace


class FakeLLM:
    """
    Stands in for LLMClient

    Each call consumes the next scripted response; the last one repeats.
    A scripted Exception instance is raised instead of returned.
    """

    def __init__(self, responses=None, model="fake-model"):
        self.responses = list(responses or [{}])
        self.model = model
        self.call_count = 0
        self.prompts = []

    def complete_json(self, prompt, system=None, schema=None, **kwargs):
        self.call_count += 1
        self.prompts.append(prompt)
        payload = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(payload, Exception):
            raise payload
        return schema.model_validate(payload) if schema is not None else payload

    async def acomplete_json(self, *args, **kwargs):
        return self.complete_json(*args, **kwargs)


class FakeOpenAI:
    """Minimal chat.completions.create double returning canned message content"""

    def __init__(self, contents):
        self.contents = list(contents)
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **params):
        self.requests.append(params)
        content = self.contents.pop(0) if len(self.contents) > 1 else self.contents[0]
        if isinstance(content, Exception):
            raise content
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def conversation(rep_lines, customer_reply="Okay."):
    """Alternate each rep line with a short customer reply"""
    records = []
    for text in rep_lines:
        records.append({"speaker": "rep", "text": text})
        records.append({"speaker": "customer", "text": customer_reply})
    return records


def plain_rep_lines(count):
    return [f"Plain remark number {n}." for n in range(count)]


GOOD_RATING = {"rating": "good", "alternatives": ["Try this.", "Or this."], "reason": "Clear"}

CLOSED_DEEP_GRADE = {
    "sale_closed": True,
    "virtual_earnings": 1200,
    "deal_details": {"product_sold": "Quarterly pest service", "base_price": 99, "add_ons": "Mosquito"},
    "failure_reason": None,
    "finalScores": {"overall": 62, "rapport": 75, "discovery": 70, "objectionHandling": 68, "closing": 55},
    "top_strengths": ["Built rapport quickly"],
    "top_improvements": [{"area": "Discovery", "tip": "Ask about past treatments"}],
    "session_highlight": "Customer scheduled the first visit",
    "key_moments": [{"time": "00:30", "type": "close", "description": "Asked for the sale", "transcript": ""}],
}

NOT_CLOSED_DEEP_GRADE = {
    "sale_closed": False,
    "virtual_earnings": 500,
    "deal_details": {"product_sold": "Should be dropped"},
    "finalScores": {"overall": 41, "rapport": 60, "discovery": 35, "objectionHandling": 40, "closing": 20},
    "top_strengths": [],
    "top_improvements": ["Ask for the close"],
    "key_moments": [],
}
