"""Exception types raised by the grading pipeline."""


class GradingError(Exception):
    """Base class for grading pipeline errors"""


class TranscriptError(GradingError):
    """Transcript or session input is missing or malformed"""


class SessionNotFoundError(GradingError):
    """No grading state exists for the requested session"""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class LLMError(GradingError):
    """LLM provider call failed after the retry budget was spent"""


class LLMResponseError(LLMError):
    """LLM answered, but the content was empty, not JSON, or off-contract"""

    def __init__(self, message: str, content: str = None):
        super().__init__(message)
        self.content = content
