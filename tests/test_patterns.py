import pytest

from session_grader.patterns import PatternEngine, classify, is_affirmative, is_question
from session_grader.schemas import Utterance


class TestPatternEngine:
    def setup_method(self):
        self.engine = PatternEngine()

    def test_price_objection(self):
        match = self.engine.classify("that's too expensive for us")

        assert match.category == "objection"
        assert match.severity == "high"
        assert match.subtype == "price"
        assert match.sub_category == "price_value_perception"
        assert match.suggested_approach

    def test_objection_beats_close_attempt(self):
        match = self.engine.classify("It's too expensive, would you like to start next month instead?")

        assert match.category == "objection"
        assert match.subtype == "price"

    def test_close_attempt_subtypes(self):
        assert self.engine.classify("Let's get you scheduled for Tuesday").subtype == "hard"
        assert self.engine.classify("Would you like to try the quarterly plan?").subtype == "soft"
        assert self.engine.classify("This is special pricing for the neighborhood").subtype == "urgency"

    def test_safety_mention(self):
        match = self.engine.classify("Is the treatment safe for my kids?")

        assert match.category == "safety"
        assert match.subtype == "children"

    def test_discovery_and_rapport(self):
        assert self.engine.classify("Have you noticed ants in the kitchen?").category == "discovery"
        assert self.engine.classify("I understand completely.").category == "rapport"

    def test_no_match(self):
        match = self.engine.classify("The weather is nice.")

        assert match.category == "none"
        assert not match.matched

    def test_empty_input_is_none(self):
        assert self.engine.classify("").category == "none"
        assert self.engine.classify(None).category == "none"
        assert self.engine.classify(Utterance(speaker="rep", text="   ")).category == "none"

    def test_authority_objection_with_decision_language(self):
        match = self.engine.classify("I need to speak with my wife before we sign anything")

        assert match.category == "objection"
        assert match.subtype == "authority"
        assert match.severity == "medium"

    def test_casual_family_mention_after_discovery_question(self):
        context = [Utterance(speaker="rep", text="Do you have any pets at home?")]
        match = self.engine.detect_objection("Yeah, my wife has a dog", context)

        assert not match.matched

    def test_register_new_family(self):
        self.engine.register("objection", "hoa", [r"\bhoa\b"], severity="low",
                             suggested_approach="Offer to send HOA-approved documentation")

        match = self.engine.classify("The HOA handles all of that")

        assert match.category == "objection"
        assert match.subtype == "hoa"
        assert match.severity == "low"

    def test_register_does_not_touch_default_engine(self):
        self.engine.register("objection", "hoa", [r"\bhoa\b"])

        assert classify("The HOA handles all of that").category == "none"

    def test_register_unknown_category(self):
        with pytest.raises(ValueError):
            self.engine.register("greeting", "hello", [r"hello"])

    def test_classification_is_case_insensitive(self):
        assert self.engine.classify("TOO EXPENSIVE").subtype == "price"


class TestHelpers:
    def test_is_affirmative(self):
        assert is_affirmative("Yeah, sounds good")
        assert is_affirmative("OK let's do it")
        assert not is_affirmative("No thanks")
        assert not is_affirmative(None)

    def test_is_question(self):
        assert is_question("How long have you lived here?")
        assert not is_question("We treat the perimeter.")
