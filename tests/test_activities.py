"""
Tests for producer helpers.
"""

import pytest

from cmi5_core.activities import make_activity_id, activity_object, quiz_answer
from cmi5_core.constants import INTERACTION_TYPE, PAGE_TYPE
from cmi5_core.errors import InvalidInteractionError

BASE = "https://example.com/course/"
CHOICES = {"a": "Phishing", "b": "Spam", "c": "Malware"}


class TestActivityIds:

    def test_segments_are_slugged(self):
        assert make_activity_id(BASE, "Module 1", "Intro & Setup") == \
            "https://example.com/course/Module-1/Intro--Setup"

    def test_base_only(self):
        assert make_activity_id(BASE) == "https://example.com/course"

    def test_activity_object(self):
        obj = activity_object(BASE, "overview", "Overview")
        assert obj["id"] == "https://example.com/course/overview"
        assert obj["definition"]["type"] == PAGE_TYPE
        assert obj["definition"]["name"] == {"en-US": "Overview"}


class TestQuizAnswer:

    def test_correct_single_choice(self):
        obj, result = quiz_answer(BASE, "q1", "Which is a social attack?", CHOICES, "a", "a")
        assert obj["id"] == "https://example.com/course/interactions/q1"
        assert obj["definition"]["type"] == INTERACTION_TYPE
        assert obj["definition"]["interactionType"] == "choice"
        assert [c["id"] for c in obj["definition"]["choices"]] == ["a", "b", "c"]
        assert obj["definition"]["correctResponsesPattern"] == ["a"]
        assert result == {"success": True, "response": "a"}

    def test_multi_select_order_does_not_matter(self):
        _, result = quiz_answer(BASE, "q2", "Pick two", CHOICES, ["b", "a"], ["a", "b"])
        assert result["success"] is True
        assert result["response"] == "b[,]a"

    def test_wrong_answer_with_extensions(self):
        _, result = quiz_answer(BASE, "q3", "?", CHOICES, "c", "a",
                                extensions={"https://example.com/ext/attempt": 2})
        assert result["success"] is False
        assert result["extensions"] == {"https://example.com/ext/attempt": 2}

    @pytest.mark.parametrize("selected, correct", [
        (None, "a"),
        ("", "a"),
        ([], "a"),
        ("z", "a"),
        ("a", None),
    ])
    def test_malformed_input_is_rejected(self, selected, correct):
        with pytest.raises(InvalidInteractionError):
            quiz_answer(BASE, "q4", "?", CHOICES, selected, correct)

    def test_rejection_is_a_value_error(self):
        """submit() callers catching ValueError also catch bad interactions."""
        with pytest.raises(ValueError):
            quiz_answer(BASE, "q5", "?", CHOICES, None, "a")


class TestPackageExports:

    def test_helpers_are_importable_from_the_package(self):
        import cmi5_core
        assert cmi5_core.make_activity_id is make_activity_id
        assert cmi5_core.activity_object is activity_object
        assert cmi5_core.quiz_answer is quiz_answer
        assert {"make_activity_id", "activity_object", "quiz_answer"} <= set(cmi5_core.__all__)
