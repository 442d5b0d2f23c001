"""Unit tests for intent building and signal extraction."""

import pytest

from aif_governance.common.exceptions import ValidationError
from aif_governance.governance.intent import (
    KeywordSignalExtractor,
    PartialIntent,
    build_intent,
    complete_intent,
)
from aif_governance.governance.schemas import DataSensitivity, Intent


class ExplodingExtractor:
    def infer(self, text):
        raise RuntimeError("model unavailable")


class FixedExtractor:
    def __init__(self, partial):
        self.partial = partial
        self.calls = 0

    def infer(self, text):
        self.calls += 1
        return self.partial


class TestKeywordSignalExtractor:
    """Test the keyword heuristics."""

    def test_write_and_pii_terms(self):
        partial = KeywordSignalExtractor().infer(
            "Update claim records in Salesforce for benefit requests"
        )
        assert partial.actions == ["update_record"]
        assert partial.systems == ["salesforce"]
        assert partial.data_sensitivity == DataSensitivity.PII
        assert partial.cross_border is None

    def test_hr_systems_override_write_target(self):
        partial = KeywordSignalExtractor().infer("Create onboarding tasks for each new employee")
        assert partial.actions == ["update_record"]
        assert partial.systems == ["workday"]

    def test_cross_border_terms(self):
        partial = KeywordSignalExtractor().infer("Summarize tickets for the international team")
        assert partial.cross_border is True
        assert partial.actions is None

    def test_no_signals(self):
        assert KeywordSignalExtractor().infer("Answer questions from the handbook") == PartialIntent()


class TestBuildIntent:
    """Test intent normalization and defaults."""

    def test_defaults_when_nothing_given(self):
        intent = build_intent()
        assert intent.actions == frozenset({"retrieve"})
        assert intent.systems == frozenset({"kb"})
        assert intent.data_sensitivity == DataSensitivity.INTERNAL
        assert intent.cross_border is False

    def test_empty_problem_statement_uses_defaults(self):
        assert build_intent(problem_statement="   ") == build_intent()

    def test_problem_statement_is_used_without_actions(self):
        intent = build_intent(problem_statement="Update claim records for benefit requests")
        assert intent.actions == frozenset({"update_record"})
        assert intent.data_sensitivity == DataSensitivity.PII

    def test_explicit_fields_win(self):
        extractor = FixedExtractor(PartialIntent(
            systems=["workday"],
            data_sensitivity=DataSensitivity.PII,
            cross_border=True,
        ))
        intent = build_intent(
            systems=["kb"],
            data_sensitivity="public",
            cross_border=False,
            problem_statement="anything",
            extractor=extractor,
        )
        assert extractor.calls == 1
        assert intent.systems == frozenset({"kb"})
        assert intent.data_sensitivity == DataSensitivity.PUBLIC
        assert intent.cross_border is False

    def test_extractor_skipped_when_actions_given(self):
        extractor = FixedExtractor(PartialIntent(actions=["delete_record"]))
        intent = build_intent(actions=["search"], problem_statement="delete it", extractor=extractor)
        assert extractor.calls == 0
        assert intent.actions == frozenset({"search"})

    def test_failing_extractor_falls_back_to_conservative_intent(self):
        intent = build_intent(problem_statement="something", extractor=ExplodingExtractor())
        assert intent.data_sensitivity == DataSensitivity.PII
        assert intent.cross_border is True

    def test_unknown_sensitivity(self):
        with pytest.raises(ValidationError) as exc_info:
            build_intent(data_sensitivity="TOP_SECRET")
        assert "PII" in exc_info.value.details["allowed"]

    def test_blank_names_dropped(self):
        intent = build_intent(actions=["", " Search "], systems=[" "])
        assert intent.actions == frozenset({"search"})
        assert intent.systems == frozenset({"kb"})


class TestCompleteIntent:
    """Test completion of partially specified intents."""

    def test_intent_with_actions_is_returned_as_is(self):
        intent = Intent(actions=["retrieve"], data_sensitivity=DataSensitivity.CONFIDENTIAL)
        assert complete_intent(intent, "delete every record") is intent

    def test_intent_without_actions_is_completed(self):
        intent = Intent(systems=["servicenow"])
        completed = complete_intent(intent, "create a ticket and update it")
        assert completed.actions == frozenset({"update_record"})
        assert completed.systems == frozenset({"servicenow"})

    def test_nothing_given(self):
        assert complete_intent(None, None) == build_intent()
