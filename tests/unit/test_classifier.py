"""
Unit tests for ClassificationEngine.

The engine must return a valid ClassificationResult for every input,
whatever the AI backend does.
"""

from unittest.mock import patch

import pytest

from conftest import AI_JSON, FakeClassificationProvider
from smartmail.core.circuit_breaker import CircuitBreaker, CircuitState
from smartmail.core.classifier import (
    ClassificationEngine,
    extract_json_payload,
    validate_analysis,
    validate_suggestions,
)
from smartmail.core.errors import ClassificationError
from smartmail.core.models import CATEGORIES, SENTIMENTS
from smartmail.core.rate_limiter import RateLimiter
from smartmail.utils.sanitize import is_valid_label

GARBAGE_RESPONSES = [
    "",
    "I cannot help with that.",
    "{broken json",
    "[1, 2, 3]",
    '{"category": 42}',
    '{"summary": "no category here"}',
    '```json\n{"category": "Spam", "sentiment": "furious", "suggestedLabel": "<script>alert(1)</script>!!"}\n```',
    '{"category": "Work", "sentiment": null, "suggestedLabel": "' + "x" * 200 + '"}',
    ClassificationError("timed out"),
    TimeoutError("socket timeout"),
    RuntimeError("unexpected"),
]


def assert_valid(result):
    assert result.category in CATEGORIES
    assert result.sentiment in SENTIMENTS
    assert is_valid_label(result.suggested_label)
    assert result.source in ("ai", "rules")


class TestExtractJsonPayload:
    """First balanced {...} region extraction."""

    def test_plain_object(self):
        assert extract_json_payload('{"a": 1}') == {"a": 1}

    def test_object_wrapped_in_prose(self):
        text = 'Sure! Here is the analysis:\n{"category": "Work"}\nHope that helps.'
        assert extract_json_payload(text) == {"category": "Work"}

    def test_code_fence(self):
        assert extract_json_payload('```json\n{"a": {"b": 2}}\n```') == {"a": {"b": 2}}

    def test_braces_inside_strings_ignored(self):
        text = '{"summary": "use {curly} braces \\" here", "n": 1} trailing }'
        assert extract_json_payload(text) == {"summary": 'use {curly} braces " here', "n": 1}

    def test_skips_undecodable_region(self):
        assert extract_json_payload('{oops} then {"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("text", [None, 42, "", "no braces", "{unterminated", "}{"])
    def test_returns_none(self, text):
        assert extract_json_payload(text) is None


class TestValidateAnalysis:
    """Boundary normalization of raw analysis dicts."""

    def test_valid_payload_kept(self):
        result = validate_analysis(
            {"category": "Finance/Billing", "sentiment": "Negative", "suggestedLabel": "Bills",
             "summary": "Electricity bill", "purpose": "Bill"},
            source="ai",
        )

        assert result.category == "Finance/Billing"
        assert result.sentiment == "negative"
        assert result.suggested_label == "Bills"
        assert result.source == "ai"

    def test_off_set_values_replaced(self):
        result = validate_analysis(
            {"category": "Finance", "sentiment": "meh", "suggestedLabel": "$$$"}, source="ai"
        )

        assert result.category == "Other"
        assert result.sentiment == "neutral"
        assert result.suggested_label == "General"
        assert result.summary == "No summary available"
        assert result.purpose == "Unknown purpose"

    def test_label_keeps_hierarchy_separator(self):
        result = validate_analysis({"category": "Work", "suggestedLabel": "Work/Project-X"}, "ai")

        assert result.suggested_label == "Work/ProjectX"


class TestClassificationEngine:
    """AI path, fallback path and the decision order between them."""

    def test_ai_result(self, engine, ai):
        result = engine.classify("Your statement", "alerts@chase.com", "Balance ready", "user1")

        assert result.source == "ai"
        assert result.category == "Finance/Banking"
        assert result.suggested_label == "Banking"
        assert len(ai.prompts) == 1

    @pytest.mark.parametrize("response", GARBAGE_RESPONSES)
    def test_garbage_never_breaks_classification(self, store, response):
        engine = ClassificationEngine(
            FakeClassificationProvider([response]),
            RateLimiter(store, {"max_calls": 100}),
        )

        result = engine.classify("Meeting tomorrow", "boss@corp.example", "Agenda attached", "user1")

        assert_valid(result)

    def test_off_set_category_from_ai_becomes_other(self, store):
        engine = ClassificationEngine(
            FakeClassificationProvider(['{"category": "Spam", "sentiment": "neutral"}']),
            RateLimiter(store, {"max_calls": 100}),
        )

        result = engine.classify("Hello", "a@b.example", "", "user1")

        assert result.source == "ai"
        assert result.category == "Other"

    def test_failed_ai_falls_back_to_rules(self, store):
        engine = ClassificationEngine(
            FakeClassificationProvider([ClassificationError("timeout")]),
            RateLimiter(store, {"max_calls": 100}),
        )

        result = engine.classify("Your order has shipped", "noreply@amazon.com", "", "user1")

        assert result.source == "rules"
        assert result.category == "Shopping"
        assert result.suggested_label == "Shopping"

    def test_disabled_ai_never_calls_provider(self, store, ai):
        engine = ClassificationEngine(ai, RateLimiter(store), ai_enabled=False)

        result = engine.classify("Project deadline", "pm@corp.example", "", "user1")

        assert result.source == "rules"
        assert result.category == "Work"
        assert ai.prompts == []

    def test_disabled_ai_is_checked_before_rate_limit(self, store, ai):
        limiter = RateLimiter(store, {"max_calls": 2, "window_seconds": 60})
        engine = ClassificationEngine(ai, limiter, ai_enabled=False)

        for _ in range(5):
            engine.classify("Project deadline", "pm@corp.example", "", "user1")

        # The full budget is still available
        assert limiter.allow("user1", "classify") is True
        assert limiter.allow("user1", "classify") is True
        assert limiter.allow("user1", "classify") is False

    def test_half_open_trial_reports_back_when_prompt_fails(self, store, ai):
        clock = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=lambda: clock[0])
        engine = ClassificationEngine(ai, RateLimiter(store, {"max_calls": 100}), circuit_breaker=breaker)
        breaker.record_failure("fake")
        clock[0] = 10.0

        with patch.object(engine.prompt_engine, "render_classify", side_effect=RuntimeError("bad template")):
            assert engine.classify("Hello", "a@b.example", "", "user1").source == "rules"

        clock[0] = 20.0
        assert engine.classify("Statement", "a@b.example", "", "user1").source == "ai"
        assert breaker.get_state("fake") == CircuitState.CLOSED

    def test_missing_provider_uses_rules(self, rules_engine_only):
        result = rules_engine_only.classify("Weekend trip", "friend@example.com", "", "user1")

        assert result.source == "rules"
        assert result.category == "Personal"

    def test_rate_limited_uses_rules(self, store, ai):
        engine = ClassificationEngine(ai, RateLimiter(store, {"max_calls": 1, "window_seconds": 60}))

        first = engine.classify("Statement", "a@b.example", "", "user1")
        second = engine.classify("Statement", "a@b.example", "", "user1")

        assert first.source == "ai"
        assert second.source == "rules"
        assert len(ai.prompts) == 1

    def test_open_circuit_skips_provider(self, store):
        provider = FakeClassificationProvider(
            [ClassificationError("down")] * 3, default=AI_JSON
        )
        engine = ClassificationEngine(
            provider,
            RateLimiter(store, {"max_calls": 100}),
            circuit_breaker=CircuitBreaker(failure_threshold=3, recovery_timeout=60),
        )

        results = [engine.classify("Hello", "a@b.example", "", "user1") for _ in range(4)]

        assert [r.source for r in results] == ["rules"] * 4
        assert len(provider.prompts) == 3

    def test_prompt_is_redacted(self, engine, ai):
        engine.classify(
            "Call me",
            "Alice Smith <alice.smith@bank.example>",
            "Reach me at 555-123-4567 or alice.smith@bank.example",
            "user1",
        )

        prompt = ai.prompts[0]
        assert "555-123-4567" not in prompt
        assert "alice.smith@" not in prompt
        assert "bank.example" in prompt
        assert "Finance/Investments" in prompt

    def test_none_inputs_are_handled(self, rules_engine_only):
        result = rules_engine_only.classify(None, None, None, "user1")

        assert_valid(result)
        assert result.summary == "No summary available"


class TestLabelOrganization:
    """organize_labels suggestions."""

    def test_valid_suggestions(self, store):
        provider = FakeClassificationProvider([
            '{"mergeSuggestions": [{"oldLabel": "Bills", "newLabel": "Billing", "reason": "dup"}],'
            ' "newLabels": "not a list"}'
        ])
        engine = ClassificationEngine(provider, RateLimiter(store))

        suggestions = engine.suggest_label_organization("user1", ["Bills", "Billing"], [("Work", 3)])

        assert suggestions["mergeSuggestions"][0]["newLabel"] == "Billing"
        assert suggestions["newLabels"] == []
        assert suggestions["hierarchySuggestions"] == []
        assert suggestions["renameSuggestions"] == []
        assert "Work: 3 emails" in provider.prompts[0]

    def test_failure_yields_empty_set(self, store):
        engine = ClassificationEngine(
            FakeClassificationProvider([ClassificationError("boom")]), RateLimiter(store)
        )

        suggestions = engine.suggest_label_organization("user1", [], [])

        assert all(value == [] for value in suggestions.values())

    def test_disabled_yields_empty_set(self, ai):
        engine = ClassificationEngine(ai, ai_enabled=False)

        assert engine.suggest_label_organization("user1", ["A"], []) == validate_suggestions(None)
        assert ai.prompts == []
