"""Tests for condition evaluation and template substitution."""

import pytest

from services.execution.conditions import evaluate_condition, get_nested_value
from services.execution.templates import resolve_template

LEAD = {
    "firstName": "Ada",
    "status": "active",
    "optedOut": False,
    "score": 42,
    "metadata": {"campaign": "spring-roofing", "tags": ["hot", "roof"]},
    "city": None,
}


class TestNestedValue:
    def test_dot_path(self):
        assert get_nested_value(LEAD, "metadata.campaign") == "spring-roofing"
        assert get_nested_value(LEAD, "metadata.tags.1") == "roof"

    def test_missing_paths_are_none(self):
        assert get_nested_value(LEAD, "metadata.missing") is None
        assert get_nested_value(LEAD, "status.length") is None
        assert get_nested_value(LEAD, "metadata.tags.9") is None
        assert get_nested_value({}, "status") is None


class TestEvaluateCondition:
    def test_status_equals_active(self):
        assert evaluate_condition("status", "equals", "active", LEAD) is True
        assert evaluate_condition("status", "equals", "active", {**LEAD, "status": "paused"}) is False

    def test_exists_on_undefined_is_false(self):
        lead = {k: v for k, v in LEAD.items() if k != "status"}

        assert evaluate_condition("status", "exists", None, lead) is False
        assert evaluate_condition("status", "not_exists", None, lead) is True

    def test_null_value_does_not_exist(self):
        assert evaluate_condition("city", "exists", None, LEAD) is False

    def test_equals_compares_as_text(self):
        assert evaluate_condition("score", "equals", "42", LEAD) is True
        assert evaluate_condition("optedOut", "equals", "false", LEAD) is True
        assert evaluate_condition("score", "not_equals", "41", LEAD) is True

    def test_missing_value_never_equals(self):
        assert evaluate_condition("city", "equals", "None", LEAD) is False
        assert evaluate_condition("city", "not_equals", "Austin", LEAD) is True

    def test_contains(self):
        assert evaluate_condition("metadata.campaign", "contains", "roof", LEAD) is True
        assert evaluate_condition("metadata.campaign", "not_contains", "solar", LEAD) is True

    def test_missing_value_does_not_contain(self):
        assert evaluate_condition("city", "contains", "", LEAD) is False
        assert evaluate_condition("city", "not_contains", "Austin", LEAD) is True

    def test_lead_prefix_is_ignored(self):
        assert evaluate_condition("lead.metadata.campaign", "equals", "spring-roofing", LEAD) is True

    def test_unknown_operator_is_false(self):
        assert evaluate_condition("status", "greater_than", "a", LEAD) is False


class TestResolveTemplate:
    def test_substitutes_placeholders(self):
        text = resolve_template("Hi {{lead.firstName}}, about {{lead.metadata.campaign}}", LEAD)

        assert text == "Hi Ada, about spring-roofing"

    @pytest.mark.parametrize("template", [
        "Hi {{lead.lastName}}",
        "See you in {{lead.city}}",
        "Tag {{lead.metadata.unknown.deep}}",
    ])
    def test_unresolved_placeholders_left_verbatim(self, template):
        assert resolve_template(template, LEAD) == template

    def test_non_lead_placeholders_untouched(self):
        assert resolve_template("{{org.name}} says hi", LEAD) == "{{org.name}} says hi"

    def test_non_string_values_rendered(self):
        assert resolve_template("Score {{lead.score}}, opted out {{lead.optedOut}}", LEAD) == \
            "Score 42, opted out false"
