"""Unit tests for runtime condition predicates.

Tests cover:
- Dotted path resolution
- Comparison operators
- Logical combinators
- String condition parsing
- Context isolation during evaluation
"""

import pytest

from src.shared.incident_playbooks.conditions import (
    MISSING,
    AllOf,
    Comparison,
    evaluate,
    parse_predicate,
    resolve_path,
)
from src.shared.incident_playbooks.errors import ConditionError
from src.shared.incident_playbooks.models import RiskLevel


@pytest.fixture
def context():
    return {
        "incident": {
            "severity": "HIGH",
            "confidence_score": 85,
            "details": {"countries": ["US", "RU"], "source_ip": "203.0.113.7"},
        },
        "risk_level": RiskLevel.HIGH,
        "actions": {"revoke": {"status": "SUCCESS", "result": {"revoked": 2}}},
    }


class TestResolvePath:
    """Tests for dotted path resolution."""

    def test_resolves_nested_mapping(self, context):
        """Should walk nested dictionaries."""
        assert resolve_path(context, "incident.details.source_ip") == "203.0.113.7"

    def test_resolves_sequence_index(self, context):
        """Should index into lists with numeric segments."""
        assert resolve_path(context, "incident.details.countries.1") == "RU"

    def test_missing_segment(self, context):
        """Should return MISSING for unknown paths."""
        assert resolve_path(context, "incident.details.device") is MISSING
        assert resolve_path(context, "incident.details.countries.5") is MISSING

    def test_enum_values_are_unwrapped(self, context):
        """Should compare enums by value."""
        assert resolve_path(context, "risk_level") == "HIGH"


class TestComparison:
    """Tests for single comparisons."""

    @pytest.mark.parametrize("op,value,expected", [
        ("eq", 85, True),
        ("ne", 85, False),
        ("gt", 80, True),
        ("gte", 85, True),
        ("lt", 80, False),
        ("lte", 90, True),
    ])
    def test_numeric_operators(self, context, op, value, expected):
        """Should apply numeric comparisons."""
        assert Comparison("incident.confidence_score", op, value).evaluate(context) is expected

    def test_membership(self, context):
        """Should support in and not_in."""
        assert Comparison("incident.severity", "in", ["HIGH", "CRITICAL"]).evaluate(context)
        assert not Comparison("incident.severity", "not_in", ["HIGH"]).evaluate(context)

    def test_contains_on_list_and_string(self, context):
        """Should check containment in lists and substrings."""
        assert Comparison("incident.details.countries", "contains", "RU").evaluate(context)
        assert Comparison("incident.details.source_ip", "contains", "203.0").evaluate(context)

    def test_glob(self, context):
        """Should match glob patterns case-insensitively."""
        assert Comparison("incident.details.source_ip", "glob", "203.0.113.*").evaluate(context)

    def test_exists(self, context):
        """Should test for presence."""
        assert Comparison("actions.revoke.result", "exists").evaluate(context)
        assert not Comparison("actions.lock.result", "exists").evaluate(context)
        assert Comparison("actions.lock", "exists", False).evaluate(context)

    def test_missing_field_is_false(self, context):
        """Should be false rather than raising for unknown fields."""
        assert not Comparison("incident.unknown", "eq", None).evaluate(context)

    def test_incomparable_types_are_false(self, context):
        """Should be false when values cannot be ordered."""
        assert not Comparison("incident.severity", "gt", 3).evaluate(context)

    def test_unknown_operator(self):
        """Should reject unknown operators."""
        with pytest.raises(ConditionError):
            Comparison("incident.severity", "matches", "x")


class TestParsePredicate:
    """Tests for building predicates from YAML-style data."""

    def test_none_and_booleans(self, context):
        """Should treat None/True as always and False as never."""
        assert parse_predicate(None).evaluate(context)
        assert parse_predicate(True).evaluate(context)
        assert not parse_predicate(False).evaluate(context)

    def test_string_condition(self, context):
        """Should parse comparison strings with typed right-hand sides."""
        assert parse_predicate("incident.confidence_score >= 80").evaluate(context)
        assert parse_predicate("incident.severity == HIGH").evaluate(context)
        assert not parse_predicate("actions.revoke.status != SUCCESS").evaluate(context)

    def test_string_condition_with_list(self, context):
        """Should parse YAML lists for membership tests."""
        predicate = parse_predicate("incident.severity in [HIGH, CRITICAL]")
        assert predicate.evaluate(context)

    def test_unparseable_string(self):
        """Should raise ConditionError for free-form expressions."""
        with pytest.raises(ConditionError):
            parse_predicate("__import__('os').system('id')")

    def test_nested_combinators(self, context):
        """Should build all/any/not trees."""
        predicate = parse_predicate({
            "all": [
                {"field": "incident.confidence_score", "op": "gte", "value": 80},
                {"any": [
                    "incident.severity == CRITICAL",
                    {"field": "incident.details.countries", "op": "contains", "value": "RU"},
                ]},
                {"not": "actions.revoke.status == FAILED"},
            ]
        })
        assert isinstance(predicate, AllOf)
        assert predicate.evaluate(context)

    def test_round_trip_through_dict(self, context):
        """Should rebuild an equivalent predicate from to_dict output."""
        original = parse_predicate({"any": ["incident.severity == LOW", "incident.confidence_score > 50"]})
        rebuilt = parse_predicate(original.to_dict())
        assert rebuilt.evaluate(context) == original.evaluate(context)

    def test_unrecognised_structure(self):
        """Should reject dictionaries that are not predicates."""
        with pytest.raises(ConditionError):
            parse_predicate({"severity": "HIGH"})


class TestEvaluate:
    """Tests for the evaluate entry point."""

    def test_missing_condition_is_true(self, context):
        """Should run actions without a condition."""
        assert evaluate(None, context)

    def test_context_is_not_modified(self, context):
        """Should evaluate against a read-only view of the context."""
        before = repr(context)
        evaluate(parse_predicate({"field": "incident.severity", "op": "eq", "value": "HIGH"}), context)
        assert repr(context) == before
