"""Unit tests for incident contexts and playbook matching.

Tests cover:
- Risk level derivation from severity and confidence
- IncidentContext parsing and serialization
- Detection rule matching and playbook ordering
"""

from datetime import datetime, timezone

import pytest

from src.shared.incident_playbooks.incident import (
    IncidentContext,
    derive_risk_level,
    match_playbooks,
    rule_matches,
)
from src.shared.incident_playbooks.models import PlaybookType, RiskLevel
from src.shared.incident_playbooks.playbook import DetectionRule

ACTIONS = [{"id": "revoke", "kind": "SELECTIVE_TOKEN_REVOKE"}]


class TestDeriveRiskLevel:
    """Tests for derive_risk_level."""

    def test_severity_wins(self):
        """Should use the detector's severity when present."""
        assert derive_risk_level({"severity": "low", "confidence_score": 99}) == RiskLevel.LOW

    @pytest.mark.parametrize("confidence,expected", [
        (95, RiskLevel.CRITICAL),
        (90, RiskLevel.CRITICAL),
        (75, RiskLevel.HIGH),
        (40, RiskLevel.MEDIUM),
        (12.5, RiskLevel.LOW),
    ])
    def test_confidence_buckets(self, confidence, expected):
        """Should bucket the confidence score when severity is missing."""
        assert derive_risk_level({"confidence_score": confidence}) == expected

    def test_unknown_severity_falls_back(self):
        """Should ignore an unrecognised severity."""
        assert derive_risk_level({"severity": "SEVERE", "confidence_score": 72}) == RiskLevel.HIGH

    def test_default_medium(self):
        """Should default to MEDIUM with neither severity nor confidence."""
        assert derive_risk_level({}) == RiskLevel.MEDIUM


class TestIncidentContext:
    """Tests for IncidentContext."""

    def test_from_dict(self, incident):
        """Should parse enums and keep details."""
        context = IncidentContext.from_dict({**incident, "detected_at": "2026-03-01T09:00:00Z"})

        assert context.incident_type == PlaybookType.SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL
        assert context.severity == RiskLevel.HIGH
        assert context.details["countries"] == ["US", "RU"]
        assert context.detected_at == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert context.risk_level == RiskLevel.HIGH

    def test_to_dict(self):
        """Should serialize enum values."""
        context = IncidentContext(
            incident_type="REPEATED_2FA_BYPASS",
            target_id="user-7",
            confidence_score=55,
        )
        data = context.to_dict()

        assert data["incident_type"] == "REPEATED_2FA_BYPASS"
        assert data["severity"] is None
        assert context.risk_level == RiskLevel.MEDIUM

    def test_unknown_type_defaults_to_custom(self):
        """Should treat a missing incident type as CUSTOM."""
        assert IncidentContext.from_dict({"target_id": "user-1"}).incident_type == PlaybookType.CUSTOM


class TestRuleMatching:
    """Tests for detection rule matching."""

    def test_rule_type_must_match(self, incident):
        """Should only match the rule's incident type."""
        rule = DetectionRule(id="r", rule_type=PlaybookType.REPEATED_2FA_BYPASS)
        assert rule_matches(rule, incident) is False

    def test_condition_over_incident(self, incident):
        """Should evaluate the rule condition against the incident."""
        matching = DetectionRule(
            id="r1",
            rule_type="SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL",
            condition="incident.details.countries contains RU",
        )
        missing = DetectionRule(
            id="r2",
            rule_type="SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL",
            condition="incident.confidence_score > 95",
        )
        assert rule_matches(matching, incident) is True
        assert rule_matches(missing, incident) is False

    def test_disabled_rule(self, incident):
        """Should ignore disabled rules."""
        rule = DetectionRule(id="r", rule_type="SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL", enabled=False)
        assert rule_matches(rule, incident) is False


class TestMatchPlaybooks:
    """Tests for match_playbooks."""

    def test_orders_by_severity(self, incident, make_playbook):
        """Should return matches with the most severe playbook first."""
        medium = make_playbook(ACTIONS, id="pb-medium", severity="MEDIUM")
        critical = make_playbook(ACTIONS, id="pb-critical", severity="CRITICAL")
        other = make_playbook(
            ACTIONS,
            id="pb-2fa",
            rules=[{"id": "r", "rule_type": "REPEATED_2FA_BYPASS"}],
        )

        matches = match_playbooks([medium, other, critical], incident)

        assert [p.id for p in matches] == ["pb-critical", "pb-medium"]

    def test_skips_playbooks_that_cannot_run(self, incident, make_playbook):
        """Should skip disabled playbooks and playbooks without actions."""
        disabled = make_playbook(ACTIONS, id="pb-off", enabled=False)
        empty = make_playbook([], id="pb-empty")

        assert match_playbooks([disabled, empty], incident) == []
