"""Incident context and playbook matching.

Detectors produce an incident context (type, severity, confidence and
free-form details) for a target account. This module normalises that
context, derives the execution risk level from it, and selects the
playbooks whose detection rules match.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .conditions import evaluate
from .models import PlaybookType, RiskLevel
from .playbook import DetectionRule, PlaybookDefinition

logger = logging.getLogger(__name__)

# Confidence score thresholds used when a detector reports no severity
CONFIDENCE_THRESHOLDS = [
    (90, RiskLevel.CRITICAL),
    (70, RiskLevel.HIGH),
    (40, RiskLevel.MEDIUM),
]


@dataclass
class IncidentContext:
    """A detected incident against one target account.

    Attributes:
        incident_type: Classification of the incident
        target_id: Account the incident concerns
        severity: Severity reported by the detector
        confidence_score: Detector confidence, 0-100
        target_roles: Roles of the target account (used by exemptions)
        details: Detector-specific details (locations, counts, etc.)
        detected_at: When the incident was detected
        incident_id: Optional upstream incident reference
    """
    incident_type: PlaybookType
    target_id: str
    severity: Optional[RiskLevel] = None
    confidence_score: Optional[float] = None
    target_roles: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    incident_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.incident_type, str):
            self.incident_type = PlaybookType(self.incident_type)
        if self.severity is not None:
            self.severity = RiskLevel.parse(self.severity)

    @property
    def risk_level(self) -> RiskLevel:
        return derive_risk_level(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_type": self.incident_type.value,
            "target_id": self.target_id,
            "severity": self.severity.value if self.severity else None,
            "confidence_score": self.confidence_score,
            "target_roles": list(self.target_roles),
            "details": self.details,
            "detected_at": self.detected_at.isoformat(),
            "incident_id": self.incident_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncidentContext":
        detected_at = data.get("detected_at")
        if isinstance(detected_at, str):
            detected_at = datetime.fromisoformat(detected_at.replace("Z", "+00:00"))
        return cls(
            incident_type=data.get("incident_type", PlaybookType.CUSTOM.value),
            target_id=data.get("target_id", ""),
            severity=data.get("severity"),
            confidence_score=data.get("confidence_score"),
            target_roles=data.get("target_roles", []),
            details=data.get("details", {}),
            detected_at=detected_at or datetime.now(timezone.utc),
            incident_id=data.get("incident_id"),
        )


def derive_risk_level(incident: Dict[str, Any]) -> RiskLevel:
    """Derive the execution risk level from an incident context.

    The detector's severity wins when present. Otherwise the confidence
    score is bucketed; with neither, the risk is MEDIUM.
    """
    severity = incident.get("severity")
    if severity:
        try:
            return RiskLevel.parse(severity)
        except ValueError:
            logger.warning(f"Unknown incident severity {severity!r}, falling back to confidence")

    confidence = incident.get("confidence_score")
    if confidence is None:
        return RiskLevel.MEDIUM
    for threshold, level in CONFIDENCE_THRESHOLDS:
        if float(confidence) >= threshold:
            return level
    return RiskLevel.LOW


def rule_matches(rule: DetectionRule, incident: Dict[str, Any]) -> bool:
    """Check whether a detection rule selects an incident."""
    if not rule.enabled:
        return False
    if rule.rule_type.value != incident.get("incident_type"):
        return False
    return evaluate(rule.condition, {"incident": incident})


def match_playbooks(
    playbooks: List[PlaybookDefinition],
    incident: Dict[str, Any],
) -> List[PlaybookDefinition]:
    """Return executable playbooks matching an incident, highest severity first."""
    matches = [
        p for p in playbooks
        if p.can_execute() and any(rule_matches(r, incident) for r in p.rules)
    ]
    matches.sort(key=lambda p: p.severity.rank, reverse=True)
    return matches
