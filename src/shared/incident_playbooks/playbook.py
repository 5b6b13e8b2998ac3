"""Incident Playbook Definitions.

A playbook is the static, versioned description of how to respond to one
class of account-takeover incident: the detection rules that select it, the
remediation actions it runs (grouped into ordered stages), and the approval
gates that guard sensitive steps.

Key concepts:
- DetectionRule: Incident pattern that selects the playbook
- RetryPolicy: Bounded exponential backoff for one action
- ActionSpec: A single remediation action within a stage
- PlaybookDefinition: The complete versioned definition
- PlaybookMetrics: Running execution statistics for a playbook
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .conditions import Predicate, parse_predicate
from .models import ActionKind, PlaybookType, RiskLevel
from .policy import PolicyGateSpec


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


@dataclass
class RetryPolicy:
    """Retry configuration for an action.

    Attempt 1 runs immediately; attempt n (n >= 2) waits
    ``backoff_ms * backoff_multiplier ** (n - 2)`` first.

    Attributes:
        max_retries: Retries after the first attempt
        backoff_ms: Delay before the first retry
        backoff_multiplier: Growth factor between retries
    """
    max_retries: int = 3
    backoff_ms: int = 1000
    backoff_multiplier: float = 2.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_ms(self, attempt: int) -> int:
        """Backoff before the given 1-based attempt number."""
        if attempt <= 1:
            return 0
        return int(self.backoff_ms * (self.backoff_multiplier ** (attempt - 2)))

    def delays(self) -> List[int]:
        """All backoff delays the policy can produce, in order."""
        return [self.delay_ms(n) for n in range(2, self.max_attempts + 1)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff_ms": self.backoff_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            backoff_ms=int(data.get("backoff_ms", 1000)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
        )


@dataclass
class DetectionRule:
    """Incident pattern that selects a playbook.

    Attributes:
        id: Rule identifier
        rule_type: Incident type the rule matches
        condition: Optional predicate over the incident context
        time_window_ms: Detection window the producing detector used
        enabled: Whether the rule participates in matching
    """
    id: str
    rule_type: PlaybookType
    condition: Optional[Predicate] = None
    time_window_ms: int = 3600000
    enabled: bool = True

    def __post_init__(self):
        if isinstance(self.rule_type, str):
            self.rule_type = PlaybookType(self.rule_type)
        if self.condition is not None and not isinstance(self.condition, Predicate):
            self.condition = parse_predicate(self.condition)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "rule_type": self.rule_type.value,
            "time_window_ms": self.time_window_ms,
            "enabled": self.enabled,
        }
        if self.condition is not None:
            result["condition"] = self.condition.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionRule":
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            rule_type=data["rule_type"],
            condition=data.get("condition"),
            time_window_ms=data.get("time_window_ms", 3600000),
            enabled=data.get("enabled", True),
        )


@dataclass
class ActionSpec:
    """A single remediation action within a playbook stage.

    Attributes:
        id: Action identifier, unique within the playbook
        kind: Action kind; selects the registered handler
        stage: Stage number (1 = initial response)
        parameters: Opaque parameters passed to the handler, may contain
            Jinja2 expressions rendered against the incident
        requires_approval: Whether an approval gate must pass first
        approval_roles: Roles allowed to approve this action
        retry: Retry policy
        timeout_ms: Bound on each attempt
        compensating_action: Optional undo action, dispatched once if this
            action fails after exhausting retries
        compensation_mandatory: Halt the run if the compensation fails
        condition: Optional runtime predicate over the execution context
        description: Human-readable description
        enabled: Whether the action participates in runs
    """
    id: str
    kind: ActionKind
    stage: int = 1
    parameters: Dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    approval_roles: List[str] = field(default_factory=list)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_ms: int = 30000
    compensating_action: Optional["ActionSpec"] = None
    compensation_mandatory: bool = False
    condition: Optional[Predicate] = None
    description: str = ""
    enabled: bool = True

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = ActionKind(self.kind)
        if isinstance(self.retry, dict):
            self.retry = RetryPolicy.from_dict(self.retry)
        if self.condition is not None and not isinstance(self.condition, Predicate):
            self.condition = parse_predicate(self.condition)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "kind": self.kind.value,
            "stage": self.stage,
            "parameters": self.parameters,
            "requires_approval": self.requires_approval,
            "approval_roles": list(self.approval_roles),
            "retry": self.retry.to_dict(),
            "timeout_ms": self.timeout_ms,
            "enabled": self.enabled,
        }
        if self.compensating_action is not None:
            result["compensating_action"] = self.compensating_action.to_dict()
            result["compensation_mandatory"] = self.compensation_mandatory
        if self.condition is not None:
            result["condition"] = self.condition.to_dict()
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], stage: Optional[int] = None) -> "ActionSpec":
        """Create ActionSpec from dictionary.

        A compensating action inherits the primary's stage and gets an ID
        derived from it when none is given.
        """
        action_id = data.get("id") or str(uuid.uuid4())
        action_stage = int(data.get("stage", stage or 1))

        compensation = None
        compensation_data = data.get("compensating_action")
        if compensation_data:
            compensation_data = dict(compensation_data)
            compensation_data.setdefault("id", f"{action_id}__compensation")
            compensation_data.pop("compensating_action", None)
            compensation = cls.from_dict(compensation_data, stage=action_stage)

        return cls(
            id=action_id,
            kind=data["kind"],
            stage=action_stage,
            parameters=data.get("parameters", {}),
            requires_approval=data.get("requires_approval", False),
            approval_roles=data.get("approval_roles", []),
            retry=RetryPolicy.from_dict(data.get("retry")),
            timeout_ms=int(data.get("timeout_ms", 30000)),
            compensating_action=compensation,
            compensation_mandatory=data.get("compensation_mandatory", False),
            condition=data.get("condition"),
            description=data.get("description", ""),
            enabled=data.get("enabled", True),
        )


@dataclass
class PlaybookDefinition:
    """A complete, versioned playbook definition.

    Definitions are immutable once saved; editing produces a new version and
    an execution pins the version it was started with.

    Attributes:
        id: Playbook identifier
        name: Human-readable name
        playbook_type: Incident type the playbook responds to
        severity: Severity of the incidents it handles
        version: Monotonic version number
        rules: Detection rules
        actions: Staged remediation actions
        policy_gates: Approval gates carried by the playbook itself
        enabled: Whether the playbook may be started
        max_execution_time_ms: Hard ceiling for a run
        description: Detailed description
        tags: Tags for categorization
        created_by: Author
        created_at: When this version was created
    """
    id: str
    name: str
    playbook_type: PlaybookType
    severity: RiskLevel
    version: int = 1
    rules: List[DetectionRule] = field(default_factory=list)
    actions: List[ActionSpec] = field(default_factory=list)
    policy_gates: List[PolicyGateSpec] = field(default_factory=list)
    enabled: bool = True
    max_execution_time_ms: int = 300000
    description: str = ""
    tags: List[str] = field(default_factory=list)
    created_by: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if isinstance(self.playbook_type, str):
            self.playbook_type = PlaybookType(self.playbook_type)
        self.severity = RiskLevel.parse(self.severity)

    def can_execute(self) -> bool:
        """Check whether the playbook is enabled and has rules and actions."""
        return self.enabled and len(self.rules) > 0 and len(self.actions) > 0

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate playbook structure.

        Checks:
        - Playbook is enabled
        - At least one detection rule and one action exist
        - Action IDs are unique
        - Stages are positive integers
        - Retry and timeout values are sane
        - Compensating actions do not carry their own compensation

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []

        if not self.enabled:
            errors.append("Playbook is disabled")
        if not self.rules:
            errors.append("Playbook must have at least one detection rule")
        if not self.actions:
            errors.append("Playbook must have at least one action")

        action_ids = [a.id for a in self.actions]
        if len(action_ids) != len(set(action_ids)):
            errors.append("Action IDs must be unique")

        for action in self.actions:
            if action.stage < 1:
                errors.append(f"Action '{action.id}' has invalid stage {action.stage}")
            if action.retry.max_retries < 0 or action.retry.backoff_ms < 0:
                errors.append(f"Action '{action.id}' has invalid retry policy")
            if action.retry.backoff_multiplier < 1:
                errors.append(f"Action '{action.id}' backoff multiplier must be >= 1")
            if action.timeout_ms <= 0:
                errors.append(f"Action '{action.id}' timeout must be positive")
            comp = action.compensating_action
            if comp is not None and comp.compensating_action is not None:
                errors.append(f"Compensation for '{action.id}' cannot itself be compensated")

        return len(errors) == 0, errors

    def enabled_actions(self) -> List[ActionSpec]:
        return [a for a in self.actions if a.enabled]

    def actions_by_stage(self) -> Dict[int, List[ActionSpec]]:
        """Group enabled actions by stage, preserving definition order."""
        grouped: Dict[int, List[ActionSpec]] = {}
        for action in self.enabled_actions():
            grouped.setdefault(action.stage, []).append(action)
        return dict(sorted(grouped.items()))

    @property
    def max_stage(self) -> int:
        return max((a.stage for a in self.actions), default=0)

    def get_action(self, action_id: str) -> Optional[ActionSpec]:
        """Get an action (or a compensating action) by ID."""
        for action in self.actions:
            if action.id == action_id:
                return action
            comp = action.compensating_action
            if comp is not None and comp.id == action_id:
                return comp
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "playbook_type": self.playbook_type.value,
            "severity": self.severity.value,
            "version": self.version,
            "rules": [r.to_dict() for r in self.rules],
            "actions": [a.to_dict() for a in self.actions],
            "policy_gates": [g.to_dict() for g in self.policy_gates],
            "enabled": self.enabled,
            "max_execution_time_ms": self.max_execution_time_ms,
            "description": self.description,
            "tags": self.tags,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlaybookDefinition":
        """Create PlaybookDefinition from dictionary.

        Actions may be given flat (each with a ``stage``) or grouped under
        ``stages: {1: [...], 2: [...]}``.
        """
        actions = [ActionSpec.from_dict(a) for a in data.get("actions", [])]
        for stage, stage_actions in (data.get("stages") or {}).items():
            actions.extend(ActionSpec.from_dict(a, stage=int(stage)) for a in stage_actions)

        return cls(
            id=data.get("id", str(uuid.uuid4())),
            name=data.get("name", "Unnamed Playbook"),
            playbook_type=data.get("playbook_type", PlaybookType.CUSTOM.value),
            severity=data.get("severity", RiskLevel.MEDIUM.value),
            version=int(data.get("version", 1)),
            rules=[DetectionRule.from_dict(r) for r in data.get("rules", [])],
            actions=actions,
            policy_gates=[PolicyGateSpec.from_dict(g) for g in data.get("policy_gates", [])],
            enabled=data.get("enabled", True),
            max_execution_time_ms=int(data.get("max_execution_time_ms", 300000)),
            description=data.get("description", ""),
            tags=data.get("tags", []),
            created_by=data.get("created_by", ""),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "PlaybookDefinition":
        return cls.from_dict(yaml.safe_load(yaml_content))


@dataclass
class PlaybookMetrics:
    """Running execution statistics for a playbook.

    Average execution time is an exponential moving average.
    """
    playbook_id: str
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time_ms: float = 0.0
    last_executed_at: Optional[datetime] = None

    EMA_ALPHA = 0.3

    def record(self, success: bool, execution_time_ms: float, at: datetime) -> None:
        """Fold one finished execution into the statistics."""
        self.total_executions += 1
        if success:
            self.successful_executions += 1
        else:
            self.failed_executions += 1

        if self.total_executions == 1:
            self.average_execution_time_ms = float(execution_time_ms)
        else:
            self.average_execution_time_ms = (
                self.EMA_ALPHA * execution_time_ms
                + (1 - self.EMA_ALPHA) * self.average_execution_time_ms
            )
        self.last_executed_at = at

    @property
    def success_rate(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return round(self.successful_executions / self.total_executions * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook_id": self.playbook_id,
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "success_rate": self.success_rate,
            "average_execution_time_ms": self.average_execution_time_ms,
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
        }
