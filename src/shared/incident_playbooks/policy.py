"""Approval policies and gate specifications.

An ApprovalPolicy selects the executions it governs by scope and carries one
or more PolicyGateSpecs. Each gate describes who may approve an action, how
many approvals are needed, how long to wait before escalating, and what to
do when no decision can be reached.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml

from .conditions import Predicate, evaluate, parse_predicate
from .models import ActionKind, FallbackBehavior, PolicyScope, RiskLevel


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


@dataclass
class ApproverRole:
    """A role whose members may approve, with alternates.

    Attributes:
        role: Role name resolved through the approver directory
        user_ids: Explicit members, used before the directory lookup
        fallback_users: Alternates used when the role resolves to nobody
        priority: Lower values are resolved first
    """
    role: str
    user_ids: List[str] = field(default_factory=list)
    fallback_users: List[str] = field(default_factory=list)
    priority: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "user_ids": list(self.user_ids),
            "fallback_users": list(self.fallback_users),
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ApproverRole":
        if isinstance(data, str):
            return cls(role=data)
        return cls(
            role=data["role"],
            user_ids=data.get("user_ids", []),
            fallback_users=data.get("fallback_users", []),
            priority=data.get("priority", 0),
        )


@dataclass
class EscalationStep:
    """One level of an escalation chain.

    Attributes:
        delay_ms: How long this level waits for a decision
        escalate_to: Roles or user IDs added as approvers at this level
    """
    delay_ms: int
    escalate_to: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"delay_ms": self.delay_ms, "escalate_to": list(self.escalate_to)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscalationStep":
        escalate_to = data.get("escalate_to", [])
        if isinstance(escalate_to, str):
            escalate_to = [escalate_to]
        return cls(delay_ms=int(data.get("delay_ms", 0)), escalate_to=escalate_to)


@dataclass
class Exemption:
    """Targets that bypass a gate.

    Attributes:
        user_ids: Exempt target account IDs
        roles: Exempt target roles (matched against the incident's roles)
        valid_until: Optional expiry of the exemption
        reason: Why the exemption exists
    """
    user_ids: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    valid_until: Optional[datetime] = None
    reason: str = ""

    def applies(self, target_id: str, target_roles: List[str], now: datetime) -> bool:
        """Check whether this exemption covers the target at ``now``."""
        if self.valid_until is not None and now > self.valid_until:
            return False
        if target_id in self.user_ids:
            return True
        return any(role in self.roles for role in target_roles)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_ids": list(self.user_ids),
            "roles": list(self.roles),
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Exemption":
        return cls(
            user_ids=data.get("user_ids", []),
            roles=data.get("roles", []),
            valid_until=_parse_datetime(data.get("valid_until")),
            reason=data.get("reason", ""),
        )


@dataclass
class PolicyGateSpec:
    """An approval checkpoint.

    A gate triggers when every configured trigger matches: the execution's
    risk level is in ``risk_levels``, the action kind is in ``action_kinds``,
    and ``condition`` holds. Empty triggers match everything.

    Attributes:
        name: Gate name
        required_approvers: Distinct APPROVE votes needed
        approver_roles: Roles that may vote
        approval_timeout_ms: Wait before the first escalation
        escalation_path: Ordered escalation levels
        auto_approval: Predicate that passes the gate without a vote
        exemptions: Targets that bypass the gate
        fallback_behavior: Outcome on evaluator error or final timeout
        risk_levels: Risk-level trigger
        action_kinds: Action-kind trigger
        condition: Custom trigger predicate
    """
    name: str
    required_approvers: int = 1
    approver_roles: List[ApproverRole] = field(default_factory=list)
    approval_timeout_ms: int = 3600000
    escalation_path: List[EscalationStep] = field(default_factory=list)
    auto_approval: Optional[Predicate] = None
    exemptions: List[Exemption] = field(default_factory=list)
    fallback_behavior: FallbackBehavior = FallbackBehavior.DENY_ACTION
    risk_levels: List[RiskLevel] = field(default_factory=list)
    action_kinds: List[ActionKind] = field(default_factory=list)
    condition: Optional[Predicate] = None

    def __post_init__(self):
        if isinstance(self.fallback_behavior, str):
            self.fallback_behavior = FallbackBehavior(self.fallback_behavior)
        self.risk_levels = [RiskLevel.parse(r) for r in self.risk_levels]
        self.action_kinds = [ActionKind(k) if isinstance(k, str) else k for k in self.action_kinds]
        if self.auto_approval is not None and not isinstance(self.auto_approval, Predicate):
            self.auto_approval = parse_predicate(self.auto_approval)
        if self.condition is not None and not isinstance(self.condition, Predicate):
            self.condition = parse_predicate(self.condition)

    def triggers(self, risk_level: RiskLevel, action_kind: ActionKind, context: Dict[str, Any]) -> bool:
        """Check whether the gate applies to an action."""
        if self.risk_levels and risk_level not in self.risk_levels:
            return False
        if self.action_kinds and action_kind not in self.action_kinds:
            return False
        return evaluate(self.condition, context)

    def is_exempt(self, target_id: str, target_roles: List[str], now: datetime) -> bool:
        return any(e.applies(target_id, target_roles, now) for e in self.exemptions)

    def is_auto_approved(self, context: Dict[str, Any]) -> bool:
        if self.auto_approval is None:
            return False
        return evaluate(self.auto_approval, context)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "required_approvers": self.required_approvers,
            "approver_roles": [r.to_dict() for r in self.approver_roles],
            "approval_timeout_ms": self.approval_timeout_ms,
            "escalation_path": [s.to_dict() for s in self.escalation_path],
            "exemptions": [e.to_dict() for e in self.exemptions],
            "fallback_behavior": self.fallback_behavior.value,
            "risk_levels": [r.value for r in self.risk_levels],
            "action_kinds": [k.value for k in self.action_kinds],
        }
        if self.auto_approval is not None:
            result["auto_approval"] = self.auto_approval.to_dict()
        if self.condition is not None:
            result["condition"] = self.condition.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyGateSpec":
        return cls(
            name=data.get("name", "approval"),
            required_approvers=int(data.get("required_approvers", 1)),
            approver_roles=[ApproverRole.from_dict(r) for r in data.get("approver_roles", [])],
            approval_timeout_ms=int(data.get("approval_timeout_ms", 3600000)),
            escalation_path=[EscalationStep.from_dict(s) for s in data.get("escalation_path", [])],
            auto_approval=data.get("auto_approval"),
            exemptions=[Exemption.from_dict(e) for e in data.get("exemptions", [])],
            fallback_behavior=data.get("fallback_behavior", FallbackBehavior.DENY_ACTION.value),
            risk_levels=data.get("risk_levels", []),
            action_kinds=data.get("action_kinds", []),
            condition=data.get("condition"),
        )


@dataclass
class ApprovalPolicy:
    """A versioned set of approval gates with an applicability scope.

    Attributes:
        id: Policy identifier
        name: Human-readable name
        scope: How the policy selects executions
        gates: Gates evaluated in order
        priority: Higher priority policies are evaluated first
        playbook_ids: Playbooks covered by SPECIFIC_PLAYBOOKS scope
        risk_levels: Risk levels covered by RISK_LEVEL_BASED scope
        action_kinds: Action kinds covered by ACTION_TYPE_BASED scope
        enabled: Whether the policy is active
        version: Monotonic version number
    """
    id: str
    name: str
    scope: PolicyScope = PolicyScope.ALL_PLAYBOOKS
    gates: List[PolicyGateSpec] = field(default_factory=list)
    priority: int = 0
    playbook_ids: List[str] = field(default_factory=list)
    risk_levels: List[RiskLevel] = field(default_factory=list)
    action_kinds: List[ActionKind] = field(default_factory=list)
    enabled: bool = True
    version: int = 1
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if isinstance(self.scope, str):
            self.scope = PolicyScope(self.scope)
        self.risk_levels = [RiskLevel.parse(r) for r in self.risk_levels]
        self.action_kinds = [ActionKind(k) if isinstance(k, str) else k for k in self.action_kinds]

    def applies_to(self, playbook_id: str, risk_level: RiskLevel, action_kind: ActionKind) -> bool:
        """Check whether the policy governs an action of an execution."""
        if not self.enabled:
            return False
        if self.scope == PolicyScope.ALL_PLAYBOOKS:
            return True
        if self.scope == PolicyScope.SPECIFIC_PLAYBOOKS:
            return playbook_id in self.playbook_ids
        if self.scope == PolicyScope.RISK_LEVEL_BASED:
            return risk_level in self.risk_levels
        if self.scope == PolicyScope.ACTION_TYPE_BASED:
            return action_kind in self.action_kinds
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "scope": self.scope.value,
            "gates": [g.to_dict() for g in self.gates],
            "priority": self.priority,
            "playbook_ids": list(self.playbook_ids),
            "risk_levels": [r.value for r in self.risk_levels],
            "action_kinds": [k.value for k in self.action_kinds],
            "enabled": self.enabled,
            "version": self.version,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalPolicy":
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            name=data.get("name", "Unnamed Policy"),
            scope=data.get("scope", PolicyScope.ALL_PLAYBOOKS.value),
            gates=[PolicyGateSpec.from_dict(g) for g in data.get("gates", [])],
            priority=int(data.get("priority", 0)),
            playbook_ids=data.get("playbook_ids", []),
            risk_levels=data.get("risk_levels", []),
            action_kinds=data.get("action_kinds", []),
            enabled=data.get("enabled", True),
            version=int(data.get("version", 1)),
            description=data.get("description", ""),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "ApprovalPolicy":
        return cls.from_dict(yaml.safe_load(yaml_content))
