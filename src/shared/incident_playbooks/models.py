"""Enumerations and state machines for incident response playbooks.

Every lifecycle in this package is one-directional. The transition tables
below are the single source of truth for what a status may advance to; the
record classes in ``execution`` consult them through ``check_transition``.
"""

from enum import Enum
from typing import Dict, Set

from .errors import InvalidStateTransitionError

SYSTEM_ACTOR = "SYSTEM"


class RiskLevel(Enum):
    """Risk level of an incident, execution or playbook."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Numeric rank, LOW=1 through CRITICAL=4."""
        return _RISK_RANKS[self]

    @classmethod
    def parse(cls, value) -> "RiskLevel":
        """Parse a risk level from an enum, name or value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if value is None:
            raise ValueError("Risk level is required")
        return cls(str(value).strip().upper())


_RISK_RANKS = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class PlaybookType(Enum):
    """Incident classifications a playbook responds to."""
    SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL = "SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL"
    REPEATED_2FA_BYPASS = "REPEATED_2FA_BYPASS"
    UNUSUAL_PRIVILEGE_ACTION = "UNUSUAL_PRIVILEGE_ACTION"
    MULTI_ACCOUNT_CAMPAIGN = "MULTI_ACCOUNT_CAMPAIGN"
    ACCOUNT_TAKEOVER = "ACCOUNT_TAKEOVER"
    DATA_EXFILTRATION = "DATA_EXFILTRATION"
    CREDENTIAL_STUFFING = "CREDENTIAL_STUFFING"
    CUSTOM = "CUSTOM"


class ActionKind(Enum):
    """Kinds of remediation actions a playbook stage can run.

    The side effects live behind handlers registered per kind; the
    orchestration layer only knows the kind names.
    """
    STEP_UP_CHALLENGE = "STEP_UP_CHALLENGE"  # Require additional authentication
    SELECTIVE_TOKEN_REVOKE = "SELECTIVE_TOKEN_REVOKE"  # Revoke specific sessions
    FULL_SESSION_KILL = "FULL_SESSION_KILL"  # Terminate all sessions
    FORCE_PASSWORD_RESET = "FORCE_PASSWORD_RESET"
    USER_NOTIFICATION = "USER_NOTIFICATION"
    ANALYST_ESCALATION = "ANALYST_ESCALATION"
    ACCOUNT_SUSPEND = "ACCOUNT_SUSPEND"
    ACCOUNT_RESTORE = "ACCOUNT_RESTORE"  # Undo for ACCOUNT_SUSPEND
    DEVICE_DEREGISTER = "DEVICE_DEREGISTER"
    IPWHITELIST_ADD = "IPWHITELIST_ADD"
    IPBLACKLIST_ADD = "IPBLACKLIST_ADD"
    IPBLACKLIST_REMOVE = "IPBLACKLIST_REMOVE"  # Undo for IPBLACKLIST_ADD
    GEO_LOCK = "GEO_LOCK"
    GEO_UNLOCK = "GEO_UNLOCK"  # Undo for GEO_LOCK
    CUSTOM_WEBHOOK = "CUSTOM_WEBHOOK"

    @classmethod
    def sensitive_actions(cls) -> Set["ActionKind"]:
        """Return set of actions that typically sit behind an approval gate."""
        return {
            cls.FULL_SESSION_KILL,
            cls.FORCE_PASSWORD_RESET,
            cls.ACCOUNT_SUSPEND,
            cls.DEVICE_DEREGISTER,
            cls.GEO_LOCK,
            cls.IPBLACKLIST_ADD,
        }


class ExecutionStatus(Enum):
    """Overall status of a playbook execution."""
    INITIATED = "INITIATED"
    RUNNING = "RUNNING"
    PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"

    @classmethod
    def terminal_statuses(cls) -> Set["ExecutionStatus"]:
        """Return set of statuses that indicate the run is over."""
        return {
            cls.PARTIALLY_COMPLETED,
            cls.COMPLETED,
            cls.FAILED,
            cls.ROLLED_BACK,
        }


class ActionStatus(Enum):
    """Status of a single action execution."""
    PENDING = "PENDING"
    APPROVAL_PENDING = "APPROVAL_PENDING"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    COMPENSATING = "COMPENSATING"
    COMPENSATED = "COMPENSATED"
    SKIPPED = "SKIPPED"

    @classmethod
    def terminal_statuses(cls) -> Set["ActionStatus"]:
        """Statuses at which the stage barrier considers the action resolved."""
        return {cls.SUCCESS, cls.FAILED, cls.COMPENSATED, cls.SKIPPED}


class ApprovalStatus(Enum):
    """Status of an approval request."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class Decision(Enum):
    """A single approver's vote."""
    APPROVE = "APPROVE"
    DENY = "DENY"

    @classmethod
    def parse(cls, value) -> "Decision":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class FallbackBehavior(Enum):
    """What a gate does on evaluator error or final escalation timeout."""
    DENY_ACTION = "DENY_ACTION"
    ALLOW_ACTION = "ALLOW_ACTION"
    ESCALATE_TO_HUMAN = "ESCALATE_TO_HUMAN"


class PolicyScope(Enum):
    """Which executions an approval policy applies to."""
    ALL_PLAYBOOKS = "ALL_PLAYBOOKS"
    SPECIFIC_PLAYBOOKS = "SPECIFIC_PLAYBOOKS"
    RISK_LEVEL_BASED = "RISK_LEVEL_BASED"
    ACTION_TYPE_BASED = "ACTION_TYPE_BASED"


class GateOutcome(Enum):
    """Result of evaluating the approval gates for one action."""
    PASSED = "PASSED"
    DENIED = "DENIED"


class AuditEventType(Enum):
    """Kinds of events appended to an execution's audit trail."""
    EXECUTION_INITIATED = "EXECUTION_INITIATED"
    EXECUTION_RUNNING = "EXECUTION_RUNNING"
    EXECUTION_RESUMED = "EXECUTION_RESUMED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    EXECUTION_PARTIALLY_COMPLETED = "EXECUTION_PARTIALLY_COMPLETED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    EXECUTION_TIMED_OUT = "EXECUTION_TIMED_OUT"
    EXECUTION_HALTED = "EXECUTION_HALTED"
    ROLLBACK_STARTED = "ROLLBACK_STARTED"
    EXECUTION_ROLLED_BACK = "EXECUTION_ROLLED_BACK"
    STAGE_STARTED = "STAGE_STARTED"
    STAGE_COMPLETED = "STAGE_COMPLETED"
    ACTION_SKIPPED = "ACTION_SKIPPED"
    ACTION_STARTED = "ACTION_STARTED"
    ACTION_ATTEMPT_FAILED = "ACTION_ATTEMPT_FAILED"
    ACTION_SUCCEEDED = "ACTION_SUCCEEDED"
    ACTION_FAILED = "ACTION_FAILED"
    ACTION_IDEMPOTENT_REPLAY = "ACTION_IDEMPOTENT_REPLAY"
    COMPENSATION_STARTED = "COMPENSATION_STARTED"
    COMPENSATION_SUCCEEDED = "COMPENSATION_SUCCEEDED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"
    GATE_PASSED = "GATE_PASSED"
    GATE_DENIED = "GATE_DENIED"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_DECISION = "APPROVAL_DECISION"
    APPROVAL_ESCALATED = "APPROVAL_ESCALATED"
    APPROVAL_RESOLVED = "APPROVAL_RESOLVED"
    APPROVAL_FALLBACK = "APPROVAL_FALLBACK"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    RESOLUTION_NOTE_ADDED = "RESOLUTION_NOTE_ADDED"


EXECUTION_TRANSITIONS: Dict[ExecutionStatus, Set[ExecutionStatus]] = {
    ExecutionStatus.INITIATED: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.PARTIALLY_COMPLETED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.PARTIALLY_COMPLETED: {ExecutionStatus.ROLLED_BACK},
    ExecutionStatus.COMPLETED: {ExecutionStatus.ROLLED_BACK},
    ExecutionStatus.FAILED: {ExecutionStatus.ROLLED_BACK},
    ExecutionStatus.ROLLED_BACK: set(),
}

ACTION_TRANSITIONS: Dict[ActionStatus, Set[ActionStatus]] = {
    ActionStatus.PENDING: {
        ActionStatus.APPROVAL_PENDING,
        ActionStatus.EXECUTING,
        ActionStatus.FAILED,
        ActionStatus.SKIPPED,
    },
    ActionStatus.APPROVAL_PENDING: {
        ActionStatus.EXECUTING,
        ActionStatus.FAILED,
    },
    ActionStatus.EXECUTING: {ActionStatus.SUCCESS, ActionStatus.FAILED},
    ActionStatus.SUCCESS: {ActionStatus.COMPENSATING},
    ActionStatus.FAILED: {ActionStatus.COMPENSATING},
    ActionStatus.COMPENSATING: {ActionStatus.COMPENSATED, ActionStatus.FAILED},
    ActionStatus.COMPENSATED: set(),
    ActionStatus.SKIPPED: set(),
}

APPROVAL_TRANSITIONS: Dict[ApprovalStatus, Set[ApprovalStatus]] = {
    ApprovalStatus.PENDING: {ApprovalStatus.APPROVED, ApprovalStatus.DENIED},
    ApprovalStatus.APPROVED: set(),
    ApprovalStatus.DENIED: set(),
}


def check_transition(entity: str, table: Dict[Enum, Set[Enum]], current: Enum, target: Enum) -> None:
    """Raise InvalidStateTransitionError unless current -> target is allowed."""
    if target not in table.get(current, set()):
        raise InvalidStateTransitionError(entity, current.value, target.value)
