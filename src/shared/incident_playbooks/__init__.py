"""Incident response playbook orchestration.

Runs staged remediation playbooks against accounts affected by detected
account-takeover incidents, with approval gates for sensitive actions,
idempotent retries and compensating rollback.

Key Components:
- PlaybookDefinition: Versioned playbook with detection rules and staged actions
- ApprovalPolicy / PolicyGateSpec: Approval gates, quorum and escalation
- Execution: Runtime record of one playbook run, with its audit trail
- ActionDispatcher: Idempotent retry and compensation around action handlers
- ApprovalGateEvaluator: Exemptions, auto-approval, quorum voting, escalation
- OrchestrationEngine: Drives executions stage by stage under a lease
- PlaybookService: Entry point for triggering, approving and inspecting runs
- ExecutionStore / ApprovalStore / PlaybookStore: Pluggable persistence
- ActionAuditLog: Per-action audit ledger
"""

from .models import (
    SYSTEM_ACTOR,
    ActionKind,
    ActionStatus,
    ApprovalStatus,
    AuditEventType,
    Decision,
    ExecutionStatus,
    FallbackBehavior,
    GateOutcome,
    PlaybookType,
    PolicyScope,
    RiskLevel,
)

from .errors import (
    AlreadyVotedError,
    ApprovalClosedError,
    ApprovalNotFoundError,
    ApproverNotAuthorizedError,
    ActionHandlerError,
    ActionTimeoutError,
    CompensationFailedError,
    ConcurrentModificationError,
    ConditionError,
    ExecutionNotFoundError,
    InvalidPlaybookError,
    InvalidStateTransitionError,
    LeaseConflictError,
    NoApproversAvailableError,
    PlaybookError,
    PlaybookNotFoundError,
)

from .conditions import Predicate, evaluate, parse_predicate

from .playbook import (
    ActionSpec,
    DetectionRule,
    PlaybookDefinition,
    PlaybookMetrics,
    RetryPolicy,
)

from .policy import (
    ApprovalPolicy,
    ApproverRole,
    EscalationStep,
    Exemption,
    PolicyGateSpec,
)

from .execution import (
    ActionExecution,
    ApprovalRequest,
    AuditEvent,
    Execution,
    ExecutionWarning,
    ResolutionNote,
    RetryAttempt,
    StageResult,
    Vote,
    aggregate_status,
)

from .incident import IncidentContext, derive_risk_level, match_playbooks

from .clock import Clock, SystemClock
from .config import EngineConfig

from .handlers import (
    ActionHandler,
    ActionHandlerRegistry,
    DryRunHandler,
    FunctionHandler,
    HandlerOutcome,
    WebhookActionHandler,
)

from .notifier import (
    CallbackNotifier,
    LoggingNotifier,
    NotificationError,
    Notifier,
    WebhookNotifier,
)

from .execution_store import (
    DynamoDBExecutionStore,
    ExecutionStore,
    InMemoryExecutionStore,
    get_execution_store,
)

from .approval_store import (
    ApprovalStore,
    DynamoDBApprovalStore,
    InMemoryApprovalStore,
    get_approval_store,
)

from .playbook_store import (
    FilePlaybookStore,
    FilePolicyStore,
    InMemoryPlaybookStore,
    InMemoryPolicyStore,
    PlaybookStore,
    PolicyStore,
    get_playbook_store,
    get_policy_store,
)

from .action_audit import (
    ActionAuditEntry,
    ActionAuditLog,
    ActionAuditStore,
    DynamoDBActionAuditStore,
    InMemoryActionAuditStore,
    get_action_audit_log,
)

from .lease import LeaseManager
from .gate_evaluator import ApprovalGateEvaluator, ApproverDirectory, GateDecision, StaticApproverDirectory
from .dispatcher import ActionDispatcher, idempotency_key
from .engine import OrchestrationEngine
from .service import PlaybookService, get_playbook_service

__all__ = [
    # Models
    "SYSTEM_ACTOR",
    "ActionKind",
    "ActionStatus",
    "ApprovalStatus",
    "AuditEventType",
    "Decision",
    "ExecutionStatus",
    "FallbackBehavior",
    "GateOutcome",
    "PlaybookType",
    "PolicyScope",
    "RiskLevel",
    # Errors
    "AlreadyVotedError",
    "ApprovalClosedError",
    "ApprovalNotFoundError",
    "ApproverNotAuthorizedError",
    "ActionHandlerError",
    "ActionTimeoutError",
    "CompensationFailedError",
    "ConcurrentModificationError",
    "ConditionError",
    "ExecutionNotFoundError",
    "InvalidPlaybookError",
    "InvalidStateTransitionError",
    "LeaseConflictError",
    "NoApproversAvailableError",
    "PlaybookError",
    "PlaybookNotFoundError",
    # Conditions
    "Predicate",
    "evaluate",
    "parse_predicate",
    # Definitions
    "ActionSpec",
    "DetectionRule",
    "PlaybookDefinition",
    "PlaybookMetrics",
    "RetryPolicy",
    "ApprovalPolicy",
    "ApproverRole",
    "EscalationStep",
    "Exemption",
    "PolicyGateSpec",
    # Execution records
    "ActionExecution",
    "ApprovalRequest",
    "AuditEvent",
    "Execution",
    "ExecutionWarning",
    "ResolutionNote",
    "RetryAttempt",
    "StageResult",
    "Vote",
    "aggregate_status",
    # Incidents
    "IncidentContext",
    "derive_risk_level",
    "match_playbooks",
    # Runtime
    "Clock",
    "SystemClock",
    "EngineConfig",
    "ActionHandler",
    "ActionHandlerRegistry",
    "DryRunHandler",
    "FunctionHandler",
    "HandlerOutcome",
    "WebhookActionHandler",
    "CallbackNotifier",
    "LoggingNotifier",
    "NotificationError",
    "Notifier",
    "WebhookNotifier",
    # Storage
    "DynamoDBExecutionStore",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "get_execution_store",
    "ApprovalStore",
    "DynamoDBApprovalStore",
    "InMemoryApprovalStore",
    "get_approval_store",
    "FilePlaybookStore",
    "FilePolicyStore",
    "InMemoryPlaybookStore",
    "InMemoryPolicyStore",
    "PlaybookStore",
    "PolicyStore",
    "get_playbook_store",
    "get_policy_store",
    "ActionAuditEntry",
    "ActionAuditLog",
    "ActionAuditStore",
    "DynamoDBActionAuditStore",
    "InMemoryActionAuditStore",
    "get_action_audit_log",
    # Orchestration
    "LeaseManager",
    "ApprovalGateEvaluator",
    "ApproverDirectory",
    "GateDecision",
    "StaticApproverDirectory",
    "ActionDispatcher",
    "idempotency_key",
    "OrchestrationEngine",
    "PlaybookService",
    "get_playbook_service",
]
