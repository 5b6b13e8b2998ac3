"""Execution records for incident playbook runs.

An Execution is the mutable aggregate the engine builds for one run of a
playbook against one target. It embeds the per-action results, the approval
requests raised during the run, and an append-only audit trail. Status
changes go through ``transition`` so the one-directional state machines in
``models`` are enforced on every write.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import AlreadyVotedError, ApprovalClosedError, ApproverNotAuthorizedError
from .models import (
    ACTION_TRANSITIONS,
    APPROVAL_TRANSITIONS,
    EXECUTION_TRANSITIONS,
    SYSTEM_ACTOR,
    ActionStatus,
    ApprovalStatus,
    AuditEventType,
    Decision,
    ExecutionStatus,
    RiskLevel,
    check_transition,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def _duration_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start and end:
        return int((end - start).total_seconds() * 1000)
    return None


def aggregate_status(statuses: List[ActionStatus]) -> ExecutionStatus:
    """Derive the terminal execution status from primary action outcomes.

    Skipped actions did not run and are left out. COMPLETED requires every
    remaining action to have succeeded; FAILED means none succeeded
    (including when nothing ran); anything else is PARTIALLY_COMPLETED.
    """
    ran = [s for s in statuses if s != ActionStatus.SKIPPED]
    succeeded = sum(1 for s in ran if s == ActionStatus.SUCCESS)
    if ran and succeeded == len(ran):
        return ExecutionStatus.COMPLETED
    if succeeded == 0:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIALLY_COMPLETED


@dataclass
class RetryAttempt:
    """One attempt of an action.

    Attributes:
        attempt: 1-based attempt number
        started_at: When the attempt began
        completed_at: When the attempt finished
        backoff_ms: Delay waited before this attempt
        success: Whether the handler reported success
        error: Handler error message
        reason: Machine-readable failure reason (e.g. TIMEOUT)
    """
    attempt: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    backoff_ms: int = 0
    success: bool = False
    error: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "backoff_ms": self.backoff_ms,
            "success": self.success,
            "error": self.error,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryAttempt":
        return cls(
            attempt=int(data["attempt"]),
            started_at=_parse_datetime(data["started_at"]),
            completed_at=_parse_datetime(data.get("completed_at")),
            backoff_ms=int(data.get("backoff_ms", 0)),
            success=data.get("success", False),
            error=data.get("error"),
            reason=data.get("reason"),
        )


@dataclass
class ActionExecution:
    """Runtime record of one action within an execution.

    Attributes:
        action_id: ID of the ActionSpec
        kind: Action kind value
        stage: Stage the action belongs to
        idempotency_key: Deterministic key from (execution ID, action ID)
        status: Current status
        attempts: Ordered retry attempts
        result: Handler result on success
        error: Last error message
        reason: Machine-readable failure reason
        approval_request_id: Approval request that gated the action
        compensation: Nested record of the compensating action
        is_compensation: Whether this record is itself a compensation
        is_idempotent_retry: Set on a repeat dispatch of a succeeded action
    """
    action_id: str
    kind: str
    stage: int
    idempotency_key: str
    status: ActionStatus = ActionStatus.PENDING
    attempts: List[RetryAttempt] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    approval_request_id: Optional[str] = None
    compensation: Optional["ActionExecution"] = None
    is_compensation: bool = False
    is_idempotent_retry: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = ActionStatus(self.status)

    def transition(self, target: ActionStatus, at: Optional[datetime] = None) -> None:
        """Advance the action's status.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        check_transition("action", ACTION_TRANSITIONS, self.status, target)
        self.status = target
        at = at or _now()
        if target == ActionStatus.EXECUTING and self.started_at is None:
            self.started_at = at
        if target in ActionStatus.terminal_statuses():
            self.completed_at = at

    @property
    def is_terminal(self) -> bool:
        return self.status in ActionStatus.terminal_statuses()

    @property
    def retry_count(self) -> int:
        return max(len(self.attempts) - 1, 0)

    @property
    def backoff_delays(self) -> List[int]:
        """Delays recorded before attempts 2..N."""
        return [a.backoff_ms for a in self.attempts[1:]]

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.started_at, self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "kind": self.kind,
            "stage": self.stage,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "result": self.result,
            "error": self.error,
            "reason": self.reason,
            "approval_request_id": self.approval_request_id,
            "compensation": self.compensation.to_dict() if self.compensation else None,
            "is_compensation": self.is_compensation,
            "is_idempotent_retry": self.is_idempotent_retry,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionExecution":
        compensation = data.get("compensation")
        return cls(
            action_id=data["action_id"],
            kind=data["kind"],
            stage=int(data.get("stage", 1)),
            idempotency_key=data["idempotency_key"],
            status=data.get("status", ActionStatus.PENDING.value),
            attempts=[RetryAttempt.from_dict(a) for a in data.get("attempts", [])],
            result=data.get("result"),
            error=data.get("error"),
            reason=data.get("reason"),
            approval_request_id=data.get("approval_request_id"),
            compensation=cls.from_dict(compensation) if compensation else None,
            is_compensation=data.get("is_compensation", False),
            is_idempotent_retry=data.get("is_idempotent_retry", False),
            started_at=_parse_datetime(data.get("started_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
        )


@dataclass
class Vote:
    """A single approver decision."""
    approver_id: str
    decision: Decision
    timestamp: datetime
    comment: str = ""

    def __post_init__(self):
        self.decision = Decision.parse(self.decision)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approver_id": self.approver_id,
            "decision": self.decision.value,
            "timestamp": _iso(self.timestamp),
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vote":
        return cls(
            approver_id=data["approver_id"],
            decision=data["decision"],
            timestamp=_parse_datetime(data["timestamp"]),
            comment=data.get("comment", ""),
        )


@dataclass
class ApprovalRequest:
    """A request for approval blocking one action.

    A single DENY resolves the request as DENIED regardless of how many
    approvals it already has. Otherwise it resolves APPROVED once the number
    of distinct APPROVE votes reaches ``required_approvers``.

    Attributes:
        id: Request identifier
        execution_id: Execution the request belongs to
        action_id: Action the request blocks
        gate_name: Gate that raised the request
        policy_id: Policy carrying the gate
        required_approvers: Distinct approvals needed
        approver_ids: Users allowed to vote
        votes: Recorded decisions, one per approver
        status: Request status
        requested_at: When the request was created
        expires_at: When the current escalation level times out
        escalation_level: Escalation levels reached (0 = none)
        resolved_at: When the request resolved
        resolution_reason: Why it resolved (e.g. APPROVAL_TIMEOUT)
    """
    id: str
    execution_id: str
    action_id: str
    gate_name: str
    required_approvers: int
    approver_ids: List[str]
    requested_at: datetime
    expires_at: datetime
    policy_id: Optional[str] = None
    votes: List[Vote] = field(default_factory=list)
    status: ApprovalStatus = ApprovalStatus.PENDING
    escalation_level: int = 0
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = ApprovalStatus(self.status)

    @classmethod
    def create(
        cls,
        execution_id: str,
        action_id: str,
        gate_name: str,
        required_approvers: int,
        approver_ids: List[str],
        requested_at: datetime,
        expires_at: datetime,
        policy_id: Optional[str] = None,
    ) -> "ApprovalRequest":
        """Factory method to create a new pending request."""
        return cls(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            action_id=action_id,
            gate_name=gate_name,
            required_approvers=required_approvers,
            approver_ids=list(approver_ids),
            requested_at=requested_at,
            expires_at=expires_at,
            policy_id=policy_id,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    @property
    def voter_ids(self) -> List[str]:
        return [v.approver_id for v in self.votes]

    @property
    def approval_count(self) -> int:
        return len({v.approver_id for v in self.votes if v.decision == Decision.APPROVE})

    @property
    def has_denial(self) -> bool:
        return any(v.decision == Decision.DENY for v in self.votes)

    def check_can_vote(self, approver_id: str) -> None:
        """Validate a vote before it is recorded.

        Raises:
            ApprovalClosedError: If the request already resolved
            ApproverNotAuthorizedError: If the user may not vote
            AlreadyVotedError: If the user already voted
        """
        if not self.is_pending:
            raise ApprovalClosedError(self.id, self.status.value)
        if approver_id not in self.approver_ids:
            raise ApproverNotAuthorizedError(self.id, approver_id)
        if approver_id in self.voter_ids:
            raise AlreadyVotedError(self.id, approver_id)

    def record_vote(self, vote: Vote) -> ApprovalStatus:
        """Record a vote and apply the quorum rule.

        Returns:
            The request status after the vote
        """
        self.check_can_vote(vote.approver_id)
        self.votes.append(vote)
        self.apply_quorum(vote.timestamp)
        return self.status

    def apply_quorum(self, at: datetime) -> None:
        """Resolve the request if the recorded votes decide it."""
        if not self.is_pending:
            return
        if self.has_denial:
            self.resolve(ApprovalStatus.DENIED, "APPROVAL_DENIED", at)
        elif self.approval_count >= self.required_approvers:
            self.resolve(ApprovalStatus.APPROVED, "QUORUM_REACHED", at)

    def resolve(self, status: ApprovalStatus, reason: str, at: datetime) -> None:
        check_transition("approval", APPROVAL_TRANSITIONS, self.status, status)
        self.status = status
        self.resolution_reason = reason
        self.resolved_at = at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "action_id": self.action_id,
            "gate_name": self.gate_name,
            "policy_id": self.policy_id,
            "required_approvers": self.required_approvers,
            "approver_ids": list(self.approver_ids),
            "votes": [v.to_dict() for v in self.votes],
            "voter_ids": self.voter_ids,
            "status": self.status.value,
            "requested_at": _iso(self.requested_at),
            "expires_at": _iso(self.expires_at),
            "escalation_level": self.escalation_level,
            "resolved_at": _iso(self.resolved_at),
            "resolution_reason": self.resolution_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            action_id=data["action_id"],
            gate_name=data["gate_name"],
            policy_id=data.get("policy_id"),
            required_approvers=int(data.get("required_approvers", 1)),
            approver_ids=list(data.get("approver_ids", [])),
            votes=[Vote.from_dict(v) for v in data.get("votes", [])],
            status=data.get("status", ApprovalStatus.PENDING.value),
            requested_at=_parse_datetime(data["requested_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
            escalation_level=int(data.get("escalation_level", 0)),
            resolved_at=_parse_datetime(data.get("resolved_at")),
            resolution_reason=data.get("resolution_reason"),
        )


@dataclass(frozen=True)
class AuditEvent:
    """An immutable entry in an execution's audit trail."""
    sequence: int
    timestamp: datetime
    event_type: AuditEventType
    actor: str = SYSTEM_ACTOR
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": _iso(self.timestamp),
            "event_type": self.event_type.value,
            "actor": self.actor,
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            sequence=int(data["sequence"]),
            timestamp=_parse_datetime(data["timestamp"]),
            event_type=AuditEventType(data["event_type"]),
            actor=data.get("actor", SYSTEM_ACTOR),
            detail=data.get("detail", {}),
        )


@dataclass
class StageResult:
    """Outcome of one stage of an execution."""
    stage: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    action_ids: List[str] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    halted: bool = False

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "action_ids": list(self.action_ids),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "halted": self.halted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            stage=int(data["stage"]),
            started_at=_parse_datetime(data["started_at"]),
            completed_at=_parse_datetime(data.get("completed_at")),
            action_ids=list(data.get("action_ids", [])),
            succeeded=int(data.get("succeeded", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            halted=data.get("halted", False),
        )


@dataclass
class ExecutionWarning:
    """A condition requiring human follow-up, e.g. a failed compensation."""
    code: str
    message: str
    timestamp: datetime
    action_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
            "action_id": self.action_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionWarning":
        return cls(
            code=data["code"],
            message=data["message"],
            timestamp=_parse_datetime(data["timestamp"]),
            action_id=data.get("action_id"),
        )


@dataclass
class ResolutionNote:
    """Analyst note appended after an execution finished."""
    author: str
    notes: str
    timestamp: datetime
    effectiveness: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "notes": self.notes,
            "timestamp": _iso(self.timestamp),
            "effectiveness": self.effectiveness,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolutionNote":
        effectiveness = data.get("effectiveness")
        return cls(
            author=data["author"],
            notes=data["notes"],
            timestamp=_parse_datetime(data["timestamp"]),
            effectiveness=int(effectiveness) if effectiveness is not None else None,
        )


@dataclass
class Execution:
    """One run of a playbook against one target.

    Attributes:
        id: Execution identifier
        playbook_id: Playbook being run
        playbook_version: Pinned playbook version
        target_id: Account the actions are applied to
        incident: Incident context (opaque to the engine)
        risk_level: Risk level derived from the incident
        status: Overall status
        actions: Action records keyed by action ID, in dispatch order
        approvals: Approval requests raised during the run
        audit_trail: Append-only audit events
        stages: Per-stage results
        version: Persistence version for optimistic concurrency
        lease_owner: Engine instance currently driving the run
        lease_expires_at: When the lease may be reclaimed
        cancel_requested: Set by cancel; observed by the driving engine
    """
    id: str
    playbook_id: str
    playbook_version: int
    target_id: str
    incident: Dict[str, Any] = field(default_factory=dict)
    risk_level: RiskLevel = RiskLevel.MEDIUM
    confidence_score: Optional[float] = None
    status: ExecutionStatus = ExecutionStatus.INITIATED
    actions: Dict[str, ActionExecution] = field(default_factory=dict)
    approvals: List[ApprovalRequest] = field(default_factory=list)
    audit_trail: List[AuditEvent] = field(default_factory=list)
    stages: List[StageResult] = field(default_factory=list)
    warnings: List[ExecutionWarning] = field(default_factory=list)
    resolution_notes: List[ResolutionNote] = field(default_factory=list)
    current_stage: int = 0
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    triggered_by: str = SYSTEM_ACTOR
    parent_execution_id: Optional[str] = None
    version: int = 0
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    cancel_requested: bool = False

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = ExecutionStatus(self.status)
        self.risk_level = RiskLevel.parse(self.risk_level)

    @classmethod
    def create(
        cls,
        playbook_id: str,
        playbook_version: int,
        target_id: str,
        incident: Dict[str, Any],
        risk_level: RiskLevel,
        started_at: datetime,
        confidence_score: Optional[float] = None,
        triggered_by: str = SYSTEM_ACTOR,
        parent_execution_id: Optional[str] = None,
    ) -> "Execution":
        """Factory method to create a new execution in INITIATED state."""
        return cls(
            id=str(uuid.uuid4()),
            playbook_id=playbook_id,
            playbook_version=playbook_version,
            target_id=target_id,
            incident=dict(incident),
            risk_level=risk_level,
            confidence_score=confidence_score,
            started_at=started_at,
            triggered_by=triggered_by,
            parent_execution_id=parent_execution_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in ExecutionStatus.terminal_statuses()

    def transition(self, target: ExecutionStatus, at: datetime, reason: Optional[str] = None) -> None:
        """Advance the execution's status.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        check_transition("execution", EXECUTION_TRANSITIONS, self.status, target)
        self.status = target
        if target in ExecutionStatus.terminal_statuses():
            self.completed_at = at
        if reason:
            self.failure_reason = reason

    def append_audit(
        self,
        event_type: AuditEventType,
        at: datetime,
        actor: str = SYSTEM_ACTOR,
        **detail: Any,
    ) -> AuditEvent:
        """Append an event to the audit trail."""
        event = AuditEvent(
            sequence=len(self.audit_trail) + 1,
            timestamp=at,
            event_type=event_type,
            actor=actor,
            detail=detail,
        )
        self.audit_trail.append(event)
        return event

    def add_warning(self, code: str, message: str, at: datetime, action_id: Optional[str] = None) -> None:
        self.warnings.append(ExecutionWarning(code=code, message=message, timestamp=at, action_id=action_id))

    def get_action(self, action_id: str) -> Optional[ActionExecution]:
        return self.actions.get(action_id)

    def find_by_idempotency_key(self, key: str) -> Optional[ActionExecution]:
        for record in self.actions.values():
            if record.idempotency_key == key:
                return record
        return None

    def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        for request in self.approvals:
            if request.id == approval_id:
                return request
        return None

    def upsert_approval(self, request: ApprovalRequest) -> None:
        """Replace the embedded copy of an approval request, or add it."""
        for i, existing in enumerate(self.approvals):
            if existing.id == request.id:
                self.approvals[i] = request
                return
        self.approvals.append(request)

    def get_stage(self, stage: int) -> Optional[StageResult]:
        for result in self.stages:
            if result.stage == stage:
                return result
        return None

    def aggregate_status(self) -> ExecutionStatus:
        return aggregate_status([a.status for a in self.actions.values()])

    @property
    def success_count(self) -> int:
        return sum(1 for a in self.actions.values() if a.status == ActionStatus.SUCCESS)

    @property
    def failure_count(self) -> int:
        return sum(1 for a in self.actions.values() if a.status == ActionStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for a in self.actions.values() if a.status == ActionStatus.SKIPPED)

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.started_at, self.completed_at)

    def condition_context(self) -> Dict[str, Any]:
        """Context for action conditions and parameter templates.

        Only prior results are exposed; callers receive a copy.
        """
        return {
            "incident": dict(self.incident),
            "target_id": self.target_id,
            "risk_level": self.risk_level.value,
            "confidence_score": self.confidence_score,
            "playbook_id": self.playbook_id,
            "execution": {"id": self.id, "current_stage": self.current_stage},
            "actions": {
                action_id: {
                    "status": record.status.value,
                    "result": record.result,
                    "error": record.error,
                    "stage": record.stage,
                }
                for action_id, record in self.actions.items()
            },
            "stages": {
                str(s.stage): {
                    "succeeded": s.succeeded,
                    "failed": s.failed,
                    "skipped": s.skipped,
                }
                for s in self.stages
            },
        }

    def summary(self) -> Dict[str, Any]:
        """Compact view for dashboards and API responses."""
        return {
            "execution_id": self.id,
            "playbook_id": self.playbook_id,
            "playbook_version": self.playbook_version,
            "target_id": self.target_id,
            "status": self.status.value,
            "risk_level": self.risk_level.value,
            "current_stage": self.current_stage,
            "actions_executed": len(self.actions),
            "successful_actions": self.success_count,
            "failed_actions": self.failure_count,
            "skipped_actions": self.skipped_count,
            "pending_approvals": sum(1 for a in self.approvals if a.is_pending),
            "warnings": len(self.warnings),
            "duration_ms": self.duration_ms,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "playbook_version": self.playbook_version,
            "target_id": self.target_id,
            "incident": self.incident,
            "risk_level": self.risk_level.value,
            "confidence_score": self.confidence_score,
            "status": self.status.value,
            "actions": [a.to_dict() for a in self.actions.values()],
            "approvals": [a.to_dict() for a in self.approvals],
            "audit_trail": [e.to_dict() for e in self.audit_trail],
            "stages": [s.to_dict() for s in self.stages],
            "warnings": [w.to_dict() for w in self.warnings],
            "resolution_notes": [n.to_dict() for n in self.resolution_notes],
            "current_stage": self.current_stage,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failure_reason": self.failure_reason,
            "triggered_by": self.triggered_by,
            "parent_execution_id": self.parent_execution_id,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
            "version": self.version,
            "lease_owner": self.lease_owner,
            "lease_expires_at": _iso(self.lease_expires_at),
            "cancel_requested": self.cancel_requested,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        actions = [ActionExecution.from_dict(a) for a in data.get("actions", [])]
        confidence = data.get("confidence_score")
        return cls(
            id=data["id"],
            playbook_id=data["playbook_id"],
            playbook_version=int(data.get("playbook_version", 1)),
            target_id=data["target_id"],
            incident=data.get("incident", {}),
            risk_level=data.get("risk_level", RiskLevel.MEDIUM.value),
            confidence_score=float(confidence) if confidence is not None else None,
            status=data.get("status", ExecutionStatus.INITIATED.value),
            actions={a.action_id: a for a in actions},
            approvals=[ApprovalRequest.from_dict(a) for a in data.get("approvals", [])],
            audit_trail=[AuditEvent.from_dict(e) for e in data.get("audit_trail", [])],
            stages=[StageResult.from_dict(s) for s in data.get("stages", [])],
            warnings=[ExecutionWarning.from_dict(w) for w in data.get("warnings", [])],
            resolution_notes=[ResolutionNote.from_dict(n) for n in data.get("resolution_notes", [])],
            current_stage=int(data.get("current_stage", 0)),
            started_at=_parse_datetime(data["started_at"]),
            completed_at=_parse_datetime(data.get("completed_at")),
            failure_reason=data.get("failure_reason"),
            triggered_by=data.get("triggered_by", SYSTEM_ACTOR),
            parent_execution_id=data.get("parent_execution_id"),
            version=int(data.get("version", 0)),
            lease_owner=data.get("lease_owner"),
            lease_expires_at=_parse_datetime(data.get("lease_expires_at")),
            cancel_requested=data.get("cancel_requested", False),
        )
