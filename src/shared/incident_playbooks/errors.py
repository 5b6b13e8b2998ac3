"""Exceptions raised by the incident playbook orchestration layer.

Only structural and precondition failures are raised to callers. Action-level
failures (timeouts, handler errors, denied approvals) are absorbed into the
Execution record and its audit trail.
"""

from typing import Optional


class PlaybookError(Exception):
    """Base class for all playbook orchestration errors."""


class InvalidPlaybookError(PlaybookError):
    """Playbook is disabled or incomplete and cannot be started."""

    def __init__(self, playbook_id: str, reasons: Optional[list] = None):
        self.playbook_id = playbook_id
        self.reasons = reasons or []
        detail = ", ".join(self.reasons) if self.reasons else "playbook cannot execute"
        super().__init__(f"Invalid playbook {playbook_id}: {detail}")


class PlaybookNotFoundError(PlaybookError):
    """No playbook (or playbook version) exists for the given ID."""

    def __init__(self, playbook_id: str, version: Optional[int] = None):
        self.playbook_id = playbook_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Playbook not found: {playbook_id}{suffix}")


class ExecutionNotFoundError(PlaybookError):
    """No execution exists for the given ID."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ApprovalNotFoundError(PlaybookError):
    """No approval request exists for the given ID."""

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval request not found: {approval_id}")


class NoApproversAvailableError(PlaybookError):
    """A policy gate could not resolve any approver; treated as DENY."""

    def __init__(self, gate_name: str):
        self.gate_name = gate_name
        super().__init__(f"No approvers available for gate '{gate_name}'")


class ActionTimeoutError(PlaybookError):
    """A single action attempt exceeded its timeout."""

    def __init__(self, action_id: str, timeout_ms: int):
        self.action_id = action_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Action {action_id} timed out after {timeout_ms}ms")


class ActionHandlerError(PlaybookError):
    """A handler reported failure for an action attempt."""

    def __init__(self, action_id: str, message: str):
        self.action_id = action_id
        super().__init__(f"Action {action_id} failed: {message}")


class CompensationFailedError(PlaybookError):
    """A compensating action failed; requires human follow-up."""

    def __init__(self, action_id: str, message: str, mandatory: bool = False):
        self.action_id = action_id
        self.mandatory = mandatory
        super().__init__(f"Compensation for {action_id} failed: {message}")


class ConcurrentModificationError(PlaybookError):
    """Optimistic-concurrency write conflict on a persisted record."""

    def __init__(self, record_id: str, expected_version: Optional[int] = None):
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification of {record_id} "
            f"(expected version {expected_version})"
        )


class LeaseConflictError(PlaybookError):
    """The execution lease is held by another live owner."""

    def __init__(self, execution_id: str, owner_id: Optional[str]):
        self.execution_id = execution_id
        self.owner_id = owner_id
        super().__init__(f"Execution {execution_id} is leased by {owner_id}")


class AlreadyVotedError(PlaybookError):
    """The approver has already voted on this approval request."""

    def __init__(self, approval_id: str, approver_id: str):
        self.approval_id = approval_id
        self.approver_id = approver_id
        super().__init__(f"Approver {approver_id} already voted on {approval_id}")


class ApprovalClosedError(PlaybookError):
    """The approval request is no longer accepting votes."""

    def __init__(self, approval_id: str, status: str):
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"Approval {approval_id} is already {status}")


class ApproverNotAuthorizedError(PlaybookError):
    """The voter is not in the approval request's approver set."""

    def __init__(self, approval_id: str, approver_id: str):
        self.approval_id = approval_id
        self.approver_id = approver_id
        super().__init__(f"User {approver_id} is not an approver for {approval_id}")


class InvalidStateTransitionError(PlaybookError):
    """A state machine transition was attempted that is not allowed."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")


class ConditionError(PlaybookError):
    """A predicate definition could not be parsed."""
