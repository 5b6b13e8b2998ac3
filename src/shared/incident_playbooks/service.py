"""Playbook service.

Entry point used by the API and CLI layers: triggering and retrying
executions, reading them back, recording approval decisions, cancelling,
resuming and rolling back runs, and managing playbook and policy versions.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Union

from .action_audit import ActionAuditEntry, ActionAuditLog, get_action_audit_log
from .approval_store import get_approval_store
from .config import EngineConfig
from .engine import OrchestrationEngine
from .errors import ConcurrentModificationError, InvalidStateTransitionError, PlaybookNotFoundError
from .execution import ApprovalRequest, Execution, ResolutionNote, Vote
from .execution_store import get_execution_store
from .gate_evaluator import StaticApproverDirectory
from .handlers import ActionHandlerRegistry, WebhookActionHandler
from .incident import IncidentContext, match_playbooks
from .models import SYSTEM_ACTOR, ActionKind, AuditEventType, Decision, ExecutionStatus
from .notifier import LoggingNotifier, WebhookNotifier
from .playbook import PlaybookDefinition
from .playbook_store import get_playbook_store, get_policy_store
from .policy import ApprovalPolicy

logger = logging.getLogger(__name__)

IncidentLike = Union[IncidentContext, Dict[str, Any]]


def _incident_dict(incident: IncidentLike) -> Dict[str, Any]:
    if isinstance(incident, IncidentContext):
        return incident.to_dict()
    return dict(incident)


class PlaybookService:
    """Facade over the orchestration engine and its stores."""

    def __init__(self, engine: Optional[OrchestrationEngine] = None):
        """Initialize the playbook service.

        Args:
            engine: Orchestration engine; an in-memory one is created if omitted
        """
        self.engine = engine or OrchestrationEngine()

    @property
    def playbook_store(self):
        return self.engine.playbook_store

    @property
    def execution_store(self):
        return self.engine.execution_store

    @property
    def approval_store(self):
        return self.engine.approval_store

    @property
    def policy_store(self):
        return self.engine.gate_evaluator.policy_store

    @property
    def audit_log(self) -> Optional[ActionAuditLog]:
        return self.engine.audit_log

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def _get_playbook(self, playbook_id: str, version: Optional[int] = None) -> PlaybookDefinition:
        playbook = self.playbook_store.get(playbook_id, version)
        if playbook is None:
            raise PlaybookNotFoundError(playbook_id, version)
        return playbook

    async def trigger_execution(
        self,
        playbook_id: str,
        target_id: str,
        incident: IncidentLike,
        triggered_by: str = SYSTEM_ACTOR,
        wait: bool = False,
    ) -> str:
        """Start an execution of the latest playbook version.

        Args:
            playbook_id: Playbook to run
            target_id: Account to act on
            incident: Incident context
            triggered_by: User or system triggering the run
            wait: Return only after the execution finished

        Returns:
            Execution ID

        Raises:
            PlaybookNotFoundError: If the playbook does not exist
            InvalidPlaybookError: If the playbook cannot be executed
        """
        playbook = self._get_playbook(playbook_id)
        execution = await self.engine.start(
            playbook,
            _incident_dict(incident),
            target_id=target_id,
            triggered_by=triggered_by,
            wait=wait,
        )
        return execution.id

    def get_execution(self, execution_id: str) -> Execution:
        """Get a copy of an execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
        """
        return self.execution_store.load(execution_id)

    async def retry_execution(
        self,
        execution_id: str,
        triggered_by: str = SYSTEM_ACTOR,
        wait: bool = False,
    ) -> str:
        """Run a finished execution again as a new execution.

        The new execution uses the same pinned playbook version, incident
        and target, and records the original as its parent. The original is
        not modified.

        Returns:
            ID of the new execution

        Raises:
            InvalidStateTransitionError: If the original has not finished
        """
        original = self.execution_store.load(execution_id)
        if not original.is_terminal:
            raise InvalidStateTransitionError(
                "execution", original.status.value, ExecutionStatus.INITIATED.value,
            )

        playbook = self.engine.load_playbook(original)
        execution = await self.engine.start(
            playbook,
            original.incident,
            target_id=original.target_id,
            triggered_by=triggered_by,
            parent_execution_id=original.id,
            wait=wait,
        )
        logger.info(f"Execution {original.id} retried as {execution.id}")
        return execution.id

    async def cancel_execution(self, execution_id: str) -> Execution:
        return await self.engine.cancel(execution_id)

    async def resume_execution(self, execution_id: str, wait: bool = True) -> Execution:
        return await self.engine.resume(execution_id, wait=wait)

    async def rollback_execution(self, execution_id: str) -> Execution:
        return await self.engine.rollback(execution_id)

    async def wait_for_execution(self, execution_id: str) -> Optional[Execution]:
        return await self.engine.wait_for(execution_id)

    def add_resolution_note(
        self,
        execution_id: str,
        author: str,
        notes: str,
        effectiveness: Optional[int] = None,
    ) -> Execution:
        """Append an analyst note to a finished execution.

        Args:
            execution_id: Execution to annotate
            author: Analyst writing the note
            notes: Free-text notes
            effectiveness: Optional 1-5 rating of the response

        Raises:
            InvalidStateTransitionError: If the execution has not finished
            ValueError: If the rating is out of range
        """
        if effectiveness is not None and not 1 <= effectiveness <= 5:
            raise ValueError("effectiveness must be between 1 and 5")

        last_error = None
        for _ in range(max(self.engine.config.save_retry_attempts, 1)):
            execution = self.execution_store.load(execution_id)
            if not execution.is_terminal:
                raise InvalidStateTransitionError("execution", execution.status.value, "RESOLVED")

            now = self.engine.clock.now()
            execution.resolution_notes.append(
                ResolutionNote(author=author, notes=notes, timestamp=now, effectiveness=effectiveness)
            )
            execution.append_audit(
                AuditEventType.RESOLUTION_NOTE_ADDED, now, actor=author, effectiveness=effectiveness,
            )
            try:
                self.execution_store.save(execution)
                return execution
            except ConcurrentModificationError as e:
                last_error = e
                logger.warning(f"Resolution note on {execution_id} raced with another writer, retrying")
        raise last_error

    def list_executions(
        self,
        playbook_id: Optional[str] = None,
        target_id: Optional[str] = None,
        status: Optional[Union[ExecutionStatus, str]] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """List execution summaries, newest first."""
        if isinstance(status, str):
            status = ExecutionStatus(status)
        executions = self.execution_store.list(
            playbook_id=playbook_id, target_id=target_id, status=status, limit=limit,
        )
        return [e.summary() for e in executions]

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def submit_approval_decision(
        self,
        approval_id: str,
        approver_id: str,
        decision: Union[Decision, str],
        comment: str = "",
    ) -> ApprovalRequest:
        """Record one approver's decision.

        Returns:
            The updated ApprovalRequest

        Raises:
            ApprovalNotFoundError: If the request does not exist
            AlreadyVotedError: If the approver already voted
            ApproverNotAuthorizedError: If the user is not an approver
            ApprovalClosedError: If the request already resolved
        """
        vote = Vote(
            approver_id=approver_id,
            decision=Decision.parse(decision),
            timestamp=self.engine.clock.now(),
            comment=comment,
        )
        request = self.approval_store.record_vote(approval_id, vote)
        logger.info(
            f"Approval {approval_id}: {approver_id} voted {vote.decision.value}, "
            f"status {request.status.value}"
        )
        self.engine.signal_approval(approval_id)
        return request

    def list_pending_approvals(self, approver_id: Optional[str] = None, limit: int = 100) -> List[ApprovalRequest]:
        return self.approval_store.list_pending(approver_id=approver_id, limit=limit)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match_playbooks(self, incident: IncidentLike) -> List[PlaybookDefinition]:
        """Playbooks whose detection rules select the incident, most severe first."""
        return match_playbooks(self.playbook_store.list(enabled_only=True), _incident_dict(incident))

    async def detect_and_orchestrate(
        self,
        incident: IncidentLike,
        target_id: Optional[str] = None,
        wait: bool = False,
    ) -> Optional[str]:
        """Trigger the best matching playbook for an incident.

        Returns:
            Execution ID, or None when no playbook matches
        """
        data = _incident_dict(incident)
        matches = self.match_playbooks(data)
        if not matches:
            logger.info(f"No playbook matches incident type {data.get('incident_type')}")
            return None

        playbook = matches[0]
        target_id = target_id or data.get("target_id")
        logger.info(f"Incident {data.get('incident_id')} matched playbook {playbook.id}")
        execution = await self.engine.start(playbook, data, target_id=target_id, wait=wait)
        return execution.id

    # ------------------------------------------------------------------
    # Configuration and reporting
    # ------------------------------------------------------------------

    def save_playbook(self, playbook: PlaybookDefinition) -> int:
        is_valid, errors = playbook.validate()
        if not is_valid:
            logger.warning(f"Saving playbook {playbook.id} with validation errors: {errors}")
        return self.playbook_store.save(playbook)

    def save_policy(self, policy: ApprovalPolicy) -> int:
        return self.policy_store.save(policy)

    def get_metrics(self, playbook_id: str) -> Dict[str, Any]:
        return self.playbook_store.get_metrics(playbook_id).to_dict()

    def get_action_history(self, target_id: str, limit: int = 100) -> List[ActionAuditEntry]:
        """Audited actions applied to a target account, newest first."""
        if self.audit_log is None:
            return []
        return self.audit_log.get_target_history(target_id, limit=limit)


def get_playbook_service(**kwargs) -> PlaybookService:
    """Factory function to get a playbook service instance.

    Backends and engine settings come from environment variables unless
    passed explicitly.

    Args:
        **kwargs: Collaborator overrides (registry, notifier, approvers,
            clock, config and the individual stores)

    Returns:
        PlaybookService instance
    """
    config = kwargs.get("config") or EngineConfig.from_environment()

    registry = kwargs.get("registry")
    if registry is None:
        registry = ActionHandlerRegistry({
            ActionKind.CUSTOM_WEBHOOK: WebhookActionHandler(
                signing_secret=os.environ.get("PLAYBOOK_WEBHOOK_SIGNING_SECRET"),
            ),
        })

    notifier = kwargs.get("notifier")
    if notifier is None:
        webhook_url = os.environ.get("PLAYBOOK_APPROVAL_WEBHOOK_URL")
        notifier = WebhookNotifier(webhook_url) if webhook_url else LoggingNotifier()

    engine = OrchestrationEngine(
        execution_store=kwargs.get("execution_store") or get_execution_store(),
        playbook_store=kwargs.get("playbook_store") or get_playbook_store(),
        registry=registry,
        approval_store=kwargs.get("approval_store") or get_approval_store(),
        policy_store=kwargs.get("policy_store") or get_policy_store(),
        notifier=notifier,
        directory=kwargs.get("directory") or StaticApproverDirectory(kwargs.get("approvers")),
        clock=kwargs.get("clock"),
        config=config,
        audit_log=kwargs.get("audit_log") or get_action_audit_log(),
    )
    return PlaybookService(engine)
