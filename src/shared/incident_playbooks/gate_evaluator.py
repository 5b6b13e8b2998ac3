"""Approval Gate Evaluator.

Decides whether an action that requires approval may run. For every gate
that applies to the action, in policy priority order:

1. Exemptions for the target pass the gate.
2. A true auto-approval predicate passes the gate.
3. Otherwise approvers are resolved from the gate's roles. With nobody to
   ask the gate denies (NO_APPROVERS_AVAILABLE); else an ApprovalRequest is
   raised and the action waits for it to resolve.

A waiting request escalates through the gate's escalation path each time
its current level expires. Once the last level expires, or when notifying
approvers fails, the gate's fallback behavior decides the outcome.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .clock import Clock
from .config import EngineConfig
from .errors import ApprovalNotFoundError, LeaseConflictError, NoApproversAvailableError
from .execution import ActionExecution, ApprovalRequest, Execution
from .models import (
    ActionStatus,
    ApprovalStatus,
    AuditEventType,
    FallbackBehavior,
    GateOutcome,
    PolicyScope,
)
from .notifier import LoggingNotifier, Notifier
from .playbook import ActionSpec, PlaybookDefinition
from .playbook_store import InMemoryPolicyStore, PolicyStore
from .approval_store import ApprovalStore
from .policy import ApprovalPolicy, ApproverRole, PolicyGateSpec

logger = logging.getLogger(__name__)

# Request resolution reasons that are passed through to the action unchanged
PASS_THROUGH_REASONS = ("EXECUTION_CANCELLED", "EXECUTION_TIMEOUT")


class ApproverDirectory(Protocol):
    """Resolves role names to user IDs."""

    def users_for_role(self, role: str) -> List[str]:
        ...


class StaticApproverDirectory:
    """Approver directory backed by a fixed role mapping."""

    def __init__(self, roles: Optional[Dict[str, List[str]]] = None):
        self.roles = roles or {}

    def users_for_role(self, role: str) -> List[str]:
        return list(self.roles.get(role, []))


class ExecutionWriter(Protocol):
    """Persistence hooks supplied by the engine for the run being driven."""

    def persist(self) -> None:
        """Save the execution, renewing the lease."""
        ...

    def heartbeat(self) -> None:
        """Renew the lease if it is close to expiring."""
        ...


@dataclass
class GateDecision:
    """Outcome of evaluating the gates for one action."""
    outcome: GateOutcome
    reason: Optional[str] = None
    gate_name: Optional[str] = None
    approval_request_id: Optional[str] = None
    approved_by: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.outcome == GateOutcome.PASSED


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class ApprovalGateEvaluator:
    """Evaluates approval gates and waits on approval requests."""

    def __init__(
        self,
        approval_store: ApprovalStore,
        clock: Clock,
        policy_store: Optional[PolicyStore] = None,
        notifier: Optional[Notifier] = None,
        directory: Optional[ApproverDirectory] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.approval_store = approval_store
        self.clock = clock
        self.policy_store = policy_store or InMemoryPolicyStore()
        self.notifier = notifier or LoggingNotifier()
        self.directory = directory or StaticApproverDirectory()
        self.config = config or EngineConfig()
        self._events: Dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Gate selection
    # ------------------------------------------------------------------

    def gate_context(self, execution: Execution, spec: ActionSpec) -> Dict[str, Any]:
        """Context for gate triggers and auto-approval predicates."""
        context = execution.condition_context()
        context["action"] = {
            "id": spec.id,
            "kind": spec.kind.value,
            "stage": spec.stage,
            "parameters": dict(spec.parameters),
        }
        return context

    def applicable_policies(self, playbook: PlaybookDefinition, spec: ActionSpec, execution: Execution) -> List[ApprovalPolicy]:
        """Policies governing an action, highest priority first."""
        policies = [
            p for p in self.policy_store.list(enabled_only=True)
            if p.applies_to(playbook.id, execution.risk_level, spec.kind)
        ]
        if playbook.policy_gates:
            policies.append(ApprovalPolicy(
                id=f"playbook:{playbook.id}",
                name=f"{playbook.name} gates",
                scope=PolicyScope.SPECIFIC_PLAYBOOKS,
                playbook_ids=[playbook.id],
                gates=playbook.policy_gates,
                version=playbook.version,
            ))
        policies.sort(key=lambda p: p.priority, reverse=True)
        return policies

    def applicable_gates(
        self,
        playbook: PlaybookDefinition,
        spec: ActionSpec,
        execution: Execution,
    ) -> List[Tuple[Optional[ApprovalPolicy], PolicyGateSpec]]:
        """Gates to evaluate for an action, in order.

        An action that requires approval but matches no configured gate gets
        a single-approver gate over its own approval roles.
        """
        context = self.gate_context(execution, spec)
        gates = [
            (policy, gate)
            for policy in self.applicable_policies(playbook, spec, execution)
            for gate in policy.gates
            if gate.triggers(execution.risk_level, spec.kind, context)
        ]
        if not gates:
            gates = [(None, PolicyGateSpec(
                name=f"{spec.id}-approval",
                approver_roles=[ApproverRole(role=r) for r in spec.approval_roles],
            ))]
        return gates

    # ------------------------------------------------------------------
    # Approver resolution
    # ------------------------------------------------------------------

    def resolve_approvers(self, roles: List[ApproverRole]) -> List[str]:
        """Resolve roles to a deduplicated, capped approver list.

        Explicit role members are used first, then the directory, then the
        role's fallback users.
        """
        approvers: List[str] = []
        for role in sorted(roles, key=lambda r: r.priority):
            users = list(role.user_ids) or self.directory.users_for_role(role.role)
            if not users:
                users = list(role.fallback_users)
                if users:
                    logger.info(f"Role {role.role} resolved to nobody, using fallback users")
            approvers.extend(users)
        return _dedupe(approvers)[: self.config.max_approvers_per_gate]

    def resolve_escalation_targets(self, targets: List[str]) -> List[str]:
        """Resolve escalation entries; entries that are not roles are user IDs."""
        users: List[str] = []
        for target in targets:
            members = self.directory.users_for_role(target)
            users.extend(members or [target])
        return _dedupe(users)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        playbook: PlaybookDefinition,
        spec: ActionSpec,
        execution: Execution,
        record: ActionExecution,
        writer: ExecutionWriter,
    ) -> GateDecision:
        """Evaluate every applicable gate for an action.

        A record that already carries an approval request (after a resume)
        re-attaches to it instead of raising a new one.

        Returns:
            GateDecision; DENIED as soon as any gate denies
        """
        gates = self.applicable_gates(playbook, spec, execution)

        existing = None
        start = 0
        if record.approval_request_id:
            existing = self.approval_store.get(record.approval_request_id)
            if existing is not None:
                for i, (_, gate) in enumerate(gates):
                    if gate.name == existing.gate_name:
                        start = i
                        break

        decision = GateDecision(outcome=GateOutcome.PASSED)
        for policy, gate in gates[start:]:
            try:
                decision = await self._evaluate_gate(policy, gate, spec, execution, record, writer, existing)
            except (asyncio.CancelledError, LeaseConflictError):
                raise
            except Exception as e:
                logger.exception(f"Error evaluating gate {gate.name} for action {spec.id}")
                decision = await self._fallback_on_error(policy, gate, spec, execution, record, writer, e)
            existing = None
            if not decision.passed:
                return decision
        return decision

    async def _evaluate_gate(
        self,
        policy: Optional[ApprovalPolicy],
        gate: PolicyGateSpec,
        spec: ActionSpec,
        execution: Execution,
        record: ActionExecution,
        writer: ExecutionWriter,
        existing: Optional[ApprovalRequest],
    ) -> GateDecision:
        if existing is not None:
            logger.info(f"Re-attaching action {spec.id} to approval {existing.id}")
            return await self._await_resolution(existing, gate, execution, writer)

        now = self.clock.now()
        target_roles = list(execution.incident.get("target_roles") or [])
        if gate.is_exempt(execution.target_id, target_roles, now):
            execution.append_audit(
                AuditEventType.GATE_PASSED, now, action_id=spec.id, gate=gate.name, reason="EXEMPT",
            )
            return GateDecision(outcome=GateOutcome.PASSED, reason="EXEMPT", gate_name=gate.name)

        if gate.is_auto_approved(self.gate_context(execution, spec)):
            execution.append_audit(
                AuditEventType.GATE_PASSED, now, action_id=spec.id, gate=gate.name, reason="AUTO_APPROVED",
            )
            return GateDecision(outcome=GateOutcome.PASSED, reason="AUTO_APPROVED", gate_name=gate.name)

        roles = gate.approver_roles or [ApproverRole(role=r) for r in spec.approval_roles]
        approvers = self.resolve_approvers(roles)
        if not approvers:
            error = NoApproversAvailableError(gate.name)
            logger.warning(f"{error}; denying action {spec.id}")
            execution.append_audit(
                AuditEventType.GATE_DENIED, now, action_id=spec.id, gate=gate.name,
                reason="NO_APPROVERS_AVAILABLE",
            )
            return GateDecision(outcome=GateOutcome.DENIED, reason="NO_APPROVERS_AVAILABLE", gate_name=gate.name)

        request = ApprovalRequest.create(
            execution_id=execution.id,
            action_id=spec.id,
            gate_name=gate.name,
            required_approvers=gate.required_approvers,
            approver_ids=approvers,
            requested_at=now,
            expires_at=now + timedelta(milliseconds=gate.approval_timeout_ms),
            policy_id=policy.id if policy else None,
        )
        self.approval_store.create(request)

        execution.upsert_approval(request)
        record.approval_request_id = request.id
        if record.status == ActionStatus.PENDING:
            record.transition(ActionStatus.APPROVAL_PENDING, now)
        execution.append_audit(
            AuditEventType.APPROVAL_REQUESTED, now,
            action_id=spec.id, approval_id=request.id, gate=gate.name,
            approvers=approvers, required_approvers=gate.required_approvers,
        )
        writer.persist()
        logger.info(f"Approval {request.id} requested for action {spec.id} from {approvers}")

        await self._notify(approvers, request, gate, execution, writer)
        return await self._await_resolution(request, gate, execution, writer)

    async def _notify(
        self,
        approver_ids: List[str],
        request: ApprovalRequest,
        gate: PolicyGateSpec,
        execution: Execution,
        writer: ExecutionWriter,
    ) -> None:
        """Notify approvers; on failure apply the gate's fallback behavior."""
        try:
            await self.notifier.notify(approver_ids, request)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Notification for approval {request.id} failed: {e}")
            now = self.clock.now()
            execution.append_audit(
                AuditEventType.NOTIFICATION_FAILED, now,
                approval_id=request.id, error=str(e), fallback=gate.fallback_behavior.value,
            )

        if gate.fallback_behavior == FallbackBehavior.DENY_ACTION:
            self.approval_store.resolve(request.id, ApprovalStatus.DENIED, "NOTIFICATION_FAILED", now)
        elif gate.fallback_behavior == FallbackBehavior.ALLOW_ACTION:
            self.approval_store.resolve(request.id, ApprovalStatus.APPROVED, "FALLBACK_ALLOW", now)
            execution.add_warning(
                "FALLBACK_ALLOW",
                f"Gate {gate.name} allowed action {request.action_id} after notification failure",
                now,
                action_id=request.action_id,
            )
        # ESCALATE_TO_HUMAN keeps waiting; timeouts and escalation still apply
        writer.persist()

    def _sync_request(self, execution: Execution, latest: ApprovalRequest) -> None:
        """Copy the stored request into the execution, auditing new votes."""
        snapshot = execution.get_approval(latest.id)
        seen = len(snapshot.votes) if snapshot else 0
        for vote in latest.votes[seen:]:
            execution.append_audit(
                AuditEventType.APPROVAL_DECISION, vote.timestamp, actor=vote.approver_id,
                approval_id=latest.id, decision=vote.decision.value, comment=vote.comment,
            )
        execution.upsert_approval(latest)

    async def _await_resolution(
        self,
        request: ApprovalRequest,
        gate: PolicyGateSpec,
        execution: Execution,
        writer: ExecutionWriter,
    ) -> GateDecision:
        event = self._events.setdefault(request.id, asyncio.Event())
        try:
            while True:
                latest = self.approval_store.get(request.id)
                if latest is None:
                    raise ApprovalNotFoundError(request.id)
                self._sync_request(execution, latest)

                if not latest.is_pending:
                    return self._resolved(latest, execution, writer)

                now = self.clock.now()
                if now >= latest.expires_at:
                    await self._on_expiry(latest, gate, execution, writer)
                    continue

                timeout = min((latest.expires_at - now).total_seconds(), self.config.approval_poll_seconds)
                await self.clock.wait_for_event(event, timeout)
                event.clear()
                writer.heartbeat()
        finally:
            self._events.pop(request.id, None)

    def _resolved(self, request: ApprovalRequest, execution: Execution, writer: ExecutionWriter) -> GateDecision:
        execution.append_audit(
            AuditEventType.APPROVAL_RESOLVED, self.clock.now(),
            approval_id=request.id, status=request.status.value, reason=request.resolution_reason,
        )
        writer.persist()

        approved_by = [v.approver_id for v in request.votes if v.decision.value == "APPROVE"]
        if request.status == ApprovalStatus.APPROVED:
            return GateDecision(
                outcome=GateOutcome.PASSED,
                reason=request.resolution_reason,
                gate_name=request.gate_name,
                approval_request_id=request.id,
                approved_by=approved_by,
            )

        reason = request.resolution_reason
        if reason not in PASS_THROUGH_REASONS:
            reason = "APPROVAL_DENIED"
        return GateDecision(
            outcome=GateOutcome.DENIED,
            reason=reason,
            gate_name=request.gate_name,
            approval_request_id=request.id,
        )

    async def _on_expiry(
        self,
        request: ApprovalRequest,
        gate: PolicyGateSpec,
        execution: Execution,
        writer: ExecutionWriter,
    ) -> None:
        """Escalate an expired request, or apply the fallback after the last level."""
        now = self.clock.now()
        level = request.escalation_level
        path = gate.escalation_path

        if level < len(path):
            step = path[level]
            added = self.resolve_escalation_targets(step.escalate_to)
            approvers = _dedupe(request.approver_ids + added)
            updated = self.approval_store.escalate(
                request.id, level + 1, now + timedelta(milliseconds=step.delay_ms), approvers,
            )
            if updated.is_pending:
                execution.append_audit(
                    AuditEventType.APPROVAL_ESCALATED, now,
                    approval_id=request.id, level=level + 1, escalate_to=added,
                )
                execution.upsert_approval(updated)
                writer.persist()
                logger.info(f"Approval {request.id} escalated to level {level + 1}: {added}")
                await self._notify(added or approvers, updated, gate, execution, writer)
            return

        behavior = gate.fallback_behavior
        if behavior == FallbackBehavior.ESCALATE_TO_HUMAN and level == len(path):
            hold_until = now + timedelta(seconds=self.config.approval_hold_seconds)
            updated = self.approval_store.escalate(request.id, level + 1, hold_until, request.approver_ids)
            if updated.is_pending:
                execution.append_audit(
                    AuditEventType.APPROVAL_FALLBACK, now,
                    approval_id=request.id, behavior=behavior.value, hold_until=hold_until.isoformat(),
                )
                execution.upsert_approval(updated)
                writer.persist()
                await self._notify(updated.approver_ids, updated, gate, execution, writer)
            return

        execution.append_audit(
            AuditEventType.APPROVAL_FALLBACK, now, approval_id=request.id, behavior=behavior.value,
        )
        if behavior == FallbackBehavior.ALLOW_ACTION:
            updated = self.approval_store.resolve(request.id, ApprovalStatus.APPROVED, "FALLBACK_ALLOW", now)
            if updated.resolution_reason == "FALLBACK_ALLOW":
                execution.add_warning(
                    "FALLBACK_ALLOW",
                    f"Gate {gate.name} allowed action {request.action_id} after approval timeout",
                    now,
                    action_id=request.action_id,
                )
        else:
            self.approval_store.resolve(request.id, ApprovalStatus.DENIED, "APPROVAL_TIMEOUT", now)
        writer.persist()

    async def _fallback_on_error(
        self,
        policy: Optional[ApprovalPolicy],
        gate: PolicyGateSpec,
        spec: ActionSpec,
        execution: Execution,
        record: ActionExecution,
        writer: ExecutionWriter,
        error: Exception,
    ) -> GateDecision:
        """Turn an unexpected evaluator error into a gate outcome.

        ALLOW_ACTION passes the gate with a warning and DENY_ACTION denies it.
        ESCALATE_TO_HUMAN leaves the decision to people: the gate's request,
        or a new one addressed to users reachable without the directory, is
        held open for ``approval_hold_seconds``. When even that fails the
        gate denies.
        """
        now = self.clock.now()
        execution.append_audit(
            AuditEventType.APPROVAL_FALLBACK, now,
            action_id=record.action_id, gate=gate.name, behavior=gate.fallback_behavior.value, error=str(error),
        )

        if gate.fallback_behavior == FallbackBehavior.ESCALATE_TO_HUMAN:
            try:
                return await self._hold_for_humans(policy, gate, spec, execution, record, writer)
            except (asyncio.CancelledError, LeaseConflictError):
                raise
            except Exception:
                logger.exception(f"Could not hold gate {gate.name} open for action {spec.id}; denying")
            now = self.clock.now()

        allow = gate.fallback_behavior == FallbackBehavior.ALLOW_ACTION
        if record.approval_request_id:
            status = ApprovalStatus.APPROVED if allow else ApprovalStatus.DENIED
            try:
                updated = self.approval_store.resolve(record.approval_request_id, status, "GATE_ERROR", now)
                execution.upsert_approval(updated)
            except Exception as e:
                logger.error(f"Could not resolve approval {record.approval_request_id} after gate error: {e}")

        if allow:
            execution.add_warning(
                "FALLBACK_ALLOW",
                f"Gate {gate.name} allowed action {record.action_id} after error: {error}",
                now,
                action_id=record.action_id,
            )
            writer.persist()
            return GateDecision(outcome=GateOutcome.PASSED, reason="FALLBACK_ALLOW", gate_name=gate.name)

        writer.persist()
        return GateDecision(outcome=GateOutcome.DENIED, reason="APPROVAL_DENIED", gate_name=gate.name)

    def _hold_candidates(self, gate: PolicyGateSpec, spec: ActionSpec) -> List[str]:
        """Users who can take a held decision, preferring ones known without the directory."""
        roles = gate.approver_roles or [ApproverRole(role=r) for r in spec.approval_roles]
        users: List[str] = []
        for role in roles:
            users.extend(role.user_ids)
            users.extend(role.fallback_users)
        for step in gate.escalation_path:
            try:
                users.extend(self.resolve_escalation_targets(step.escalate_to))
            except Exception as e:
                logger.warning(f"Could not resolve escalation targets {step.escalate_to}: {e}")
                users.extend(step.escalate_to)
        return _dedupe(users)[: self.config.max_approvers_per_gate]

    async def _hold_for_humans(
        self,
        policy: Optional[ApprovalPolicy],
        gate: PolicyGateSpec,
        spec: ActionSpec,
        execution: Execution,
        record: ActionExecution,
        writer: ExecutionWriter,
    ) -> GateDecision:
        """Keep the gate pending for human review after an evaluator error.

        The held request sits past the last escalation level, so when the
        hold expires it resolves DENIED with APPROVAL_TIMEOUT.
        """
        now = self.clock.now()
        hold_until = now + timedelta(seconds=self.config.approval_hold_seconds)
        final_level = len(gate.escalation_path) + 1

        request = None
        if record.approval_request_id:
            request = self.approval_store.get(record.approval_request_id)
            if request is not None and request.gate_name != gate.name:
                request = None

        if request is not None:
            if request.is_pending:
                request = self.approval_store.escalate(request.id, final_level, hold_until, request.approver_ids)
            if not request.is_pending:
                self._sync_request(execution, request)
                return self._resolved(request, execution, writer)
            execution.upsert_approval(request)
        else:
            approvers = self._hold_candidates(gate, spec)
            if not approvers or len(approvers) < gate.required_approvers:
                execution.append_audit(
                    AuditEventType.GATE_DENIED, now, action_id=spec.id, gate=gate.name,
                    reason="ESCALATION_UNAVAILABLE",
                )
                writer.persist()
                logger.warning(f"Gate {gate.name} failed and nobody can review action {spec.id}; denying")
                return GateDecision(outcome=GateOutcome.DENIED, reason="ESCALATION_UNAVAILABLE", gate_name=gate.name)

            request = ApprovalRequest.create(
                execution_id=execution.id,
                action_id=spec.id,
                gate_name=gate.name,
                required_approvers=gate.required_approvers,
                approver_ids=approvers,
                requested_at=now,
                expires_at=hold_until,
                policy_id=policy.id if policy else None,
            )
            request.escalation_level = final_level
            self.approval_store.create(request)
            execution.upsert_approval(request)
            record.approval_request_id = request.id
            if record.status == ActionStatus.PENDING:
                record.transition(ActionStatus.APPROVAL_PENDING, now)
            execution.append_audit(
                AuditEventType.APPROVAL_REQUESTED, now,
                action_id=spec.id, approval_id=request.id, gate=gate.name,
                approvers=approvers, required_approvers=gate.required_approvers, held=True,
            )

        writer.persist()
        logger.warning(f"Gate {gate.name} failed; approval {request.id} held for human review until {hold_until}")
        await self._notify(request.approver_ids, request, gate, execution, writer)
        return await self._await_resolution(request, gate, execution, writer)

    # ------------------------------------------------------------------
    # Signals from outside the engine
    # ------------------------------------------------------------------

    def signal(self, approval_id: str) -> None:
        """Wake the action waiting on an approval request, if any."""
        event = self._events.get(approval_id)
        if event is not None:
            event.set()

    def deny_pending(self, execution: Execution, reason: str, at: datetime) -> None:
        """Deny every pending approval request of an execution."""
        for request in list(execution.approvals):
            if not request.is_pending:
                continue
            updated = self.approval_store.resolve(request.id, ApprovalStatus.DENIED, reason, at)
            self._sync_request(execution, updated)
            execution.append_audit(
                AuditEventType.APPROVAL_RESOLVED, at,
                approval_id=request.id, status=updated.status.value, reason=updated.resolution_reason,
            )
            self.signal(request.id)
