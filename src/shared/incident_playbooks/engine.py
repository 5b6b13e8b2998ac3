"""Orchestration Engine.

Drives an Execution from start to a terminal status:

- Stages run in ascending order. The actions of one stage whose runtime
  condition holds are dispatched concurrently (fan-out capped by
  ``max_concurrent_actions``) and the next stage starts only after every
  action of the current one reached a terminal status.
- Stage failures do not stop the run unless a mandatory compensation
  failed, or ``halt_on_stage_failure`` is configured.
- The final status is aggregated from the action outcomes.

Every state change is persisted with optimistic versioning under an
execution lease, so a crashed run can be resumed by another engine once the
lease has expired without re-running actions that already succeeded.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from .action_audit import ActionAuditLog
from .approval_store import ApprovalStore, InMemoryApprovalStore
from .clock import Clock, SystemClock
from .conditions import evaluate
from .config import EngineConfig
from .dispatcher import ActionDispatcher, idempotency_key
from .errors import (
    ConcurrentModificationError,
    ConditionError,
    InvalidPlaybookError,
    InvalidStateTransitionError,
    LeaseConflictError,
    PlaybookNotFoundError,
)
from .execution import ActionExecution, Execution, StageResult
from .execution_store import ExecutionStore, InMemoryExecutionStore
from .gate_evaluator import ApprovalGateEvaluator, ApproverDirectory
from .handlers import ActionHandlerRegistry
from .incident import IncidentContext, derive_risk_level
from .lease import LeaseManager
from .models import SYSTEM_ACTOR, ActionStatus, AuditEventType, ExecutionStatus
from .notifier import Notifier
from .playbook import ActionSpec, PlaybookDefinition
from .playbook_store import InMemoryPlaybookStore, PlaybookStore, PolicyStore

logger = logging.getLogger(__name__)

TERMINAL_AUDIT_EVENTS = {
    ExecutionStatus.COMPLETED: AuditEventType.EXECUTION_COMPLETED,
    ExecutionStatus.PARTIALLY_COMPLETED: AuditEventType.EXECUTION_PARTIALLY_COMPLETED,
    ExecutionStatus.FAILED: AuditEventType.EXECUTION_FAILED,
}


class _DeadlineExceeded(Exception):
    """Raised at a stage boundary once maxExecutionTimeMs has passed."""


class _Run:
    """State of one execution being driven by this engine.

    Implements the persistence hooks the dispatcher and gate evaluator use.
    """

    def __init__(self, engine: "OrchestrationEngine", execution: Execution, playbook: Optional[PlaybookDefinition]):
        self.engine = engine
        self.execution = execution
        self.playbook = playbook
        self.stage_task: Optional[asyncio.Task] = None
        self.lease_task: Optional[asyncio.Task] = None
        self.lease_lost: Optional[LeaseConflictError] = None
        self.cancelled = False
        self.timed_out = False
        self.halted = False
        self.done = asyncio.Event()

    @property
    def deadline(self) -> Optional[datetime]:
        if self.playbook is None:
            return None
        return self.execution.started_at + timedelta(milliseconds=self.playbook.max_execution_time_ms)

    def past_deadline(self) -> bool:
        deadline = self.deadline
        return deadline is not None and self.engine.clock.now() >= deadline

    def persist(self) -> None:
        self.engine._persist(self.execution)
        self._observe()

    def heartbeat(self) -> None:
        expires_at = self.execution.lease_expires_at
        half_ttl = self.engine.leases.ttl / 2
        if expires_at is None or expires_at - self.engine.clock.now() < half_ttl:
            self.persist()
        else:
            self._observe()

    def start_lease_renewal(self) -> None:
        if self.lease_task is None:
            self.lease_task = asyncio.ensure_future(self.engine._keep_lease(self))

    def stop_lease_renewal(self) -> None:
        if self.lease_task is not None and not self.lease_task.done():
            self.lease_task.cancel()

    def interrupt(self) -> None:
        if self.stage_task is not None and not self.stage_task.done():
            self.stage_task.cancel()

    def _observe(self) -> None:
        """Interrupt the stages on a cancel request or an exceeded deadline."""
        if self.stage_task is None or self.stage_task.done() or self.cancelled or self.timed_out:
            return
        if self.execution.cancel_requested:
            self.cancelled = True
            self.interrupt()
        elif self.past_deadline():
            self.timed_out = True
            self.interrupt()


class OrchestrationEngine:
    """Drives playbook executions.

    All collaborators are injected; nothing is looked up from process-wide
    state.
    """

    def __init__(
        self,
        execution_store: Optional[ExecutionStore] = None,
        playbook_store: Optional[PlaybookStore] = None,
        registry: Optional[ActionHandlerRegistry] = None,
        approval_store: Optional[ApprovalStore] = None,
        policy_store: Optional[PolicyStore] = None,
        notifier: Optional[Notifier] = None,
        directory: Optional[ApproverDirectory] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        audit_log: Optional[ActionAuditLog] = None,
    ):
        """Initialize the orchestration engine.

        Args:
            execution_store: Execution persistence
            playbook_store: Versioned playbook storage
            registry: Action handlers
            approval_store: Approval request storage
            policy_store: Approval policy storage
            notifier: Approver notifier
            directory: Role to approver resolution
            clock: Time source
            config: Engine configuration
            audit_log: Per-action audit ledger
        """
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.execution_store = execution_store or InMemoryExecutionStore()
        self.playbook_store = playbook_store or InMemoryPlaybookStore()
        self.registry = registry or ActionHandlerRegistry()
        self.approval_store = approval_store or InMemoryApprovalStore()
        self.audit_log = audit_log
        self.leases = LeaseManager(self.clock, self.config.owner_id, self.config.lease_ttl_seconds)
        self.gate_evaluator = ApprovalGateEvaluator(
            approval_store=self.approval_store,
            clock=self.clock,
            policy_store=policy_store,
            notifier=notifier,
            directory=directory,
            config=self.config,
        )
        self.dispatcher = ActionDispatcher(
            registry=self.registry,
            gate_evaluator=self.gate_evaluator,
            clock=self.clock,
            config=self.config,
            audit_log=audit_log,
        )
        self._runs: Dict[str, _Run] = {}
        self._background: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, execution: Execution, renew: bool = True) -> None:
        """Save an execution, reloading and retrying on a version conflict.

        A conflict means someone outside the run wrote the record (a cancel
        request or a resolution note). Those fields are merged and the save
        retried, as long as the stored record still carries this engine's
        lease. A record leased by or released from another owner, or one that
        another owner already finished, is never overwritten.

        Raises:
            LeaseConflictError: If another owner took the execution over
            ConcurrentModificationError: If retries are exhausted
        """
        for _ in range(max(self.config.save_retry_attempts, 1)):
            if renew:
                self.leases.renew(execution)
            try:
                self.execution_store.save(execution)
                return
            except ConcurrentModificationError:
                stored = self.execution_store.get(execution.id)
                if stored is None:
                    raise
                if stored.lease_owner != self.leases.owner_id or (stored.is_terminal and not execution.is_terminal):
                    logger.warning(
                        f"Execution {execution.id} was taken over by {stored.lease_owner or 'another engine'} "
                        f"(stored status {stored.status.value}); dropping local state"
                    )
                    raise LeaseConflictError(execution.id, stored.lease_owner)
                if stored.cancel_requested:
                    execution.cancel_requested = True
                known = {(n.author, n.timestamp) for n in execution.resolution_notes}
                for note in stored.resolution_notes:
                    if (note.author, note.timestamp) not in known:
                        execution.resolution_notes.append(note)
                execution.version = stored.version
                logger.warning(f"Write conflict on execution {execution.id}, retrying at version {stored.version}")
        raise ConcurrentModificationError(execution.id, execution.version)

    async def _keep_lease(self, run: _Run) -> None:
        """Renew the run's lease every half TTL until the run stops.

        Handler attempts, backoff sleeps and approval waits do not persist
        on their own, so the lease is kept alive here. Losing the lease
        interrupts the run.
        """
        interval = self.leases.ttl.total_seconds() / 2
        execution = run.execution
        while True:
            await asyncio.sleep(interval)
            if execution.is_terminal and execution.lease_owner is None:
                return
            try:
                run.persist()
            except LeaseConflictError as e:
                logger.warning(f"Lost the lease on execution {execution.id}: {e}")
                run.lease_lost = e
                run.interrupt()
                return
            except Exception as e:
                logger.error(f"Lease renewal for execution {execution.id} failed: {e}")

    def load_playbook(self, execution: Execution) -> PlaybookDefinition:
        playbook = self.playbook_store.get(execution.playbook_id, execution.playbook_version)
        if playbook is None:
            raise PlaybookNotFoundError(execution.playbook_id, execution.playbook_version)
        return playbook

    def _record_metrics(self, execution: Execution) -> None:
        try:
            self.playbook_store.record_execution(
                execution.playbook_id,
                success=execution.status == ExecutionStatus.COMPLETED,
                execution_time_ms=execution.duration_ms or 0,
                at=self.clock.now(),
            )
        except Exception as e:
            logger.error(f"Failed to record metrics for playbook {execution.playbook_id}: {e}")

    # ------------------------------------------------------------------
    # Starting and resuming
    # ------------------------------------------------------------------

    async def start(
        self,
        playbook: PlaybookDefinition,
        incident: Union[IncidentContext, Dict[str, Any]],
        target_id: Optional[str] = None,
        triggered_by: str = SYSTEM_ACTOR,
        parent_execution_id: Optional[str] = None,
        wait: bool = True,
    ) -> Execution:
        """Start an execution of a playbook against a target.

        Args:
            playbook: Playbook to run; its version is pinned
            incident: Incident context
            target_id: Account to act on (defaults to the incident's target)
            triggered_by: User or system that triggered the run
            parent_execution_id: Execution this one retries
            wait: Drive the run to completion before returning; otherwise
                drive it in a background task

        Returns:
            The Execution (terminal when ``wait`` is True)

        Raises:
            InvalidPlaybookError: If the playbook is disabled or incomplete
        """
        is_valid, errors = playbook.validate()
        if not is_valid:
            raise InvalidPlaybookError(playbook.id, errors)

        if isinstance(incident, IncidentContext):
            target_id = target_id or incident.target_id
            incident = incident.to_dict()
        target_id = target_id or incident.get("target_id")
        if not target_id:
            raise InvalidPlaybookError(playbook.id, ["No target account given"])

        now = self.clock.now()
        execution = Execution.create(
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            target_id=target_id,
            incident=incident,
            risk_level=derive_risk_level(incident),
            started_at=now,
            confidence_score=incident.get("confidence_score"),
            triggered_by=triggered_by,
            parent_execution_id=parent_execution_id,
        )
        self.leases.claim(execution)
        execution.append_audit(
            AuditEventType.EXECUTION_INITIATED, now,
            playbook_id=playbook.id, playbook_version=playbook.version,
            target_id=target_id, risk_level=execution.risk_level.value,
            triggered_by=triggered_by, parent_execution_id=parent_execution_id,
        )
        self.execution_store.save(execution)
        logger.info(
            f"Started execution {execution.id} of playbook {playbook.id} v{playbook.version} "
            f"against {target_id} (risk {execution.risk_level.value})"
        )

        run = _Run(self, execution, playbook)
        if wait:
            return await self._drive(run)
        self._launch(run)
        return execution

    async def resume(self, execution_id: str, wait: bool = True) -> Execution:
        """Resume a non-terminal execution from its persisted state.

        Actions already in a terminal status are not run again; an action
        interrupted while waiting for approval re-attaches to its request.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            LeaseConflictError: If another engine holds a live lease
            PlaybookNotFoundError: If the pinned playbook version is gone
        """
        active = self._runs.get(execution_id)
        if active is not None:
            return active.execution

        execution = self.execution_store.load(execution_id)
        if execution.is_terminal:
            return execution

        execution = self.leases.acquire(self.execution_store, execution_id, self.config.save_retry_attempts)
        playbook = self.load_playbook(execution)
        run = _Run(self, execution, playbook)

        execution.append_audit(
            AuditEventType.EXECUTION_RESUMED, self.clock.now(),
            owner_id=self.config.owner_id, current_stage=execution.current_stage,
        )
        self._persist(execution)
        logger.info(f"Resuming execution {execution_id} at stage {execution.current_stage}")

        if execution.cancel_requested:
            run.cancelled = True
            await self._finish_cancelled(run)
            return execution

        if wait:
            return await self._drive(run)
        self._launch(run)
        return execution

    def _launch(self, run: _Run) -> None:
        execution_id = run.execution.id
        self._runs[execution_id] = run
        task = asyncio.ensure_future(self._drive(run))
        self._background[execution_id] = task
        task.add_done_callback(lambda _: self._background.pop(execution_id, None))

    async def wait_for(self, execution_id: str) -> Optional[Execution]:
        """Wait for a run driven by this engine to finish."""
        run = self._runs.get(execution_id)
        if run is None:
            return self.execution_store.get(execution_id)
        await run.done.wait()
        return run.execution

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    async def _drive(self, run: _Run) -> Execution:
        execution = run.execution
        self._runs[execution.id] = run
        try:
            if execution.status == ExecutionStatus.INITIATED:
                execution.transition(ExecutionStatus.RUNNING, self.clock.now())
                execution.append_audit(AuditEventType.EXECUTION_RUNNING, self.clock.now())
            run.persist()
            run.start_lease_renewal()

            remaining = (run.deadline - self.clock.now()).total_seconds()
            if remaining <= 0:
                run.timed_out = True
            else:
                run.stage_task = asyncio.ensure_future(self._run_stages(run))
                try:
                    await asyncio.wait_for(run.stage_task, timeout=remaining)
                except (asyncio.TimeoutError, _DeadlineExceeded):
                    run.timed_out = True
                except asyncio.CancelledError:
                    if not (run.cancelled or run.timed_out or run.lease_lost):
                        raise

            if run.lease_lost is not None:
                raise run.lease_lost
            if run.cancelled:
                await self._finish_cancelled(run)
            elif run.timed_out:
                await self._time_out(run)
            else:
                self._finalize(run)
            return execution
        except LeaseConflictError:
            logger.warning(f"Execution {execution.id} is now driven by another engine; stopping here")
            raise
        except Exception:
            logger.exception(f"Execution {execution.id} stopped unexpectedly; it can be resumed")
            raise
        finally:
            run.stop_lease_renewal()
            self._runs.pop(execution.id, None)
            run.done.set()

    def _check_deadline(self, run: _Run) -> None:
        if run.past_deadline():
            run.timed_out = True
            raise _DeadlineExceeded()

    async def _run_stages(self, run: _Run) -> None:
        execution = run.execution
        for stage, specs in run.playbook.actions_by_stage().items():
            result = execution.get_stage(stage)
            if result is not None and result.is_complete:
                if result.halted:
                    run.halted = True
                    return
                continue

            self._check_deadline(run)
            if result is None:
                result = StageResult(stage=stage, started_at=self.clock.now(), action_ids=[s.id for s in specs])
                execution.stages.append(result)
                execution.append_audit(
                    AuditEventType.STAGE_STARTED, self.clock.now(), stage=stage, action_ids=result.action_ids,
                )
            execution.current_stage = stage

            eligible = self._eligible_actions(execution, specs)
            run.persist()
            logger.info(f"Execution {execution.id} stage {stage}: dispatching {len(eligible)} action(s)")

            await self._dispatch_stage(run, eligible)

            records = [execution.get_action(s.id) for s in specs]
            result.succeeded = sum(1 for r in records if r and r.status == ActionStatus.SUCCESS)
            result.failed = sum(1 for r in records if r and r.status == ActionStatus.FAILED)
            result.skipped = sum(1 for r in records if r and r.status == ActionStatus.SKIPPED)
            result.completed_at = self.clock.now()

            halt_reason = self._halt_reason(specs, execution, result)
            result.halted = halt_reason is not None
            execution.append_audit(
                AuditEventType.STAGE_COMPLETED, result.completed_at,
                stage=stage, succeeded=result.succeeded, failed=result.failed, skipped=result.skipped,
            )
            if halt_reason:
                run.halted = True
                execution.append_audit(
                    AuditEventType.EXECUTION_HALTED, self.clock.now(), stage=stage, reason=halt_reason,
                )
                logger.warning(f"Execution {execution.id} halted after stage {stage}: {halt_reason}")
            run.persist()
            if run.halted:
                return

        self._check_deadline(run)

    def _eligible_actions(self, execution: Execution, specs: List[ActionSpec]) -> List[ActionSpec]:
        """Evaluate runtime conditions once per stage against prior results.

        Actions whose condition is false are recorded as SKIPPED with reason
        CONDITION_NOT_MET; a condition that cannot be evaluated skips the
        action with reason CONDITION_ERROR.
        """
        snapshot = execution.condition_context()
        eligible = []
        for spec in specs:
            record = execution.get_action(spec.id)
            if record is not None:
                if record.status != ActionStatus.SKIPPED:
                    eligible.append(spec)
                continue

            reason = "CONDITION_NOT_MET"
            error = None
            try:
                should_run = evaluate(spec.condition, snapshot)
            except ConditionError as e:
                logger.warning(f"Condition for action {spec.id} could not be evaluated: {e}")
                should_run = False
                reason = "CONDITION_ERROR"
                error = str(e)

            if should_run:
                eligible.append(spec)
                continue

            skipped = ActionExecution(
                action_id=spec.id,
                kind=spec.kind.value,
                stage=spec.stage,
                idempotency_key=idempotency_key(execution.id, spec.id),
                reason=reason,
                error=error,
            )
            skipped.transition(ActionStatus.SKIPPED, self.clock.now())
            execution.actions[spec.id] = skipped
            execution.append_audit(
                AuditEventType.ACTION_SKIPPED, self.clock.now(), action_id=spec.id, reason=reason, error=error,
            )
            logger.info(f"Action {spec.id} skipped: {reason}")
        return eligible

    async def _dispatch_stage(self, run: _Run, specs: List[ActionSpec]) -> None:
        """Dispatch a stage's actions concurrently and wait for all of them."""
        semaphore = asyncio.Semaphore(max(self.config.max_concurrent_actions, 1))

        async def dispatch_one(spec: ActionSpec) -> ActionExecution:
            async with semaphore:
                return await self.dispatcher.dispatch(spec, run.execution, run.playbook, run)

        results = await asyncio.gather(*(dispatch_one(s) for s in specs), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _halt_reason(self, specs: List[ActionSpec], execution: Execution, result: StageResult) -> Optional[str]:
        for spec in specs:
            record = execution.get_action(spec.id)
            if (
                record is not None
                and spec.compensation_mandatory
                and record.compensation is not None
                and record.compensation.status == ActionStatus.FAILED
            ):
                return f"MANDATORY_COMPENSATION_FAILED:{spec.id}"
        if self.config.halt_on_stage_failure and result.failed:
            return "STAGE_FAILED"
        return None

    def _finalize(self, run: _Run) -> None:
        execution = run.execution
        now = self.clock.now()
        status = execution.aggregate_status()
        reason = None
        if status == ExecutionStatus.FAILED:
            reason = "HALTED" if run.halted else "NO_ACTION_SUCCEEDED"
        execution.transition(status, now, reason)
        execution.append_audit(
            TERMINAL_AUDIT_EVENTS[status], now,
            succeeded=execution.success_count, failed=execution.failure_count,
            skipped=execution.skipped_count, halted=run.halted,
        )
        self.leases.release(execution)
        self._persist(execution, renew=False)
        self._record_metrics(execution)
        logger.info(
            f"Execution {execution.id} finished {status.value}: "
            f"{execution.success_count} succeeded, {execution.failure_count} failed, "
            f"{execution.skipped_count} skipped"
        )

    # ------------------------------------------------------------------
    # Cancellation and timeouts
    # ------------------------------------------------------------------

    def _fail_open_work(self, execution: Execution, reason: str, at: datetime) -> List[ActionExecution]:
        """Fail every non-terminal action and deny pending approvals.

        Returns:
            Records that were EXECUTING when they were failed
        """
        interrupted = []
        for record in execution.actions.values():
            if record.is_terminal or record.status == ActionStatus.COMPENSATING:
                continue
            if record.status == ActionStatus.EXECUTING:
                interrupted.append(record)
            record.error = f"Execution ended: {reason}"
            record.reason = reason
            record.transition(ActionStatus.FAILED, at)
            execution.append_audit(AuditEventType.ACTION_FAILED, at, action_id=record.action_id, reason=reason)

        self.gate_evaluator.deny_pending(execution, reason, at)

        for result in execution.stages:
            if not result.is_complete:
                result.completed_at = at
        return interrupted

    async def _finish_cancelled(self, run: _Run) -> None:
        execution = run.execution
        now = self.clock.now()
        reason = "EXECUTION_CANCELLED"
        self._fail_open_work(execution, reason, now)
        if not execution.is_terminal:
            execution.transition(ExecutionStatus.FAILED, now, reason)
        execution.append_audit(AuditEventType.EXECUTION_CANCELLED, now, requested=execution.cancel_requested)
        self.leases.release(execution)
        self._persist(execution, renew=False)
        self._record_metrics(execution)
        logger.info(f"Execution {execution.id} cancelled")

    async def _time_out(self, run: _Run) -> None:
        execution = run.execution
        playbook = run.playbook
        now = self.clock.now()
        reason = "EXECUTION_TIMEOUT"
        logger.warning(
            f"Execution {execution.id} exceeded its maximum execution time of {playbook.max_execution_time_ms}ms"
        )

        self._fail_open_work(execution, reason, now)
        execution.transition(ExecutionStatus.FAILED, now, reason)
        execution.append_audit(
            AuditEventType.EXECUTION_TIMED_OUT, now, max_execution_time_ms=playbook.max_execution_time_ms,
        )
        self._persist(execution)

        for record in list(execution.actions.values()):
            spec = playbook.get_action(record.action_id)
            if spec is not None and self.dispatcher.compensation_outstanding(spec, record):
                await self.dispatcher.compensate(spec, execution, record, run)

        if self.config.auto_rollback_on_timeout:
            await self._roll_back(run)
        else:
            self.leases.release(execution)
            self._persist(execution, renew=False)
        self._record_metrics(execution)

    async def cancel(self, execution_id: str) -> Execution:
        """Cancel an execution.

        A run driven by this engine is interrupted; in-flight attempts are
        cancelled best-effort. A run driven by another live engine gets a
        cancel request it observes on its next write. An orphaned run is
        finalized here.

        Returns:
            The execution (terminal unless another engine is driving it)
        """
        run = self._runs.get(execution_id)
        if run is not None:
            run.execution.cancel_requested = True
            if not run.cancelled and not run.timed_out:
                run.cancelled = True
                if run.stage_task is not None and not run.stage_task.done():
                    run.interrupt()
            await run.done.wait()
            return run.execution

        execution = self.execution_store.load(execution_id)
        if execution.is_terminal:
            return execution

        if self.leases.held_by_other(execution):
            for _ in range(max(self.config.save_retry_attempts, 1)):
                execution.cancel_requested = True
                try:
                    self.execution_store.save(execution)
                    logger.info(f"Cancel requested for {execution_id}, driven by {execution.lease_owner}")
                    return execution
                except ConcurrentModificationError:
                    execution = self.execution_store.load(execution_id)
                    if execution.is_terminal:
                        return execution
            raise ConcurrentModificationError(execution_id, execution.version)

        execution = self.leases.acquire(self.execution_store, execution_id, self.config.save_retry_attempts)
        execution.cancel_requested = True
        run = _Run(self, execution, None)
        run.cancelled = True
        await self._finish_cancelled(run)
        return execution

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def _roll_back(self, run: _Run) -> None:
        execution = run.execution
        playbook = run.playbook
        execution.append_audit(AuditEventType.ROLLBACK_STARTED, self.clock.now())
        run.persist()

        candidates = [
            record for record in execution.actions.values()
            if record.status in (ActionStatus.SUCCESS, ActionStatus.COMPENSATING)
        ]
        order = list(execution.actions)
        candidates.sort(key=lambda r: (r.stage, order.index(r.action_id)), reverse=True)

        compensated = 0
        failed = 0
        for record in candidates:
            spec = playbook.get_action(record.action_id)
            if spec is None or spec.compensating_action is None:
                continue
            if await self.dispatcher.roll_back(spec, execution, record, run):
                compensated += 1
            else:
                failed += 1

        now = self.clock.now()
        execution.transition(ExecutionStatus.ROLLED_BACK, now)
        execution.append_audit(
            AuditEventType.EXECUTION_ROLLED_BACK, now, compensated=compensated, failed=failed,
        )
        self.leases.release(execution)
        self._persist(execution, renew=False)
        logger.info(f"Execution {execution.id} rolled back: {compensated} compensated, {failed} failed")

    async def rollback(self, execution_id: str) -> Execution:
        """Compensate every succeeded action of a finished execution.

        Actions are undone in reverse stage order; the execution ends
        ROLLED_BACK.

        Raises:
            InvalidStateTransitionError: If the execution has not finished
        """
        execution = self.execution_store.load(execution_id)
        if execution.status == ExecutionStatus.ROLLED_BACK:
            return execution
        if not execution.is_terminal or execution_id in self._runs:
            raise InvalidStateTransitionError(
                "execution", execution.status.value, ExecutionStatus.ROLLED_BACK.value,
            )

        execution = self.leases.acquire(self.execution_store, execution_id, self.config.save_retry_attempts)
        run = _Run(self, execution, self.load_playbook(execution))
        self._runs[execution_id] = run
        try:
            run.start_lease_renewal()
            await self._roll_back(run)
        finally:
            run.stop_lease_renewal()
            self._runs.pop(execution_id, None)
            run.done.set()
        return execution

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def signal_approval(self, approval_id: str) -> None:
        """Wake the action waiting on an approval request after a vote."""
        self.gate_evaluator.signal(approval_id)
