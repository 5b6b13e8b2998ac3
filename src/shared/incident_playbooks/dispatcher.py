"""Action Dispatcher.

Generic wrapper around the registered action handlers. For every action it:

1. Derives the idempotency key from (execution ID, action ID) and returns
   an already-succeeded record without calling the handler again.
2. Runs the approval gates when the action requires approval.
3. Runs a bounded retry loop with exponential backoff, each attempt bounded
   by the action's timeout.
4. Dispatches the compensating action once when retries are exhausted.

The engine never calls handlers directly; everything goes through here.
"""

import asyncio
import hashlib
import logging
from typing import Optional

from .action_audit import ActionAuditLog
from .clock import Clock
from .config import EngineConfig
from .errors import ActionHandlerError, ActionTimeoutError, CompensationFailedError
from .execution import ActionExecution, Execution, RetryAttempt
from .gate_evaluator import ApprovalGateEvaluator, ExecutionWriter
from .handlers import ActionHandler, ActionHandlerRegistry, DryRunHandler, HandlerOutcome
from .models import ActionKind, ActionStatus, AuditEventType
from .playbook import ActionSpec, PlaybookDefinition
from .templating import render_parameters

logger = logging.getLogger(__name__)


def idempotency_key(execution_id: str, action_id: str) -> str:
    """Deterministic key for one action within one execution."""
    digest = hashlib.sha256(f"{execution_id}:{action_id}".encode()).hexdigest()
    return f"{action_id}:{digest}"


class ActionDispatcher:
    """Runs actions with idempotency, approval, retry and compensation."""

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        gate_evaluator: ApprovalGateEvaluator,
        clock: Clock,
        config: Optional[EngineConfig] = None,
        audit_log: Optional[ActionAuditLog] = None,
    ):
        """Initialize the dispatcher.

        Args:
            registry: Handlers keyed by action kind
            gate_evaluator: Evaluator for actions requiring approval
            clock: Time source for backoff delays
            config: Engine configuration
            audit_log: Optional per-action audit ledger
        """
        self.registry = registry
        self.gate_evaluator = gate_evaluator
        self.clock = clock
        self.config = config or EngineConfig()
        self.audit_log = audit_log

    def _handler_for(self, kind: ActionKind) -> Optional[ActionHandler]:
        if self.config.dry_run:
            return DryRunHandler(kind)
        return self.registry.get(kind)

    def _record_audit(self, execution: Execution, record: ActionExecution) -> None:
        if self.audit_log is None:
            return
        try:
            self.audit_log.record(execution, record, self.clock.now(), dry_run=self.config.dry_run)
        except Exception as e:
            logger.error(f"Failed to write action audit entry for {record.action_id}: {e}")

    async def dispatch(
        self,
        spec: ActionSpec,
        execution: Execution,
        playbook: PlaybookDefinition,
        writer: ExecutionWriter,
    ) -> ActionExecution:
        """Dispatch one action and return its terminal record.

        Args:
            spec: Action to run
            execution: Execution the action belongs to
            playbook: Pinned playbook definition
            writer: Persistence hooks for the run

        Returns:
            The action's ActionExecution
        """
        key = idempotency_key(execution.id, spec.id)
        record = execution.find_by_idempotency_key(key)

        if record is not None and record.is_terminal:
            if record.status == ActionStatus.SUCCESS:
                record.is_idempotent_retry = True
                execution.append_audit(
                    AuditEventType.ACTION_IDEMPOTENT_REPLAY, self.clock.now(),
                    action_id=spec.id, idempotency_key=key,
                )
                logger.info(f"Action {spec.id} already succeeded in {execution.id}, not re-running")
            elif self.compensation_outstanding(spec, record):
                await self.compensate(spec, execution, record, writer)
            return record

        if record is None:
            record = ActionExecution(
                action_id=spec.id,
                kind=spec.kind.value,
                stage=spec.stage,
                idempotency_key=key,
            )
            execution.actions[spec.id] = record
            writer.persist()

        if spec.requires_approval and record.status in (ActionStatus.PENDING, ActionStatus.APPROVAL_PENDING):
            decision = await self.gate_evaluator.evaluate(playbook, spec, execution, record, writer)
            if not decision.passed:
                record.error = f"Approval gate {decision.gate_name} did not approve the action"
                record.reason = decision.reason
                record.transition(ActionStatus.FAILED, self.clock.now())
                execution.append_audit(
                    AuditEventType.ACTION_FAILED, self.clock.now(),
                    action_id=spec.id, reason=decision.reason, gate=decision.gate_name, attempts=0,
                )
                logger.info(f"Action {spec.id} not run: {decision.reason}")
                self._record_audit(execution, record)
                writer.persist()
                return record
            if decision.approval_request_id:
                record.approval_request_id = decision.approval_request_id

        if record.status != ActionStatus.EXECUTING:
            record.transition(ActionStatus.EXECUTING, self.clock.now())
            execution.append_audit(
                AuditEventType.ACTION_STARTED, self.clock.now(),
                action_id=spec.id, kind=spec.kind.value, stage=spec.stage, idempotency_key=key,
            )
            writer.persist()

        succeeded = await self._run_attempts(spec, execution, record, writer)
        now = self.clock.now()
        if succeeded:
            record.transition(ActionStatus.SUCCESS, now)
            execution.append_audit(
                AuditEventType.ACTION_SUCCEEDED, now,
                action_id=spec.id, attempts=len(record.attempts),
            )
            logger.info(f"Action {spec.id} succeeded after {len(record.attempts)} attempt(s)")
        else:
            record.transition(ActionStatus.FAILED, now)
            execution.append_audit(
                AuditEventType.ACTION_FAILED, now,
                action_id=spec.id, reason=record.reason, error=record.error, attempts=len(record.attempts),
            )
            logger.warning(f"Action {spec.id} failed after {len(record.attempts)} attempt(s): {record.error}")
        writer.persist()

        if self.compensation_outstanding(spec, record):
            await self.compensate(spec, execution, record, writer)

        self._record_audit(execution, record)
        return record

    def compensation_outstanding(self, spec: ActionSpec, record: ActionExecution) -> bool:
        """A failed action that made attempts owes one compensation run."""
        return (
            record.status == ActionStatus.FAILED
            and spec.compensating_action is not None
            and bool(record.attempts)
            and (record.compensation is None or not record.compensation.is_terminal)
        )

    async def _run_attempts(
        self,
        spec: ActionSpec,
        execution: Execution,
        record: ActionExecution,
        writer: ExecutionWriter,
    ) -> bool:
        """Run the retry loop, continuing after any attempts already made.

        Returns:
            True if an attempt succeeded
        """
        handler = self._handler_for(spec.kind)
        if handler is None:
            record.error = f"No handler registered for {spec.kind.value}"
            record.reason = "NO_HANDLER"
            return False

        # An attempt that never finished was interrupted by a crash; run it again
        # under the same idempotency key.
        if record.attempts and record.attempts[-1].completed_at is None:
            record.attempts.pop()

        context = execution.condition_context()
        params = render_parameters(spec.parameters, context)
        retry = spec.retry
        budget_ms = spec.timeout_ms * retry.max_attempts + sum(retry.delays())
        started = record.started_at or self.clock.now()

        for attempt in range(len(record.attempts) + 1, retry.max_attempts + 1):
            delay_ms = retry.delay_ms(attempt)
            if delay_ms:
                elapsed_ms = (self.clock.now() - started).total_seconds() * 1000
                if elapsed_ms + delay_ms > budget_ms:
                    record.error = f"Action {spec.id} exceeded its overall time bound"
                    record.reason = "TIMEOUT"
                    return False
                await self.clock.sleep(delay_ms / 1000)

            entry = RetryAttempt(attempt=attempt, started_at=self.clock.now(), backoff_ms=delay_ms)
            record.attempts.append(entry)
            handler_context = dict(
                context,
                idempotency_key=record.idempotency_key,
                action_id=spec.id,
                attempt=attempt,
            )

            reason = None
            try:
                outcome = await asyncio.wait_for(
                    handler.execute(params, handler_context),
                    timeout=spec.timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                outcome = HandlerOutcome.failed(str(ActionTimeoutError(spec.id, spec.timeout_ms)))
                reason = "TIMEOUT"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome = HandlerOutcome.failed(str(ActionHandlerError(spec.id, str(e))))

            entry.completed_at = self.clock.now()
            entry.success = outcome.success
            if outcome.success:
                record.result = outcome.result
                record.error = None
                record.reason = None
                return True

            entry.error = outcome.error
            entry.reason = reason or "HANDLER_ERROR"
            record.error = entry.error
            record.reason = entry.reason
            next_delay = retry.delay_ms(attempt + 1) if attempt < retry.max_attempts else None
            execution.append_audit(
                AuditEventType.ACTION_ATTEMPT_FAILED, entry.completed_at,
                action_id=spec.id, attempt=attempt, error=entry.error,
                reason=entry.reason, next_backoff_ms=next_delay,
            )
            logger.warning(f"Action {spec.id} attempt {attempt}/{retry.max_attempts} failed: {entry.error}")
            writer.persist()

        return False

    async def _run_compensation(
        self,
        spec: ActionSpec,
        execution: Execution,
        primary: ActionExecution,
        writer: ExecutionWriter,
    ) -> ActionExecution:
        """Run the compensating action once, recorded under the primary."""
        compensation = spec.compensating_action
        record = primary.compensation
        if record is not None and record.is_terminal:
            return record

        if record is None:
            record = ActionExecution(
                action_id=compensation.id,
                kind=compensation.kind.value,
                stage=compensation.stage,
                idempotency_key=idempotency_key(execution.id, compensation.id),
                is_compensation=True,
            )
            primary.compensation = record

        execution.append_audit(
            AuditEventType.COMPENSATION_STARTED, self.clock.now(),
            action_id=spec.id, compensation_id=compensation.id,
        )
        if record.status == ActionStatus.PENDING:
            record.transition(ActionStatus.EXECUTING, self.clock.now())
        writer.persist()

        succeeded = await self._run_attempts(compensation, execution, record, writer)
        now = self.clock.now()
        if succeeded:
            record.transition(ActionStatus.SUCCESS, now)
            execution.append_audit(
                AuditEventType.COMPENSATION_SUCCEEDED, now,
                action_id=spec.id, compensation_id=compensation.id,
            )
            logger.info(f"Compensation {compensation.id} for {spec.id} succeeded")
        else:
            record.transition(ActionStatus.FAILED, now)
            error = CompensationFailedError(spec.id, record.error or "unknown error", spec.compensation_mandatory)
            execution.add_warning("COMPENSATION_FAILED", str(error), now, action_id=spec.id)
            execution.append_audit(
                AuditEventType.COMPENSATION_FAILED, now,
                action_id=spec.id, compensation_id=compensation.id,
                error=record.error, mandatory=spec.compensation_mandatory,
            )
            logger.error(str(error))
        writer.persist()
        return record

    async def compensate(
        self,
        spec: ActionSpec,
        execution: Execution,
        primary: ActionExecution,
        writer: ExecutionWriter,
    ) -> ActionExecution:
        """Compensate a failed action; the primary keeps its FAILED status."""
        return await self._run_compensation(spec, execution, primary, writer)

    async def roll_back(
        self,
        spec: ActionSpec,
        execution: Execution,
        primary: ActionExecution,
        writer: ExecutionWriter,
    ) -> bool:
        """Undo a succeeded action.

        Moves the primary through COMPENSATING to COMPENSATED, or to FAILED
        when its compensation fails.

        Returns:
            True if the action was compensated
        """
        if primary.status == ActionStatus.SUCCESS:
            primary.transition(ActionStatus.COMPENSATING, self.clock.now())
            writer.persist()

        record = await self._run_compensation(spec, execution, primary, writer)
        if record.status == ActionStatus.SUCCESS:
            primary.transition(ActionStatus.COMPENSATED, self.clock.now())
        else:
            primary.transition(ActionStatus.FAILED, self.clock.now())
            primary.reason = "COMPENSATION_FAILED"
        self._record_audit(execution, primary)
        writer.persist()
        return primary.status == ActionStatus.COMPENSATED
